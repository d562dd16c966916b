import json

import requests

from learnpay.errors import ConflictError, SignatureInvalidError
from learnpay.gateway import (
    ClientCache,
    ProviderCapture,
    ProviderEvent,
    ProviderGateway,
    ProviderIntent,
    ProviderKind,
    ProviderRefund,
    field_of,
    to_major_units,
    to_minor_units,
)
from learnpay.state_machine import PaymentStatus

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

EVENT_KINDS = {
    "PAYMENT.CAPTURE.COMPLETED": "succeeded",
    "PAYMENT.CAPTURE.DENIED": "failed",
    "PAYMENT.CAPTURE.DECLINED": "failed",
    "CHECKOUT.ORDER.VOIDED": "canceled",
    "PAYMENT.CAPTURE.REFUNDED": "refunded",
}


class WalletGateway(ProviderGateway):
    """PayPal Orders v2 over plain REST."""

    kind = ProviderKind.WALLET
    transport_errors = (requests.ConnectionError, requests.Timeout)

    STATUS_MAP = {
        "CREATED": PaymentStatus.REQUIRES_ACTION,
        "SAVED": PaymentStatus.REQUIRES_ACTION,
        "PAYER_ACTION_REQUIRED": PaymentStatus.REQUIRES_ACTION,
        "APPROVED": PaymentStatus.PROCESSING,
        "PENDING": PaymentStatus.PROCESSING,
        "COMPLETED": PaymentStatus.SUCCEEDED,
        "VOIDED": PaymentStatus.CANCELED,
        "CANCELLED": PaymentStatus.CANCELED,
        "CANCELED": PaymentStatus.CANCELED,
        "DECLINED": PaymentStatus.FAILED,
        "DENIED": PaymentStatus.FAILED,
        "FAILED": PaymentStatus.FAILED,
    }

    def __init__(self, client_id, client_secret, environment="sandbox", webhook_id=None,
                 http=None, token_cache=None, timeout=15, **kwargs):
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_BASE_URLS.get(environment, PAYPAL_BASE_URLS["sandbox"])
        self.webhook_id = webhook_id
        self.http = http or requests.Session()
        self.token_cache = token_cache or ClientCache()
        self.timeout = timeout

    def status_code_of(self, exc):
        response = getattr(exc, "response", None)
        return getattr(response, "status_code", None)

    def error_code_of(self, exc):
        response = getattr(exc, "response", None)
        if response is None:
            return None
        try:
            return response.json().get("name")
        except ValueError:
            return None

    def signature_from_headers(self, headers):
        return {name: headers.get(name) for name in TRANSMISSION_HEADERS}

    async def _access_token(self):
        token = self.token_cache.get()
        if token:
            return token

        def fetch():
            response = self.http.post(
                f"{self.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

        payload = await self.execute("oauth_token", fetch)
        # refresh a minute early
        ttl = max(int(payload.get("expires_in", 300)) - 60, 0)
        return self.token_cache.put(payload["access_token"], ttl_seconds=ttl)

    async def _call(self, operation, method, path, body=None, request_id=None):
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        def send():
            response = self.http.request(
                method, f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout
            )
            if response.status_code == 401:
                self.token_cache.reset()
            response.raise_for_status()
            return response.json() if response.content else {}

        return await self.execute(operation, send)

    async def create_intent(self, request):
        totals = request.totals
        tax_total = 0 if totals.tax_breakdown.get("inclusive") else totals.tax
        currency = request.currency
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.public_id,
                    "invoice_id": request.public_id,
                    "custom_id": request.public_id,
                    "description": (request.description or "")[:127] or None,
                    "amount": {
                        "currency_code": currency,
                        "value": to_major_units(request.amount),
                        "breakdown": {
                            "item_total": {"currency_code": currency, "value": to_major_units(totals.subtotal)},
                            "discount": {"currency_code": currency, "value": to_major_units(totals.discount)},
                            "tax_total": {"currency_code": currency, "value": to_major_units(tax_total)},
                        },
                    },
                }
            ],
            "application_context": {
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": request.return_url,
                "cancel_url": request.cancel_url,
            },
        }
        order = await self._call(
            "create_order", "POST", "/v2/checkout/orders", body, request_id=request.idempotency_key
        )
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return ProviderIntent(
            reference=order["id"],
            status=self.normalize_status(order.get("status")),
            client_artifact={"approval_url": approval_url},
            raw=order,
        )

    async def capture(self, intent):
        order = await self._call(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{intent.provider_intent_id}/capture",
            {},
            request_id=f"capture:{intent.public_id}",
        )
        capture = field_of(order, "purchase_units", 0, "payments", "captures", 0, default={})
        amount = field_of(capture, "amount", "value")
        return ProviderCapture(
            capture_id=capture.get("id") or order.get("id"),
            status=self.normalize_status(capture.get("status") or order.get("status")),
            amount=to_minor_units(amount) if amount is not None else None,
            raw=order,
        )

    async def refund(self, intent, amount, reason, idempotency_key):
        if not intent.provider_capture_id:
            raise ConflictError("Wallet payment has no capture to refund", code="CAPTURE_MISSING")
        body = {"amount": {"value": to_major_units(amount), "currency_code": intent.currency}}
        if reason:
            body["note_to_payer"] = reason[:255]
        refund = await self._call(
            "refund_capture",
            "POST",
            f"/v2/payments/captures/{intent.provider_capture_id}/refund",
            body,
            request_id=idempotency_key,
        )
        native = str(refund.get("status", "")).upper()
        status = {"COMPLETED": "succeeded", "PENDING": "pending"}.get(native, "failed")
        return ProviderRefund(refund_id=refund.get("id"), status=status, raw=refund)

    async def verify_webhook(self, raw_body, signature):
        if not self.webhook_id:
            raise SignatureInvalidError("PayPal webhook id is not configured", code="WEBHOOK_NOT_CONFIGURED")
        signature = signature or {}
        missing = [name for name in TRANSMISSION_HEADERS if not signature.get(name)]
        if missing:
            raise SignatureInvalidError(
                f"Missing PayPal webhook header: {missing[0]}", code="WEBHOOK_SIGNATURE_INVALID"
            )
        try:
            body = json.loads(raw_body)
        except ValueError:
            raise SignatureInvalidError("Invalid payload", code="WEBHOOK_PAYLOAD_INVALID")

        verification = await self._call(
            "verify_webhook",
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {
                "auth_algo": signature["paypal-auth-algo"],
                "cert_url": signature["paypal-cert-url"],
                "transmission_id": signature["paypal-transmission-id"],
                "transmission_sig": signature["paypal-transmission-sig"],
                "transmission_time": signature["paypal-transmission-time"],
                "webhook_id": self.webhook_id,
                "webhook_event": body,
            },
        )
        if verification.get("verification_status") != "SUCCESS":
            raise SignatureInvalidError("PayPal webhook verification failed", code="WEBHOOK_SIGNATURE_INVALID")
        return self.translate_event(body)

    @staticmethod
    def translate_event(body) -> ProviderEvent:
        event_type = body.get("event_type")
        resource = body.get("resource") or {}
        related = field_of(resource, "supplementary_data", "related_ids", default={})
        translated = ProviderEvent(
            event_id=body.get("id"),
            event_type=event_type,
            kind=EVENT_KINDS.get(event_type),
            provider_intent_id=related.get("order_id"),
            raw=body,
        )
        amount = field_of(resource, "amount", "value")
        if event_type == "CHECKOUT.ORDER.VOIDED":
            translated.provider_intent_id = resource.get("id")
        elif event_type == "PAYMENT.CAPTURE.REFUNDED":
            translated.refund_id = resource.get("id")
            translated.capture_id = related.get("capture_id") or _capture_from_links(resource)
            translated.amount = to_minor_units(amount) if amount is not None else None
        elif translated.kind in ("succeeded", "failed"):
            translated.capture_id = resource.get("id")
            translated.amount = to_minor_units(amount) if amount is not None else None
            if translated.kind == "failed":
                translated.failure_code = field_of(resource, "status_details", "reason") or resource.get("status")
        return translated


def _capture_from_links(resource):
    for link in resource.get("links", []):
        if link.get("rel") == "up" and "/captures/" in link.get("href", ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None
