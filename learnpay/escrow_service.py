import hashlib
import hmac
import json

import requests

from learnpay.errors import PaymentValidationError, SignatureInvalidError
from learnpay.gateway import (
    ProviderCapture,
    ProviderEvent,
    ProviderGateway,
    ProviderIntent,
    ProviderKind,
    ProviderRefund,
    to_major_units,
    to_minor_units,
)
from learnpay.state_machine import PaymentStatus

EVENT_KINDS = {
    "transaction.completed": "succeeded",
    "transaction.released": "succeeded",
    "transaction.failed": "failed",
    "transaction.rejected": "failed",
    "transaction.cancelled": "canceled",
    "transaction.canceled": "canceled",
    "transaction.refunded": "refunded",
}


def sign_payload(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class EscrowGateway(ProviderGateway):
    """Escrow partner API: funds are held until the buyer accepts delivery."""

    kind = ProviderKind.ESCROW
    signature_header = "x-escrow-signature"
    transport_errors = (requests.ConnectionError, requests.Timeout)

    STATUS_MAP = {
        "created": PaymentStatus.REQUIRES_ACTION,
        "pending": PaymentStatus.REQUIRES_ACTION,
        "awaiting_payment": PaymentStatus.REQUIRES_ACTION,
        "funded": PaymentStatus.PROCESSING,
        "in_escrow": PaymentStatus.PROCESSING,
        "completed": PaymentStatus.SUCCEEDED,
        "released": PaymentStatus.SUCCEEDED,
        "cancelled": PaymentStatus.CANCELED,
        "canceled": PaymentStatus.CANCELED,
        "voided": PaymentStatus.CANCELED,
        "failed": PaymentStatus.FAILED,
        "rejected": PaymentStatus.FAILED,
    }
    DEFAULT_STATUS = PaymentStatus.REQUIRES_ACTION

    def __init__(self, api_key, api_secret, base_url, webhook_secret=None, http=None, timeout=15, **kwargs):
        super().__init__(**kwargs)
        self.auth = (api_key, api_secret)
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.http = http or requests.Session()
        self.timeout = timeout

    def status_code_of(self, exc):
        response = getattr(exc, "response", None)
        return getattr(response, "status_code", None)

    async def _call(self, operation, method, path, body=None, idempotency_key=None):
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        def send():
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                auth=self.auth,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json() if response.content else {}

        return await self.execute(operation, send)

    async def create_intent(self, request):
        parties = request.escrow or {}
        if not parties.get("buyer") or not parties.get("seller"):
            raise PaymentValidationError(
                "Escrow payments require buyer and seller details", code="ESCROW_PARTIES_REQUIRED"
            )
        body = {
            "reference": request.public_id,
            "currency": request.currency,
            "amount": to_major_units(request.amount),
            "description": parties.get("description") or request.description,
            "buyer": parties["buyer"],
            "seller": parties["seller"],
            "items": [
                {
                    "title": line.name or line.id or "Item",
                    "quantity": line.quantity,
                    "amount": to_major_units(line.total),
                }
                for line in request.totals.line_items
            ],
        }
        transaction = await self._call(
            "create_transaction", "POST", "/transactions", body, idempotency_key=request.idempotency_key
        )
        return ProviderIntent(
            reference=transaction["id"],
            status=self.normalize_status(transaction.get("status")),
            client_artifact={
                "transaction_id": transaction["id"],
                "status": transaction.get("status"),
                "redirect_url": transaction.get("checkout_url"),
            },
            raw=transaction,
        )

    async def capture(self, intent):
        transaction = await self._call(
            "retrieve_transaction", "GET", f"/transactions/{intent.provider_intent_id}"
        )
        amount = transaction.get("amount")
        return ProviderCapture(
            capture_id=transaction.get("id"),
            status=self.normalize_status(transaction.get("status")),
            amount=to_minor_units(amount) if amount is not None else None,
            raw=transaction,
        )

    async def refund(self, intent, amount, reason, idempotency_key):
        refund = await self._call(
            "refund_transaction",
            "POST",
            f"/transactions/{intent.provider_intent_id}/refunds",
            {"amount": to_major_units(amount), "currency": intent.currency, "reason": reason},
            idempotency_key=idempotency_key,
        )
        native = str(refund.get("status", "")).lower()
        status = native if native in ("pending", "succeeded", "failed") else "pending"
        return ProviderRefund(refund_id=refund.get("id"), status=status, raw=refund)

    async def verify_webhook(self, raw_body, signature):
        if not self.webhook_secret:
            raise SignatureInvalidError("Escrow webhook secret is not configured", code="WEBHOOK_NOT_CONFIGURED")
        if isinstance(raw_body, str):
            raw_body = raw_body.encode()
        provided = (signature or "").strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        expected = sign_payload(self.webhook_secret, raw_body)
        if not provided or not hmac.compare_digest(provided, expected):
            raise SignatureInvalidError("Invalid signature", code="WEBHOOK_SIGNATURE_INVALID")
        try:
            body = json.loads(raw_body)
        except ValueError:
            raise SignatureInvalidError("Invalid payload", code="WEBHOOK_PAYLOAD_INVALID")
        return self.translate_event(body)

    @staticmethod
    def translate_event(body) -> ProviderEvent:
        event_type = body.get("type")
        data = body.get("data") or {}
        amount = data.get("amount")
        return ProviderEvent(
            event_id=body.get("id"),
            event_type=event_type,
            kind=EVENT_KINDS.get(event_type),
            provider_intent_id=data.get("transaction_id"),
            capture_id=data.get("transaction_id"),
            amount=to_minor_units(amount) if amount is not None else None,
            refund_id=data.get("refund_id"),
            failure_code=data.get("failure_code"),
            failure_message=data.get("failure_message"),
            raw=body,
        )
