import stripe

from learnpay.errors import ConflictError, SignatureInvalidError
from learnpay.gateway import (
    ProviderCapture,
    ProviderEvent,
    ProviderGateway,
    ProviderIntent,
    ProviderKind,
    ProviderRefund,
    field_of,
)
from learnpay.state_machine import PaymentStatus

STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

EVENT_KINDS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
    "charge.refunded": "refunded",
}


class CardGateway(ProviderGateway):
    """Card payments through Stripe PaymentIntents."""

    kind = ProviderKind.CARD
    signature_header = "stripe-signature"
    transport_errors = (stripe.error.APIConnectionError,)

    STATUS_MAP = {
        "requires_payment_method": PaymentStatus.REQUIRES_PAYMENT_METHOD,
        "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
        "requires_action": PaymentStatus.REQUIRES_ACTION,
        "processing": PaymentStatus.PROCESSING,
        "requires_capture": PaymentStatus.PROCESSING,
        "succeeded": PaymentStatus.SUCCEEDED,
        "canceled": PaymentStatus.CANCELED,
    }
    DEFAULT_STATUS = PaymentStatus.REQUIRES_PAYMENT_METHOD

    def __init__(self, secret_key, webhook_secret=None, statement_descriptor=None, **kwargs):
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.statement_descriptor = statement_descriptor

    def status_code_of(self, exc):
        return getattr(exc, "http_status", None)

    async def create_intent(self, request):
        params = {
            "amount": request.amount,
            "currency": request.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "description": request.description,
            "metadata": {key: str(value) for key, value in request.metadata.items() if value is not None},
        }
        if request.receipt_email:
            params["receipt_email"] = request.receipt_email
        if self.statement_descriptor:
            params["statement_descriptor_suffix"] = self.statement_descriptor[:22]

        intent = await self.execute(
            "create_intent",
            lambda: stripe.PaymentIntent.create(
                api_key=self.secret_key,
                idempotency_key=request.idempotency_key,
                **params,
            ),
        )
        return ProviderIntent(
            reference=field_of(intent, "id"),
            status=self.normalize_status(field_of(intent, "status")),
            client_artifact={"client_secret": field_of(intent, "client_secret")},
            raw=intent,
        )

    async def capture(self, intent):
        reference = intent.provider_intent_id
        remote = await self.execute(
            "retrieve_intent",
            lambda: stripe.PaymentIntent.retrieve(reference, api_key=self.secret_key),
        )
        native = field_of(remote, "status")
        if native == "requires_capture":
            remote = await self.execute(
                "capture_intent",
                lambda: stripe.PaymentIntent.capture(
                    reference, api_key=self.secret_key, idempotency_key=f"capture:{intent.public_id}"
                ),
            )
        elif native in ("requires_confirmation", "requires_action"):
            remote = await self.execute(
                "confirm_intent",
                lambda: stripe.PaymentIntent.confirm(
                    reference, api_key=self.secret_key, idempotency_key=f"confirm:{intent.public_id}"
                ),
            )
        elif native != "succeeded":
            raise ConflictError(
                f"Card payment is not ready for capture (status: {native})", code="CAPTURE_NOT_READY"
            )
        return ProviderCapture(
            capture_id=field_of(remote, "id"),
            status=self.normalize_status(field_of(remote, "status")),
            charge_id=field_of(remote, "latest_charge"),
            amount=field_of(remote, "amount_received"),
            raw=remote,
        )

    async def refund(self, intent, amount, reason, idempotency_key):
        params = {"payment_intent": intent.provider_intent_id, "amount": amount}
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"] = {"reason": reason[:255]}
        refund = await self.execute(
            "refund",
            lambda: stripe.Refund.create(api_key=self.secret_key, idempotency_key=idempotency_key, **params),
        )
        native = field_of(refund, "status", default="succeeded")
        if native == "succeeded":
            status = "succeeded"
        elif native in ("failed", "canceled"):
            status = "failed"
        else:
            status = "pending"
        return ProviderRefund(refund_id=field_of(refund, "id"), status=status, raw=refund)

    async def verify_webhook(self, raw_body, signature):
        if not self.webhook_secret:
            raise SignatureInvalidError("Stripe webhook secret is not configured", code="WEBHOOK_NOT_CONFIGURED")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except ValueError:
            raise SignatureInvalidError("Invalid payload", code="WEBHOOK_PAYLOAD_INVALID")
        except stripe.error.SignatureVerificationError:
            raise SignatureInvalidError("Invalid signature", code="WEBHOOK_SIGNATURE_INVALID")
        return self.translate_event(event)

    @staticmethod
    def translate_event(event) -> ProviderEvent:
        event_type = field_of(event, "type")
        obj = field_of(event, "data", "object", default={})
        translated = ProviderEvent(
            event_id=field_of(event, "id"),
            event_type=event_type,
            kind=EVENT_KINDS.get(event_type),
            provider_intent_id=field_of(obj, "id"),
            raw=event,
        )
        if event_type == "payment_intent.succeeded":
            translated.capture_id = field_of(obj, "id")
            translated.charge_id = field_of(obj, "latest_charge") or field_of(obj, "charges", "data", 0, "id")
            translated.amount = field_of(obj, "amount_received")
        elif event_type == "payment_intent.payment_failed":
            translated.failure_code = field_of(obj, "last_payment_error", "code")
            translated.failure_message = field_of(obj, "last_payment_error", "message")
        elif event_type == "charge.refunded":
            translated.provider_intent_id = field_of(obj, "payment_intent") or field_of(obj, "id")
            translated.charge_id = field_of(obj, "id")
            translated.refund_id = field_of(obj, "refunds", "data", 0, "id")
            translated.amount = field_of(obj, "refunds", "data", 0, "amount")
            translated.amount_refunded_total = field_of(obj, "amount_refunded")
        return translated
