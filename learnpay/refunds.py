"""
Refunds against settled payment intents.

Refunds requested through the API run in three steps: reserve the amount
under the intent row lock, call the provider with no transaction open, then
lock again to settle the reservation or release it. Reserved amounts are
excluded from the refundable balance, so concurrent requests can never drain
more than the payment total.

Refunds the provider reports on its own (dashboard refunds, webhook
echoes of our own refunds) go through :meth:`RefundEngine.record_provider_refund`.
"""

from sqlalchemy import select

from learnpay.errors import ConflictError, PaymentValidationError, UpstreamFailureError
from learnpay.events import REFUND_PROCESSED, intent_event_payload, notify_lifecycle, publish_safely
from learnpay.gateway import resolve_gateway
from learnpay.logging_config import get_logger
from learnpay.models import PaymentRefund, utcnow
from learnpay.state_machine import PaymentStatus, REFUNDABLE_STATES

logger = get_logger("refunds")

REQUESTED = "requested"


def refund_event_payload(intent, amount, refund_status):
    return intent_event_payload(
        intent,
        refund_amount=amount,
        refund_status=refund_status,
        amount_available=intent.amount_available,
    )


class RefundEngine:
    def __init__(self, session_factory, gateways, ledger, cipher, bus, lifecycle):
        self.session_factory = session_factory
        self.gateways = gateways
        self.ledger = ledger
        self.cipher = cipher
        self.bus = bus
        self.lifecycle = lifecycle

    @staticmethod
    def refund_amount(intent, amount=None) -> int:
        if PaymentStatus(intent.status) not in REFUNDABLE_STATES:
            raise ConflictError(
                f"Payment in status {intent.status} cannot be refunded",
                code="REFUND_NOT_ALLOWED",
                details={"status": intent.status},
            )
        available = intent.amount_available
        if available <= 0:
            raise ConflictError("Payment has no refundable balance", code="REFUND_NOTHING_AVAILABLE")
        if amount is None:
            return available
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise PaymentValidationError("Refund amount must be a positive integer", code="REFUND_AMOUNT_INVALID")
        if amount > available:
            raise PaymentValidationError(
                "Refund amount exceeds the refundable balance",
                code="REFUND_EXCEEDS_BALANCE",
                details={"available": available, "requested": amount},
            )
        return amount

    async def issue_refund(self, payment_id, amount=None, reason=None, requested_by=None):
        with self.session_factory.begin() as db:
            intent = self.ledger.lock_by_public_id(db, payment_id)
            amount = self.refund_amount(intent, amount)
            gateway = resolve_gateway(self.gateways, intent.provider)
            committed = intent.amount_refunded + (intent.amount_reserved or 0)
            idempotency_key = f"refund:{intent.public_id}:{committed}:{amount}"
            reservation = PaymentRefund(
                payment_intent_id=intent.id,
                status=REQUESTED,
                amount=amount,
                currency=intent.currency,
                reason=reason,
                requested_by=requested_by,
            )
            db.add(reservation)
            self.ledger.reserve_refund(db, intent, amount)
        logger.info("refund_reserved", payment_id=payment_id, amount=amount, refund_row=reservation.id)

        # no transaction is open while the provider is called
        try:
            result = await gateway.refund(intent, amount, reason, idempotency_key)
            if result.status == "failed":
                raise UpstreamFailureError(
                    intent.provider, "refund", "Provider rejected the refund", provider_code="REFUND_FAILED"
                )
        except Exception as exc:
            self._release_failed_refund(payment_id, reservation.id, amount, exc)
            raise

        with self.session_factory.begin() as db:
            intent = self.ledger.lock_by_public_id(db, payment_id)
            refund = db.get(PaymentRefund, reservation.id)
            self.ledger.release_refund(db, intent, amount)
            provider_hash = self.cipher.digest(result.refund_id)
            if self._known_refund(db, intent, provider_hash, exclude_id=refund.id):
                # a webhook echo already booked this provider refund
                db.delete(refund)
                payload = None
            else:
                refund.status = result.status
                refund.sensitive_details = self.cipher.encrypt({
                    "provider_refund_id": result.refund_id,
                    "idempotency_key": idempotency_key,
                })
                refund.provider_refund_hash = provider_hash
                refund.processed_at = utcnow() if result.status == "succeeded" else None
                # pending refunds still consume the balance
                self.ledger.apply_refund(db, intent, amount, {
                    "provider_refund_hash": provider_hash,
                    "refund_status": result.status,
                    "reason": reason,
                    "requested_by": requested_by,
                })
                payload = refund_event_payload(intent, amount, result.status)

        if payload is None:
            logger.info("refund_already_recorded", payment_id=payment_id, amount=amount)
            return intent
        logger.info("refund_issued", payment_id=payment_id, amount=amount,
                    refund_status=payload["refund_status"], status=payload["status"])
        await publish_safely(self.bus, REFUND_PROCESSED, payload, source="refunds", correlation_id=payment_id)
        await notify_lifecycle(self.lifecycle.on_payment_refunded, intent, amount=amount, reason=reason)
        return intent

    def _release_failed_refund(self, payment_id, refund_row_id, amount, exc):
        code = getattr(exc, "code", None) or "REFUND_FAILED"
        with self.session_factory.begin() as db:
            intent = self.ledger.lock_by_public_id(db, payment_id)
            self.ledger.release_refund(db, intent, amount)
            refund = db.get(PaymentRefund, refund_row_id)
            refund.status = "failed"
            refund.sensitive_details = self.cipher.encrypt({
                "failure_code": code,
                "failure_message": getattr(exc, "message", None) or str(exc),
            })
        logger.error("refund_failed", payment_id=payment_id, amount=amount, code=code,
                     error=exc.__class__.__name__)

    def _known_refund(self, db, intent, provider_hash, exclude_id=None) -> bool:
        if not provider_hash:
            return False
        query = select(PaymentRefund.id).where(
            PaymentRefund.payment_intent_id == intent.id,
            PaymentRefund.provider_refund_hash == provider_hash,
        )
        if exclude_id is not None:
            query = query.where(PaymentRefund.id != exclude_id)
        return db.execute(query).first() is not None

    def record_provider_refund(self, db, intent, event):
        """Apply a refund reported by a provider webhook.

        Returns the domain event payload, or None if nothing changed.
        """
        provider_hash = self.cipher.digest(event.refund_id)
        if self._known_refund(db, intent, provider_hash):
            logger.info("provider_refund_already_recorded", payment_id=intent.public_id)
            return None
        if PaymentStatus(intent.status) not in REFUNDABLE_STATES:
            logger.warning("provider_refund_ignored", payment_id=intent.public_id, status=intent.status)
            return None

        if event.amount is not None:
            amount = event.amount
        elif event.amount_refunded_total is not None:
            amount = event.amount_refunded_total - intent.amount_refunded
        else:
            amount = intent.amount_available
        if amount > intent.amount_available:
            logger.warning("provider_refund_exceeds_balance", payment_id=intent.public_id,
                           reported=amount, available=intent.amount_available)
            amount = intent.amount_available
        if amount <= 0:
            return None

        db.add(PaymentRefund(
            payment_intent_id=intent.id,
            status="succeeded",
            amount=amount,
            currency=intent.currency,
            reason="provider_reported",
            sensitive_details=self.cipher.encrypt({
                "provider_refund_id": event.refund_id,
                "event_id": event.event_id,
            }),
            provider_refund_hash=provider_hash,
            processed_at=utcnow(),
        ))
        self.ledger.apply_refund(db, intent, amount, {
            "provider_refund_hash": provider_hash,
            "refund_status": "succeeded",
            "event_id": event.event_id,
        })
        return refund_event_payload(intent, amount, "succeeded")
