"""
Persistence for payment intents and their append-only ledger.

Every mutating method expects the intent to have been loaded with one of the
``lock_*`` helpers inside the caller's transaction, so concurrent captures,
refunds and webhooks for the same intent are serialized by the row lock.
"""

from sqlalchemy import func, select

from learnpay.errors import ConflictError, NotFoundError, PaymentValidationError
from learnpay.logging_config import get_logger
from learnpay.models import PaymentIntent, PaymentLedgerEntry, utcnow
from learnpay.state_machine import (
    PaymentStatus,
    SETTLED_STATES,
    assert_transition,
    status_after_refund,
)

logger = get_logger("ledger")

CHARGE = "charge"
REFUND = "refund"


class PaymentIntentLedger:
    def create(self, db, **fields) -> PaymentIntent:
        intent = PaymentIntent(amount_refunded=0, amount_reserved=0, **fields)
        db.add(intent)
        db.flush()
        logger.info("intent_created", payment_id=intent.public_id, provider=intent.provider,
                    status=intent.status, amount_total=intent.amount_total)
        return intent

    def find_by_public_id(self, db, public_id) -> PaymentIntent:
        intent = db.execute(
            select(PaymentIntent).where(PaymentIntent.public_id == public_id)
        ).scalar_one_or_none()
        if intent is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND", details={"payment_id": public_id})
        return intent

    def find_by_idempotency_key(self, db, key):
        if not key:
            return None
        return db.execute(
            select(PaymentIntent).where(PaymentIntent.idempotency_key == key)
        ).scalar_one_or_none()

    def lock_by_public_id(self, db, public_id) -> PaymentIntent:
        intent = db.execute(
            select(PaymentIntent).where(PaymentIntent.public_id == public_id).with_for_update()
        ).scalar_one_or_none()
        if intent is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND", details={"payment_id": public_id})
        return intent

    def lock_by_provider_reference(self, db, provider, provider_intent_id=None, capture_id=None):
        for column, value in (
            (PaymentIntent.provider_intent_id, provider_intent_id),
            (PaymentIntent.provider_capture_id, capture_id),
        ):
            if not value:
                continue
            intent = db.execute(
                select(PaymentIntent)
                .where(PaymentIntent.provider == provider, column == value)
                .with_for_update()
            ).scalar_one_or_none()
            if intent is not None:
                return intent
        return None

    def transition(self, db, intent, target, **changes) -> bool:
        current = PaymentStatus(intent.status)
        target = PaymentStatus(target)
        if current == target and target != PaymentStatus.PARTIALLY_REFUNDED:
            return False
        assert_transition(current, target)
        intent.status = target.value
        for key, value in changes.items():
            setattr(intent, key, value)
        db.flush()
        logger.info("intent_transitioned", payment_id=intent.public_id,
                    from_status=current.value, to_status=target.value)
        return True

    def record_entry(self, db, intent, entry_type, amount, details=None) -> PaymentLedgerEntry:
        entry = PaymentLedgerEntry(
            payment_intent_id=intent.id,
            entry_type=entry_type,
            amount=amount,
            currency=intent.currency,
            details=details or {},
        )
        db.add(entry)
        db.flush()
        return entry

    def mark_succeeded(self, db, intent, *, capture_id=None, charge_id=None, amount=None,
                       processed_by=None, captured_at=None) -> bool:
        """Settle the intent and book the charge. Returns False when it was already settled."""
        if PaymentStatus(intent.status) in SETTLED_STATES:
            return False
        if amount is not None and amount != intent.amount_total:
            logger.warning("captured_amount_mismatch", payment_id=intent.public_id,
                           expected=intent.amount_total, captured=amount)
        self.transition(
            db,
            intent,
            PaymentStatus.SUCCEEDED,
            provider_capture_id=capture_id or intent.provider_capture_id,
            provider_charge_id=charge_id or intent.provider_charge_id,
            captured_at=captured_at or utcnow(),
            failure_code=None,
            failure_message=None,
        )
        self.record_entry(db, intent, CHARGE, intent.amount_total, {
            "provider": intent.provider,
            "capture_id": intent.provider_capture_id,
            "charge_id": intent.provider_charge_id,
            "amount_reported": amount,
            "processed_by": processed_by,
        })
        return True

    def mark_failed(self, db, intent, failure_code=None, failure_message=None) -> bool:
        return self.transition(
            db, intent, PaymentStatus.FAILED,
            failure_code=failure_code, failure_message=failure_message,
        )

    def mark_canceled(self, db, intent) -> bool:
        return self.transition(db, intent, PaymentStatus.CANCELED, canceled_at=utcnow())

    def apply_refund(self, db, intent, amount, details=None) -> PaymentStatus:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise PaymentValidationError("Refund amount must be a positive integer", code="REFUND_AMOUNT_INVALID")
        if amount > intent.amount_available:
            raise ConflictError(
                "Refund exceeds the refundable balance",
                code="REFUND_EXCEEDS_BALANCE",
                details={"available": intent.amount_available, "requested": amount},
            )
        refunded = intent.amount_refunded + amount
        target = status_after_refund(intent.amount_total, refunded)
        self.transition(db, intent, target, amount_refunded=refunded)
        self.record_entry(db, intent, REFUND, amount, details)
        return target

    def reserve_refund(self, db, intent, amount):
        """Hold ``amount`` out of the refundable balance while the provider is called."""
        intent.amount_reserved = (intent.amount_reserved or 0) + amount
        db.flush()

    def release_refund(self, db, intent, amount):
        intent.amount_reserved = max((intent.amount_reserved or 0) - amount, 0)
        db.flush()

    def balance(self, db, intent):
        rows = db.execute(
            select(PaymentLedgerEntry.entry_type, func.coalesce(func.sum(PaymentLedgerEntry.amount), 0))
            .where(PaymentLedgerEntry.payment_intent_id == intent.id)
            .group_by(PaymentLedgerEntry.entry_type)
        ).all()
        totals = {entry_type: int(total) for entry_type, total in rows}
        return totals.get(CHARGE, 0), totals.get(REFUND, 0)

    def reconcile(self, db, intent) -> bool:
        """True when the ledger trail agrees with the intent's amount fields."""
        charged, refunded = self.balance(db, intent)
        if PaymentStatus(intent.status) not in SETTLED_STATES:
            return charged == 0 and refunded == 0
        return charged == intent.amount_total and refunded == intent.amount_refunded
