from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship, validates

from learnpay.database import Base
from learnpay.errors import ConflictError
from learnpay.state_machine import PaymentStatus


def utcnow():
    return datetime.now(timezone.utc)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        CheckConstraint("amount_refunded >= 0", name="ck_payment_intents_refunded_non_negative"),
        CheckConstraint("amount_refunded <= amount_total", name="ck_payment_intents_refunded_le_total"),
        CheckConstraint("amount_reserved >= 0", name="ck_payment_intents_reserved_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    public_id = Column(String(40), unique=True, index=True, nullable=False)
    user_id = Column(String(64), index=True)
    provider = Column(String(16), nullable=False)                  # card | wallet | escrow
    provider_intent_id = Column(String(160), index=True)
    provider_capture_id = Column(String(160))
    provider_charge_id = Column(String(160))
    status = Column(String(32), nullable=False, default=PaymentStatus.REQUIRES_PAYMENT_METHOD.value)
    currency = Column(String(3), nullable=False)
    amount_subtotal = Column(Integer, nullable=False)
    amount_discount = Column(Integer, nullable=False, default=0)
    amount_tax = Column(Integer, nullable=False, default=0)
    amount_total = Column(Integer, nullable=False)
    amount_refunded = Column(Integer, nullable=False, default=0)
    amount_reserved = Column(Integer, nullable=False, default=0)    # refunds awaiting the provider
    tax_breakdown = Column(JSON, nullable=False, default=dict)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    coupon_id = Column(Integer, ForeignKey("payment_coupons.id"))
    entity_type = Column(String(60))
    entity_id = Column(String(120))
    receipt_email = Column(String(255))
    idempotency_key = Column(String(120), unique=True)
    captured_at = Column(DateTime(timezone=True))
    canceled_at = Column(DateTime(timezone=True))
    failure_code = Column(String(120))
    failure_message = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    ledger_entries = relationship(
        "PaymentLedgerEntry", back_populates="payment_intent", order_by="PaymentLedgerEntry.id"
    )
    refunds = relationship("PaymentRefund", back_populates="payment_intent", order_by="PaymentRefund.id")

    @validates("coupon_id")
    def _coupon_is_immutable(self, key, value):
        if self.coupon_id is not None and value != self.coupon_id:
            raise ConflictError("Coupon cannot be changed once applied", code="COUPON_IMMUTABLE")
        return value

    @property
    def amount_available(self) -> int:
        return self.amount_total - self.amount_refunded - (self.amount_reserved or 0)


class PaymentLedgerEntry(Base):
    __tablename__ = "payment_ledger_entries"

    id = Column(Integer, primary_key=True)
    payment_intent_id = Column(Integer, ForeignKey("payment_intents.id"), index=True, nullable=False)
    entry_type = Column(String(16), nullable=False)                # charge | refund
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    payment_intent = relationship("PaymentIntent", back_populates="ledger_entries")


@event.listens_for(PaymentLedgerEntry, "before_update")
def _ledger_entries_are_append_only(mapper, connection, target):
    raise ConflictError("Ledger entries cannot be modified", code="LEDGER_APPEND_ONLY")


class PaymentRefund(Base):
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True)
    payment_intent_id = Column(Integer, ForeignKey("payment_intents.id"), index=True, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # requested | pending | succeeded | failed
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(String(255))
    requested_by = Column(String(64))
    sensitive_details = Column(Text)                                # encrypted JSON
    provider_refund_hash = Column(String(64), index=True)
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    payment_intent = relationship("PaymentIntent", back_populates="refunds")


class PaymentCoupon(Base):
    __tablename__ = "payment_coupons"

    id = Column(Integer, primary_key=True)
    code = Column(String(48), unique=True, nullable=False)
    discount_type = Column(String(16), nullable=False)              # percentage | fixed
    discount_value = Column(Integer, nullable=False)                # basis points | minor units
    currency = Column(String(3))
    valid_from = Column(DateTime(timezone=True))
    valid_until = Column(DateTime(timezone=True))
    max_redemptions = Column(Integer)
    per_user_limit = Column(Integer)
    times_redeemed = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="active")   # active | inactive
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentCouponRedemption(Base):
    __tablename__ = "payment_coupon_redemptions"
    __table_args__ = (UniqueConstraint("payment_intent_id", name="uq_coupon_redemption_intent"),)

    id = Column(Integer, primary_key=True)
    coupon_id = Column(Integer, ForeignKey("payment_coupons.id"), index=True, nullable=False)
    payment_intent_id = Column(Integer, ForeignKey("payment_intents.id"), nullable=False)
    user_id = Column(String(64), index=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookReceipt(Base):
    __tablename__ = "webhook_receipts"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_receipt_event"),)

    id = Column(Integer, primary_key=True)
    provider = Column(String(16), nullable=False)
    event_id = Column(String(160), nullable=False)
    event_type = Column(String(120))
    status = Column(String(16), nullable=False, default="received")  # received | processed | duplicate | failed
    attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(Text)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True))


class CircuitBreakerState(Base):
    __tablename__ = "circuit_breaker_states"

    name = Column(String(64), primary_key=True)
    failure_count = Column(Integer, nullable=False, default=0)
    opened_at = Column(Float)                                       # epoch seconds
