import pytest

from learnpay.errors import ConflictError
from learnpay.ledger import PaymentIntentLedger
from learnpay.models import PaymentIntent, PaymentLedgerEntry
from learnpay.state_machine import PaymentStatus, assert_transition, can_transition, status_after_refund


@pytest.mark.parametrize(
    "current, target",
    [
        ("requires_payment_method", "requires_action"),
        ("requires_payment_method", "succeeded"),
        ("requires_action", "processing"),
        ("processing", "succeeded"),
        ("processing", "failed"),
        ("requires_action", "canceled"),
        ("succeeded", "partially_refunded"),
        ("succeeded", "refunded"),
        ("partially_refunded", "partially_refunded"),
        ("partially_refunded", "refunded"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current, target",
    [
        ("processing", "requires_action"),
        ("succeeded", "succeeded"),
        ("succeeded", "canceled"),
        ("succeeded", "failed"),
        ("failed", "succeeded"),
        ("canceled", "processing"),
        ("refunded", "partially_refunded"),
        ("partially_refunded", "succeeded"),
        ("requires_action", "refunded"),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(ConflictError) as exc:
        assert_transition(current, target)
    assert exc.value.code == "INVALID_TRANSITION"


def test_status_after_refund():
    assert status_after_refund(5832, 3000) == PaymentStatus.PARTIALLY_REFUNDED
    assert status_after_refund(5832, 5832) == PaymentStatus.REFUNDED


def create_intent(ledger, db, **fields):
    fields.setdefault("public_id", "pay_test")
    fields.setdefault("provider", "card")
    fields.setdefault("provider_intent_id", "pi_test")
    fields.setdefault("currency", "USD")
    fields.setdefault("amount_subtotal", 1000)
    fields.setdefault("amount_total", 1000)
    fields.setdefault("status", PaymentStatus.REQUIRES_ACTION.value)
    return ledger.create(db, **fields)


def test_ledger_settles_and_refunds(session_factory):
    ledger = PaymentIntentLedger()
    with session_factory.begin() as db:
        intent = create_intent(ledger, db)
        assert ledger.mark_succeeded(db, intent, capture_id="pi_test", charge_id="ch_1", amount=1000)
        assert not ledger.mark_succeeded(db, intent, capture_id="pi_test")
        assert ledger.apply_refund(db, intent, 400) == PaymentStatus.PARTIALLY_REFUNDED
        assert ledger.apply_refund(db, intent, 600) == PaymentStatus.REFUNDED

    with session_factory() as db:
        intent = ledger.find_by_public_id(db, "pay_test")
        assert intent.status == "refunded"
        assert intent.amount_refunded == 1000
        assert ledger.balance(db, intent) == (1000, 1000)
        assert ledger.reconcile(db, intent)
        assert intent.captured_at is not None


def test_ledger_rejects_overdrawn_refunds(session_factory):
    ledger = PaymentIntentLedger()
    with session_factory.begin() as db:
        intent = create_intent(ledger, db)
        ledger.mark_succeeded(db, intent)
        with pytest.raises(ConflictError) as exc:
            ledger.apply_refund(db, intent, 1001)
        assert exc.value.code == "REFUND_EXCEEDS_BALANCE"


def test_failed_intent_cannot_succeed(session_factory):
    ledger = PaymentIntentLedger()
    with session_factory.begin() as db:
        intent = create_intent(ledger, db)
        assert ledger.mark_failed(db, intent, "card_declined", "Declined")
        with pytest.raises(ConflictError):
            ledger.mark_succeeded(db, intent)


def test_ledger_entries_are_append_only(session_factory):
    ledger = PaymentIntentLedger()
    with session_factory() as db:
        intent = create_intent(ledger, db)
        ledger.mark_succeeded(db, intent)
        entry = db.query(PaymentLedgerEntry).filter_by(payment_intent_id=intent.id).one()
        entry.amount = 1
        with pytest.raises(ConflictError) as exc:
            db.flush()
        assert exc.value.code == "LEDGER_APPEND_ONLY"


def test_coupon_cannot_be_swapped():
    intent = PaymentIntent(coupon_id=1)
    intent.coupon_id = 1
    with pytest.raises(ConflictError) as exc:
        intent.coupon_id = 2
    assert exc.value.code == "COUPON_IMMUTABLE"
