import asyncio
import random

import pytest

from learnpay.errors import ConflictError, PaymentValidationError, UpstreamFailureError
from learnpay.gateway import ProviderEvent, ProviderRefund
from learnpay.models import PaymentIntent, PaymentLedgerEntry, PaymentRefund
from learnpay.service import PaymentRequest
from learnpay.totals import LineItem, TaxRegion


async def paid_payment(service, coupon_code=None):
    created = await service.create_payment_intent(PaymentRequest(
        provider="card",
        items=[LineItem(unit_amount=2000, quantity=3, id="course-101")],
        currency="USD",
        coupon_code=coupon_code,
        tax_region=TaxRegion(country="US"),
        user_id="learner-1",
    ))
    await service.capture_order(created["payment_id"])
    return created


@pytest.mark.asyncio
async def test_partial_then_full_refund(service, add_coupon, session_factory, bus, lifecycle):
    add_coupon(code="TEN", discount_value=1000)
    created = await paid_payment(service, coupon_code="TEN")
    assert created["totals"]["total"] == 5832
    payment_id = created["payment_id"]

    intent = await service.issue_refund(payment_id, amount=3000, reason="requested_by_customer", requested_by="admin")
    assert intent.status == "partially_refunded"
    assert intent.amount_refunded == 3000

    intent = await service.issue_refund(payment_id)
    assert intent.status == "refunded"
    assert intent.amount_refunded == 5832

    with session_factory() as db:
        stored = db.query(PaymentIntent).filter_by(public_id=payment_id).one()
        refunds = db.query(PaymentRefund).filter_by(payment_intent_id=stored.id).order_by(PaymentRefund.id).all()
        entries = db.query(PaymentLedgerEntry).filter_by(payment_intent_id=stored.id, entry_type="refund").all()
        assert [r.amount for r in refunds] == [3000, 2832]
        assert all(r.status == "succeeded" for r in refunds)
        assert sum(e.amount for e in entries) == 5832
        assert service.ledger.reconcile(db, stored)

    details = service.refunds.cipher.decrypt(refunds[0].sensitive_details)
    assert details["provider_refund_id"].startswith("re_")
    assert refunds[0].provider_refund_hash == service.refunds.cipher.digest(details["provider_refund_id"])

    assert bus.names().count("payments.refund.processed") == 2
    assert ("refunded", payment_id, 2832) in lifecycle.calls


@pytest.mark.asyncio
async def test_refund_uses_deterministic_idempotency_keys(service, card_gateway):
    created = await paid_payment(service)
    payment_id = created["payment_id"]
    await service.issue_refund(payment_id, amount=1000)

    refund_calls = [call for call in card_gateway.calls if call[0] == "refund"]
    assert refund_calls == [("refund", 1000, f"refund:{payment_id}:0:1000")]


@pytest.mark.asyncio
async def test_refund_validation(service):
    created = await paid_payment(service)
    payment_id = created["payment_id"]

    with pytest.raises(PaymentValidationError) as exc:
        await service.issue_refund(payment_id, amount=999999)
    assert exc.value.code == "REFUND_EXCEEDS_BALANCE"

    with pytest.raises(PaymentValidationError) as exc:
        await service.issue_refund(payment_id, amount=0)
    assert exc.value.code == "REFUND_AMOUNT_INVALID"

    await service.issue_refund(payment_id)
    with pytest.raises(ConflictError):
        await service.issue_refund(payment_id, amount=1)


@pytest.mark.asyncio
async def test_unpaid_payment_cannot_be_refunded(service):
    created = await service.create_payment_intent(PaymentRequest(
        provider="card", items=[LineItem(unit_amount=1500)], currency="USD",
    ))
    with pytest.raises(ConflictError) as exc:
        await service.issue_refund(created["payment_id"])
    assert exc.value.code == "REFUND_NOT_ALLOWED"


@pytest.mark.asyncio
async def test_provider_failure_records_failed_refund(service, card_gateway, session_factory):
    created = await paid_payment(service)
    payment_id = created["payment_id"]
    card_gateway.queue("refund", UpstreamFailureError("card", "refund", "card declined", status_code=402))

    with pytest.raises(UpstreamFailureError):
        await service.issue_refund(payment_id, amount=500)

    with session_factory() as db:
        stored = db.query(PaymentIntent).filter_by(public_id=payment_id).one()
        assert stored.status == "succeeded"
        assert stored.amount_refunded == 0
        refund = db.query(PaymentRefund).filter_by(payment_intent_id=stored.id).one()
        assert refund.status == "failed"
        assert refund.amount == 500
    assert service.refunds.cipher.decrypt(refund.sensitive_details)["failure_message"] == "card declined"


@pytest.mark.asyncio
async def test_pending_refund_reserves_balance(service, card_gateway):
    created = await paid_payment(service)
    card_gateway.queue("refund", ProviderRefund(refund_id="re_pending", status="pending"))

    intent = await service.issue_refund(created["payment_id"], amount=832)
    assert intent.amount_refunded == 832
    assert intent.status == "partially_refunded"


@pytest.mark.asyncio
async def test_provider_reported_refund_is_deduplicated(service, session_factory):
    created = await paid_payment(service)
    payment_id = created["payment_id"]
    event = ProviderEvent(
        event_id="evt_refund", event_type="charge.refunded", kind="refunded",
        refund_id="re_dashboard", amount=1000,
    )

    with session_factory.begin() as db:
        intent = service.ledger.lock_by_public_id(db, payment_id)
        payload = service.refunds.record_provider_refund(db, intent, event)
        assert payload["refund_amount"] == 1000
        assert service.refunds.record_provider_refund(db, intent, event) is None

    assert service.get_payment(payment_id).amount_refunded == 1000


@pytest.mark.asyncio
async def test_concurrent_full_refunds_call_provider_once(service, card_gateway, session_factory):
    created = await paid_payment(service)
    payment_id = created["payment_id"]

    results = await asyncio.gather(
        service.issue_refund(payment_id),
        service.issue_refund(payment_id),
        return_exceptions=True,
    )

    refunded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert len(refunded) == 1 and refunded[0].status == "refunded"
    assert len(rejected) == 1
    assert isinstance(rejected[0], ConflictError)
    assert rejected[0].code == "REFUND_NOTHING_AVAILABLE"
    assert [call for call in card_gateway.calls if call[0] == "refund"] == [
        ("refund", 6480, f"refund:{payment_id}:0:6480"),
    ]

    with session_factory() as db:
        stored = db.query(PaymentIntent).filter_by(public_id=payment_id).one()
        assert stored.amount_refunded == 6480
        assert stored.amount_reserved == 0
        assert [r.amount for r in db.query(PaymentRefund).filter_by(payment_intent_id=stored.id)] == [6480]
        assert service.ledger.reconcile(db, stored)


@pytest.mark.asyncio
async def test_concurrent_partial_refunds_use_distinct_keys(service, card_gateway):
    created = await paid_payment(service)
    payment_id = created["payment_id"]

    await asyncio.gather(
        service.issue_refund(payment_id, amount=1000),
        service.issue_refund(payment_id, amount=1000),
    )

    keys = sorted(call[2] for call in card_gateway.calls if call[0] == "refund")
    assert keys == [f"refund:{payment_id}:0:1000", f"refund:{payment_id}:1000:1000"]
    intent = service.get_payment(payment_id)
    assert intent.amount_refunded == 2000
    assert intent.status == "partially_refunded"


@pytest.mark.asyncio
async def test_failed_refund_releases_its_reservation(service, card_gateway):
    created = await paid_payment(service)
    payment_id = created["payment_id"]
    card_gateway.queue("refund", ProviderRefund(refund_id="re_rejected", status="failed"))

    with pytest.raises(UpstreamFailureError) as exc:
        await service.issue_refund(payment_id)
    assert exc.value.code == "REFUND_FAILED"

    intent = service.get_payment(payment_id)
    assert intent.amount_reserved == 0
    assert intent.amount_available == 6480

    intent = await service.issue_refund(payment_id)
    assert intent.status == "refunded"


@pytest.mark.asyncio
async def test_random_partial_refunds_never_exceed_total(service, session_factory):
    rng = random.Random(7)
    for _ in range(3):
        created = await paid_payment(service)
        payment_id = created["payment_id"]
        total = created["totals"]["total"]

        for _ in range(40):
            intent = service.get_payment(payment_id)
            if intent.status == "refunded":
                break
            amount = rng.randint(1, intent.amount_available + 500)
            if amount > intent.amount_available:
                with pytest.raises(PaymentValidationError):
                    await service.issue_refund(payment_id, amount=amount)
                continue
            intent = await service.issue_refund(payment_id, amount=amount)

            assert 0 < intent.amount_refunded <= total
            assert (intent.status == "refunded") == (intent.amount_refunded == total)
            assert intent.status in ("partially_refunded", "refunded")

        if intent.status != "refunded":
            intent = await service.issue_refund(payment_id)
        assert intent.amount_refunded == total
        with session_factory() as db:
            stored = db.query(PaymentIntent).filter_by(public_id=payment_id).one()
            assert service.ledger.reconcile(db, stored)
