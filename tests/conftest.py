import json
import os

# learnpay.database reads DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest
from sqlalchemy.orm import sessionmaker

from learnpay.config import Settings
from learnpay.database import Base, build_engine
from learnpay.errors import SignatureInvalidError
from learnpay.events import DomainEventBus, StaticMonetizationSettings, SubscriptionLifecycle
from learnpay.gateway import (
    ProviderCapture,
    ProviderEvent,
    ProviderGateway,
    ProviderIntent,
    ProviderKind,
    ProviderRefund,
    RetryPolicy,
)
from learnpay.crypto import SensitiveDetailsCipher
from learnpay.models import PaymentCoupon
from learnpay.service import PaymentService
from learnpay.state_machine import PaymentStatus
from learnpay.totals import TotalsCalculator

TAX_TABLE = {"US": {"defaultRate": 0.08, "regions": {"CA": 0.0825}}}


async def no_sleep(seconds):
    return None


class FakeGateway(ProviderGateway):
    """Scripted provider. Each entry in ``script[operation]`` is either a value
    to return or an exception to raise, consumed in order."""

    def __init__(self, kind=ProviderKind.CARD, **kwargs):
        self.kind = kind
        kwargs.setdefault("sleep", no_sleep)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay_ms=1))
        super().__init__(**kwargs)
        self.script = {}
        self.calls = []

    def queue(self, operation, *outcomes):
        self.script.setdefault(operation, []).extend(outcomes)

    def _next(self, operation, default):
        outcomes = self.script.get(operation)
        outcome = outcomes.pop(0) if outcomes else default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def create_intent(self, request):
        self.calls.append(("create_intent", request))
        default = ProviderIntent(
            reference=f"fake_{request.public_id}",
            status=PaymentStatus.REQUIRES_ACTION,
            client_artifact={"client_secret": f"secret_{request.public_id}"},
        )
        return await self.execute("create_intent", lambda: self._next("create_intent", default))

    async def capture(self, intent):
        self.calls.append(("capture", intent.public_id))
        default = ProviderCapture(
            capture_id=f"cap_{intent.public_id}",
            status=PaymentStatus.SUCCEEDED,
            charge_id=f"ch_{intent.public_id}",
            amount=intent.amount_total,
        )
        return await self.execute("capture", lambda: self._next("capture", default))

    async def refund(self, intent, amount, reason, idempotency_key):
        self.calls.append(("refund", amount, idempotency_key))
        default = ProviderRefund(refund_id=f"re_{len(self.calls)}", status="succeeded")
        return await self.execute("refund", lambda: self._next("refund", default))

    async def verify_webhook(self, raw_body, signature):
        if signature != "valid":
            raise SignatureInvalidError("Invalid signature", code="WEBHOOK_SIGNATURE_INVALID")
        body = json.loads(raw_body)
        return ProviderEvent(**body)


class RecordingBus(DomainEventBus):
    def __init__(self):
        self.published = []

    async def publish(self, event_name, payload, *, source, correlation_id=None):
        self.published.append((event_name, payload))

    def names(self):
        return [name for name, _ in self.published]


class RecordingLifecycle(SubscriptionLifecycle):
    def __init__(self):
        self.calls = []

    async def on_payment_succeeded(self, intent, **context):
        self.calls.append(("succeeded", intent.public_id))

    async def on_payment_failed(self, intent, **context):
        self.calls.append(("failed", intent.public_id))

    async def on_payment_refunded(self, intent, **context):
        self.calls.append(("refunded", intent.public_id, context.get("amount")))


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def test_settings():
    return Settings(
        tax_table=TAX_TABLE,
        tax_inclusive=False,
        minimum_tax_rate="0",
        default_currency="USD",
        allowed_currencies=["USD", "EUR"],
        max_coupon_percentage=80,
    )


@pytest.fixture
def card_gateway():
    return FakeGateway(ProviderKind.CARD)


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def lifecycle():
    return RecordingLifecycle()


@pytest.fixture
def service(session_factory, card_gateway, test_settings, bus, lifecycle):
    return PaymentService(
        session_factory,
        {"card": card_gateway},
        TotalsCalculator.from_settings(test_settings),
        cipher=SensitiveDetailsCipher(),
        bus=bus,
        lifecycle=lifecycle,
        monetization=StaticMonetizationSettings(rate_bps=250, minimum_fee=50),
    )


@pytest.fixture
def add_coupon(session_factory):
    def add(**fields):
        fields.setdefault("discount_type", "percentage")
        fields.setdefault("discount_value", 1000)
        with session_factory.begin() as db:
            coupon = PaymentCoupon(**fields)
            db.add(coupon)
        return coupon

    return add
