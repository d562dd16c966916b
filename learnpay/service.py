"""
PaymentService: the operations callers use, wired to their collaborators.

    service = build_payment_service(settings)
    created = await service.create_payment_intent(PaymentRequest(provider="card", items=[...]))
    await service.capture_order(created["payment_id"])
"""

import uuid
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from learnpay.circuit_breaker import CircuitBreaker, DatabaseBreakerStore
from learnpay.coupons import CouponRedemptionGuard
from learnpay.crypto import SensitiveDetailsCipher
from learnpay.database import SessionLocal
from learnpay.errors import ConflictError, PaymentValidationError
from learnpay.escrow_service import EscrowGateway
from learnpay.events import (
    INTENT_CREATED,
    INTENT_FAILED,
    INTENT_SUCCEEDED,
    DomainEventBus,
    StaticMonetizationSettings,
    SubscriptionLifecycle,
    intent_event_payload,
    notify_lifecycle,
    publish_safely,
)
from learnpay.gateway import IntentRequest, ProviderKind, RetryPolicy, resolve_gateway
from learnpay.ledger import PaymentIntentLedger
from learnpay.logging_config import get_logger
from learnpay.paypal_service import WalletGateway
from learnpay.refunds import RefundEngine
from learnpay.state_machine import FINAL_STATES, PaymentStatus, SETTLED_STATES, can_transition
from learnpay.stripe_service import CardGateway
from learnpay.totals import LineItem, TaxRegion, TotalsCalculator
from learnpay.webhooks import WebhookProcessor

logger = get_logger("payment_service")


@dataclass
class PaymentRequest:
    provider: str
    items: List[LineItem]
    currency: Optional[str] = None
    coupon_code: Optional[str] = None
    tax_region: Optional[TaxRegion] = None
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    receipt_email: Optional[str] = None
    description: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    escrow: Optional[dict] = None


def new_public_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


class PaymentService:
    def __init__(self, session_factory, gateways, calculator, *, coupons=None, ledger=None,
                 cipher=None, bus=None, lifecycle=None, monetization=None):
        self.session_factory = session_factory
        self.gateways = gateways
        self.calculator = calculator
        self.coupons = coupons or CouponRedemptionGuard()
        self.ledger = ledger or PaymentIntentLedger()
        self.bus = bus or DomainEventBus()
        self.lifecycle = lifecycle or SubscriptionLifecycle()
        self.monetization = monetization or StaticMonetizationSettings()
        self.refunds = RefundEngine(
            session_factory, gateways, self.ledger, cipher or SensitiveDetailsCipher(), self.bus, self.lifecycle
        )
        self.webhooks = WebhookProcessor(
            session_factory, gateways, self.ledger, self.coupons, self.refunds, self.bus, self.lifecycle
        )

    def default_currency(self):
        allowed = self.calculator.allowed_currencies
        return allowed[0] if allowed else None

    async def create_payment_intent(self, request: PaymentRequest) -> dict:
        gateway = resolve_gateway(self.gateways, request.provider)

        if request.idempotency_key:
            with self.session_factory() as db:
                existing = self.ledger.find_by_idempotency_key(db, request.idempotency_key)
            if existing is not None:
                logger.info("intent_reused", payment_id=existing.public_id)
                return self._created_response(existing)

        coupon = None
        if request.coupon_code:
            with self.session_factory() as db:
                coupon = self.coupons.preview(
                    db,
                    request.coupon_code,
                    currency=request.currency or self.default_currency(),
                    user_id=request.user_id,
                )
        totals = self.calculator.calculate(
            request.items,
            request.currency or self.default_currency(),
            coupon=self.coupons.to_terms(coupon) if coupon else None,
            tax_region=request.tax_region,
        )
        if totals.total <= 0:
            raise PaymentValidationError("Order total must be greater than zero", code="ORDER_TOTAL_INVALID")

        public_id = new_public_id()
        idempotency_key = request.idempotency_key or f"intent:{public_id}"
        commission = self.monetization.get_commission_settings().commission_for(totals.total)
        metadata = {
            **request.metadata,
            "payment_id": public_id,
            "commission": commission,
            "coupon_code": coupon.code if coupon else None,
            "entity_type": request.entity_type,
            "entity_id": request.entity_id,
        }

        upstream = await gateway.create_intent(IntentRequest(
            public_id=public_id,
            amount=totals.total,
            currency=totals.currency,
            totals=totals,
            idempotency_key=idempotency_key,
            description=request.description,
            receipt_email=request.receipt_email,
            metadata=metadata,
            return_url=request.return_url,
            cancel_url=request.cancel_url,
            escrow=request.escrow,
        ))

        # a provider that settles on creation still goes through mark_succeeded
        settled_upfront = upstream.status in SETTLED_STATES
        initial_status = PaymentStatus.PROCESSING if settled_upfront else upstream.status
        try:
            with self.session_factory.begin() as db:
                intent = self.ledger.create(
                    db,
                    public_id=public_id,
                    user_id=request.user_id,
                    provider=gateway.kind.value,
                    provider_intent_id=upstream.reference,
                    status=initial_status.value,
                    currency=totals.currency,
                    amount_subtotal=totals.subtotal,
                    amount_discount=totals.discount,
                    amount_tax=totals.tax,
                    amount_total=totals.total,
                    tax_breakdown=totals.tax_breakdown,
                    meta={**metadata, "client_artifact": upstream.client_artifact},
                    coupon_id=coupon.id if coupon else None,
                    entity_type=request.entity_type,
                    entity_id=request.entity_id,
                    receipt_email=request.receipt_email,
                    idempotency_key=request.idempotency_key,
                )
                if settled_upfront:
                    self.ledger.mark_succeeded(db, intent, processed_by="create")
                    self.coupons.finalize(db, intent)
        except IntegrityError:
            if not request.idempotency_key:
                raise
            # lost a race against a concurrent request with the same key
            with self.session_factory() as db:
                existing = self.ledger.find_by_idempotency_key(db, request.idempotency_key)
            if existing is None:
                raise
            return self._created_response(existing)

        await publish_safely(self.bus, INTENT_CREATED, intent_event_payload(intent),
                             source="payments", correlation_id=public_id)
        if settled_upfront:
            await publish_safely(self.bus, INTENT_SUCCEEDED, intent_event_payload(intent),
                                 source="payments", correlation_id=public_id)
            await notify_lifecycle(self.lifecycle.on_payment_succeeded, intent)
        return self._created_response(intent, totals=asdict(totals))

    @staticmethod
    def _created_response(intent, totals=None):
        if totals is None:
            totals = {
                "currency": intent.currency,
                "subtotal": intent.amount_subtotal,
                "discount": intent.amount_discount,
                "tax": intent.amount_tax,
                "total": intent.amount_total,
                "tax_breakdown": intent.tax_breakdown,
            }
        return {
            "provider": intent.provider,
            "payment_id": intent.public_id,
            "client_artifact": (intent.meta or {}).get("client_artifact", {}),
            "status": intent.status,
            "totals": totals,
        }

    async def capture_order(self, payment_id, performed_by=None):
        with self.session_factory() as db:
            intent = self.ledger.find_by_public_id(db, payment_id)
        status = PaymentStatus(intent.status)
        if status in SETTLED_STATES:
            return intent
        if status in FINAL_STATES:
            raise ConflictError(
                f"Payment in status {intent.status} cannot be captured", code="CAPTURE_NOT_ALLOWED"
            )
        gateway = resolve_gateway(self.gateways, intent.provider)
        # no transaction is open while the provider is called
        result = await gateway.capture(intent)
        target = PaymentStatus(result.status)

        event = None
        with self.session_factory.begin() as db:
            intent = self.ledger.lock_by_public_id(db, payment_id)
            if intent.status == target.value or not can_transition(intent.status, target):
                # a webhook or concurrent capture already moved the intent
                logger.info("capture_result_superseded", payment_id=payment_id,
                            status=intent.status, provider_status=target.value)
            elif target == PaymentStatus.SUCCEEDED:
                self.ledger.mark_succeeded(
                    db,
                    intent,
                    capture_id=result.capture_id,
                    charge_id=result.charge_id,
                    amount=result.amount,
                    processed_by=performed_by or "capture",
                )
                self.coupons.finalize(db, intent)
                event = INTENT_SUCCEEDED
            elif target == PaymentStatus.FAILED:
                self.ledger.mark_failed(db, intent, "CAPTURE_FAILED", "Provider declined the capture")
                event = INTENT_FAILED
            else:
                self.ledger.transition(db, intent, target,
                                       provider_capture_id=result.capture_id or intent.provider_capture_id)

        logger.info("capture_completed", payment_id=payment_id, status=intent.status)
        if event == INTENT_SUCCEEDED:
            await publish_safely(self.bus, event, intent_event_payload(intent, performed_by=performed_by),
                                 source="payments", correlation_id=payment_id)
            await notify_lifecycle(self.lifecycle.on_payment_succeeded, intent, performed_by=performed_by)
        elif event == INTENT_FAILED:
            await publish_safely(self.bus, event, intent_event_payload(intent, failure_code=intent.failure_code),
                                 source="payments", correlation_id=payment_id)
            await notify_lifecycle(self.lifecycle.on_payment_failed, intent, failure_code=intent.failure_code)
        return intent

    async def issue_refund(self, payment_id, amount=None, reason=None, requested_by=None):
        return await self.refunds.issue_refund(payment_id, amount=amount, reason=reason, requested_by=requested_by)

    async def handle_webhook(self, provider, raw_body, signature):
        return await self.webhooks.handle(provider, raw_body, signature)

    def get_payment(self, payment_id):
        with self.session_factory() as db:
            return self.ledger.find_by_public_id(db, payment_id)

    def gateway_for(self, provider):
        return resolve_gateway(self.gateways, provider)


def build_gateways(settings, session_factory):
    store = DatabaseBreakerStore(session_factory)
    policy = RetryPolicy(
        max_attempts=settings.gateway_max_attempts,
        base_delay_ms=settings.gateway_base_delay_ms,
        deadline_seconds=settings.gateway_deadline_seconds,
    )

    def wiring(kind):
        breaker = CircuitBreaker(
            f"payments.{kind.value}",
            store=store,
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_ms=settings.breaker_cooldown_ms,
        )
        return {"breaker": breaker, "retry_policy": policy}

    gateways = {}
    if settings.stripe_enabled:
        gateways[ProviderKind.CARD.value] = CardGateway(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            settings.stripe_statement_descriptor,
            **wiring(ProviderKind.CARD),
        )
    if settings.paypal_enabled:
        gateways[ProviderKind.WALLET.value] = WalletGateway(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            settings.paypal_environment,
            settings.paypal_webhook_id,
            **wiring(ProviderKind.WALLET),
        )
    if settings.escrow_enabled:
        gateways[ProviderKind.ESCROW.value] = EscrowGateway(
            settings.escrow_api_key,
            settings.escrow_api_secret,
            settings.escrow_base_url,
            settings.escrow_webhook_secret,
            **wiring(ProviderKind.ESCROW),
        )
    logger.info("gateways_configured", providers=sorted(gateways))
    return gateways


def build_payment_service(settings, session_factory=SessionLocal, gateways=None):
    return PaymentService(
        session_factory,
        gateways if gateways is not None else build_gateways(settings, session_factory),
        TotalsCalculator.from_settings(settings),
        cipher=SensitiveDetailsCipher.from_settings(settings),
        monetization=StaticMonetizationSettings(settings.commission_bps, settings.commission_minimum_fee),
    )
