"""
Idempotent processing of provider webhooks.

A delivery is handled in three short transactions: claim the
``webhook_receipts`` row for (provider, event id), apply the event to the
payment intent under its row lock, then record how it went. Domain events
and lifecycle hooks only run once the intent change has been committed.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from learnpay.errors import PaymentValidationError
from learnpay.events import (
    INTENT_CANCELED,
    INTENT_FAILED,
    INTENT_SUCCEEDED,
    REFUND_PROCESSED,
    intent_event_payload,
    notify_lifecycle,
    publish_safely,
)
from learnpay.gateway import resolve_gateway
from learnpay.logging_config import get_logger
from learnpay.models import WebhookReceipt, utcnow
from learnpay.state_machine import PaymentStatus, SETTLED_STATES, can_transition

logger = get_logger("webhooks")

RECEIVED = "received"
PROCESSED = "processed"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class WebhookOutcome:
    intent: Any
    events: List[Tuple[str, dict]] = field(default_factory=list)
    hook: Optional[Callable] = None
    hook_context: dict = field(default_factory=dict)


class WebhookProcessor:
    def __init__(self, session_factory, gateways, ledger, coupons, refunds, bus, lifecycle):
        self.session_factory = session_factory
        self.gateways = gateways
        self.ledger = ledger
        self.coupons = coupons
        self.refunds = refunds
        self.bus = bus
        self.lifecycle = lifecycle

    async def handle(self, provider, raw_body, signature):
        gateway = resolve_gateway(self.gateways, provider)
        event = await gateway.verify_webhook(raw_body, signature)
        provider = gateway.kind.value
        if not event.event_id:
            raise PaymentValidationError("Webhook event has no id", code="WEBHOOK_EVENT_ID_MISSING")

        log = logger.bind(provider=provider, event_id=event.event_id, event_type=event.event_type)
        if not self._claim(provider, event):
            log.info("webhook_duplicate")
            return {"received": True, "duplicate": True}

        try:
            with self.session_factory.begin() as db:
                outcome = self._apply(db, provider, event)
        except Exception as exc:
            self._finish(provider, event, FAILED, error=str(exc))
            log.exception("webhook_processing_failed")
            raise

        self._finish(provider, event, PROCESSED)
        log.info("webhook_processed", payment_id=outcome.intent.public_id if outcome else None)
        if outcome is not None:
            await self._after_commit(outcome, correlation_id=event.event_id)
        return {"received": True}

    def _claim(self, provider, event) -> bool:
        """Take ownership of the event. False means another delivery has it."""
        try:
            with self.session_factory.begin() as db:
                receipt = db.execute(
                    select(WebhookReceipt)
                    .where(WebhookReceipt.provider == provider, WebhookReceipt.event_id == event.event_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if receipt is None:
                    db.add(WebhookReceipt(
                        provider=provider,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        status=RECEIVED,
                    ))
                    return True
                if receipt.status == FAILED:
                    reclaimed = db.execute(
                        update(WebhookReceipt)
                        .where(WebhookReceipt.id == receipt.id, WebhookReceipt.status == FAILED)
                        .values(status=RECEIVED, attempts=WebhookReceipt.attempts + 1, last_error=None)
                        .execution_options(synchronize_session=False)
                    )
                    return reclaimed.rowcount == 1
                if receipt.status in (PROCESSED, DUPLICATE):
                    receipt.status = DUPLICATE
                # RECEIVED: still in flight elsewhere
                return False
        except IntegrityError:
            # concurrent first delivery inserted the receipt
            return False

    def _finish(self, provider, event, status, error=None):
        with self.session_factory.begin() as db:
            db.execute(
                update(WebhookReceipt)
                .where(WebhookReceipt.provider == provider, WebhookReceipt.event_id == event.event_id)
                .values(
                    status=status,
                    last_error=error,
                    processed_at=utcnow() if status == PROCESSED else None,
                )
                .execution_options(synchronize_session=False)
            )

    def _apply(self, db, provider, event) -> Optional[WebhookOutcome]:
        if event.kind is None:
            logger.info("webhook_event_ignored", provider=provider, event_type=event.event_type)
            return None
        intent = self.ledger.lock_by_provider_reference(
            db, provider, provider_intent_id=event.provider_intent_id, capture_id=event.capture_id
        )
        if intent is None:
            logger.warning("webhook_intent_unknown", provider=provider, event_id=event.event_id,
                           provider_intent_id=event.provider_intent_id, capture_id=event.capture_id)
            return None

        if event.kind == "refunded":
            payload = self.refunds.record_provider_refund(db, intent, event)
            if payload is None:
                return None
            return WebhookOutcome(
                intent,
                [(REFUND_PROCESSED, payload)],
                self.lifecycle.on_payment_refunded,
                {"amount": payload["refund_amount"], "reason": "provider_reported"},
            )

        if event.kind == "succeeded":
            if PaymentStatus(intent.status) in SETTLED_STATES:
                return None
            if not self._can_move(intent, PaymentStatus.SUCCEEDED, event):
                return None
            self.ledger.mark_succeeded(
                db,
                intent,
                capture_id=event.capture_id,
                charge_id=event.charge_id,
                amount=event.amount,
                processed_by=f"webhook:{event.event_id}",
            )
            self.coupons.finalize(db, intent)
            return WebhookOutcome(
                intent,
                [(INTENT_SUCCEEDED, intent_event_payload(intent, event_id=event.event_id))],
                self.lifecycle.on_payment_succeeded,
                {"event_id": event.event_id},
            )

        if event.kind == "failed":
            if not self._can_move(intent, PaymentStatus.FAILED, event):
                return None
            self.ledger.mark_failed(db, intent, event.failure_code, event.failure_message)
            return WebhookOutcome(
                intent,
                [(INTENT_FAILED, intent_event_payload(intent, failure_code=event.failure_code))],
                self.lifecycle.on_payment_failed,
                {"failure_code": event.failure_code, "failure_message": event.failure_message},
            )

        if event.kind == "canceled":
            if not self._can_move(intent, PaymentStatus.CANCELED, event):
                return None
            self.ledger.mark_canceled(db, intent)
            return WebhookOutcome(intent, [(INTENT_CANCELED, intent_event_payload(intent))])

        logger.warning("webhook_kind_unhandled", kind=event.kind, event_id=event.event_id)
        return None

    @staticmethod
    def _can_move(intent, target, event) -> bool:
        if intent.status == target.value:
            return False
        if can_transition(intent.status, target):
            return True
        # stale or out-of-order delivery; the intent keeps its state
        logger.warning("webhook_transition_skipped", payment_id=intent.public_id,
                       from_status=intent.status, to_status=target.value, event_id=event.event_id)
        return False

    async def _after_commit(self, outcome, correlation_id=None):
        for name, payload in outcome.events:
            await publish_safely(self.bus, name, payload, source="webhooks", correlation_id=correlation_id)
        if outcome.hook is not None:
            await notify_lifecycle(outcome.hook, outcome.intent, **outcome.hook_context)
