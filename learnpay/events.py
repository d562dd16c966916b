"""Collaborators that sit outside the payment core."""

from dataclasses import dataclass

from learnpay.logging_config import get_logger

logger = get_logger("events")

INTENT_CREATED = "payments.intent.created"
INTENT_SUCCEEDED = "payments.intent.succeeded"
INTENT_FAILED = "payments.intent.failed"
INTENT_CANCELED = "payments.intent.canceled"
REFUND_PROCESSED = "payments.refund.processed"


def intent_event_payload(intent, **extra):
    payload = {
        "payment_id": intent.public_id,
        "provider": intent.provider,
        "status": intent.status,
        "currency": intent.currency,
        "amount_total": intent.amount_total,
        "amount_refunded": intent.amount_refunded,
        "user_id": intent.user_id,
        "entity_type": intent.entity_type,
        "entity_id": intent.entity_id,
    }
    payload.update(extra)
    return payload


class DomainEventBus:
    """Default bus: records events in the structured log only."""

    async def publish(self, event_name, payload, *, source, correlation_id=None):
        logger.info("domain_event", event_name=event_name, source=source,
                    correlation_id=correlation_id, payload=payload)


class SubscriptionLifecycle:
    """Hooks invoked once a payment change has been committed."""

    async def on_payment_succeeded(self, intent, **context):
        pass

    async def on_payment_failed(self, intent, **context):
        pass

    async def on_payment_refunded(self, intent, **context):
        pass


@dataclass(frozen=True)
class CommissionSettings:
    rate_bps: int = 250
    minimum_fee: int = 0

    def commission_for(self, amount: int) -> int:
        return max(amount * self.rate_bps // 10000, self.minimum_fee)


class StaticMonetizationSettings:
    def __init__(self, rate_bps=250, minimum_fee=0):
        self.settings = CommissionSettings(rate_bps, minimum_fee)

    def get_commission_settings(self) -> CommissionSettings:
        return self.settings


async def publish_safely(bus, event_name, payload, *, source, correlation_id=None):
    """Fire-and-forget publish; a failing bus never undoes committed work."""
    try:
        await bus.publish(event_name, payload, source=source, correlation_id=correlation_id)
    except Exception:
        logger.exception("domain_event_publish_failed", event_name=event_name, correlation_id=correlation_id)


async def notify_lifecycle(hook, intent, **context):
    try:
        await hook(intent, **context)
    except Exception:
        logger.exception("lifecycle_hook_failed", hook=getattr(hook, "__name__", str(hook)),
                         payment_id=intent.public_id)
