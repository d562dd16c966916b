"""
Provider gateway contract.

Every upstream call goes through :meth:`ProviderGateway.execute`, which asks
the provider's circuit breaker for permission, retries transient failures
with linear backoff and turns anything else into an
:class:`~learnpay.errors.UpstreamFailureError`.
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from learnpay.circuit_breaker import CircuitBreaker
from learnpay.errors import CircuitOpenError, PaymentError, PaymentValidationError, UpstreamFailureError
from learnpay.logging_config import get_logger
from learnpay.state_machine import PaymentStatus

logger = get_logger("gateway")


class ProviderKind(str, Enum):
    CARD = "card"
    WALLET = "wallet"
    ESCROW = "escrow"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 250
    deadline_seconds: Optional[float] = None


@dataclass
class CachedValue:
    value: Any
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ClientCache:
    """Holds one provider credential/client with a time-to-live."""

    def __init__(self, ttl_seconds=300.0, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.entry: Optional[CachedValue] = None

    def get(self):
        if self.entry is not None and self.entry.is_fresh(self.clock()):
            return self.entry.value
        return None

    def put(self, value, ttl_seconds=None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.entry = CachedValue(value=value, expires_at=self.clock() + ttl)
        return value

    def reset(self):
        self.entry = None


@dataclass
class ProviderIntent:
    reference: str
    status: PaymentStatus
    client_artifact: dict = field(default_factory=dict)
    raw: Any = None


@dataclass
class ProviderCapture:
    capture_id: Optional[str]
    status: PaymentStatus
    charge_id: Optional[str] = None
    amount: Optional[int] = None
    raw: Any = None


@dataclass
class ProviderRefund:
    refund_id: Optional[str]
    status: str  # pending | succeeded | failed
    raw: Any = None


@dataclass
class ProviderEvent:
    """A provider webhook translated into canonical terms.

    ``kind`` is one of succeeded, failed, canceled, refunded, or None for
    event types this service does not act on.
    """

    event_id: str
    event_type: str
    kind: Optional[str]
    provider_intent_id: Optional[str] = None
    capture_id: Optional[str] = None
    charge_id: Optional[str] = None
    amount: Optional[int] = None
    refund_id: Optional[str] = None
    amount_refunded_total: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    raw: Any = None


@dataclass
class IntentRequest:
    """Everything a gateway needs to open an upstream payment."""

    public_id: str
    amount: int
    currency: str
    totals: Any
    idempotency_key: str
    description: Optional[str] = None
    receipt_email: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    escrow: Optional[dict] = None


class ProviderGateway(ABC):
    kind: ProviderKind

    # Provider status vocabulary -> canonical status
    STATUS_MAP: Mapping[str, PaymentStatus] = {}
    DEFAULT_STATUS = PaymentStatus.PROCESSING

    # Exception types that mean the request never got a response
    transport_errors: tuple = (ConnectionError, TimeoutError)

    def __init__(self, breaker: Optional[CircuitBreaker] = None, retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable = asyncio.sleep):
        self.breaker = breaker or CircuitBreaker(self.kind.value)
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.logger = get_logger(f"gateway.{self.kind.value}")

    @classmethod
    def normalize_status(cls, native_status) -> PaymentStatus:
        key = str(native_status or "").strip()
        for candidate in (key, key.lower(), key.upper()):
            if candidate in cls.STATUS_MAP:
                return cls.STATUS_MAP[candidate]
        return cls.DEFAULT_STATUS

    async def execute(self, operation: str, call: Callable):
        deadline = self.retry_policy.deadline_seconds
        if deadline is None:
            return await self._attempt_until_done(operation, call)
        try:
            return await asyncio.wait_for(self._attempt_until_done(operation, call), timeout=deadline)
        except asyncio.TimeoutError as exc:
            raise UpstreamFailureError(
                self.kind.value, operation,
                f"{operation} did not complete within {deadline}s",
                retryable=True,
            ) from exc

    async def _attempt_until_done(self, operation, call):
        attempt = 0
        while True:
            attempt += 1
            # breaker stores may hit the database
            if not await asyncio.to_thread(self.breaker.allow_request):
                self.logger.warning("circuit_open", operation=operation, attempt=attempt)
                raise CircuitOpenError(self.kind.value, operation)
            try:
                result = await self._invoke(call)
            except Exception as exc:
                if isinstance(exc, PaymentError) and not isinstance(exc, UpstreamFailureError):
                    # business rule raised inside the call, not an upstream fault
                    raise
                await asyncio.to_thread(self.breaker.record_failure)
                error = self.classify_error(operation, exc)
                if error.retryable and attempt < self.retry_policy.max_attempts:
                    delay_ms = self.retry_policy.base_delay_ms * attempt
                    self.logger.warning(
                        "upstream_retry",
                        operation=operation,
                        attempt=attempt,
                        status_code=error.status_code,
                        delay_ms=delay_ms,
                    )
                    await self.sleep(delay_ms / 1000)
                    continue
                self.logger.error(
                    "upstream_failure",
                    operation=operation,
                    attempt=attempt,
                    status_code=error.status_code,
                    retryable=error.retryable,
                )
                raise error from exc
            await asyncio.to_thread(self.breaker.record_success)
            return result

    @staticmethod
    async def _invoke(call):
        if inspect.iscoroutinefunction(call):
            return await call()
        # Provider SDKs block; keep them off the event loop
        result = await asyncio.to_thread(call)
        if inspect.isawaitable(result):
            result = await result
        return result

    def classify_error(self, operation, exc) -> UpstreamFailureError:
        if isinstance(exc, UpstreamFailureError):
            return exc
        status_code = self.status_code_of(exc)
        transport = status_code is None and isinstance(exc, self.transport_errors)
        retryable = transport or status_code == 429 or (status_code is not None and status_code >= 500)
        return UpstreamFailureError(
            self.kind.value,
            operation,
            str(exc) or exc.__class__.__name__,
            status_code=status_code,
            retryable=retryable,
            provider_code=self.error_code_of(exc),
        )

    def status_code_of(self, exc) -> Optional[int]:
        return getattr(exc, "status_code", None)

    def error_code_of(self, exc) -> Optional[str]:
        return getattr(exc, "code", None)

    signature_header = "x-signature"

    def signature_from_headers(self, headers: Mapping[str, str]):
        return headers.get(self.signature_header)

    @abstractmethod
    async def create_intent(self, request: IntentRequest) -> ProviderIntent:
        ...

    @abstractmethod
    async def capture(self, intent) -> ProviderCapture:
        ...

    @abstractmethod
    async def refund(self, intent, amount: int, reason: Optional[str], idempotency_key: str) -> ProviderRefund:
        ...

    @abstractmethod
    async def verify_webhook(self, raw_body: bytes, signature) -> ProviderEvent:
        ...


def field_of(obj, *path, default=None):
    """Walk dicts, SDK objects and lists alike: field_of(evt, "data", "object", "id")."""
    current = obj
    for key in path:
        if current is None:
            return default
        if isinstance(key, int):
            try:
                current = current[key]
            except (IndexError, KeyError, TypeError):
                return default
        elif isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return default if current is None else current


def to_major_units(amount: int) -> str:
    """Minor units to a two-decimal string, e.g. 1590 -> '15.90'."""
    sign = "-" if amount < 0 else ""
    amount = abs(amount)
    return f"{sign}{amount // 100}.{amount % 100:02d}"


def to_minor_units(value) -> int:
    return int((Decimal(str(value)) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def resolve_gateway(gateways: Mapping[str, ProviderGateway], provider) -> ProviderGateway:
    key = provider.value if isinstance(provider, ProviderKind) else str(provider or "").lower()
    gateway = gateways.get(key)
    if gateway is None:
        raise PaymentValidationError(
            f"Payment provider {provider!r} is not available", code="PROVIDER_UNAVAILABLE"
        )
    return gateway
