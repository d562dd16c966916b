"""
Circuit breaker shared by every call to one payment provider.

State lives in a store so that concurrent callers (and, with the database
store, several processes) see the same failure count.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from learnpay.logging_config import get_logger
from learnpay.models import CircuitBreakerState

logger = get_logger("circuit_breaker")


@dataclass(frozen=True)
class BreakerSnapshot:
    failure_count: int = 0
    opened_at: Optional[float] = None


class InMemoryBreakerStore:
    """Process-local store; increments are serialized by a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states = {}

    def snapshot(self, name) -> BreakerSnapshot:
        with self._lock:
            return self._states.get(name, BreakerSnapshot())

    def record_failure(self, name, threshold, now) -> BreakerSnapshot:
        with self._lock:
            current = self._states.get(name, BreakerSnapshot())
            count = current.failure_count + 1
            opened_at = now if count >= threshold else current.opened_at
            self._states[name] = BreakerSnapshot(count, opened_at)
            return self._states[name]

    def claim_trial(self, name, opened_at, now) -> bool:
        with self._lock:
            current = self._states.get(name, BreakerSnapshot())
            if current.opened_at != opened_at:
                return False
            self._states[name] = BreakerSnapshot(current.failure_count, now)
            return True

    def reset(self, name):
        with self._lock:
            self._states[name] = BreakerSnapshot()


class DatabaseBreakerStore:
    """Store backed by ``circuit_breaker_states``; counts are bumped with a
    single ``UPDATE`` so concurrent writers never lose an increment."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._known = set()

    def _ensure_row(self, name):
        if name in self._known:
            return
        try:
            with self.session_factory.begin() as db:
                if db.get(CircuitBreakerState, name) is None:
                    db.add(CircuitBreakerState(name=name, failure_count=0))
        except IntegrityError:
            # another worker created it first
            pass
        self._known.add(name)

    def snapshot(self, name) -> BreakerSnapshot:
        with self.session_factory() as db:
            row = db.get(CircuitBreakerState, name)
            if row is None:
                return BreakerSnapshot()
            return BreakerSnapshot(row.failure_count, row.opened_at)

    def record_failure(self, name, threshold, now) -> BreakerSnapshot:
        self._ensure_row(name)
        with self.session_factory.begin() as db:
            db.execute(
                update(CircuitBreakerState)
                .where(CircuitBreakerState.name == name)
                .values(failure_count=CircuitBreakerState.failure_count + 1)
            )
            db.execute(
                update(CircuitBreakerState)
                .where(CircuitBreakerState.name == name)
                .where(CircuitBreakerState.failure_count >= threshold)
                .values(opened_at=now)
            )
            row = db.get(CircuitBreakerState, name, populate_existing=True)
            return BreakerSnapshot(row.failure_count, row.opened_at)

    def claim_trial(self, name, opened_at, now) -> bool:
        with self.session_factory.begin() as db:
            claimed = db.execute(
                update(CircuitBreakerState)
                .where(CircuitBreakerState.name == name, CircuitBreakerState.opened_at == opened_at)
                .values(opened_at=now)
                .execution_options(synchronize_session=False)
            )
            return claimed.rowcount == 1

    def reset(self, name):
        with self.session_factory.begin() as db:
            db.execute(
                update(CircuitBreakerState)
                .where(CircuitBreakerState.name == name)
                .values(failure_count=0, opened_at=None)
            )


class CircuitBreaker:
    def __init__(self, name, store=None, failure_threshold=5, cooldown_ms=30000, clock=time.time):
        self.name = name
        self.store = store or InMemoryBreakerStore()
        self.failure_threshold = failure_threshold
        self.cooldown_ms = cooldown_ms
        self.clock = clock

    def _cooled_down(self, state, now) -> bool:
        return (now - state.opened_at) * 1000 >= self.cooldown_ms

    def allow_request(self) -> bool:
        state = self.store.snapshot(self.name)
        if state.opened_at is None:
            return True
        now = self.clock()
        if not self._cooled_down(state, now):
            return False
        # Only the caller that restamps opened_at gets the trial call.
        if self.store.claim_trial(self.name, state.opened_at, now):
            logger.info("circuit_half_open", breaker=self.name)
            return True
        return False

    def record_success(self):
        state = self.store.snapshot(self.name)
        if state.failure_count or state.opened_at is not None:
            self.store.reset(self.name)
            if state.opened_at is not None:
                logger.info("circuit_closed", breaker=self.name)

    def record_failure(self):
        state = self.store.record_failure(self.name, self.failure_threshold, self.clock())
        if state.failure_count == self.failure_threshold:
            logger.error("circuit_opened", breaker=self.name, failures=state.failure_count)
        return state

    @property
    def is_open(self) -> bool:
        state = self.store.snapshot(self.name)
        return state.opened_at is not None and not self._cooled_down(state, self.clock())
