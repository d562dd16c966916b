from concurrent.futures import ThreadPoolExecutor

from learnpay.circuit_breaker import CircuitBreaker, DatabaseBreakerStore, InMemoryBreakerStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_opens_after_threshold_and_half_opens_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("card", failure_threshold=3, cooldown_ms=30000, clock=clock)

    for _ in range(2):
        breaker.record_failure()
    assert breaker.allow_request()

    breaker.record_failure()
    assert breaker.is_open

    clock.now += 29.9
    assert not breaker.allow_request()
    clock.now += 0.2
    assert breaker.allow_request()


def test_success_resets_failures():
    clock = FakeClock()
    breaker = CircuitBreaker("wallet", failure_threshold=2, cooldown_ms=1000, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.now += 5
    assert breaker.allow_request()

    breaker.record_success()
    assert breaker.store.snapshot("wallet").failure_count == 0
    breaker.record_failure()
    assert breaker.allow_request()


def test_trial_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("escrow", failure_threshold=1, cooldown_ms=1000, clock=clock)
    breaker.record_failure()
    clock.now += 2
    assert breaker.allow_request()

    breaker.record_failure()
    assert not breaker.allow_request()


def test_in_memory_store_counts_concurrent_failures():
    store = InMemoryBreakerStore()
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: store.record_failure("card", 1000, 0.0), range(200)))
    assert store.snapshot("card").failure_count == 200


def test_breakers_share_state_through_store():
    store = InMemoryBreakerStore()
    first = CircuitBreaker("card", store=store, failure_threshold=2)
    second = CircuitBreaker("card", store=store, failure_threshold=2)
    first.record_failure()
    second.record_failure()
    assert first.is_open and second.is_open


def test_database_store(session_factory):
    clock = FakeClock()
    store = DatabaseBreakerStore(session_factory)
    breaker = CircuitBreaker("payments.card", store=store, failure_threshold=2, cooldown_ms=1000, clock=clock)

    assert breaker.allow_request()
    breaker.record_failure()
    assert store.snapshot("payments.card").failure_count == 1
    assert breaker.allow_request()

    breaker.record_failure()
    snapshot = store.snapshot("payments.card")
    assert snapshot.failure_count == 2
    assert snapshot.opened_at == clock.now
    assert not breaker.allow_request()

    breaker.record_success()
    assert store.snapshot("payments.card").opened_at is None
    assert breaker.allow_request()


def test_only_one_trial_call_after_cooldown():
    clock = FakeClock()
    store = InMemoryBreakerStore()
    first = CircuitBreaker("card", store=store, failure_threshold=1, cooldown_ms=1000, clock=clock)
    second = CircuitBreaker("card", store=store, failure_threshold=1, cooldown_ms=1000, clock=clock)
    first.record_failure()

    clock.now += 2
    assert first.allow_request()
    assert not second.allow_request()
    assert not first.allow_request()

    first.record_success()
    assert second.allow_request()


def test_database_store_admits_one_trial(session_factory):
    clock = FakeClock()
    store = DatabaseBreakerStore(session_factory)
    breaker = CircuitBreaker("payments.wallet", store=store, failure_threshold=1, cooldown_ms=1000, clock=clock)
    breaker.record_failure()

    clock.now += 2
    assert breaker.allow_request()
    assert not breaker.allow_request()
    assert store.snapshot("payments.wallet").opened_at == clock.now


class CountingSessionFactory:
    def __init__(self, factory):
        self.factory = factory
        self.transactions = 0

    def __call__(self):
        return self.factory()

    def begin(self):
        self.transactions += 1
        return self.factory.begin()


def test_database_store_creates_breaker_row_once(session_factory):
    factory = CountingSessionFactory(session_factory)
    store = DatabaseBreakerStore(factory)

    store.record_failure("payments.escrow", 5, 0.0)
    assert factory.transactions == 2
    store.record_failure("payments.escrow", 5, 0.0)
    store.record_failure("payments.escrow", 5, 0.0)
    assert factory.transactions == 4
    assert store.snapshot("payments.escrow").failure_count == 3
