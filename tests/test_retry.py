from goalflow.config import Settings
from goalflow.errors import classify_error
from goalflow.retry import CircuitBreaker, RetryPolicy


def test_backoff_doubles_up_to_the_cap() -> None:
    policy = RetryPolicy(max_retries=6, base_delay_seconds=1.0, max_delay_seconds=16.0)

    assert [policy.delay_for(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 16.0]


def test_only_transient_errors_are_retried() -> None:
    policy = RetryPolicy(max_retries=3)
    transient = classify_error("timeout")

    assert policy.should_retry(transient, 0)
    assert policy.should_retry(transient, 2)
    assert not policy.should_retry(transient, 3)
    assert not policy.should_retry(classify_error("validation"), 0)
    assert not policy.should_retry(classify_error("security"), 0)


def test_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(Settings(max_retries=5, retry_base_delay_seconds=0.5))

    assert policy.max_retries == 5
    assert policy.delay_for(1) == 1.0


def test_breaker_opens_and_resets_after_cool_down() -> None:
    now = [0.0]
    breaker = CircuitBreaker(threshold=3, reset_seconds=60, clock=lambda: now[0])

    for _ in range(3):
        breaker.record_failure("api")

    assert breaker.is_open("api")
    assert not breaker.is_open("database")

    now[0] = 59
    assert breaker.is_open("api")
    now[0] = 60
    assert not breaker.is_open("api")
    assert breaker.failures("api") == 0


def test_success_takes_one_failure_off() -> None:
    breaker = CircuitBreaker(threshold=3)

    breaker.record_failure("api")
    breaker.record_failure("api")
    breaker.record_success("api")
    breaker.record_failure("api")

    assert breaker.failures("api") == 2
    assert not breaker.is_open("api")
