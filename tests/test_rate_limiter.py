from datetime import timedelta

from config import RateLimitPolicy
from models import RateCounter
from services.rate_limiter import RateLimiter

WINDOW = timedelta(hours=24)


def test_allows_up_to_ceiling_then_refuses(db, clock) -> None:
    limiter = RateLimiter(clock=clock)

    decisions = [limiter.check_and_increment(db, "scan:10.0.0.1", 3, WINDOW) for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    clock.advance(hours=1)
    refused = limiter.check_and_increment(db, "scan:10.0.0.1", 3, WINDOW)
    assert not refused.allowed
    assert refused.retry_after == timedelta(hours=23)

    counter = db.query(RateCounter).filter_by(bucket_key="scan:10.0.0.1").one()
    assert counter.count == 3


def test_new_window_resets_count(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    for _ in range(3):
        limiter.check_and_increment(db, "scan:10.0.0.1", 3, WINDOW)
    assert not limiter.check_and_increment(db, "scan:10.0.0.1", 3, WINDOW).allowed

    clock.advance(hours=24, seconds=1)
    decision = limiter.check_and_increment(db, "scan:10.0.0.1", 3, WINDOW)
    assert decision.allowed
    assert decision.remaining == 2


def test_buckets_are_independent(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    assert limiter.check_and_increment(db, "payout:a@example.com", 1, WINDOW).allowed
    assert not limiter.check_and_increment(db, "payout:a@example.com", 1, WINDOW).allowed
    assert limiter.check_and_increment(db, "payout:b@example.com", 1, WINDOW).allowed
    assert limiter.check_and_increment(db, "scan:a@example.com", 1, WINDOW).allowed


def test_peek_does_not_count(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    assert limiter.peek(db, "scan:10.0.0.2", 2, WINDOW).remaining == 2

    limiter.check_and_increment(db, "scan:10.0.0.2", 2, WINDOW)
    for _ in range(3):
        status = limiter.peek(db, "scan:10.0.0.2", 2, WINDOW)
        assert status.allowed
        assert status.remaining == 1

    limiter.check_and_increment(db, "scan:10.0.0.2", 2, WINDOW)
    status = limiter.peek(db, "scan:10.0.0.2", 2, WINDOW)
    assert not status.allowed
    assert status.retry_after > timedelta(0)


def test_release_gives_back_one_event(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    limiter.check_and_increment(db, "payout:a@example.com", 1, WINDOW)
    assert limiter.release(db, "payout:a@example.com", WINDOW)
    assert limiter.check_and_increment(db, "payout:a@example.com", 1, WINDOW).allowed


def test_release_after_window_rollover_is_noop(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    limiter.check_and_increment(db, "payout:a@example.com", 1, WINDOW)
    clock.advance(days=2)
    assert not limiter.release(db, "payout:a@example.com", WINDOW)


def test_zero_ceiling_always_refuses(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    decision = limiter.check_and_increment(db, "scan:10.0.0.3", 0, WINDOW)
    assert not decision.allowed
    assert db.query(RateCounter).count() == 0


def test_disabled_policy_always_allows(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    policy = RateLimitPolicy("payout", 1, timedelta(days=30), enabled=False)
    for _ in range(5):
        assert limiter.consume(db, policy, "a@example.com").allowed
    assert db.query(RateCounter).count() == 0


def test_caller_session_does_not_see_stale_count(db, clock) -> None:
    limiter = RateLimiter(clock=clock)
    policy = RateLimitPolicy("scan", 2, WINDOW)
    limiter.consume(db, policy, "10.0.0.4")
    assert limiter.status(db, policy, "10.0.0.4").remaining == 1
    limiter.consume(db, policy, "10.0.0.4")
    assert limiter.status(db, policy, "10.0.0.4").remaining == 0
