# services/rate_limiter.py
"""
Fixed-window rate limiting backed by the rate_counters table.

Each bucket ("scan:{address}", "payout:{recipient}") is one row holding the
window start and the number of events counted in that window. Every mutation is
a single conditional statement, so concurrent callers (threads or separate
processes) can never push a bucket past its ceiling:

1. UPDATE ... SET count = count + 1 WHERE window active AND count < ceiling
2. UPDATE ... SET count = 1, window_start = now WHERE window expired
3. INSERT a fresh row (unique bucket_key; a lost race retries from step 1)

Counters live in their own short transactions, separate from the caller's
session. Callers must not hold uncommitted writes when they call in.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import RateLimitPolicy
from models import RateCounter
from utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
     allowed: bool
     remaining: int
     retry_after: Optional[timedelta] = None


class RateLimiter:
     """Atomic fixed-window counters."""

     MAX_ATTEMPTS = 5

     def __init__(self, clock: Callable[[], datetime] = utcnow):
          self._clock = clock

     @staticmethod
     def _counter_session(db: Session) -> Session:
          return Session(bind=db.get_bind(), autoflush=False, expire_on_commit=False)

     def check_and_increment(
          self,
          db: Session,
          bucket_key: str,
          ceiling: int,
          window: timedelta,
     ) -> RateDecision:
          """
          Count one event against bucket_key.

          Returns an allowed decision if the event fits under the ceiling for the
          active window, otherwise a refused decision carrying the time left until
          the window resets.
          """
          if ceiling <= 0:
               return RateDecision(allowed=False, remaining=0, retry_after=window)

          for _ in range(self.MAX_ATTEMPTS):
               now = self._clock()
               window_floor = now - window
               with self._counter_session(db) as counter_db:
                    try:
                         with counter_db.begin():
                              decision = self._try_increment(counter_db, bucket_key, ceiling, window, now, window_floor)
                    except IntegrityError:
                         # Another caller created the row first; count against it instead
                         decision = None
               if decision is not None:
                    return decision

          raise RuntimeError(f"Rate counter {bucket_key} kept changing under contention")

     def _try_increment(
          self,
          counter_db: Session,
          bucket_key: str,
          ceiling: int,
          window: timedelta,
          now: datetime,
          window_floor: datetime,
     ) -> Optional[RateDecision]:
          bumped = counter_db.execute(
               update(RateCounter)
               .where(
                    RateCounter.bucket_key == bucket_key,
                    RateCounter.window_start > window_floor,
                    RateCounter.count < ceiling,
               )
               .values(count=RateCounter.count + 1)
               .execution_options(synchronize_session=False)
          ).rowcount
          if bumped:
               count = counter_db.scalar(select(RateCounter.count).where(RateCounter.bucket_key == bucket_key))
               return RateDecision(allowed=True, remaining=max(0, ceiling - (count or ceiling)))

          reset = counter_db.execute(
               update(RateCounter)
               .where(
                    RateCounter.bucket_key == bucket_key,
                    RateCounter.window_start <= window_floor,
               )
               .values(count=1, window_start=now)
               .execution_options(synchronize_session=False)
          ).rowcount
          if reset:
               return RateDecision(allowed=True, remaining=ceiling - 1)

          row = counter_db.execute(
               select(RateCounter.window_start, RateCounter.count).where(RateCounter.bucket_key == bucket_key)
          ).first()
          if row is None:
               counter_db.add(RateCounter(bucket_key=bucket_key, window_start=now, count=1))
               counter_db.flush()
               return RateDecision(allowed=True, remaining=ceiling - 1)

          window_start, count = row
          if window_start > window_floor and count >= ceiling:
               retry_after = (window_start + window) - now
               return RateDecision(allowed=False, remaining=0, retry_after=max(retry_after, timedelta(seconds=1)))

          # Row moved between statements; start over
          return None

     def peek(self, db: Session, bucket_key: str, ceiling: int, window: timedelta) -> RateDecision:
          """Report the bucket's state without counting an event."""
          now = self._clock()
          row = db.execute(
               select(RateCounter.window_start, RateCounter.count).where(RateCounter.bucket_key == bucket_key)
          ).first()
          if row is None or row.window_start <= now - window:
               return RateDecision(allowed=ceiling > 0, remaining=max(ceiling, 0))
          remaining = max(0, ceiling - row.count)
          if remaining:
               return RateDecision(allowed=True, remaining=remaining)
          return RateDecision(allowed=False, remaining=0, retry_after=(row.window_start + window) - now)

     def release(self, db: Session, bucket_key: str, window: timedelta) -> bool:
          """
          Give back one event in the active window (e.g. a payout that the rail
          definitively refused). No-op once the window has rolled over.
          """
          now = self._clock()
          with self._counter_session(db) as counter_db, counter_db.begin():
               released = counter_db.execute(
                    update(RateCounter)
                    .where(
                         RateCounter.bucket_key == bucket_key,
                         RateCounter.window_start > now - window,
                         RateCounter.count > 0,
                    )
                    .values(count=RateCounter.count - 1)
                    .execution_options(synchronize_session=False)
               ).rowcount
          return bool(released)

     # Policy helpers

     def consume(self, db: Session, policy: RateLimitPolicy, subject: str) -> RateDecision:
          if not policy.enabled:
               return RateDecision(allowed=True, remaining=policy.ceiling)
          decision = self.check_and_increment(db, policy.bucket_key(subject), policy.ceiling, policy.window)
          if not decision.allowed:
               logger.info(f"Rate limit reached for {policy.metric} (retry after {decision.retry_after})")
          return decision

     def status(self, db: Session, policy: RateLimitPolicy, subject: str) -> RateDecision:
          if not policy.enabled:
               return RateDecision(allowed=True, remaining=policy.ceiling)
          return self.peek(db, policy.bucket_key(subject), policy.ceiling, policy.window)

     def refund(self, db: Session, policy: RateLimitPolicy, subject: str) -> bool:
          if not policy.enabled:
               return False
          return self.release(db, policy.bucket_key(subject), policy.window)
