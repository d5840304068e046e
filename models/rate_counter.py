# models/rate_counter.py
from sqlalchemy import Column, DateTime, Integer, String

from .base import Base


class RateCounter(Base):
     """
     Fixed-window counter. One row per bucket ("scan:203.0.113.9", "payout:jane@example.com");
     the row is reset in place when its window has elapsed.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     bucket_key = Column(String(255), nullable=False, unique=True, index=True)
     window_start = Column(DateTime, nullable=False)
     count = Column(Integer, nullable=False, default=0)

     def __repr__(self):
          return f"<RateCounter(bucket_key='{self.bucket_key}', count={self.count}, window_start={self.window_start})>"
