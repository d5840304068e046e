# models/payout_event.py
"""
PayoutEvent model - delivery-status events received from the payout rail.

Existence of a row means the event id has been processed; replays hit the unique
constraint and are ignored.
"""
from sqlalchemy import Column, DateTime, Integer, String

from utils.clock import utcnow
from .base import Base


class PayoutEvent(Base):

     id = Column(Integer, primary_key=True, autoincrement=True)
     event_id = Column(String(128), nullable=False, unique=True, index=True)
     event_type = Column(String(100), nullable=False)
     outcome = Column(String(32), nullable=False)
     payout_reference = Column(String(128), nullable=True, index=True)
     receipt_id = Column(Integer, nullable=True, index=True)
     received_at = Column(DateTime, default=utcnow, nullable=False)

     def __repr__(self):
          return f"<PayoutEvent(event_id='{self.event_id}', outcome='{self.outcome}', reference='{self.payout_reference}')>"
