# models/__init__.py
from .base import Base
from .scan_record import ScanRecord, ScanStatus
from .receipt_record import ReceiptRecord, ReceiptStatus
from .rate_counter import RateCounter
from .payout_event import PayoutEvent

__all__ = [
     "Base",
     "ScanRecord",
     "ScanStatus",
     "ReceiptRecord",
     "ReceiptStatus",
     "RateCounter",
     "PayoutEvent",
]
