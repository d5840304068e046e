# models/receipt_record.py
"""
ReceiptRecord model - proof of purchase and the rebate it settles.

status is a closed enum; ReviewStateMachine (services/review_state_machine.py)
is the only writer of status and of the payout_* columns.
"""
import enum

from sqlalchemy import (
     Boolean,
     CheckConstraint,
     Column,
     DateTime,
     Enum,
     Float,
     ForeignKey,
     Index,
     Integer,
     Numeric,
     String,
     Text,
     text,
)
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin
from .scan_record import _enum_values


class ReceiptStatus(str, enum.Enum):
     """Lifecycle of a receipt."""
     SUBMITTED = "submitted"
     APPROVED = "approved"
     REJECTED = "rejected"
     PAID = "paid"


class ReceiptRecord(TimestampMixin, Base):
     """
     A rebate claim. One per session, enforced by the unique session_id column.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     session_id = Column(
          String(64),
          ForeignKey("scan_records.session_id", ondelete="RESTRICT"),
          nullable=False,
          unique=True,  # One receipt per session, ever
          index=True,
     )
     content_hash = Column(String(64), nullable=False, index=True)
     recipient_identity = Column(String(255), nullable=False, index=True)
     amount = Column(Numeric(12, 2), nullable=False)
     image_url = Column(String(500), nullable=True)

     status = Column(
          Enum(ReceiptStatus, name="receipt_status", create_constraint=True, values_callable=_enum_values),
          default=ReceiptStatus.SUBMITTED,
          nullable=False,
          index=True,
     )
     review_reason = Column(Text, nullable=True)
     admin_notes = Column(Text, nullable=True)

     # Review
     confidence_score = Column(Float, nullable=True)
     auto_approved = Column(Boolean, default=False, nullable=False)
     auto_approved_at = Column(DateTime, nullable=True)

     # Payout
     payout_reference = Column(String(128), nullable=True, index=True)
     payout_idempotency_key = Column(String(128), nullable=True)
     payout_attempts = Column(Integer, default=0, nullable=False)
     payout_claimed_at = Column(DateTime, nullable=True)  # Non-null while a disbursement is in flight
     payout_confirmed_at = Column(DateTime, nullable=True)
     paid_at = Column(DateTime, nullable=True)

     # Relationships
     scan = relationship("ScanRecord", back_populates="receipt", uselist=False)

     __table_args__ = (
          Index(
               "uq_receipt_records_active_content_hash",
               "content_hash",
               unique=True,
               sqlite_where=text("status <> 'rejected'"),
               postgresql_where=text("status <> 'rejected'"),
               mssql_where=text("status <> 'rejected'"),
          ),
          CheckConstraint(
               "(status = 'paid' AND payout_reference IS NOT NULL) "
               "OR (status <> 'paid' AND payout_reference IS NULL)",
               name="ck_receipt_records_reference_only_when_paid",
          ),
     )

     def __repr__(self):
          return f"<ReceiptRecord(id={self.id}, session_id='{self.session_id}', status='{self.status.value}')>"

     @property
     def payout_in_flight(self) -> bool:
          """True while a disbursement was handed to the rail and its outcome is not settled."""
          return self.payout_claimed_at is not None
