# models/scan_record.py
"""
ScanRecord model - proof that a competitor product was photographed.

Each accepted scan issues a single-use session id; the session links the scan
to at most one ReceiptRecord.
"""
import enum

from sqlalchemy import JSON, Column, Enum, Float, Index, Integer, String, text
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin


class ScanStatus(str, enum.Enum):
     """Lifecycle of a scan."""
     AWAITING_RECEIPT = "awaiting_receipt"
     COMPLETED = "completed"
     REJECTED = "rejected"


def _enum_values(enum_cls):
     return [member.value for member in enum_cls]


class ScanRecord(TimestampMixin, Base):
     """
     A competitor-product scan.

     content_hash is unique across non-rejected scans; the partial unique index
     below is what actually enforces it under concurrent submissions.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     session_id = Column(String(64), nullable=False, unique=True, index=True)
     content_hash = Column(String(64), nullable=False, index=True)  # SHA-256 hex length
     source_address = Column(String(64), nullable=False, index=True)
     user_agent = Column(String(512), nullable=True)

     # Opaque classifier output
     detected_label = Column(String(255), nullable=True)
     confidence = Column(Float, nullable=True)
     bounding_box = Column(JSON, nullable=True)

     image_url = Column(String(500), nullable=True)
     status = Column(
          Enum(ScanStatus, name="scan_status", create_constraint=True, values_callable=_enum_values),
          default=ScanStatus.AWAITING_RECEIPT,
          nullable=False,
          index=True,
     )

     # Relationships
     receipt = relationship("ReceiptRecord", back_populates="scan", uselist=False)

     __table_args__ = (
          Index(
               "uq_scan_records_active_content_hash",
               "content_hash",
               unique=True,
               sqlite_where=text("status <> 'rejected'"),
               postgresql_where=text("status <> 'rejected'"),
               mssql_where=text("status <> 'rejected'"),
          ),
     )

     def __repr__(self):
          return f"<ScanRecord(id={self.id}, session_id='{self.session_id}', status='{self.status.value}')>"
