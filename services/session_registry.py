# services/session_registry.py
"""
Session Registry - single-use session ids binding one scan to one receipt.

A session id is issued when a scan is accepted. A receipt may be filed against it
while the scan is younger than the validity window and no receipt references it
yet. The registry only validates: the lease it grants is made exclusive by the
unique receipt_records.session_id constraint, checked when the receipt is inserted.
"""
import logging
import secrets
from datetime import datetime
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import Settings
from models import ReceiptRecord, ScanRecord, ScanStatus
from services.errors import SessionRejected
from utils.clock import utcnow

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"
EXPIRED = "expired"
ALREADY_CONSUMED = "already_consumed"


class SessionRegistry:

     def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
          self._settings = settings
          self._clock = clock

     def create_session(self) -> str:
          """
          Issue a new session id: {prefix}-{epoch millis}-{8 random hex chars}.
          The time component plus 32 random bits makes collisions negligible.
          """
          millis = int(self._clock().timestamp() * 1000)
          return f"{self._settings.session_prefix}-{millis}-{secrets.token_hex(4)}"

     def is_expired(self, scan: ScanRecord) -> bool:
          return self._clock() - scan.created_at > self._settings.session_validity

     def validate(self, db: Session, session_id: str) -> ScanRecord:
          """
          Check that session_id can still accept a receipt.

          Raises:
               SessionRejected: not_found, expired (also for rejected scans) or already_consumed
          """
          scan = db.query(ScanRecord).populate_existing().filter(ScanRecord.session_id == session_id).first()
          if scan is None:
               raise SessionRejected(NOT_FOUND, session_id)

          if scan.status == ScanStatus.REJECTED or self.is_expired(scan):
               raise SessionRejected(EXPIRED, session_id)

          consumed = scan.status == ScanStatus.COMPLETED or (
               db.query(ReceiptRecord.id).filter(ReceiptRecord.session_id == session_id).first() is not None
          )
          if consumed:
               raise SessionRejected(ALREADY_CONSUMED, session_id)

          return scan

     def validate_and_consume(self, db: Session, session_id: str) -> ScanRecord:
          """
          Validate and grant the caller a lease to create exactly one receipt.

          The lease is not recorded here. Two callers can both be granted one; the
          unique constraint on receipt_records.session_id lets only the first insert
          commit and the loser reports already_consumed.
          """
          scan = self.validate(db, session_id)
          logger.info(f"Session {session_id} leased for receipt submission")
          return scan

     def complete(self, db: Session, session_id: str) -> bool:
          """Mark the scan completed. Runs inside the receipt insert transaction."""
          updated = db.execute(
               update(ScanRecord)
               .where(
                    ScanRecord.session_id == session_id,
                    ScanRecord.status == ScanStatus.AWAITING_RECEIPT,
               )
               .values(status=ScanStatus.COMPLETED, updated_at=self._clock())
               .execution_options(synchronize_session=False)
          ).rowcount
          return bool(updated)

     def reject_scan(self, db: Session, session_id: str, reason: str) -> ScanRecord:
          """
          Operator rejection of a scan still awaiting its receipt. Frees the content
          hash and closes the session.
          """
          updated = db.execute(
               update(ScanRecord)
               .where(
                    ScanRecord.session_id == session_id,
                    ScanRecord.status == ScanStatus.AWAITING_RECEIPT,
               )
               .values(status=ScanStatus.REJECTED, updated_at=self._clock())
               .execution_options(synchronize_session=False)
          ).rowcount
          if updated:
               db.commit()
          else:
               db.rollback()
          scan = db.query(ScanRecord).populate_existing().filter(ScanRecord.session_id == session_id).first()
          if scan is None:
               raise SessionRejected(NOT_FOUND, session_id)
          if not updated:
               if scan.status == ScanStatus.REJECTED:
                    return scan
               raise SessionRejected(ALREADY_CONSUMED, session_id)
          logger.info(f"Scan {session_id} rejected by operator: {reason}")
          return scan
