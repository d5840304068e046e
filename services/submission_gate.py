# services/submission_gate.py
"""
Submission Gate - the fraud-prevention front door.

Every scan and receipt passes the same checks, in a fixed order, before any
record is written:

1. format / size of the upload
2. duplicate content (SHA-256, ignoring rejected records)
3. session validity (receipts only)
4. rate limit

The first failing check wins, so the caller always gets the most specific single
reason. Checks 2 and 3 are repeated by the database at insert time (partial
unique index on content_hash, unique receipt session_id); a submission that
loses a race there is reported with the same reason code, never as a crash.

precheck_scan / precheck_receipt run the same checks without writing anything,
so routers can turn a doomed upload away before paying for classification.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from azure_blob import RECEIPT_CONTAINER, SCAN_CONTAINER
from config import Settings
from models import ReceiptRecord, ReceiptStatus, ScanRecord, ScanStatus
from services.classifier import ClassifierOutput
from services.errors import RejectionReason, SessionRejected, SubmissionRejected
from services.fingerprint import fingerprint
from services.rate_limiter import RateLimiter
from services.session_registry import ALREADY_CONSUMED, EXPIRED, NOT_FOUND, SessionRegistry
from utils.clock import utcnow
from utils.masking import mask_identity

logger = logging.getLogger(__name__)

SESSION_REASONS = {
     NOT_FOUND: RejectionReason.SESSION_NOT_FOUND,
     EXPIRED: RejectionReason.SESSION_EXPIRED,
     ALREADY_CONSUMED: RejectionReason.SESSION_ALREADY_CONSUMED,
}


@dataclass(frozen=True)
class Upload:
     data: bytes
     content_type: str
     filename: Optional[str] = None

     @property
     def size(self) -> int:
          return len(self.data)


def normalize_identity(identity: str) -> str:
     """Recipient identities are compared case-insensitively (one bucket per mailbox)."""
     return (identity or "").strip().lower()


class SubmissionGate:

     def __init__(
          self,
          settings: Settings,
          rate_limiter: RateLimiter,
          registry: SessionRegistry,
          archive=None,
          clock: Callable[[], datetime] = utcnow,
     ):
          self._settings = settings
          self._rate_limiter = rate_limiter
          self._registry = registry
          self._archive = archive
          self._clock = clock

     # ------------------------------------------------------------------
     # Checks
     # ------------------------------------------------------------------

     def validate_upload(self, upload: Upload) -> None:
          content_type = (upload.content_type or "").lower()
          if content_type not in self._settings.allowed_image_types:
               raise SubmissionRejected(
                    RejectionReason.INVALID_FORMAT,
                    f"Unsupported image type {upload.content_type!r}; upload JPG, PNG or WebP",
               )
          if upload.size < self._settings.min_image_bytes:
               raise SubmissionRejected(
                    RejectionReason.SIZE_OUT_OF_BOUNDS,
                    "Image too small. Please take a clear photo.",
               )
          if upload.size > self._settings.max_image_bytes:
               raise SubmissionRejected(
                    RejectionReason.SIZE_OUT_OF_BOUNDS,
                    f"Image too large (max {self._settings.max_image_bytes // (1024 * 1024)}MB)",
               )

     @staticmethod
     def _scan_hash_taken(db: Session, content_hash: str) -> bool:
          return db.query(ScanRecord.id).filter(
               ScanRecord.content_hash == content_hash,
               ScanRecord.status != ScanStatus.REJECTED,
          ).first() is not None

     @staticmethod
     def _receipt_hash_taken(db: Session, content_hash: str) -> bool:
          return db.query(ReceiptRecord.id).filter(
               ReceiptRecord.content_hash == content_hash,
               ReceiptRecord.status != ReceiptStatus.REJECTED,
          ).first() is not None

     @staticmethod
     def _scan_rate_limited(decision) -> SubmissionRejected:
          return SubmissionRejected(
               RejectionReason.RATE_LIMITED,
               "Too many scans from this address. Please try again later.",
               retry_after=decision.retry_after,
          )

     @staticmethod
     def _recipient_rate_limited(decision) -> SubmissionRejected:
          return SubmissionRejected(
               RejectionReason.RATE_LIMITED,
               "This payout address has already received a rebate recently",
               retry_after=decision.retry_after,
          )

     # ------------------------------------------------------------------
     # Scans
     # ------------------------------------------------------------------

     def precheck_scan(self, db: Session, upload: Upload, source_address: str) -> None:
          """
          Every scan check, in order, without counting or writing. submit_scan
          repeats them authoritatively.

          Raises:
               SubmissionRejected: invalid_format, size_out_of_bounds, duplicate_image, rate_limited
          """
          self.validate_upload(upload)
          if self._scan_hash_taken(db, fingerprint(upload.data)):
               raise SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This image has already been scanned")
          decision = self._rate_limiter.status(db, self._settings.scan_rate_limit, source_address)
          if not decision.allowed:
               raise self._scan_rate_limited(decision)

     def submit_scan(
          self,
          db: Session,
          upload: Upload,
          source_address: str,
          classifier_output: ClassifierOutput,
          user_agent: Optional[str] = None,
     ) -> ScanRecord:
          """
          Accept a competitor-product scan and issue its session.

          Raises:
               SubmissionRejected: invalid_format, size_out_of_bounds, duplicate_image, rate_limited
          """
          self.validate_upload(upload)
          content_hash = fingerprint(upload.data)

          if self._scan_hash_taken(db, content_hash):
               logger.info(f"Scan rejected: duplicate image {content_hash[:12]}")
               raise SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This image has already been scanned")

          decision = self._rate_limiter.consume(db, self._settings.scan_rate_limit, source_address)
          if not decision.allowed:
               logger.info(f"Scan rejected: rate limited for {source_address}")
               raise self._scan_rate_limited(decision)

          scan = ScanRecord(
               session_id=self._registry.create_session(),
               content_hash=content_hash,
               source_address=source_address,
               user_agent=(user_agent or "")[:512] or None,
               detected_label=classifier_output.label,
               confidence=classifier_output.confidence,
               bounding_box=classifier_output.bounding_box,
               status=ScanStatus.AWAITING_RECEIPT,
               created_at=self._clock(),
          )
          db.add(scan)
          try:
               db.commit()
          except IntegrityError:
               db.rollback()
               # No scan was created, so the slot it counted goes back
               self._rate_limiter.refund(db, self._settings.scan_rate_limit, source_address)
               if self._scan_hash_taken(db, content_hash):
                    logger.info(f"Scan rejected: duplicate image {content_hash[:12]} (lost insert race)")
                    raise SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This image has already been scanned")
               raise

          logger.info(f"Scan accepted: session {scan.session_id} ({scan.detected_label}, {scan.confidence:.2f})")
          self._archive_upload(db, scan, upload, SCAN_CONTAINER)
          return scan

     # ------------------------------------------------------------------
     # Receipts
     # ------------------------------------------------------------------

     def precheck_receipt(self, db: Session, session_id: str, upload: Upload, recipient_identity: str) -> ScanRecord:
          """
          Every receipt check, in order, without consuming the session or
          writing anything. Returns the session's scan.

          Raises:
               SubmissionRejected: as submit_receipt
               ValueError: blank recipient
          """
          self.validate_upload(upload)
          recipient = normalize_identity(recipient_identity)
          if not recipient:
               raise ValueError("Recipient identity is required")
          if self._receipt_hash_taken(db, fingerprint(upload.data)):
               raise SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This receipt has already been submitted")
          try:
               scan = self._registry.validate(db, session_id)
          except SessionRejected as e:
               raise SubmissionRejected(SESSION_REASONS[e.reason], str(e)) from e
          decision = self._rate_limiter.status(db, self._settings.payout_rate_limit, recipient)
          if not decision.allowed:
               raise self._recipient_rate_limited(decision)
          return scan

     def submit_receipt(
          self,
          db: Session,
          session_id: str,
          upload: Upload,
          recipient_identity: str,
          amount: Decimal,
     ) -> ReceiptRecord:
          """
          Accept a proof of purchase against a scan session.

          A valid session does not exempt the receipt from its own duplicate and
          rate checks. On success the receipt is created in submitted status and the
          session is consumed.

          Raises:
               SubmissionRejected: any scan reason, plus session_not_found,
                    session_expired, session_already_consumed
          """
          self.validate_upload(upload)
          if amount is None or Decimal(amount) <= 0:
               raise ValueError("Rebate amount must be positive")
          recipient = normalize_identity(recipient_identity)
          if not recipient:
               raise ValueError("Recipient identity is required")
          content_hash = fingerprint(upload.data)

          if self._receipt_hash_taken(db, content_hash):
               logger.info(f"Receipt rejected: duplicate image {content_hash[:12]}")
               raise SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This receipt has already been submitted")

          try:
               self._registry.validate_and_consume(db, session_id)
          except SessionRejected as e:
               logger.info(f"Receipt rejected: session {session_id} {e.reason}")
               raise SubmissionRejected(SESSION_REASONS[e.reason], str(e)) from e

          # Payout eligibility is consumed at disbursement; here it is only checked
          decision = self._rate_limiter.status(db, self._settings.payout_rate_limit, recipient)
          if not decision.allowed:
               logger.info(f"Receipt rejected: recipient {mask_identity(recipient)} is rate limited")
               raise self._recipient_rate_limited(decision)

          now = self._clock()
          receipt = ReceiptRecord(
               session_id=session_id,
               content_hash=content_hash,
               recipient_identity=recipient,
               amount=Decimal(amount),
               status=ReceiptStatus.SUBMITTED,
               payout_attempts=0,
               created_at=now,
          )
          db.add(receipt)
          try:
               db.flush()
               completed = self._registry.complete(db, session_id)
               if not completed:
                    # Scan rejected by an operator after validation
                    db.rollback()
                    logger.info(f"Receipt rejected: session {session_id} closed during submission")
                    raise SubmissionRejected(RejectionReason.SESSION_EXPIRED, f"Session {session_id}: {EXPIRED}")
               db.commit()
          except IntegrityError:
               db.rollback()
               raise self._classify_receipt_conflict(db, session_id, content_hash)

          logger.info(f"Receipt {receipt.id} submitted for session {session_id}")
          self._archive_upload(db, receipt, upload, RECEIPT_CONTAINER)
          return receipt

     def _classify_receipt_conflict(self, db: Session, session_id: str, content_hash: str) -> Exception:
          if db.query(ReceiptRecord.id).filter(ReceiptRecord.session_id == session_id).first() is not None:
               logger.info(f"Receipt rejected: session {session_id} consumed by a concurrent submission")
               return SubmissionRejected(
                    RejectionReason.SESSION_ALREADY_CONSUMED,
                    f"Session {session_id}: {ALREADY_CONSUMED}",
               )
          if self._receipt_hash_taken(db, content_hash):
               logger.info(f"Receipt rejected: duplicate image {content_hash[:12]} (lost insert race)")
               return SubmissionRejected(RejectionReason.DUPLICATE_IMAGE, "This receipt has already been submitted")
          return RuntimeError(f"Receipt insert for session {session_id} violated an unexpected constraint")

     # ------------------------------------------------------------------

     def _archive_upload(self, db: Session, record, upload: Upload, container: str) -> None:
          if self._archive is None:
               return
          try:
               record.image_url = self._archive.upload(upload.data, upload.content_type, container, record.session_id)
               db.commit()
          except Exception as e:
               # The submission stands without its archived copy
               db.rollback()
               logger.error(f"Failed to archive upload for session {record.session_id}: {e}")
