# services/review_state_machine.py
"""
Review State Machine - the only writer of ReceiptRecord.status and payout fields.

    submitted --approve--> approved --mark_paid--> paid
        |                  |    ^                   |
        |                  |    +--failure loop-----+  (unconfirmed payouts only)
        +------reject------+--> rejected

Every transition is a single conditional UPDATE: it names the pre-state it
expects and only writes if the row still matches. Of two concurrent callers
exactly one sees rowcount == 1; the other gets TransitionConflict and must
re-read instead of overwriting.

Guards beyond the status column:
- reject requires no payout reference and no disbursement in flight
- a disbursement is claimed (payout_claimed_at) before the rail is called, so
  no second caller can start one for the same receipt
- once the rail has confirmed a payout (payout_confirmed_at) its reference is
  permanent
"""
import logging
import re
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import ReceiptRecord, ReceiptStatus
from services.errors import IllegalTransition, ReceiptNotFound, TransitionConflict
from utils.clock import utcnow

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^rebate-(\d+)-(\d+)$")

TRANSITIONS = {
     ReceiptStatus.SUBMITTED: frozenset({ReceiptStatus.APPROVED, ReceiptStatus.REJECTED}),
     ReceiptStatus.APPROVED: frozenset({ReceiptStatus.APPROVED, ReceiptStatus.PAID, ReceiptStatus.REJECTED}),
     ReceiptStatus.PAID: frozenset({ReceiptStatus.APPROVED}),
     ReceiptStatus.REJECTED: frozenset(),
}


def can_transition(current: ReceiptStatus, target: ReceiptStatus) -> bool:
     return target in TRANSITIONS[current]


def append_line(existing: Optional[str], line: str) -> str:
     return f"{existing}\n{line}" if existing else line


def idempotency_key(receipt_id: int, attempt: int) -> str:
     """Key of one disbursement attempt; also travels to the rail as sender_item_id."""
     return f"rebate-{receipt_id}-{attempt}"


def receipt_id_from_key(key: Optional[str]) -> Optional[int]:
     match = IDEMPOTENCY_KEY_PATTERN.match(key or "")
     return int(match.group(1)) if match else None


class ReviewStateMachine:

     def __init__(self, clock: Callable[[], datetime] = utcnow):
          self._clock = clock

     def _stamp(self, message: str) -> str:
          return f"[{self._clock().isoformat(timespec='seconds')}] {message}"

     def get(self, db: Session, receipt_id: int) -> ReceiptRecord:
          receipt = (
               db.query(ReceiptRecord)
               .populate_existing()
               .filter(ReceiptRecord.id == receipt_id)
               .first()
          )
          if receipt is None:
               raise ReceiptNotFound(f"Receipt {receipt_id} not found")
          return receipt

     def _apply(
          self,
          db: Session,
          receipt: ReceiptRecord,
          target: ReceiptStatus,
          conditions: tuple = (),
          **values,
     ) -> ReceiptRecord:
          """
          Conditionally move receipt from its loaded status to target.

          Raises:
               IllegalTransition: target is not reachable from the loaded status
               TransitionConflict: the row changed since it was loaded
          """
          current = receipt.status
          if not can_transition(current, target):
               raise IllegalTransition(current, target)

          values.setdefault("updated_at", self._clock())
          updated = db.execute(
               update(ReceiptRecord)
               .where(
                    ReceiptRecord.id == receipt.id,
                    ReceiptRecord.status == current,
                    *conditions,
               )
               .values(status=target, **values)
               .execution_options(synchronize_session=False)
          ).rowcount
          if updated != 1:
               db.rollback()
               raise TransitionConflict(
                    f"Receipt {receipt.id} is no longer {current.value}; {target.value} not applied"
               )
          db.commit()
          logger.info(f"Receipt {receipt.id}: {current.value} -> {target.value}")
          return self.get(db, receipt.id)

     # ------------------------------------------------------------------
     # Review decisions
     # ------------------------------------------------------------------

     def approve(
          self,
          db: Session,
          receipt_id: int,
          auto: bool = False,
          confidence: Optional[float] = None,
          actor: str = "operator",
     ) -> ReceiptRecord:
          """submitted -> approved, by rule (auto=True) or by an operator."""
          receipt = self.get(db, receipt_id)
          if receipt.status != ReceiptStatus.SUBMITTED:
               raise IllegalTransition(receipt.status, ReceiptStatus.APPROVED, "only submitted receipts can be approved")
          now = self._clock()
          values = {
               "auto_approved": auto,
               "auto_approved_at": now if auto else None,
               "admin_notes": append_line(
                    receipt.admin_notes,
                    self._stamp(
                         f"Auto-approved with {confidence:.2f} confidence" if auto else f"Approved by {actor}"
                    ),
               ),
          }
          if confidence is not None:
               values["confidence_score"] = confidence
          return self._apply(db, receipt, ReceiptStatus.APPROVED, **values)

     def flag_for_review(self, db: Session, receipt_id: int, reason: str, confidence: Optional[float] = None) -> ReceiptRecord:
          """Record why a submitted receipt was not auto-approved. Status stays submitted."""
          receipt = self.get(db, receipt_id)
          values = {
               "review_reason": reason,
               "auto_approved": False,
               "admin_notes": append_line(receipt.admin_notes, self._stamp(f"Flagged for manual review: {reason}")),
               "updated_at": self._clock(),
          }
          if confidence is not None:
               values["confidence_score"] = confidence
          updated = db.execute(
               update(ReceiptRecord)
               .where(ReceiptRecord.id == receipt_id, ReceiptRecord.status == ReceiptStatus.SUBMITTED)
               .values(**values)
               .execution_options(synchronize_session=False)
          ).rowcount
          if updated != 1:
               db.rollback()
               raise TransitionConflict(f"Receipt {receipt_id} is no longer submitted")
          db.commit()
          logger.info(f"Receipt {receipt_id} flagged for manual review: {reason}")
          return self.get(db, receipt_id)

     def reject(self, db: Session, receipt_id: int, reason: str, actor: str = "operator") -> ReceiptRecord:
          """
          submitted/approved -> rejected. Unreachable once a payout reference exists
          or while a disbursement is in flight.
          """
          receipt = self.get(db, receipt_id)
          if receipt.payout_reference is not None or receipt.payout_claimed_at is not None:
               raise IllegalTransition(receipt.status, ReceiptStatus.REJECTED, "a payout has already been submitted")
          return self._apply(
               db,
               receipt,
               ReceiptStatus.REJECTED,
               conditions=(
                    ReceiptRecord.payout_reference.is_(None),
                    ReceiptRecord.payout_claimed_at.is_(None),
               ),
               review_reason=reason,
               admin_notes=append_line(receipt.admin_notes, self._stamp(f"Rejected by {actor}: {reason}")),
          )

     # ------------------------------------------------------------------
     # Payout lifecycle
     # ------------------------------------------------------------------

     def claim_payout(self, db: Session, receipt_id: int) -> ReceiptRecord:
          """
          Reserve an approved receipt for one disbursement attempt and assign the
          attempt's idempotency key. Not a status change; the claim is the
          compare-and-swap that makes concurrent disbursements mutually exclusive.
          """
          receipt = self.get(db, receipt_id)
          if receipt.status != ReceiptStatus.APPROVED:
               raise IllegalTransition(receipt.status, ReceiptStatus.PAID, "only approved receipts can be paid out")
          attempt = receipt.payout_attempts + 1
          updated = db.execute(
               update(ReceiptRecord)
               .where(
                    ReceiptRecord.id == receipt_id,
                    ReceiptRecord.status == ReceiptStatus.APPROVED,
                    ReceiptRecord.payout_reference.is_(None),
                    ReceiptRecord.payout_claimed_at.is_(None),
                    ReceiptRecord.payout_attempts == receipt.payout_attempts,
               )
               .values(
                    payout_claimed_at=self._clock(),
                    payout_attempts=attempt,
                    payout_idempotency_key=idempotency_key(receipt_id, attempt),
                    updated_at=self._clock(),
               )
               .execution_options(synchronize_session=False)
          ).rowcount
          if updated != 1:
               db.rollback()
               raise TransitionConflict(f"Receipt {receipt_id} payout already in progress or settled")
          db.commit()
          logger.info(f"Receipt {receipt_id}: payout attempt {attempt} claimed")
          return self.get(db, receipt_id)

     def mark_paid(self, db: Session, receipt_id: int, idempotency_key: str, reference: str) -> ReceiptRecord:
          """approved -> paid for the attempt holding the claim."""
          receipt = self.get(db, receipt_id)
          now = self._clock()
          return self._apply(
               db,
               receipt,
               ReceiptStatus.PAID,
               conditions=(
                    ReceiptRecord.payout_idempotency_key == idempotency_key,
                    ReceiptRecord.payout_claimed_at.is_not(None),
                    ReceiptRecord.payout_reference.is_(None),
               ),
               payout_reference=reference,
               paid_at=now,
               payout_claimed_at=None,
               admin_notes=append_line(receipt.admin_notes, self._stamp(f"Payout accepted by rail: {reference}")),
          )

     def release_claim(self, db: Session, receipt_id: int, idempotency_key: str, reason: str) -> ReceiptRecord:
          """
          approved -> approved failure loop for an attempt that did not move money.
          The claim is dropped so a later attempt can take a new one.
          """
          receipt = self.get(db, receipt_id)
          line = self._stamp(f"Payout failed: {reason}")
          return self._apply(
               db,
               receipt,
               ReceiptStatus.APPROVED,
               conditions=(
                    ReceiptRecord.payout_idempotency_key == idempotency_key,
                    ReceiptRecord.payout_claimed_at.is_not(None),
                    ReceiptRecord.payout_reference.is_(None),
               ),
               payout_claimed_at=None,
               review_reason=append_line(receipt.review_reason, line),
               admin_notes=append_line(receipt.admin_notes, line),
          )

     def revert_payout(self, db: Session, receipt_id: int, reference: str, reason: str) -> ReceiptRecord:
          """
          paid -> approved when the rail reports that an accepted, not yet confirmed
          payout did not reach the recipient. The reference is cleared so a retry
          obtains a new one.
          """
          receipt = self.get(db, receipt_id)
          line = self._stamp(f"Payout {reference} {reason}")
          return self._apply(
               db,
               receipt,
               ReceiptStatus.APPROVED,
               conditions=(
                    ReceiptRecord.payout_reference == reference,
                    ReceiptRecord.payout_confirmed_at.is_(None),
               ),
               payout_reference=None,
               paid_at=None,
               review_reason=append_line(receipt.review_reason, line),
               admin_notes=append_line(receipt.admin_notes, line),
          )

     def confirm_payout(self, db: Session, receipt_id: int, reference: str) -> bool:
          """Record final settlement. Returns False if already confirmed (replay)."""
          receipt = self.get(db, receipt_id)
          updated = db.execute(
               update(ReceiptRecord)
               .where(
                    ReceiptRecord.id == receipt_id,
                    ReceiptRecord.status == ReceiptStatus.PAID,
                    ReceiptRecord.payout_reference == reference,
                    ReceiptRecord.payout_confirmed_at.is_(None),
               )
               .values(
                    payout_confirmed_at=self._clock(),
                    admin_notes=append_line(receipt.admin_notes, self._stamp(f"Payout {reference} confirmed")),
                    updated_at=self._clock(),
               )
               .execution_options(synchronize_session=False)
          ).rowcount
          db.commit()
          if updated:
               logger.info(f"Receipt {receipt_id}: payout {reference} confirmed")
          return bool(updated)

     def add_note(self, db: Session, receipt_id: int, message: str) -> ReceiptRecord:
          """Append an operator-facing note without touching state."""
          receipt = self.get(db, receipt_id)
          receipt.admin_notes = append_line(receipt.admin_notes, self._stamp(message))
          receipt.updated_at = self._clock()
          db.commit()
          return receipt
