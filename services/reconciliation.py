# services/reconciliation.py
"""
Reconciliation Listener - applies asynchronous delivery-status events from the
payout rail to receipts.

Events are idempotent twice over:
- a PayoutEvent row is inserted per rail event id; a replayed id hits the
  unique constraint and is dropped before anything else happens
- every state change is a conditional write against the current shape of the
  receipt, so an event whose effect is already visible (reference cleared,
  payout already confirmed) changes nothing
"""
import enum
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from models import PayoutEvent, ReceiptRecord, ReceiptStatus
from services.errors import TransitionConflict
from services.rate_limiter import RateLimiter
from services.review_state_machine import ReviewStateMachine, receipt_id_from_key
from utils.clock import utcnow

logger = logging.getLogger(__name__)

EVENT_PREFIX = "PAYMENT.PAYOUTS-ITEM."


class DeliveryOutcome(str, enum.Enum):
     SUCCEEDED = "succeeded"
     FAILED = "failed"
     BLOCKED = "blocked"
     DENIED = "denied"
     CANCELED = "canceled"
     RETURNED = "returned"
     REFUNDED = "refunded"
     HELD = "held"
     UNCLAIMED = "unclaimed"
     UNKNOWN = "unknown"


FAILURE_OUTCOMES = frozenset({
     DeliveryOutcome.FAILED,
     DeliveryOutcome.BLOCKED,
     DeliveryOutcome.DENIED,
     DeliveryOutcome.CANCELED,
     DeliveryOutcome.RETURNED,
     DeliveryOutcome.REFUNDED,
})
INFORMATIONAL_OUTCOMES = frozenset({DeliveryOutcome.HELD, DeliveryOutcome.UNCLAIMED})


def outcome_from_event_type(event_type: str) -> DeliveryOutcome:
     """PAYMENT.PAYOUTS-ITEM.RETURNED -> DeliveryOutcome.RETURNED"""
     if not event_type or not event_type.startswith(EVENT_PREFIX):
          return DeliveryOutcome.UNKNOWN
     try:
          return DeliveryOutcome(event_type[len(EVENT_PREFIX):].lower())
     except ValueError:
          return DeliveryOutcome.UNKNOWN


class ReconciliationResult(str, enum.Enum):
     APPLIED = "applied"
     NOOP = "noop"
     DUPLICATE = "duplicate"
     UNMATCHED = "unmatched"


class ReconciliationListener:

     def __init__(self, settings: Settings, state_machine: ReviewStateMachine, rate_limiter: RateLimiter):
          self._settings = settings
          self._state_machine = state_machine
          self._rate_limiter = rate_limiter

     def _record_event(
          self,
          db: Session,
          event_id: str,
          event_type: Optional[str],
          outcome: DeliveryOutcome,
          payout_reference: Optional[str],
          receipt_id: Optional[int],
     ) -> bool:
          """Insert the event id. False if it was processed before."""
          db.add(PayoutEvent(
               event_id=event_id,
               event_type=event_type or outcome.value,
               outcome=outcome.value,
               payout_reference=payout_reference,
               receipt_id=receipt_id,
               received_at=utcnow(),
          ))
          try:
               db.commit()
          except IntegrityError:
               db.rollback()
               return False
          return True

     def _find_receipt(self, db: Session, payout_reference: Optional[str], idempotency_key: Optional[str]) -> Optional[ReceiptRecord]:
          if payout_reference:
               receipt = (
                    db.query(ReceiptRecord)
                    .populate_existing()
                    .filter(ReceiptRecord.payout_reference == payout_reference)
                    .first()
               )
               if receipt is not None:
                    return receipt
          if idempotency_key:
               # Only the attempt still awaiting its outcome under this very key;
               # events for earlier, released attempts match nothing
               return (
                    db.query(ReceiptRecord)
                    .populate_existing()
                    .filter(
                         ReceiptRecord.payout_idempotency_key == idempotency_key,
                         ReceiptRecord.status == ReceiptStatus.APPROVED,
                         ReceiptRecord.payout_claimed_at.is_not(None),
                    )
                    .first()
               )
          return None

     def on_delivery_event(
          self,
          db: Session,
          payout_reference: Optional[str],
          outcome: DeliveryOutcome,
          event_id: Optional[str] = None,
          event_type: Optional[str] = None,
          idempotency_key: Optional[str] = None,
          reason: Optional[str] = None,
     ) -> ReconciliationResult:
          """
          Apply one delivery outcome.

          payout_reference is the rail's payout item id; idempotency_key (the
          sender_item_id we sent) lets an event resolve the attempt whose
          synchronous outcome was never recorded, and only that attempt.
          """
          receipt_id = receipt_id_from_key(idempotency_key)
          if event_id and not self._record_event(db, event_id, event_type, outcome, payout_reference, receipt_id):
               logger.info(f"Payout event {event_id} already processed")
               return ReconciliationResult.DUPLICATE

          try:
               return self._apply(db, payout_reference, outcome, event_type, idempotency_key, reason)
          except Exception:
               # Let the rail's redelivery process the event again
               if event_id:
                    self._forget_event(db, event_id)
               raise

     def _forget_event(self, db: Session, event_id: str) -> None:
          db.rollback()
          db.query(PayoutEvent).filter(PayoutEvent.event_id == event_id).delete(synchronize_session=False)
          db.commit()

     def _apply(
          self,
          db: Session,
          payout_reference: Optional[str],
          outcome: DeliveryOutcome,
          event_type: Optional[str],
          idempotency_key: Optional[str],
          reason: Optional[str],
     ) -> ReconciliationResult:
          receipt = self._find_receipt(db, payout_reference, idempotency_key)
          if receipt is None:
               # Also the shape of a replay after a reversal cleared the reference
               logger.error(f"No receipt matches payout {payout_reference} (attempt {idempotency_key}, {outcome.value})")
               return ReconciliationResult.UNMATCHED

          try:
               if outcome == DeliveryOutcome.SUCCEEDED:
                    return self._on_success(db, receipt, payout_reference)
               if outcome in FAILURE_OUTCOMES:
                    return self._on_failure(db, receipt, payout_reference, outcome, reason)
          except TransitionConflict as e:
               logger.info(f"Receipt {receipt.id}: {outcome.value} event lost a race, nothing applied ({e})")
               return ReconciliationResult.NOOP

          if outcome in INFORMATIONAL_OUTCOMES:
               self._state_machine.add_note(db, receipt.id, f"Payout {payout_reference} {outcome.value}")
               logger.info(f"Receipt {receipt.id}: payout {payout_reference} {outcome.value}")
          else:
               logger.info(f"Receipt {receipt.id}: ignoring payout event {event_type or outcome.value}")
          return ReconciliationResult.NOOP

     def _on_success(self, db: Session, receipt: ReceiptRecord, payout_reference: str) -> ReconciliationResult:
          if receipt.status == ReceiptStatus.APPROVED and receipt.payout_in_flight:
               if not payout_reference:
                    return ReconciliationResult.NOOP
               receipt = self._state_machine.mark_paid(db, receipt.id, receipt.payout_idempotency_key, payout_reference)
          if receipt.status != ReceiptStatus.PAID:
               return ReconciliationResult.NOOP
          if self._state_machine.confirm_payout(db, receipt.id, receipt.payout_reference):
               return ReconciliationResult.APPLIED
          return ReconciliationResult.NOOP

     def _on_failure(
          self,
          db: Session,
          receipt: ReceiptRecord,
          payout_reference: Optional[str],
          outcome: DeliveryOutcome,
          reason: Optional[str],
     ) -> ReconciliationResult:
          detail = outcome.value if not reason else f"{outcome.value}: {reason}"

          if receipt.status == ReceiptStatus.PAID:
               if receipt.payout_confirmed_at is not None:
                    logger.error(f"Receipt {receipt.id}: {outcome.value} received for confirmed payout {receipt.payout_reference}; ignored")
                    self._state_machine.add_note(db, receipt.id, f"Ignored {outcome.value} event for confirmed payout")
                    return ReconciliationResult.NOOP
               self._state_machine.revert_payout(db, receipt.id, receipt.payout_reference, detail)
          elif receipt.status == ReceiptStatus.APPROVED and receipt.payout_in_flight:
               self._state_machine.release_claim(db, receipt.id, receipt.payout_idempotency_key, detail)
          else:
               return ReconciliationResult.NOOP

          self._rate_limiter.refund(db, self._settings.payout_rate_limit, receipt.recipient_identity)
          logger.warning(f"Receipt {receipt.id}: payout {payout_reference} {detail}; back to approved")
          return ReconciliationResult.APPLIED
