# services/payout_orchestrator.py
"""
Payout Orchestrator - moves an approved receipt to paid through the payout rail.

disburse() runs the following sequence; each step commits before the next
blocks on I/O:

1. claim the receipt (conditional write: approved, no reference, no claim)
2. count the payout against the recipient's rate limit
3. submit the payout with the attempt's idempotency key
4. record the outcome

Outcome handling:
- accepted            -> approved -> paid with the rail's reference
- rejected / auth     -> approved -> approved (claim released, rate slot refunded)
- unknown (timeout..) -> nothing changes; the claim stays so no one can start a
                         second disbursement. Resolved by a webhook carrying the
                         attempt's idempotency key, resume() or release().
"""
import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from config import Settings
from models import ReceiptRecord, ReceiptStatus
from services.errors import (
     IllegalTransition,
     PayoutAuthError,
     PayoutConfigurationError,
     PayoutOutcomeUnknown,
     PayoutRejected,
     TransitionConflict,
)
from services.rate_limiter import RateLimiter
from services.review_state_machine import ReviewStateMachine
from utils.masking import mask_identity

logger = logging.getLogger(__name__)


class DisbursementStatus(str, enum.Enum):
     PAID = "paid"
     FAILED = "failed"
     UNKNOWN = "unknown"
     IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class DisbursementResult:
     status: DisbursementStatus
     receipt_id: int
     reference: Optional[str] = None
     reason: Optional[str] = None
     retryable: bool = False
     retry_after: Optional[timedelta] = None

     @property
     def paid(self) -> bool:
          return self.status == DisbursementStatus.PAID


class PayoutOrchestrator:

     def __init__(
          self,
          settings: Settings,
          state_machine: ReviewStateMachine,
          rate_limiter: RateLimiter,
          client,
     ):
          self._settings = settings
          self._state_machine = state_machine
          self._rate_limiter = rate_limiter
          self._client = client

     def _settled(self, receipt: ReceiptRecord) -> Optional[DisbursementResult]:
          if receipt.status == ReceiptStatus.PAID:
               return DisbursementResult(DisbursementStatus.PAID, receipt.id, reference=receipt.payout_reference)
          if receipt.payout_in_flight:
               return DisbursementResult(
                    DisbursementStatus.IN_PROGRESS,
                    receipt.id,
                    reason="A payout for this receipt is already in progress",
               )
          return None

     def disburse(self, db: Session, receipt_id: int) -> DisbursementResult:
          """
          Pay an approved receipt at most once.

          A caller that loses the claim race gets the winner's state (paid or
          in_progress) and never reaches the rail.

          Raises:
               ReceiptNotFound
               IllegalTransition: the receipt is not approved
          """
          receipt = self._state_machine.get(db, receipt_id)
          settled = self._settled(receipt)
          if settled:
               return settled
          if receipt.status != ReceiptStatus.APPROVED:
               raise IllegalTransition(receipt.status, ReceiptStatus.PAID, "only approved receipts can be paid out")

          try:
               receipt = self._state_machine.claim_payout(db, receipt_id)
          except TransitionConflict:
               current = self._state_machine.get(db, receipt_id)
               logger.info(f"Receipt {receipt_id}: concurrent disbursement detected ({current.status.value})")
               return self._settled(current) or DisbursementResult(
                    DisbursementStatus.IN_PROGRESS,
                    receipt_id,
                    reason="Receipt changed while claiming the payout",
               )

          key = receipt.payout_idempotency_key
          decision = self._rate_limiter.consume(db, self._settings.payout_rate_limit, receipt.recipient_identity)
          if not decision.allowed:
               reason = f"payout rate limit reached for {mask_identity(receipt.recipient_identity)}"
               self._state_machine.release_claim(db, receipt_id, key, reason)
               logger.info(f"Receipt {receipt_id}: {reason}")
               return DisbursementResult(
                    DisbursementStatus.FAILED,
                    receipt_id,
                    reason="rate_limited",
                    retryable=True,
                    retry_after=decision.retry_after,
               )

          return self._submit(db, receipt)

     def resume(self, db: Session, receipt_id: int) -> DisbursementResult:
          """
          Re-submit an attempt whose outcome is unknown, with the same idempotency
          key. PayPal returns the original result instead of paying twice.
          """
          receipt = self._state_machine.get(db, receipt_id)
          if receipt.status == ReceiptStatus.PAID:
               return DisbursementResult(DisbursementStatus.PAID, receipt.id, reference=receipt.payout_reference)
          if not receipt.payout_in_flight:
               raise IllegalTransition(receipt.status, ReceiptStatus.PAID, "no payout attempt is awaiting an outcome")
          logger.info(f"Receipt {receipt_id}: resuming payout attempt {receipt.payout_idempotency_key}")
          return self._submit(db, receipt)

     def release(self, db: Session, receipt_id: int, reason: str) -> ReceiptRecord:
          """
          Operator decision that an attempt with unknown outcome did not pay.
          Frees the receipt for a new attempt and refunds the recipient's rate slot.
          """
          receipt = self._state_machine.get(db, receipt_id)
          if not receipt.payout_in_flight:
               raise IllegalTransition(receipt.status, ReceiptStatus.APPROVED, "no payout attempt is awaiting an outcome")
          receipt = self._state_machine.release_claim(db, receipt_id, receipt.payout_idempotency_key, reason)
          self._rate_limiter.refund(db, self._settings.payout_rate_limit, receipt.recipient_identity)
          logger.info(f"Receipt {receipt_id}: payout attempt released by operator")
          return receipt

     def _fail(self, db: Session, receipt: ReceiptRecord, reason: str, retryable: bool) -> DisbursementResult:
          self._state_machine.release_claim(db, receipt.id, receipt.payout_idempotency_key, reason)
          self._rate_limiter.refund(db, self._settings.payout_rate_limit, receipt.recipient_identity)
          return DisbursementResult(DisbursementStatus.FAILED, receipt.id, reason=reason, retryable=retryable)

     def _submit(self, db: Session, receipt: ReceiptRecord) -> DisbursementResult:
          key = receipt.payout_idempotency_key
          try:
               reference = self._client.submit_payout(
                    receipt.id,
                    receipt.recipient_identity,
                    receipt.amount,
                    self._settings.payout_currency,
                    key,
               )
          except PayoutOutcomeUnknown as e:
               logger.error(
                    f"Receipt {receipt.id}: payout outcome unknown ({e.reason}); "
                    f"attempt {key} left in flight for reconciliation"
               )
               self._state_machine.add_note(db, receipt.id, f"Payout outcome unknown: {e.reason}")
               return DisbursementResult(DisbursementStatus.UNKNOWN, receipt.id, reason=e.reason)
          except PayoutRejected as e:
               logger.warning(f"Receipt {receipt.id}: payout rejected ({e.reason}, retryable={e.retryable})")
               return self._fail(db, receipt, e.reason, e.retryable)
          except (PayoutAuthError, PayoutConfigurationError) as e:
               logger.warning(f"Receipt {receipt.id}: payout not submitted ({e})")
               return self._fail(db, receipt, str(e), True)

          try:
               receipt = self._state_machine.mark_paid(db, receipt.id, key, reference)
          except TransitionConflict:
               # A webhook resolved this attempt first
               current = self._state_machine.get(db, receipt.id)
               if current.status == ReceiptStatus.PAID:
                    return DisbursementResult(DisbursementStatus.PAID, current.id, reference=current.payout_reference)
               logger.error(f"Receipt {receipt.id}: rail accepted {reference} but the attempt was already resolved")
               return DisbursementResult(DisbursementStatus.UNKNOWN, receipt.id, reference=reference, reason="attempt already resolved")

          logger.info(f"Receipt {receipt.id} paid: {reference}")
          return DisbursementResult(DisbursementStatus.PAID, receipt.id, reference=reference)
