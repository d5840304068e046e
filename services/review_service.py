# services/review_service.py
"""
Review decisions for submitted receipts.

Automated rule: a receipt that reads cleanly and whose confidence reaches the
configured threshold is approved and immediately disbursed, unless
auto-approval is switched off or today's automatic approvals have reached
their cap. Otherwise the receipt stays submitted with the reason recorded for
an operator.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from config import Settings
from models import ReceiptRecord, ReceiptStatus
from services.errors import IllegalTransition
from services.payout_orchestrator import DisbursementResult, PayoutOrchestrator
from services.rate_limiter import RateLimiter
from services.review_state_machine import ReviewStateMachine

logger = logging.getLogger(__name__)

AUTO_APPROVAL_SUBJECT = "daily"


@dataclass
class ReviewOutcome:
     receipt: ReceiptRecord
     disbursement: Optional[DisbursementResult] = None

     @property
     def auto_approved(self) -> bool:
          return bool(self.receipt.auto_approved)


class ReviewService:

     def __init__(
          self,
          settings: Settings,
          state_machine: ReviewStateMachine,
          orchestrator: PayoutOrchestrator,
          rate_limiter: RateLimiter,
     ):
          self._settings = settings
          self._state_machine = state_machine
          self._orchestrator = orchestrator
          self._rate_limiter = rate_limiter

     def auto_review(
          self,
          db: Session,
          receipt_id: int,
          confidence: float,
          errors: Sequence[str] = (),
          hint: Optional[str] = None,
     ) -> ReviewOutcome:
          """
          Apply the automated rule. errors are hard findings from reading the
          receipt; any of them sends it to an operator whatever its confidence.
          hint names the weakest part of a low score.
          """
          threshold = self._settings.auto_approval_threshold

          if not self._settings.auto_approval_enabled:
               receipt = self._state_machine.flag_for_review(db, receipt_id, "auto-approval disabled", confidence)
               return ReviewOutcome(receipt)

          if errors:
               receipt = self._state_machine.flag_for_review(
                    db, receipt_id, f"Validation errors: {'; '.join(errors)}", confidence
               )
               return ReviewOutcome(receipt)

          if confidence < threshold:
               reason = f"confidence {confidence:.2f} below threshold"
               if hint:
                    reason = f"{reason}: {hint}"
               receipt = self._state_machine.flag_for_review(db, receipt_id, reason, confidence)
               return ReviewOutcome(receipt)

          decision = self._rate_limiter.consume(db, self._settings.auto_approval_daily_limit, AUTO_APPROVAL_SUBJECT)
          if not decision.allowed:
               logger.warning(f"Daily auto-approval limit reached; receipt {receipt_id} left for manual review")
               receipt = self._state_machine.flag_for_review(db, receipt_id, "daily auto-approval limit reached", confidence)
               return ReviewOutcome(receipt)

          self._state_machine.approve(db, receipt_id, auto=True, confidence=confidence, actor="auto-approval")
          logger.info(f"Receipt {receipt_id} auto-approved ({confidence:.2f} >= {threshold:.2f})")
          disbursement = self._orchestrator.disburse(db, receipt_id)
          return ReviewOutcome(self._state_machine.get(db, receipt_id), disbursement)

     def approve(self, db: Session, receipt_id: int, actor: str = "operator") -> ReviewOutcome:
          """
          Manual approval followed by disbursement. On an already approved receipt
          this retries the payout.
          """
          receipt = self._state_machine.get(db, receipt_id)
          if receipt.status == ReceiptStatus.SUBMITTED:
               self._state_machine.approve(db, receipt_id, actor=actor)
          elif receipt.status not in (ReceiptStatus.APPROVED, ReceiptStatus.PAID):
               raise IllegalTransition(receipt.status, ReceiptStatus.APPROVED)
          disbursement = self._orchestrator.disburse(db, receipt_id)
          return ReviewOutcome(self._state_machine.get(db, receipt_id), disbursement)

     def reject(self, db: Session, receipt_id: int, reason: str, actor: str = "operator") -> ReceiptRecord:
          return self._state_machine.reject(db, receipt_id, reason, actor=actor)
