# services/__init__.py
from .errors import (
     RebateError,
     RejectionReason,
     SubmissionRejected,
     SessionRejected,
     ReceiptNotFound,
     IllegalTransition,
     TransitionConflict,
     ClassifierUnavailable,
     PayoutRejected,
     PayoutOutcomeUnknown,
)
from .fingerprint import fingerprint
from .rate_limiter import RateLimiter, RateDecision
from .session_registry import SessionRegistry
from .submission_gate import SubmissionGate, Upload
from .review_state_machine import ReviewStateMachine
from .payout_orchestrator import PayoutOrchestrator, DisbursementResult, DisbursementStatus
from .review_service import ReviewService, ReviewOutcome
from .reconciliation import ReconciliationListener, DeliveryOutcome, ReconciliationResult

__all__ = [
     "RebateError",
     "RejectionReason",
     "SubmissionRejected",
     "SessionRejected",
     "ReceiptNotFound",
     "IllegalTransition",
     "TransitionConflict",
     "ClassifierUnavailable",
     "PayoutRejected",
     "PayoutOutcomeUnknown",
     "fingerprint",
     "RateLimiter",
     "RateDecision",
     "SessionRegistry",
     "SubmissionGate",
     "Upload",
     "ReviewStateMachine",
     "PayoutOrchestrator",
     "DisbursementResult",
     "DisbursementStatus",
     "ReviewService",
     "ReviewOutcome",
     "ReconciliationListener",
     "DeliveryOutcome",
     "ReconciliationResult",
]
