# services/errors.py
"""
Domain exceptions raised by the rebate engine.

Routers translate these into HTTP responses; services never build HTTP errors.
"""
import enum
from datetime import timedelta
from typing import Optional


class RebateError(Exception):
     """Base class for all engine errors."""


class RejectionReason(str, enum.Enum):
     """Stable reason codes returned to the submitting client."""
     INVALID_FORMAT = "invalid_format"
     SIZE_OUT_OF_BOUNDS = "size_out_of_bounds"
     DUPLICATE_IMAGE = "duplicate_image"
     RATE_LIMITED = "rate_limited"
     SESSION_NOT_FOUND = "session_not_found"
     SESSION_EXPIRED = "session_expired"
     SESSION_ALREADY_CONSUMED = "session_already_consumed"


# "Try again later" as opposed to "this won't work"
RETRYABLE_REASONS = frozenset({RejectionReason.RATE_LIMITED})


class SubmissionRejected(RebateError):
     """A scan or receipt submission was refused. No state was created."""

     def __init__(self, reason: RejectionReason, detail: str = "", retry_after: Optional[timedelta] = None):
          self.reason = reason
          self.detail = detail or reason.value
          self.retry_after = retry_after
          super().__init__(f"{reason.value}: {self.detail}")

     @property
     def retryable(self) -> bool:
          return self.reason in RETRYABLE_REASONS


class SessionRejected(RebateError):
     """Raised by SessionRegistry; reason is one of not_found / expired / already_consumed."""

     def __init__(self, reason: str, session_id: str):
          self.reason = reason
          self.session_id = session_id
          super().__init__(f"Session {session_id}: {reason}")


class ScanNotFound(RebateError):
     pass


class ReceiptNotFound(RebateError):
     pass


class IllegalTransition(RebateError):
     """The requested status change is not an edge of the review state machine."""

     def __init__(self, current, target, detail: str = ""):
          self.current = current
          self.target = target
          message = f"Cannot move receipt from {current.value} to {target.value}"
          if detail:
               message = f"{message}: {detail}"
          super().__init__(message)


class TransitionConflict(RebateError):
     """A conditional write found the record no longer in the expected pre-state."""


class ClassifierUnavailable(RebateError):
     """The classifier collaborator failed or timed out. Retryable; no record is created."""


class PayoutRailError(RebateError):
     """Base class for payout rail failures."""


class PayoutConfigurationError(PayoutRailError):
     pass


class PayoutAuthError(PayoutRailError):
     """Credential exchange failed. Nothing was submitted, so a retry is safe."""


class PayoutRejected(PayoutRailError):
     """The rail answered and refused the payout."""

     def __init__(self, reason: str, retryable: bool):
          self.reason = reason
          self.retryable = retryable
          super().__init__(reason)


class PayoutOutcomeUnknown(PayoutRailError):
     """The request may or may not have moved money (timeout, dropped connection, 5xx)."""

     def __init__(self, reason: str):
          self.reason = reason
          super().__init__(reason)


class WebhookVerificationError(RebateError):
     pass
