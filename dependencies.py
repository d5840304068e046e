# dependencies.py
"""
Shared FastAPI dependencies: admin authentication, client address extraction
and engine wiring.

The engine is assembled once from config.settings by build_services(); tests
replace it through app.dependency_overrides[get_services].
"""
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from passlib.context import CryptContext

from azure_blob import build_archive
from config import Settings, settings
from services.classifier import (
     Classifier,
     ReceiptValidator,
     build_classifier,
     build_receipt_validator,
)
from services.errors import RejectionReason, SubmissionRejected
from services.paypal_client import PayPalPayoutClient
from services.payout_orchestrator import PayoutOrchestrator
from services.rate_limiter import RateLimiter
from services.reconciliation import ReconciliationListener
from services.review_service import ReviewService
from services.review_state_machine import ReviewStateMachine
from services.session_registry import SessionRegistry
from services.submission_gate import SubmissionGate
from utils.clock import utcnow

logger = logging.getLogger(__name__)

# Bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_ROLE = "admin"


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------

@dataclass
class EngineServices:
     settings: Settings
     rate_limiter: RateLimiter
     registry: SessionRegistry
     gate: SubmissionGate
     state_machine: ReviewStateMachine
     orchestrator: PayoutOrchestrator
     review: ReviewService
     reconciliation: ReconciliationListener
     classifier: Classifier
     receipt_validator: ReceiptValidator
     payout_client: PayPalPayoutClient


def build_services(
     app_settings: Settings,
     classifier: Optional[Classifier] = None,
     receipt_validator: Optional[ReceiptValidator] = None,
     payout_client=None,
     archive=None,
     clock=utcnow,
) -> EngineServices:
     rate_limiter = RateLimiter(clock=clock)
     registry = SessionRegistry(app_settings, clock=clock)
     state_machine = ReviewStateMachine(clock=clock)
     payout_client = payout_client or PayPalPayoutClient(app_settings, clock=clock)
     orchestrator = PayoutOrchestrator(app_settings, state_machine, rate_limiter, payout_client)
     return EngineServices(
          settings=app_settings,
          rate_limiter=rate_limiter,
          registry=registry,
          gate=SubmissionGate(app_settings, rate_limiter, registry, archive=archive, clock=clock),
          state_machine=state_machine,
          orchestrator=orchestrator,
          review=ReviewService(app_settings, state_machine, orchestrator, rate_limiter),
          reconciliation=ReconciliationListener(app_settings, state_machine, rate_limiter),
          classifier=classifier or build_classifier(app_settings),
          receipt_validator=receipt_validator or build_receipt_validator(app_settings, clock=clock),
          payout_client=payout_client,
     )


_services: Optional[EngineServices] = None


def get_services() -> EngineServices:
     global _services
     if _services is None:
          _services = build_services(settings, archive=build_archive(settings))
     return _services


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def create_admin_token(app_settings: Settings = settings) -> str:
     expires = utcnow() + app_settings.admin_token_ttl
     return jwt.encode(
          {"role": ADMIN_ROLE, "sub": ADMIN_ROLE, "exp": expires},
          app_settings.jwt_secret,
          algorithm=app_settings.jwt_algorithm,
     )


def verify_admin_password(password: str, app_settings: Settings = settings) -> bool:
     if not app_settings.admin_password_hash:
          logger.warning("ADMIN_PASSWORD_HASH not set; admin login disabled")
          return False
     return pwd_context.verify(password, app_settings.admin_password_hash)


# Token Auth Dependency
def verify_token(request: Request) -> dict:
     auth = request.headers.get("Authorization")
     if not auth or not auth.startswith("Bearer "):
          raise HTTPException(status_code=401, detail="Missing token")
     token = auth.split(" ")[1]
     try:
          payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
          return payload
     except JWTError:
          raise HTTPException(status_code=403, detail="Invalid token")


def verify_admin(request: Request) -> dict:
     payload = verify_token(request)
     if payload.get("role") != ADMIN_ROLE:
          raise HTTPException(status_code=403, detail="Admin access required")
     return payload


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def client_address(request: Request) -> str:
     """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
     forwarded = request.headers.get("x-forwarded-for")
     if forwarded:
          first = forwarded.split(",")[0].strip()
          if first:
               return first
     real_ip = request.headers.get("x-real-ip")
     if real_ip:
          return real_ip.strip()
     if request.client and request.client.host:
          return request.client.host
     return "unknown"


def retry_after_seconds(retry_after: Optional[timedelta]) -> Optional[int]:
     if retry_after is None:
          return None
     return max(1, math.ceil(retry_after.total_seconds()))


def rejection_error(e: SubmissionRejected) -> HTTPException:
     """Map a gate rejection to the response the client renders guidance from."""
     detail = {"reason": e.reason.value, "message": e.detail, "retryable": e.retryable}
     if e.reason == RejectionReason.RATE_LIMITED:
          seconds = retry_after_seconds(e.retry_after)
          detail["retry_after_seconds"] = seconds
          headers = {"Retry-After": str(seconds)} if seconds else None
          return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail, headers=headers)
     if e.reason == RejectionReason.SESSION_NOT_FOUND:
          return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
     if e.reason in (RejectionReason.DUPLICATE_IMAGE, RejectionReason.SESSION_ALREADY_CONSUMED):
          return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
     return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)
