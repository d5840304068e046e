# routers/scans.py
"""
Scan API routes.

POST /api/scans: classify a competitor-product photo and open a receipt session.
GET  /api/scans/rate-limit: scans left for the calling address (does not count).
GET  /api/sessions/{session_id}: whether a session can still take a receipt.
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import EngineServices, client_address, get_services, rejection_error, retry_after_seconds
from schemas.scan import RateLimitStatusResponse, ScanResponse, SessionStatusResponse
from services.errors import ClassifierUnavailable, SessionRejected, SubmissionRejected
from services.submission_gate import SESSION_REASONS, Upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["scans"])


def _scan_response(scan, services: EngineServices) -> ScanResponse:
     return ScanResponse(
          id=scan.id,
          session_id=scan.session_id,
          detected_label=scan.detected_label,
          confidence=scan.confidence,
          bounding_box=scan.bounding_box,
          status=scan.status.value,
          image_url=scan.image_url,
          created_at=scan.created_at,
          expires_at=scan.created_at + services.settings.session_validity,
     )


@router.post(
     "/scans",
     response_model=ScanResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Submit a product scan",
)
def submit_scan(
     request: Request,
     image: UploadFile = File(...),
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
):
     upload = Upload(data=image.file.read(), content_type=image.content_type, filename=image.filename)
     source_address = client_address(request)

     try:
          # Duplicate and rate checks run before the paid classifier call
          services.gate.precheck_scan(db, upload, source_address)
          output = services.classifier.classify(upload.data, upload.content_type)
          scan = services.gate.submit_scan(
               db,
               upload,
               source_address,
               output,
               user_agent=request.headers.get("user-agent"),
          )
     except SubmissionRejected as e:
          raise rejection_error(e)
     except ClassifierUnavailable as e:
          logger.warning(f"Scan from {source_address} not processed: {e}")
          raise HTTPException(
               status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
               detail="Image analysis is temporarily unavailable. Please try again.",
          )

     return _scan_response(scan, services)


@router.get("/scans/rate-limit", response_model=RateLimitStatusResponse)
def scan_rate_limit(
     request: Request,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
):
     policy = services.settings.scan_rate_limit
     decision = services.rate_limiter.status(db, policy, client_address(request))
     return RateLimitStatusResponse(
          allowed=decision.allowed,
          remaining=decision.remaining,
          limit=policy.ceiling,
          retry_after_seconds=retry_after_seconds(decision.retry_after),
     )


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
def session_status(
     session_id: str,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
):
     try:
          scan = services.registry.validate(db, session_id)
     except SessionRejected as e:
          return SessionStatusResponse(session_id=session_id, valid=False, reason=SESSION_REASONS[e.reason].value)
     return SessionStatusResponse(
          session_id=session_id,
          valid=True,
          expires_at=scan.created_at + services.settings.session_validity,
     )
