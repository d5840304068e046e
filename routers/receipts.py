# routers/receipts.py
"""
Receipt API routes.

POST /api/receipts: file a proof of purchase against a scan session. The
receipt is checked and read before anything is stored, so a reader outage
leaves the session usable for a retry. Accepted receipts go straight into
automated review; a confident receipt is approved and paid within the same
request.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import EngineServices, get_services, rejection_error, retry_after_seconds
from schemas.receipt import DisbursementResponse, ReceiptResponse
from services.errors import ClassifierUnavailable, SubmissionRejected
from services.payout_orchestrator import DisbursementResult
from services.submission_gate import Upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/receipts", tags=["receipts"])


def disbursement_response(result: Optional[DisbursementResult]) -> Optional[DisbursementResponse]:
     if result is None:
          return None
     return DisbursementResponse(
          status=result.status.value,
          reference=result.reference,
          reason=result.reason,
          retryable=result.retryable,
          retry_after_seconds=retry_after_seconds(result.retry_after),
     )


@router.post(
     "",
     response_model=ReceiptResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Submit a receipt for a rebate",
)
def submit_receipt(
     session_id: str = Form(...),
     recipient: str = Form(..., description="PayPal email the rebate is sent to"),
     image: UploadFile = File(...),
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
):
     upload = Upload(data=image.file.read(), content_type=image.content_type, filename=image.filename)

     try:
          # Cheap checks first so rejected uploads never reach the image reader
          scan = services.gate.precheck_receipt(db, session_id, upload, recipient)
          assessment = services.receipt_validator.assess(upload.data, upload.content_type, scan.confidence)
          receipt = services.gate.submit_receipt(
               db,
               session_id,
               upload,
               recipient,
               services.settings.effective_rebate_amount,
          )
     except SubmissionRejected as e:
          raise rejection_error(e)
     except ValueError as e:
          raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
     except ClassifierUnavailable as e:
          logger.warning(f"Receipt for session {session_id} not processed: {e}")
          raise HTTPException(
               status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
               detail="Receipt analysis is temporarily unavailable. Please try again.",
          )

     outcome = services.review.auto_review(db, receipt.id, assessment.score, assessment.errors, assessment.hint)

     response = ReceiptResponse.model_validate(outcome.receipt)
     response.disbursement = disbursement_response(outcome.disbursement)
     return response
