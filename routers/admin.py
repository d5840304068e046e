# routers/admin.py
"""
Operator API.

All routes except /login require a bearer token with role=admin.

- GET  /api/admin/receipts?status=submitted       review queue
- POST /api/admin/receipts/{id}/approve           approve and pay (retries payout if already approved)
- POST /api/admin/receipts/{id}/reject            reject before any payout
- POST /api/admin/receipts/{id}/payout/resume     re-send an attempt with unknown outcome
- POST /api/admin/receipts/{id}/payout/release    declare such an attempt failed
- POST /api/admin/scans/{session_id}/reject       close a scan session
- GET  /api/admin/payout-mode                     test payout amount
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import (
     EngineServices,
     create_admin_token,
     get_services,
     verify_admin,
     verify_admin_password,
)
from models import ReceiptRecord
from models.receipt_record import ReceiptStatus
from routers.receipts import disbursement_response
from schemas.admin import AdminLoginRequest, AdminTokenResponse, PayoutModeResponse, ScanRejectRequest
from schemas.receipt import (
     AdminReceiptListResponse,
     AdminReceiptResponse,
     ReceiptStatusEnum,
     RejectRequest,
     ReleasePayoutRequest,
)
from schemas.scan import ScanStatusEnum
from services.errors import IllegalTransition, ReceiptNotFound, SessionRejected, TransitionConflict
from services.session_registry import NOT_FOUND

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _admin_receipt(receipt: ReceiptRecord, disbursement=None) -> AdminReceiptResponse:
     response = AdminReceiptResponse.model_validate(receipt)
     response.disbursement = disbursement_response(disbursement)
     return response


def _state_error(e: Exception) -> HTTPException:
     if isinstance(e, ReceiptNotFound):
          return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
     # IllegalTransition / TransitionConflict
     return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/login", response_model=AdminTokenResponse)
def login(body: AdminLoginRequest, services: EngineServices = Depends(get_services)):
     if not verify_admin_password(body.password, services.settings):
          logger.info("Admin login failed")
          raise HTTPException(status_code=401, detail="Invalid credentials")
     return AdminTokenResponse(
          token=create_admin_token(services.settings),
          expires_in=int(services.settings.admin_token_ttl.total_seconds()),
     )


@router.get("/receipts", response_model=AdminReceiptListResponse)
def list_receipts(
     status_filter: Optional[ReceiptStatusEnum] = Query(None, alias="status"),
     limit: int = Query(100, ge=1, le=500),
     offset: int = Query(0, ge=0),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_admin),
):
     query = db.query(ReceiptRecord)
     if status_filter:
          query = query.filter(ReceiptRecord.status == ReceiptStatus(status_filter.value))
     total = query.count()
     receipts = query.order_by(ReceiptRecord.created_at.desc(), ReceiptRecord.id.desc()).offset(offset).limit(limit).all()
     return AdminReceiptListResponse(receipts=[_admin_receipt(r) for r in receipts], total=total)


@router.post("/receipts/{receipt_id}/approve", response_model=AdminReceiptResponse)
def approve_receipt(
     receipt_id: int,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
     token: dict = Depends(verify_admin),
):
     try:
          outcome = services.review.approve(db, receipt_id, actor=token.get("sub", "admin"))
     except (ReceiptNotFound, IllegalTransition, TransitionConflict) as e:
          raise _state_error(e)
     return _admin_receipt(outcome.receipt, outcome.disbursement)


@router.post("/receipts/{receipt_id}/reject", response_model=AdminReceiptResponse)
def reject_receipt(
     receipt_id: int,
     body: RejectRequest,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
     token: dict = Depends(verify_admin),
):
     try:
          receipt = services.review.reject(db, receipt_id, body.reason, actor=token.get("sub", "admin"))
     except (ReceiptNotFound, IllegalTransition, TransitionConflict) as e:
          raise _state_error(e)
     return _admin_receipt(receipt)


@router.post("/receipts/{receipt_id}/payout/resume", response_model=AdminReceiptResponse)
def resume_payout(
     receipt_id: int,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
     token: dict = Depends(verify_admin),
):
     try:
          result = services.orchestrator.resume(db, receipt_id)
     except (ReceiptNotFound, IllegalTransition, TransitionConflict) as e:
          raise _state_error(e)
     return _admin_receipt(services.state_machine.get(db, receipt_id), result)


@router.post("/receipts/{receipt_id}/payout/release", response_model=AdminReceiptResponse)
def release_payout(
     receipt_id: int,
     body: ReleasePayoutRequest,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
     token: dict = Depends(verify_admin),
):
     try:
          receipt = services.orchestrator.release(db, receipt_id, body.reason)
     except (ReceiptNotFound, IllegalTransition, TransitionConflict) as e:
          raise _state_error(e)
     return _admin_receipt(receipt)


@router.post("/scans/{session_id}/reject")
def reject_scan(
     session_id: str,
     body: ScanRejectRequest,
     db: Session = Depends(get_session),
     services: EngineServices = Depends(get_services),
     token: dict = Depends(verify_admin),
):
     try:
          scan = services.registry.reject_scan(db, session_id, body.reason)
     except SessionRejected as e:
          if e.reason == NOT_FOUND:
               raise HTTPException(status_code=404, detail="Scan not found")
          raise HTTPException(status_code=409, detail="Scan already has a receipt")
     return {"session_id": scan.session_id, "status": ScanStatusEnum(scan.status.value)}


@router.get("/payout-mode", response_model=PayoutModeResponse)
def payout_mode(services: EngineServices = Depends(get_services), token: dict = Depends(verify_admin)):
     app_settings = services.settings
     return PayoutModeResponse(
          test_mode=app_settings.test_payout_amount is not None,
          amount=app_settings.effective_rebate_amount,
          currency=app_settings.payout_currency,
          environment=app_settings.paypal_environment,
          test_amount=app_settings.test_payout_amount,
     )
