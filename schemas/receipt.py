# schemas/receipt.py
"""
Pydantic schemas for receipt submission and the admin review queue.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReceiptStatusEnum(str, Enum):
     SUBMITTED = "submitted"
     APPROVED = "approved"
     REJECTED = "rejected"
     PAID = "paid"


class DisbursementStatusEnum(str, Enum):
     PAID = "paid"
     FAILED = "failed"
     UNKNOWN = "unknown"
     IN_PROGRESS = "in_progress"


class DisbursementResponse(BaseModel):
     """What happened when the payout rail was called (or why it was not)."""
     status: DisbursementStatusEnum
     reference: Optional[str] = None
     reason: Optional[str] = None
     retryable: bool = False
     retry_after_seconds: Optional[int] = None


class ReceiptResponse(BaseModel):
     """Receipt as seen by the submitting client."""
     id: int
     session_id: str
     amount: Decimal
     status: ReceiptStatusEnum
     auto_approved: bool = False
     review_reason: Optional[str] = None
     payout_reference: Optional[str] = None
     paid_at: Optional[datetime] = None
     created_at: datetime
     disbursement: Optional[DisbursementResponse] = None

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "id": 7,
                    "session_id": "kh-1760870400000-9f3ab2c1",
                    "amount": "5.00",
                    "status": "paid",
                    "auto_approved": True,
                    "review_reason": None,
                    "payout_reference": "8AELMXH8UB2P8",
                    "paid_at": "2026-10-19T10:05:12",
                    "created_at": "2026-10-19T10:05:10",
                    "disbursement": {"status": "paid", "reference": "8AELMXH8UB2P8", "retryable": False},
               }
          },
     )


class AdminReceiptResponse(ReceiptResponse):
     """Receipt with the fields an operator needs for review."""
     recipient_identity: str
     content_hash: str
     image_url: Optional[str] = None
     confidence_score: Optional[float] = None
     auto_approved_at: Optional[datetime] = None
     admin_notes: Optional[str] = None
     payout_attempts: int = 0
     payout_in_flight: bool = False
     payout_confirmed_at: Optional[datetime] = None
     updated_at: Optional[datetime] = None


class AdminReceiptListResponse(BaseModel):
     receipts: List[AdminReceiptResponse]
     total: int


class RejectRequest(BaseModel):
     reason: str = Field(..., min_length=1, max_length=1000, description="Shown to other operators")

     model_config = ConfigDict(
          json_schema_extra={"example": {"reason": "Receipt is for a different product"}}
     )


class ReleasePayoutRequest(BaseModel):
     reason: str = Field(
          ...,
          min_length=1,
          max_length=1000,
          description="Why the in-flight attempt is known not to have paid",
     )

     model_config = ConfigDict(
          json_schema_extra={"example": {"reason": "No payout item for this batch in the PayPal dashboard"}}
     )
