# schemas/scan.py
"""
Pydantic schemas for the scan and session endpoints.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ScanStatusEnum(str, Enum):
     AWAITING_RECEIPT = "awaiting_receipt"
     COMPLETED = "completed"
     REJECTED = "rejected"


class BoundingBox(BaseModel):
     """Normalized (0-1) box around the detected product."""
     x: float
     y: float
     width: float
     height: float


class ScanResponse(BaseModel):
     """Accepted scan; session_id is what the receipt upload must reference."""
     id: int
     session_id: str
     detected_label: Optional[str] = None
     confidence: Optional[float] = Field(None, ge=0, le=1)
     bounding_box: Optional[BoundingBox] = None
     status: ScanStatusEnum
     image_url: Optional[str] = None
     created_at: datetime
     expires_at: datetime

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "id": 12,
                    "session_id": "kh-1760870400000-9f3ab2c1",
                    "detected_label": "Bottle",
                    "confidence": 0.93,
                    "bounding_box": {"x": 0.31, "y": 0.08, "width": 0.38, "height": 0.84},
                    "status": "awaiting_receipt",
                    "image_url": None,
                    "created_at": "2026-10-19T10:00:00",
                    "expires_at": "2026-10-20T10:00:00",
               }
          },
     )


class RateLimitStatusResponse(BaseModel):
     """Scan allowance left for the calling address."""
     allowed: bool
     remaining: int
     limit: int
     retry_after_seconds: Optional[int] = None

     model_config = ConfigDict(
          json_schema_extra={
               "example": {"allowed": True, "remaining": 2, "limit": 3, "retry_after_seconds": None}
          }
     )


class SessionStatusResponse(BaseModel):
     """Result of probing a session before uploading a receipt."""
     session_id: str
     valid: bool
     reason: Optional[str] = None
     expires_at: Optional[datetime] = None

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "session_id": "kh-1760870400000-9f3ab2c1",
                    "valid": False,
                    "reason": "session_expired",
                    "expires_at": "2026-10-20T10:00:00",
               }
          }
     )
