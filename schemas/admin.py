# schemas/admin.py
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AdminLoginRequest(BaseModel):
     password: str = Field(..., min_length=1)


class AdminTokenResponse(BaseModel):
     token: str
     token_type: str = "bearer"
     expires_in: int = Field(..., description="Seconds until the token expires")

     model_config = ConfigDict(
          json_schema_extra={
               "example": {"token": "eyJhbGciOiJIUzI1NiIs...", "token_type": "bearer", "expires_in": 3600}
          }
     )


class PayoutModeResponse(BaseModel):
     """Whether payouts use the configured test amount instead of the rebate amount."""
     test_mode: bool
     amount: Decimal
     currency: str
     environment: str
     test_amount: Optional[Decimal] = None


class ScanRejectRequest(BaseModel):
     reason: str = Field(..., min_length=1, max_length=1000)
