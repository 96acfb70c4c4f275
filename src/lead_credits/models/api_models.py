from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .lookup import LookupRecord


class CodeRequest(BaseModel):
    code: str = Field(min_length=1)


class LookupRequest(BaseModel):
    query: str


class GenerateKeyRequest(BaseModel):
    credits_granted: int | None = Field(default=None, ge=0)
    validity_days: int | None = Field(default=None, gt=0)


class AccountResponse(BaseModel):
    id: str
    device_id: str
    authenticated: bool
    credits: int
    referral_code: str
    referral_link: str
    referred_by: str | None = None
    super_key_active: bool
    super_key_expires_at: datetime | None = None


class OperationResponse(BaseModel):
    success: bool
    message: str
    credits: int
    data: Dict[str, Any] = Field(default_factory=dict)


class LookupResponse(BaseModel):
    success: bool
    message: str
    records: List[LookupRecord] = Field(default_factory=list)
    records_count: int = 0
    charged: bool = False
    credits: int


class ReferralStatsResponse(BaseModel):
    referral_code: str
    referral_link: str
    referral_count: int
    credits_earned: int


class EntitlementResponse(BaseModel):
    id: str
    code: str
    credits_granted: int
    validity_days: int
    is_active: bool
    is_used: bool
    bound_device_id: Optional[str] = None
    granted_account_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
