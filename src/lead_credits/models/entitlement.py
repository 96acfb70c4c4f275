from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class Entitlement(DBSerializableModel):
    """
    Single-use, time-boxed premium grant ("super key").

    `used_at`, `expires_at`, `bound_device_id` and `granted_account_id` are
    set together when a device redeems the key and cleared together when
    that device logs the key out again.
    """

    collection_name: ClassVar[str] = "super_keys"

    id: Optional[str] = Field(default=None)
    code: str
    credits_granted: int = 1000
    validity_days: int = 30
    is_active: bool = Field(
        default=True, description="Administrative kill switch, independent of usage."
    )
    is_used: bool = False
    bound_device_id: Optional[str] = None
    granted_account_id: Optional[str] = Field(
        default=None,
        description="Account the claim was made for; only that account may complete the grant.",
    )
    used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_bound_to(self, device_id: str) -> bool:
        return self.is_used and self.bound_device_id == device_id
