from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class ReferralLog(DBSerializableModel):
    """
    Append-only record of a redeemed referral. Read for statistics only;
    balances never derive from these rows.
    """

    collection_name: ClassVar[str] = "referral_logs"

    id: Optional[str] = Field(default=None)
    referrer_account_id: str
    referred_account_id: str
    referrer_device_id: str
    referred_device_id: str
    referrer_identity_id: Optional[str] = None
    referred_identity_id: Optional[str] = None
    credits_awarded: int
    created_at: datetime = Field(default_factory=utcnow)


class AdWatchLog(DBSerializableModel):
    """
    Append-only record of a rewarded ad that played to completion.
    """

    collection_name: ClassVar[str] = "ad_watch_logs"

    id: Optional[str] = Field(default=None)
    account_id: str
    device_id: str
    identity_id: Optional[str] = None
    credits_earned: int = 1
    created_at: datetime = Field(default_factory=utcnow)
