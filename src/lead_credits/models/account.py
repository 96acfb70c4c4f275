from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class Account(DBSerializableModel):
    """
    The unit of credit ownership.

    A row is keyed by the installation that created it (`device_id`) and,
    once somebody signs in on that installation, by the authenticated
    identity as well. Guest rows have no `external_identity_id`.
    """

    collection_name: ClassVar[str] = "accounts"

    id: Optional[str] = Field(default=None)
    device_id: str
    external_identity_id: Optional[str] = Field(
        default=None,
        description="Identifier issued by the identity provider; null for guests.",
    )
    credits: int = 0
    referral_code: str
    referred_by: Optional[str] = Field(
        default=None,
        description="Referral code this account redeemed. Written at most once.",
    )
    active_entitlement_id: Optional[str] = None
    entitlement_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_guest(self) -> bool:
        return self.external_identity_id is None

    def has_active_entitlement(self, now: datetime) -> bool:
        if self.active_entitlement_id is None or self.entitlement_expires_at is None:
            return False
        return self.entitlement_expires_at > now
