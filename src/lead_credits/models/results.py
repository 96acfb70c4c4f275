from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    INVALID_CODE = "invalid_code"
    ALREADY_USED = "already_used"
    ALREADY_USED_ELSEWHERE = "already_used_elsewhere"
    SELF_REFERRAL = "self_referral"
    BLOCKED = "blocked"
    EXPIRED = "expired"
    ENTITLEMENT_ACTIVE = "entitlement_active"
    STORE_WRITE_FAILED = "store_write_failed"
    WRITE_CONFLICT = "write_conflict"
    ACCOUNT_NOT_LOADED = "account_not_loaded"
    INVALID_QUERY = "invalid_query"


DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.NOT_AUTHENTICATED: "Please login first",
    ErrorKind.INSUFFICIENT_CREDITS: "No credits left! Watch an ad or use a referral code.",
    ErrorKind.INVALID_CODE: "Invalid code",
    ErrorKind.ALREADY_USED: "Code already used",
    ErrorKind.ALREADY_USED_ELSEWHERE: "Key already used on another device",
    ErrorKind.SELF_REFERRAL: "Cannot use your own referral code",
    ErrorKind.BLOCKED: "Key is blocked",
    ErrorKind.EXPIRED: "Key has expired",
    ErrorKind.ENTITLEMENT_ACTIVE: "Another Super Key is still active. Log it out first.",
    ErrorKind.STORE_WRITE_FAILED: "Could not save changes. Please try again.",
    ErrorKind.WRITE_CONFLICT: "Your balance changed on another device. Please try again.",
    ErrorKind.ACCOUNT_NOT_LOADED: "Account not found",
    ErrorKind.INVALID_QUERY: "Enter a phone number or ID to search",
}


class OperationResult(BaseModel):
    """
    Outcome of an engine operation. Business-rule violations are reported
    here instead of being raised; the instance is falsy on failure.
    """

    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: Optional[str] = None) -> "OperationResult":
        return cls(success=False, error_kind=kind, message=message or DEFAULT_MESSAGES[kind])
