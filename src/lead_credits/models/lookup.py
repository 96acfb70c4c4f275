from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .results import ErrorKind

# Field name -> value, in the order the lookup API returned them.
LookupRecord = Dict[str, Optional[str]]


class LookupOutcome(BaseModel):
    records: List[LookupRecord] = Field(default_factory=list)
    count: int = 0
    error: Optional[str] = None

    @property
    def chargeable(self) -> bool:
        return self.error is None and len(self.records) > 0


class LookupReceipt(BaseModel):
    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    records: List[LookupRecord] = Field(default_factory=list)
    records_count: int = 0
    charged: bool = False

    def __bool__(self) -> bool:
        return self.success


def _normalize_record(raw: Any) -> Optional[LookupRecord]:
    if not isinstance(raw, dict):
        return None
    return {str(k): (None if v is None else str(v)) for k, v in raw.items()}


def _record_count(data: Dict[str, Any], fallback: int) -> int:
    # Upstreams occasionally send the count as text or a placeholder
    try:
        count = int(data.get("records_count") or fallback)
    except (TypeError, ValueError):
        return fallback
    return count if count > 0 else fallback


def parse_lookup_payload(payload: Any) -> LookupOutcome:
    """
    Interpret a decoded lookup API response.

    Accepted shapes:
    - ``{"success": true, "data": {"records": [...], "records_count": n}}``
    - ``{"error": "..."}``
    - a bare list of records
    """
    if isinstance(payload, list):
        records = [r for r in map(_normalize_record, payload) if r is not None]
        if not records:
            return LookupOutcome(error="No records found for this number")
        return LookupOutcome(records=records, count=len(records))

    if not isinstance(payload, dict):
        return LookupOutcome(error="Unexpected response from lookup service")

    data = payload.get("data")
    if payload.get("success") and isinstance(data, dict) and isinstance(data.get("records"), list):
        records = [r for r in map(_normalize_record, data["records"]) if r is not None]
        if not records:
            return LookupOutcome(error="No records found for this number")
        return LookupOutcome(records=records, count=_record_count(data, len(records)))

    if payload.get("error"):
        return LookupOutcome(error=str(payload["error"]))

    return LookupOutcome(error="Unexpected response from lookup service")
