from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseStoreAdapter, StoreError
from ..models.ledger import LedgerEntry, LedgerEventType

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured ledger logger that writes to a file and the store.

    File logging is append-only, line-delimited JSON for easier ingestion
    by log aggregators. Store logging uses the `LedgerEntry` model and the
    configured `BaseStoreAdapter`.

    Ledger writes happen after the balance change they describe has landed,
    so neither channel is allowed to fail the calling operation.
    """

    def __init__(self, store: BaseStoreAdapter, file_path: Optional[Path] = None) -> None:
        self._store = store
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.TRANSACTION,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.ERROR,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(
        self,
        message: str,
        details: dict[str, Any],
        account_id: Optional[str] = None,
    ) -> None:
        await self._log(
            LedgerEventType.SYSTEM,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        account_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        entry = LedgerEntry(
            event_type=event_type,
            account_id=account_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        try:
            await self._store.add_ledger_entry(entry)
        except StoreError as exc:
            logger.error(
                "Ledger entry could not be stored: %s",
                exc,
                extra={"account_id": account_id, "ledger_message": message},
            )

        if self._file_path is None:
            return
        try:
            line = json.dumps(entry.model_dump(mode="json"))
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Ledger file write failed: %s", exc, extra={"path": str(self._file_path)})
