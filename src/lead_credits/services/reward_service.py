from __future__ import annotations

import logging

from ..db.base import BaseStoreAdapter, StoreError
from ..models.audit import AdWatchLog
from ..models.results import ErrorKind, OperationResult
from ..session import AccountSession
from .credit_service import CreditService

logger = logging.getLogger(__name__)


class RewardService:
    """
    Grants credits for rewarded ads.

    The caller's claim that playback completed is the only attestation;
    the ad-display layer resolves its promise after the fixed watch
    duration and then calls `watch_ad`.
    """

    def __init__(
        self,
        store: BaseStoreAdapter,
        credit_service: CreditService,
        reward_credits: int = 1,
    ) -> None:
        self._store = store
        self._credit_service = credit_service
        self._reward_credits = reward_credits

    async def watch_ad(
        self, session: AccountSession, correlation_id: str | None = None
    ) -> OperationResult:
        if not session.is_authenticated:
            return OperationResult.fail(
                ErrorKind.NOT_AUTHENTICATED, "Please login to earn credits"
            )
        if session.account is None or session.account.id is None:
            return OperationResult.fail(ErrorKind.ACCOUNT_NOT_LOADED)

        try:
            await self._store.add_ad_watch_log(
                AdWatchLog(
                    account_id=session.account.id,
                    device_id=session.device_id,
                    identity_id=session.identity_id,
                    credits_earned=self._reward_credits,
                )
            )
        except StoreError as exc:
            logger.error(
                "Ad watch log insert failed: %s", exc, extra={"device_id": session.device_id}
            )
            return OperationResult.fail(ErrorKind.STORE_WRITE_FAILED)

        result = await self._credit_service.credit(
            session,
            self._reward_credits,
            description="Rewarded ad",
            correlation_id=correlation_id,
        )
        if not result:
            return result
        return OperationResult.ok(
            f"+{self._reward_credits} credit earned!", credits=session.credits
        )
