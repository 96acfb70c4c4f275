from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, settings
from ..db.base import BaseStoreAdapter, StoreError
from ..db.memory import InMemoryStoreAdapter
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    AccountResponse,
    CodeRequest,
    EntitlementResponse,
    GenerateKeyRequest,
    LookupRequest,
    LookupResponse,
    OperationResponse,
    ReferralStatsResponse,
)
from ..models.base import PaginatedResult
from ..models.lookup import LookupOutcome
from ..models.results import ErrorKind, OperationResult
from ..services.credit_service import CreditService
from ..services.entitlement_service import EntitlementService
from ..services.identity_service import Identity, IdentityResolver
from ..services.lookup_service import LookupClient, LookupClientError, LookupService
from ..services.referral_service import LeaderboardEntry, ReferralService
from ..services.reward_service import RewardService
from ..session import AccountSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])

_STATUS_BY_KIND = {
    ErrorKind.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.BLOCKED: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_CODE: status.HTTP_404_NOT_FOUND,
    ErrorKind.ACCOUNT_NOT_LOADED: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_USED: status.HTTP_409_CONFLICT,
    ErrorKind.ALREADY_USED_ELSEWHERE: status.HTTP_409_CONFLICT,
    ErrorKind.SELF_REFERRAL: status.HTTP_409_CONFLICT,
    ErrorKind.WRITE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.ENTITLEMENT_ACTIVE: status.HTTP_409_CONFLICT,
    ErrorKind.EXPIRED: status.HTTP_410_GONE,
    ErrorKind.INVALID_QUERY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.STORE_WRITE_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class UnconfiguredLookupClient:
    """Placeholder until the host application wires a real lookup client."""

    async def search(self, query: str) -> LookupOutcome:
        raise LookupClientError("no lookup client configured")


@dataclass
class Services:
    store: BaseStoreAdapter
    identity: IdentityResolver
    credits: CreditService
    entitlements: EntitlementService
    referrals: ReferralService
    rewards: RewardService
    lookups: LookupService
    admin_token: str = ""


def _create_store(config: Settings) -> BaseStoreAdapter:
    if config.MONGO_URI:
        from ..db.mongo import MongoStoreAdapter

        return MongoStoreAdapter.from_client_uri(config.MONGO_URI, config.MONGO_DB)
    return InMemoryStoreAdapter()


def build_services(
    config: Settings,
    store: Optional[BaseStoreAdapter] = None,
    lookup_client: Optional[LookupClient] = None,
    ledger_path: Optional[Path] = None,
) -> Services:
    store = store or _create_store(config)
    ledger = LedgerLogger(store=store, file_path=ledger_path or Path(config.LEDGER_LOG_PATH))
    cache = InMemoryAsyncCache()
    credit_service = CreditService(
        store=store, ledger=ledger, max_conflict_retries=config.MAX_CONFLICT_RETRIES
    )
    return Services(
        store=store,
        identity=IdentityResolver(
            store=store,
            ledger=ledger,
            default_credits=config.DEFAULT_CREDITS,
            referral_code_length=config.REFERRAL_CODE_LENGTH,
        ),
        credits=credit_service,
        entitlements=EntitlementService(
            store=store,
            ledger=ledger,
            credit_service=credit_service,
            default_credits=config.DEFAULT_CREDITS,
            requires_login=config.ENTITLEMENT_REQUIRES_LOGIN,
            default_key_credits=config.DEFAULT_KEY_CREDITS,
            default_key_validity_days=config.DEFAULT_KEY_VALIDITY_DAYS,
        ),
        referrals=ReferralService(
            store=store,
            ledger=ledger,
            credit_service=credit_service,
            cache=cache,
            award=config.REFERRAL_AWARD,
            base_url=config.REFERRAL_BASE_URL,
            leaderboard_size=config.LEADERBOARD_SIZE,
            leaderboard_ttl_seconds=config.LEADERBOARD_CACHE_TTL_SECONDS,
        ),
        rewards=RewardService(
            store=store, credit_service=credit_service, reward_credits=config.AD_REWARD_CREDITS
        ),
        lookups=LookupService(
            client=lookup_client or UnconfiguredLookupClient(),
            credit_service=credit_service,
            requires_login=config.LOOKUP_REQUIRES_LOGIN,
        ),
        admin_token=config.ADMIN_TOKEN,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


async def get_session(
    x_device_id: str = Header(..., min_length=1),
    x_identity_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> AccountSession:
    identity = Identity(id=x_identity_id) if x_identity_id else None
    try:
        return await services.identity.start_session(x_device_id, identity)
    except StoreError as exc:
        logger.error("Session resolution failed: %s", exc, extra={"device_id": x_device_id})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": ErrorKind.STORE_WRITE_FAILED.value, "message": "Store unavailable"},
        ) from exc


def require_admin(
    x_admin_token: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    if not services.admin_token or x_admin_token != services.admin_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token required")


def _raise_for(result: OperationResult) -> None:
    if result:
        return
    kind = result.error_kind or ErrorKind.STORE_WRITE_FAILED
    raise HTTPException(
        status_code=_STATUS_BY_KIND.get(kind, status.HTTP_400_BAD_REQUEST),
        detail={"code": kind.value, "message": result.message},
    )


def _operation_response(result: OperationResult, session: AccountSession) -> OperationResponse:
    _raise_for(result)
    data = {k: v for k, v in result.data.items() if k != "credits"}
    return OperationResponse(
        success=True, message=result.message, credits=session.credits, data=data
    )


def _key_response(key) -> EntitlementResponse:
    return EntitlementResponse.model_validate(key.model_dump())


@router.get("/me", response_model=AccountResponse)
async def get_account(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> AccountResponse:
    account = session.account
    return AccountResponse(
        id=account.id or "",
        device_id=account.device_id,
        authenticated=session.is_authenticated,
        credits=account.credits,
        referral_code=account.referral_code,
        referral_link=services.referrals.referral_link(account.referral_code),
        referred_by=account.referred_by,
        super_key_active=services.entitlements.is_entitled(session),
        super_key_expires_at=account.entitlement_expires_at,
    )


@router.post("/deduct", response_model=OperationResponse)
async def deduct_credit(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    result = await services.credits.deduct(session, description="api")
    return _operation_response(result, session)


@router.post("/lookup", response_model=LookupResponse)
async def lookup(
    payload: LookupRequest,
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> LookupResponse:
    receipt = await services.lookups.search(session, payload.query)
    if receipt.error_kind is not None:
        _raise_for(OperationResult.fail(receipt.error_kind, receipt.message))
    return LookupResponse(
        success=receipt.success,
        message=receipt.message,
        records=receipt.records,
        records_count=receipt.records_count,
        charged=receipt.charged,
        credits=session.credits,
    )


@router.post("/ads/reward", response_model=OperationResponse)
async def reward_ad(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.rewards.watch_ad(session), session)


@router.post("/referrals/apply", response_model=OperationResponse)
async def apply_referral(
    payload: CodeRequest,
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.referrals.apply(session, payload.code), session)


@router.post("/referrals/pending", status_code=status.HTTP_204_NO_CONTENT)
async def remember_invitation(
    payload: CodeRequest,
    x_device_id: str = Header(..., min_length=1),
    services: Services = Depends(get_services),
) -> None:
    await services.referrals.remember_invitation(x_device_id, payload.code)


@router.get("/referrals/pending", response_model=OperationResponse)
async def pending_invitation(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.referrals.pending_invitation(session), session)


@router.post("/referrals/pending/accept", response_model=OperationResponse)
async def accept_invitation(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.referrals.accept_invitation(session), session)


@router.delete("/referrals/pending", status_code=status.HTTP_204_NO_CONTENT)
async def decline_invitation(
    x_device_id: str = Header(..., min_length=1),
    services: Services = Depends(get_services),
) -> None:
    await services.referrals.decline_invitation(x_device_id)


@router.get("/referrals/stats", response_model=ReferralStatsResponse)
async def referral_stats(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> ReferralStatsResponse:
    account = session.account
    count = 0
    if session.identity_id is not None:
        count = await services.referrals.referral_count(session.identity_id)
    return ReferralStatsResponse(
        referral_code=account.referral_code,
        referral_link=services.referrals.referral_link(account.referral_code),
        referral_count=count,
        credits_earned=count * services.referrals.award,
    )


@router.get("/referrals/leaderboard", response_model=List[LeaderboardEntry])
async def referral_leaderboard(
    limit: int | None = None,
    services: Services = Depends(get_services),
) -> List[LeaderboardEntry]:
    return await services.referrals.leaderboard(limit)


@router.post("/keys/activate", response_model=OperationResponse)
async def activate_key(
    payload: CodeRequest,
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.entitlements.activate(session, payload.code), session)


@router.post("/keys/deactivate", response_model=OperationResponse)
async def deactivate_key(
    session: AccountSession = Depends(get_session),
    services: Services = Depends(get_services),
) -> OperationResponse:
    return _operation_response(await services.entitlements.deactivate(session), session)


@router.get(
    "/admin/keys", response_model=PaginatedResult, dependencies=[Depends(require_admin)]
)
async def list_keys(
    limit: int = 50,
    offset: int = 0,
    services: Services = Depends(get_services),
) -> PaginatedResult:
    keys = await services.entitlements.list_keys()
    page = keys[offset : offset + limit]
    return PaginatedResult(
        items=[_key_response(k) for k in page], total=len(keys), limit=limit, offset=offset
    )


@router.post(
    "/admin/keys",
    response_model=EntitlementResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def generate_key(
    payload: GenerateKeyRequest,
    services: Services = Depends(get_services),
) -> EntitlementResponse:
    key = await services.entitlements.generate(
        credits_granted=payload.credits_granted, validity_days=payload.validity_days
    )
    return _key_response(key)


@router.post(
    "/admin/keys/{key_id}/block",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_admin)],
)
async def block_key(key_id: str, services: Services = Depends(get_services)) -> EntitlementResponse:
    key = await services.entitlements.block(key_id)
    if key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Key not found")
    return _key_response(key)


@router.post(
    "/admin/keys/{key_id}/unblock",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_admin)],
)
async def unblock_key(
    key_id: str, services: Services = Depends(get_services)
) -> EntitlementResponse:
    key = await services.entitlements.unblock(key_id)
    if key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Key not found")
    return _key_response(key)


@router.delete(
    "/admin/keys/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def delete_key(key_id: str, services: Services = Depends(get_services)) -> None:
    if not await services.entitlements.delete(key_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Key not found")
