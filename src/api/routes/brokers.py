"""Trading platform API routes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from src.api.deps import get_current_user, get_db, get_http
from src.core.brokers import (
    AccountNotFound,
    OAuthService,
    PlatformError,
    PlatformNotImplemented,
    SyncOptions,
    SyncResult,
    TradeSyncService,
    Unauthorized,
    UnsupportedPlatform,
    get_platform_fields,
    get_supported_platforms,
)
from src.db.database import get_db as session_scope
from src.db.models import TradingAccount, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trading-platforms", tags=["brokers"])


# Request/Response Models

class PlatformResponse(BaseModel):
    """Supported platform."""

    value: str
    label: str
    description: str
    connection: str


class CredentialFieldResponse(BaseModel):
    """Input needed to connect a platform manually."""

    name: str
    label: str
    type: str
    required: bool
    description: Optional[str] = None


class TradingAccountResponse(BaseModel):
    """Connected trading account."""

    id: str
    platform: str
    account_id: str
    account_name: Optional[str]
    is_active: bool
    sync_status: str
    last_sync_at: Optional[datetime]
    last_sync_error: Optional[str]


class ConnectAccountRequest(BaseModel):
    """Credentials for a platform that does not use OAuth."""

    platform: str
    fields: Dict[str, str]


class SyncRequest(BaseModel):
    """Options for a sync run."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    update_existing: bool = True
    force_full_sync: bool = False
    max_concurrency: Optional[int] = None


class SyncResultResponse(BaseModel):
    """Result of syncing one account."""

    success: bool
    account_id: str
    platform: Optional[str]
    trades_fetched: int
    trades_created: int
    trades_updated: int
    trades_skipped: int
    error_count: int
    error_message: Optional[str]
    error_details: List[str]
    duration_ms: int
    platform_trade_ids: List[str]


class SyncAllResponse(BaseModel):
    """Result of syncing every account."""

    success: bool
    total_fetched: int
    total_created: int
    total_updated: int
    total_skipped: int
    results: List[SyncResultResponse]


class SyncRunResponse(BaseModel):
    """Past sync run."""

    id: str
    started_at: datetime
    finished_at: Optional[datetime]
    success: bool
    trades_fetched: int
    trades_created: int
    trades_updated: int
    trades_skipped: int
    error_count: int
    error_message: Optional[str]


class AccountStatusResponse(TradingAccountResponse):
    """Account state with its trade count."""

    trade_count: int


class ConnectionTestResponse(BaseModel):
    """Outcome of a connection test."""

    account_id: str
    connected: bool


# Helpers

def _account_response(account: TradingAccount) -> TradingAccountResponse:
    return TradingAccountResponse(
        id=account.id,
        platform=account.platform,
        account_id=account.account_id,
        account_name=account.account_name,
        is_active=account.is_active,
        sync_status=account.sync_status,
        last_sync_at=account.last_sync_at,
        last_sync_error=account.last_sync_error,
    )


def _result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        success=result.success,
        account_id=result.account_id,
        platform=result.platform,
        trades_fetched=result.trades_fetched,
        trades_created=result.trades_created,
        trades_updated=result.trades_updated,
        trades_skipped=result.trades_skipped,
        error_count=result.error_count,
        error_message=result.error_message,
        error_details=list(result.error_details),
        duration_ms=result.duration_ms,
        platform_trade_ids=list(result.platform_trade_ids),
    )


def _options(request: Optional[SyncRequest]) -> SyncOptions:
    request = request or SyncRequest()
    return SyncOptions(
        start_date=request.start_date,
        end_date=request.end_date,
        update_existing=request.update_existing,
        force_full_sync=request.force_full_sync,
    )


def _owned_account(service: TradeSyncService, account_id: str, user: User) -> TradingAccount:
    account = service.accounts.find_account_by_id(account_id)
    if not account or account.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account not found: {account_id}",
        )
    return account


# Routes

@router.get("/platforms", response_model=List[PlatformResponse])
def list_platforms():
    """List supported trading platforms."""
    return [PlatformResponse(**platform) for platform in get_supported_platforms()]


@router.get("/platforms/{platform}/fields", response_model=List[CredentialFieldResponse])
def platform_fields(platform: str):
    """Credential inputs needed to connect a platform manually."""
    try:
        fields = get_platform_fields(platform)
    except UnsupportedPlatform as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return [
        CredentialFieldResponse(
            name=f.name,
            label=f.label,
            type=f.type,
            required=f.required,
            description=f.description,
        )
        for f in fields
    ]


@router.get("/accounts", response_model=List[TradingAccountResponse])
def list_accounts(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """List trading accounts of the current user."""
    service = TradeSyncService(db)
    return [
        _account_response(account)
        for account in service.list_accounts(user.id, include_inactive=include_inactive)
    ]


@router.post("/accounts", response_model=TradingAccountResponse, status_code=status.HTTP_201_CREATED)
def connect_account(
    request: ConnectAccountRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    http: requests.Session = Depends(get_http),
):
    """Connect a platform that logs in with credentials (Angel One)."""
    try:
        account = OAuthService(db, http=http).connect_with_credentials(
            user.email, request.platform, request.fields
        )
    except UnsupportedPlatform as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PlatformNotImplemented as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e))
    except Unauthorized as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except PlatformError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return _account_response(account)


@router.post("/sync", response_model=SyncAllResponse)
def sync_all(
    request: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    http: requests.Session = Depends(get_http),
):
    """Sync every active account of the current user."""
    # Workers open their own sessions; release this one's write lock first
    db.commit()
    service = TradeSyncService(db, session_scope=session_scope, http=http)
    results = service.sync_all_accounts(
        _options(request),
        max_concurrency=request.max_concurrency if request else None,
        user_id=user.id,
    )
    return SyncAllResponse(
        success=all(r.success for r in results),
        total_fetched=sum(r.trades_fetched for r in results),
        total_created=sum(r.trades_created for r in results),
        total_updated=sum(r.trades_updated for r in results),
        total_skipped=sum(r.trades_skipped for r in results),
        results=[_result_response(r) for r in results],
    )


@router.post("/accounts/{account_id}/sync", response_model=SyncResultResponse)
def sync_account(
    account_id: str,
    request: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    http: requests.Session = Depends(get_http),
):
    """Sync trades from one trading account."""
    service = TradeSyncService(db, http=http)
    _owned_account(service, account_id, user)
    return _result_response(service.sync_account(account_id, _options(request)))


@router.get("/accounts/{account_id}/status", response_model=AccountStatusResponse)
def account_status(
    account_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Connection and sync state of an account."""
    service = TradeSyncService(db)
    _owned_account(service, account_id, user)
    return AccountStatusResponse(**service.get_account_status(account_id))


@router.get("/accounts/{account_id}/history", response_model=List[SyncRunResponse])
def sync_history(
    account_id: str,
    limit: int = 10,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Recent sync runs of an account."""
    service = TradeSyncService(db)
    _owned_account(service, account_id, user)
    return [
        SyncRunResponse(
            id=run.id,
            started_at=run.started_at,
            finished_at=run.finished_at,
            success=run.success,
            trades_fetched=run.trades_fetched,
            trades_created=run.trades_created,
            trades_updated=run.trades_updated,
            trades_skipped=run.trades_skipped,
            error_count=run.error_count,
            error_message=run.error_message,
        )
        for run in service.get_sync_history(account_id, limit=limit)
    ]


@router.post("/accounts/{account_id}/test", response_model=ConnectionTestResponse)
def test_connection(
    account_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    http: requests.Session = Depends(get_http),
):
    """Check that an account's credentials still work."""
    service = TradeSyncService(db, http=http)
    _owned_account(service, account_id, user)
    try:
        connected = service.test_connection(account_id)
    except PlatformNotImplemented as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e))
    except AccountNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except UnsupportedPlatform as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ConnectionTestResponse(account_id=account_id, connected=connected)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def deactivate_account(
    account_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Disconnect an account. Synced trades are kept."""
    service = TradeSyncService(db)
    _owned_account(service, account_id, user)
    service.deactivate_account(account_id)
    logger.info(f"Deactivated trading account {account_id}")
