"""
Linked Bank Accounts Router

Endpoints:
- GET /api/bank/accounts - List linked accounts
- GET /api/bank/accounts/{id} - Get one account
- PATCH /api/bank/accounts/{id} - Rename, enable/disable sync, change sync-from date
- DELETE /api/bank/accounts/{id} - Unlink (webhook teardown is best-effort)
- POST /api/bank/accounts/{id}/sync - Manual incremental sync
- GET /api/bank/sync-runs/{id} - Sync run status
- GET /api/bank/sync-runs/{id}/progress - Import progress (server-sent events)

Account responses never include token fields.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from banking.errors import (
    AccountNotFoundError, SyncInProgressError, SyncTimeoutError, TokenExpiredError,
    get_user_error_message
)
from banking.monzo_client import MonzoClient
from banking.oauth import OAuthFlowController
from banking.progress import ProgressBroadcaster, ImportProgress, ProgressStatus
from banking.repository import BankStore
from banking.retry import RetryPolicy
from banking.sync_service import SyncOrchestrator
from database.bank_models import SyncStatus
from routers.dependencies import (
    get_store, get_monzo_client, get_broadcaster, get_orchestrator, get_oauth_states,
    get_app_settings
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank", tags=["Bank Accounts"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ==================== PYDANTIC MODELS ====================

class AccountUpdateRequest(BaseModel):
    """Editable account settings"""
    account_name: Optional[str] = Field(None, min_length=1, max_length=255)
    sync_enabled: Optional[bool] = None
    sync_from_date: Optional[datetime] = None


# ==================== ACCOUNTS ====================

@router.get("/accounts")
async def list_accounts(store: BankStore = Depends(get_store)):
    """List linked bank accounts"""
    accounts = await store.accounts.list_all()
    return {"accounts": [a.to_dict() for a in accounts], "count": len(accounts)}


@router.get("/accounts/{account_id}")
async def get_account(account_id: str, store: BankStore = Depends(get_store)):
    """Get a linked bank account"""
    account = await store.accounts.get(account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Bank account not found")
    return account.to_dict()


@router.patch("/accounts/{account_id}")
async def update_account(
    account_id: str,
    request: AccountUpdateRequest,
    store: BankStore = Depends(get_store),
):
    """Update account settings"""
    updates = request.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")

    account = await store.accounts.update(account_id, updates)
    if not account:
        raise HTTPException(status_code=404, detail="Bank account not found")
    return account.to_dict()


@router.delete("/accounts/{account_id}")
async def delete_account(
    account_id: str,
    store: BankStore = Depends(get_store),
    client: MonzoClient = Depends(get_monzo_client),
    states=Depends(get_oauth_states),
    settings=Depends(get_app_settings),
):
    """Unlink an account and delete its imported data"""
    controller = OAuthFlowController(client, states, store=store, policy=RetryPolicy.from_settings(settings))
    if not await controller.unlink(account_id):
        raise HTTPException(status_code=404, detail="Bank account not found")
    return {"success": True, "message": "Bank account disconnected"}


# ==================== SYNC ====================

@router.post("/accounts/{account_id}/sync")
async def sync_account(
    account_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Fetch transactions since the last successful sync.

    409 when a sync is already running, 401 when the bank connection has to
    be re-authorised.
    """
    try:
        result = await orchestrator.sync_account(account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Bank account not found")
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TokenExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except SyncTimeoutError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error(f"Manual sync failed for bank account {account_id}: {type(e).__name__}: {e}")
        raise HTTPException(status_code=500, detail=get_user_error_message(e))

    return result.to_dict()


@router.get("/sync-runs/{sync_run_id}")
async def get_sync_run(sync_run_id: str, store: BankStore = Depends(get_store)):
    """Get a sync run"""
    run = await store.sync_runs.get(sync_run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return run.to_dict()


def snapshot_from_run(run) -> ImportProgress:
    """Progress event describing a run's persisted state"""
    if run.status == SyncStatus.IN_PROGRESS.value:
        status = ProgressStatus.PROCESSING if run.transactions_fetched else ProgressStatus.FETCHING
    elif run.status == SyncStatus.FAILED.value:
        status = ProgressStatus.FAILED
    else:
        status = ProgressStatus.COMPLETED

    fetched = run.transactions_fetched or 0
    skipped = run.transactions_skipped or 0
    return ImportProgress(
        sync_run_id=run.id,
        status=status,
        transactions_fetched=fetched,
        transactions_processed=fetched - skipped,
        duplicates_skipped=skipped,
        error=run.error_message,
    )


def format_sse(event: ImportProgress) -> str:
    return f"data: {json.dumps(event.to_dict())}\n\n"


async def progress_events(
    request: Request,
    broadcaster: ProgressBroadcaster,
    queue: asyncio.Queue,
    snapshot: ImportProgress,
    timeout_seconds: float,
):
    """
    Persisted state first, then live events until a terminal status, the
    timeout or a client disconnect. The queue is subscribed before the
    snapshot is read so no event falls in between; it is always released.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    try:
        yield format_sse(snapshot)
        if snapshot.is_terminal:
            return

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info(f"Progress stream for sync run {snapshot.sync_run_id} timed out")
                return
            if await request.is_disconnected():
                return
            try:
                event = await asyncio.wait_for(queue.get(), timeout=min(remaining, 1.0))
            except asyncio.TimeoutError:
                continue
            yield format_sse(event)
            if event.is_terminal:
                return
    finally:
        broadcaster.unsubscribe(snapshot.sync_run_id, queue)


@router.get("/sync-runs/{sync_run_id}/progress")
async def stream_sync_progress(
    sync_run_id: str,
    request: Request,
    store: BankStore = Depends(get_store),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
    settings=Depends(get_app_settings),
):
    """Server-sent events stream of import progress for one sync run"""
    # Subscribe before reading the snapshot so no event falls between them
    queue = broadcaster.subscribe(sync_run_id)
    try:
        run = await store.sync_runs.get(sync_run_id)
    except Exception:
        broadcaster.unsubscribe(sync_run_id, queue)
        raise
    if not run:
        broadcaster.unsubscribe(sync_run_id, queue)
        raise HTTPException(status_code=404, detail="Sync run not found")

    return StreamingResponse(
        progress_events(
            request, broadcaster, queue, snapshot_from_run(run), settings.PROGRESS_STREAM_TIMEOUT_SECONDS
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # runs even when the client disconnects before the stream starts
        background=BackgroundTask(broadcaster.unsubscribe, sync_run_id, queue),
    )
