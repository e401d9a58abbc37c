"""
Monzo Account Linking Router

Endpoints:
- GET /api/bank/monzo/connect - Start the OAuth flow, returns the authorization URL
- GET /api/bank/monzo/callback - OAuth redirect target (browser-facing)

The callback always answers with a redirect to the frontend carrying either
success=monzo_connected&accountId=... or error=<reason>; it never returns a
JSON error body.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from banking.errors import ConfigurationError, InvalidStateError, OAuthExchangeError
from banking.monzo_client import MonzoClient
from banking.oauth import OAuthFlowController, OAuthStateStore, MIN_SYNC_FROM_DAYS, MAX_SYNC_FROM_DAYS
from banking.repository import BankStore
from banking.retry import RetryPolicy
from banking.sync_service import SyncOrchestrator
from routers.dependencies import (
    get_store, get_monzo_client, get_orchestrator, get_oauth_states, get_app_settings
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank/monzo", tags=["Bank Linking"])

LINKED_ACCOUNTS_PATH = "/bank-accounts"


def _frontend_redirect(settings, **params) -> RedirectResponse:
    base = settings.FRONTEND_URL.rstrip("/")
    return RedirectResponse(
        url=f"{base}{LINKED_ACCOUNTS_PATH}?{urlencode(params)}",
        status_code=302,
    )


@router.get("/connect")
async def connect_monzo(
    sync_from_days: Optional[int] = Query(None, ge=MIN_SYNC_FROM_DAYS, le=MAX_SYNC_FROM_DAYS),
    client: MonzoClient = Depends(get_monzo_client),
    states: OAuthStateStore = Depends(get_oauth_states),
    settings=Depends(get_app_settings),
):
    """Generate the Monzo authorization URL for a new link"""
    controller = OAuthFlowController(client, states)
    try:
        request = controller.initiate(sync_from_days or settings.DEFAULT_SYNC_FROM_DAYS)
    except ConfigurationError as e:
        logger.error(f"Monzo connect failed: {e}")
        raise HTTPException(status_code=500, detail="Monzo integration is not configured")
    return request.to_dict()


@router.get("/callback")
async def monzo_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    client: MonzoClient = Depends(get_monzo_client),
    states: OAuthStateStore = Depends(get_oauth_states),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    store: BankStore = Depends(get_store),
    settings=Depends(get_app_settings),
):
    """Complete the OAuth flow and start the full-history import"""
    if error:
        logger.warning(f"Monzo OAuth returned error: {error}")
        return _frontend_redirect(settings, error=error)
    if not code:
        return _frontend_redirect(settings, error="missing_code")
    if not state:
        return _frontend_redirect(settings, error="missing_state")

    controller = OAuthFlowController(
        client,
        states,
        store=store,
        orchestrator=orchestrator,
        webhook_url=settings.monzo_webhook_url or None,
        policy=RetryPolicy.from_settings(settings),
    )
    try:
        result = await controller.callback(code, state)
    except InvalidStateError as e:
        logger.warning(f"Monzo callback rejected: {e}")
        return _frontend_redirect(settings, error="invalid_state")
    except ConfigurationError as e:
        logger.error(f"Monzo callback failed, configuration error: {e}")
        return _frontend_redirect(settings, error="configuration_error")
    except OAuthExchangeError as e:
        logger.error(f"Monzo callback failed: {e}")
        return _frontend_redirect(settings, error="oauth_failed")
    except Exception as e:
        logger.exception(f"Monzo callback error: {e}")
        return _frontend_redirect(settings, error="oauth_failed")

    params = {"success": "monzo_connected", "accountId": result.account_id}
    if result.sync_run_id:
        params["syncRunId"] = result.sync_run_id
    return _frontend_redirect(settings, **params)
