"""
Monzo Webhook Router

Endpoints:
- POST /api/bank/webhooks/monzo/{secret} - transaction.created deliveries (public)
- GET /api/bank/webhooks/status - Webhook health (MUST be before the secret route)

Responses for deliveries: 200 processed / already processed / unknown
account, 400 malformed payload, 403 wrong secret, 500 not configured or
processing error.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from banking.repository import BankStore
from banking.webhook_ingestor import (
    WebhookIngestor, get_webhook_status,
    WebhookSecretNotConfiguredError, InvalidWebhookSecretError,
    InvalidWebhookPayloadError, WebhookProcessingError
)
from routers.dependencies import get_store, get_app_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank/webhooks", tags=["Bank Webhooks"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


# ==================== STATUS (MUST BE FIRST) ====================

@router.get("/status")
async def webhook_status(store: BankStore = Depends(get_store)):
    """Last event, recent events, failure counts and per-account webhook status"""
    return await get_webhook_status(store)


# ==================== DELIVERY ====================

@router.post("/monzo/{secret}")
async def receive_monzo_webhook(
    secret: str,
    request: Request,
    store: BankStore = Depends(get_store),
    settings=Depends(get_app_settings),
):
    """Ingest a Monzo transaction.created event"""
    ingestor = WebhookIngestor(store, settings.MONZO_WEBHOOK_SECRET)

    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        result = await ingestor.handle(secret, payload)
    except WebhookSecretNotConfiguredError:
        logger.error("Webhook delivery refused: MONZO_WEBHOOK_SECRET is not configured")
        return _error(500, "Webhook verification is not configured")
    except InvalidWebhookSecretError:
        logger.warning("Webhook delivery with invalid secret")
        return _error(403, "Invalid webhook secret")
    except InvalidWebhookPayloadError as e:
        logger.warning(f"Rejected webhook payload: {e}")
        return _error(400, str(e))
    except WebhookProcessingError as e:
        return _error(500, str(e))

    return result.to_dict()
