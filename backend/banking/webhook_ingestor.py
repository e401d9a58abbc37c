"""
Monzo Webhook Ingestor

Handles transaction.created pushes from Monzo. Authentication is a secret
path segment compared against MONZO_WEBHOOK_SECRET; with no secret
configured every delivery is refused (fail closed).

Delivery is at-least-once, so the transaction id doubles as the webhook
event id: a second delivery of a processed event creates nothing.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from banking.errors import BankingError, get_user_error_message
from banking.monzo_client import MonzoTransaction
from banking.sync_service import TransactionIngestor
from database.bank_models import SyncType, SyncStatus, AccountSyncStatus, utc_now

logger = logging.getLogger(__name__)

TRANSACTION_CREATED = "transaction.created"
RECENT_WEBHOOK_EVENTS = 20


# ==================== ERRORS ====================

class WebhookSecretNotConfiguredError(BankingError):
    """No MONZO_WEBHOOK_SECRET; webhooks cannot be verified (500)"""
    pass


class InvalidWebhookSecretError(BankingError):
    """Path secret does not match (403)"""
    pass


class InvalidWebhookPayloadError(BankingError):
    """Unsupported event type or missing transaction fields (400)"""
    pass


class WebhookProcessingError(BankingError):
    """Processing failed after the sync run was created (500)"""

    def __init__(self, message: str, sync_run_id: Optional[str] = None):
        super().__init__(message)
        self.sync_run_id = sync_run_id


# ==================== RESULT ====================

class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE_EVENT = "duplicate_event"
    ACCOUNT_NOT_FOUND = "account_not_found"


WEBHOOK_MESSAGES = {
    WebhookOutcome.PROCESSED: "Webhook processed successfully",
    WebhookOutcome.DUPLICATE_EVENT: "Webhook already processed",
    WebhookOutcome.ACCOUNT_NOT_FOUND: "Webhook received but account not found",
}


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    sync_run_id: Optional[str] = None
    duplicate_transaction: bool = False

    @property
    def message(self) -> str:
        return WEBHOOK_MESSAGES[self.outcome]

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "message": self.message}


# ==================== VERIFICATION ====================

def verify_webhook_secret(provided: str, configured: Optional[str]) -> None:
    """
    Raises:
        WebhookSecretNotConfiguredError: No secret configured
        InvalidWebhookSecretError: Secret mismatch
    """
    if not configured:
        raise WebhookSecretNotConfiguredError("Webhook secret is not configured")
    if not secrets.compare_digest(provided.encode("utf-8"), configured.encode("utf-8")):
        raise InvalidWebhookSecretError("Invalid webhook secret")


def parse_webhook_payload(payload: Any) -> MonzoTransaction:
    """
    Validate a transaction.created payload before anything is written.

    Raises:
        InvalidWebhookPayloadError
    """
    if not isinstance(payload, dict) or payload.get("type") != TRANSACTION_CREATED:
        raise InvalidWebhookPayloadError("Invalid webhook payload")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise InvalidWebhookPayloadError("Invalid webhook payload")
    if not data.get("account_id") or not data.get("id") or data.get("amount") is None:
        raise InvalidWebhookPayloadError("Missing required transaction fields")
    if isinstance(data["amount"], bool) or not isinstance(data["amount"], (int, float, str)):
        raise InvalidWebhookPayloadError("Invalid transaction amount")

    try:
        return MonzoTransaction.from_api(data)
    except (ValueError, TypeError, InvalidOperation) as e:
        raise InvalidWebhookPayloadError(f"Invalid transaction data: {e}")


# ==================== INGESTOR ====================

class WebhookIngestor:
    """Processes verified webhook payloads against a BankStore"""

    def __init__(self, store, webhook_secret: Optional[str]):
        self.store = store
        self.webhook_secret = webhook_secret

    async def handle(self, path_secret: str, payload: Any) -> WebhookResult:
        """
        Verify, validate and ingest one delivery.

        Raises:
            WebhookSecretNotConfiguredError, InvalidWebhookSecretError,
            InvalidWebhookPayloadError, WebhookProcessingError
        """
        verify_webhook_secret(path_secret, self.webhook_secret)
        transaction = parse_webhook_payload(payload)

        account = await self.store.accounts.get_by_external_id(transaction.account_id)
        if account is None:
            logger.warning(f"Webhook received for unknown account {transaction.account_id}")
            return WebhookResult(outcome=WebhookOutcome.ACCOUNT_NOT_FOUND)

        event_id = transaction.id
        previous = await self.store.sync_runs.find_processed_webhook_event(event_id)
        if previous is not None:
            logger.info(f"Webhook event {event_id} already processed by sync run {previous.id}")
            return WebhookResult(outcome=WebhookOutcome.DUPLICATE_EVENT, sync_run_id=previous.id)

        run = await self.store.sync_runs.create(account.id, SyncType.WEBHOOK, webhook_event_id=event_id)
        try:
            counters = await TransactionIngestor(self.store).ingest(account.id, [transaction])
            await self.store.sync_runs.finalize(
                run.id,
                SyncStatus.SUCCESS,
                **counters.run_counts(),
            )
            await self.store.accounts.update(account.id, {
                "last_sync_at": utc_now(),
                "last_sync_status": AccountSyncStatus.SUCCESS.value,
            })
        except Exception as e:
            logger.exception(f"Webhook processing failed for event {event_id}: {e}")
            await self.store.session.rollback()
            await self.store.sync_runs.finalize(
                run.id,
                SyncStatus.FAILED,
                error_message=get_user_error_message(e),
                error_details={"error_type": type(e).__name__, "detail": str(e)},
            )
            raise WebhookProcessingError("An error occurred while processing webhook", sync_run_id=run.id)

        logger.info(
            f"Webhook event {event_id} processed",
            extra={'sync_run_id': run.id, 'bank_account_id': account.id, 'duplicate': counters.skipped > 0}
        )
        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED,
            sync_run_id=run.id,
            duplicate_transaction=counters.skipped > 0,
        )


# ==================== STATUS ====================

async def get_webhook_status(store) -> Dict[str, Any]:
    """Webhook health across accounts: recent events, failure counts, per-account status"""
    now = utc_now()
    recent = await store.sync_runs.list_recent_webhook_runs(limit=RECENT_WEBHOOK_EVENTS)
    accounts = await store.accounts.list_all()
    names = {a.id: a.account_name for a in accounts}

    account_statuses = []
    for account in sorted((a for a in accounts if a.webhook_id), key=lambda a: a.account_name or ""):
        latest = await store.sync_runs.latest_webhook_run_for_account(account.id)
        account_statuses.append({
            "account_id": account.id,
            "account_name": account.account_name,
            "webhook_id": account.webhook_id,
            "last_webhook_at": latest.started_at.isoformat() if latest else None,
            "last_webhook_status": latest.status if latest else None,
        })

    return {
        "last_event_at": recent[0].started_at.isoformat() if recent else None,
        "recent_events": [
            {
                **run.to_dict(),
                "account_name": names.get(run.bank_account_id),
            }
            for run in recent
        ],
        "failed_count_24h": await store.sync_runs.count_failed_webhook_runs(now - timedelta(hours=24)),
        "failed_count_1h": await store.sync_runs.count_failed_webhook_runs(now - timedelta(hours=1)),
        "accounts": account_statuses,
    }
