"""
Monzo OAuth Flow Controller

Linking a Monzo account:
1. initiate(): single-use state token (carries the sync-from date, expires
   after 10 minutes) and the authorization URL
2. callback(): consume the state, exchange the code, fetch the account,
   swap webhooks (best-effort), upsert the account, start the full-history
   import in the background

Nothing is persisted unless both the token exchange and the account fetch
succeed. Webhook failures never abort linking; the account falls back to
manual sync.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

import httpx

from banking.errors import (
    BankApiError, BankingError, ConfigurationError, InvalidStateError, OAuthExchangeError,
    SyncInProgressError
)
from banking.monzo_client import MonzoAccount, MonzoClient, MonzoTokens
from banking.retry import RetryPolicy, with_retry
from banking.tokens import AccountTokens
from database.bank_models import AccountSyncStatus
from utils.encryption import encrypt_token

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600
MIN_SYNC_FROM_DAYS = 1
MAX_SYNC_FROM_DAYS = 1825
DEFAULT_SYNC_FROM_DAYS = 90


# ==================== STATE STORE ====================

class OAuthStateStore:
    """
    In-process store of pending OAuth states.

    consume() deletes the entry whether or not it is still valid, so a state
    can be used at most once.
    """

    def __init__(self, ttl_seconds: int = STATE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: Dict[str, Tuple[datetime, float]] = {}

    def issue(self, sync_from_date: datetime) -> str:
        self.purge_expired()
        state = secrets.token_hex(32)
        self._states[state] = (sync_from_date, self._clock())
        return state

    def consume(self, state: str) -> datetime:
        """
        Raises:
            InvalidStateError: Unknown, already used or expired state
        """
        entry = self._states.pop(state, None)
        if entry is None:
            raise InvalidStateError("Invalid or expired state parameter")

        sync_from_date, created = entry
        if self._clock() - created > self.ttl_seconds:
            raise InvalidStateError("State parameter has expired")
        return sync_from_date

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [s for s, (_, created) in self._states.items() if now - created > self.ttl_seconds]
        for state in expired:
            del self._states[state]
        return len(expired)

    def __len__(self) -> int:
        return len(self._states)


# ==================== RESULTS ====================

@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str
    sync_from_date: datetime

    def to_dict(self):
        return {
            "authorization_url": self.authorization_url,
            "state": self.state,
            "sync_from_date": self.sync_from_date.isoformat(),
        }


@dataclass
class LinkResult:
    account_id: str
    sync_run_id: Optional[str]
    created: bool


# ==================== CONTROLLER ====================

class OAuthFlowController:
    """One linking attempt against a BankStore"""

    def __init__(
        self,
        client: MonzoClient,
        state_store: OAuthStateStore,
        store=None,
        orchestrator=None,
        webhook_url: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.state_store = state_store
        self.store = store
        self.orchestrator = orchestrator
        self.webhook_url = webhook_url
        self.policy = policy

    def initiate(self, sync_from_days: int = DEFAULT_SYNC_FROM_DAYS) -> AuthorizationRequest:
        """
        Raises:
            ValueError: sync_from_days outside 1-1825
            ConfigurationError: Monzo OAuth not configured
        """
        if not MIN_SYNC_FROM_DAYS <= sync_from_days <= MAX_SYNC_FROM_DAYS:
            raise ValueError(f"sync_from_days must be between {MIN_SYNC_FROM_DAYS} and {MAX_SYNC_FROM_DAYS}")

        sync_from_date = datetime.now(timezone.utc) - timedelta(days=sync_from_days)
        state = self.state_store.issue(sync_from_date)
        url = self.client.build_authorization_url(state)
        logger.info(f"Monzo authorization started (sync_from_days={sync_from_days})")
        return AuthorizationRequest(authorization_url=url, state=state, sync_from_date=sync_from_date)

    async def _exchange(self, code: str) -> MonzoTokens:
        # Authorization codes are single-use, so the exchange is never retried
        try:
            return await self.client.exchange_code_for_tokens(code)
        except (OAuthExchangeError, ConfigurationError):
            raise
        except (BankApiError, httpx.HTTPError) as e:
            raise OAuthExchangeError(f"Token exchange failed: {e}")

    async def _fetch_account(self, access_token: str) -> MonzoAccount:
        try:
            accounts = await with_retry(
                lambda: self.client.get_accounts(access_token),
                policy=self.policy,
                operation_name="Monzo account fetch",
            )
        except (BankApiError, httpx.HTTPError) as e:
            raise OAuthExchangeError(f"Failed to fetch account information: {e}", status_code=getattr(e, "status_code", None))

        open_accounts = [a for a in accounts if not a.closed]
        if not open_accounts:
            # Also the case while the user has not yet approved access in the app
            raise OAuthExchangeError("No accounts found")
        return open_accounts[0]

    async def _delete_webhook(self, access_token: str, webhook_id: str) -> None:
        try:
            await with_retry(
                lambda: self.client.delete_webhook(access_token, webhook_id),
                policy=self.policy,
                operation_name="Monzo webhook delete",
            )
            logger.info(f"Deleted old webhook {webhook_id}")
        except Exception as e:
            logger.warning(f"Failed to delete old webhook {webhook_id}: {type(e).__name__}: {e}")

    async def _register_webhook(self, access_token: str, account_id: str) -> Tuple[Optional[str], Optional[str]]:
        if not self.webhook_url:
            logger.warning("Monzo webhook secret not configured, skipping webhook registration")
            return None, None
        try:
            webhook = await with_retry(
                lambda: self.client.register_webhook(access_token, account_id, self.webhook_url),
                policy=self.policy,
                operation_name="Monzo webhook registration",
            )
            logger.info(f"Registered webhook {webhook.id} for account {account_id}")
            return webhook.id, webhook.url
        except Exception as e:
            logger.warning(f"Failed to register webhook for account {account_id}: {type(e).__name__}: {e}")
            return None, None

    async def callback(self, code: Optional[str], state: Optional[str]) -> LinkResult:
        """
        Complete the OAuth flow.

        Raises:
            InvalidStateError: Missing, unknown, replayed or expired state
            OAuthExchangeError: Missing code, token exchange or account fetch failed
            ConfigurationError: OAuth or token encryption not configured
        """
        if not state:
            raise InvalidStateError("Missing state parameter")
        if not code:
            raise OAuthExchangeError("Missing authorization code")

        sync_from_date = self.state_store.consume(state)
        tokens = await self._exchange(code)
        monzo_account = await self._fetch_account(tokens.access_token)

        encrypted_access = encrypt_token(tokens.access_token)
        encrypted_refresh = encrypt_token(tokens.refresh_token) if tokens.refresh_token else None

        existing = await self.store.accounts.get_by_external_id(monzo_account.id)
        if existing is not None and existing.webhook_id:
            await self._delete_webhook(tokens.access_token, existing.webhook_id)

        webhook_id, webhook_url = await self._register_webhook(tokens.access_token, monzo_account.id)

        values = {
            "account_name": monzo_account.display_name,
            "account_type": monzo_account.account_type,
            "access_token": encrypted_access,
            "refresh_token": encrypted_refresh,
            "token_expires_at": tokens.expires_at(),
            "sync_from_date": sync_from_date,
            "sync_enabled": True,
            "webhook_id": webhook_id,
            "webhook_url": webhook_url,
        }
        if existing is None:
            values["provider"] = "monzo"
            values["last_sync_status"] = AccountSyncStatus.NEVER_SYNCED.value
        account, created = await self.store.accounts.upsert(monzo_account.id, values)
        logger.info(
            f"Monzo account {'linked' if created else 're-authenticated'}",
            extra={'bank_account_id': account.id, 'webhook_registered': webhook_id is not None}
        )

        sync_run_id = None
        if self.orchestrator is not None:
            try:
                sync_run_id = await self.orchestrator.start_full_import(account.id)
            except SyncInProgressError as e:
                logger.info(f"Import already running for bank account {account.id}, not starting another")
                sync_run_id = e.sync_run_id

        return LinkResult(account_id=account.id, sync_run_id=sync_run_id, created=created)

    async def unlink(self, account_id: str) -> bool:
        """
        Delete a linked account and everything imported for it.

        The webhook is torn down first, best-effort: an expired token or a
        provider error is logged and the account is deleted anyway.
        """
        account = await self.store.accounts.get(account_id)
        if account is None:
            return False

        if account.webhook_id:
            try:
                access_token = await AccountTokens(
                    account, self.client, self.store.accounts, self.policy
                ).access_token()
                await self._delete_webhook(access_token, account.webhook_id)
            except (BankingError, httpx.HTTPError) as e:
                logger.warning(f"Skipping webhook teardown for bank account {account_id}: {e}")

        deleted = await self.store.accounts.delete(account_id)
        logger.info(f"Bank account {account_id} unlinked")
        return deleted
