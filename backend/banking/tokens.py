"""
Access Token Lifecycle for Linked Accounts

Decrypts the stored access token for API calls, refreshes it when it is
about to expire (or the provider rejects it with 401) and persists the
rotated pair through the token vault.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from banking.errors import AuthError, OAuthExchangeError, TokenExpiredError
from banking.monzo_client import MonzoClient
from banking.retry import RetryPolicy, with_retry
from utils.encryption import encrypt_token, decrypt_token, DecryptionError

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Treat tokens expiring within this window as already expired
TOKEN_EXPIRY_BUFFER_SECONDS = 60


def is_token_expired(
    expires_at: Optional[datetime],
    buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    """True if the token expires within `buffer_seconds`. Unknown expiry counts as valid."""
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=buffer_seconds) >= expires_at


class AccountTokens:
    """
    Token holder for one linked account during a sync or webhook run.

    Usage:
        tokens = AccountTokens(account, client, store.accounts, policy)
        page = await tokens.call(
            lambda token: client.get_transactions(token, account.account_id, since),
            operation_name="Monzo transaction fetch",
        )
    """

    def __init__(self, account, client: MonzoClient, accounts, policy: Optional[RetryPolicy] = None):
        self.account = account
        self.client = client
        self.accounts = accounts
        self.policy = policy
        self._access_token: Optional[str] = None

    async def access_token(self) -> str:
        """
        Current plaintext access token, refreshing first if it has expired.

        Raises:
            TokenExpiredError: Expired with no refresh token, refresh rejected,
                or the stored token cannot be decrypted
        """
        if self._access_token:
            return self._access_token

        if is_token_expired(self.account.token_expires_at):
            if not self.account.refresh_token:
                logger.info(f"Access token expired for bank account {self.account.id}, no refresh token")
                raise TokenExpiredError()
            return await self.refresh()

        try:
            self._access_token = decrypt_token(self.account.access_token)
        except DecryptionError as e:
            logger.error(f"Stored access token unreadable for bank account {self.account.id}")
            raise TokenExpiredError() from e
        return self._access_token

    async def refresh(self) -> str:
        """Refresh the token pair, persist it encrypted and return the new access token"""
        if not self.account.refresh_token:
            raise TokenExpiredError()

        try:
            refresh_token = decrypt_token(self.account.refresh_token)
        except DecryptionError as e:
            raise TokenExpiredError() from e

        try:
            tokens = await with_retry(
                lambda: self.client.refresh_access_token(refresh_token),
                policy=self.policy,
                operation_name="Monzo token refresh",
            )
        except (AuthError, OAuthExchangeError) as e:
            logger.warning(
                f"Token refresh rejected for bank account {self.account.id}",
                extra={'status_code': e.status_code}
            )
            raise TokenExpiredError() from e

        # Monzo may omit the refresh token; keep the one we have
        new_refresh_token = tokens.refresh_token or refresh_token
        encrypted_access = encrypt_token(tokens.access_token)
        encrypted_refresh = encrypt_token(new_refresh_token)
        expires_at = tokens.expires_at()

        await self.accounts.update_tokens(
            self.account.id,
            access_token=encrypted_access,
            refresh_token=encrypted_refresh,
            token_expires_at=expires_at,
        )
        self.account.access_token = encrypted_access
        self.account.refresh_token = encrypted_refresh
        self.account.token_expires_at = expires_at

        logger.info(f"Refreshed access token for bank account {self.account.id}")
        self._access_token = tokens.access_token
        return self._access_token

    async def call(
        self,
        operation: Callable[[str], Awaitable[T]],
        operation_name: str = "bank API call",
    ) -> T:
        """
        Run `operation(access_token)` under the retry policy.

        A 401 triggers one token refresh and one more attempt when a refresh
        token is available; any other AuthError propagates.
        """
        token = await self.access_token()
        try:
            return await with_retry(lambda: operation(token), policy=self.policy, operation_name=operation_name)
        except AuthError as e:
            if e.status_code != 401 or not self.account.refresh_token:
                raise
            logger.info(f"{operation_name} got 401 for bank account {self.account.id}, refreshing token")

        self._access_token = None
        token = await self.refresh()
        return await with_retry(lambda: operation(token), policy=self.policy, operation_name=operation_name)
