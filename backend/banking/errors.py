"""
Bank Integration Errors

Exception taxonomy for the Monzo connection, sync and webhook paths, plus the
mapping from provider failures to messages safe to show an end user.

Categories:
- Configuration: missing/malformed encryption key, OAuth credentials or webhook secret
- Protocol: OAuth exchange or account lookup failed, bad state parameter
- Transport: non-2xx provider responses (retried when transient)
- Concurrency: a sync is already running for the account
- Token: stored access token expired and cannot be refreshed
"""

import asyncio
from typing import Optional

import httpx


class BankingError(Exception):
    """Base exception for bank integration errors"""
    pass


class ConfigurationError(BankingError):
    """Required configuration is absent or malformed. Callers must fail closed."""
    pass


class BankApiError(BankingError):
    """Non-2xx response from the provider API"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[str] = None,
        body: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.body = body


class AuthError(BankApiError):
    """Provider rejected the access token (401/403)"""
    pass


class OAuthExchangeError(BankApiError):
    """Authorization code exchange or post-auth account lookup failed"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, status_code=status_code, body=body)


class InvalidStateError(BankingError):
    """OAuth state is unknown, already used, or expired"""
    pass


class SyncInProgressError(BankingError):
    """Another sync run for the account has not finished"""

    def __init__(self, message: str = "Sync already in progress", sync_run_id: Optional[str] = None):
        super().__init__(message)
        self.sync_run_id = sync_run_id


class TokenExpiredError(BankingError):
    """Stored access token expired and no refresh was possible"""

    def __init__(self, message: str = "Access token has expired. Please reconnect your bank account."):
        super().__init__(message)


class SyncTimeoutError(BankingError):
    """Manual sync did not finish within its time budget"""
    pass


class AccountNotFoundError(BankingError, LookupError):
    """Linked account does not exist"""
    pass


# ==================== USER-FACING MESSAGES ====================

_NETWORK_MESSAGE = "Unable to connect to Monzo. Please check your internet connection and try again."


def get_user_error_message(error: BaseException) -> str:
    """
    Map a provider/transport failure to a message suitable for the UI.

    Never includes response bodies or tokens.
    """
    if isinstance(error, TokenExpiredError):
        return str(error)

    if isinstance(error, BankApiError) and error.status_code is not None:
        status = error.status_code
        if status == 401:
            return "Access token has expired. Please reconnect your bank account."
        if status == 403:
            return "Access denied. Please check your Monzo account permissions."
        if status == 404:
            return "The requested Monzo resource was not found."
        if status == 429:
            return "Too many requests to Monzo. Please try again in a few minutes."
        if status >= 500:
            return "Monzo is currently experiencing issues. Please try again later."

    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return _NETWORK_MESSAGE

    return "An unexpected error occurred while communicating with Monzo."
