"""
Monzo API Client

Thin, stateless httpx transport for the Monzo REST API:
- OAuth: authorization URL, code exchange, token refresh
- Accounts: list accounts for a token
- Transactions: paged transaction listing (since/before/limit)
- Webhooks: register and delete push webhooks

Amounts arrive in minor units (pence) and are converted to pounds here, so
nothing downstream deals with pence.

This client never retries; callers wrap calls with banking.retry.with_retry.

API reference: https://docs.monzo.com/
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List, Union
from urllib.parse import urlencode

import httpx

from banking.errors import BankApiError, AuthError, OAuthExchangeError, ConfigurationError

logger = logging.getLogger(__name__)

# ==================== CONSTANTS ====================

MONZO_API_URL = "https://api.monzo.com"
MONZO_AUTH_URL = "https://auth.monzo.com"
REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_PAGE_LIMIT = 100  # Monzo maximum

PENCE = Decimal("100")
TWO_PLACES = Decimal("0.01")

_FRACTION_RE = re.compile(r"\.(\d+)")


# ==================== PARSING HELPERS ====================

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a Monzo RFC 3339 timestamp ("2015-08-22T12:20:18.64Z").

    Fractional seconds of any length are normalised to microseconds.
    Empty values (unsettled transactions) return None.
    """
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way Monzo expects in query parameters"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def pence_to_pounds(amount: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a minor-unit amount to major units, rounded to the penny"""
    return (Decimal(str(amount)) / PENCE).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


# ==================== DATA CLASSES ====================

@dataclass
class MonzoTokens:
    """Token response from /oauth2/token"""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    user_id: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + timedelta(seconds=self.expires_in)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "MonzoTokens":
        return cls(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            user_id=data.get("user_id"),
        )


@dataclass
class MonzoAccount:
    """An external account as listed by /accounts"""
    id: str
    description: Optional[str] = None
    type: Optional[str] = None
    closed: bool = False

    @property
    def display_name(self) -> str:
        return self.description or self.type or "Monzo Account"

    @property
    def account_type(self) -> str:
        return self.type or "current"


@dataclass
class MonzoTransaction:
    """A transaction from /transactions or a transaction.created webhook"""
    id: str
    account_id: Optional[str]
    amount: Decimal  # pounds, negative = money out
    currency: str
    description: str
    created: datetime
    settled: Optional[datetime] = None
    notes: Optional[str] = None
    merchant_name: Optional[str] = None
    counterparty_name: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any], account_id: Optional[str] = None) -> "MonzoTransaction":
        """
        Build from the provider payload.

        merchant is an object when expanded and a bare id otherwise; only the
        expanded name is kept.
        """
        merchant = data.get("merchant")
        counterparty = data.get("counterparty") or {}
        return cls(
            id=data["id"],
            account_id=data.get("account_id") or account_id,
            amount=pence_to_pounds(data["amount"]),
            currency=data.get("currency") or "GBP",
            description=data.get("description") or "",
            created=parse_timestamp(data.get("created")) or datetime.now(timezone.utc),
            settled=parse_timestamp(data.get("settled")),
            notes=data.get("notes") or None,
            merchant_name=merchant.get("name") if isinstance(merchant, dict) else None,
            counterparty_name=counterparty.get("name") if isinstance(counterparty, dict) else None,
            category=data.get("category") or None,
        )

    def to_record(self) -> Dict[str, Any]:
        """Column values for a bank_transactions row"""
        return {
            "external_id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "description": self.description,
            "counterparty_name": self.counterparty_name,
            "reference": self.notes,
            "merchant": self.merchant_name,
            "category": self.category,
            "transaction_date": self.created,
            "settled_date": self.settled,
        }


@dataclass
class MonzoWebhook:
    """A registered push webhook"""
    id: str
    account_id: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ==================== CLIENT ====================

class MonzoClient:
    """
    Monzo REST client.

    One short-lived httpx.AsyncClient per call; pass `transport` to route
    requests elsewhere (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        api_url: str = MONZO_API_URL,
        auth_url: str = MONZO_AUTH_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_url = api_url.rstrip("/")
        self.auth_url = auth_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "MonzoClient":
        return cls(
            client_id=settings.MONZO_CLIENT_ID,
            client_secret=settings.MONZO_CLIENT_SECRET,
            redirect_uri=settings.MONZO_REDIRECT_URI,
            api_url=settings.MONZO_API_URL,
            auth_url=settings.MONZO_AUTH_URL,
            transport=transport,
        )

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.api_url, timeout=self.timeout, transport=self.transport)

    def _require_oauth_config(self):
        if not (self.client_id and self.client_secret and self.redirect_uri):
            raise ConfigurationError("Monzo OAuth configuration missing (client id, secret or redirect URI)")

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, context: str):
        """Raise BankApiError (AuthError for 401/403) for non-2xx responses"""
        if response.is_success:
            return

        status = response.status_code
        body = response.text[:500]
        message = f"Monzo {context} failed with HTTP {status}"
        logger.error(message, extra={'status_code': status})

        if status in (401, 403):
            raise AuthError(message, status_code=status, body=body)
        raise BankApiError(
            message,
            status_code=status,
            retry_after=response.headers.get("Retry-After"),
            body=body,
        )

    # ==================== OAUTH ====================

    def build_authorization_url(self, state: str) -> str:
        """URL the user is redirected to in order to approve access"""
        self._require_oauth_config()
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
        })
        return f"{self.auth_url}/?{query}"

    async def _token_request(self, form: Dict[str, str], context: str) -> MonzoTokens:
        self._require_oauth_config()
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **form,
        }
        async with self._http() as client:
            response = await client.post("/oauth2/token", data=payload)

        if not response.is_success:
            status = response.status_code
            logger.error(f"Monzo {context} failed with HTTP {status}")
            if status in (401, 403) and form.get("grant_type") == "refresh_token":
                raise AuthError(f"Monzo {context} rejected", status_code=status)
            raise OAuthExchangeError(
                f"Monzo {context} failed with HTTP {status}",
                status_code=status,
                body=response.text[:500],
            )

        return MonzoTokens.from_api(response.json())

    async def exchange_code_for_tokens(self, code: str) -> MonzoTokens:
        """
        Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: On any non-2xx response
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
            context="token exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> MonzoTokens:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            AuthError: Refresh token revoked or invalid (401/403)
            OAuthExchangeError: Any other non-2xx response
        """
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            context="token refresh",
        )

    # ==================== ACCOUNTS ====================

    async def get_accounts(self, access_token: str) -> List[MonzoAccount]:
        """
        List accounts visible to the token.

        Raises:
            AuthError: Token rejected (401/403), including SCA not yet approved
        """
        async with self._http() as client:
            response = await client.get("/accounts", headers=self._auth_headers(access_token))
        self._raise_for_status(response, "account listing")

        accounts = response.json().get("accounts") or []
        return [
            MonzoAccount(
                id=a["id"],
                description=a.get("description"),
                type=a.get("type"),
                closed=bool(a.get("closed", False)),
            )
            for a in accounts
        ]

    # ==================== TRANSACTIONS ====================

    async def get_transactions(
        self,
        access_token: str,
        account_id: str,
        since: Optional[Union[datetime, str]] = None,
        before: Optional[Union[datetime, str]] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> List[MonzoTransaction]:
        """
        Fetch one page of transactions, oldest first.

        Args:
            since: Lower bound (timestamp or transaction id)
            before: Upper bound cursor; pass the oldest timestamp of the
                previous page to page backwards
            limit: Page size (max 100)
        """
        params: List[tuple] = [
            ("account_id", account_id),
            ("limit", str(limit)),
            ("expand[]", "merchant"),
        ]
        if since:
            params.append(("since", format_timestamp(since) if isinstance(since, datetime) else since))
        if before:
            params.append(("before", format_timestamp(before) if isinstance(before, datetime) else before))

        async with self._http() as client:
            response = await client.get(
                "/transactions",
                params=params,
                headers=self._auth_headers(access_token),
            )
        self._raise_for_status(response, "transaction listing")

        raw = response.json().get("transactions") or []
        transactions = [MonzoTransaction.from_api(t, account_id=account_id) for t in raw]
        transactions.sort(key=lambda t: t.created)
        return transactions

    # ==================== WEBHOOKS ====================

    async def register_webhook(self, access_token: str, account_id: str, url: str) -> MonzoWebhook:
        """Register a push webhook for the account"""
        async with self._http() as client:
            response = await client.post(
                "/webhooks",
                data={"account_id": account_id, "url": url},
                headers=self._auth_headers(access_token),
            )
        self._raise_for_status(response, "webhook registration")

        webhook = response.json().get("webhook") or {}
        return MonzoWebhook(
            id=webhook["id"],
            account_id=webhook.get("account_id", account_id),
            url=webhook.get("url", url),
        )

    async def delete_webhook(self, access_token: str, webhook_id: str) -> None:
        """Delete a push webhook"""
        async with self._http() as client:
            response = await client.delete(
                f"/webhooks/{webhook_id}",
                headers=self._auth_headers(access_token),
            )
        self._raise_for_status(response, "webhook deletion")
