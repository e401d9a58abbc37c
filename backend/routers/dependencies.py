"""
Shared FastAPI dependencies for the bank and ledger routers.

Long-lived components (Monzo client, progress broadcaster, sync
orchestrator, OAuth state store) are created in the app lifespan and held
on app.state; repositories are built per request on the request session.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from banking.monzo_client import MonzoClient
from banking.oauth import OAuthStateStore
from banking.progress import ProgressBroadcaster
from banking.repository import BankStore
from banking.sync_service import SyncOrchestrator
from config import get_settings
from database import get_db
from services.ledger_repository import LedgerRepository


async def get_store(db: AsyncSession = Depends(get_db)) -> BankStore:
    return BankStore(db)


async def get_ledger(db: AsyncSession = Depends(get_db)) -> LedgerRepository:
    return LedgerRepository(db)


def get_monzo_client(request: Request) -> MonzoClient:
    return request.app.state.monzo_client


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_oauth_states(request: Request) -> OAuthStateStore:
    return request.app.state.oauth_states


def get_app_settings():
    return get_settings()
