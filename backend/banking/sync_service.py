"""
Bank Sync Orchestrator

Drives transaction ingestion from Monzo:
- Full-history import after linking (background task, paged backwards)
- Incremental sync on demand (paged forwards from the last sync)

Both share one ingestion path with the webhook ingestor: insert keyed by
(account, external id), duplicates counted and skipped, new transactions
classified by the matching rules.

Every attempt leaves a sync run that is finalized exactly once. At most one
run per account is in progress; a second trigger fails with
SyncInProgressError instead of racing.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from banking.errors import (
    AccountNotFoundError, SyncInProgressError, SyncTimeoutError, get_user_error_message
)
from banking.monzo_client import MonzoClient, MonzoTransaction
from banking.progress import ProgressBroadcaster, ImportProgress, ProgressStatus
from banking.repository import bank_store_scope
from banking.retry import RetryPolicy
from banking.tokens import AccountTokens
from database.bank_models import SyncType, SyncStatus, AccountSyncStatus, utc_now
from reconciliation.services.review_service import ReviewService, ClassificationOutcome
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
IMPORT_WATCHDOG_SECONDS = 270.0    # inside Monzo's 5 minute post-auth window
MANUAL_SYNC_TIMEOUT_SECONDS = 30.0


# ==================== COUNTERS ====================

@dataclass
class SyncCounters:
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    matched: int = 0
    pending: int = 0
    pages: int = 0

    def add(self, other: "SyncCounters") -> None:
        self.fetched += other.fetched
        self.inserted += other.inserted
        self.skipped += other.skipped
        self.matched += other.matched
        self.pending += other.pending

    def run_counts(self) -> Dict[str, int]:
        """Column values for the sync run"""
        return {
            "transactions_fetched": self.fetched,
            "transactions_skipped": self.skipped,
            "transactions_matched": self.matched,
            "transactions_pending": self.pending,
        }


@dataclass
class SyncResult:
    sync_run_id: str
    status: SyncStatus
    transactions_fetched: int
    transactions_skipped: int
    last_sync_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_run_id": self.sync_run_id,
            "transactions_fetched": self.transactions_fetched,
            "transactions_skipped": self.transactions_skipped,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_sync_status": self.status.value,
        }


# ==================== SHARED INGESTION ====================

class TransactionIngestor:
    """Idempotent insert plus classification, shared by pull sync and webhooks"""

    def __init__(self, store):
        self.store = store
        self.review = ReviewService(store)
        self._rules: Dict[str, list] = {}

    async def ingest(self, bank_account_id: str, transactions: Iterable[MonzoTransaction]) -> SyncCounters:
        counters = SyncCounters()

        for transaction in transactions:
            counters.fetched += 1
            result = await self.store.transactions.insert_or_detect_conflict(
                bank_account_id, transaction.to_record()
            )
            if not result.inserted:
                counters.skipped += 1
                continue
            counters.inserted += 1

            if bank_account_id not in self._rules:
                self._rules[bank_account_id] = await self.review.load_rules(bank_account_id)

            # the insert is committed; a failed classification leaves it for review
            transaction_id = result.transaction.id
            try:
                outcome = await self.review.classify(result.transaction, self._rules[bank_account_id])
            except Exception as e:
                logger.exception(f"Classification failed for bank transaction {transaction_id}, queueing for review: {e}")
                await self.store.session.rollback()
                await self.store.pending.create(bank_transaction_id=transaction_id)
                outcome = ClassificationOutcome.PENDING

            if outcome == ClassificationOutcome.MATCHED:
                counters.matched += 1
            else:
                counters.pending += 1

        return counters


# ==================== ORCHESTRATOR ====================

class SyncOrchestrator:
    """
    Owns the background import tasks for one application instance.

    store_factory returns an async context manager yielding a BankStore;
    each import or sync opens its own so it outlives the triggering request.
    """

    def __init__(
        self,
        client: MonzoClient,
        broadcaster: ProgressBroadcaster,
        store_factory: Callable = bank_store_scope,
        policy: Optional[RetryPolicy] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        watchdog_seconds: float = IMPORT_WATCHDOG_SECONDS,
        manual_sync_timeout: float = MANUAL_SYNC_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.broadcaster = broadcaster
        self.store_factory = store_factory
        self.policy = policy or RetryPolicy()
        self.page_size = page_size
        self.watchdog_seconds = watchdog_seconds
        self.manual_sync_timeout = manual_sync_timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls,
        settings,
        broadcaster: ProgressBroadcaster,
        client: Optional[MonzoClient] = None,
        store_factory: Callable = bank_store_scope,
    ) -> "SyncOrchestrator":
        return cls(
            client=client or MonzoClient.from_settings(settings),
            broadcaster=broadcaster,
            store_factory=store_factory,
            policy=RetryPolicy.from_settings(settings),
            page_size=settings.SYNC_PAGE_SIZE,
            watchdog_seconds=settings.IMPORT_WATCHDOG_SECONDS,
            manual_sync_timeout=settings.MANUAL_SYNC_TIMEOUT_SECONDS,
        )

    # ---------- helpers ----------

    def _publish(
        self,
        run_id: str,
        status: ProgressStatus,
        counters: SyncCounters,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.broadcaster.publish(ImportProgress(
            sync_run_id=run_id,
            status=status,
            transactions_fetched=counters.fetched,
            transactions_processed=counters.inserted,
            duplicates_skipped=counters.skipped,
            current_batch=counters.pages or None,
            message=message,
            error=error,
        ))

    async def _begin_run(self, store, account_id: str, sync_type: SyncType):
        account = await store.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Bank account {account_id} not found")

        in_progress = await store.sync_runs.get_in_progress(account_id)
        if in_progress is not None:
            logger.info(f"Sync already in progress for bank account {account_id} (run {in_progress.id})")
            raise SyncInProgressError(sync_run_id=in_progress.id)

        run = await store.sync_runs.create(account_id, sync_type)
        await store.accounts.update(account_id, {"last_sync_status": AccountSyncStatus.IN_PROGRESS.value})
        return account, run

    async def _finalize(
        self,
        store,
        account_id: str,
        run_id: str,
        status: SyncStatus,
        counters: SyncCounters,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> Optional[datetime]:
        """Write the terminal run state and account status; returns last_sync_at"""
        await store.sync_runs.finalize(
            run_id,
            status,
            error_message=error_message,
            error_details=error_details,
            **counters.run_counts(),
        )

        account_updates: Dict[str, Any] = {"last_sync_status": status.value}
        last_sync_at = None
        if status == SyncStatus.SUCCESS:
            last_sync_at = utc_now()
            account_updates["last_sync_at"] = last_sync_at
        await store.accounts.update(account_id, account_updates)

        if status == SyncStatus.FAILED:
            self._publish(run_id, ProgressStatus.FAILED, counters, message="Import failed", error=error_message)
        else:
            message = "Import complete" if status == SyncStatus.SUCCESS else "Import partially complete"
            self._publish(run_id, ProgressStatus.COMPLETED, counters, message=message, error=error_message)

        logger.info(
            f"Sync run {run_id} finished with status {status.value}",
            extra={'sync_run_id': run_id, 'bank_account_id': account_id, **counters.run_counts()}
        )
        return last_sync_at

    # ==================== FULL-HISTORY IMPORT ====================

    async def start_full_import(self, account_id: str) -> str:
        """
        Create the initial sync run and start the import in the background.

        Returns the run id immediately; follow progress via the broadcaster.

        Raises:
            AccountNotFoundError, SyncInProgressError
        """
        async with self.store_factory() as store:
            _, run = await self._begin_run(store, account_id, SyncType.INITIAL)

        task = asyncio.create_task(self._run_full_import(account_id, run.id), name=f"bank-import-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        logger.info(f"Full-history import started for bank account {account_id} (run {run.id})")
        return run.id

    async def _run_full_import(self, account_id: str, run_id: str) -> None:
        """Import under the watchdog; always leaves the run in a terminal state"""
        counters = SyncCounters()
        try:
            await asyncio.wait_for(
                self.import_full_history(account_id, run_id, counters),
                timeout=self.watchdog_seconds,
            )
        except asyncio.TimeoutError:
            status = SyncStatus.PARTIAL if counters.pages else SyncStatus.FAILED
            logger.warning(f"Import watchdog fired for sync run {run_id} after {self.watchdog_seconds}s")
            async with self.store_factory() as store:
                await self._finalize(
                    store, account_id, run_id, status, counters,
                    error_message=f"Import timed out after {int(self.watchdog_seconds)} seconds",
                )
        except asyncio.CancelledError:
            logger.warning(f"Import for sync run {run_id} cancelled")
            async with self.store_factory() as store:
                await self._finalize(
                    store, account_id, run_id, SyncStatus.FAILED, counters,
                    error_message="Import cancelled",
                )
            raise
        except Exception as e:
            logger.error(f"Import for sync run {run_id} failed: {type(e).__name__}: {e}")
            capture_exception(e, sync_run_id=run_id, bank_account_id=account_id)
            async with self.store_factory() as store:
                await self._finalize(
                    store, account_id, run_id, SyncStatus.FAILED, counters,
                    error_message=get_user_error_message(e),
                    error_details={"error_type": type(e).__name__, "status_code": getattr(e, "status_code", None)},
                )

    async def import_full_history(self, account_id: str, run_id: str, counters: Optional[SyncCounters] = None) -> SyncStatus:
        """
        Page backwards from now until a short page, the sync-from date, or a
        cursor that stops advancing. A page failure after at least one good
        page ends the import as partial; a failure on the first page raises.
        """
        counters = counters if counters is not None else SyncCounters()

        async with self.store_factory() as store:
            account = await store.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(f"Bank account {account_id} not found")

            tokens = AccountTokens(account, self.client, store.accounts, self.policy)
            ingestor = TransactionIngestor(store)
            since = account.sync_from_date
            before: Optional[datetime] = None
            page_error: Optional[BaseException] = None

            self._publish(run_id, ProgressStatus.FETCHING, counters, message="Fetching transactions from Monzo")

            while True:
                try:
                    page = await tokens.call(
                        lambda token: self.client.get_transactions(
                            token, account.account_id, since=since, before=before, limit=self.page_size
                        ),
                        operation_name="Monzo transaction fetch",
                    )
                except Exception as e:
                    if counters.pages == 0:
                        raise
                    logger.warning(f"Page {counters.pages + 1} failed for sync run {run_id}, finishing as partial: {e}")
                    page_error = e
                    break

                counters.pages += 1
                counters.add(await ingestor.ingest(account.id, page))
                await store.sync_runs.update_counts(run_id, **counters.run_counts())
                self._publish(
                    run_id, ProgressStatus.PROCESSING, counters,
                    message=f"Processed batch {counters.pages}",
                )

                if len(page) < self.page_size:
                    break
                oldest = page[0].created
                if before is not None and oldest >= before:
                    break
                if since is not None and oldest <= since:
                    break
                before = oldest

            if page_error is not None:
                await self._finalize(
                    store, account_id, run_id, SyncStatus.PARTIAL, counters,
                    error_message=get_user_error_message(page_error),
                )
                return SyncStatus.PARTIAL

            await self._finalize(store, account_id, run_id, SyncStatus.SUCCESS, counters)
            return SyncStatus.SUCCESS

    # ==================== INCREMENTAL SYNC ====================

    async def sync_account(self, account_id: str) -> SyncResult:
        """
        Fetch transactions since the last successful sync.

        Raises:
            AccountNotFoundError: Unknown account (404)
            SyncInProgressError: Another run is in progress (409)
            TokenExpiredError: Token expired and could not be refreshed (401)
            SyncTimeoutError: Did not finish within the manual sync budget
            BankApiError / httpx errors: Provider failure after retries
        """
        async with self.store_factory() as store:
            account, run = await self._begin_run(store, account_id, SyncType.INCREMENTAL)
            run_id = run.id
            counters = SyncCounters()

            # The session may hold an aborted transaction on the error paths;
            # roll it back before writing the terminal state.
            try:
                status = await asyncio.wait_for(
                    self._fetch_incremental(store, account, run_id, counters),
                    timeout=self.manual_sync_timeout,
                )
            except asyncio.TimeoutError:
                await store.session.rollback()
                await self._finalize(
                    store, account_id, run_id, SyncStatus.FAILED, counters,
                    error_message=f"Sync timed out after {int(self.manual_sync_timeout)} seconds",
                )
                raise SyncTimeoutError("Sync timed out. Please try again.")
            except Exception as e:
                logger.error(f"Incremental sync for bank account {account_id} failed: {type(e).__name__}: {e}")
                await store.session.rollback()
                await self._finalize(
                    store, account_id, run_id, SyncStatus.FAILED, counters,
                    error_message=get_user_error_message(e),
                    error_details={"error_type": type(e).__name__, "status_code": getattr(e, "status_code", None)},
                )
                raise

            last_sync_at = await self._finalize(store, account_id, run_id, status, counters)
            return SyncResult(
                sync_run_id=run_id,
                status=status,
                transactions_fetched=counters.fetched,
                transactions_skipped=counters.skipped,
                last_sync_at=last_sync_at or account.last_sync_at,
            )

    async def _fetch_incremental(self, store, account, run_id: str, counters: SyncCounters) -> SyncStatus:
        tokens = AccountTokens(account, self.client, store.accounts, self.policy)
        await tokens.access_token()

        ingestor = TransactionIngestor(store)
        since: Any = account.last_sync_at or account.sync_from_date

        while True:
            try:
                page: List[MonzoTransaction] = await tokens.call(
                    lambda token: self.client.get_transactions(
                        token, account.account_id, since=since, limit=self.page_size
                    ),
                    operation_name="Monzo transaction fetch",
                )
            except Exception:
                if counters.pages == 0:
                    raise
                logger.warning(f"Incremental sync page {counters.pages + 1} failed for run {run_id}")
                return SyncStatus.PARTIAL

            counters.pages += 1
            counters.add(await ingestor.ingest(account.id, page))

            if len(page) < self.page_size:
                return SyncStatus.SUCCESS
            # Monzo accepts a transaction id as the lower bound
            cursor = page[-1].id
            if cursor == since:
                return SyncStatus.SUCCESS
            since = cursor

    # ==================== LIFECYCLE ====================

    @property
    def active_run_ids(self) -> List[str]:
        return list(self._tasks)

    async def _finalize_cancelled(self, run_id: str) -> None:
        """Fail a run whose task was cancelled before it could finalize itself"""
        async with self.store_factory() as store:
            run = await store.sync_runs.get(run_id)
            if run is None or run.status != SyncStatus.IN_PROGRESS.value:
                return
            logger.warning(f"Import for sync run {run_id} cancelled before it started")
            await self._finalize(
                store, run.bank_account_id, run_id, SyncStatus.FAILED, SyncCounters(),
                error_message="Import cancelled",
            )

    async def cancel(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await self._finalize_cancelled(run_id)
        return True

    async def shutdown(self) -> None:
        """Cancel running imports and make sure each run ends failed"""
        tasks = dict(self._tasks)
        for task in tasks.values():
            task.cancel()
        if tasks:
            logger.info(f"Cancelling {len(tasks)} running bank imports")
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            for run_id in tasks:
                await self._finalize_cancelled(run_id)
