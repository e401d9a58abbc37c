"""
Import Progress Broadcaster

In-process publish/subscribe hub from the sync orchestrator to the SSE
progress endpoint. One broadcaster lives on app.state; subscribers are keyed
by sync run id and removed when their stream closes.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, Set, Optional, Any

logger = logging.getLogger(__name__)

# Events buffered per subscriber before new ones are dropped
SUBSCRIBER_QUEUE_SIZE = 100


class ProgressStatus(str, Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ProgressStatus.COMPLETED, ProgressStatus.FAILED})


@dataclass
class ImportProgress:
    """Progress event for one sync run"""
    sync_run_id: str
    status: ProgressStatus
    transactions_fetched: int = 0
    transactions_processed: int = 0
    duplicates_skipped: int = 0
    current_batch: Optional[int] = None
    total_batches: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class ProgressBroadcaster:
    """Map of sync run id to subscriber queues"""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, sync_run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(sync_run_id, set()).add(queue)
        logger.debug(f"Progress subscriber added for sync run {sync_run_id}")
        return queue

    def unsubscribe(self, sync_run_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(sync_run_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[sync_run_id]

    def subscriber_count(self, sync_run_id: str) -> int:
        return len(self._subscribers.get(sync_run_id, ()))

    def publish(self, event: ImportProgress) -> int:
        """Deliver to every subscriber of event.sync_run_id. Returns the number reached."""
        delivered = 0
        for queue in list(self._subscribers.get(event.sync_run_id, ())):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Progress subscriber for sync run {event.sync_run_id} is full, dropping event")
        return delivered
