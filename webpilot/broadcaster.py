import asyncio
from typing import Dict, List, Optional

from .schemas import TERMINAL_STATUSES


SUBSCRIBER_QUEUE_SIZE = 16


class SnapshotBroadcaster:
    """In-memory fan-out of live snapshots; keeps the latest per run so late viewers start with a frame."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.latest_by_run: Dict[str, dict] = {}
        self.lock = asyncio.Lock()

    @staticmethod
    def _offer(queue: asyncio.Queue, event: dict) -> None:
        # Slow viewers lose the oldest frames, never the newest.
        while True:
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    async def publish(self, run_id: str, snapshot: dict) -> None:
        event = {"type": "snapshot", "snapshot": snapshot}
        async with self.lock:
            self.latest_by_run[run_id] = snapshot
            queues = list(self.subscribers.get(run_id, []))
        for queue in queues:
            self._offer(queue, event)

    async def publish_status(self, run_id: str, status: str, **extra) -> None:
        event = {"type": "status", "status": status, **extra}
        async with self.lock:
            if status in TERMINAL_STATUSES:
                # Finished runs are replayed from the database, not from memory.
                self.latest_by_run.pop(run_id, None)
            queues = list(self.subscribers.get(run_id, []))
        for queue in queues:
            self._offer(queue, event)

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
            latest = self.latest_by_run.get(run_id)
        if latest is not None:
            self._offer(queue, {"type": "snapshot", "snapshot": latest})
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)

    def latest(self, run_id: str) -> Optional[dict]:
        return self.latest_by_run.get(run_id)

    def seed(self, run_id: str, snapshot: dict) -> None:
        self.latest_by_run.setdefault(run_id, snapshot)

    async def forget(self, run_id: str) -> None:
        async with self.lock:
            self.latest_by_run.pop(run_id, None)
