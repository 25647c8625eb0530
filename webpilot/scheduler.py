import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from .actuator import BrowserSession
from .config import AppSettings
from .controller import AdaptiveController
from .db import utc_before, utc_now
from .errors import ActuatorError
from .run_store import RunStore


logger = logging.getLogger("uvicorn.error")

# (browser, headless, record_dir) -> actuator; record_dir is None when nothing should be recorded.
ActuatorFactory = Callable[..., Any]


class RunScheduler:
    """Claims queued runs, recovers stale ones, and owns the per-run task, session and stop flag."""

    def __init__(
        self,
        store: RunStore,
        controller: AdaptiveController,
        actuator_factory: ActuatorFactory,
        settings: AppSettings,
    ):
        self.store = store
        self.controller = controller
        self.actuator_factory = actuator_factory
        self.settings = settings
        self.run_tasks: Dict[str, asyncio.Task] = {}
        self.stop_events: Dict[str, asyncio.Event] = {}
        self.sessions: Dict[str, BrowserSession] = {}
        self.relaunch_requested: Set[str] = set()
        self._closing = False
        self._poller: Optional[asyncio.Task] = None

    def is_active(self, run_id: str) -> bool:
        task = self.run_tasks.get(run_id)
        return task is not None and not task.done()

    def has_capacity(self) -> bool:
        limit = self.settings.max_concurrent_runs
        if not limit:
            return True
        return sum(1 for task in self.run_tasks.values() if not task.done()) < limit

    def launch(self, run_id: str) -> asyncio.Task:
        existing = self.run_tasks.get(run_id)
        if existing is not None and not existing.done():
            # Still tearing down the previous drive; start again once it has let go.
            self.relaunch_requested.add(run_id)
            return existing
        self.stop_events[run_id] = asyncio.Event()
        task = asyncio.create_task(self._run_and_cleanup(run_id))
        self.run_tasks[run_id] = task
        return task

    async def _run_and_cleanup(self, run_id: str) -> None:
        session: Optional[BrowserSession] = None
        try:
            run = await self.store.get(run_id)
            record_dir = self.store.telemetry.run_dir(run_id) if self.settings.record_video else None
            actuator = self.actuator_factory(
                run.get("browser") or self.settings.default_browser,
                bool(run.get("headless", self.settings.default_headless)),
                record_dir,
            )
            session = BrowserSession(actuator)
            self.sessions[run_id] = session
            await self.controller.run(run_id, session, self.stop_events[run_id])
        finally:
            if session is not None:
                try:
                    await session.close()
                except ActuatorError as exc:
                    logger.warning("Closing browser for run %s failed: %s", run_id, exc)
                if session.actuator.recording:
                    await self.store.db.update_run(run_id, recording_path=session.actuator.recording)
            self.sessions.pop(run_id, None)
            self.stop_events.pop(run_id, None)
            if self.run_tasks.get(run_id) is asyncio.current_task():
                self.run_tasks.pop(run_id, None)
            if run_id in self.relaunch_requested:
                self.relaunch_requested.discard(run_id)
                if not self._closing:
                    logger.info("Relaunching run %s after teardown", run_id)
                    self.launch(run_id)
            else:
                self.store.forget(run_id)

    def request_stop(self, run_id: str) -> bool:
        event = self.stop_events.get(run_id)
        if event is None or not self.is_active(run_id):
            return False
        event.set()
        return True

    async def recover_stale(self) -> int:
        recovered = 0
        cutoff = utc_before(self.settings.stale_run_after_s)
        for run_id in await self.store.db.stale_running_run_ids(cutoff):
            if self.is_active(run_id):
                continue
            async with self.store.lock(run_id):
                state = await self.store.load_state(run_id)
                state.resume_requested_at = utc_now()
                state.resume_reason = "stale-running"
                await self.store.save_state(run_id, state)
            logger.info("Recovering stale run %s", run_id)
            self.launch(run_id)
            recovered += 1
        return recovered

    async def tick(self) -> None:
        await self.recover_stale()
        while self.has_capacity():
            run_id = await self.store.claim_next_queued()
            if not run_id:
                break
            logger.info("Scheduler picked up run %s", run_id)
            self.launch(run_id)

    async def _poll(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.settings.queue_poll_interval_s)

    def start(self) -> None:
        self._closing = False
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self._poll())

    async def shutdown(self) -> None:
        self._closing = True
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        tasks = [task for task in self.run_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.run_tasks.clear()
        self.relaunch_requested.clear()
