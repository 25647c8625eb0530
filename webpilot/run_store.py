import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from .db import Database, utc_now
from .errors import InvalidTransition, OperatorConflict, RunNotFound
from .schemas import (
    TERMINAL_STATUSES,
    CheckpointBrief,
    CheckpointSavePayload,
    PlanState,
    RunStatusPayload,
)
from .telemetry import TelemetryLog


logger = logging.getLogger("uvicorn.error")

ALLOWED_TRANSITIONS: Dict[str, set] = {
    "queued": {"running", "stopped", "failed"},
    "running": {"waiting_human", "completed", "failed", "stopped"},
    "waiting_human": {"running", "stopped", "failed"},
    "failed": {"running"},
    "stopped": {"running"},
    "completed": set(),
}
ADMIN_BLOCKED_STATUSES = {"running", "queued"}


def new_run_id() -> str:
    return uuid.uuid4().hex


class RunStore:
    """Durable run records; every status change goes through `transition`."""

    def __init__(self, db: Database, telemetry: TelemetryLog):
        self.db = db
        self.telemetry = telemetry
        self.locks: Dict[str, asyncio.Lock] = {}

    def lock(self, run_id: str) -> asyncio.Lock:
        lock = self.locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[run_id] = lock
        return lock

    async def create(
        self,
        task: str,
        state: PlanState,
        model: Optional[str] = None,
        browser: Optional[str] = None,
        headless: bool = True,
    ) -> str:
        run_id = new_run_id()
        state.updated_at = utc_now()
        await self.db.insert_run(
            run_id,
            task,
            state.model_dump(mode="json"),
            model=model,
            browser=browser,
            headless=headless,
            status="queued",
        )
        await self.telemetry.audit(run_id, RunStatusPayload(to_status="queued", reason="enqueued"), "Run queued")
        return run_id

    async def get(self, run_id: str) -> Dict[str, Any]:
        run = await self.db.get_run(run_id)
        if not run:
            raise RunNotFound(run_id)
        return run

    async def load_state(self, run_id: str) -> PlanState:
        run = await self.get(run_id)
        return PlanState.model_validate(run["plan_state"] or {})

    async def save_state(self, run_id: str, state: PlanState, **fields: Any) -> None:
        state.updated_at = utc_now()
        await self.db.update_run(run_id, plan_state=state.model_dump(mode="json"), **fields)

    async def transition(
        self,
        run_id: str,
        to_status: str,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        run = await self.get(run_id)
        from_status = run["status"]
        if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
            raise InvalidTransition(run_id, from_status, to_status)
        if to_status == "running" and not run.get("started_at"):
            fields.setdefault("started_at", utc_now())
        if to_status in TERMINAL_STATUSES:
            fields.setdefault("finished_at", utc_now())
        elif from_status in TERMINAL_STATUSES:
            fields.setdefault("finished_at", None)
        ok = await self.db.update_run_if_status(run_id, [from_status], status=to_status, **fields)
        if not ok:
            current = await self.get(run_id)
            raise InvalidTransition(run_id, current["status"], to_status)
        level = "error" if to_status == "failed" else "warning" if to_status == "waiting_human" else "info"
        await self.telemetry.audit(
            run_id,
            RunStatusPayload(from_status=from_status, to_status=to_status, reason=reason),
            f"Run {from_status} -> {to_status}" + (f" ({reason})" if reason else ""),
            level=level,
        )
        logger.info("Run %s %s -> %s (%s)", run_id, from_status, to_status, reason or "-")
        return await self.get(run_id)

    async def checkpoint(
        self,
        run_id: str,
        state: PlanState,
        active_step_id: Optional[str],
        brief: Optional[CheckpointBrief] = None,
    ) -> str:
        checkpointed_at = utc_now()
        if brief is not None:
            state.checkpoint = brief
        await self.save_state(run_id, state, active_step_id=active_step_id, checkpointed_at=checkpointed_at)
        await self.telemetry.audit(
            run_id,
            CheckpointSavePayload(
                active_step_id=active_step_id,
                checkpointed_at=checkpointed_at,
                completed_count=state.completed_count,
                brief=brief,
            ),
            "Checkpoint saved",
        )
        return checkpointed_at

    async def claim_next_queued(self) -> Optional[str]:
        """Move the oldest queued run to running; None when the queue is empty or we lost the race."""
        run_id = await self.db.oldest_queued_run_id()
        if not run_id:
            return None
        try:
            await self.transition(run_id, "running", reason="scheduler-pickup")
        except InvalidTransition:
            return None
        return run_id

    @asynccontextmanager
    async def admin(self, run_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Hold the run lock for an operator mutation; refuse while the loop owns the run."""
        async with self.lock(run_id):
            run = await self.get(run_id)
            if run["status"] in ADMIN_BLOCKED_STATUSES:
                raise OperatorConflict(f"Run {run_id} is {run['status']}; stop it before editing steps")
            if run["status"] == "completed":
                raise OperatorConflict(f"Run {run_id} is completed")
            yield run

    def forget(self, run_id: str) -> None:
        lock = self.locks.get(run_id)
        if lock is not None and not lock.locked():
            del self.locks[run_id]
