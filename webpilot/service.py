import asyncio
import logging
from typing import Any, Dict, List, Optional

from .actuator import ActuatorCommand, BrowserSession
from .broadcaster import SnapshotBroadcaster
from .config import AppSettings
from .db import utc_now
from .errors import ActuatorError, InvalidTransition, OperatorConflict, PolicyBlocked
from .plan import PlanGraph
from .policy import PolicyGuard
from .run_store import RunStore
from .scheduler import RunScheduler
from .schemas import (
    TERMINAL_STATUSES,
    ApprovalGatePayload,
    ControlPayload,
    ControlRequest,
    EnqueueRequest,
    LifecycleRequest,
    PlanState,
    PlanStep,
    PlanUpdatePayload,
    RunPreferences,
    StepOverridePayload,
    StepRetryPayload,
)
from .step_runner import StepRunner
from .telemetry import TelemetryLog


logger = logging.getLogger("uvicorn.error")


def run_view(run: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "runId": run["run_id"],
        "task": run["task"],
        "status": run["status"],
        "model": run["model"],
        "browser": run["browser"],
        "headless": run["headless"],
        "planState": run["plan_state"],
        "activeStepId": run["active_step_id"],
        "checkpointedAt": run["checkpointed_at"],
        "requiresHumanIntervention": run["requires_human_intervention"],
        "errorMessage": run["error_message"],
        "recordingPath": run["recording_path"],
        "createdAt": run["created_at"],
        "updatedAt": run["updated_at"],
        "startedAt": run["started_at"],
        "finishedAt": run["finished_at"],
    }


class RunService:
    """Operator-facing run operations; the HTTP layer and tests both go through here."""

    def __init__(
        self,
        settings: AppSettings,
        store: RunStore,
        telemetry: TelemetryLog,
        scheduler: RunScheduler,
        runner: StepRunner,
        policy: PolicyGuard,
        broadcaster: SnapshotBroadcaster,
    ):
        self.settings = settings
        self.store = store
        self.telemetry = telemetry
        self.scheduler = scheduler
        self.runner = runner
        self.policy = policy
        self.broadcaster = broadcaster

    def _session_for(self, run: Dict[str, Any]) -> BrowserSession:
        actuator = self.scheduler.actuator_factory(
            run.get("browser") or self.settings.default_browser,
            bool(run.get("headless", self.settings.default_headless)),
        )
        return BrowserSession(actuator)

    async def enqueue(self, req: EnqueueRequest) -> Dict[str, Any]:
        task = (req.task or "").strip()
        if not task:
            raise ValueError("task is required")
        state = PlanState(
            limits=req.plan_limits or self.settings.plan_limits,
            preferences=RunPreferences(
                ignore_robots_txt=req.ignore_robots_txt,
                require_human_approval=req.require_human_approval,
                use_search=req.use_search,
                planner_model=req.planner_model,
                self_check_model=req.self_check_model,
                loop_guard_model=req.loop_guard_model,
            ),
        )
        headless = self.settings.default_headless if req.headless is None else req.headless
        run_id = await self.store.create(
            task,
            state,
            model=req.model or self.settings.planner_endpoint.model_id,
            browser=req.browser or self.settings.default_browser,
            headless=headless,
        )
        logger.info("Queued run %s", run_id)
        await self.scheduler.tick()
        run = await self.store.get(run_id)
        return {"runId": run_id, "status": run["status"]}

    async def status(self, run_id: str) -> Dict[str, Any]:
        return run_view(await self.store.get(run_id))

    async def list_runs(self, limit: int = 50, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [run_view(run) for run in await self.store.db.list_runs(limit=limit, status=status)]

    async def stop(self, run_id: str) -> Dict[str, Any]:
        run = await self.store.get(run_id)
        if run["status"] in TERMINAL_STATUSES:
            return {"runId": run_id, "status": run["status"]}
        if self.scheduler.request_stop(run_id):
            return {"runId": run_id, "status": "stopping"}
        async with self.store.lock(run_id):
            run = await self.store.transition(run_id, "stopped", reason="operator-stop")
        self.store.forget(run_id)
        await self.broadcaster.publish_status(run_id, "stopped", reason="operator-stop")
        return {"runId": run_id, "status": run["status"]}

    async def _resume_locked(
        self,
        run: Dict[str, Any],
        state: PlanState,
        step_id: Optional[str],
        reason: str,
    ) -> Dict[str, Any]:
        run_id = run["run_id"]
        active_id = run["active_step_id"]
        graph = PlanGraph(state)
        step = None
        if step_id:
            step = graph.get(step_id)
            if step is None:
                raise OperatorConflict(f"Run {run_id} has no step {step_id}")
            active_id = step_id
        elif active_id:
            # The checkpointed step restarts if it never finished.
            step = graph.get(active_id)
            if step is not None and step.status not in ("failed", "running"):
                step = None
        if step is not None:
            if step.status != "pending":
                from_status = step.status
                graph.override(step, "pending")
                await self.telemetry.audit(
                    run_id,
                    StepOverridePayload(step_id=step.id, from_status=from_status, to_status="pending"),
                    f"Step reset for resume: {step.title}",
                )
        state.resume_requested_at = utc_now()
        state.resume_reason = reason
        await self.store.save_state(run_id, state, active_step_id=active_id)
        return await self.store.transition(
            run_id, "running", reason=reason, requires_human=False, error_message=None
        )

    async def resume(self, run_id: str, step_id: Optional[str] = None, reason: str = "manual") -> Dict[str, Any]:
        async with self.store.lock(run_id):
            run = await self.store.get(run_id)
            if run["status"] in ("running", "queued"):
                return run_view(run)
            if run["status"] == "completed":
                raise InvalidTransition(run_id, "completed", "running")
            state = PlanState.model_validate(run["plan_state"] or {})
            run = await self._resume_locked(run, state, step_id, reason)
        self.scheduler.launch(run_id)
        return run_view(run)

    async def approve_step(self, run_id: str, step_id: str) -> Dict[str, Any]:
        async with self.store.lock(run_id):
            run = await self.store.get(run_id)
            if run["status"] in ("running", "queued", "completed"):
                raise OperatorConflict(f"Run {run_id} is {run['status']}; there is no step awaiting approval")
            state = PlanState.model_validate(run["plan_state"] or {})
            if run["status"] != "waiting_human" or state.approval_requested_step_id != step_id:
                logger.info("Ignoring approval for run %s step %s (pending: %s)", run_id, step_id, state.approval_requested_step_id)
                view = run_view(run)
                view["approved"] = False
                return view
            state.approval_granted_step_id = step_id
            state.approval_requested_step_id = None
            await self.telemetry.audit(
                run_id,
                ApprovalGatePayload(step_id=step_id, decision="granted"),
                "Step approved by operator",
            )
            run = await self._resume_locked(run, state, None, "approval")
        self.scheduler.launch(run_id)
        view = run_view(run)
        view["approved"] = True
        return view

    async def override_step(self, run_id: str, step_id: str, status: str) -> Dict[str, Any]:
        async with self.store.admin(run_id) as run:
            state = PlanState.model_validate(run["plan_state"] or {})
            graph = PlanGraph(state)
            step = graph.get(step_id)
            if step is None:
                raise OperatorConflict(f"Run {run_id} has no step {step_id}")
            from_status = step.status
            graph.override(step, status)
            if status in ("completed", "failed"):
                step.finished_at = utc_now()
            await self.telemetry.audit(
                run_id,
                StepOverridePayload(step_id=step.id, from_status=from_status, to_status=status),
                f"Step overridden {from_status} -> {status}: {step.title}",
                level="warning",
            )
            await self.store.save_state(run_id, state)
            return {"runId": run_id, "step": step.model_dump()}

    async def retry_step(self, run_id: str, step_id: str) -> Dict[str, Any]:
        async with self.store.admin(run_id) as run:
            state = PlanState.model_validate(run["plan_state"] or {})
            graph = PlanGraph(state)
            step = graph.get(step_id)
            if step is None:
                raise OperatorConflict(f"Run {run_id} has no step {step_id}")
            if step.status not in ("failed", "completed"):
                raise OperatorConflict(f"Step {step_id} is {step.status}; only failed or completed steps can be retried")
            graph.override(step, "pending")

            async def on_update(item: PlanStep) -> None:
                await self.telemetry.audit(
                    run_id,
                    PlanUpdatePayload(step_id=item.id, status=item.status, attempts=item.attempts, error=item.last_error),
                    f"Step {item.status}: {item.title}",
                    level="error" if item.status == "failed" else "info",
                )

            session = self._session_for(run)
            try:
                outcome = await self.runner.run_step(run_id, step, session, state, graph, on_update=on_update)
            finally:
                try:
                    await session.close()
                except ActuatorError as exc:
                    logger.warning("Closing retry browser for run %s failed: %s", run_id, exc)
            await self.store.save_state(run_id, state)
            await self.telemetry.audit(
                run_id,
                StepRetryPayload(step_id=step.id, success=outcome.success, error=outcome.error),
                f"Step retry {'succeeded' if outcome.success else 'failed'}: {step.title}",
                level="info" if outcome.success else "warning",
            )
            return {"runId": run_id, "success": outcome.success, "error": outcome.error, "step": step.model_dump()}

    async def act(self, run_id: str, req: LifecycleRequest) -> Dict[str, Any]:
        if req.action == "stop":
            return await self.stop(run_id)
        if req.action == "resume":
            return await self.resume(run_id, req.step_id)
        if req.action == "approve_step":
            return await self.approve_step(run_id, req.step_id)
        if req.action == "retry_step":
            return await self.retry_step(run_id, req.step_id)
        return await self.override_step(run_id, req.step_id, req.status)

    async def control(self, run_id: str, req: ControlRequest) -> Dict[str, Any]:
        run = await self.store.get(run_id)
        if run["status"] in TERMINAL_STATUSES:
            raise OperatorConflict(f"Run {run_id} is {run['status']}")
        url = (req.url or "").strip() or None
        if req.action == "goto":
            state = PlanState.model_validate(run["plan_state"] or {})
            verdict = await self.policy.check_navigation(url, state.preferences)
            if not verdict.permitted:
                await self.telemetry.audit(
                    run_id,
                    ControlPayload(action="goto", url=url, ok=False, error=verdict.reason),
                    f"Control goto blocked by policy: {url}",
                    level="warning",
                )
                raise PolicyBlocked(url, verdict.reason or "blocked by policy")
        session = self.scheduler.sessions.get(run_id)
        fresh = session is None
        if fresh:
            session = self._session_for(run)
        try:
            async with session.lock:
                await session.ensure_started()
                command = ActuatorCommand(action=req.action, url=url)
                timeout = self.settings.actuator_timeout_s
                await asyncio.wait_for(session.actuator.perform(command), timeout=timeout)
                observation = await asyncio.wait_for(session.actuator.observe(), timeout=timeout)
        except (ActuatorError, asyncio.TimeoutError) as exc:
            error = str(exc) or f"{req.action} timed out"
            await self.telemetry.audit(
                run_id,
                ControlPayload(action=req.action, url=url, ok=False, error=error),
                f"Control {req.action} failed",
                level="error",
            )
            raise ActuatorError(error) from exc
        finally:
            if fresh:
                await session.close()
        snapshot = await self.telemetry.snapshot(
            run_id,
            None,
            observation.url,
            observation.title,
            observation.dom_text,
            screenshot=observation.screenshot,
            cursor=observation.cursor,
            viewport=observation.viewport,
        )
        await self.telemetry.browser_logs(run_id, None, observation.logs)
        await self.broadcaster.publish(run_id, snapshot)
        await self.telemetry.audit(
            run_id,
            ControlPayload(action=req.action, url=url, ok=True),
            f"Control {req.action}" + (f" {url}" if url else ""),
        )
        return {"ok": True, "snapshot": snapshot}

    async def delete(self, run_id: str, force: bool = False) -> Dict[str, Any]:
        run = await self.store.get(run_id)
        active = self.scheduler.is_active(run_id)
        if (active or run["status"] == "running") and not force:
            raise OperatorConflict(f"Run {run_id} is running; stop it first or pass force=true")
        self.scheduler.relaunch_requested.discard(run_id)
        task = self.scheduler.run_tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.store.db.delete_run(run_id)
        self.telemetry.remove_assets(run_id)
        await self.broadcaster.forget(run_id)
        self.store.forget(run_id)
        logger.info("Deleted run %s", run_id)
        return {"ok": True, "runId": run_id}
