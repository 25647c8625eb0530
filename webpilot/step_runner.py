import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .actuator import BrowserSession, Observation, command_for_step
from .broadcaster import SnapshotBroadcaster
from .db import utc_now
from .errors import ActuatorError
from .plan import PlanGraph
from .policy import PolicyGuard
from .schemas import PlanState, PlanStep, PolicyPayload
from .telemetry import TelemetryLog


logger = logging.getLogger("uvicorn.error")

HUMAN_NEEDED_RE = re.compile(r"requires human|cloudflare challenge|captcha", re.IGNORECASE)
BLOCKED_BY_POLICY = "blocked by policy"

StepCallback = Callable[[PlanStep], Awaitable[None]]


@dataclass
class StepOutcome:
    success: bool
    observation: Optional[Observation] = None
    snapshot: Optional[dict] = None
    log_count: int = 0
    error: Optional[str] = None
    blocked: bool = False
    requires_human: bool = False
    policy_overridden: bool = False


async def _noop(step: PlanStep) -> None:
    return None


class StepRunner:
    def __init__(
        self,
        telemetry: TelemetryLog,
        policy: PolicyGuard,
        broadcaster: SnapshotBroadcaster,
        actuator_timeout_s: float = 30.0,
    ):
        self.telemetry = telemetry
        self.policy = policy
        self.broadcaster = broadcaster
        self.actuator_timeout_s = actuator_timeout_s

    async def _finish(self, step: PlanStep, status: str, graph: PlanGraph, on_update: StepCallback) -> None:
        graph.set_status(step, status)
        step.finished_at = utc_now()
        await on_update(step)

    async def run_step(
        self,
        run_id: str,
        step: PlanStep,
        session: BrowserSession,
        state: PlanState,
        graph: PlanGraph,
        on_update: Optional[StepCallback] = None,
    ) -> StepOutcome:
        on_update = on_update or _noop
        if not graph.dependencies_met(step):
            return StepOutcome(success=False, error="dependencies not completed")

        if step.status == "running":
            # Left mid-flight by a crashed or recovered drive; it gets a fresh attempt budget.
            step.attempts = 0
        step.started_at = utc_now()
        step.finished_at = None
        graph.set_status(step, "running")
        await on_update(step)

        if step.tool == "none":
            step.attempts = min(step.attempts + 1, state.limits.max_step_attempts)
            await self._finish(step, "completed", graph, on_update)
            return StepOutcome(success=True)

        command = command_for_step(step)
        overridden = False
        if command.action == "goto" and command.url:
            verdict = await self.policy.check_navigation(command.url, state.preferences)
            if verdict.verdict != "allowed":
                level = "warning" if verdict.verdict == "blocked" else "info"
                if verdict.overridden:
                    message = f"robots.txt disallows {command.url}; proceeding because ignoreRobotsTxt is set"
                elif verdict.verdict == "blocked":
                    message = f"Navigation to {command.url} blocked by robots.txt"
                else:
                    message = f"robots.txt could not be evaluated for {command.url}; proceeding"
                await self.telemetry.audit(
                    run_id,
                    PolicyPayload(
                        url=command.url,
                        verdict=verdict.verdict,
                        overridden=verdict.overridden,
                        reason=verdict.reason,
                        step_id=step.id,
                    ),
                    message,
                    level=level,
                )
            if not verdict.permitted:
                step.last_error = BLOCKED_BY_POLICY
                await self._finish(step, "failed", graph, on_update)
                return StepOutcome(success=False, error=BLOCKED_BY_POLICY, blocked=True)
            if verdict.overridden:
                overridden = True
                if step.id not in state.policy_overridden_step_ids:
                    state.policy_overridden_step_ids.append(step.id)

        observation: Optional[Observation] = None
        error: Optional[str] = None
        max_attempts = state.limits.max_step_attempts
        async with session.lock:
            while step.attempts < max_attempts:
                step.attempts += 1
                try:
                    await session.ensure_started()
                    await asyncio.wait_for(session.actuator.perform(command), timeout=self.actuator_timeout_s)
                    observation = await asyncio.wait_for(session.actuator.observe(), timeout=self.actuator_timeout_s)
                    error = None
                    break
                except asyncio.TimeoutError:
                    error = f"{command.action} timed out after {self.actuator_timeout_s}s"
                except ActuatorError as exc:
                    error = str(exc) or f"{command.action} failed"
                step.last_error = error
                await self.telemetry.browser_log(
                    run_id, step.id, "error", f"Attempt {step.attempts}/{max_attempts} failed: {error}"
                )
                if HUMAN_NEEDED_RE.search(error):
                    logger.info("Run %s step %s needs a human: %s", run_id, step.id, error)
                    # Stays running; the step is retried from scratch once a human resumes the run.
                    step.attempts = 0
                    await on_update(step)
                    return StepOutcome(
                        success=False, error=error, requires_human=True, policy_overridden=overridden
                    )
                await on_update(step)

        if observation is None:
            step.last_error = error or "no attempts left"
            await self._finish(step, "failed", graph, on_update)
            return StepOutcome(success=False, error=step.last_error, policy_overridden=overridden)

        snapshot = await self.telemetry.snapshot(
            run_id,
            step.id,
            observation.url,
            observation.title,
            observation.dom_text,
            screenshot=observation.screenshot,
            cursor=observation.cursor,
            viewport=observation.viewport,
        )
        target = command.url or command.selector or ""
        await self.telemetry.browser_log(run_id, step.id, "info", f"{command.action} {target}".strip())
        log_count = 1 + await self.telemetry.browser_logs(run_id, step.id, observation.logs)
        step.snapshot_id = snapshot["id"]
        step.log_count = log_count
        step.last_error = None
        await self.broadcaster.publish(run_id, snapshot)
        await self._finish(step, "completed", graph, on_update)
        return StepOutcome(
            success=True,
            observation=observation,
            snapshot=snapshot,
            log_count=log_count,
            policy_overridden=overridden,
        )
