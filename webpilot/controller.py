import asyncio
import logging
from typing import Any, Dict, List, Optional

from .actuator import BrowserSession, Observation, command_for_step
from .broadcaster import SnapshotBroadcaster
from .db import utc_now
from .errors import InvalidTransition, PlannerError, SearchError
from .extraction import MAX_INVENTORY, detect_target, extract_items, inventory_from_html
from .loop_guard import LoopGuard
from .plan import PlanGraph, attach_to_hierarchy, build_steps, heuristic_plan, plan_from_result
from .planner import Planner
from .policy import PolicyGuard
from .run_store import RunStore
from .schemas import (
    ApprovalGatePayload,
    BranchRecord,
    CheckpointBrief,
    ExtractionPlan,
    ExtractionResultPayload,
    LoopGuardPayload,
    PlanAdaptPayload,
    PlanBranchPayload,
    PlanCreatedPayload,
    PlannerContext,
    PlannerContextPayload,
    PlanReplanPayload,
    PlanState,
    PlanStep,
    PlanUpdatePayload,
    ResumePlanPayload,
    ResumeSummaryPayload,
    SelfCheckPayload,
    SelfCheckReplanPayload,
    SearchPayload,
    SelfImprovementPayload,
    StepSpec,
    StepTrace,
)
from .search import SearchClient
from .step_runner import StepRunner
from .telemetry import TelemetryLog


logger = logging.getLogger("uvicorn.error")

CHECKPOINT_BRIEF_EVERY = 5
DEAD_END_FAILURES = 2
TRACE_LIMIT = 30


class RunSuspended(Exception):
    """Raised inside the loop once the run has left `running`; unwinds to the caller."""


class AdaptiveController:
    """Drives one run from plan to a terminal or suspended state."""

    def __init__(
        self,
        store: RunStore,
        telemetry: TelemetryLog,
        planner: Planner,
        runner: StepRunner,
        policy: PolicyGuard,
        broadcaster: SnapshotBroadcaster,
        search: Optional[SearchClient] = None,
    ):
        self.store = store
        self.telemetry = telemetry
        self.planner = planner
        self.runner = runner
        self.policy = policy
        self.broadcaster = broadcaster
        self.search = search

    async def run(self, run_id: str, session: BrowserSession, stop_event: asyncio.Event) -> None:
        try:
            await self._drive(run_id, session, stop_event)
        except RunSuspended:
            return
        except asyncio.CancelledError:
            await self._halt(run_id, "stopped", "cancelled")
            raise
        except Exception as exc:
            logger.exception("Run %s failed", run_id)
            await self._halt(run_id, "failed", "fatal-error", error_message=str(exc) or exc.__class__.__name__)

    async def _halt(self, run_id: str, status: str, reason: str, **fields: Any) -> None:
        try:
            await self.store.transition(run_id, status, reason=reason, **fields)
        except InvalidTransition:
            return
        await self.broadcaster.publish_status(run_id, status, reason=reason)

    # Helpers

    def _model(self, run: Dict[str, Any], state: PlanState, role: str = "planner") -> Optional[str]:
        prefs = state.preferences
        role_model = {
            "self_check": prefs.self_check_model,
            "loop_guard": prefs.loop_guard_model,
        }.get(role)
        return role_model or prefs.planner_model or run.get("model")

    async def _save(self, run_id: str, state: PlanState, active_step_id: Optional[str]) -> None:
        await self.store.save_state(run_id, state, active_step_id=active_step_id)

    async def _suspend(self, run_id: str, state: PlanState, reason: str, step_id: Optional[str]) -> None:
        await self._save(run_id, state, step_id)
        await self.store.transition(run_id, "waiting_human", reason=reason, requires_human=True)
        await self.broadcaster.publish_status(run_id, "waiting_human", reason=reason)
        raise RunSuspended(reason)

    async def _fail(self, run_id: str, state: PlanState, error: str, reason: str, step_id: Optional[str]) -> None:
        state.last_error = error
        state.outcome = "failed"
        await self._save(run_id, state, step_id)
        await self.store.transition(run_id, "failed", reason=reason, error_message=error)
        await self.broadcaster.publish_status(run_id, "failed", reason=reason)
        raise RunSuspended(reason)

    def _new_steps(self, specs: List[StepSpec], state: PlanState, source: str) -> List[PlanStep]:
        return build_steps(specs, state.limits, source=source)

    def _context(self, state: PlanState, page: Optional[Observation] = None) -> PlannerContext:
        context = PlannerContext(search_query=state.search_query, search_results=list(state.search_results))
        if page is not None:
            context.url = page.url
            context.title = page.title
            context.inventory = (page.inventory or inventory_from_html(page.html))[:MAX_INVENTORY]
        return context

    async def _search(self, run_id: str, state: PlanState, query: str) -> None:
        if self.search is None:
            return
        error: Optional[str] = None
        try:
            results = await self.search.search(query)
        except SearchError as exc:
            logger.warning("Search failed for run %s: %s", run_id, exc)
            results, error = [], str(exc)
        state.search_query = query
        state.search_results = results
        await self.telemetry.audit(
            run_id,
            SearchPayload(
                query=query,
                provider=self.search.provider,
                count=len(results),
                urls=[r.url for r in results],
                error=error,
            ),
            f"Search failed: {error}" if error else f"Search returned {len(results)} results",
            level="warning" if error else "info",
        )

    # Planning

    async def _initial_plan(self, run_id: str, run: Dict[str, Any], state: PlanState) -> None:
        task = run["task"]
        limits = state.limits
        if state.preferences.use_search and state.search_query is None:
            await self._search(run_id, state, task)
        try:
            result = await self.planner.plan(task, limits, model=self._model(run, state), context=self._context(state))
        except PlannerError as exc:
            logger.warning("Planner unavailable for run %s, using heuristic plan: %s", run_id, exc)
            result = heuristic_plan(task, limits.max_steps)
        hierarchy, steps = plan_from_result(result, limits)
        if not steps:
            result = heuristic_plan(task, limits.max_steps)
            hierarchy, steps = plan_from_result(result, limits)
        state.hierarchy = hierarchy
        state.steps = steps
        state.summary = result.summary
        state.critique = result.critique
        target, _ = detect_target(task)
        state.task_type = result.task_type or ("extract_info" if target in ("emails", "product_names") else "web_task")
        await self.telemetry.audit(
            run_id,
            PlannerContextPayload(
                source=result.source,
                summary=result.summary,
                task_type=state.task_type,
                critique=result.critique,
                alternatives=result.alternatives,
                constraints=result.constraints,
                success_signals=result.success_signals,
            ),
            f"Planner context ({result.source})",
        )
        graph = PlanGraph(state)
        await self.telemetry.audit(
            run_id,
            PlanCreatedPayload(reason="initial", steps=graph.describe(), hierarchy=hierarchy),
            f"Plan created with {len(steps)} steps",
        )
        await self._save(run_id, state, steps[0].id if steps else None)

    async def _resume_review(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph) -> None:
        task = run["task"]
        history = await self.telemetry.db.recent_audit(run_id, limit=20)
        try:
            brief = await self.planner.summarize(task, state, history, model=self._model(run, state))
            summary = brief.brief
        except PlannerError as exc:
            logger.info("Resume summary unavailable for run %s: %s", run_id, exc)
            summary = None
        if not summary:
            done = sum(1 for step in state.steps if step.status == "completed")
            summary = f"Resuming after {done}/{len(state.steps)} completed steps."
            if state.last_error:
                summary += f" Last error: {state.last_error}"
        await self.telemetry.audit(
            run_id,
            ResumeSummaryPayload(
                reason=state.resume_reason or "manual",
                from_step_id=run.get("active_step_id"),
                summary=summary,
            ),
            "Resume summary",
        )
        if state.replan_count < state.limits.max_replan_calls and any(s.status == "pending" for s in state.steps):
            try:
                review = await self.planner.review(task, state, summary, model=self._model(run, state), context=self._context(state))
            except PlannerError:
                review = None
            if review and review.should_replan and review.steps:
                added = graph.replace_pending(self._new_steps(review.steps, state, "resume"), state.limits.max_steps)
                attach_to_hierarchy(state.hierarchy, added, "Resume plan")
                state.replan_count += 1
                state.steps_since_replan = 0
                await self.telemetry.audit(
                    run_id,
                    ResumePlanPayload(reason=review.reason, steps=[s.model_dump() for s in added]),
                    "Plan revised on resume",
                )
        state.resume_processed_at = state.resume_requested_at
        state.last_error = None

    # Per-step bookkeeping

    async def _step_update(self, run_id: str, state: PlanState, step: PlanStep) -> None:
        level = "error" if step.status == "failed" else "info"
        await self.telemetry.audit(
            run_id,
            PlanUpdatePayload(
                step_id=step.id,
                status=step.status,
                attempts=step.attempts,
                active_step_id=step.id,
                error=step.last_error,
            ),
            f"Step {step.status}: {step.title}",
            level=level,
        )
        await self._save(run_id, state, step.id)

    async def _approval_reason(self, step: PlanStep, state: PlanState) -> Optional[str]:
        prefs = state.preferences
        if not prefs.require_human_approval or step.tool == "none":
            return None
        overridden = step.id in state.policy_overridden_step_ids
        command = command_for_step(step)
        if not overridden and prefs.ignore_robots_txt and command.action == "goto" and command.url:
            verdict = await self.policy.check_navigation(command.url, prefs)
            overridden = verdict.verdict == "blocked" and verdict.overridden
        decision = self.policy.check_approval(step, prefs, policy_overridden=overridden)
        return decision.reason if decision.requires_approval else None

    async def _branch(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph, step: PlanStep, error: Optional[str]) -> Optional[str]:
        if step.id in state.branched_step_ids:
            return None
        state.branched_step_ids.append(step.id)
        try:
            reason, specs = await self.planner.branch(run["task"], state, step, error, model=self._model(run, state))
        except PlannerError as exc:
            logger.info("Branch planner failed for run %s step %s: %s", run_id, step.id, exc)
            return None
        if not specs:
            return None
        added = graph.replace_remaining(step.id, self._new_steps(specs, state, "branch"), state.limits.max_steps)
        attach_to_hierarchy(state.hierarchy, added, f"Recovery: {step.title}")
        state.branch_history.append(
            BranchRecord(failed_step_id=step.id, reason=reason, step_ids=[s.id for s in added], created_at=utc_now())
        )
        await self.telemetry.audit(
            run_id,
            PlanBranchPayload(failed_step_id=step.id, reason="step-failed", steps=[s.model_dump() for s in added]),
            f"Branched after '{step.title}' failed: {reason}",
            level="warning",
        )
        return added[0].id

    async def _adapt(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph, step: PlanStep, page: Optional[Observation] = None) -> Optional[str]:
        if state.replan_count >= state.limits.max_replan_calls:
            return None
        observation = f"{state.consecutive_failures} consecutive failures; last error: {step.last_error}"
        try:
            review = await self.planner.review(run["task"], state, observation, model=self._model(run, state), context=self._context(state, page))
        except PlannerError:
            return None
        if not (review.should_replan and review.steps):
            await self.telemetry.audit(
                run_id,
                PlanAdaptPayload(reason=review.reason or "declined", step_id=step.id, replan_count=state.replan_count),
                "Planner kept the plan after repeated failures",
            )
            return None
        added = graph.replace_pending(self._new_steps(review.steps, state, "adapt"), state.limits.max_steps)
        attach_to_hierarchy(state.hierarchy, added, "Adapted plan")
        state.replan_count += 1
        state.steps_since_replan = 0
        await self.telemetry.audit(
            run_id,
            PlanAdaptPayload(
                reason=review.reason or "dead-end",
                step_id=step.id,
                replan_count=state.replan_count,
                steps=[s.model_dump() for s in added],
            ),
            "Plan adapted after repeated failures",
            level="warning",
        )
        return added[0].id if added else None

    async def _loop_guard(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph, step: PlanStep) -> Optional[str]:
        guard = LoopGuard(state.loop_guard, state.limits)
        pattern = guard.observe(state.trace)
        if pattern is None:
            return None
        delay = guard.backoff()
        action = "continue"
        reason: Optional[str] = None
        next_id: Optional[str] = None
        if guard.tripped:
            try:
                review = await self.planner.loop_review(run["task"], state, pattern, model=self._model(run, state, "loop_guard"))
                action, reason = review.action, review.reason
            except PlannerError as exc:
                review = None
                reason = f"loop review unavailable: {exc}"
            guard.reset()
            if review is not None and action == "replan":
                if state.replan_count >= state.limits.max_replan_calls:
                    await self.telemetry.audit(
                        run_id,
                        LoopGuardPayload(pattern=pattern, streak=state.loop_guard.streak, backoff_ms=delay, action=action, reason=reason, step_id=step.id),
                        "Loop detected and replan budget exhausted",
                        level="error",
                    )
                    await self._fail(run_id, state, f"Stuck in loop ({pattern}) with no replans left", "plan-exhausted", step.id)
                if review.steps:
                    added = graph.replace_pending(self._new_steps(review.steps, state, "loop-guard"), state.limits.max_steps)
                    attach_to_hierarchy(state.hierarchy, added, "Loop recovery")
                    state.replan_count += 1
                    state.steps_since_replan = 0
                    next_id = added[0].id if added else None
        await self.telemetry.audit(
            run_id,
            LoopGuardPayload(pattern=pattern, streak=state.loop_guard.streak, backoff_ms=delay, action=action, reason=reason, step_id=step.id),
            f"Loop guard: {pattern}",
            level="warning",
        )
        if action == "wait_human":
            await self._suspend(run_id, state, "loop-guard", step.id)
        if delay:
            await asyncio.sleep(delay / 1000)
        return next_id

    async def _self_check(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph, step: PlanStep, observation: str, page: Optional[Observation] = None) -> Optional[str]:
        limits = state.limits
        if state.steps_since_self_check < limits.self_check_every_steps or state.self_check_count >= limits.max_self_checks:
            return None
        state.steps_since_self_check = 0
        state.self_check_count += 1
        try:
            report = await self.planner.self_check(
                run["task"], state, step, observation, model=self._model(run, state, "self_check"), context=self._context(state, page)
            )
        except PlannerError as exc:
            logger.info("Self-check skipped for run %s: %s", run_id, exc)
            return None
        await self.telemetry.audit(
            run_id,
            SelfCheckPayload(step_id=step.id, check_number=state.self_check_count, report=report),
            f"Self-check {state.self_check_count}: {report.action}",
        )
        if report.action == "wait_human":
            await self._suspend(run_id, state, "self-check", step.id)
        if report.action != "replan" or not report.steps:
            return None
        if state.replan_count >= limits.max_replan_calls:
            await self._fail(run_id, state, "Self-check asked for a replan but the replan budget is exhausted", "plan-exhausted", step.id)
        added = graph.replace_pending(self._new_steps(report.steps, state, "self-check"), limits.max_steps)
        attach_to_hierarchy(state.hierarchy, added, "Self-check replan")
        state.replan_count += 1
        state.steps_since_replan = 0
        await self.telemetry.audit(
            run_id,
            SelfCheckReplanPayload(step_id=step.id, reason=report.reason, replan_count=state.replan_count, steps=[s.model_dump() for s in added]),
            "Plan replaced after self-check",
            level="warning",
        )
        return added[0].id if added else None

    async def _scheduled_replan(self, run_id: str, run: Dict[str, Any], state: PlanState, graph: PlanGraph, step: PlanStep, observation: str, page: Optional[Observation] = None) -> Optional[str]:
        limits = state.limits
        if state.steps_since_replan < limits.replan_every_steps or state.replan_count >= limits.max_replan_calls:
            return None
        if not any(s.status == "pending" for s in state.steps):
            return None
        state.steps_since_replan = 0
        try:
            review = await self.planner.review(run["task"], state, observation, model=self._model(run, state), context=self._context(state, page))
        except PlannerError as exc:
            logger.info("Scheduled replan skipped for run %s: %s", run_id, exc)
            return None
        if review.task_type and not state.task_type:
            state.task_type = review.task_type
        if not (review.should_replan and review.steps):
            await self.telemetry.audit(
                run_id,
                PlanReplanPayload(reason=review.reason or "declined", step_id=step.id, replan_count=state.replan_count),
                "Planner kept the plan",
            )
            return None
        added = graph.replace_pending(self._new_steps(review.steps, state, "replan"), limits.max_steps)
        attach_to_hierarchy(state.hierarchy, added, "Replanned steps")
        state.replan_count += 1
        await self.telemetry.audit(
            run_id,
            PlanReplanPayload(reason=review.reason or "scheduled", step_id=step.id, replan_count=state.replan_count, steps=[s.model_dump() for s in added]),
            "Plan replanned",
        )
        return added[0].id if added else None

    async def _checkpoint(self, run_id: str, run: Dict[str, Any], state: PlanState, step: PlanStep, next_id: Optional[str]) -> None:
        brief: Optional[CheckpointBrief] = None
        if state.completed_count % CHECKPOINT_BRIEF_EVERY == 0:
            history = await self.telemetry.db.recent_audit(run_id, limit=20)
            try:
                brief = await self.planner.summarize(run["task"], state, history, model=self._model(run, state))
                brief.step_id = step.id
                brief.created_at = utc_now()
            except PlannerError:
                brief = None
        await self.store.checkpoint(run_id, state, next_id, brief)

    # Finalize

    async def _extract(self, run_id: str, run: Dict[str, Any], state: PlanState, last: Optional[Observation]) -> None:
        task = run["task"]
        target, count = detect_target(task)
        html = last.html if last else ""
        dom_text = last.dom_text if last else ""
        url = last.url if last else None
        if not dom_text:
            latest = await self.telemetry.db.latest_snapshot(run_id)
            if latest:
                dom_text = latest["dom_text"]
                url = url or latest["url"]
        try:
            plan = await self.planner.extraction_plan(task, dom_text, model=self._model(run, state))
        except PlannerError:
            plan = ExtractionPlan(target=target or "items")
        if target and plan.target == "items":
            plan = plan.model_copy(update={"target": target})
        result = extract_items(plan, html=html, dom_text=dom_text, source_url=url, count=count)
        state.extraction_plan = plan
        state.extraction_result = result
        state.outcome = result.outcome
        await self.telemetry.audit(
            run_id,
            ExtractionResultPayload(
                target=result.target,
                outcome=result.outcome,
                count=len(result.items),
                selectors_used=result.selectors_used,
            ),
            f"Extraction finished: {len(result.items)} {result.target}",
            level="info" if result.items else "warning",
        )

    async def _finalize(self, run_id: str, run: Dict[str, Any], state: PlanState, last: Optional[Observation]) -> None:
        if state.task_type == "extract_info":
            await self._extract(run_id, run, state, last)
        try:
            review = await self.planner.improvement_review(run["task"], state, "completed", model=self._model(run, state))
            await self.telemetry.audit(
                run_id,
                SelfImprovementPayload(status="completed", review=review),
                "Self-improvement review",
            )
        except PlannerError as exc:
            logger.info("Improvement review skipped for run %s: %s", run_id, exc)
        state.outcome = state.outcome or "completed"
        await self._save(run_id, state, None)
        await self.store.transition(run_id, "completed", reason="goal-satisfied", requires_human=False, error_message=None)
        await self.broadcaster.publish_status(run_id, "completed")

    # Loop

    async def _drive(self, run_id: str, session: BrowserSession, stop_event: asyncio.Event) -> None:
        run = await self.store.get(run_id)
        if run["status"] != "running":
            return
        state = PlanState.model_validate(run["plan_state"] or {})
        graph = PlanGraph(state)
        logger.info("Run %s started: %s", run_id, run["task"][:80])

        if state.resume_requested_at and state.resume_requested_at != state.resume_processed_at:
            await self._resume_review(run_id, run, state, graph)
            if not state.steps:
                await self._initial_plan(run_id, run, state)
        elif not state.steps:
            await self._initial_plan(run_id, run, state)
        active_id: Optional[str] = run.get("active_step_id") or (state.steps[0].id if state.steps else None)
        await self._save(run_id, state, active_id)
        last_observation: Optional[Observation] = None

        while True:
            if stop_event.is_set():
                await self._save(run_id, state, active_id)
                await self._halt(run_id, "stopped", "stop-requested")
                return
            step = next((s for s in state.steps if s.status == "running"), None) or graph.next_runnable(active_id)
            if step is None:
                blocked = graph.pending_blocked()
                if blocked:
                    await self._fail(
                        run_id, state, f"Step '{blocked[0].title}' depends on steps that can no longer complete", "plan-exhausted", blocked[0].id
                    )
                break
            active_id = step.id

            if state.approval_granted_step_id != step.id:
                reason = await self._approval_reason(step, state)
                if reason:
                    state.approval_requested_step_id = step.id
                    await self.telemetry.audit(
                        run_id,
                        ApprovalGatePayload(step_id=step.id, decision="requested", reason=reason),
                        f"Approval required before '{step.title}': {reason}",
                        level="warning",
                    )
                    await self._suspend(run_id, state, "approval-required", step.id)

            outcome = await self.runner.run_step(
                run_id,
                step,
                session,
                state,
                graph,
                on_update=lambda s: self._step_update(run_id, state, s),
            )
            if state.approval_granted_step_id == step.id:
                state.approval_granted_step_id = None
            url = step.url or (outcome.observation.url if outcome.observation else None)
            state.trace.append(StepTrace(title=step.title, status=step.status, tool=step.tool, url=url))
            state.trace = state.trace[-TRACE_LIMIT:]

            if outcome.blocked:
                if state.preferences.require_human_approval:
                    state.approval_requested_step_id = step.id
                    await self.telemetry.audit(
                        run_id,
                        ApprovalGatePayload(step_id=step.id, decision="requested", reason="blocked by policy"),
                        f"Navigation for '{step.title}' blocked by policy; waiting for a human",
                        level="warning",
                    )
                    await self._suspend(run_id, state, "blocked-by-policy", step.id)
                await self._fail(run_id, state, f"Step '{step.title}' blocked by policy", "blocked-by-policy", step.id)

            if outcome.requires_human:
                state.last_error = outcome.error
                await self._suspend(run_id, state, "human-needed", step.id)

            next_id: Optional[str] = None
            if outcome.success:
                last_observation = outcome.observation or last_observation
                state.consecutive_failures = 0
                state.completed_count += 1
                state.steps_since_replan += 1
                state.steps_since_self_check += 1
                next_id = graph.next_after(step.id)
                await self._checkpoint(run_id, run, state, step, next_id)
            else:
                state.consecutive_failures += 1
                state.last_error = outcome.error
                next_id = await self._branch(run_id, run, state, graph, step, outcome.error)
                if next_id is None:
                    await self._fail(
                        run_id, state, f"Step '{step.title}' failed: {outcome.error}", "step-failed", step.id
                    )
                if state.consecutive_failures >= DEAD_END_FAILURES:
                    next_id = await self._adapt(run_id, run, state, graph, step, last_observation) or next_id

            observation_text = outcome.observation.dom_text if outcome.observation else (outcome.error or "")
            next_id = await self._loop_guard(run_id, run, state, graph, step) or next_id
            if outcome.success:
                next_id = await self._self_check(run_id, run, state, graph, step, observation_text, outcome.observation) or next_id
                next_id = await self._scheduled_replan(run_id, run, state, graph, step, observation_text, outcome.observation) or next_id
            active_id = next_id or graph.next_after(step.id)
            await self._save(run_id, state, active_id)

        await self._finalize(run_id, run, state, last_observation)
