import re
import uuid
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import OperatorConflict
from .schemas import (
    GoalSpec,
    PlanGoal,
    PlanHierarchy,
    PlanLimits,
    PlannerResult,
    PlanState,
    PlanStep,
    PlanSubgoal,
    StepSpec,
    StepStatus,
)


FORWARD_TRANSITIONS: Dict[str, set] = {
    "pending": {"running"},
    "running": {"running", "completed", "failed"},
    "completed": set(),
    "failed": set(),
}
OVERRIDE_STATUSES = {"completed", "failed", "pending"}
_URL_RE = re.compile(r"https?://[^\s'\"<>)]+", re.IGNORECASE)


def new_step_id() -> str:
    return uuid.uuid4().hex


def find_url(text: str) -> Optional[str]:
    match = _URL_RE.search(text or "")
    return match.group(0).rstrip(".,;") if match else None


def _resolve_dependencies(
    depends: Sequence, specs: Sequence[StepSpec], ids: Sequence[str], own_index: int
) -> List[str]:
    resolved: List[str] = []
    for dep in depends:
        idx: Optional[int] = None
        if isinstance(dep, int):
            idx = dep
        elif isinstance(dep, str):
            cleaned = dep.strip()
            if cleaned.isdigit():
                idx = int(cleaned)
            else:
                for pos, spec in enumerate(specs):
                    if spec.title.strip().lower() == cleaned.lower():
                        idx = pos
                        break
        # Only earlier steps; anything else would make the plan unrunnable.
        if idx is not None and 0 <= idx < own_index and ids[idx] not in resolved:
            resolved.append(ids[idx])
    return resolved


def build_steps(
    specs: Sequence[StepSpec],
    limits: PlanLimits,
    source: str = "planner",
    owners: Optional[Sequence[Tuple[Optional[str], Optional[str]]]] = None,
) -> List[PlanStep]:
    ids = [new_step_id() for _ in specs]
    steps: List[PlanStep] = []
    for index, spec in enumerate(specs):
        goal_id, subgoal_id = owners[index] if owners else (None, None)
        url = spec.url
        if not url and spec.tool == "browser":
            url = find_url(spec.title)
        action = spec.action
        if action is None and spec.tool == "browser":
            action = "goto" if url else "snapshot"
        steps.append(
            PlanStep(
                id=ids[index],
                title=spec.title,
                tool=spec.tool,
                action=action,
                url=url,
                selector=spec.selector,
                value=spec.value,
                expected_observation=spec.expected_observation,
                success_criteria=spec.success_criteria,
                phase=spec.phase,
                priority=spec.priority,
                depends_on=_resolve_dependencies(spec.depends_on, specs, ids, index),
                goal_id=goal_id,
                subgoal_id=subgoal_id,
                source=source,
                max_attempts=limits.max_step_attempts,
            )
        )
    return steps


def _safety_specs(result: PlannerResult) -> List[StepSpec]:
    checks: List[str] = []
    if result.critique:
        checks.extend(result.critique.safety_checks)
    seen = set()
    specs = []
    for check in checks:
        key = check.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        specs.append(StepSpec(title=f"Safety check: {check.strip()}", tool="none", phase="observe"))
    return specs[:3]


def _verification_specs(result: PlannerResult) -> List[StepSpec]:
    return [
        StepSpec(title=f"Verify: {signal.strip()}", tool="none", phase="verify")
        for signal in result.success_signals[:3]
        if signal.strip()
    ]


def plan_from_result(result: PlannerResult, limits: PlanLimits) -> Tuple[PlanHierarchy, List[PlanStep]]:
    """Flatten goals/subgoals into the step arena, keeping the tree for display."""
    hierarchy = PlanHierarchy()
    specs: List[StepSpec] = []
    owners: List[Tuple[Optional[str], Optional[str]]] = []
    for goal_spec in result.goals:
        goal = PlanGoal(id=new_step_id(), title=goal_spec.title, success_criteria=goal_spec.success_criteria)
        for subgoal_spec in goal_spec.subgoals:
            subgoal = PlanSubgoal(
                id=new_step_id(), title=subgoal_spec.title, success_criteria=subgoal_spec.success_criteria
            )
            goal.subgoals.append(subgoal)
            for step_spec in subgoal_spec.steps:
                if step_spec.priority is None:
                    inherited = subgoal_spec.priority if subgoal_spec.priority is not None else goal_spec.priority
                    step_spec = step_spec.model_copy(update={"priority": inherited})
                specs.append(step_spec)
                owners.append((goal.id, subgoal.id))
        hierarchy.goals.append(goal)

    # dependsOn indexes are relative to the planner's flattened list; shift past preflight checks.
    preflight = _safety_specs(result)
    shift = len(preflight)
    shifted: List[StepSpec] = []
    for spec in specs:
        deps = [d + shift if isinstance(d, int) else d for d in spec.depends_on]
        shifted.append(spec.model_copy(update={"depends_on": deps}))
    all_specs = preflight + shifted + _verification_specs(result)
    all_owners = [(None, None)] * shift + owners + [(None, None)] * (len(all_specs) - shift - len(owners))
    all_specs = all_specs[: limits.max_steps]
    all_owners = all_owners[: limits.max_steps]
    steps = build_steps(all_specs, limits, source=result.source, owners=all_owners)
    step_by_spec = dict(zip(range(len(all_specs)), steps))
    for goal in hierarchy.goals:
        for subgoal in goal.subgoals:
            subgoal.step_ids = [
                step_by_spec[i].id for i, owner in enumerate(all_owners) if owner[1] == subgoal.id
            ]
    return hierarchy, steps


def heuristic_plan(task: str, max_steps: int = 12) -> PlannerResult:
    """Keyword plan used when the planner is unreachable."""
    normalized = task.strip()
    lower = normalized.lower()
    url = find_url(normalized)
    titles: List[str] = []
    if any(token in lower for token in ("login", "log in", "sign in", "signin")):
        titles = [
            "Open the target website.",
            "Locate the sign-in form.",
            "Fill in the credentials.",
            "Submit the form and wait for the next page.",
            "Verify the expected page or account state.",
        ]
    elif url or "browse" in lower or "website" in lower:
        titles = [
            "Open the target URL.",
            "Wait for the page to finish loading.",
            "Locate the requested content.",
            "Capture the relevant details.",
        ]
    else:
        titles = [part.strip() for part in re.split(r"[.!?]\s+", normalized) if part.strip()]
    specs: List[StepSpec] = []
    for index, title in enumerate(titles[:max_steps]):
        spec = StepSpec(title=title)
        if index == 0 and url:
            spec = spec.model_copy(update={"action": "goto", "url": url, "phase": "act"})
        specs.append(spec)
    task_type = "extract_info" if re.search(r"\b(extract|collect|list|find|get)\b", lower) and re.search(
        r"\b(product|email|name)", lower
    ) else "web_task"
    goal = GoalSpec(title=normalized[:120] or "Primary objective", subgoals=[{"title": "Heuristic plan", "steps": specs}])
    return PlannerResult(goals=[goal], task_type=task_type, summary="Heuristic plan", source="heuristic")


def attach_to_hierarchy(hierarchy: PlanHierarchy, steps: Iterable[PlanStep], title: str) -> None:
    step_ids = [step.id for step in steps]
    if not step_ids:
        return
    goal = PlanGoal(id=new_step_id(), title=title)
    goal.subgoals.append(PlanSubgoal(id=new_step_id(), title=title, step_ids=step_ids))
    hierarchy.goals.append(goal)


class PlanGraph:
    """Arena of steps indexed by id, ordered as the runner should consume them."""

    def __init__(self, state: PlanState):
        self.state = state

    @property
    def steps(self) -> List[PlanStep]:
        return self.state.steps

    def get(self, step_id: Optional[str]) -> Optional[PlanStep]:
        return self.state.step(step_id)

    def index(self, step_id: str) -> int:
        for pos, step in enumerate(self.steps):
            if step.id == step_id:
                return pos
        return -1

    def dependencies_met(self, step: PlanStep) -> bool:
        for dep in step.depends_on:
            other = self.get(dep)
            if other is not None and other.status != "completed":
                return False
        return True

    def next_runnable(self, start_id: Optional[str] = None) -> Optional[PlanStep]:
        """First pending step (from start_id onward, then from the top) whose dependencies are completed."""
        start = self.index(start_id) if start_id else 0
        order = self.steps[max(start, 0):] + self.steps[: max(start, 0)]
        for step in order:
            if step.status == "pending" and self.dependencies_met(step):
                return step
        return None

    def pending_blocked(self) -> List[PlanStep]:
        return [step for step in self.steps if step.status == "pending" and not self.dependencies_met(step)]

    def next_after(self, step_id: str) -> Optional[str]:
        pos = self.index(step_id)
        for step in self.steps[pos + 1 :]:
            if step.status != "completed":
                return step.id
        for step in self.steps:
            if step.status != "completed":
                return step.id
        return None

    def set_status(self, step: PlanStep, status: StepStatus) -> None:
        if status not in FORWARD_TRANSITIONS.get(step.status, set()):
            raise OperatorConflict(f"Step {step.id} cannot move from {step.status} to {status}")
        step.status = status

    def override(self, step: PlanStep, status: StepStatus) -> None:
        if status not in OVERRIDE_STATUSES:
            raise OperatorConflict(f"Cannot override step to {status}")
        step.status = status
        if status == "pending":
            step.attempts = 0
            step.last_error = None

    def replace_remaining(self, after_step_id: str, new_steps: List[PlanStep], max_steps: int) -> List[PlanStep]:
        """Keep everything up to after_step_id, swap the remainder for new_steps (within max_steps)."""
        pos = self.index(after_step_id)
        kept = self.steps[: pos + 1]
        room = max(1, max_steps - len(kept))
        added = new_steps[:room]
        removed = {step.id for step in self.steps[pos + 1 :]}
        self.state.steps = kept + added
        for step in added:
            step.depends_on = [dep for dep in step.depends_on if dep not in removed]
        self._prune_hierarchy(removed)
        return added

    def replace_pending(self, new_steps: List[PlanStep], max_steps: int) -> List[PlanStep]:
        """Keep finished and in-flight steps, swap every pending step for new_steps."""
        kept = [step for step in self.steps if step.status != "pending"]
        removed = {step.id for step in self.steps if step.status == "pending"}
        room = max(1, max_steps - len(kept))
        added = new_steps[:room]
        self.state.steps = kept + added
        self._prune_hierarchy(removed)
        return added

    def _prune_hierarchy(self, removed: set) -> None:
        if not removed:
            return
        for goal in self.state.hierarchy.goals:
            for subgoal in goal.subgoals:
                subgoal.step_ids = [sid for sid in subgoal.step_ids if sid not in removed]
            goal.subgoals = [sub for sub in goal.subgoals if sub.step_ids]
        self.state.hierarchy.goals = [goal for goal in self.state.hierarchy.goals if goal.subgoals]

    def describe(self) -> List[dict]:
        return [
            {
                "id": step.id,
                "title": step.title,
                "status": step.status,
                "tool": step.tool,
                "action": step.action,
                "url": step.url,
                "attempts": step.attempts,
                "lastError": step.last_error,
            }
            for step in self.steps
        ]
