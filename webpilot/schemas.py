import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


RunStatus = Literal["queued", "running", "waiting_human", "completed", "failed", "stopped"]
StepStatus = Literal["pending", "running", "completed", "failed"]
StepPhase = Literal["observe", "act", "verify", "recover"]
StepTool = Literal["browser", "none"]
BrowserAction = Literal["goto", "click", "type", "extract", "snapshot", "reload", "scroll", "wait"]
TaskType = Literal["web_task", "extract_info"]
AuditLevel = Literal["info", "warning", "error"]
ReviewAction = Literal["continue", "replan", "wait_human"]

TERMINAL_STATUSES = {"completed", "failed", "stopped"}
RESUMABLE_STATUSES = {"waiting_human", "failed", "stopped"}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_keys(data: Any) -> Any:
    """Accept camelCase payloads (dashboard clients) alongside snake_case."""
    if not isinstance(data, dict):
        return data
    return {(_CAMEL_RE.sub("_", key).lower() if isinstance(key, str) else key): value for key, value in data.items()}


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


LIMIT_RANGES: Dict[str, tuple] = {
    # field: (default, min, max)
    "max_steps": (12, 1, 20),
    "max_step_attempts": (2, 1, 5),
    "max_replan_calls": (2, 0, 6),
    "replan_every_steps": (2, 1, 10),
    "max_self_checks": (4, 0, 8),
    "self_check_every_steps": (1, 1, 10),
    "loop_guard_threshold": (2, 1, 5),
    "loop_backoff_base_ms": (2000, 250, 20000),
    "loop_backoff_max_ms": (12000, 1000, 60000),
}


class PlanLimits(BaseModel):
    max_steps: int = 12
    max_step_attempts: int = 2
    max_replan_calls: int = 2
    replan_every_steps: int = 2
    max_self_checks: int = 4
    self_check_every_steps: int = 1
    loop_guard_threshold: int = 2
    loop_backoff_base_ms: int = 2000
    loop_backoff_max_ms: int = 12000

    @model_validator(mode="before")
    @classmethod
    def clamp_limits(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = snake_keys(data)
        for key, (default, low, high) in LIMIT_RANGES.items():
            if key in data and data[key] is not None:
                data[key] = _clamp(data[key], default, low, high)
            else:
                data.pop(key, None)
        return data


class RunPreferences(BaseModel):
    ignore_robots_txt: bool = False
    require_human_approval: bool = False
    use_search: bool = False
    planner_model: Optional[str] = None
    self_check_model: Optional[str] = None
    loop_guard_model: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return snake_keys(data)


class StepSpec(BaseModel):
    """Planner-facing step description before it gets an id in the plan graph."""

    title: str = "Review the page state."
    tool: StepTool = "browser"
    action: Optional[BrowserAction] = None
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    expected_observation: Optional[str] = None
    success_criteria: Optional[str] = None
    phase: Optional[StepPhase] = None
    priority: Optional[int] = None
    depends_on: List[Union[int, str]] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"title": data}
        if not isinstance(data, dict):
            return data
        data = snake_keys(data)
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            data.pop("title", None)
        else:
            data["title"] = title.strip()
        tool = str(data.get("tool") or "").strip().lower()
        data["tool"] = "none" if tool == "none" else "browser"
        phase = data.get("phase")
        if isinstance(phase, str) and phase.strip().lower() in ("observe", "act", "verify", "recover"):
            data["phase"] = phase.strip().lower()
        else:
            data.pop("phase", None)
        action = data.get("action")
        if isinstance(action, str) and action.strip().lower() in (
            "goto", "click", "type", "extract", "snapshot", "reload", "scroll", "wait"
        ):
            data["action"] = action.strip().lower()
        else:
            data.pop("action", None)
        if not isinstance(data.get("priority"), int) or isinstance(data.get("priority"), bool):
            data.pop("priority", None)
        depends = data.get("depends_on")
        if not isinstance(depends, list):
            data["depends_on"] = []
        for key in ("expected_observation", "success_criteria", "url", "selector", "value"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                data[key] = str(value)
            if isinstance(data.get(key), str) and not data[key].strip():
                data.pop(key, None)
        return data


class PlanStep(BaseModel):
    id: str
    title: str
    status: StepStatus = "pending"
    tool: StepTool = "browser"
    action: Optional[BrowserAction] = None
    url: Optional[str] = None
    selector: Optional[str] = None
    value: Optional[str] = None
    expected_observation: Optional[str] = None
    success_criteria: Optional[str] = None
    phase: Optional[StepPhase] = None
    priority: Optional[int] = None
    depends_on: List[str] = Field(default_factory=list)
    goal_id: Optional[str] = None
    subgoal_id: Optional[str] = None
    source: str = "planner"
    attempts: int = 0
    max_attempts: int = 2
    snapshot_id: Optional[int] = None
    log_count: int = 0
    last_error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class PlanSubgoal(BaseModel):
    id: str
    title: str
    success_criteria: Optional[str] = None
    step_ids: List[str] = Field(default_factory=list)


class PlanGoal(BaseModel):
    id: str
    title: str
    success_criteria: Optional[str] = None
    subgoals: List[PlanSubgoal] = Field(default_factory=list)


class PlanHierarchy(BaseModel):
    goals: List[PlanGoal] = Field(default_factory=list)


class SubgoalSpec(BaseModel):
    title: str = "Supporting task"
    success_criteria: Optional[str] = None
    priority: Optional[int] = None
    steps: List[StepSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        data = snake_keys(data)
        if isinstance(data, dict) and not (isinstance(data.get("title"), str) and data["title"].strip()):
            data.pop("title", None)
        return data


class GoalSpec(BaseModel):
    title: str = "Primary objective"
    success_criteria: Optional[str] = None
    priority: Optional[int] = None
    subgoals: List[SubgoalSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        data = snake_keys(data)
        if isinstance(data, dict) and not (isinstance(data.get("title"), str) and data["title"].strip()):
            data.pop("title", None)
        return data


class PlannerCritique(BaseModel):
    assumptions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    unknowns: List[str] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    safety_checks: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return snake_keys(data)


class PlannerAlternative(BaseModel):
    title: str
    rationale: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)


class PlannerResult(BaseModel):
    goals: List[GoalSpec] = Field(default_factory=list)
    critique: Optional[PlannerCritique] = None
    alternatives: List[PlannerAlternative] = Field(default_factory=list)
    task_type: Optional[TaskType] = None
    summary: Optional[str] = None
    constraints: List[str] = Field(default_factory=list)
    success_signals: List[str] = Field(default_factory=list)
    source: Literal["llm", "heuristic"] = "llm"


class PlanReview(BaseModel):
    should_replan: bool = False
    reason: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)
    task_type: Optional[TaskType] = None


class SelfCheckReport(BaseModel):
    action: ReviewAction = "continue"
    reason: Optional[str] = None
    notes: Optional[str] = None
    questions: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    confidence: Optional[int] = None
    missing_info: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    hypotheses: List[str] = Field(default_factory=list)
    verification_steps: List[str] = Field(default_factory=list)
    tool_switch: Optional[str] = None
    abort_signals: List[str] = Field(default_factory=list)
    finish_signals: List[str] = Field(default_factory=list)
    steps: List[StepSpec] = Field(default_factory=list)


class LoopReview(BaseModel):
    action: ReviewAction = "replan"
    reason: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)


class ImprovementReview(BaseModel):
    summary: Optional[str] = None
    mistakes: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    guardrails: List[str] = Field(default_factory=list)
    tool_adjustments: List[str] = Field(default_factory=list)
    confidence: Optional[int] = None


class ExtractionPlan(BaseModel):
    target: Literal["product_names", "emails", "items"] = "items"
    fields: List[str] = Field(default_factory=list)
    primary_selectors: List[str] = Field(default_factory=list)
    fallback_selectors: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return snake_keys(data)


class ExtractionResult(BaseModel):
    target: str
    fields: List[str] = Field(default_factory=list)
    items: List[Dict[str, str]] = Field(default_factory=list)
    outcome: Literal["results", "no_results"] = "no_results"
    selectors_used: List[str] = Field(default_factory=list)
    source_urls: List[str] = Field(default_factory=list)


class CheckpointBrief(BaseModel):
    brief: Optional[str] = None
    next_actions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    step_id: Optional[str] = None
    created_at: Optional[str] = None


class StepTrace(BaseModel):
    title: str
    status: StepStatus
    tool: StepTool = "browser"
    url: Optional[str] = None


class LoopGuardState(BaseModel):
    streak: int = 0
    cooldown: int = 0
    last_pattern: Optional[str] = None


class BranchRecord(BaseModel):
    failed_step_id: str
    reason: str
    step_ids: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class UiElement(BaseModel):
    tag: str
    selector: Optional[str] = None
    text: Optional[str] = None
    role: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    placeholder: Optional[str] = None
    href: Optional[str] = None


class SearchResult(BaseModel):
    title: str = "Untitled"
    url: str
    snippet: Optional[str] = None


class PlannerContext(BaseModel):
    """What the planner can see besides the plan: the current page, its controls and any search hits."""

    url: Optional[str] = None
    title: Optional[str] = None
    inventory: List[UiElement] = Field(default_factory=list)
    search_query: Optional[str] = None
    search_results: List[SearchResult] = Field(default_factory=list)


class PlanState(BaseModel):
    """Serializable run-state record. Written by the controller; admin paths go through RunStore guards."""

    steps: List[PlanStep] = Field(default_factory=list)
    hierarchy: PlanHierarchy = Field(default_factory=PlanHierarchy)
    limits: PlanLimits = Field(default_factory=PlanLimits)
    preferences: RunPreferences = Field(default_factory=RunPreferences)
    task_type: Optional[TaskType] = None
    summary: Optional[str] = None
    critique: Optional[PlannerCritique] = None

    replan_count: int = 0
    self_check_count: int = 0
    steps_since_replan: int = 0
    steps_since_self_check: int = 0
    completed_count: int = 0
    consecutive_failures: int = 0
    branch_history: List[BranchRecord] = Field(default_factory=list)
    branched_step_ids: List[str] = Field(default_factory=list)
    loop_guard: LoopGuardState = Field(default_factory=LoopGuardState)
    trace: List[StepTrace] = Field(default_factory=list)

    approval_requested_step_id: Optional[str] = None
    approval_granted_step_id: Optional[str] = None
    policy_overridden_step_ids: List[str] = Field(default_factory=list)
    search_query: Optional[str] = None
    search_results: List[SearchResult] = Field(default_factory=list)
    resume_requested_at: Optional[str] = None
    resume_processed_at: Optional[str] = None
    resume_reason: Optional[str] = None
    last_error: Optional[str] = None
    checkpoint: Optional[CheckpointBrief] = None
    extraction_plan: Optional[ExtractionPlan] = None
    extraction_result: Optional[ExtractionResult] = None
    outcome: Optional[str] = None
    updated_at: Optional[str] = None

    def step(self, step_id: Optional[str]) -> Optional[PlanStep]:
        if not step_id:
            return None
        for item in self.steps:
            if item.id == step_id:
                return item
        return None


class Cursor(BaseModel):
    x: int = 0
    y: int = 0


class Viewport(BaseModel):
    width: int = 0
    height: int = 0


class Snapshot(BaseModel):
    id: Optional[int] = None
    run_id: str
    step_id: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    dom_text: str = ""
    screenshot_path: Optional[str] = None
    cursor: Optional[Cursor] = None
    viewport: Optional[Viewport] = None
    created_at: Optional[str] = None


class BrowserLogEntry(BaseModel):
    id: Optional[int] = None
    run_id: str
    step_id: Optional[str] = None
    level: str = "info"
    message: str
    created_at: Optional[str] = None


# Audit payloads, one model per `type`.


class PlannerContextPayload(BaseModel):
    type: Literal["planner-context"] = "planner-context"
    source: str = "llm"
    summary: Optional[str] = None
    task_type: Optional[TaskType] = None
    critique: Optional[PlannerCritique] = None
    alternatives: List[PlannerAlternative] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    success_signals: List[str] = Field(default_factory=list)


class PlanCreatedPayload(BaseModel):
    type: Literal["plan"] = "plan"
    reason: str = "initial"
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    hierarchy: Optional[PlanHierarchy] = None
    failed_step_id: Optional[str] = None


class PlanUpdatePayload(BaseModel):
    type: Literal["plan-update"] = "plan-update"
    step_id: str
    status: StepStatus
    attempts: int = 0
    active_step_id: Optional[str] = None
    error: Optional[str] = None


class PlanBranchPayload(BaseModel):
    type: Literal["plan-branch"] = "plan-branch"
    failed_step_id: str
    reason: str = "step-failed"
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class PlanReplanPayload(BaseModel):
    type: Literal["plan-replan"] = "plan-replan"
    reason: str
    step_id: Optional[str] = None
    replan_count: int = 0
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class PlanAdaptPayload(BaseModel):
    type: Literal["plan-adapt"] = "plan-adapt"
    reason: str
    step_id: Optional[str] = None
    replan_count: int = 0
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class SelfCheckPayload(BaseModel):
    type: Literal["self-check"] = "self-check"
    step_id: Optional[str] = None
    check_number: int = 0
    report: SelfCheckReport


class SelfCheckReplanPayload(BaseModel):
    type: Literal["self-check-replan"] = "self-check-replan"
    step_id: Optional[str] = None
    reason: Optional[str] = None
    replan_count: int = 0
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class SelfImprovementPayload(BaseModel):
    type: Literal["self-improvement"] = "self-improvement"
    status: RunStatus
    review: ImprovementReview


class LoopGuardPayload(BaseModel):
    type: Literal["loop-guard"] = "loop-guard"
    pattern: str
    streak: int
    backoff_ms: int = 0
    action: ReviewAction = "continue"
    reason: Optional[str] = None
    step_id: Optional[str] = None


class ApprovalGatePayload(BaseModel):
    type: Literal["approval-gate"] = "approval-gate"
    step_id: str
    decision: Literal["requested", "granted"] = "requested"
    reason: Optional[str] = None


class PolicyPayload(BaseModel):
    type: Literal["policy"] = "policy"
    url: str
    verdict: Literal["allowed", "blocked", "unknown"]
    overridden: bool = False
    reason: Optional[str] = None
    step_id: Optional[str] = None


class CheckpointSavePayload(BaseModel):
    type: Literal["checkpoint-save"] = "checkpoint-save"
    active_step_id: Optional[str] = None
    checkpointed_at: Optional[str] = None
    completed_count: int = 0
    brief: Optional[CheckpointBrief] = None


class ResumeSummaryPayload(BaseModel):
    type: Literal["resume-summary"] = "resume-summary"
    reason: str = "manual"
    from_step_id: Optional[str] = None
    summary: Optional[str] = None


class ResumePlanPayload(BaseModel):
    type: Literal["resume-plan"] = "resume-plan"
    reason: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class RunStatusPayload(BaseModel):
    type: Literal["run-status"] = "run-status"
    from_status: Optional[RunStatus] = None
    to_status: RunStatus
    reason: Optional[str] = None


class StepOverridePayload(BaseModel):
    type: Literal["step-override"] = "step-override"
    step_id: str
    from_status: StepStatus
    to_status: StepStatus


class StepRetryPayload(BaseModel):
    type: Literal["step-retry"] = "step-retry"
    step_id: str
    success: bool
    error: Optional[str] = None


class ControlPayload(BaseModel):
    type: Literal["control"] = "control"
    action: Literal["goto", "reload", "snapshot"]
    url: Optional[str] = None
    ok: bool = True
    error: Optional[str] = None


class SearchPayload(BaseModel):
    type: Literal["search"] = "search"
    query: str
    provider: str
    count: int = 0
    urls: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ExtractionResultPayload(BaseModel):
    type: Literal["extraction-result"] = "extraction-result"
    target: str
    outcome: Literal["results", "no_results"]
    count: int = 0
    selectors_used: List[str] = Field(default_factory=list)


AuditPayload = Annotated[
    Union[
        PlannerContextPayload,
        PlanCreatedPayload,
        PlanUpdatePayload,
        PlanBranchPayload,
        PlanReplanPayload,
        PlanAdaptPayload,
        SelfCheckPayload,
        SelfCheckReplanPayload,
        SelfImprovementPayload,
        LoopGuardPayload,
        ApprovalGatePayload,
        PolicyPayload,
        CheckpointSavePayload,
        ResumeSummaryPayload,
        ResumePlanPayload,
        RunStatusPayload,
        StepOverridePayload,
        StepRetryPayload,
        ControlPayload,
        SearchPayload,
        ExtractionResultPayload,
    ],
    Field(discriminator="type"),
]


# Request bodies


class EnqueueRequest(BaseModel):
    task: str
    model: Optional[str] = None
    browser: Optional[str] = None
    headless: Optional[bool] = None
    ignore_robots_txt: bool = False
    require_human_approval: bool = False
    use_search: bool = False
    plan_limits: Optional[PlanLimits] = None
    planner_model: Optional[str] = None
    self_check_model: Optional[str] = None
    loop_guard_model: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = snake_keys(data)
        if "task" not in data and isinstance(data.get("prompt"), str):
            data["task"] = data.pop("prompt")
        browser = data.get("browser")
        if isinstance(browser, str):
            data["browser"] = browser.strip().lower() or None
        return data


LifecycleAction = Literal["stop", "resume", "retry_step", "override_step", "approve_step"]


class LifecycleRequest(BaseModel):
    action: LifecycleAction
    step_id: Optional[str] = None
    status: Optional[Literal["completed", "failed", "pending"]] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = snake_keys(data)
        action = data.get("action")
        if isinstance(action, str):
            data["action"] = action.strip().lower().replace("-", "_")
        return data

    @model_validator(mode="after")
    def check_targets(self) -> "LifecycleRequest":
        if self.action in ("retry_step", "override_step", "approve_step") and not self.step_id:
            raise ValueError(f"{self.action} requires step_id")
        if self.action == "override_step" and not self.status:
            raise ValueError("override_step requires status")
        return self


class ControlRequest(BaseModel):
    action: Literal["goto", "reload", "snapshot"]
    url: Optional[str] = None

    @model_validator(mode="after")
    def check_url(self) -> "ControlRequest":
        if self.action == "goto" and not (self.url or "").strip():
            raise ValueError("goto requires url")
        return self
