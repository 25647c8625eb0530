import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from . import agents
from .errors import PlannerError
from .llm import ChatClient, message_content, parse_json_object
from .schemas import (
    CheckpointBrief,
    ExtractionPlan,
    ImprovementReview,
    LoopReview,
    PlanLimits,
    PlannerContext,
    PlannerResult,
    PlanReview,
    PlanState,
    PlanStep,
    SelfCheckReport,
    StepSpec,
    snake_keys,
)


logger = logging.getLogger("uvicorn.error")

T = TypeVar("T", bound=BaseModel)
MAX_OBSERVATION_CHARS = 2000


class Planner(Protocol):
    async def plan(
        self, task: str, limits: PlanLimits, model: Optional[str] = None, context: Optional[PlannerContext] = None
    ) -> PlannerResult: ...

    async def branch(
        self, task: str, state: PlanState, failed_step: PlanStep, error: Optional[str], model: Optional[str] = None
    ) -> Tuple[str, List[StepSpec]]: ...

    async def review(
        self,
        task: str,
        state: PlanState,
        observation: str,
        model: Optional[str] = None,
        context: Optional[PlannerContext] = None,
    ) -> PlanReview: ...

    async def self_check(
        self,
        task: str,
        state: PlanState,
        step: PlanStep,
        observation: str,
        model: Optional[str] = None,
        context: Optional[PlannerContext] = None,
    ) -> SelfCheckReport: ...

    async def loop_review(
        self, task: str, state: PlanState, pattern: str, model: Optional[str] = None
    ) -> LoopReview: ...

    async def summarize(
        self, task: str, state: PlanState, history: List[dict], model: Optional[str] = None
    ) -> CheckpointBrief: ...

    async def extraction_plan(self, task: str, observation: str, model: Optional[str] = None) -> ExtractionPlan: ...

    async def improvement_review(
        self, task: str, state: PlanState, status: str, model: Optional[str] = None
    ) -> ImprovementReview: ...


def plan_context(state: PlanState) -> List[Dict[str, Any]]:
    return [
        {
            "index": index,
            "title": step.title,
            "status": step.status,
            "action": step.action,
            "url": step.url,
            "attempts": step.attempts,
            "lastError": step.last_error,
        }
        for index, step in enumerate(state.steps)
    ]


def page_context(context: Optional[PlannerContext]) -> Dict[str, Any]:
    if context is None:
        return {}
    payload: Dict[str, Any] = {}
    if context.url or context.title:
        payload["page"] = {"url": context.url, "title": context.title}
    if context.inventory:
        payload["uiInventory"] = [item.model_dump(exclude_none=True) for item in context.inventory]
    if context.search_results:
        payload["searchQuery"] = context.search_query
        payload["searchResults"] = [item.model_dump(exclude_none=True) for item in context.search_results]
    return payload


def _clip(text: Optional[str], limit: int = MAX_OBSERVATION_CHARS) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def _coerce(model_cls: Type[T], data: Dict[str, Any]) -> T:
    try:
        return model_cls.model_validate(snake_keys(data))
    except ValidationError as exc:
        raise PlannerError(f"Planner reply did not match {model_cls.__name__}: {exc.error_count()} errors") from exc


def _task_type(data: Dict[str, Any]) -> Dict[str, Any]:
    value = data.get("task_type") if "task_type" in data else data.get("taskType")
    data.pop("taskType", None)
    data["task_type"] = value if value in ("web_task", "extract_info") else None
    return data


class LLMPlanner:
    """Planner backed by an OpenAI-compatible chat model; every role shares one client."""

    def __init__(self, client: ChatClient, model: str, timeout_s: float = 45.0, max_tokens: int = 2048):
        self.client = client
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    async def _ask(self, system: str, user: Dict[str, Any], model: Optional[str], role: str) -> Dict[str, Any]:
        chosen = model or self.model
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": json.dumps(user, ensure_ascii=True)},
        ]
        try:
            resp = await asyncio.wait_for(
                self.client.chat_completion(
                    model=chosen,
                    messages=messages,
                    temperature=0.2,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise PlannerError(f"{role}: planner timed out after {self.timeout_s}s") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise PlannerError(f"{role}: {exc}") from exc
        parsed = parse_json_object(message_content(resp))
        if parsed is None:
            logger.warning("Planner returned no JSON for %s (model=%s)", role, chosen)
            raise PlannerError(f"{role}: planner returned no JSON object")
        return parsed

    async def plan(
        self, task: str, limits: PlanLimits, model: Optional[str] = None, context: Optional[PlannerContext] = None
    ) -> PlannerResult:
        data = await self._ask(
            agents.PLANNER_SYSTEM,
            {"task": task, "maxSteps": limits.max_steps, **page_context(context)},
            model,
            "plan",
        )
        result = _coerce(PlannerResult, _task_type(snake_keys(data)))
        if not any(sub.steps for goal in result.goals for sub in goal.subgoals):
            raise PlannerError("plan: planner returned no steps")
        return result

    async def branch(
        self, task: str, state: PlanState, failed_step: PlanStep, error: Optional[str], model: Optional[str] = None
    ) -> Tuple[str, List[StepSpec]]:
        data = await self._ask(
            agents.BRANCH_SYSTEM,
            {
                "task": task,
                "plan": plan_context(state),
                "failedStep": failed_step.title,
                "error": error,
            },
            model,
            "branch",
        )
        raw_steps = data.get("branchSteps") or data.get("steps") or []
        steps = [_coerce(StepSpec, item) for item in raw_steps if isinstance(item, (dict, str))]
        return str(data.get("reason") or "branch"), steps[:4]

    async def review(
        self,
        task: str,
        state: PlanState,
        observation: str,
        model: Optional[str] = None,
        context: Optional[PlannerContext] = None,
    ) -> PlanReview:
        data = await self._ask(
            agents.REVIEW_SYSTEM,
            {"task": task, "plan": plan_context(state), "observation": _clip(observation), **page_context(context)},
            model,
            "review",
        )
        return _coerce(PlanReview, _task_type(snake_keys(data)))

    async def self_check(
        self,
        task: str,
        state: PlanState,
        step: PlanStep,
        observation: str,
        model: Optional[str] = None,
        context: Optional[PlannerContext] = None,
    ) -> SelfCheckReport:
        data = await self._ask(
            agents.SELF_CHECK_SYSTEM,
            {
                "task": task,
                "plan": plan_context(state),
                "lastStep": step.title,
                "lastStatus": step.status,
                "observation": _clip(observation),
                **page_context(context),
            },
            model,
            "self-check",
        )
        data = snake_keys(data)
        if data.get("action") not in ("continue", "replan", "wait_human"):
            data["action"] = "continue"
        confidence = data.get("confidence")
        if not isinstance(confidence, int) or isinstance(confidence, bool):
            data.pop("confidence", None)
        return _coerce(SelfCheckReport, data)

    async def loop_review(
        self, task: str, state: PlanState, pattern: str, model: Optional[str] = None
    ) -> LoopReview:
        data = await self._ask(
            agents.LOOP_GUARD_SYSTEM,
            {
                "task": task,
                "plan": plan_context(state),
                "pattern": pattern,
                "recent": [item.model_dump() for item in state.trace[-6:]],
            },
            model,
            "loop-guard",
        )
        if data.get("action") not in ("continue", "replan", "wait_human"):
            data["action"] = "replan"
        return _coerce(LoopReview, data)

    async def summarize(
        self, task: str, state: PlanState, history: List[dict], model: Optional[str] = None
    ) -> CheckpointBrief:
        data = await self._ask(
            agents.SUMMARY_SYSTEM,
            {
                "task": task,
                "plan": plan_context(state),
                "history": [{"message": item.get("message"), "type": (item.get("payload") or {}).get("type")} for item in history],
            },
            model,
            "summary",
        )
        return _coerce(CheckpointBrief, {k: v for k, v in data.items() if k in ("brief", "nextActions", "risks")})

    async def extraction_plan(self, task: str, observation: str, model: Optional[str] = None) -> ExtractionPlan:
        data = await self._ask(
            agents.EXTRACTION_SYSTEM,
            {"task": task, "page": _clip(observation)},
            model,
            "extraction",
        )
        if data.get("target") not in ("product_names", "emails", "items"):
            data.pop("target", None)
        return _coerce(ExtractionPlan, data)

    async def improvement_review(
        self, task: str, state: PlanState, status: str, model: Optional[str] = None
    ) -> ImprovementReview:
        data = await self._ask(
            agents.IMPROVEMENT_SYSTEM,
            {
                "task": task,
                "status": status,
                "plan": plan_context(state),
                "replans": state.replan_count,
                "branches": len(state.branch_history),
            },
            model,
            "self-improvement",
        )
        data = snake_keys(data)
        if not isinstance(data.get("confidence"), int):
            data.pop("confidence", None)
        return _coerce(ImprovementReview, data)
