from typing import List, Optional

from .schemas import LoopGuardState, PlanLimits, StepTrace


TRACE_WINDOW = 6
COOLDOWN_STEPS = 2


def _norm(title: str) -> str:
    return " ".join(title.lower().split())


def detect_loop_pattern(trace: List[StepTrace]) -> Optional[str]:
    """Look at the last few executed steps for a repeat, an a-b-a-b alternation or a failing URL."""
    recent = trace[-TRACE_WINDOW:]
    if len(recent) < 3:
        return None
    titles = [_norm(item.title) for item in recent]
    if titles[-1] == titles[-2] == titles[-3]:
        return "repeat-same-step"
    if len(titles) >= 4:
        a, b, c, d = titles[-4:]
        if a == c and b == d and a != b:
            return "alternate-two-steps"
    last_three = recent[-3:]
    urls = {item.url for item in last_three}
    if len(urls) == 1 and None not in urls:
        failures = sum(1 for item in last_three if item.status == "failed")
        if failures >= 2:
            return "same-url-failures"
    return None


def backoff_ms(streak: int, limits: PlanLimits) -> int:
    if streak <= 0:
        return 0
    return min(limits.loop_backoff_base_ms * 2 ** (streak - 1), limits.loop_backoff_max_ms)


class LoopGuard:
    """Tracks consecutive loop detections; past the threshold the controller asks for a review."""

    def __init__(self, state: LoopGuardState, limits: PlanLimits):
        self.state = state
        self.limits = limits

    def observe(self, trace: List[StepTrace]) -> Optional[str]:
        if self.state.cooldown > 0:
            self.state.cooldown -= 1
            return None
        pattern = detect_loop_pattern(trace)
        if pattern is None:
            self.state.streak = 0
            self.state.last_pattern = None
            return None
        self.state.streak += 1
        self.state.last_pattern = pattern
        return pattern

    @property
    def tripped(self) -> bool:
        return self.state.streak >= self.limits.loop_guard_threshold

    def backoff(self) -> int:
        return backoff_ms(self.state.streak, self.limits)

    def reset(self) -> None:
        self.state.streak = 0
        self.state.cooldown = COOLDOWN_STEPS
