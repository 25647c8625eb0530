from webpilot.loop_guard import LoopGuard, backoff_ms, detect_loop_pattern
from webpilot.schemas import LoopGuardState, PlanLimits, StepTrace


def trace(*items):
    return [StepTrace(title=title, status=status, url=url) for title, status, url in items]


def test_needs_three_entries():
    assert detect_loop_pattern(trace(("A", "completed", None), ("A", "completed", None))) is None


def test_repeat_same_step_ignores_case_and_spacing():
    items = trace(("Open  page", "completed", None), ("open page", "completed", None), ("OPEN PAGE", "failed", None))
    assert detect_loop_pattern(items) == "repeat-same-step"


def test_alternating_steps():
    items = trace(
        ("A", "completed", None), ("B", "completed", None), ("A", "completed", None), ("B", "completed", None)
    )
    assert detect_loop_pattern(items) == "alternate-two-steps"


def test_same_url_failures():
    url = "https://shop.test/cart"
    items = trace(("A", "failed", url), ("B", "completed", url), ("C", "failed", url))
    assert detect_loop_pattern(items) == "same-url-failures"
    healthy = trace(("A", "completed", url), ("B", "completed", url), ("C", "failed", url))
    assert detect_loop_pattern(healthy) is None


def test_backoff_doubles_and_caps():
    limits = PlanLimits(loop_backoff_base_ms=1000, loop_backoff_max_ms=3000)
    assert [backoff_ms(streak, limits) for streak in range(0, 5)] == [0, 1000, 2000, 3000, 3000]


def test_guard_trips_at_threshold_then_cools_down():
    state = LoopGuardState()
    guard = LoopGuard(state, PlanLimits(loop_guard_threshold=2))
    looping = trace(("A", "completed", None), ("A", "completed", None), ("A", "completed", None))
    assert guard.observe(looping) == "repeat-same-step"
    assert not guard.tripped
    guard.observe(looping)
    assert guard.tripped
    guard.reset()
    assert state.streak == 0
    assert guard.observe(looping) is None
    assert guard.observe(looping) is None
    assert state.cooldown == 0
    assert guard.observe(looping) == "repeat-same-step"


def test_guard_streak_resets_without_pattern():
    state = LoopGuardState(streak=1)
    guard = LoopGuard(state, PlanLimits())
    assert guard.observe(trace(("A", "completed", None), ("B", "completed", None), ("C", "completed", None))) is None
    assert state.streak == 0
