import pytest
from pydantic import BaseModel, ValidationError

from webpilot.db import Database
from webpilot.schemas import (
    ControlRequest,
    EnqueueRequest,
    LifecycleRequest,
    RunStatusPayload,
)
from webpilot.telemetry import TelemetryLog


def test_enqueue_accepts_camel_case_and_prompt_alias():
    req = EnqueueRequest.model_validate(
        {"prompt": "Find boots", "browser": " Firefox ", "ignoreRobotsTxt": True, "planLimits": {"maxSteps": 50}}
    )
    assert req.task == "Find boots"
    assert req.browser == "firefox"
    assert req.ignore_robots_txt is True
    assert req.plan_limits.max_steps == 20


def test_lifecycle_request_normalizes_and_validates():
    req = LifecycleRequest.model_validate({"action": "Approve-Step", "stepId": "s1"})
    assert req.action == "approve_step"
    assert req.step_id == "s1"
    with pytest.raises(ValidationError):
        LifecycleRequest.model_validate({"action": "retry_step"})
    with pytest.raises(ValidationError):
        LifecycleRequest.model_validate({"action": "override_step", "stepId": "s1"})
    with pytest.raises(ValidationError):
        LifecycleRequest.model_validate({"action": "pause"})


def test_control_goto_needs_url():
    with pytest.raises(ValidationError):
        ControlRequest(action="goto", url="  ")
    assert ControlRequest(action="reload").url is None


@pytest.mark.asyncio
async def test_audit_rejects_unknown_payload_types(tmp_path):
    class StrayPayload(BaseModel):
        type: str = "mystery"

    db = Database(str(tmp_path / "t.db"))
    await db.init()
    telemetry = TelemetryLog(db, tmp_path / "assets")
    with pytest.raises(ValidationError):
        await telemetry.audit("run-1", StrayPayload(), "stray")
    stored = await telemetry.audit("run-1", RunStatusPayload(to_status="queued"), "queued")
    assert stored["payload"]["type"] == "run-status"


def test_resolve_asset_stays_inside_run_dir(tmp_path):
    telemetry = TelemetryLog(None, tmp_path / "assets")
    name = telemetry.save_screenshot("run-1", "s1", b"png")
    (tmp_path / "assets" / "secret.txt").write_text("nope")
    assert telemetry.resolve_asset("run-1", name) == (tmp_path / "assets" / "run-1" / name).resolve()
    assert telemetry.resolve_asset("run-1", "../secret.txt") is None
    assert telemetry.resolve_asset("run-1", "missing.png") is None
