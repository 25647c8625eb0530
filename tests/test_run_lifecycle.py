import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tests.conftest import audit_types, wait_for_run, wait_for_status
from tests.fakes import FakeActuator, FakePlanner


def numbered_steps(count: int):
    return [{"title": f"Step {i}", "url": f"https://shop.test/{i}"} for i in range(1, count + 1)]


async def enqueue(client: AsyncClient, task: str = "Browse https://shop.test/ and look around", **body) -> str:
    res = await client.post("/api/runs", json={"task": task, **body})
    assert res.status_code == 200, res.text
    return res.json()["runId"]


async def fetch_run(client: AsyncClient, run_id: str) -> dict:
    res = await client.get(f"/api/runs/{run_id}")
    assert res.status_code == 200
    return res.json()


@pytest.mark.asyncio
async def test_run_executes_plan_to_completion(app_factory):
    planner = FakePlanner(steps=numbered_steps(5))
    app, _, _, actuator = app_factory(fake_planner=planner)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "completed"
            assert run["finishedAt"]
            assert run["checkpointedAt"]
            steps = run["planState"]["steps"]
            assert [s["status"] for s in steps] == ["completed"] * 5
            assert all(s["snapshot_id"] for s in steps)
            assert run["planState"]["checkpoint"]["brief"] == "Checkpoint brief"
            assert actuator.urls() == [f"https://shop.test/{i}" for i in range(1, 6)]

            snapshots = (await client.get(f"/api/runs/{run_id}/snapshots")).json()["snapshots"]
            assert len(snapshots) == 5
            assert snapshots[0]["screenshot_path"]

            logs = (await client.get(f"/api/runs/{run_id}/logs", params={"step_id": steps[0]["id"]})).json()["logs"]
            assert any("goto https://shop.test/1" in line["message"] for line in logs)

    types = await audit_types(app, run_id)
    for expected in ("planner-context", "plan", "plan-update", "checkpoint-save", "self-check", "self-improvement"):
        assert expected in types


@pytest.mark.asyncio
async def test_enqueue_rejects_blank_task(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/runs", json={"task": "   "})
            assert res.status_code == 400
            missing = await client.get("/api/runs/does-not-exist")
            assert missing.status_code == 404


@pytest.mark.asyncio
async def test_failed_step_branches_and_replaces_remaining_steps(app_factory):
    planner = FakePlanner(
        steps=numbered_steps(5),
        branch_steps=[
            {"title": "Search for the item", "url": "https://shop.test/search"},
            {"title": "Open the first result", "url": "https://shop.test/result"},
        ],
    )
    actuator = FakeActuator(failures={"https://shop.test/3": -1})
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    state = run["planState"]
    titles = [s["title"] for s in state["steps"]]
    assert titles == ["Step 1", "Step 2", "Step 3", "Search for the item", "Open the first result"]
    failed = state["steps"][2]
    assert failed["status"] == "failed"
    assert failed["attempts"] == 2
    assert actuator.urls().count("https://shop.test/3") == 2
    assert "https://shop.test/4" not in actuator.urls()
    assert "https://shop.test/5" not in actuator.urls()
    assert run["status"] == "completed"
    assert len(state["branch_history"]) == 1

    branches = await app.state.db.list_audit(run_id, audit_type="plan-branch")
    assert len(branches) == 1
    assert branches[0]["payload"]["failed_step_id"] == failed["id"]
    assert branches[0]["payload"]["reason"] == "step-failed"
    assert [s["title"] for s in branches[0]["payload"]["steps"]] == titles[3:]


@pytest.mark.asyncio
async def test_step_failure_without_branch_fails_run_after_attempt_budget(app_factory):
    planner = FakePlanner(steps=numbered_steps(3))
    actuator = FakeActuator(failures={"https://shop.test/2": -1})
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, planLimits={"maxStepAttempts": 3})
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            step_id = run["planState"]["steps"][1]["id"]
            logs = (await client.get(f"/api/runs/{run_id}/logs", params={"step_id": step_id})).json()["logs"]

    assert run["status"] == "failed"
    assert "Step 2" in run["errorMessage"]
    steps = run["planState"]["steps"]
    assert steps[1]["status"] == "failed"
    assert steps[1]["attempts"] == 3
    assert steps[2]["status"] == "pending"
    assert actuator.urls().count("https://shop.test/2") == 3
    assert len([line for line in logs if line["level"] == "error"]) == 3
    assert len(planner.roles("branch")) == 1


@pytest.mark.asyncio
async def test_robots_disallow_blocks_navigation_without_touching_the_browser(app_factory):
    planner = FakePlanner(steps=[{"title": "Open the dashboard", "url": "https://private.test/dashboard"}])
    app, _, _, actuator = app_factory(
        fake_planner=planner,
        robots={"private.test": "User-agent: *\nDisallow: /dashboard\n"},
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, task="Check https://private.test/dashboard")
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "failed"
    step = run["planState"]["steps"][0]
    assert step["status"] == "failed"
    assert step["last_error"] == "blocked by policy"
    assert actuator.calls == []
    assert actuator.started == 0
    policy = await app.state.db.list_audit(run_id, audit_type="policy")
    assert policy[0]["payload"]["verdict"] == "blocked"
    assert policy[0]["payload"]["overridden"] is False


@pytest.mark.asyncio
async def test_ignore_robots_proceeds_and_records_override(app_factory):
    planner = FakePlanner(steps=[{"title": "Open the dashboard", "url": "https://private.test/dashboard"}])
    app, _, _, actuator = app_factory(
        fake_planner=planner,
        robots={"private.test": "User-agent: *\nDisallow: /dashboard\n"},
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, task="Check https://private.test/dashboard", ignoreRobotsTxt=True)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    step_id = run["planState"]["steps"][0]["id"]
    assert run["planState"]["policy_overridden_step_ids"] == [step_id]
    assert actuator.urls() == ["https://private.test/dashboard"]
    policy = await app.state.db.list_audit(run_id, audit_type="policy")
    assert policy[0]["payload"]["overridden"] is True


@pytest.mark.asyncio
async def test_blocked_navigation_waits_for_human_when_approval_required(app_factory):
    planner = FakePlanner(steps=[{"title": "Open the dashboard", "url": "https://private.test/dashboard"}])
    app, _, _, actuator = app_factory(
        fake_planner=planner,
        robots={"private.test": "User-agent: *\nDisallow: /dashboard\n"},
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, task="Check https://private.test/dashboard", requireHumanApproval=True)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "waiting_human"
    assert run["requiresHumanIntervention"] is True
    assert actuator.calls == []
    gates = await app.state.db.list_audit(run_id, audit_type="approval-gate")
    assert gates[-1]["payload"]["reason"] == "blocked by policy"


@pytest.mark.asyncio
async def test_approval_gate_waits_and_ignores_mismatched_approval(app_factory):
    planner = FakePlanner(steps=[{"title": "Sign in to the account", "url": "https://shop.test/login"}])
    app, _, _, actuator = app_factory(fake_planner=planner)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, requireHumanApproval=True)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "waiting_human"
            step_id = run["planState"]["steps"][0]["id"]
            assert run["planState"]["approval_requested_step_id"] == step_id
            assert actuator.calls == []

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "approve_step", "stepId": "other"})
            assert res.status_code == 200
            assert res.json()["approved"] is False
            assert (await fetch_run(client, run_id))["status"] == "waiting_human"

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "approve_step", "stepId": step_id})
            assert res.status_code == 200
            assert res.json()["approved"] is True
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    assert run["planState"]["approval_granted_step_id"] is None
    assert actuator.urls() == ["https://shop.test/login"]
    gates = await app.state.db.list_audit(run_id, audit_type="approval-gate")
    assert [g["payload"]["decision"] for g in gates] == ["requested", "granted"]


@pytest.mark.asyncio
async def test_human_needed_error_suspends_and_resume_retries_the_step(app_factory):
    actuator = FakeActuator(
        failures={"https://shop.test/1": 1},
        errors={"https://shop.test/1": "Cloudflare challenge: requires human"},
    )
    planner = FakePlanner(steps=numbered_steps(2))
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "waiting_human"
            assert run["requiresHumanIntervention"] is True
            first = run["planState"]["steps"][0]
            assert first["status"] == "running"
            assert first["attempts"] == 0

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume"})
            assert res.status_code == 200
            assert res.json()["status"] == "running"
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    assert run["requiresHumanIntervention"] is False
    assert actuator.urls().count("https://shop.test/1") == 2
    assert "resume-summary" in await audit_types(app, run_id)


@pytest.mark.asyncio
async def test_resume_failed_run_from_named_step(app_factory):
    actuator = FakeActuator(failures={"https://shop.test/2": 2})
    planner = FakePlanner(steps=numbered_steps(3))
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "failed"
            step_id = run["planState"]["steps"][1]["id"]

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume", "stepId": step_id})
            assert res.status_code == 200
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    assert run["errorMessage"] is None
    assert [s["status"] for s in run["planState"]["steps"]] == ["completed"] * 3
    overrides = await app.state.db.list_audit(run_id, audit_type="step-override")
    assert overrides[0]["payload"]["from_status"] == "failed"
    assert overrides[0]["payload"]["to_status"] == "pending"
    summaries = await app.state.db.list_audit(run_id, audit_type="resume-summary")
    assert summaries[0]["payload"]["summary"] == "Checkpoint brief"


@pytest.mark.asyncio
async def test_resume_without_step_restarts_the_checkpointed_step(app_factory):
    actuator = FakeActuator(failures={"https://shop.test/2": 2})
    planner = FakePlanner(steps=numbered_steps(3))
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "failed"
            failed_id = run["planState"]["steps"][1]["id"]
            assert run["activeStepId"] == failed_id

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume"})
            assert res.status_code == 200
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    assert [s["status"] for s in run["planState"]["steps"]] == ["completed"] * 3
    assert actuator.urls() == [
        "https://shop.test/1",
        "https://shop.test/2",
        "https://shop.test/2",
        "https://shop.test/2",
        "https://shop.test/3",
    ]
    overrides = await app.state.db.list_audit(run_id, audit_type="step-override")
    assert overrides[0]["payload"]["step_id"] == failed_id
    assert overrides[0]["payload"]["from_status"] == "failed"


@pytest.mark.asyncio
async def test_approval_during_browser_teardown_still_drives_the_run(app_factory):
    planner = FakePlanner(
        steps=[
            {"title": "Step 1", "url": "https://shop.test/1"},
            {"title": "Sign in to the account", "url": "https://shop.test/login"},
        ]
    )
    actuator = FakeActuator(close_delay_s=0.4)
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, requireHumanApproval=True)
            run = await wait_for_status(app, run_id, {"waiting_human"})
            step_id = run["plan_state"]["approval_requested_step_id"]
            assert app.state.scheduler.is_active(run_id)

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "approve_step", "stepId": step_id})
            assert res.status_code == 200
            assert res.json()["approved"] is True
            await wait_for_status(app, run_id, {"completed"}, timeout=5)
            await wait_for_run(app, run_id)

    assert actuator.urls() == ["https://shop.test/1", "https://shop.test/login"]
    assert actuator.started == 2
    assert actuator.closed == 2


@pytest.mark.asyncio
async def test_resume_during_browser_teardown_still_drives_the_run(app_factory):
    actuator = FakeActuator(failures={"https://shop.test/2": 2}, close_delay_s=0.4)
    app, _, _, _ = app_factory(fake_planner=FakePlanner(steps=numbered_steps(3)), fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_status(app, run_id, {"failed"})
            assert app.state.scheduler.is_active(run_id)

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume"})
            assert res.status_code == 200
            await wait_for_status(app, run_id, {"completed"}, timeout=5)
            await wait_for_run(app, run_id)

    assert actuator.urls()[-2:] == ["https://shop.test/2", "https://shop.test/3"]
    assert actuator.started == 2


@pytest.mark.asyncio
async def test_finished_runs_release_in_memory_state(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            assert (await fetch_run(client, run_id))["status"] == "completed"
            assert app.state.broadcaster.latest(run_id) is None
            assert run_id not in app.state.store.locks
            snapshots = (await client.get(f"/api/runs/{run_id}/snapshots")).json()["snapshots"]
            assert snapshots


@pytest.mark.asyncio
async def test_resume_completed_run_is_rejected(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume"})
            assert res.status_code == 409
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "approve_step", "stepId": "any"})
            assert res.status_code == 409


@pytest.mark.asyncio
async def test_stop_running_run_then_resume(app_factory):
    planner = FakePlanner(steps=numbered_steps(5))
    actuator = FakeActuator(delay_s=0.15)
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "stop"})
            assert res.status_code == 200
            assert res.json()["status"] == "stopping"
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "stopped"
            assert any(s["status"] == "pending" for s in run["planState"]["steps"])

            again = await client.post(f"/api/runs/{run_id}/actions", json={"action": "stop"})
            assert again.json()["status"] == "stopped"

            actuator.delay_s = 0
            await client.post(f"/api/runs/{run_id}/actions", json={"action": "resume"})
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"


@pytest.mark.asyncio
async def test_stop_waiting_run_moves_to_stopped(app_factory):
    planner = FakePlanner(steps=[{"title": "Sign in to the account", "url": "https://shop.test/login"}])
    app, _, _, _ = app_factory(fake_planner=planner)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client, requireHumanApproval=True)
            await wait_for_run(app, run_id)
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "stop"})
            assert res.json()["status"] == "stopped"
            run = await fetch_run(client, run_id)
            assert run["status"] == "stopped"


@pytest.mark.asyncio
async def test_admin_actions_conflict_while_running(app_factory):
    planner = FakePlanner(steps=numbered_steps(4))
    actuator = FakeActuator(delay_s=0.2)
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_status(app, run_id, {"running"})
            res = await client.post(
                f"/api/runs/{run_id}/actions",
                json={"action": "override_step", "stepId": "any", "status": "completed"},
            )
            assert res.status_code == 409
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "retry_step", "stepId": "any"})
            assert res.status_code == 409
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "approve_step", "stepId": "any"})
            assert res.status_code == 409
            res = await client.delete(f"/api/runs/{run_id}")
            assert res.status_code == 409
            await client.post(f"/api/runs/{run_id}/actions", json={"action": "stop"})
            await wait_for_run(app, run_id)


@pytest.mark.asyncio
async def test_lifecycle_request_validation(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "retry_step"})
            assert res.status_code == 422
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "override_step", "stepId": "s"})
            assert res.status_code == 422
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "explode"})
            assert res.status_code == 422
            await wait_for_run(app, run_id)


@pytest.mark.asyncio
async def test_retry_and_override_steps_on_failed_run(app_factory):
    actuator = FakeActuator(failures={"https://shop.test/1": -1})
    planner = FakePlanner(steps=numbered_steps(2))
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=actuator)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["status"] == "failed"
            first_id = run["planState"]["steps"][0]["id"]
            second_id = run["planState"]["steps"][1]["id"]

            actuator.failures.clear()
            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "retry_step", "stepId": first_id})
            assert res.status_code == 200
            body = res.json()
            assert body["success"] is True
            assert body["step"]["status"] == "completed"

            res = await client.post(f"/api/runs/{run_id}/actions", json={"action": "retry_step", "stepId": second_id})
            assert res.status_code == 409

            res = await client.post(
                f"/api/runs/{run_id}/actions",
                json={"action": "override_step", "stepId": second_id, "status": "completed"},
            )
            assert res.status_code == 200
            assert res.json()["step"]["status"] == "completed"
            run = await fetch_run(client, run_id)

    assert run["status"] == "failed"
    assert [s["status"] for s in run["planState"]["steps"]] == ["completed", "completed"]
    retries = await app.state.db.list_audit(run_id, audit_type="step-retry")
    assert retries[0]["payload"]["success"] is True
    overrides = await app.state.db.list_audit(run_id, audit_type="step-override")
    assert overrides[-1]["payload"]["to_status"] == "completed"


@pytest.mark.asyncio
async def test_delete_run_removes_records(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            res = await client.delete(f"/api/runs/{run_id}")
            assert res.status_code == 200
            assert (await client.get(f"/api/runs/{run_id}")).status_code == 404
            assert await app.state.db.list_snapshots(run_id) == []
            assert await app.state.db.list_audit(run_id) == []


@pytest.mark.asyncio
async def test_force_delete_cancels_running_run(app_factory):
    planner = FakePlanner(steps=numbered_steps(4))
    app, _, _, _ = app_factory(fake_planner=planner, fake_actuator=FakeActuator(delay_s=0.2))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_status(app, run_id, {"running"})
            res = await client.delete(f"/api/runs/{run_id}", params={"force": "true"})
            assert res.status_code == 200
            assert (await client.get(f"/api/runs/{run_id}")).status_code == 404
            assert run_id not in app.state.run_tasks


@pytest.mark.asyncio
async def test_list_runs_filters_by_status(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await enqueue(client)
            await wait_for_run(app, first)
            second = await enqueue(client)
            await wait_for_run(app, second)
            runs = (await client.get("/api/runs")).json()["runs"]
            assert {r["runId"] for r in runs} == {first, second}
            completed = (await client.get("/api/runs", params={"status": "completed"})).json()["runs"]
            assert len(completed) == 2
            failed = (await client.get("/api/runs", params={"status": "failed"})).json()["runs"]
            assert failed == []


@pytest.mark.asyncio
async def test_screenshot_assets_are_served_inside_run_dir(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            snapshots = (await client.get(f"/api/runs/{run_id}/snapshots")).json()["snapshots"]
            name = snapshots[0]["screenshot_path"]
            res = await client.get(f"/api/runs/{run_id}/assets/{name}")
            assert res.status_code == 200
            assert res.content.startswith(b"\x89PNG")
            res = await client.get(f"/api/runs/{run_id}/assets/missing.png")
            assert res.status_code == 404


@pytest.mark.asyncio
async def test_session_recording_is_stored_and_served(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)
            assert run["recordingPath"] == "recording.webm"
            res = await client.get(f"/api/runs/{run_id}/assets/recording.webm")
            assert res.status_code == 200
            assert res.content == b"webm"


@pytest.mark.asyncio
async def test_recording_can_be_switched_off(app_factory):
    app, _, _, actuator = app_factory(record_video=False)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            run_id = await enqueue(client)
            await wait_for_run(app, run_id)
            run = await fetch_run(client, run_id)

    assert run["status"] == "completed"
    assert run["recordingPath"] is None
    assert actuator.record_dir is None
