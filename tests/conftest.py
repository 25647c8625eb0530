import asyncio
from pathlib import Path
from typing import Dict, Iterable, Optional

import httpx
import pytest

from webpilot.config import AppSettings, EndpointConfig
from webpilot.main import create_app
from webpilot.policy import PolicyGuard
from webpilot.schemas import PlanLimits
from webpilot.search import SearchClient
from tests.fakes import FakeActuator, FakePlanner


OPEN_ROBOTS = "User-agent: *\nDisallow:\n"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        planner_endpoint=EndpointConfig(base_url="http://planner.test/v1", model_id="test-model"),
        planner_timeout_s=5.0,
        actuator_timeout_s=2.0,
        queue_poll_interval_s=0.05,
        plan_limits=PlanLimits(loop_backoff_base_ms=250, loop_backoff_max_ms=1000),
        database_path=str(tmp_path / "test.db"),
        assets_dir=str(tmp_path / "assets"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def make_policy(robots: Optional[Dict[str, str]] = None, **kwargs) -> PolicyGuard:
    """Policy guard whose robots.txt lookups are answered in-process, keyed by host."""
    robots = robots or {}

    def handler(request: httpx.Request) -> httpx.Response:
        text = robots.get(request.url.host, OPEN_ROBOTS)
        if text is None:
            return httpx.Response(404)
        return httpx.Response(200, text=text)

    return PolicyGuard(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), **kwargs)


def make_search(html: str, **kwargs) -> SearchClient:
    """DuckDuckGo client that answers every query with the same results page."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=html)

    return SearchClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), **kwargs)


async def wait_for_run(app, run_id: str, timeout: float = 10.0) -> None:
    task = app.state.run_tasks.get(run_id)
    if task is not None:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)


async def wait_for_status(app, run_id: str, statuses: Iterable[str], timeout: float = 10.0) -> dict:
    wanted = set(statuses)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        run = await app.state.db.get_run(run_id)
        if run and run["status"] in wanted:
            return run
        if loop.time() > deadline:
            raise AssertionError(f"run {run_id} stuck in {run['status'] if run else None}")
        await asyncio.sleep(0.02)


async def audit_types(app, run_id: str) -> list:
    entries = await app.state.db.list_audit(run_id, limit=1000)
    return [entry["payload"].get("type") for entry in entries]


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_planner: FakePlanner | None = None,
        fake_actuator: FakeActuator | None = None,
        robots: Dict[str, str] | None = None,
        config_path: Path | None = None,
        search: SearchClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        planner = fake_planner or FakePlanner()
        actuator = fake_actuator or FakeActuator()
        cfg_path = config_path or (tmp_path / "config.json")

        def actuator_factory(browser: str, headless: bool, record_dir: Optional[Path] = None) -> FakeActuator:
            actuator.record_dir = record_dir
            return actuator

        app = create_app(
            settings,
            planner=planner,
            actuator_factory=actuator_factory,
            policy=make_policy(robots),
            config_path=cfg_path,
            search=search,
        )
        return app, cfg_path, planner, actuator

    return _factory
