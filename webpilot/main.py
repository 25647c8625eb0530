import asyncio
import json
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse

from .broadcaster import SnapshotBroadcaster
from .browser import PlaywrightActuator
from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .controller import AdaptiveController
from .db import Database
from .errors import ActuatorError, OperatorConflict, PolicyBlocked, RunNotFound
from .llm import ChatClient, resolve_model_id
from .planner import LLMPlanner, Planner
from .policy import PolicyGuard
from .run_store import RunStore
from .scheduler import ActuatorFactory, RunScheduler
from .schemas import ControlRequest, EnqueueRequest, LifecycleRequest
from .search import SearchClient
from .service import RunService
from .step_runner import StepRunner
from .telemetry import TelemetryLog


def make_actuator_factory(settings: AppSettings) -> ActuatorFactory:
    def factory(browser: str, headless: bool, record_dir: Optional[Path] = None) -> PlaywrightActuator:
        return PlaywrightActuator(
            browser_type=browser,
            headless=headless,
            viewport_width=settings.viewport_width,
            viewport_height=settings.viewport_height,
            navigation_timeout_ms=settings.navigation_timeout_ms,
            record_dir=record_dir,
        )

    return factory


async def refresh_model_check(settings_obj: AppSettings, chat_client: Optional[ChatClient]) -> Dict[str, Any]:
    if chat_client is None:
        return {}
    endpoint = settings_obj.planner_endpoint
    try:
        available = await chat_client.list_models_cached(endpoint.base_url, force=True)
    except (httpx.HTTPError, ValueError) as exc:
        return {"ok": False, "base_url": endpoint.base_url, "configured": endpoint.model_id, "error": str(exc)}
    resolved = resolve_model_id(endpoint.model_id, available)
    return {
        "ok": resolved is not None,
        "base_url": endpoint.base_url,
        "configured": endpoint.model_id,
        "resolved": resolved,
        "available": available,
    }


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_service(request: Request) -> RunService:
    return request.app.state.service


def get_telemetry(request: Request) -> TelemetryLog:
    return request.app.state.telemetry


def get_broadcaster(request: Request) -> SnapshotBroadcaster:
    return request.app.state.broadcaster


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@contextmanager
def http_errors():
    try:
        yield
    except RunNotFound as exc:
        raise HTTPException(status_code=404, detail="Run not found") from exc
    except OperatorConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PolicyBlocked as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ActuatorError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def _require_run(db: Database, run_id: str) -> dict:
    run = await db.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


router = APIRouter()


@router.get("/settings")
async def get_settings_route(request: Request, settings: AppSettings = Depends(get_settings)):
    if not request.app.state.model_check:
        request.app.state.model_check = await refresh_model_check(settings, request.app.state.chat_client)
    return {"settings": settings.to_safe_dict(), "model_check": request.app.state.model_check}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings payload must be an object.")
    if body.get("search_api_key") == "***":
        body.pop("search_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.model_dump())
    state = request.app.state
    state.settings = new_settings
    state.scheduler.settings = new_settings
    state.service.settings = new_settings
    state.runner.actuator_timeout_s = new_settings.actuator_timeout_s
    chat_client: Optional[ChatClient] = state.chat_client
    if chat_client is not None:
        chat_client.base_url = new_settings.planner_endpoint.base_url.rstrip("/")
        chat_client.max_output_tokens = new_settings.planner_max_tokens
    if isinstance(state.planner, LLMPlanner):
        state.planner.model = new_settings.planner_endpoint.model_id
        state.planner.timeout_s = new_settings.planner_timeout_s
        state.planner.max_tokens = new_settings.planner_max_tokens
    state.search.provider = new_settings.search_provider.strip().lower()
    state.search.api_key = new_settings.search_api_key
    state.search.max_results = new_settings.search_max_results
    state.model_check = await refresh_model_check(new_settings, chat_client)
    return {"ok": True, "model_check": state.model_check}


@router.post("/api/runs")
async def enqueue_run(req: EnqueueRequest, service: RunService = Depends(get_service)):
    with http_errors():
        return await service.enqueue(req)


@router.get("/api/runs")
async def list_runs(limit: int = 50, status: Optional[str] = None, service: RunService = Depends(get_service)):
    return {"runs": await service.list_runs(limit=max(1, min(limit, 500)), status=status)}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, service: RunService = Depends(get_service)):
    with http_errors():
        return await service.status(run_id)


@router.post("/api/runs/{run_id}/actions")
async def run_action(run_id: str, req: LifecycleRequest, service: RunService = Depends(get_service)):
    with http_errors():
        return await service.act(run_id, req)


@router.post("/api/runs/{run_id}/controls")
async def run_control(run_id: str, req: ControlRequest, service: RunService = Depends(get_service)):
    with http_errors():
        return await service.control(run_id, req)


@router.get("/api/runs/{run_id}/snapshots")
async def list_snapshots(run_id: str, limit: int = 50, offset: int = 0, db: Database = Depends(get_db)):
    await _require_run(db, run_id)
    return {"snapshots": await db.list_snapshots(run_id, limit=limit, offset=max(offset, 0))}


@router.get("/api/runs/{run_id}/logs")
async def list_logs(
    run_id: str,
    limit: int = 200,
    offset: int = 0,
    step_id: Optional[str] = None,
    db: Database = Depends(get_db),
):
    await _require_run(db, run_id)
    return {"logs": await db.list_browser_logs(run_id, step_id=step_id, limit=limit, offset=max(offset, 0))}


@router.get("/api/runs/{run_id}/audit")
async def list_audit(
    run_id: str,
    limit: int = 200,
    offset: int = 0,
    type: Optional[str] = None,
    db: Database = Depends(get_db),
):
    await _require_run(db, run_id)
    return {"audit": await db.list_audit(run_id, limit=limit, offset=max(offset, 0), audit_type=type)}


@router.get("/api/runs/{run_id}/live")
async def stream_snapshots(
    run_id: str,
    db: Database = Depends(get_db),
    broadcaster: SnapshotBroadcaster = Depends(get_broadcaster),
):
    await _require_run(db, run_id)
    if broadcaster.latest(run_id) is None:
        latest = await db.latest_snapshot(run_id)
        if latest:
            broadcaster.seed(run_id, latest)

    async def event_generator():
        queue = await broadcaster.subscribe(run_id)
        try:
            while True:
                event = await queue.get()
                yield sse_format(event)
        except asyncio.CancelledError:
            pass
        finally:
            await broadcaster.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/api/runs/{run_id}/assets/{name}")
async def get_asset(
    run_id: str,
    name: str,
    db: Database = Depends(get_db),
    telemetry: TelemetryLog = Depends(get_telemetry),
):
    await _require_run(db, run_id)
    path = telemetry.resolve_asset(run_id, name)
    if path is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return FileResponse(path)


@router.delete("/api/runs/{run_id}")
async def delete_run(run_id: str, force: bool = False, service: RunService = Depends(get_service)):
    with http_errors():
        return await service.delete(run_id, force=force)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    planner: Optional[Planner] = None,
    actuator_factory: Optional[ActuatorFactory] = None,
    policy: Optional[PolicyGuard] = None,
    search: Optional[SearchClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.model_dump())
        app.state.assets_dir.mkdir(parents=True, exist_ok=True)
        app.state.scheduler.start()
        try:
            yield
        finally:
            await app.state.scheduler.shutdown()
            await app.state.policy.close()
            await app.state.search.close()
            if app.state.chat_client is not None:
                await app.state.chat_client.close()

    app = FastAPI(title="webpilot run orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.assets_dir = Path(settings.assets_dir).resolve()
    app.state.telemetry = TelemetryLog(app.state.db, app.state.assets_dir)
    app.state.chat_client = None
    if planner is None:
        app.state.chat_client = ChatClient(
            settings.planner_endpoint.base_url,
            max_output_tokens=settings.planner_max_tokens,
            timeout_s=settings.planner_timeout_s,
        )
        planner = LLMPlanner(
            app.state.chat_client,
            settings.planner_endpoint.model_id,
            timeout_s=settings.planner_timeout_s,
            max_tokens=settings.planner_max_tokens,
        )
    app.state.planner = planner
    app.state.policy = policy or PolicyGuard(
        user_agent=settings.robots_user_agent,
        timeout_s=settings.robots_timeout_s,
        cache_ttl_s=settings.robots_cache_ttl_s,
    )
    app.state.search = search or SearchClient(
        provider=settings.search_provider,
        api_key=settings.search_api_key,
        max_results=settings.search_max_results,
        timeout_s=settings.search_timeout_s,
        user_agent=settings.robots_user_agent,
    )
    app.state.broadcaster = SnapshotBroadcaster()
    app.state.store = RunStore(app.state.db, app.state.telemetry)
    app.state.runner = StepRunner(
        app.state.telemetry, app.state.policy, app.state.broadcaster, settings.actuator_timeout_s
    )
    app.state.controller = AdaptiveController(
        app.state.store,
        app.state.telemetry,
        app.state.planner,
        app.state.runner,
        app.state.policy,
        app.state.broadcaster,
        search=app.state.search,
    )
    app.state.scheduler = RunScheduler(
        app.state.store,
        app.state.controller,
        actuator_factory or make_actuator_factory(settings),
        settings,
    )
    app.state.service = RunService(
        settings,
        app.state.store,
        app.state.telemetry,
        app.state.scheduler,
        app.state.runner,
        app.state.policy,
        app.state.broadcaster,
    )
    app.state.run_tasks = app.state.scheduler.run_tasks
    app.state.model_check = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("WEBPILOT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "webpilot.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
