import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .schemas import PlanLimits

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "WEBPILOT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str
    model_id: str

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    # Planner (OpenAI-compatible chat completions)
    planner_endpoint: EndpointConfig = Field(
        default_factory=lambda: EndpointConfig(base_url="http://127.0.0.1:11434/v1", model_id="llama3.1:8b")
    )
    planner_timeout_s: float = 45.0
    planner_max_tokens: int = 2048

    # Actuator
    default_browser: str = "chromium"
    default_headless: bool = True
    actuator_timeout_s: float = 30.0
    navigation_timeout_ms: int = 20000
    viewport_width: int = 1280
    viewport_height: int = 800
    record_video: bool = True

    # Policy guard
    robots_timeout_s: float = 8.0
    robots_user_agent: str = "webpilot"
    robots_cache_ttl_s: int = 15 * 60

    # Web search (only for runs that ask for it)
    search_provider: str = "duckduckgo"
    search_api_key: Optional[str] = None
    search_max_results: int = 6
    search_timeout_s: float = 10.0

    # Scheduler
    queue_poll_interval_s: float = 2.0
    stale_run_after_s: int = 10 * 60
    max_concurrent_runs: Optional[int] = None

    plan_limits: PlanLimits = Field(default_factory=PlanLimits)

    database_path: str = "webpilot.db"
    assets_dir: str = "run_assets"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("search_api_key"):
            data["search_api_key"] = "***"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "planner_base_url": os.getenv("PLANNER_BASE_URL"),
        "planner_model": os.getenv("PLANNER_MODEL"),
        "planner_timeout_s": os.getenv("PLANNER_TIMEOUT_S"),
        "default_browser": os.getenv("DEFAULT_BROWSER"),
        "default_headless": os.getenv("DEFAULT_HEADLESS"),
        "record_video": os.getenv("RECORD_VIDEO"),
        "actuator_timeout_s": os.getenv("ACTUATOR_TIMEOUT_S"),
        "robots_timeout_s": os.getenv("ROBOTS_TIMEOUT_S"),
        "robots_user_agent": os.getenv("ROBOTS_USER_AGENT"),
        "search_provider": os.getenv("SEARCH_PROVIDER"),
        "search_api_key": os.getenv("SEARCH_API_KEY"),
        "queue_poll_interval_s": os.getenv("QUEUE_POLL_INTERVAL_S"),
        "stale_run_after_s": os.getenv("STALE_RUN_AFTER_S"),
        "max_concurrent_runs": os.getenv("MAX_CONCURRENT_RUNS"),
        "database_path": os.getenv("DATABASE_PATH"),
        "assets_dir": os.getenv("ASSETS_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("planner_timeout_s", "actuator_timeout_s", "robots_timeout_s", "queue_poll_interval_s", "search_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in ("stale_run_after_s", "max_concurrent_runs", "port"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("default_headless", "record_video"):
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _apply_planner_env(merged: Dict[str, Any], file_data: Dict[str, Any], env_data: Dict[str, Any], allow_env: bool) -> None:
    """Fold PLANNER_BASE_URL/PLANNER_MODEL into planner_endpoint unless config.json already pins it."""
    base_url = merged.pop("planner_base_url", None)
    model_id = merged.pop("planner_model", None)
    if not base_url and not model_id:
        return
    if "planner_endpoint" in file_data and not allow_env:
        return
    endpoint = merged.get("planner_endpoint")
    if not isinstance(endpoint, dict):
        endpoint = AppSettings().planner_endpoint.model_dump()
    if base_url:
        endpoint["base_url"] = base_url
    if model_id:
        endpoint["model_id"] = model_id
    merged["planner_endpoint"] = endpoint


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    _apply_planner_env(merged, file_data, env_data, allow_env_overrides)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
