import logging
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, TypeAdapter

from .db import Database
from .schemas import AuditPayload


logger = logging.getLogger("uvicorn.error")

_payload_adapter: TypeAdapter = TypeAdapter(AuditPayload)


class TelemetryLog:
    """Append-only sink for audit entries, browser logs, snapshots and their assets."""

    def __init__(self, db: Database, assets_dir: Path):
        self.db = db
        self.assets_dir = assets_dir

    async def audit(self, run_id: str, payload: BaseModel, message: str, level: str = "info") -> dict:
        # Round-trip through the union so an unknown payload type fails loudly at the call site.
        typed = _payload_adapter.validate_python(payload.model_dump(mode="json"))
        return await self.db.add_audit(run_id, level, message, typed.model_dump(mode="json"))

    async def browser_log(self, run_id: str, step_id: Optional[str], level: str, message: str) -> int:
        return await self.db.add_browser_log(run_id, step_id, level, message)

    async def browser_logs(self, run_id: str, step_id: Optional[str], lines: List[Dict[str, str]]) -> int:
        count = 0
        for line in lines:
            await self.db.add_browser_log(
                run_id, step_id, str(line.get("level") or "info"), str(line.get("message") or "")
            )
            count += 1
        return count

    def run_dir(self, run_id: str) -> Path:
        return self.assets_dir / run_id

    def save_screenshot(self, run_id: str, step_id: Optional[str], data: bytes) -> str:
        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        name = f"{step_id or 'manual'}-{uuid.uuid4().hex[:8]}.png"
        (run_dir / name).write_bytes(data)
        return name

    def resolve_asset(self, run_id: str, name: str) -> Optional[Path]:
        """Resolve a stored asset reference, refusing anything outside the run's directory."""
        run_dir = self.run_dir(run_id).resolve()
        candidate = (run_dir / name).resolve()
        if run_dir not in candidate.parents:
            return None
        if not candidate.is_file():
            return None
        return candidate

    async def snapshot(
        self,
        run_id: str,
        step_id: Optional[str],
        url: Optional[str],
        title: Optional[str],
        dom_text: str,
        screenshot: Optional[bytes] = None,
        cursor: Optional[dict] = None,
        viewport: Optional[dict] = None,
    ) -> dict:
        screenshot_path = None
        if screenshot:
            screenshot_path = self.save_screenshot(run_id, step_id, screenshot)
        return await self.db.add_snapshot(
            run_id,
            step_id,
            url,
            title,
            dom_text,
            screenshot_path=screenshot_path,
            cursor=cursor,
            viewport=viewport,
        )

    def remove_assets(self, run_id: str) -> None:
        run_dir = self.run_dir(run_id)
        if run_dir.exists():
            shutil.rmtree(run_dir, ignore_errors=True)
            logger.info("Removed assets for run %s", run_id)
