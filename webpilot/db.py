import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_before(seconds: float) -> str:
    moment = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    return moment.isoformat().replace("+00:00", "Z")


RUN_COLUMNS = {
    "status",
    "plan_state",
    "active_step_id",
    "checkpointed_at",
    "error_message",
    "requires_human",
    "recording_path",
    "started_at",
    "finished_at",
}


def _json_or(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT,
                    task TEXT,
                    model TEXT,
                    browser TEXT,
                    headless INTEGER DEFAULT 1,
                    status TEXT,
                    plan_state_json TEXT,
                    active_step_id TEXT,
                    checkpointed_at TEXT,
                    error_message TEXT,
                    requires_human INTEGER DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS snapshots(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    step_id TEXT,
                    url TEXT,
                    title TEXT,
                    dom_text TEXT,
                    screenshot_path TEXT,
                    cursor_json TEXT,
                    viewport_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS browser_logs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    step_id TEXT,
                    level TEXT,
                    message TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS audit_logs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    level TEXT,
                    message TEXT,
                    audit_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status, created_at);
                CREATE INDEX IF NOT EXISTS idx_snapshots_run ON snapshots(run_id, id);
                CREATE INDEX IF NOT EXISTS idx_browser_logs_run ON browser_logs(run_id, step_id, id);
                CREATE INDEX IF NOT EXISTS idx_audit_logs_run ON audit_logs(run_id, id);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("runs", "recording_path", "TEXT")
            await ensure_column("runs", "started_at", "TEXT")
            await ensure_column("runs", "finished_at", "TEXT")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def execute_rowcount(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            count = cursor.rowcount
            await cursor.close()
            return count

    async def insert(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Runs

    async def insert_run(
        self,
        run_id: str,
        task: str,
        plan_state: dict,
        model: Optional[str] = None,
        browser: Optional[str] = None,
        headless: bool = True,
        status: str = "queued",
    ) -> None:
        created_at = utc_now()
        await self.execute(
            "INSERT INTO runs(run_id, created_at, updated_at, task, model, browser, headless, status, plan_state_json, requires_human) "
            "VALUES (?,?,?,?,?,?,?,?,?,0)",
            (run_id, created_at, created_at, task, model, browser, 1 if headless else 0, status, json.dumps(plan_state)),
        )

    def _run_row(self, row: aiosqlite.Row) -> dict:
        return {
            "run_id": row["run_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "task": row["task"],
            "model": row["model"],
            "browser": row["browser"],
            "headless": bool(row["headless"]),
            "status": row["status"],
            "plan_state": _json_or(row["plan_state_json"], {}),
            "active_step_id": row["active_step_id"],
            "checkpointed_at": row["checkpointed_at"],
            "error_message": row["error_message"],
            "requires_human_intervention": bool(row["requires_human"]),
            "recording_path": row["recording_path"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
        }

    async def get_run(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM runs WHERE run_id=?", (run_id,))
        if not row:
            return None
        return self._run_row(row)

    async def list_runs(self, limit: int = 50, status: Optional[str] = None) -> List[dict]:
        if status:
            rows = await self.fetchall(
                "SELECT * FROM runs WHERE status=? ORDER BY created_at DESC LIMIT ?", (status, limit)
            )
        else:
            rows = await self.fetchall("SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,))
        return [self._run_row(row) for row in rows]

    def _run_assignments(self, fields: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        assignments: List[str] = ["updated_at=?"]
        params: List[Any] = [utc_now()]
        for key, value in fields.items():
            if key not in RUN_COLUMNS:
                raise ValueError(f"Unknown run column: {key}")
            if key == "plan_state":
                assignments.append("plan_state_json=?")
                params.append(json.dumps(value))
            elif key == "requires_human":
                assignments.append("requires_human=?")
                params.append(1 if value else 0)
            else:
                assignments.append(f"{key}=?")
                params.append(value)
        return assignments, params

    async def update_run(self, run_id: str, **fields: Any) -> None:
        assignments, params = self._run_assignments(fields)
        await self.execute(
            f"UPDATE runs SET {', '.join(assignments)} WHERE run_id=?",
            tuple(params + [run_id]),
        )

    async def update_run_if_status(self, run_id: str, expected: Iterable[str], **fields: Any) -> bool:
        """Compare-and-set on status; returns False when the run left the expected states."""
        expected_list = list(expected)
        assignments, params = self._run_assignments(fields)
        placeholders = ",".join("?" for _ in expected_list)
        count = await self.execute_rowcount(
            f"UPDATE runs SET {', '.join(assignments)} WHERE run_id=? AND status IN ({placeholders})",
            tuple(params + [run_id] + expected_list),
        )
        return count > 0

    async def touch_run(self, run_id: str) -> None:
        await self.execute("UPDATE runs SET updated_at=? WHERE run_id=?", (utc_now(), run_id))

    async def oldest_queued_run_id(self) -> Optional[str]:
        row = await self.fetchone(
            "SELECT run_id FROM runs WHERE status='queued' ORDER BY created_at ASC LIMIT 1"
        )
        return row["run_id"] if row else None

    async def stale_running_run_ids(self, updated_before: str) -> List[str]:
        rows = await self.fetchall(
            "SELECT run_id FROM runs WHERE status='running' AND updated_at < ? ORDER BY updated_at ASC",
            (updated_before,),
        )
        return [row["run_id"] for row in rows]

    async def delete_run(self, run_id: str) -> None:
        for table in ("snapshots", "browser_logs", "audit_logs"):
            await self.execute(f"DELETE FROM {table} WHERE run_id=?", (run_id,))
        await self.execute("DELETE FROM runs WHERE run_id=?", (run_id,))

    # Snapshots

    async def add_snapshot(
        self,
        run_id: str,
        step_id: Optional[str],
        url: Optional[str],
        title: Optional[str],
        dom_text: str,
        screenshot_path: Optional[str] = None,
        cursor: Optional[dict] = None,
        viewport: Optional[dict] = None,
    ) -> dict:
        created_at = utc_now()
        snapshot_id = await self.insert(
            "INSERT INTO snapshots(run_id, step_id, url, title, dom_text, screenshot_path, cursor_json, viewport_json, created_at) "
            "VALUES (?,?,?,?,?,?,?,?,?)",
            (
                run_id,
                step_id,
                url,
                title,
                dom_text,
                screenshot_path,
                json.dumps(cursor) if cursor is not None else None,
                json.dumps(viewport) if viewport is not None else None,
                created_at,
            ),
        )
        return {
            "id": snapshot_id,
            "run_id": run_id,
            "step_id": step_id,
            "url": url,
            "title": title,
            "dom_text": dom_text,
            "screenshot_path": screenshot_path,
            "cursor": cursor,
            "viewport": viewport,
            "created_at": created_at,
        }

    def _snapshot_row(self, row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "run_id": row["run_id"],
            "step_id": row["step_id"],
            "url": row["url"],
            "title": row["title"],
            "dom_text": row["dom_text"] or "",
            "screenshot_path": row["screenshot_path"],
            "cursor": _json_or(row["cursor_json"], None),
            "viewport": _json_or(row["viewport_json"], None),
            "created_at": row["created_at"],
        }

    async def list_snapshots(self, run_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM snapshots WHERE run_id=? ORDER BY id ASC LIMIT ? OFFSET ?",
            (run_id, limit, offset),
        )
        return [self._snapshot_row(row) for row in rows]

    async def latest_snapshot(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM snapshots WHERE run_id=? ORDER BY id DESC LIMIT 1", (run_id,))
        return self._snapshot_row(row) if row else None

    # Browser logs

    async def add_browser_log(self, run_id: str, step_id: Optional[str], level: str, message: str) -> int:
        return await self.insert(
            "INSERT INTO browser_logs(run_id, step_id, level, message, created_at) VALUES (?,?,?,?,?)",
            (run_id, step_id, level, message, utc_now()),
        )

    async def list_browser_logs(
        self,
        run_id: str,
        step_id: Optional[str] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[dict]:
        if step_id:
            rows = await self.fetchall(
                "SELECT id, run_id, step_id, level, message, created_at FROM browser_logs "
                "WHERE run_id=? AND step_id=? ORDER BY id ASC LIMIT ? OFFSET ?",
                (run_id, step_id, limit, offset),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, run_id, step_id, level, message, created_at FROM browser_logs "
                "WHERE run_id=? ORDER BY id ASC LIMIT ? OFFSET ?",
                (run_id, limit, offset),
            )
        return [dict(row) for row in rows]

    # Audit

    async def add_audit(self, run_id: str, level: str, message: str, payload: dict) -> dict:
        created_at = utc_now()
        audit_type = payload.get("type")
        audit_id = await self.insert(
            "INSERT INTO audit_logs(run_id, level, message, audit_type, payload_json, created_at) VALUES (?,?,?,?,?,?)",
            (run_id, level, message, audit_type, json.dumps(payload), created_at),
        )
        return {
            "id": audit_id,
            "run_id": run_id,
            "level": level,
            "message": message,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_audit(
        self,
        run_id: str,
        limit: int = 200,
        offset: int = 0,
        audit_type: Optional[str] = None,
    ) -> List[dict]:
        if audit_type:
            rows = await self.fetchall(
                "SELECT id, run_id, level, message, payload_json, created_at FROM audit_logs "
                "WHERE run_id=? AND audit_type=? ORDER BY id ASC LIMIT ? OFFSET ?",
                (run_id, audit_type, limit, offset),
            )
        else:
            rows = await self.fetchall(
                "SELECT id, run_id, level, message, payload_json, created_at FROM audit_logs "
                "WHERE run_id=? ORDER BY id ASC LIMIT ? OFFSET ?",
                (run_id, limit, offset),
            )
        return [
            {
                "id": row["id"],
                "run_id": row["run_id"],
                "level": row["level"],
                "message": row["message"],
                "payload": _json_or(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def recent_audit(self, run_id: str, limit: int = 20) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, run_id, level, message, payload_json, created_at FROM audit_logs "
            "WHERE run_id=? ORDER BY id DESC LIMIT ?",
            (run_id, limit),
        )
        entries = [
            {
                "id": row["id"],
                "run_id": row["run_id"],
                "level": row["level"],
                "message": row["message"],
                "payload": _json_or(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
        entries.reverse()
        return entries

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )
