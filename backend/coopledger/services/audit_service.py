"""Audit trail storage for ledger facts and sensitive reads.

Every event is appended to a daily JSONL file and inserted into a local
SQLite store.  Events are categorised for tiered retention:

* **MUTATION** -- kept forever (postings, closes, account changes, logins)
* **READ_ACCESS** -- purged after 90 days (balance and report views)
* **SYSTEM** -- purged after 30 days (scheduler runs, startup)

``AuditWriter.purge_expired`` applies the retention windows to both stores.

``AuditWriter`` is created once per process.  ``fire_and_forget`` schedules
the I/O on the default thread-pool so the calling endpoint returns
immediately; a failed write is logged and never reaches the caller.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

SYSTEM_NAME = "coopledger"


class AuditEventCategory(str, enum.Enum):
    MUTATION = "mutation"  # Never deleted
    READ_ACCESS = "read_access"  # 90-day retention
    SYSTEM = "system"  # 30-day retention


# Days an event is kept, per category.  None = never purged.
RETENTION_DAYS: dict[AuditEventCategory, int | None] = {
    AuditEventCategory.MUTATION: None,
    AuditEventCategory.READ_ACCESS: 90,
    AuditEventCategory.SYSTEM: 30,
}


@dataclasses.dataclass(frozen=True)
class AuditEvent:
    id: UUID
    timestamp: datetime
    category: AuditEventCategory
    action: str
    cooperative_id: str | None = None
    user_id: str | None = None
    username: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict | None = None
    ip_address: str | None = None
    system_name: str = SYSTEM_NAME

    @classmethod
    def create(cls, action: str, **fields: Any) -> AuditEvent:
        """Build an event stamped now, categorised from its action."""
        category = fields.pop("category", None) or classify_action(action)
        return cls(
            id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            category=category,
            action=action,
            **fields,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "action": self.action,
            "cooperative_id": self.cooperative_id,
            "user_id": self.user_id,
            "username": self.username,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "system_name": self.system_name,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


# ---------------------------------------------------------------------------
# Action → category classifier
# ---------------------------------------------------------------------------

_MUTATION_KEYWORDS = {
    "create",
    "created",
    "update",
    "updated",
    "delete",
    "deleted",
    "post",
    "posted",
    "reverse",
    "reversed",
    "close",
    "closed",
    "login",
}

_SYSTEM_PREFIXES = (
    "system.",
    "scheduler.",
    "auth.failed",
)

_READ_KEYWORDS = ("view", "read", "list", "report", "balance")


def classify_action(action: str) -> AuditEventCategory:
    """Map an action string to a retention category."""
    action_lower = action.lower()

    for prefix in _SYSTEM_PREFIXES:
        if action_lower.startswith(prefix):
            return AuditEventCategory.SYSTEM

    parts = action_lower.replace(".", "_").split("_")
    for part in parts:
        if part in _MUTATION_KEYWORDS:
            return AuditEventCategory.MUTATION

    if any(kw in action_lower for kw in _READ_KEYWORDS):
        return AuditEventCategory.READ_ACCESS

    # Unknown actions are kept forever
    return AuditEventCategory.MUTATION


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class AuditWriter:
    """Writes audit events to daily JSONL files and a SQLite store."""

    def __init__(
        self,
        base_path: str | Path,
        retention_days: dict[AuditEventCategory, int | None] | None = None,
    ) -> None:
        self.base_path = Path(base_path)
        self.retention_days = dict(RETENTION_DAYS if retention_days is None else retention_days)
        self.jsonl_dir = self.base_path / "jsonl"
        self.sqlite_path = self.base_path / "audit.db"

        self.jsonl_dir.mkdir(parents=True, exist_ok=True)
        self._init_sqlite()

    # ---- SQLite setup ----

    def _init_sqlite(self) -> None:
        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id             TEXT PRIMARY KEY,
                    timestamp      TEXT NOT NULL,
                    category       TEXT NOT NULL,
                    action         TEXT NOT NULL,
                    cooperative_id TEXT,
                    user_id        TEXT,
                    username       TEXT,
                    resource_type  TEXT,
                    resource_id    TEXT,
                    details        TEXT,
                    ip_address     TEXT,
                    system_name    TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ae_cat_ts "
                "ON audit_events(category, timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ae_cooperative "
                "ON audit_events(cooperative_id)"
            )
            conn.commit()
        finally:
            conn.close()

    def _get_jsonl_path(self, dt: datetime) -> Path:
        return self.jsonl_dir / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    # ---- Sync write (runs in thread) ----

    def write_sync(self, event: AuditEvent) -> None:
        """Append to the daily JSONL file and insert into SQLite."""
        with open(self._get_jsonl_path(event.timestamp), "a", encoding="utf-8") as f:
            f.write(event.to_json_line() + "\n")

        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute(
                """INSERT OR IGNORE INTO audit_events
                   (id, timestamp, category, action, cooperative_id, user_id,
                    username, resource_type, resource_id, details, ip_address,
                    system_name)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(event.id),
                    event.timestamp.isoformat(),
                    event.category.value,
                    event.action,
                    event.cooperative_id,
                    event.user_id,
                    event.username,
                    event.resource_type,
                    event.resource_id,
                    json.dumps(event.details, default=str) if event.details else None,
                    event.ip_address,
                    event.system_name,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    # ---- Async / fire-and-forget ----

    async def write_async(self, event: AuditEvent) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write_sync, event)

    def fire_and_forget(self, event: AuditEvent) -> None:
        """Schedule the write without awaiting.  Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (scripts, shutdown): write inline
            try:
                self.write_sync(event)
            except Exception:
                logger.exception("Audit write failed (sync fallback)")
            return
        loop.create_task(self._safe_write(event))

    async def _safe_write(self, event: AuditEvent) -> None:
        try:
            await self.write_async(event)
        except Exception:
            logger.exception("Audit write failed for event %s", event.id)

    # ---- Retention ----

    def _expired(self, category: str, timestamp: str, now: datetime) -> bool:
        try:
            days = self.retention_days.get(AuditEventCategory(category))
            written = datetime.fromisoformat(timestamp)
        except (TypeError, ValueError):
            return False
        return days is not None and written < now - timedelta(days=days)

    def purge_expired(
        self,
        now: datetime | None = None,
        cooperative_id: str | None = None,
    ) -> dict[str, int]:
        """Drop events past their category's retention from both stores.

        With ``cooperative_id`` only that cooperative's events are considered.
        Malformed JSONL lines are kept.
        """
        now = now or datetime.now(timezone.utc)
        summary = {"sqlite_deleted": 0, "jsonl_lines_removed": 0}

        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            for category, days in self.retention_days.items():
                if days is None:
                    continue
                sql = "DELETE FROM audit_events WHERE category = ? AND timestamp < ?"
                params: list[Any] = [category.value, (now - timedelta(days=days)).isoformat()]
                if cooperative_id is not None:
                    sql += " AND cooperative_id = ?"
                    params.append(cooperative_id)
                summary["sqlite_deleted"] += conn.execute(sql, params).rowcount
            conn.commit()
        finally:
            conn.close()

        shortest = min((d for d in self.retention_days.values() if d is not None), default=0)
        cutoff_day = (now - timedelta(days=shortest)).strftime("%Y-%m-%d")
        for path in sorted(self.jsonl_dir.glob("*.jsonl")):
            if path.stem > cutoff_day:
                continue
            kept: list[str] = []
            removed = 0
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    kept.append(line)
                    continue
                if (
                    (cooperative_id is None or record.get("cooperative_id") == cooperative_id)
                    and self._expired(record.get("category", ""), record.get("timestamp", ""), now)
                ):
                    removed += 1
                else:
                    kept.append(line)
            if not removed:
                continue
            summary["jsonl_lines_removed"] += removed
            if kept:
                tmp = path.with_suffix(".tmp")
                tmp.write_text("\n".join(kept) + "\n", encoding="utf-8")
                tmp.replace(path)
            else:
                path.unlink()

        logger.info("Audit retention purge (cooperative=%s): %s", cooperative_id, summary)
        return summary
