import json
from dataclasses import dataclass

import aiosqlite

from hourglass.process.executor import AttemptRecord
from hourglass.recovery.models import ErrorEvent

SCHEMA = """
CREATE TABLE IF NOT EXISTS error_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    kind TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    component TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    outcome TEXT,
    remediation TEXT,
    metadata TEXT NOT NULL,
    occurred_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_error_log_occurred ON error_log(occurred_at);

CREATE TABLE IF NOT EXISTS attempt_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT,
    attempt INTEGER NOT NULL,
    ok INTEGER NOT NULL,
    exit_code INTEGER,
    duration REAL NOT NULL,
    error TEXT,
    occurred_at REAL NOT NULL
);
"""


@dataclass
class DiagnosticEntry:
    session_id: str | None
    kind: str
    category: str
    severity: str
    message: str
    component: str
    attempt: int
    outcome: str | None
    remediation: str | None
    metadata: dict
    occurred_at: float


class DiagnosticsStore:
    """Exportable log of every recorded error and command attempt."""

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def save_error(self, event: ErrorEvent, session_id: str | None = None) -> None:
        data = event.to_dict()
        await self.conn.execute(
            "INSERT INTO error_log (session_id, kind, category, severity, message, component, attempt, "
            "outcome, remediation, metadata, occurred_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                data["kind"],
                data["category"],
                data["severity"],
                data["message"],
                data["component"],
                data["attempt"],
                data["outcome"],
                data["remediation"],
                json.dumps(data["metadata"], default=str),
                data["timestamp"],
            ),
        )
        await self.conn.commit()

    async def save_attempt(self, record: AttemptRecord, session_id: str | None = None) -> None:
        await self.conn.execute(
            "INSERT INTO attempt_log (session_id, attempt, ok, exit_code, duration, error, occurred_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                record.attempt,
                int(record.ok),
                record.exit_code,
                record.duration,
                record.error,
                record.timestamp,
            ),
        )
        await self.conn.commit()

    async def recent(self, limit: int = 20, category: str | None = None) -> list[DiagnosticEntry]:
        columns = (
            "session_id, kind, category, severity, message, component, attempt, outcome, remediation, "
            "metadata, occurred_at"
        )
        if category:
            rows = await self.conn.execute_fetchall(
                f"SELECT {columns} FROM error_log WHERE category = ? ORDER BY occurred_at DESC, id DESC LIMIT ?",
                (category, limit),
            )
        else:
            rows = await self.conn.execute_fetchall(
                f"SELECT {columns} FROM error_log ORDER BY occurred_at DESC, id DESC LIMIT ?",
                (limit,),
            )
        return [
            DiagnosticEntry(
                session_id=row["session_id"],
                kind=row["kind"],
                category=row["category"],
                severity=row["severity"],
                message=row["message"],
                component=row["component"],
                attempt=row["attempt"],
                outcome=row["outcome"],
                remediation=row["remediation"],
                metadata=json.loads(row["metadata"]),
                occurred_at=row["occurred_at"],
            )
            for row in rows
        ]

    async def attempt_stats(self) -> dict[str, int]:
        rows = await self.conn.execute_fetchall("SELECT ok, COUNT(*) AS n FROM attempt_log GROUP BY ok")
        counts = {bool(row["ok"]): row["n"] for row in rows}
        return {"succeeded": counts.get(True, 0), "failed": counts.get(False, 0)}
