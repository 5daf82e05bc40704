"""SQLite-backed profit ledger for executions, closed positions and events."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .schemas import (
    ClosedPositionRecord,
    EventLogRecord,
    ExecutionKey,
    ExecutionResult,
    PositionHistoryEntry,
    PositionKind,
    RoutePath,
    TradeSide,
)

SCHEMA_VERSION = 1

CREATE_EXECUTION_TABLE = """
CREATE TABLE IF NOT EXISTS execution_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    opportunity_id TEXT NOT NULL,
    asset TEXT NOT NULL,
    side TEXT NOT NULL,
    success INTEGER NOT NULL,
    profit REAL NOT NULL,
    cost REAL NOT NULL,
    timestamp TEXT NOT NULL,
    error TEXT,
    error_kind TEXT,
    route TEXT,
    score REAL NOT NULL,
    latency_seconds REAL NOT NULL,
    fill_price REAL
);
"""

CREATE_CLOSED_POSITION_TABLE = """
CREATE TABLE IF NOT EXISTS closed_positions (
    position_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    asset TEXT NOT NULL,
    amount REAL NOT NULL,
    leverage REAL NOT NULL,
    entry_price REAL NOT NULL,
    exit_price REAL NOT NULL,
    reason TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    closed_at TEXT NOT NULL,
    net_pnl REAL NOT NULL,
    net_pnl_pct REAL NOT NULL,
    borrowing_cost REAL NOT NULL,
    accrued_yield REAL NOT NULL,
    protocol TEXT
);
"""

CREATE_POSITION_HISTORY_TABLE = """
CREATE TABLE IF NOT EXISTS position_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    position_id TEXT NOT NULL,
    action TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    details TEXT
);
"""

CREATE_EVENT_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS event_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    payload TEXT,
    correlation_id TEXT
);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

LedgerRecord = Union[ExecutionResult, ClosedPositionRecord, PositionHistoryEntry]


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


class SQLiteStorage:
    """Append-only ledger; satisfies the ``ProfitLedger`` protocol via :meth:`record`."""

    def __init__(self, database_path: Path) -> None:
        database_path = Path(database_path).resolve()
        if database_path.parent.exists() and not database_path.parent.is_dir():
            raise ValueError(f"Database path is not a directory: {database_path.parent}")
        self._database_path = database_path
        self._initialize()

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            con.execute(CREATE_EXECUTION_TABLE)
            con.execute(CREATE_CLOSED_POSITION_TABLE)
            con.execute(CREATE_POSITION_HISTORY_TABLE)
            con.execute(CREATE_EVENT_LOG_TABLE)
            if self._get_schema_version(con) != SCHEMA_VERSION:
                con.execute("DELETE FROM schema_migrations")
                con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (SCHEMA_VERSION,))
            con.commit()

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        if row is None:
            return 0
        return int(row[0])

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self._database_path)
        try:
            yield con
        finally:
            con.close()

    def record(self, record: LedgerRecord) -> None:
        if isinstance(record, ExecutionResult):
            self.record_execution_result(record)
        elif isinstance(record, ClosedPositionRecord):
            self.record_closed_position(record)
        elif isinstance(record, PositionHistoryEntry):
            self.record_position_history(record)
        else:
            raise TypeError(f"Unsupported ledger record: {type(record).__name__}")

    def record_execution_result(self, result: ExecutionResult) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO execution_results (
                    opportunity_id, asset, side, success, profit, cost, timestamp,
                    error, error_kind, route, score, latency_seconds, fill_price
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.opportunity_id,
                    result.key.asset,
                    result.key.type.value,
                    1 if result.success else 0,
                    result.profit,
                    result.cost,
                    result.timestamp.isoformat(),
                    result.error,
                    result.error_kind,
                    json.dumps(list(result.route.venues)) if result.route else None,
                    result.score,
                    result.latency_seconds,
                    result.fill_price,
                ),
            )
            con.commit()

    def list_execution_results(
        self, limit: int = 200, success: Optional[bool] = None
    ) -> List[ExecutionResult]:
        query = (
            "SELECT opportunity_id, asset, side, success, profit, cost, timestamp, error, error_kind, "
            "route, score, latency_seconds, fill_price FROM execution_results"
        )
        params: List[object] = []
        if success is not None:
            query += " WHERE success = ?"
            params.append(1 if success else 0)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        results: List[ExecutionResult] = []
        for row in rows:
            route = json.loads(row[9]) if row[9] else None
            results.append(
                ExecutionResult(
                    opportunity_id=row[0],
                    key=ExecutionKey(row[1], TradeSide(row[2])),
                    success=bool(row[3]),
                    profit=float(row[4]),
                    cost=float(row[5]),
                    timestamp=datetime.fromisoformat(row[6]),
                    error=row[7],
                    error_kind=row[8],
                    route=RoutePath(tuple(route)) if route else None,
                    score=float(row[10]),
                    latency_seconds=float(row[11]),
                    fill_price=row[12],
                )
            )
        return results

    def execution_totals(self) -> Dict[str, float]:
        with self._connect() as con:
            row = con.execute(
                """
                SELECT
                    COALESCE(SUM(success), 0),
                    COUNT(*) - COALESCE(SUM(success), 0),
                    COALESCE(SUM(CASE WHEN success = 1 THEN profit ELSE 0 END), 0),
                    COALESCE(SUM(cost), 0)
                FROM execution_results
                """
            ).fetchone()
        return {
            "successful": float(row[0]),
            "failed": float(row[1]),
            "total_profit": float(row[2]),
            "total_cost": float(row[3]),
        }

    def record_closed_position(self, record: ClosedPositionRecord) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT OR REPLACE INTO closed_positions (
                    position_id, kind, asset, amount, leverage, entry_price, exit_price, reason,
                    opened_at, closed_at, net_pnl, net_pnl_pct, borrowing_cost, accrued_yield, protocol
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.position_id,
                    record.kind.value,
                    record.asset,
                    record.amount,
                    record.leverage,
                    record.entry_price,
                    record.exit_price,
                    record.reason,
                    record.opened_at.isoformat(),
                    record.closed_at.isoformat(),
                    record.net_pnl,
                    record.net_pnl_pct,
                    record.borrowing_cost,
                    record.accrued_yield,
                    record.protocol,
                ),
            )
            con.commit()

    def list_closed_positions(
        self, limit: int = 200, asset: Optional[str] = None
    ) -> List[ClosedPositionRecord]:
        query = (
            "SELECT position_id, kind, asset, amount, leverage, entry_price, exit_price, reason, opened_at, "
            "closed_at, net_pnl, net_pnl_pct, borrowing_cost, accrued_yield, protocol FROM closed_positions"
        )
        params: List[object] = []
        if asset:
            query += " WHERE asset = ?"
            params.append(asset)
        query += " ORDER BY closed_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            ClosedPositionRecord(
                position_id=row[0],
                kind=PositionKind(row[1]),
                asset=row[2],
                amount=float(row[3]),
                leverage=float(row[4]),
                entry_price=float(row[5]),
                exit_price=float(row[6]),
                reason=row[7],
                opened_at=datetime.fromisoformat(row[8]),
                closed_at=datetime.fromisoformat(row[9]),
                net_pnl=float(row[10]),
                net_pnl_pct=float(row[11]),
                borrowing_cost=float(row[12]),
                accrued_yield=float(row[13]),
                protocol=row[14],
            )
            for row in rows
        ]

    def record_position_history(self, entry: PositionHistoryEntry) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO position_history (position_id, action, timestamp, details)
                VALUES (?, ?, ?, ?)
                """,
                (
                    entry.position_id,
                    entry.action,
                    entry.timestamp.isoformat(),
                    _dumps(entry.details) if entry.details else None,
                ),
            )
            con.commit()

    def list_position_history(
        self, position_id: Optional[str] = None, limit: int = 500
    ) -> List[PositionHistoryEntry]:
        query = "SELECT position_id, action, timestamp, details FROM position_history"
        params: List[object] = []
        if position_id:
            query += " WHERE position_id = ?"
            params.append(position_id)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            PositionHistoryEntry(
                position_id=row[0],
                action=row[1],
                timestamp=datetime.fromisoformat(row[2]),
                details=json.loads(row[3]) if row[3] else {},
            )
            for row in rows
        ]

    def record_event_log(self, event: EventLogRecord) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO event_logs (timestamp, event_type, severity, payload, correlation_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.timestamp.isoformat(),
                    event.event_type,
                    event.severity,
                    _dumps(event.payload),
                    event.correlation_id,
                ),
            )
            con.commit()

    def list_event_logs(
        self, limit: int = 200, event_type: Optional[str] = None
    ) -> List[EventLogRecord]:
        query = "SELECT timestamp, event_type, severity, payload, correlation_id FROM event_logs"
        params: List[object] = []
        if event_type:
            query += " WHERE event_type = ?"
            params.append(event_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [
            EventLogRecord(
                timestamp=datetime.fromisoformat(row[0]),
                event_type=row[1],
                severity=row[2],
                payload=json.loads(row[3]) if row[3] else {},
                correlation_id=row[4],
            )
            for row in rows
        ]


__all__ = ["LedgerRecord", "SQLiteStorage"]
