"""
Audit trail for executed changes.

Every attempted change produces exactly one AuditLogEntry. Recording
never raises to the caller: a change that already ran against the server
must not be re-failed by a broken audit store.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from . import config
from .db import get_db, init_db
from .schema import AuditLogEntry, ChangeExecutionResult, PendingChange
from .transport import Transport
from ..util.logging import logger, redact_statements, sanitize_payload

STATS_WINDOW_DAYS = 30
TOP_ACTORS = 10

_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _format_ts(value: datetime) -> str:
    # Fixed width so string comparison orders correctly
    return value.strftime(_TS_FORMAT)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value).replace("T", " ")
    for fmt in (_TS_FORMAT, "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return datetime.fromisoformat(text)


def _load_json(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    data = json.loads(value)
    return data or None


@dataclass
class AuditLogFilters:
    actor: Optional[str] = None
    change_type: Optional[str] = None
    entity_type: Optional[str] = None
    success: Optional[bool] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


@dataclass
class AuditStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    by_actor: Dict[str, int] = field(default_factory=dict)
    by_change_type: Dict[str, int] = field(default_factory=dict)
    recent_by_day: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "by_actor": dict(self.by_actor),
            "by_change_type": dict(self.by_change_type),
            "recent_by_day": dict(self.recent_by_day),
        }


class SqliteAuditStore:
    """Local audit trail in a sqlite file (default backend)."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or config.DB_PATH
        init_db(self.db_path)

    def append(self, entry: AuditLogEntry):
        with get_db(self.db_path) as conn:
            conn.execute(
                '''
                INSERT INTO audit_log (id, timestamp, partition_month, actor, change_type, entity_type,
                                       entity_name, description, statements, before_state, after_state,
                                       success, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    entry.id,
                    _format_ts(entry.timestamp),
                    entry.timestamp.year * 100 + entry.timestamp.month,
                    entry.actor,
                    entry.change_type,
                    entry.entity_type,
                    entry.entity_name,
                    entry.description,
                    json.dumps(entry.statements),
                    json.dumps(entry.before_state) if entry.before_state is not None else None,
                    json.dumps(entry.after_state) if entry.after_state is not None else None,
                    1 if entry.success else 0,
                    entry.error_message or "",
                )
            )
            conn.commit()

    def query(self, filters: AuditLogFilters) -> List[AuditLogEntry]:
        clauses = ["1=1"]
        params: List[Any] = []
        if filters.actor:
            clauses.append("actor = ?")
            params.append(filters.actor)
        if filters.change_type:
            clauses.append("change_type = ?")
            params.append(filters.change_type)
        if filters.entity_type:
            clauses.append("entity_type = ?")
            params.append(filters.entity_type)
        if filters.success is not None:
            clauses.append("success = ?")
            params.append(1 if filters.success else 0)
        if filters.start_time:
            clauses.append("timestamp >= ?")
            params.append(_format_ts(filters.start_time))
        if filters.end_time:
            clauses.append("timestamp <= ?")
            params.append(_format_ts(filters.end_time))
        params.extend([filters.limit, filters.offset])

        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f'''
                SELECT * FROM audit_log
                WHERE {" AND ".join(clauses)}
                ORDER BY timestamp DESC
                LIMIT ? OFFSET ?
                ''',
                params
            ).fetchall()

        return [
            AuditLogEntry(
                id=row["id"],
                timestamp=_parse_ts(row["timestamp"]),
                actor=row["actor"],
                change_type=row["change_type"],
                entity_type=row["entity_type"],
                entity_name=row["entity_name"],
                description=row["description"] or "",
                statements=json.loads(row["statements"] or "[]"),
                before_state=_load_json(row["before_state"]),
                after_state=_load_json(row["after_state"]),
                success=bool(row["success"]),
                error_message=row["error_message"] or "",
            )
            for row in rows
        ]

    def stats(self, now: datetime = None) -> AuditStats:
        since = _format_ts((now or datetime.now()) - timedelta(days=STATS_WINDOW_DAYS))
        with get_db(self.db_path) as conn:
            totals = conn.execute(
                "SELECT count(*), coalesce(sum(success), 0) FROM audit_log"
            ).fetchone()
            by_day = conn.execute(
                '''
                SELECT substr(timestamp, 1, 10) AS day, count(*) AS n FROM audit_log
                WHERE timestamp >= ? GROUP BY day ORDER BY day DESC LIMIT ?
                ''',
                (since, STATS_WINDOW_DAYS)
            ).fetchall()
            by_actor = conn.execute(
                '''
                SELECT actor, count(*) AS n FROM audit_log
                WHERE timestamp >= ? GROUP BY actor ORDER BY n DESC, actor LIMIT ?
                ''',
                (since, TOP_ACTORS)
            ).fetchall()
            by_type = conn.execute(
                '''
                SELECT change_type, count(*) AS n FROM audit_log
                WHERE timestamp >= ? GROUP BY change_type ORDER BY n DESC, change_type
                ''',
                (since,)
            ).fetchall()

        total, succeeded = totals[0], totals[1]
        return AuditStats(
            total=total,
            succeeded=succeeded,
            failed=total - succeeded,
            by_actor={row["actor"]: row["n"] for row in by_actor},
            by_change_type={row["change_type"]: row["n"] for row in by_type},
            recent_by_day={row["day"]: row["n"] for row in by_day},
        )

    def purge_expired(self, retention_days: int, now: datetime = None) -> int:
        """Delete entries older than the retention window."""
        cutoff = _format_ts((now or datetime.now()) - timedelta(days=retention_days))
        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM audit_log WHERE timestamp < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount


class ClickHouseAuditStore:
    """Audit trail in a MergeTree table on the managed server itself."""

    def __init__(self, transport: Transport, table: str = None, retention_days: int = None):
        self.transport = transport
        self.table = table or config.AUDIT_TABLE
        self.retention_days = retention_days or config.get_retention_days()
        self._initialized = False

    def create_table_sql(self) -> str:
        return f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
              id String,
              timestamp DateTime64(3),
              username String,
              operation String,
              entity_type String,
              entity_name String,
              description String,
              sql_statements Array(String),
              before_state String,
              after_state String,
              success UInt8,
              error_message String
            )
            ENGINE = MergeTree()
            ORDER BY (timestamp, username)
            PARTITION BY toYYYYMM(timestamp)
            TTL toDateTime(timestamp) + INTERVAL {int(self.retention_days)} DAY
            SETTINGS index_granularity = 8192
        """

    def ensure_table(self):
        if not self._initialized:
            self.transport.execute(self.create_table_sql())
            self._initialized = True

    def append(self, entry: AuditLogEntry):
        self.ensure_table()
        row = {
            "id": entry.id,
            "timestamp": entry.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            "username": entry.actor,
            "operation": entry.change_type,
            "entity_type": entry.entity_type,
            "entity_name": entry.entity_name,
            "description": entry.description,
            "sql_statements": list(entry.statements),
            "before_state": json.dumps(entry.before_state or {}),
            "after_state": json.dumps(entry.after_state or {}),
            "success": 1 if entry.success else 0,
            "error_message": entry.error_message or "",
        }
        self.transport.execute(f"INSERT INTO {self.table} FORMAT JSONEachRow {json.dumps(row)}")

    def query(self, filters: AuditLogFilters) -> List[AuditLogEntry]:
        self.ensure_table()
        clauses = ["1=1"]
        params: Dict[str, Any] = {}
        if filters.actor:
            clauses.append("username = {actor:String}")
            params["actor"] = filters.actor
        if filters.change_type:
            clauses.append("operation = {change_type:String}")
            params["change_type"] = filters.change_type
        if filters.entity_type:
            clauses.append("entity_type = {entity_type:String}")
            params["entity_type"] = filters.entity_type
        if filters.success is not None:
            clauses.append("success = {success:UInt8}")
            params["success"] = 1 if filters.success else 0
        if filters.start_time:
            clauses.append("timestamp >= {start_time:DateTime64(3)}")
            params["start_time"] = filters.start_time.strftime("%Y-%m-%d %H:%M:%S")
        if filters.end_time:
            clauses.append("timestamp <= {end_time:DateTime64(3)}")
            params["end_time"] = filters.end_time.strftime("%Y-%m-%d %H:%M:%S")

        rows = self.transport.query(
            f"SELECT * FROM {self.table} WHERE {' AND '.join(clauses)} "
            f"ORDER BY timestamp DESC LIMIT {int(filters.limit)} OFFSET {int(filters.offset)}",
            params
        )
        return [
            AuditLogEntry(
                id=row["id"],
                timestamp=_parse_ts(row["timestamp"]),
                actor=row["username"],
                change_type=row["operation"],
                entity_type=row["entity_type"],
                entity_name=row["entity_name"],
                description=row.get("description") or "",
                statements=list(row.get("sql_statements") or []),
                before_state=_load_json(row.get("before_state")),
                after_state=_load_json(row.get("after_state")),
                success=int(row["success"]) == 1,
                error_message=row.get("error_message") or "",
            )
            for row in rows
        ]

    def stats(self) -> AuditStats:
        self.ensure_table()
        window = f"timestamp >= now() - INTERVAL {STATS_WINDOW_DAYS} DAY"
        totals = self.transport.query(
            f"SELECT count() AS total, countIf(success = 1) AS succeeded, countIf(success = 0) AS failed "
            f"FROM {self.table}"
        )
        by_day = self.transport.query(
            f"SELECT toString(toDate(timestamp)) AS day, count() AS n FROM {self.table} "
            f"WHERE {window} GROUP BY day ORDER BY day DESC LIMIT {STATS_WINDOW_DAYS}"
        )
        by_actor = self.transport.query(
            f"SELECT username, count() AS n FROM {self.table} "
            f"WHERE {window} GROUP BY username ORDER BY n DESC LIMIT {TOP_ACTORS}"
        )
        by_type = self.transport.query(
            f"SELECT operation, count() AS n FROM {self.table} "
            f"WHERE {window} GROUP BY operation ORDER BY n DESC"
        )

        row = totals[0] if totals else {}
        return AuditStats(
            total=int(row.get("total", 0)),
            succeeded=int(row.get("succeeded", 0)),
            failed=int(row.get("failed", 0)),
            by_actor={r["username"]: int(r["n"]) for r in by_actor},
            by_change_type={r["operation"]: int(r["n"]) for r in by_type},
            recent_by_day={r["day"]: int(r["n"]) for r in by_day},
        )

    def purge_expired(self, retention_days: int) -> int:
        """Delete rows past retention ahead of the TTL merge."""
        self.ensure_table()
        condition = f"timestamp < now() - INTERVAL {int(retention_days)} DAY"
        rows = self.transport.query(f"SELECT count() AS n FROM {self.table} WHERE {condition}")
        expired = int(rows[0]["n"]) if rows else 0
        if expired:
            self.transport.execute(f"ALTER TABLE {self.table} DELETE WHERE {condition}")
        return expired


class AuditRecorder:
    """Builds audit entries from execution results and persists them."""

    def __init__(self, store, redact_secrets: bool = None):
        self.store = store
        self.redact_secrets = config.AUDIT_REDACT_SECRETS if redact_secrets is None else redact_secrets

    def build_entry(self, change: PendingChange, result: ChangeExecutionResult, actor: str) -> AuditLogEntry:
        statements = list(change.statements)
        before_state, after_state = change.before_state, change.after_state
        if self.redact_secrets:
            statements = redact_statements(statements)
            before_state = sanitize_payload(before_state) if before_state else before_state
            after_state = sanitize_payload(after_state) if after_state else after_state

        error_message = ""
        if not result.success:
            error_message = result.error or "Unknown error"

        return AuditLogEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(),
            actor=actor,
            change_type=change.change_type.value,
            entity_type=change.entity_type.value,
            entity_name=change.entity_name,
            description=change.description,
            statements=statements,
            before_state=before_state,
            after_state=after_state,
            success=result.success,
            error_message=error_message,
        )

    def record(self, change: PendingChange, result: ChangeExecutionResult, actor: str) -> Optional[AuditLogEntry]:
        """Persist one entry; failures are logged and swallowed."""
        try:
            entry = self.build_entry(change, result, actor)
            self.store.append(entry)
        except Exception as e:
            logger.log_audit_failure(change.id, e)
            return None

        logger.log_audit_recorded(entry.id, change.id, entry.success)
        return entry

    def query(self, filters: AuditLogFilters = None) -> List[AuditLogEntry]:
        return self.store.query(filters or AuditLogFilters())

    def stats(self) -> AuditStats:
        return self.store.stats()

    def purge_expired(self, retention_days: int = None) -> int:
        retention_days = retention_days or config.get_retention_days()
        removed = self.store.purge_expired(retention_days)
        logger.log_audit_purge(removed, retention_days)
        return removed


def create_audit_store(transport: Transport = None):
    """Store for the configured AUDIT_BACKEND."""
    if config.get_audit_backend() == "clickhouse":
        if transport is None:
            raise ValueError("clickhouse audit backend requires a transport")
        return ClickHouseAuditStore(transport)
    return SqliteAuditStore()
