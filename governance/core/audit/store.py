from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

from governance.core.audit.export import iter_csv as _iter_csv
from governance.core.audit.models import AuditAck, AuditAction, AuditEvent, AuditFilters, AuditStatistics, validate_metadata
from governance.core.clock import epoch_from_iso, iso_from_epoch


_COLUMNS = "id, ts, actor_id, action, resource_type, resource_id, occurred_at, metadata_json, metadata_version"


class AuditLogStore:
    """
    Append-only audit trail (SQLite).

    NOTES:
    - rows are never updated; the only removal path is a retention policy that
      targets the `audit_logs` category (archive, then delete)
    - `record()` never raises: a failed write is retried, then reported to the
      operational event log, and the caller continues
    """

    CATEGORY = "audit_logs"

    def __init__(
        self,
        *,
        path: str,
        event_logger: Any = None,
        logger: Any = None,
        retries: int = 2,
        retry_backoff_seconds: float = 0.05,
        busy_timeout_seconds: float = 5.0,
        time_fn=time.time,
        sleep_fn=time.sleep,
    ):
        self.path = str(path)
        self.event_logger = event_logger
        self.logger = logger or logging.getLogger("governance.audit")
        self.retries = max(0, int(retries))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self.busy_timeout_seconds = max(0.1, float(busy_timeout_seconds))
        self._time = time_fn
        self._sleep = sleep_fn
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._init()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init(self) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_events (
                  id TEXT PRIMARY KEY,
                  ts REAL NOT NULL,
                  actor_id TEXT,
                  action TEXT NOT NULL,
                  resource_type TEXT NOT NULL,
                  resource_id TEXT,
                  occurred_at TEXT NOT NULL,
                  metadata_json TEXT NOT NULL,
                  metadata_version INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_events_archive (
                  id TEXT PRIMARY KEY,
                  ts REAL NOT NULL,
                  actor_id TEXT,
                  action TEXT NOT NULL,
                  resource_type TEXT NOT NULL,
                  resource_id TEXT,
                  occurred_at TEXT NOT NULL,
                  metadata_json TEXT NOT NULL,
                  metadata_version INTEGER NOT NULL DEFAULT 1,
                  archived_at TEXT NOT NULL,
                  archive_reason TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_events(ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_events(actor_id, ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_events(action, ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_events(resource_type, resource_id, ts);")
            conn.commit()
        finally:
            conn.close()

    # ---- write path ----
    def record(self, event: AuditEvent) -> AuditAck:
        if not isinstance(event, AuditEvent):
            try:
                event = AuditEvent.model_validate(event)
            except Exception as e:  # noqa: BLE001
                return self._write_failed(None, f"invalid event: {str(e)[:200]}", attempts=0)
        try:
            validate_metadata(event.action, event.metadata)
            ts = epoch_from_iso(event.occurred_at)
        except ValueError as e:
            return self._write_failed(event, str(e)[:200], attempts=0)

        row = (
            event.id,
            ts,
            event.actor_id,
            event.action.value,
            event.resource_type,
            event.resource_id,
            event.occurred_at,
            json.dumps(event.metadata, ensure_ascii=False),
            int(event.metadata_version),
        )
        last_error = ""
        attempts = 0
        for attempt in range(self.retries + 1):
            attempts = attempt + 1
            try:
                conn = self._conn()
                try:
                    # Same id on retry: a write that landed before the error is not duplicated.
                    conn.execute(f"INSERT OR IGNORE INTO audit_events({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)", row)
                    conn.commit()
                finally:
                    conn.close()
                return AuditAck(ok=True, event_id=event.id, attempts=attempts)
            except sqlite3.Error as e:
                last_error = str(e)[:200]
                if attempt < self.retries and self.retry_backoff_seconds > 0:
                    self._sleep(self.retry_backoff_seconds * (2**attempt))
        return self._write_failed(event, last_error, attempts=attempts)

    def record_action(
        self,
        *,
        action: AuditAction,
        resource_type: str,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditAck:
        try:
            ev = AuditEvent(
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                metadata=dict(metadata or {}),
                occurred_at=iso_from_epoch(float(self._time()), millis=True),
            )
        except Exception as e:  # noqa: BLE001
            return self._write_failed(None, f"invalid event: {str(e)[:200]}", attempts=0)
        return self.record(ev)

    def _write_failed(self, event: Optional[AuditEvent], error: str, *, attempts: int) -> AuditAck:
        details = {
            "event_id": getattr(event, "id", None),
            "action": getattr(getattr(event, "action", None), "value", None),
            "resource_type": getattr(event, "resource_type", None),
            "error": error,
            "attempts": attempts,
        }
        self.logger.warning(f"Audit write failed ({details['action']}): {error}")
        if self.event_logger is not None:
            try:
                self.event_logger.log("audit", "audit.write_failed", details)
            except OSError:
                pass
        return AuditAck(ok=False, event_id=details["event_id"], error=error, attempts=attempts)

    # ---- read path ----
    @staticmethod
    def _where(filters: Optional[AuditFilters], since: Optional[float], until: Optional[float]) -> Tuple[str, List[Any]]:
        where: List[str] = []
        params: List[Any] = []
        f = filters or AuditFilters()
        if since is not None:
            where.append("ts >= ?")
            params.append(float(since))
        if until is not None:
            where.append("ts <= ?")
            params.append(float(until))
        if f.actor_id:
            where.append("actor_id = ?")
            params.append(str(f.actor_id))
        if f.action:
            where.append("action = ?")
            params.append(str(f.action))
        if f.resource_type:
            where.append("resource_type = ?")
            params.append(str(f.resource_type))
        if f.resource_id:
            where.append("resource_id = ?")
            params.append(str(f.resource_id))
        return ((" WHERE " + " AND ".join(where)) if where else ""), params

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            actor_id=row["actor_id"],
            action=AuditAction(str(row["action"])),
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            occurred_at=row["occurred_at"],
            metadata_version=int(row["metadata_version"] or 1),
        )

    def query(
        self,
        filters: Optional[AuditFilters] = None,
        *,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Newest first. Ties on timestamp fall back to insertion order (newest first)."""
        where, params = self._where(filters, since, until)
        sql = f"SELECT {_COLUMNS} FROM audit_events{where} ORDER BY ts DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        conn = self._conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [self._event_from_row(r) for r in rows]

    def iter_events(
        self,
        filters: Optional[AuditFilters] = None,
        *,
        since: Optional[float] = None,
        until: Optional[float] = None,
        batch_size: int = 500,
    ) -> Iterator[AuditEvent]:
        offset = 0
        size = max(1, int(batch_size))
        while True:
            batch = self.query(filters, since=since, until=until, limit=size, offset=offset)
            yield from batch
            if len(batch) < size:
                return
            offset += size

    def count(self, filters: Optional[AuditFilters] = None, *, since: Optional[float] = None, until: Optional[float] = None) -> int:
        where, params = self._where(filters, since, until)
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT COUNT(1) FROM audit_events{where}", params).fetchone()
        finally:
            conn.close()
        return int(row[0] if row else 0)

    def statistics(self, *, since: Optional[float] = None, until: Optional[float] = None) -> AuditStatistics:
        """Totals over a time range. Events without an actor do not count as users."""
        where, params = self._where(None, since, until)
        conn = self._conn()
        try:
            total, actors = conn.execute(f"SELECT COUNT(1), COUNT(DISTINCT actor_id) FROM audit_events{where}", params).fetchone()
            actions = conn.execute(f"SELECT action, COUNT(1) FROM audit_events{where} GROUP BY action ORDER BY action", params).fetchall()
            resources = conn.execute(
                f"SELECT resource_type, COUNT(1) FROM audit_events{where} GROUP BY resource_type ORDER BY resource_type", params
            ).fetchall()
        finally:
            conn.close()
        return AuditStatistics(
            total_events=int(total or 0),
            unique_actors=int(actors or 0),
            action_breakdown={str(a): int(n) for a, n in actions},
            resource_breakdown={str(r): int(n) for r, n in resources if r},
        )

    def get(self, event_id: str) -> Optional[AuditEvent]:
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT {_COLUMNS} FROM audit_events WHERE id=?", (str(event_id),)).fetchone()
        finally:
            conn.close()
        return self._event_from_row(row) if row else None

    # ---- retention target (audit_logs category) ----
    def retention_candidates(
        self,
        *,
        category: str,
        date_field: str,
        cutoff_iso: str,
        condition: Optional[Dict[str, Any]] = None,
        limit: int = 100,
        after: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[str]:
        if category != self.CATEGORY:
            raise ValueError(f"unsupported category: {category}")
        sql = "SELECT id FROM audit_events WHERE ts < ?"
        params: List[Any] = [epoch_from_iso(cutoff_iso)]
        if after is not None:
            sql += " AND id > ?"
            params.append(str(after))
        sql += " ORDER BY id ASC LIMIT ?"
        params.append(max(1, int(limit)))
        conn = self._conn()
        try:
            return [str(r[0]) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def count_records(
        self,
        *,
        category: str,
        date_field: Optional[str] = None,
        cutoff_iso: Optional[str] = None,
        condition: Optional[Dict[str, Any]] = None,
        action: Optional[str] = None,
    ) -> int:
        if category != self.CATEGORY:
            raise ValueError(f"unsupported category: {category}")
        if cutoff_iso is None:
            return self.count()
        return self.count(until=epoch_from_iso(cutoff_iso) - 1e-6)

    def apply_retention(self, *, category: str, record_id: str, action: str, now_iso: str) -> bool:
        """
        Archive (copy then delete) or purge one audit row.
        Returns False when the row is already gone (handled by an overlapping run).
        """
        if category != self.CATEGORY:
            raise ValueError(f"unsupported category: {category}")
        act = str(action)
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(f"SELECT {_COLUMNS} FROM audit_events WHERE id=?", (str(record_id),)).fetchone()
            if row is None:
                conn.rollback()
                return False
            if act == "archive":
                conn.execute(
                    f"INSERT OR IGNORE INTO audit_events_archive({_COLUMNS}, archived_at, archive_reason) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    tuple(row) + (str(now_iso), "retention_policy"),
                )
            elif act != "purge":
                conn.rollback()
                raise ValueError(f"unsupported action for audit logs: {act}")
            conn.execute("DELETE FROM audit_events WHERE id=?", (str(record_id),))
            conn.commit()
            return True
        finally:
            conn.close()

    def archived_count(self) -> int:
        conn = self._conn()
        try:
            row = conn.execute("SELECT COUNT(1) FROM audit_events_archive").fetchone()
        finally:
            conn.close()
        return int(row[0] if row else 0)

    def archive_older_than(self, *, cutoff_iso: str, now_iso: str, batch_size: int = 500) -> int:
        """Operator entry point: archive every row older than the cutoff. Returns rows moved."""
        moved = 0
        after: Optional[str] = None
        while True:
            ids = self.retention_candidates(category=self.CATEGORY, date_field="occurred_at", cutoff_iso=cutoff_iso, limit=batch_size, after=after)
            if not ids:
                return moved
            for rid in ids:
                if self.apply_retention(category=self.CATEGORY, record_id=rid, action="archive", now_iso=now_iso):
                    moved += 1
            after = ids[-1]

    # ---- export ----
    def iter_csv(self, filters: Optional[AuditFilters] = None, *, since: Optional[float] = None, until: Optional[float] = None) -> Iterator[bytes]:
        return _iter_csv(self.iter_events(filters, since=since, until=until))

    def export_csv(self, filters: Optional[AuditFilters] = None, *, since: Optional[float] = None, until: Optional[float] = None) -> bytes:
        return b"".join(self.iter_csv(filters, since=since, until=until))
