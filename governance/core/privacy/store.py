from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from governance.core.clock import iso_from_epoch
from governance.core.privacy.categories import (
    ANON,
    CATEGORY_BY_NAME,
    COMMUNICATION_PREFERENCES,
    NOW,
    CategorySpec,
    get_category,
)
from governance.core.privacy.models import (
    Classification,
    CommunicationCategory,
    DataSubjectRequest,
    RequestKind,
    RequestStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS members (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL UNIQUE,
      email TEXT,
      first_name TEXT,
      last_name TEXT,
      phone TEXT,
      address TEXT,
      role TEXT,
      membership_type TEXT,
      membership_status TEXT,
      membership_expires_at TEXT,
      joined_at TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      anonymized_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS privacy_settings (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL UNIQUE,
      classification TEXT NOT NULL DEFAULT 'standard',
      profile_visibility TEXT NOT NULL DEFAULT 'members',
      show_email INTEGER NOT NULL DEFAULT 0,
      show_phone INTEGER NOT NULL DEFAULT 0,
      settings_json TEXT NOT NULL DEFAULT '{}',
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS consent_records (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      consent_type TEXT NOT NULL,
      granted INTEGER NOT NULL,
      ip_address TEXT,
      user_agent TEXT,
      recorded_at TEXT NOT NULL,
      anonymized_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_rsvps (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      event_id TEXT NOT NULL,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS volunteer_signups (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      event_id TEXT NOT NULL,
      role TEXT,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL,
      amount_cents INTEGER NOT NULL,
      currency TEXT NOT NULL DEFAULT 'usd',
      status TEXT NOT NULL,
      processor_customer_id TEXT,
      processor_payment_id TEXT,
      created_at TEXT NOT NULL,
      anonymized_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS child_accounts (
      id TEXT PRIMARY KEY,
      parent_id TEXT NOT NULL,
      first_name TEXT,
      birth_date TEXT NOT NULL,
      parental_consent_given INTEGER NOT NULL DEFAULT 0,
      classification TEXT NOT NULL DEFAULT 'minor',
      transitioned_at TEXT,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS communication_preferences (
      id TEXT PRIMARY KEY,
      user_id TEXT NOT NULL UNIQUE,
      email_enabled INTEGER NOT NULL DEFAULT 1,
      announcements_enabled INTEGER NOT NULL DEFAULT 1,
      events_enabled INTEGER NOT NULL DEFAULT 1,
      payments_enabled INTEGER NOT NULL DEFAULT 1,
      volunteer_enabled INTEGER NOT NULL DEFAULT 1,
      meetings_enabled INTEGER NOT NULL DEFAULT 1,
      unsubscribed_at TEXT,
      unsubscribe_reason TEXT,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS data_subject_requests (
      id TEXT PRIMARY KEY,
      subject_id TEXT NOT NULL,
      kind TEXT NOT NULL,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL,
      expires_at TEXT,
      completed_at TEXT,
      claimed_at TEXT,
      attempts INTEGER NOT NULL DEFAULT 0,
      error TEXT NOT NULL DEFAULT '',
      metadata_json TEXT NOT NULL DEFAULT '{}',
      payload_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS archived_records (
      category TEXT NOT NULL,
      record_id TEXT NOT NULL,
      record_json TEXT NOT NULL,
      archived_at TEXT NOT NULL,
      archive_reason TEXT NOT NULL,
      PRIMARY KEY (category, record_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_consent_user ON consent_records(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_rsvp_user ON event_rsvps(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_volunteer_user ON volunteer_signups(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_child_parent ON child_accounts(parent_id);",
    "CREATE INDEX IF NOT EXISTS idx_child_class ON child_accounts(classification, birth_date);",
    "CREATE INDEX IF NOT EXISTS idx_dsr_subject ON data_subject_requests(subject_id, kind, created_at);",
    # At most one in-flight request per subject and kind; enforced by the store, not by callers.
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_dsr_inflight ON data_subject_requests(subject_id, kind) WHERE status IN ('pending', 'processing');",
)

_CATEGORY_FLAGS = tuple(f"{c.value}_enabled" for c in CommunicationCategory)


def _new_id() -> str:
    return uuid.uuid4().hex


class GovernedStore:
    """
    Governed subject data (SQLite).

    NOTES:
    - identifiers used in SQL (tables, columns) only ever come from the
      declarations in privacy.categories, never from request input
    - every mutation is a single statement or a single transaction; nothing
      holds a Python lock across store access
    """

    RETENTION_CATEGORIES = tuple(sorted(CATEGORY_BY_NAME.keys()))

    def __init__(self, *, db_path: str, logger: Any = None, busy_timeout_seconds: float = 5.0, time_fn=time.time):
        self.db_path = str(db_path)
        self.logger = logger or logging.getLogger("governance.store")
        self.busy_timeout_seconds = max(0.1, float(busy_timeout_seconds))
        self._time = time_fn
        self._init_lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()

    # ---- sqlite helpers ----
    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self._init_lock:
            conn = self._conn()
            try:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
                cols = {r["name"] for r in conn.execute("PRAGMA table_info(data_subject_requests)").fetchall()}
                if "claimed_at" not in cols:
                    conn.execute("ALTER TABLE data_subject_requests ADD COLUMN claimed_at TEXT")
                conn.commit()
            finally:
                conn.close()

    def _now_iso(self) -> str:
        return iso_from_epoch(float(self._time()))

    def _insert(self, table: str, values: Dict[str, Any]) -> None:
        cols = ", ".join(values.keys())
        marks = ", ".join("?" for _ in values)
        conn = self._conn()
        try:
            conn.execute(f"INSERT INTO {table}({cols}) VALUES ({marks})", tuple(values.values()))
            conn.commit()
        finally:
            conn.close()

    # ---- seeding / governed writes ----
    def upsert_member(
        self,
        *,
        user_id: str,
        email: str,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        address: Optional[str] = None,
        role: str = "member",
        membership_type: str = "individual",
        membership_status: str = "active",
        membership_expires_at: Optional[str] = None,
    ) -> str:
        now = self._now_iso()
        rid = _new_id()
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO members(id, user_id, email, first_name, last_name, phone, address, role, membership_type,
                                    membership_status, membership_expires_at, joined_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  email=excluded.email, first_name=excluded.first_name, last_name=excluded.last_name,
                  phone=excluded.phone, address=excluded.address, role=excluded.role,
                  membership_type=excluded.membership_type, membership_status=excluded.membership_status,
                  membership_expires_at=excluded.membership_expires_at, updated_at=excluded.updated_at
                """,
                (rid, user_id, email, first_name, last_name, phone, address, role, membership_type, membership_status, membership_expires_at, now, now, now),
            )
            conn.commit()
            row = conn.execute("SELECT id FROM members WHERE user_id=?", (user_id,)).fetchone()
        finally:
            conn.close()
        return str(row["id"]) if row else rid

    def upsert_privacy_settings(
        self,
        *,
        user_id: str,
        classification: Classification = Classification.STANDARD,
        profile_visibility: str = "members",
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = self._now_iso()
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO privacy_settings(id, user_id, classification, profile_visibility, settings_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  classification=excluded.classification, profile_visibility=excluded.profile_visibility,
                  settings_json=excluded.settings_json, updated_at=excluded.updated_at
                """,
                (_new_id(), user_id, Classification(classification).value, profile_visibility, json.dumps(dict(settings or {})), now),
            )
            conn.commit()
        finally:
            conn.close()

    def add_consent(self, *, user_id: str, consent_type: str, granted: bool, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> str:
        rid = _new_id()
        self._insert(
            "consent_records",
            {"id": rid, "user_id": user_id, "consent_type": consent_type, "granted": int(bool(granted)), "ip_address": ip_address, "user_agent": user_agent, "recorded_at": self._now_iso()},
        )
        return rid

    def latest_consents(self, user_id: str, consent_types: Iterable[str]) -> Dict[str, bool]:
        """Most recent decision per consent type; types never recorded are absent."""
        types = sorted({str(t) for t in consent_types})
        if not types:
            return {}
        marks = ", ".join("?" for _ in types)
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT consent_type, granted FROM consent_records WHERE user_id=? AND consent_type IN ({marks}) ORDER BY recorded_at DESC, rowid DESC",
                (str(user_id), *types),
            ).fetchall()
        finally:
            conn.close()
        out: Dict[str, bool] = {}
        for r in rows:
            out.setdefault(str(r["consent_type"]), bool(r["granted"]))
        return out

    def add_rsvp(self, *, user_id: str, event_id: str, status: str = "attending", created_at: Optional[str] = None) -> str:
        rid = _new_id()
        self._insert("event_rsvps", {"id": rid, "user_id": user_id, "event_id": event_id, "status": status, "created_at": created_at or self._now_iso()})
        return rid

    def add_volunteer_signup(self, *, user_id: str, event_id: str, role: str = "", status: str = "confirmed", created_at: Optional[str] = None) -> str:
        rid = _new_id()
        self._insert("volunteer_signups", {"id": rid, "user_id": user_id, "event_id": event_id, "role": role, "status": status, "created_at": created_at or self._now_iso()})
        return rid

    def add_payment(
        self,
        *,
        user_id: str,
        amount_cents: int,
        status: str = "succeeded",
        currency: str = "usd",
        processor_customer_id: Optional[str] = None,
        processor_payment_id: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> str:
        rid = _new_id()
        self._insert(
            "payments",
            {
                "id": rid,
                "user_id": user_id,
                "amount_cents": int(amount_cents),
                "currency": currency,
                "status": status,
                "processor_customer_id": processor_customer_id,
                "processor_payment_id": processor_payment_id,
                "created_at": created_at or self._now_iso(),
            },
        )
        return rid

    def add_child_account(self, *, parent_id: str, birth_date: str, first_name: str = "", parental_consent_given: bool = True, child_id: Optional[str] = None) -> str:
        rid = str(child_id or _new_id())
        self._insert(
            "child_accounts",
            {
                "id": rid,
                "parent_id": parent_id,
                "first_name": first_name,
                "birth_date": birth_date,
                "parental_consent_given": int(bool(parental_consent_given)),
                "classification": Classification.MINOR.value,
                "created_at": self._now_iso(),
            },
        )
        return rid

    def upsert_communication_preferences(self, *, user_id: str, email_enabled: bool = True, **categories: bool) -> None:
        flags = {f"{CommunicationCategory(k).value}_enabled": int(bool(v)) for k, v in categories.items()}
        values = {c: flags.get(c, 1) for c in _CATEGORY_FLAGS}
        now = self._now_iso()
        cols = ", ".join(values.keys())
        updates = ", ".join(f"{c}=excluded.{c}" for c in values.keys())
        conn = self._conn()
        try:
            conn.execute(
                f"""
                INSERT INTO communication_preferences(id, user_id, email_enabled, {cols}, unsubscribed_at, updated_at)
                VALUES (?, ?, ?, {", ".join("?" for _ in values)}, NULL, ?)
                ON CONFLICT(user_id) DO UPDATE SET email_enabled=excluded.email_enabled, {updates},
                  unsubscribed_at=NULL, unsubscribe_reason=NULL, updated_at=excluded.updated_at
                """,
                (_new_id(), user_id, int(bool(email_enabled)), *values.values(), now),
            )
            conn.commit()
        finally:
            conn.close()

    # ---- generic subject reads ----
    def rows_for_subject(self, category: str, subject_id: str, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        spec = get_category(category)
        sql = f"SELECT * FROM {spec.name} WHERE {spec.subject_column}=?"
        params: List[Any] = [str(subject_id)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        conn = self._conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [{k: r[k] for k in r.keys() if k not in spec.export_exclude} for r in rows]

    def count_for_subject(self, category: str, subject_id: str) -> int:
        spec = get_category(category)
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT COUNT(1) FROM {spec.name} WHERE {spec.subject_column}=?", (str(subject_id),)).fetchone()
        finally:
            conn.close()
        return int(row[0] if row else 0)

    def get_record(self, category: str, record_id: str) -> Optional[Dict[str, Any]]:
        spec = get_category(category)
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT * FROM {spec.name} WHERE id=?", (str(record_id),)).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    @staticmethod
    def _render_values(template: Dict[str, Any], *, anon: str, now: str, deleted_domain: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for col, val in template.items():
            if isinstance(val, str):
                val = val.replace(ANON, anon).replace(NOW, now).replace("{deleted_domain}", deleted_domain)
            out[col] = val
        return out

    # ---- erasure ----
    def erase_subject(self, category: str, subject_id: str, *, anonymized_id: str, deleted_domain: str = "deleted.local") -> int:
        """Apply the category's erasure rule to every row of the subject. Returns rows affected."""
        spec = get_category(category)
        conn = self._conn()
        try:
            if spec.erasure == "delete":
                cur = conn.execute(f"DELETE FROM {spec.name} WHERE {spec.subject_column}=?", (str(subject_id),))
            else:
                vals = self._render_values(spec.erase_values, anon=anonymized_id, now=self._now_iso(), deleted_domain=deleted_domain)
                sets = ", ".join(f"{c}=?" for c in vals.keys())
                cur = conn.execute(f"UPDATE {spec.name} SET {sets} WHERE {spec.subject_column}=?", (*vals.values(), str(subject_id)))
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    # ---- retention target ----
    def _retention_where(self, spec: CategorySpec, *, date_field: str, condition: Optional[Dict[str, Any]], action: Optional[str]) -> Tuple[str, List[Any]]:
        if not spec.allows_column(date_field) or date_field not in spec.date_fields:
            raise ValueError(f"{spec.name}: unsupported date field {date_field}")
        where = [f"{date_field} IS NOT NULL"]
        params: List[Any] = []
        for col, val in (condition or {}).items():
            if not spec.allows_column(str(col)):
                raise ValueError(f"{spec.name}: unsupported condition column {col}")
            where.append(f"{col} = ?")
            params.append(int(val) if isinstance(val, bool) else val)
        if action == "anonymize":
            if not spec.anonymized_column:
                raise ValueError(f"{spec.name}: category cannot be anonymized")
            where.append(f"{spec.anonymized_column} IS NULL")
        return " AND ".join(where), params

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
        spec = get_category(category)
        where, params = self._retention_where(spec, date_field=date_field, condition=condition, action=action)
        sql = f"SELECT id FROM {spec.name} WHERE {where} AND {date_field} < ?"
        params.append(str(cutoff_iso))
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
        spec = get_category(category)
        sql = f"SELECT COUNT(1) FROM {spec.name}"
        params: List[Any] = []
        if date_field is not None and cutoff_iso is not None:
            where, params = self._retention_where(spec, date_field=date_field, condition=condition, action=action)
            sql += f" WHERE {where} AND {date_field} < ?"
            params.append(str(cutoff_iso))
        conn = self._conn()
        try:
            row = conn.execute(sql, params).fetchone()
        finally:
            conn.close()
        return int(row[0] if row else 0)

    def apply_retention(self, *, category: str, record_id: str, action: str, now_iso: str) -> bool:
        """
        Apply one retention action to one record.
        Returns False when another actor already handled it (row gone or already anonymized).
        """
        spec = get_category(category)
        act = str(action)
        rid = str(record_id)
        conn = self._conn()
        try:
            if act == "purge":
                cur = conn.execute(f"DELETE FROM {spec.name} WHERE id=?", (rid,))
                conn.commit()
                return bool(cur.rowcount)
            if act == "anonymize":
                if not spec.anonymized_column or not spec.retention_values:
                    raise ValueError(f"{spec.name}: category cannot be anonymized")
                anon = f"ANON_{int(float(self._time()))}_{uuid.uuid4().hex[:9]}"
                vals = self._render_values(spec.retention_values, anon=anon, now=str(now_iso), deleted_domain="anonymized.local")
                sets = ", ".join(f"{c}=?" for c in vals.keys())
                cur = conn.execute(
                    f"UPDATE {spec.name} SET {sets} WHERE id=? AND {spec.anonymized_column} IS NULL",
                    (*vals.values(), rid),
                )
                conn.commit()
                return bool(cur.rowcount)
            if act == "archive":
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(f"SELECT * FROM {spec.name} WHERE id=?", (rid,)).fetchone()
                if row is None:
                    conn.rollback()
                    return False
                conn.execute(
                    "INSERT OR IGNORE INTO archived_records(category, record_id, record_json, archived_at, archive_reason) VALUES (?, ?, ?, ?, ?)",
                    (spec.name, rid, json.dumps(dict(row), ensure_ascii=False), str(now_iso), "retention_policy"),
                )
                conn.execute(f"DELETE FROM {spec.name} WHERE id=?", (rid,))
                conn.commit()
                return True
            raise ValueError(f"unsupported retention action: {act}")
        finally:
            conn.close()

    def archived(self, category: str) -> List[Dict[str, Any]]:
        conn = self._conn()
        try:
            rows = conn.execute("SELECT * FROM archived_records WHERE category=? ORDER BY archived_at, record_id", (str(category),)).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    # ---- age-out ----
    def list_minor_children(self, *, born_on_or_before: str, require_consent: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM child_accounts WHERE classification=? AND birth_date <= ?"
        params: List[Any] = [Classification.MINOR.value, str(born_on_or_before)]
        if require_consent:
            sql += " AND parental_consent_given=1"
        sql += " ORDER BY birth_date ASC, id ASC"
        conn = self._conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def transition_child_to_standard(self, *, child_id: str, now_iso: str) -> bool:
        """
        minor -> standard, once. The conditional update is the idempotence guard:
        an overlapping run sees rowcount 0 and reports "already handled".
        """
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                "UPDATE child_accounts SET classification=?, transitioned_at=? WHERE id=? AND classification=?",
                (Classification.STANDARD.value, str(now_iso), str(child_id), Classification.MINOR.value),
            )
            if not cur.rowcount:
                conn.rollback()
                return False
            conn.execute(
                """
                INSERT INTO privacy_settings(id, user_id, classification, profile_visibility, settings_json, updated_at)
                VALUES (?, ?, ?, 'members', '{}', ?)
                ON CONFLICT(user_id) DO UPDATE SET classification=excluded.classification, updated_at=excluded.updated_at
                """,
                (_new_id(), str(child_id), Classification.STANDARD.value, str(now_iso)),
            )
            conn.commit()
            return True
        finally:
            conn.close()

    # ---- communication preferences ----
    def get_communication_preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        conn = self._conn()
        try:
            row = conn.execute(f"SELECT * FROM {COMMUNICATION_PREFERENCES.name} WHERE user_id=?", (str(user_id),)).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def disable_communication(self, *, user_id: str, category: Optional[CommunicationCategory], now_iso: str, reason: str = "") -> Optional[bool]:
        """
        Returns None if the subject has no preferences row, True if state changed,
        False if it was already applied (no write, so repeated calls leave identical state).
        """
        conn = self._conn()
        try:
            if category is None:
                enabled_any = " OR ".join(["email_enabled=1"] + [f"{c}=1" for c in _CATEGORY_FLAGS])
                sets = ", ".join(["email_enabled=0"] + [f"{c}=0" for c in _CATEGORY_FLAGS])
                cur = conn.execute(
                    f"UPDATE communication_preferences SET {sets}, unsubscribed_at=COALESCE(unsubscribed_at, ?), unsubscribe_reason=?, updated_at=? "
                    f"WHERE user_id=? AND ({enabled_any})",
                    (str(now_iso), reason, str(now_iso), str(user_id)),
                )
            else:
                col = f"{CommunicationCategory(category).value}_enabled"
                cur = conn.execute(
                    f"UPDATE communication_preferences SET {col}=0, updated_at=? WHERE user_id=? AND {col}=1",
                    (str(now_iso), str(user_id)),
                )
            conn.commit()
            if cur.rowcount:
                return True
            exists = conn.execute("SELECT 1 FROM communication_preferences WHERE user_id=?", (str(user_id),)).fetchone()
            return False if exists else None
        finally:
            conn.close()

    # ---- data subject requests ----
    @staticmethod
    def _request_from_row(row: sqlite3.Row) -> DataSubjectRequest:
        payload = json.loads(row["payload_json"]) if row["payload_json"] else None
        return DataSubjectRequest(
            id=row["id"],
            subject_id=row["subject_id"],
            kind=RequestKind(str(row["kind"])),
            status=RequestStatus(str(row["status"])),
            created_at=str(row["created_at"]),
            expires_at=row["expires_at"],
            completed_at=row["completed_at"],
            attempts=int(row["attempts"] or 0),
            error=str(row["error"] or ""),
            metadata=json.loads(row["metadata_json"] or "{}"),
            result_payload=payload,
        )

    def create_request(self, req: DataSubjectRequest) -> Tuple[DataSubjectRequest, bool]:
        """
        Insert a pending request. If one is already in flight for the same
        subject and kind, return that one instead (created=False).
        """
        conn = self._conn()
        try:
            try:
                conn.execute(
                    "INSERT INTO data_subject_requests(id, subject_id, kind, status, created_at, attempts, error, metadata_json) VALUES (?, ?, ?, ?, ?, 0, '', ?)",
                    (req.id, req.subject_id, req.kind.value, RequestStatus.PENDING.value, req.created_at, json.dumps(dict(req.metadata or {}), ensure_ascii=False)),
                )
                conn.commit()
                created = True
            except sqlite3.IntegrityError:
                conn.rollback()
                created = False
            if created:
                row = conn.execute("SELECT * FROM data_subject_requests WHERE id=?", (req.id,)).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM data_subject_requests WHERE subject_id=? AND kind=? AND status IN ('pending', 'processing') LIMIT 1",
                    (req.subject_id, req.kind.value),
                ).fetchone()
        finally:
            conn.close()
        if row is None:
            # In-flight request finished between the failed insert and the read.
            return self.create_request(req)
        return self._request_from_row(row), created

    def get_request(self, request_id: str) -> Optional[DataSubjectRequest]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM data_subject_requests WHERE id=?", (str(request_id),)).fetchone()
        finally:
            conn.close()
        return self._request_from_row(row) if row else None

    def latest_request(self, *, subject_id: str, kind: RequestKind) -> Optional[DataSubjectRequest]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM data_subject_requests WHERE subject_id=? AND kind=? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (str(subject_id), RequestKind(kind).value),
            ).fetchone()
        finally:
            conn.close()
        return self._request_from_row(row) if row else None

    def list_requests(self, *, statuses: Iterable[RequestStatus], limit: int = 50) -> List[DataSubjectRequest]:
        sts = [RequestStatus(s).value for s in statuses]
        if not sts:
            return []
        marks = ", ".join("?" for _ in sts)
        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM data_subject_requests WHERE status IN ({marks}) ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (*sts, max(1, int(limit))),
            ).fetchall()
        finally:
            conn.close()
        return [self._request_from_row(r) for r in rows]

    def claim_request(self, *, request_id: str, now_iso: Optional[str] = None, reclaim_claimed_before: Optional[str] = None) -> Optional[DataSubjectRequest]:
        """
        pending -> processing, counting the attempt and stamping claimed_at.

        With `reclaim_claimed_before`, a request still in processing is taken
        over only if its claim is older than that instant (the worker holding it
        is presumed dead). Returns None if the request is not claimable.
        """
        where = "status=?"
        params: List[Any] = [RequestStatus.PENDING.value]
        if reclaim_claimed_before is not None:
            where = "(status=? OR (status=? AND (claimed_at IS NULL OR claimed_at < ?)))"
            params += [RequestStatus.PROCESSING.value, str(reclaim_claimed_before)]
        conn = self._conn()
        try:
            cur = conn.execute(
                f"UPDATE data_subject_requests SET status=?, attempts=attempts+1, error='', claimed_at=? WHERE id=? AND {where}",
                (RequestStatus.PROCESSING.value, str(now_iso or self._now_iso()), str(request_id), *params),
            )
            conn.commit()
            if not cur.rowcount:
                return None
            row = conn.execute("SELECT * FROM data_subject_requests WHERE id=?", (str(request_id),)).fetchone()
        finally:
            conn.close()
        return self._request_from_row(row) if row else None

    @staticmethod
    def _claim_guard(request_id: str, attempt: Optional[int]) -> Tuple[str, Tuple[Any, ...]]:
        # A worker may only finish the attempt it claimed; a reclaimed request has a newer attempt number.
        if attempt is None:
            return "id=? AND status=?", (str(request_id), RequestStatus.PROCESSING.value)
        return "id=? AND status=? AND attempts=?", (str(request_id), RequestStatus.PROCESSING.value, int(attempt))

    def release_request(self, *, request_id: str, error: str, attempt: Optional[int] = None) -> bool:
        """processing -> pending, keeping the last error for the next attempt."""
        where, params = self._claim_guard(request_id, attempt)
        conn = self._conn()
        try:
            cur = conn.execute(
                f"UPDATE data_subject_requests SET status=?, error=?, claimed_at=NULL WHERE {where}",
                (RequestStatus.PENDING.value, str(error)[:500], *params),
            )
            conn.commit()
            return bool(cur.rowcount)
        finally:
            conn.close()

    def complete_request(
        self,
        *,
        request_id: str,
        completed_at: str,
        expires_at: Optional[str],
        payload: Optional[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        """processing -> completed. The payload is written in the same statement as the status."""
        where, params = self._claim_guard(request_id, attempt)
        conn = self._conn()
        try:
            cur = conn.execute(
                f"""
                UPDATE data_subject_requests
                SET status=?, completed_at=?, expires_at=?, payload_json=?, metadata_json=COALESCE(?, metadata_json), error=''
                WHERE {where}
                """,
                (
                    RequestStatus.COMPLETED.value,
                    str(completed_at),
                    expires_at,
                    json.dumps(payload, ensure_ascii=False) if payload is not None else None,
                    json.dumps(metadata, ensure_ascii=False) if metadata is not None else None,
                    *params,
                ),
            )
            conn.commit()
            return bool(cur.rowcount)
        finally:
            conn.close()

    def fail_request(self, *, request_id: str, error: str, completed_at: str, attempt: Optional[int] = None) -> bool:
        where, params = self._claim_guard(request_id, attempt)
        conn = self._conn()
        try:
            cur = conn.execute(
                f"UPDATE data_subject_requests SET status=?, error=?, completed_at=?, payload_json=NULL WHERE {where}",
                (RequestStatus.FAILED.value, str(error)[:500], str(completed_at), *params),
            )
            conn.commit()
            return bool(cur.rowcount)
        finally:
            conn.close()
