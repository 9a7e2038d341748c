"""
Invoicely Approval Database

Single source of truth for approval workflows, invoice approval records,
the invoice/profile rows the engine reads, and the notification outbox.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from invoicely.core.config import ApprovalSettings

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False


logger = logging.getLogger(__name__)

WORKFLOW_UPDATABLE_FIELDS = (
    "name",
    "description",
    "approval_steps",
    "require_all_approvers",
    "auto_approve_threshold",
    "is_active",
)

APPROVAL_UPDATABLE_FIELDS = (
    "status",
    "current_step",
    "approved_at",
    "approved_by",
    "approval_data",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InvoicelyDB:
    def __init__(
        self,
        db_path: str = "invoicely.db",
        dsn: Optional[str] = None,
        allow_sqlite_fallback: Optional[bool] = None,
    ):
        self.dsn = dsn if dsn is not None else os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn_lower = (self.dsn or "").strip().lower()
        if allow_sqlite_fallback is None:
            allow_sqlite_fallback = str(
                os.getenv("INVOICELY_DB_FALLBACK_SQLITE", "true")
            ).strip().lower() not in {"0", "false", "no", "off"}
        self.allow_sqlite_fallback = allow_sqlite_fallback
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn_lower
            and (dsn_lower.startswith("postgres://") or dsn_lower.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set INVOICELY_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def _table_columns(self, cur, table: str) -> set[str]:
        if self.use_postgres:
            sql = self._prepare_sql(
                "SELECT column_name FROM information_schema.columns WHERE table_name = ?"
            )
            cur.execute(sql, (table,))
            rows = cur.fetchall()
            return {str(row["column_name"]) for row in rows}
        cur.execute(f"PRAGMA table_info({table})")
        rows = cur.fetchall()
        return {str(row["name"]) for row in rows}

    def _ensure_column(self, cur, table: str, column: str, definition: str) -> None:
        columns = self._table_columns(cur, table)
        if column in columns:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS approval_workflows (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    approval_steps TEXT NOT NULL,
                    require_all_approvers INTEGER DEFAULT 0,
                    auto_approve_threshold REAL,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS invoice_approvals (
                    id TEXT PRIMARY KEY,
                    invoice_id TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    current_step INTEGER NOT NULL DEFAULT 0,
                    submitted_by TEXT NOT NULL,
                    submitted_at TEXT,
                    approved_at TEXT,
                    approved_by TEXT,
                    notes TEXT,
                    approval_data TEXT,
                    revision INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    invoice_number TEXT,
                    customer_name TEXT,
                    total_amount REAL DEFAULT 0,
                    currency TEXT DEFAULT 'USD',
                    status TEXT DEFAULT 'draft',
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    full_name TEXT,
                    company_name TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS notification_outbox (
                    id TEXT PRIMARY KEY,
                    approval_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT,
                    body_html TEXT,
                    body_text TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT,
                    sent_at TEXT
                )
            """)

            cur.execute("CREATE INDEX IF NOT EXISTS idx_workflows_user ON approval_workflows(user_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_workflows_active ON approval_workflows(is_active)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_approvals_invoice ON invoice_approvals(invoice_id)")
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_approvals_invoice_pending "
                "ON invoice_approvals(invoice_id) WHERE status = 'pending'"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_approvals_workflow_status ON invoice_approvals(workflow_id, status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_approvals_submitter ON invoice_approvals(submitted_by, submitted_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_invoices_user ON invoices(user_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_outbox_status ON notification_outbox(status, attempts)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_outbox_approval ON notification_outbox(approval_id)")

            # Databases created before optimistic concurrency was added.
            self._ensure_column(cur, "invoice_approvals", "revision", "INTEGER NOT NULL DEFAULT 0")

            conn.commit()

        self._initialized = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_json(raw: Any, default: Any) -> Any:
        if raw is None or raw == "":
            return default
        if isinstance(raw, (dict, list)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return default

    def _deserialize_workflow(self, row: Any) -> Dict[str, Any]:
        data = dict(row)
        data["approval_steps"] = self._decode_json(data.get("approval_steps"), [])
        data["require_all_approvers"] = bool(data.get("require_all_approvers"))
        data["is_active"] = bool(data.get("is_active"))
        return data

    def _deserialize_approval(self, row: Any) -> Dict[str, Any]:
        data = dict(row)
        data["approval_data"] = self._decode_json(data.get("approval_data"), {})
        data["current_step"] = int(data.get("current_step") or 0)
        data["revision"] = int(data.get("revision") or 0)
        return data

    def _insert_outbox(self, cur, messages: Iterable[Dict[str, Any]], now: str) -> List[str]:
        sql = self._prepare_sql("""
            INSERT INTO notification_outbox
            (id, approval_id, kind, recipient, subject, body_html, body_text, status,
             attempts, last_error, created_at, sent_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, NULL, ?, NULL)
        """)
        ids = []
        for message in messages:
            message_id = message.get("id") or f"NTF-{uuid.uuid4().hex}"
            cur.execute(sql, (
                message_id,
                message.get("approval_id"),
                message.get("kind"),
                message.get("recipient"),
                message.get("subject"),
                message.get("body_html"),
                message.get("body_text"),
                now,
            ))
            ids.append(message_id)
        return ids

    def _set_invoice_status(self, cur, invoice_id: str, status: str, now: str) -> None:
        sql = self._prepare_sql("UPDATE invoices SET status = ?, updated_at = ? WHERE id = ?")
        cur.execute(sql, (status, now, invoice_id))

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def create_workflow(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        workflow_id = payload.get("id") or f"WF-{uuid.uuid4().hex}"
        sql = self._prepare_sql("""
            INSERT INTO approval_workflows
            (id, user_id, name, description, approval_steps, require_all_approvers,
             auto_approve_threshold, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                workflow_id,
                payload.get("user_id"),
                payload.get("name"),
                payload.get("description"),
                json.dumps(payload.get("approval_steps") or []),
                1 if payload.get("require_all_approvers") else 0,
                payload.get("auto_approve_threshold"),
                0 if payload.get("is_active") is False else 1,
                now,
                now,
            ))
            conn.commit()
        return self.get_workflow(workflow_id)

    def get_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        self.initialize()
        if user_id is None:
            sql = self._prepare_sql("SELECT * FROM approval_workflows WHERE id = ?")
            params: tuple = (workflow_id,)
        else:
            sql = self._prepare_sql("SELECT * FROM approval_workflows WHERE id = ? AND user_id = ?")
            params = (workflow_id, user_id)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            row = cur.fetchone()
        return self._deserialize_workflow(row) if row else None

    def list_workflows(self, user_id: str) -> List[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT * FROM approval_workflows WHERE user_id = ? ORDER BY created_at DESC"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (user_id,))
            rows = cur.fetchall()
        return [self._deserialize_workflow(row) for row in rows]

    def list_active_workflows(self) -> List[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM approval_workflows WHERE is_active = 1")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql)
            rows = cur.fetchall()
        return [self._deserialize_workflow(row) for row in rows]

    def update_workflow(self, workflow_id: str, user_id: str, **kwargs) -> bool:
        self.initialize()
        fields = {k: v for k, v in kwargs.items() if k in WORKFLOW_UPDATABLE_FIELDS}
        if "approval_steps" in fields:
            fields["approval_steps"] = json.dumps(fields["approval_steps"] or [])
        for flag in ("require_all_approvers", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = _now()
        set_clause = ", ".join(f"{k} = ?" for k in fields.keys())
        sql = self._prepare_sql(
            f"UPDATE approval_workflows SET {set_clause} WHERE id = ? AND user_id = ?"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*fields.values(), workflow_id, user_id))
            conn.commit()
            return cur.rowcount > 0

    def delete_workflow_if_idle(self, workflow_id: str, user_id: str) -> int:
        """Delete the workflow unless an approval referencing it is still pending.

        The pending check and the delete are one statement, so an approval
        submitted concurrently cannot slip in between them.
        """
        self.initialize()
        sql = self._prepare_sql("""
            DELETE FROM approval_workflows
            WHERE id = ? AND user_id = ?
              AND NOT EXISTS (
                  SELECT 1 FROM invoice_approvals
                  WHERE workflow_id = ? AND status = 'pending'
              )
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (workflow_id, user_id, workflow_id))
            conn.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Invoices and profiles
    # ------------------------------------------------------------------

    def create_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        invoice_id = payload.get("id") or f"INV-{uuid.uuid4().hex}"
        sql = self._prepare_sql("""
            INSERT INTO invoices
            (id, user_id, invoice_number, customer_name, total_amount, currency, status,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                invoice_id,
                payload.get("user_id"),
                payload.get("invoice_number"),
                payload.get("customer_name"),
                payload.get("total_amount") or 0,
                payload.get("currency") or "USD",
                payload.get("status") or "draft",
                now,
                now,
            ))
            conn.commit()
        return self.get_invoice(invoice_id)

    def get_invoice(self, invoice_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        self.initialize()
        if user_id is None:
            sql = self._prepare_sql("SELECT * FROM invoices WHERE id = ?")
            params: tuple = (invoice_id,)
        else:
            sql = self._prepare_sql("SELECT * FROM invoices WHERE id = ? AND user_id = ?")
            params = (invoice_id, user_id)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            row = cur.fetchone()
        return dict(row) if row else None

    def save_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.initialize()
        now = _now()
        if self.use_postgres:
            sql = self._prepare_sql("""
                INSERT INTO profiles (id, email, full_name, company_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET email = EXCLUDED.email,
                                               full_name = EXCLUDED.full_name,
                                               company_name = EXCLUDED.company_name,
                                               updated_at = EXCLUDED.updated_at
            """)
        else:
            sql = self._prepare_sql("""
                INSERT OR REPLACE INTO profiles (id, email, full_name, company_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                payload.get("id"),
                payload.get("email"),
                payload.get("full_name"),
                payload.get("company_name"),
                now,
                now,
            ))
            conn.commit()
        return self.get_profile(payload.get("id"))

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM profiles WHERE id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (user_id,))
            row = cur.fetchone()
        return dict(row) if row else None

    def get_profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM profiles WHERE lower(email) = lower(?) LIMIT 1")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (email,))
            row = cur.fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Approval records
    # ------------------------------------------------------------------

    def insert_approval(
        self,
        payload: Dict[str, Any],
        invoice_status: str,
        outbox: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Create an approval record, move the invoice status and queue
        notifications in one transaction."""
        self.initialize()
        now = _now()
        approval_id = payload.get("id") or f"APR-{uuid.uuid4().hex}"
        sql = self._prepare_sql("""
            INSERT INTO invoice_approvals
            (id, invoice_id, workflow_id, status, current_step, submitted_by, submitted_at,
             approved_at, approved_by, notes, approval_data, revision, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                approval_id,
                payload.get("invoice_id"),
                payload.get("workflow_id"),
                payload.get("status") or "pending",
                payload.get("current_step", 0),
                payload.get("submitted_by"),
                payload.get("submitted_at") or now,
                payload.get("approved_at"),
                payload.get("approved_by"),
                payload.get("notes") or "",
                json.dumps(payload.get("approval_data") or {}),
                now,
                now,
            ))
            self._set_invoice_status(cur, payload.get("invoice_id"), invoice_status, now)
            if outbox:
                self._insert_outbox(
                    cur,
                    [{**message, "approval_id": approval_id} for message in outbox],
                    now,
                )
            conn.commit()
        return self.get_approval(approval_id)

    def transition_approval(
        self,
        approval_id: str,
        expected_status: str,
        expected_revision: int,
        updates: Dict[str, Any],
        invoice_id: Optional[str] = None,
        invoice_status: Optional[str] = None,
        outbox: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Compare-and-swap an approval record.

        The update only applies while the row still has ``expected_status``
        and ``expected_revision``. Returns the number of rows affected; zero
        means another writer got there first and nothing was committed.
        """
        self.initialize()
        now = _now()
        fields = {k: v for k, v in updates.items() if k in APPROVAL_UPDATABLE_FIELDS}
        if "approval_data" in fields and isinstance(fields["approval_data"], dict):
            fields["approval_data"] = json.dumps(fields["approval_data"])
        fields["updated_at"] = now
        set_clause = ", ".join(f"{k} = ?" for k in fields.keys())
        sql = self._prepare_sql(
            f"UPDATE invoice_approvals SET {set_clause}, revision = revision + 1 "
            "WHERE id = ? AND status = ? AND revision = ?"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (*fields.values(), approval_id, expected_status, expected_revision))
            affected = cur.rowcount
            if affected != 1:
                conn.rollback()
                return max(affected, 0)
            if invoice_id and invoice_status:
                self._set_invoice_status(cur, invoice_id, invoice_status, now)
            if outbox:
                self._insert_outbox(
                    cur,
                    [{**message, "approval_id": approval_id} for message in outbox],
                    now,
                )
            conn.commit()
            return affected

    def get_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql("SELECT * FROM invoice_approvals WHERE id = ?")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (approval_id,))
            row = cur.fetchone()
        return self._deserialize_approval(row) if row else None

    def get_pending_approval_for_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT * FROM invoice_approvals WHERE invoice_id = ? AND status = 'pending' "
            "ORDER BY created_at DESC LIMIT 1"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (invoice_id,))
            row = cur.fetchone()
        return self._deserialize_approval(row) if row else None

    def list_pending_approvals_for_workflows(self, workflow_ids: List[str]) -> List[Dict[str, Any]]:
        self.initialize()
        if not workflow_ids:
            return []
        placeholders = ", ".join("?" for _ in workflow_ids)
        sql = self._prepare_sql(
            f"SELECT * FROM invoice_approvals WHERE workflow_id IN ({placeholders}) "
            "AND status = 'pending' ORDER BY submitted_at ASC"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(workflow_ids))
            rows = cur.fetchall()
        return [self._deserialize_approval(row) for row in rows]

    def list_approvals_by_invoice(self, invoice_id: str) -> List[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT * FROM invoice_approvals WHERE invoice_id = ? ORDER BY created_at DESC"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (invoice_id,))
            rows = cur.fetchall()
        return [self._deserialize_approval(row) for row in rows]

    def list_pending_approvals_submitted_before(
        self, submitted_by: str, before: str, limit: int = 200
    ) -> List[Dict[str, Any]]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT * FROM invoice_approvals WHERE submitted_by = ? AND status = 'pending' "
            "AND submitted_at < ? ORDER BY submitted_at ASC LIMIT ?"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (submitted_by, before, limit))
            rows = cur.fetchall()
        return [self._deserialize_approval(row) for row in rows]

    def get_approval_statistics(self, user_id: str, start: str, end: str) -> Dict[str, Any]:
        self.initialize()
        sql = self._prepare_sql(
            "SELECT status, current_step, submitted_at, approved_at FROM invoice_approvals "
            "WHERE submitted_by = ? AND submitted_at >= ? AND submitted_at <= ?"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (user_id, start, end))
            rows = [dict(row) for row in cur.fetchall()]

        counts = {"pending": 0, "approved": 0, "rejected": 0}
        durations: List[float] = []
        for row in rows:
            status = row.get("status")
            if status in counts:
                counts[status] += 1
            # Auto-approvals never waited on a person.
            if status != "approved" or int(row.get("current_step") or 0) < 0:
                continue
            submitted = self._parse_iso(row.get("submitted_at"))
            approved = self._parse_iso(row.get("approved_at"))
            if submitted and approved and approved >= submitted:
                durations.append((approved - submitted).total_seconds() / 3600.0)

        return {
            "total_approvals": len(rows),
            "pending_approvals": counts["pending"],
            "approved_count": counts["approved"],
            "rejected_count": counts["rejected"],
            "average_approval_time": round(sum(durations) / len(durations), 2) if durations else 0,
        }

    @staticmethod
    def _parse_iso(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt

    # ------------------------------------------------------------------
    # Notification outbox
    # ------------------------------------------------------------------

    def enqueue_notifications(self, approval_id: str, messages: List[Dict[str, Any]]) -> List[str]:
        self.initialize()
        if not messages:
            return []
        with self.connect() as conn:
            cur = conn.cursor()
            ids = self._insert_outbox(
                cur,
                [{**message, "approval_id": approval_id} for message in messages],
                _now(),
            )
            conn.commit()
        return ids

    def list_outbox(
        self,
        approval_id: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        max_attempts: Optional[int] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        self.initialize()
        clauses = []
        params: List[Any] = []
        if approval_id:
            clauses.append("approval_id = ?")
            params.append(approval_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if max_attempts is not None:
            clauses.append("attempts < ?")
            params.append(max_attempts)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = self._prepare_sql(
            f"SELECT * FROM notification_outbox {where} ORDER BY created_at ASC LIMIT ?"
        )
        params.append(limit)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def get_outbox_messages(self, message_ids: List[str]) -> List[Dict[str, Any]]:
        self.initialize()
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        sql = self._prepare_sql(
            f"SELECT * FROM notification_outbox WHERE id IN ({placeholders}) ORDER BY created_at ASC"
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(message_ids))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def mark_outbox_result(self, message_id: str, ok: bool, error: Optional[str] = None) -> bool:
        self.initialize()
        now = _now()
        sql = self._prepare_sql("""
            UPDATE notification_outbox
            SET status = ?, attempts = attempts + 1, last_error = ?, sent_at = ?
            WHERE id = ?
        """)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, (
                "sent" if ok else "failed",
                None if ok else (error or "unknown_error"),
                now if ok else None,
                message_id,
            ))
            conn.commit()
            return cur.rowcount > 0


_DB_INSTANCE: Optional[InvoicelyDB] = None


def get_db() -> InvoicelyDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        settings = ApprovalSettings.from_env()
        _DB_INSTANCE = InvoicelyDB(
            db_path=settings.db_path,
            dsn=settings.database_url,
            allow_sqlite_fallback=settings.sqlite_fallback,
        )
    return _DB_INSTANCE
