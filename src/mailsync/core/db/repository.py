from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mailsync.accounts import ACCOUNT_FIELDS, AuditEntry, ConnectedAccount
from mailsync.errors import AccountNotFoundError
from mailsync.sources.models import CanonicalMessage

from .migrations import apply_migrations, connect_db

_BOOL_FIELDS = {"is_active", "sync_enabled"}
_DATETIME_FIELDS = {"expires_at", "last_sync_at"}


def _to_db(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in _BOOL_FIELDS:
        return int(bool(value))
    if field in _DATETIME_FIELDS:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MailRepository:
    """SQLite-backed credential store, message sink and audit sink."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.connection = connect_db(db_path)
        self._lock = threading.RLock()

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> MailRepository:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def migrate(self) -> list[str]:
        with self._lock:
            return apply_migrations(self.connection)

    @staticmethod
    def _to_json(payload: Any) -> str | None:
        if payload is None:
            return None
        return json.dumps(payload, ensure_ascii=False)

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> ConnectedAccount:
        return ConnectedAccount(
            id=row["id"],
            organization_id=row["organization_id"],
            email=row["email"],
            refresh_token=row["refresh_token"],
            access_token=row["access_token"],
            expires_at=_parse_dt(row["expires_at"]),
            is_active=bool(row["is_active"]),
            error_message=row["error_message"],
            history_id=row["history_id"],
            sync_enabled=bool(row["sync_enabled"]),
            last_sync_at=_parse_dt(row["last_sync_at"]),
        )

    # Credential store

    def create_account(
        self,
        organization_id: str,
        email: str,
        refresh_token: str,
        *,
        access_token: str | None = None,
        expires_at: datetime | None = None,
        account_id: str | None = None,
    ) -> ConnectedAccount:
        account_id = account_id or uuid.uuid4().hex
        with self._lock, self.connection:
            self.connection.execute(
                """
                INSERT INTO accounts (id, organization_id, email, refresh_token, access_token, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    account_id,
                    organization_id,
                    email,
                    refresh_token,
                    access_token,
                    _to_db("expires_at", expires_at),
                ),
            )
        account = self.load(account_id)
        assert account is not None
        return account

    def find_account(self, organization_id: str, email: str) -> ConnectedAccount | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM accounts WHERE organization_id = ? AND lower(email) = lower(?)",
                (organization_id, email),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def load(self, account_id: str) -> ConnectedAccount | None:
        with self._lock:
            row = self.connection.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def update(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        expect: Mapping[str, Any] | None = None,
    ) -> bool:
        unknown = (set(fields) | set(expect or {})) - ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params: list[Any] = [_to_db(name, value) for name, value in fields.items()]
        conditions = ["id = ?"]
        params.append(account_id)
        for name, value in (expect or {}).items():
            # IS compares NULL-safely in SQLite
            conditions.append(f"{name} IS ?")
            params.append(_to_db(name, value))

        with self._lock, self.connection:
            cursor = self.connection.execute(
                f"UPDATE accounts SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE {' AND '.join(conditions)}",
                params,
            )
        return cursor.rowcount > 0

    def delete(self, account_id: str) -> bool:
        with self._lock, self.connection:
            # Stored messages go with the account through ON DELETE CASCADE.
            cursor = self.connection.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    def list_accounts(self, organization_id: str | None = None) -> list[ConnectedAccount]:
        with self._lock:
            if organization_id is None:
                rows = self.connection.execute("SELECT * FROM accounts ORDER BY created_at, email").fetchall()
            else:
                rows = self.connection.execute(
                    "SELECT * FROM accounts WHERE organization_id = ? ORDER BY created_at, email",
                    (organization_id,),
                ).fetchall()
        return [self._row_to_account(row) for row in rows]

    # Message sink

    def upsert_message(self, account_id: str, message: CanonicalMessage) -> bool:
        """Returns True when the message was not stored before.

        Raises AccountNotFoundError once the owning account has been deleted.
        """
        try:
            with self._lock, self.connection:
                existing = self._upsert_message(account_id, message)
        except sqlite3.IntegrityError as exc:
            raise AccountNotFoundError(account_id) from exc
        return existing is None or bool(existing["removed"])

    def _upsert_message(self, account_id: str, message: CanonicalMessage) -> sqlite3.Row | None:
        existing = self.connection.execute(
            "SELECT removed FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message.message_id),
        ).fetchone()
        self.connection.execute(
            """
            INSERT INTO messages (
                account_id, message_id, thread_id, label_ids_json, received_at, subject, sender,
                recipients, text_body, html_body, headers_json, snippet, has_attachments, parse_error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, message_id) DO UPDATE SET
                thread_id = excluded.thread_id,
                label_ids_json = excluded.label_ids_json,
                received_at = COALESCE(excluded.received_at, messages.received_at),
                subject = excluded.subject,
                sender = excluded.sender,
                recipients = excluded.recipients,
                text_body = excluded.text_body,
                html_body = excluded.html_body,
                headers_json = excluded.headers_json,
                snippet = excluded.snippet,
                has_attachments = excluded.has_attachments,
                parse_error = excluded.parse_error,
                removed = 0,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                account_id,
                message.message_id,
                message.thread_id,
                self._to_json(sorted(message.label_ids)),
                message.received_at.isoformat() if message.received_at else None,
                message.subject,
                message.sender,
                ", ".join(message.recipients),
                message.text_body,
                message.html_body,
                self._to_json(message.headers),
                message.snippet,
                int(message.has_attachments),
                int(message.parse_error),
            ),
        )
        return existing

    def mark_removed(self, account_id: str, message_id: str) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                """
                UPDATE messages SET removed = 1, updated_at = CURRENT_TIMESTAMP
                WHERE account_id = ? AND message_id = ?
                """,
                (account_id, message_id),
            )

    def apply_labels(
        self,
        account_id: str,
        message_id: str,
        added: Iterable[str] = (),
        removed: Iterable[str] = (),
    ) -> None:
        with self._lock, self.connection:
            row = self.connection.execute(
                "SELECT label_ids_json FROM messages WHERE account_id = ? AND message_id = ?",
                (account_id, message_id),
            ).fetchone()
            if row is None:
                return
            labels = set(json.loads(row["label_ids_json"] or "[]"))
            labels |= set(added)
            labels -= set(removed)
            self.connection.execute(
                """
                UPDATE messages SET label_ids_json = ?, updated_at = CURRENT_TIMESTAMP
                WHERE account_id = ? AND message_id = ?
                """,
                (self._to_json(sorted(labels)), account_id, message_id),
            )

    def message_labels(self, account_id: str, message_id: str) -> set[str] | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT label_ids_json, removed FROM messages WHERE account_id = ? AND message_id = ?",
                (account_id, message_id),
            ).fetchone()
        if row is None or row["removed"]:
            return None
        return set(json.loads(row["label_ids_json"] or "[]"))

    # Audit sink

    def record(self, entry: AuditEntry) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                "INSERT INTO audit_log (organization_id, provider, event_type, message) VALUES (?, ?, ?, ?)",
                (entry.organization_id, entry.provider, entry.event_type, entry.message),
            )

    def audit_entries(self, organization_id: str) -> list[AuditEntry]:
        with self._lock:
            rows = self.connection.execute(
                "SELECT * FROM audit_log WHERE organization_id = ? ORDER BY id",
                (organization_id,),
            ).fetchall()
        return [
            AuditEntry(
                organization_id=row["organization_id"],
                provider=row["provider"],
                event_type=row["event_type"],
                message=row["message"],
            )
            for row in rows
        ]

    # Sync runs

    def start_sync_run(self, correlation_id: str, account_id: str, started_at: str) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                """
                INSERT INTO sync_runs (correlation_id, account_id, started_at, status)
                VALUES (?, ?, ?, 'running')
                ON CONFLICT(correlation_id) DO UPDATE SET
                    account_id = excluded.account_id,
                    started_at = excluded.started_at,
                    status = 'running',
                    mode = NULL,
                    finished_at = NULL,
                    stats_json = NULL,
                    error_text = NULL
                """,
                (correlation_id, account_id, started_at),
            )

    def finish_sync_run(
        self,
        correlation_id: str,
        finished_at: str,
        status: str,
        mode: str | None,
        stats: dict[str, Any] | None,
        error_text: str | None,
    ) -> None:
        with self._lock, self.connection:
            self.connection.execute(
                """
                UPDATE sync_runs
                SET finished_at = ?, status = ?, mode = ?, stats_json = ?, error_text = ?
                WHERE correlation_id = ?
                """,
                (finished_at, status, mode, self._to_json(stats), error_text, correlation_id),
            )

    def sync_status(self, organization_id: str) -> dict[str, Any]:
        with self._lock:
            account_rows = self.connection.execute(
                """
                SELECT
                    a.id, a.email, a.is_active, a.sync_enabled, a.last_sync_at, a.error_message,
                    (
                        SELECT COUNT(DISTINCT m.thread_id) FROM messages m
                        WHERE m.account_id = a.id AND m.removed = 0
                    ) AS thread_count,
                    (
                        SELECT COUNT(*) FROM messages m
                        WHERE m.account_id = a.id AND m.removed = 0
                    ) AS message_count
                FROM accounts a
                WHERE a.organization_id = ?
                ORDER BY a.email
                """,
                (organization_id,),
            ).fetchall()
            unread_row = self.connection.execute(
                """
                SELECT COUNT(DISTINCT m.account_id || ':' || m.thread_id) AS cnt
                FROM messages m
                JOIN accounts a ON a.id = m.account_id
                WHERE a.organization_id = ?
                  AND m.removed = 0
                  AND m.label_ids_json LIKE '%"UNREAD"%'
                  AND m.label_ids_json LIKE '%"INBOX"%'
                """,
                (organization_id,),
            ).fetchone()

        accounts = [
            {
                "id": row["id"],
                "email": row["email"],
                "provider": "gmail",
                "is_active": bool(row["is_active"]),
                "sync_enabled": bool(row["sync_enabled"]),
                "last_sync_at": row["last_sync_at"],
                "error_message": row["error_message"],
                "thread_count": int(row["thread_count"]),
                "message_count": int(row["message_count"]),
            }
            for row in account_rows
        ]
        return {
            "accounts": accounts,
            "total_threads": sum(item["thread_count"] for item in accounts),
            "unread_threads": int(unread_row["cnt"]),
        }

    def fetch_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for table in ["accounts", "messages", "sync_runs", "audit_log"]:
                row = self.connection.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()
                counts[table] = int(row["cnt"])
        return counts
