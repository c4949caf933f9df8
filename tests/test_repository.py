from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from conftest import T0, gmail_message
from mailsync.accounts import AuditEntry
from mailsync.core.db import MailRepository, apply_migrations, pending_migrations
from mailsync.core.db.migrations import MIGRATIONS_DIR
from mailsync.errors import AccountNotFoundError
from mailsync.sources.gmail import normalize


def test_migrate_is_idempotent(repository) -> None:  # noqa: ANN001
    assert repository.migrate() == []
    assert pending_migrations(repository.connection) == []
    assert repository.fetch_counts() == {"accounts": 0, "messages": 0, "sync_runs": 0, "audit_log": 0}


def test_account_round_trip(repository) -> None:  # noqa: ANN001
    created = repository.create_account(
        "org-1", "Owner@Example.com", "refresh-1", access_token="tok", expires_at=T0, account_id="acc-1"
    )

    assert created.expires_at == T0
    assert created.is_active is True
    assert created.sync_enabled is True
    assert repository.find_account("org-1", "owner@example.com").id == "acc-1"
    assert repository.find_account("org-2", "owner@example.com") is None


def test_duplicate_mailbox_in_same_org_is_rejected(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1")

    with pytest.raises(sqlite3.IntegrityError):
        repository.create_account("org-1", "owner@example.com", "refresh-2")


def test_update_with_expectation_is_compare_and_swap(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")

    assert repository.update("acc-1", {"history_id": "10"}, expect={"history_id": None}) is True
    assert repository.update("acc-1", {"history_id": "20"}, expect={"history_id": None}) is False
    assert repository.update("acc-1", {"history_id": "20"}, expect={"history_id": "10"}) is True
    assert repository.load("acc-1").history_id == "20"
    assert repository.update("missing", {"history_id": "1"}) is False


def test_update_rejects_unknown_fields(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")

    with pytest.raises(ValueError):
        repository.update("acc-1", {"id": "hijack"})


def test_update_round_trips_datetimes(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")

    repository.update("acc-1", {"expires_at": T0 + timedelta(hours=1), "last_sync_at": T0})

    stored = repository.load("acc-1")
    assert stored.expires_at == T0 + timedelta(hours=1)
    assert stored.last_sync_at == T0


def test_upsert_message_reports_new_rows(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    message = normalize(gmail_message("m1"))

    assert repository.upsert_message("acc-1", message) is True
    assert repository.upsert_message("acc-1", message) is False
    repository.mark_removed("acc-1", "m1")
    assert repository.message_labels("acc-1", "m1") is None
    assert repository.upsert_message("acc-1", message) is True
    assert repository.fetch_counts()["messages"] == 1


def test_apply_labels_on_unknown_message_is_noop(repository) -> None:  # noqa: ANN001
    repository.apply_labels("acc-1", "nope", added=["STARRED"])

    assert repository.message_labels("acc-1", "nope") is None


def test_sync_status_counts_threads(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    repository.upsert_message("acc-1", normalize(gmail_message("m1", "t1")))
    repository.upsert_message("acc-1", normalize(gmail_message("m2", "t1", labels=["INBOX"])))
    repository.upsert_message("acc-1", normalize(gmail_message("m3", "t2", labels=["INBOX"])))

    status = repository.sync_status("org-1")

    assert status["total_threads"] == 2
    assert status["unread_threads"] == 1
    assert status["accounts"][0]["message_count"] == 3
    assert status["accounts"][0]["provider"] == "gmail"


def test_audit_entries_are_scoped_by_organization(repository) -> None:  # noqa: ANN001
    repository.record(AuditEntry("org-1", "mail", "disconnected", "Disconnected mailbox a@example.com"))
    repository.record(AuditEntry("org-2", "mail", "disconnected", "Disconnected mailbox b@example.com"))

    assert [e.message for e in repository.audit_entries("org-1")] == ["Disconnected mailbox a@example.com"]


def test_repository_survives_reopen(tmp_path) -> None:  # noqa: ANN001
    db_path = tmp_path / "nested" / "mail.sqlite3"
    with MailRepository(db_path) as repo:
        repo.migrate()
        repo.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")

    with MailRepository(db_path) as repo:
        assert repo.migrate() == []
        assert repo.load("acc-1").email == "owner@example.com"


def test_deleting_account_cascades_to_messages(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    repository.create_account("org-1", "other@example.com", "refresh-2", account_id="acc-2")
    repository.upsert_message("acc-1", normalize(gmail_message("m1")))
    repository.upsert_message("acc-2", normalize(gmail_message("m1")))

    repository.connection.execute("DELETE FROM accounts WHERE id = 'acc-1'")
    repository.connection.commit()

    rows = repository.connection.execute("SELECT account_id FROM messages").fetchall()
    assert [row["account_id"] for row in rows] == ["acc-2"]


def test_message_for_deleted_account_is_rejected(repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    repository.delete("acc-1")

    with pytest.raises(AccountNotFoundError):
        repository.upsert_message("acc-1", normalize(gmail_message("m1")))
    assert repository.fetch_counts()["messages"] == 0


def test_foreign_key_migration_drops_orphaned_messages(tmp_path) -> None:  # noqa: ANN001
    first_only = tmp_path / "schema"
    first_only.mkdir()
    (first_only / "001_init.sql").write_text((MIGRATIONS_DIR / "001_init.sql").read_text(encoding="utf-8"))

    with MailRepository(tmp_path / "old.sqlite3") as repo:
        assert apply_migrations(repo.connection, first_only) == ["001_init.sql"]
        repo.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
        repo.connection.executemany(
            "INSERT INTO messages (account_id, message_id, thread_id) VALUES (?, ?, 't1')",
            [("acc-1", "m1"), ("gone", "m2")],
        )
        repo.connection.commit()

        assert repo.migrate() == ["002_messages_account_fk.sql"]

        rows = repo.connection.execute("SELECT account_id, message_id FROM messages").fetchall()
        assert [(row["account_id"], row["message_id"]) for row in rows] == [("acc-1", "m1")]
        assert repo.connection.execute("PRAGMA foreign_key_check").fetchall() == []
