from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from mailsync.accounts import ConnectedAccount, CredentialStore, MessageSink
from mailsync.core import Deadline, KeyedLocks
from mailsync.errors import (
    AccountInactiveError,
    AccountNotFoundError,
    AuthError,
    MailSyncError,
    ProviderError,
    StaleCursorError,
)
from mailsync.sources.gmail import GmailGateway, normalize
from mailsync.sources.gmail.tokens import utcnow
from mailsync.sources.models import CanonicalMessage, HistoryRecord, Thread, ThreadPage, ThreadSummary


class SyncRunLog(Protocol):
    def start_sync_run(self, correlation_id: str, account_id: str, started_at: str) -> None: ...

    def finish_sync_run(
        self,
        correlation_id: str,
        finished_at: str,
        status: str,
        mode: str | None,
        stats: dict[str, Any] | None,
        error_text: str | None,
    ) -> None: ...


class HistoryAnomaly(MailSyncError):
    """History records arrived in an order that cannot be applied safely."""


@dataclass(slots=True)
class SyncResult:
    account_id: str
    email: str
    success: bool = True
    mode: str | None = None
    threads_processed: int = 0
    messages_processed: int = 0
    new_messages: int = 0
    removed_messages: int = 0
    label_changes: int = 0
    history_id: str | None = None
    cursor_advanced: bool = False
    error: str | None = None
    _threads: set[str] = field(default_factory=set, repr=False)

    def touch_thread(self, thread_id: str | None) -> None:
        if thread_id and thread_id not in self._threads:
            self._threads.add(thread_id)
            self.threads_processed += 1

    def as_stats(self) -> dict[str, Any]:
        stats = asdict(self)
        stats.pop("_threads")
        return stats


class SyncService:
    """Full listing and incremental history sync for connected mailboxes.

    One sync per account at a time. The stored cursor moves only after every
    page of a history batch has been applied, so an interrupted sync replays
    the same changes next time instead of skipping them.
    """

    def __init__(
        self,
        store: CredentialStore,
        sink: MessageSink,
        gateway: GmailGateway,
        logger: logging.Logger | logging.LoggerAdapter,
        *,
        runs: SyncRunLog | None = None,
        max_threads: int = 50,
        sync_labels: Iterable[str] = ("INBOX",),
        history_page_size: int = 500,
        locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sink = sink
        self.gateway = gateway
        self.logger = logger
        self.runs = runs
        self.max_threads = max_threads
        self.sync_labels = list(sync_labels)
        self.history_page_size = history_page_size
        self.locks = locks or KeyedLocks()
        self.clock = clock

    # Read paths

    def list_threads(
        self,
        account_id: str,
        *,
        max_results: int = 50,
        page_token: str | None = None,
        query: str | None = None,
        label_ids: Iterable[str] = (),
        deadline: Deadline | None = None,
    ) -> ThreadPage:
        return self.gateway.list_threads(
            account_id,
            max_results=max_results,
            page_token=page_token,
            query=query,
            label_ids=list(label_ids),
            deadline=deadline,
        )

    def iter_threads(
        self,
        account_id: str,
        *,
        limit: int | None = None,
        page_size: int = 100,
        query: str | None = None,
        label_ids: Iterable[str] = (),
        deadline: Deadline | None = None,
    ) -> Iterator[ThreadSummary]:
        """Yields thread summaries page by page; stop iterating to stop paging."""
        labels = list(label_ids)
        yielded = 0
        page_token: str | None = None
        while limit is None or yielded < limit:
            max_results = page_size if limit is None else min(page_size, limit - yielded)
            page = self.list_threads(
                account_id,
                max_results=max_results,
                page_token=page_token,
                query=query,
                label_ids=labels,
                deadline=deadline,
            )
            for summary in page.threads:
                yield summary
                yielded += 1
                if limit is not None and yielded >= limit:
                    return
            if not page.next_page_token:
                return
            page_token = page.next_page_token

    def get_thread(self, account_id: str, thread_id: str, deadline: Deadline | None = None) -> Thread:
        payload = self.gateway.get_thread(account_id, thread_id, deadline=deadline)
        return Thread(
            id=payload.get("id", thread_id),
            messages=[normalize(item) for item in payload.get("messages", [])],
            history_id=payload.get("historyId"),
        )

    def get_message(self, account_id: str, message_id: str, deadline: Deadline | None = None) -> CanonicalMessage:
        return normalize(self.gateway.get_message(account_id, message_id, deadline=deadline))

    # Sync

    def _load_active(self, account_id: str) -> ConnectedAccount:
        account = self.store.load(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if not account.is_active:
            raise AccountInactiveError(
                account.error_message or "Mailbox is disconnected. Please reconnect your mailbox.",
                account_id=account_id,
            )
        return account

    def sync_account(
        self,
        account_id: str,
        *,
        full: bool = False,
        deadline: Deadline | None = None,
        correlation_id: str | None = None,
    ) -> SyncResult:
        self._load_active(account_id)
        correlation_id = correlation_id or uuid.uuid4().hex
        if self.runs:
            self.runs.start_sync_run(correlation_id, account_id, self.clock().isoformat())

        with self.locks.hold(account_id):
            try:
                account = self._load_active(account_id)
                result = self._sync_locked(account, full=full, deadline=deadline)
            except AuthError as exc:
                self._finish_run(correlation_id, "failed", None, None, str(exc))
                raise
            except MailSyncError as exc:
                # Transient failures leave the account record alone.
                if isinstance(exc, ProviderError) and not exc.rate_limited:
                    self.store.update(account_id, {"error_message": str(exc)})
                self._finish_run(correlation_id, "failed", None, None, str(exc))
                raise
            except Exception as exc:
                self._finish_run(correlation_id, "failed", None, None, f"{exc.__class__.__name__}: {exc}")
                raise

        self._finish_run(correlation_id, "success", result.mode, result.as_stats(), None)
        self.logger.info(
            "Sync %s finished for account %s: threads=%s messages=%s removed=%s labels=%s cursor=%s",
            result.mode,
            account_id,
            result.threads_processed,
            result.messages_processed,
            result.removed_messages,
            result.label_changes,
            result.history_id,
        )
        return result

    def sync_from_cursor(self, account_id: str, deadline: Deadline | None = None) -> SyncResult:
        """Incremental sync. Falls back to a full resync when the cursor cannot be used."""
        return self.sync_account(account_id, full=False, deadline=deadline)

    def full_resync(self, account_id: str, deadline: Deadline | None = None) -> SyncResult:
        return self.sync_account(account_id, full=True, deadline=deadline)

    def sync_organization(
        self,
        organization_id: str,
        *,
        full: bool = False,
        deadline: Deadline | None = None,
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        for account in self.store.list_accounts(organization_id):
            if not account.is_active or not account.sync_enabled:
                continue
            try:
                results.append(self.sync_account(account.id, full=full, deadline=deadline))
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("Sync failed for account %s: %s", account.id, exc)
                results.append(SyncResult(account_id=account.id, email=account.email, success=False, error=str(exc)))
        return results

    def _finish_run(
        self,
        correlation_id: str,
        status: str,
        mode: str | None,
        stats: dict[str, Any] | None,
        error_text: str | None,
    ) -> None:
        if self.runs:
            self.runs.finish_sync_run(correlation_id, self.clock().isoformat(), status, mode, stats, error_text)

    def _sync_locked(self, account: ConnectedAccount, *, full: bool, deadline: Deadline | None) -> SyncResult:
        start = account.history_id
        if full or not start:
            return self._full(account, deadline, mode="full")
        try:
            return self._incremental(account, start, deadline)
        except StaleCursorError as exc:
            self.logger.warning("History cursor for account %s is stale, resyncing: %s", account.id, exc)
        except HistoryAnomaly as exc:
            self.logger.warning("History for account %s is out of order, resyncing: %s", account.id, exc)
        return self._full(account, deadline, mode="resync")

    def _commit_cursor(self, account: ConnectedAccount, history_id: str, result: SyncResult) -> None:
        advanced = self.store.update(
            account.id,
            {"history_id": history_id, "last_sync_at": self.clock(), "error_message": None},
            expect={"history_id": account.history_id},
        )
        result.history_id = history_id
        result.cursor_advanced = advanced
        if not advanced:
            if self.store.load(account.id) is None:
                raise AccountNotFoundError(account.id)
            self.logger.warning(
                "Cursor for account %s changed during sync, keeping the stored value over %s",
                account.id,
                history_id,
            )

    def _store_message(self, account: ConnectedAccount, message: CanonicalMessage, result: SyncResult) -> None:
        if message.parse_error:
            self.logger.warning("Message %s of account %s could not be parsed", message.message_id, account.id)
        if self.sink.upsert_message(account.id, message):
            result.new_messages += 1
        result.messages_processed += 1
        result.touch_thread(message.thread_id)

    def _full(self, account: ConnectedAccount, deadline: Deadline | None, *, mode: str) -> SyncResult:
        result = SyncResult(account_id=account.id, email=account.email, mode=mode)
        # Cursor first: anything that changes while listing is replayed next time.
        profile = self.gateway.get_profile(account.id, deadline=deadline)

        for summary in self.iter_threads(
            account.id,
            limit=self.max_threads,
            label_ids=self.sync_labels,
            deadline=deadline,
        ):
            if deadline:
                deadline.check()
            try:
                thread = self.get_thread(account.id, summary.id, deadline=deadline)
            except ProviderError as exc:
                if exc.status != 404:
                    raise
                continue
            for message in thread.messages:
                self._store_message(account, message, result)

        self._commit_cursor(account, profile.history_id, result)
        return result

    def _incremental(self, account: ConnectedAccount, start: str, deadline: Deadline | None) -> SyncResult:
        result = SyncResult(account_id=account.id, email=account.email, mode="incremental")
        deleted: set[str] = set()
        last_record_id: int | None = None
        page_token: str | None = None

        while True:
            if deadline:
                deadline.check()
            page = self.gateway.list_history(
                account.id,
                start,
                page_token=page_token,
                max_results=self.history_page_size,
                deadline=deadline,
            )
            for record in page.records:
                if deadline:
                    deadline.check()
                if last_record_id is not None and record.id <= last_record_id:
                    raise HistoryAnomaly(f"History record {record.id} after {last_record_id}")
                last_record_id = record.id
                self._apply_record(account, record, deleted, result, deadline)
            cursor = page.cursor
            if not cursor.page_token:
                break
            page_token = cursor.page_token

        self._commit_cursor(account, cursor.history_id, result)
        return result

    def _apply_record(
        self,
        account: ConnectedAccount,
        record: HistoryRecord,
        deleted: set[str],
        result: SyncResult,
        deadline: Deadline | None,
    ) -> None:
        for stub in record.added:
            message_id = stub.get("id")
            if not message_id:
                continue
            if message_id in deleted:
                raise HistoryAnomaly(f"Message {message_id} added after it was deleted")
            try:
                message = self.get_message(account.id, message_id, deadline=deadline)
            except ProviderError as exc:
                if exc.status != 404:
                    raise
                # Deleted again before we got to it.
                self.sink.mark_removed(account.id, message_id)
                result.removed_messages += 1
                continue
            self._store_message(account, message, result)

        for change, added in ((record.labels_added, True), (record.labels_removed, False)):
            for item in change:
                stub = item.get("message", {})
                message_id = stub.get("id")
                if not message_id:
                    continue
                if message_id in deleted:
                    raise HistoryAnomaly(f"Label change for message {message_id} after it was deleted")
                labels = item.get("labelIds", [])
                if added:
                    self.sink.apply_labels(account.id, message_id, added=labels)
                else:
                    self.sink.apply_labels(account.id, message_id, removed=labels)
                result.label_changes += 1
                result.touch_thread(stub.get("threadId"))

        for stub in record.deleted:
            message_id = stub.get("id")
            if not message_id:
                continue
            self.sink.mark_removed(account.id, message_id)
            deleted.add(message_id)
            result.removed_messages += 1
            result.touch_thread(stub.get("threadId"))
