from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from mailsync.accounts.models import AuditEntry, ConnectedAccount
from mailsync.sources.models import CanonicalMessage


class CredentialStore(Protocol):
    """Read/write contract for connected-account records.

    ``update`` is the single write path. With ``expect`` it is a
    compare-and-swap: the write only happens when every expected field still
    holds the given value, and the return value says whether it happened.
    """

    def load(self, account_id: str) -> ConnectedAccount | None: ...

    def update(
        self,
        account_id: str,
        fields: Mapping[str, Any],
        expect: Mapping[str, Any] | None = None,
    ) -> bool: ...

    def delete(self, account_id: str) -> bool: ...

    def list_accounts(self, organization_id: str | None = None) -> list[ConnectedAccount]: ...


class MessageSink(Protocol):
    def upsert_message(self, account_id: str, message: CanonicalMessage) -> bool: ...

    def mark_removed(self, account_id: str, message_id: str) -> None: ...

    def apply_labels(
        self,
        account_id: str,
        message_id: str,
        added: Iterable[str] = (),
        removed: Iterable[str] = (),
    ) -> None: ...


class AuditSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...
