from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import getaddresses, parseaddr

UNREAD = "UNREAD"
INBOX = "INBOX"
STARRED = "STARRED"


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    message_id: str
    thread_id: str | None
    label_ids: frozenset[str] = frozenset()
    received_at: datetime | None = None
    text_body: str | None = None
    html_body: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    snippet: str = ""
    has_attachments: bool = False
    parse_error: bool = False

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def subject(self) -> str | None:
        return self.header("subject")

    @property
    def sender(self) -> str | None:
        return self.header("from")

    @property
    def sender_address(self) -> str | None:
        _, address = parseaddr(self.header("from", "") or "")
        return address or None

    @property
    def recipients(self) -> list[str]:
        return [addr for _, addr in getaddresses([self.header("to", "") or ""]) if addr]

    @property
    def cc(self) -> list[str]:
        return [addr for _, addr in getaddresses([self.header("cc", "") or ""]) if addr]

    @property
    def references(self) -> list[str]:
        return (self.header("references") or "").split()

    @property
    def is_read(self) -> bool:
        return UNREAD not in self.label_ids

    @property
    def is_starred(self) -> bool:
        return STARRED in self.label_ids

    @property
    def is_archived(self) -> bool:
        return INBOX not in self.label_ids

    def direction(self, mailbox: str) -> str:
        sender = (self.sender_address or "").lower()
        return "outbound" if sender and sender == mailbox.lower() else "inbound"


@dataclass(frozen=True, slots=True)
class SyncCursor:
    history_id: str
    page_token: str | None = None


@dataclass(slots=True)
class ThreadSummary:
    id: str
    snippet: str = ""
    history_id: str | None = None


@dataclass(slots=True)
class ThreadPage:
    threads: list[ThreadSummary]
    next_page_token: str | None = None
    result_size_estimate: int | None = None


@dataclass(slots=True)
class Thread:
    id: str
    messages: list[CanonicalMessage]
    history_id: str | None = None

    @property
    def participants(self) -> list[str]:
        seen: dict[str, None] = {}
        for message in self.messages:
            for address in [message.sender_address, *message.recipients]:
                if address:
                    seen.setdefault(address.lower(), None)
        return list(seen)

    @property
    def has_unread(self) -> bool:
        return any(not m.is_read for m in self.messages)

    @property
    def is_starred(self) -> bool:
        return any(m.is_starred for m in self.messages)

    @property
    def is_archived(self) -> bool:
        return all(m.is_archived for m in self.messages)


@dataclass(slots=True)
class MailProfile:
    email_address: str
    messages_total: int
    threads_total: int
    history_id: str


@dataclass(slots=True)
class HistoryRecord:
    """One entry of the history feed, flattened to what the sync applies."""

    id: int
    added: list[dict] = field(default_factory=list)
    deleted: list[dict] = field(default_factory=list)
    labels_added: list[dict] = field(default_factory=list)
    labels_removed: list[dict] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> HistoryRecord:
        return cls(
            id=int(payload["id"]),
            added=[item.get("message", {}) for item in payload.get("messagesAdded", [])],
            deleted=[item.get("message", {}) for item in payload.get("messagesDeleted", [])],
            labels_added=payload.get("labelsAdded", []),
            labels_removed=payload.get("labelsRemoved", []),
        )


@dataclass(slots=True)
class HistoryPage:
    records: list[HistoryRecord]
    history_id: str
    next_page_token: str | None = None

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(history_id=self.history_id, page_token=self.next_page_token)


@dataclass(slots=True)
class OutgoingMessage:
    to: list[str]
    subject: str
    body: str
    body_type: str = "html"
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    reply_to: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    thread_id: str | None = None
    sender: str | None = None

    @classmethod
    def reply(
        cls,
        original: CanonicalMessage,
        body: str,
        *,
        to: list[str] | None = None,
        body_type: str = "html",
    ) -> OutgoingMessage:
        subject = original.subject or ""
        if not subject.lower().startswith("re:"):
            subject = f"Re: {subject}".strip()
        rfc_message_id = original.header("message-id")
        references = original.references
        if rfc_message_id and rfc_message_id not in references:
            references = [*references, rfc_message_id]
        reply_target = original.header("reply-to") or original.sender or ""
        recipients = to or [addr for _, addr in getaddresses([reply_target]) if addr]
        return cls(
            to=recipients,
            subject=subject,
            body=body,
            body_type=body_type,
            in_reply_to=rfc_message_id,
            references=references,
            thread_id=original.thread_id,
        )


@dataclass(slots=True)
class SentMessage:
    id: str
    thread_id: str | None
    label_ids: list[str] = field(default_factory=list)
