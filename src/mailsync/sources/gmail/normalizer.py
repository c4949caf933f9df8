from __future__ import annotations

import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from mailsync.errors import ParseError
from mailsync.sources.gmail.envelope import decode_base64url
from mailsync.sources.models import CanonicalMessage


@dataclass(frozen=True, slots=True)
class Leaf:
    mime_type: str
    data: str | None = None
    filename: str | None = None
    attachment_id: str | None = None
    size: int = 0

    @property
    def is_attachment(self) -> bool:
        return bool(self.filename or self.attachment_id)


@dataclass(frozen=True, slots=True)
class Container:
    mime_type: str
    parts: tuple[Part, ...]


Part = Union[Leaf, Container]


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_part(payload: Any) -> Part:
    """Build the tagged part tree from the provider's ``payload`` object."""
    if not isinstance(payload, dict):
        raise ParseError(f"Part must be an object, got {type(payload).__name__}")

    mime_type = str(payload.get("mimeType") or "").lower()
    raw_parts = payload.get("parts")
    if raw_parts is not None and not isinstance(raw_parts, list):
        raise ParseError("'parts' must be a list")
    if raw_parts:
        return Container(mime_type=mime_type, parts=tuple(parse_part(item) for item in raw_parts))

    if mime_type.startswith("multipart/"):
        raise ParseError(f"{mime_type} part without sub-parts")

    body = payload.get("body") or {}
    if not isinstance(body, dict):
        raise ParseError("'body' must be an object")
    data = body.get("data")
    if data is not None and not isinstance(data, str):
        raise ParseError("'body.data' must be a string")
    return Leaf(
        mime_type=mime_type,
        data=data or None,
        filename=payload.get("filename") or None,
        attachment_id=body.get("attachmentId"),
        size=_as_int(body.get("size")),
    )


def iter_leaves(root: Part):  # noqa: ANN201
    """Depth-first, document order."""
    stack: list[Part] = [root]
    while stack:
        part = stack.pop()
        if isinstance(part, Leaf):
            yield part
        else:
            stack.extend(reversed(part.parts))


def decode_text(data: str) -> str:
    try:
        raw = decode_base64url(data)
    except (binascii.Error, ValueError) as exc:
        raise ParseError(f"Body is not valid base64url: {exc}") from exc
    return raw.decode("utf-8", errors="replace")


def extract_headers(payload: dict[str, Any]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in payload.get("headers") or []:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if name:
            result.setdefault(name.lower(), item.get("value", ""))
    return result


def extract_bodies(root: Part) -> tuple[str | None, str | None, bool]:
    """Returns ``(text_body, html_body, has_attachments)``."""
    text_body: str | None = None
    html_body: str | None = None
    has_attachments = False
    has_inline_content = False

    for leaf in iter_leaves(root):
        if leaf.is_attachment:
            has_attachments = True
            continue
        if leaf.data:
            has_inline_content = True
        if leaf.mime_type == "text/plain" and text_body is None and leaf.data:
            text_body = decode_text(leaf.data)
        elif leaf.mime_type == "text/html" and html_body is None and leaf.data:
            html_body = decode_text(leaf.data)

    if has_inline_content and text_body is None and html_body is None:
        raise ParseError("Message has a body but no text/plain or text/html part")
    return text_body, html_body, has_attachments


def _received_at(raw: dict[str, Any]) -> datetime | None:
    internal_date = raw.get("internalDate")
    if internal_date in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def normalize(raw: dict[str, Any]) -> CanonicalMessage:
    """Convert a ``format=full`` message resource into a CanonicalMessage.

    Pure: no network access and no clock. A malformed part tree does not
    raise; the message comes back with empty bodies and ``parse_error`` set,
    so one bad message never aborts a sync batch.
    """
    payload = raw.get("payload") or {}
    headers = extract_headers(payload) if isinstance(payload, dict) else {}

    text_body: str | None = None
    html_body: str | None = None
    has_attachments = False
    parse_error = False
    try:
        root = parse_part(payload)
        text_body, html_body, has_attachments = extract_bodies(root)
    except ParseError:
        text_body = html_body = None
        parse_error = True

    return CanonicalMessage(
        message_id=str(raw.get("id", "")),
        thread_id=raw.get("threadId"),
        label_ids=frozenset(raw.get("labelIds") or []),
        received_at=_received_at(raw),
        text_body=text_body,
        html_body=html_body,
        headers=headers,
        snippet=raw.get("snippet") or "",
        has_attachments=has_attachments,
        parse_error=parse_error,
    )
