from __future__ import annotations

import base64
from email.message import EmailMessage
from email.policy import SMTP

from mailsync.sources.models import OutgoingMessage


def encode_base64url(data: bytes) -> str:
    """URL-safe alphabet, padding stripped, as Gmail expects for ``raw``."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_base64url(value: str) -> bytes:
    cleaned = "".join(value.split())
    padding = -len(cleaned) % 4
    # Gmail occasionally hands back the standard alphabet in attachment data.
    cleaned = cleaned.replace("+", "-").replace("/", "_")
    return base64.b64decode(cleaned + "=" * padding, altchars=b"-_", validate=True)


def build_mime_message(message: OutgoingMessage) -> EmailMessage:
    if not message.to:
        raise ValueError("Outgoing message needs at least one recipient")
    if message.body_type not in {"html", "plain"}:
        raise ValueError(f"Unsupported body type: {message.body_type}")

    mime = EmailMessage(policy=SMTP)
    if message.sender:
        mime["From"] = message.sender
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    if message.bcc:
        mime["Bcc"] = ", ".join(message.bcc)
    mime["Subject"] = message.subject
    if message.reply_to:
        mime["Reply-To"] = message.reply_to
    if message.in_reply_to:
        mime["In-Reply-To"] = message.in_reply_to
    if message.references:
        mime["References"] = " ".join(message.references)
    mime.set_content(message.body, subtype=message.body_type, charset="utf-8")
    return mime


def build_raw_message(message: OutgoingMessage) -> str:
    return encode_base64url(build_mime_message(message).as_bytes())
