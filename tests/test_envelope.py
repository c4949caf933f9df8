from __future__ import annotations

import email
from email import policy

import pytest

from conftest import FakeResponse, gmail_message
from mailsync.sources.gmail import build_raw_message, decode_base64url, encode_base64url, normalize
from mailsync.sources.models import OutgoingMessage


def _parse(raw: str) -> email.message.EmailMessage:
    return email.message_from_bytes(decode_base64url(raw), policy=policy.default)


def test_raw_message_round_trips_through_base64url() -> None:
    message = OutgoingMessage(
        to=["bob@example.com", "carol@example.com"],
        cc=["dave@example.com"],
        subject="Quarterly numbers",
        body="<p>See attached summary</p>",
        in_reply_to="<orig@mail.example.com>",
        references=["<root@mail.example.com>", "<orig@mail.example.com>"],
    )

    raw = build_raw_message(message)
    parsed = _parse(raw)

    assert parsed["To"] == "bob@example.com, carol@example.com"
    assert parsed["Cc"] == "dave@example.com"
    assert parsed["Subject"] == "Quarterly numbers"
    assert parsed["In-Reply-To"] == "<orig@mail.example.com>"
    assert parsed["References"] == "<root@mail.example.com> <orig@mail.example.com>"
    assert parsed.get_content_type() == "text/html"
    assert parsed.get_content().strip() == "<p>See attached summary</p>"


def test_raw_message_uses_url_safe_alphabet_without_padding() -> None:
    message = OutgoingMessage(to=["bob@example.com"], subject="Привет ??>>", body="ÿÿÿ???>>>" * 40, body_type="plain")

    raw = build_raw_message(message)

    assert "+" not in raw
    assert "/" not in raw
    assert not raw.endswith("=")
    assert _parse(raw)["Subject"] == "Привет ??>>"


def test_encode_decode_base64url() -> None:
    data = bytes(range(256))
    assert decode_base64url(encode_base64url(data)) == data
    assert decode_base64url("-_-_") == b"\xfb\xff\xbf"
    assert decode_base64url("+/+/") == b"\xfb\xff\xbf"


def test_message_without_recipients_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_raw_message(OutgoingMessage(to=[], subject="x", body="y"))


def test_reply_builds_threading_headers() -> None:
    original = normalize(gmail_message("m1", thread_id="t9", subject="Invoice", sender="Alice <alice@example.com>"))

    reply = OutgoingMessage.reply(original, "Thanks!", body_type="plain")

    assert reply.subject == "Re: Invoice"
    assert reply.to == ["alice@example.com"]
    assert reply.thread_id == "t9"
    assert reply.in_reply_to == "<m1@mail.example.com>"
    assert reply.references == ["<m1@mail.example.com>"]
    assert OutgoingMessage.reply(normalize(gmail_message("m2", subject="RE: Invoice")), "ok").subject == "RE: Invoice"


def test_send_message_posts_raw_and_thread(mutations, session, account) -> None:  # noqa: ANN001
    session.add(
        "POST",
        "users/me/messages/send",
        FakeResponse(200, {"id": "sent-1", "threadId": "t9", "labelIds": ["SENT"]}),
    )
    message = OutgoingMessage(to=["bob@example.com"], subject="Hi", body="<p>Hi</p>", thread_id="t9")

    sent = mutations.send_message(account.id, message)

    assert sent.id == "sent-1"
    assert sent.label_ids == ["SENT"]
    body = session.calls[0].json
    assert body["threadId"] == "t9"
    assert _parse(body["raw"])["Subject"] == "Hi"
