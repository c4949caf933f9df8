from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from mailsync.config import OAuthClientConfig, Settings
from mailsync.core import KeyedLocks
from mailsync.core.db import MailRepository
from mailsync.services import DisconnectService, SyncService
from mailsync.sources.gmail import GmailGateway, GmailMutations, TokenManager

API = "https://gmail.googleapis.com/gmail/v1/"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        text: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else (text or "")
        self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


@dataclass
class Call:
    method: str
    url: str
    params: Any = None
    data: Any = None
    json: Any = None
    headers: dict[str, str] | None = None
    timeout: float | None = None

    @property
    def param_list(self) -> list[tuple[str, Any]]:
        if self.params is None:
            return []
        if isinstance(self.params, dict):
            return list(self.params.items())
        return list(self.params)

    def param(self, name: str) -> Any:
        values = [value for key, value in self.param_list if key == name]
        return values[0] if values else None


class FakeSession:
    """Stands in for requests.Session: scripted responses per (method, url suffix)."""

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, list[Any]]] = []
        self.calls: list[Call] = []

    def add(self, method: str, suffix: str, *responses: Any) -> FakeSession:
        self.routes.append((method, suffix, list(responses)))
        return self

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        call = Call(method=method, url=url, **kwargs)
        self.calls.append(call)
        for route_method, suffix, queue in self.routes:
            if route_method != method or not url.endswith(suffix) or not queue:
                continue
            item = queue.pop(0)
            if callable(item) and not isinstance(item, FakeResponse):
                item = item(call)
            if isinstance(item, BaseException):
                raise item
            return item
        raise AssertionError(f"Unexpected request: {method} {url}")

    def calls_to(self, suffix: str, method: str | None = None) -> list[Call]:
        return [
            call
            for call in self.calls
            if call.url.endswith(suffix) and (method is None or call.method == method)
        ]


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def b64url(text: str | bytes) -> str:
    data = text.encode("utf-8") if isinstance(text, str) else text
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def gmail_message(
    message_id: str,
    thread_id: str = "t1",
    *,
    labels: list[str] | None = None,
    text: str | None = "Hello",
    html: str | None = "<p>Hello</p>",
    subject: str = "Greetings",
    sender: str = "Alice <alice@example.com>",
    internal_date: str = "1767225600000",
) -> dict[str, Any]:
    parts = []
    if text is not None:
        parts.append({"partId": "0", "mimeType": "text/plain", "body": {"size": len(text), "data": b64url(text)}})
    if html is not None:
        parts.append({"partId": "1", "mimeType": "text/html", "body": {"size": len(html), "data": b64url(html)}})
    return {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": (text or "")[:50],
        "internalDate": internal_date,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "owner@example.com"},
                {"name": "Subject", "value": subject},
                {"name": "Message-ID", "value": f"<{message_id}@mail.example.com>"},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


def token_ok(access_token: str = "fresh-token", expires_in: int = 3600, **extra: Any) -> FakeResponse:
    return FakeResponse(200, {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer", **extra})


def google_error(status: int, message: str = "error", reason: str | None = None) -> FakeResponse:
    error: dict[str, Any] = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"reason": reason, "message": message}]
    return FakeResponse(status, {"error": error})


@pytest.fixture()
def repository(tmp_path: Path):
    repo = MailRepository(tmp_path / "mailsync.sqlite3")
    repo.migrate()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(tmp_path: Path, monkeypatch) -> Settings:  # noqa: ANN001
    for name in ["GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET", "MAILSYNC_HOME", "MAILSYNC_SYNC_LABELS"]:
        monkeypatch.delenv(name, raising=False)
    root = tmp_path / "project"
    root.mkdir(parents=True, exist_ok=True)
    s = Settings.load(base_dir=root)
    s.ensure_directories()
    return s


@pytest.fixture()
def test_logger() -> logging.Logger:
    logger = logging.getLogger("mailsync-test")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.INFO)
    return logger


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def oauth() -> OAuthClientConfig:
    return OAuthClientConfig(client_id="client-id", client_secret="client-secret")


@pytest.fixture()
def account(repository: MailRepository, clock: FrozenClock):
    return repository.create_account(
        "org-1",
        "owner@example.com",
        "refresh-1",
        access_token="cached-token",
        expires_at=clock() + timedelta(hours=1),
        account_id="acc-1",
    )


@pytest.fixture()
def tokens(repository, oauth, session, clock, test_logger) -> TokenManager:  # noqa: ANN001
    return TokenManager(repository, oauth, session, clock=clock, locks=KeyedLocks(), logger=test_logger)


@pytest.fixture()
def sleeps() -> list[float]:
    """Backoff waits the gateway asked for, recorded instead of slept."""
    return []


@pytest.fixture()
def gateway(tokens, session, test_logger, sleeps) -> GmailGateway:  # noqa: ANN001
    return GmailGateway(tokens, session, sleep=sleeps.append, logger=test_logger)


@pytest.fixture()
def mutations(gateway, test_logger) -> GmailMutations:  # noqa: ANN001
    return GmailMutations(gateway, logger=test_logger)


@pytest.fixture()
def sync_service(repository, gateway, test_logger, clock) -> SyncService:  # noqa: ANN001
    return SyncService(repository, repository, gateway, test_logger, runs=repository, max_threads=10, clock=clock)


@pytest.fixture()
def disconnect_service(repository, gateway, test_logger, sync_service) -> DisconnectService:  # noqa: ANN001
    return DisconnectService(repository, gateway, repository, test_logger, sync_locks=sync_service.locks)
