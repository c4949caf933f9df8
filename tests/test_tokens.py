from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest
import requests

from conftest import T0, FakeResponse, token_ok
from mailsync.errors import AccountInactiveError, AuthError, RetryableError
from mailsync.sources.gmail.tokens import DEACTIVATION_MESSAGE

TOKEN = "oauth2.googleapis.com/token"


def test_usable_token_is_returned_without_network(tokens, session, account) -> None:  # noqa: ANN001
    assert tokens.ensure_access_token(account.id) == "cached-token"
    assert session.calls == []


def test_token_inside_refresh_buffer_is_refreshed(tokens, session, repository, clock) -> None:  # noqa: ANN001
    repository.create_account(
        "org-1",
        "owner@example.com",
        "refresh-1",
        access_token="old-token",
        expires_at=T0 + timedelta(minutes=4),
        account_id="acc-1",
    )
    session.add("POST", TOKEN, token_ok("new-token", 3600))

    assert tokens.ensure_access_token("acc-1") == "new-token"

    stored = repository.load("acc-1")
    assert stored.access_token == "new-token"
    assert stored.expires_at == T0 + timedelta(seconds=3600)
    call = session.calls_to(TOKEN)[0]
    assert call.data["grant_type"] == "refresh_token"
    assert call.data["refresh_token"] == "refresh-1"
    assert call.data["client_id"] == "client-id"


def test_refresh_cycle_follows_expiry(tokens, session, repository, clock) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    session.add("POST", TOKEN, token_ok("token-a", 3600), token_ok("token-b", 3600))

    assert tokens.ensure_access_token("acc-1") == "token-a"

    clock.advance(60)
    assert tokens.ensure_access_token("acc-1") == "token-a"
    assert len(session.calls_to(TOKEN)) == 1

    clock.advance(3600)
    assert tokens.ensure_access_token("acc-1") == "token-b"
    assert len(session.calls_to(TOKEN)) == 2


def test_rejected_refresh_token_deactivates_account(tokens, session, repository, clock) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    session.add(
        "POST",
        TOKEN,
        FakeResponse(400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}),
    )

    with pytest.raises(AuthError):
        tokens.ensure_access_token("acc-1")

    stored = repository.load("acc-1")
    assert stored.is_active is False
    assert stored.error_message.startswith(DEACTIVATION_MESSAGE)
    assert "invalid_grant" in stored.error_message

    with pytest.raises(AccountInactiveError):
        tokens.ensure_access_token("acc-1")
    assert len(session.calls_to(TOKEN)) == 1


@pytest.mark.parametrize(
    "outcome",
    [
        FakeResponse(503, text="unavailable"),
        FakeResponse(429, {"error": "rate_limited"}),
        requests.ConnectTimeout("slow"),
        requests.ConnectionError("down"),
        FakeResponse(200, text="not json"),
    ],
)
def test_transient_refresh_failure_leaves_account_untouched(tokens, session, repository, outcome) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    before = repository.load("acc-1")
    session.add("POST", TOKEN, outcome)

    with pytest.raises(RetryableError):
        tokens.ensure_access_token("acc-1")

    assert repository.load("acc-1") == before


def test_rotated_refresh_token_is_persisted(tokens, session, repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    session.add("POST", TOKEN, token_ok("token-a", 3600, refresh_token="refresh-2"))

    tokens.ensure_access_token("acc-1")

    assert repository.load("acc-1").refresh_token == "refresh-2"


def test_concurrent_callers_share_one_refresh(tokens, session, repository) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")

    def slow_token(call):  # noqa: ANN001, ANN202
        time.sleep(0.2)
        return token_ok("shared-token", 3600)

    session.add("POST", TOKEN, slow_token)
    results: list[str] = []
    errors: list[BaseException] = []

    def worker() -> None:
        try:
            results.append(tokens.ensure_access_token("acc-1"))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert results == ["shared-token"] * 5
    assert len(session.calls_to(TOKEN)) == 1


def test_unconfigured_oauth_client_is_retryable(repository, session, clock, test_logger) -> None:  # noqa: ANN001
    from mailsync.config import OAuthClientConfig
    from mailsync.sources.gmail import TokenManager

    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    manager = TokenManager(repository, OAuthClientConfig(None, None), session, clock=clock, logger=test_logger)

    with pytest.raises(RetryableError):
        manager.ensure_access_token("acc-1")
    assert session.calls == []


def test_invalidate_only_clears_matching_token(tokens, repository, account) -> None:  # noqa: ANN001
    tokens.invalidate(account.id, "some-other-token")
    assert repository.load(account.id).expires_at is not None

    tokens.invalidate(account.id, "cached-token")
    assert repository.load(account.id).expires_at is None


def test_reconnect_reactivates_account(tokens, session, repository, clock) -> None:  # noqa: ANN001
    repository.create_account("org-1", "owner@example.com", "refresh-1", account_id="acc-1")
    repository.update("acc-1", {"is_active": False, "error_message": DEACTIVATION_MESSAGE})

    tokens.reconnect("acc-1", "refresh-2", "token-x", 3600)

    stored = repository.load("acc-1")
    assert stored.is_active is True
    assert stored.error_message is None
    assert stored.refresh_token == "refresh-2"
    assert tokens.ensure_access_token("acc-1") == "token-x"
    assert session.calls == []
