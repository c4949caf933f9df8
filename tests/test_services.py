from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import FakeResponse
from mailsync.services import build_services, run_doctor_checks


def test_build_services_shares_session_and_locks(settings, repository, test_logger, session) -> None:  # noqa: ANN001
    services = build_services(settings, repository, test_logger, session=session)

    assert services.gateway.session is session
    assert services.tokens.session is session
    assert services.disconnect.locks is services.tokens.locks
    assert services.disconnect.sync_locks is services.sync.locks
    assert services.gateway.max_attempts == settings.retry_attempts
    assert services.sync.max_threads == settings.max_threads


def test_built_services_work_end_to_end(settings, repository, test_logger, session, account) -> None:  # noqa: ANN001
    repository.update(account.id, {"expires_at": datetime.now(timezone.utc) + timedelta(hours=1)})
    services = build_services(settings, repository, test_logger, session=session)
    session.add("POST", "users/me/messages/batchModify", FakeResponse(204))

    assert services.mutations.archive(account.id, ["m1"]) is True
    assert session.calls[0].url == "https://gmail.googleapis.com/gmail/v1/users/me/messages/batchModify"


def test_doctor_reports_accounts(settings, repository, account) -> None:  # noqa: ANN001
    repository.update(account.id, {"is_active": False, "error_message": "Failed to refresh access token."})

    checks = {item["check"]: item for item in run_doctor_checks(settings, repository)}

    assert checks["schema"]["status"] == "ok"
    assert checks["oauth_client"]["status"] == "warn"
    assert checks["account_owner@example.com"]["status"] == "warn"
    assert checks["account_owner@example.com"]["detail"] == "Failed to refresh access token."
