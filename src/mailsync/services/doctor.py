from __future__ import annotations

import platform
import sys

from mailsync.config import Settings
from mailsync.core.db import MailRepository, pending_migrations


def run_doctor_checks(settings: Settings, repository: MailRepository | None = None) -> list[dict[str, str]]:
    checks: list[dict[str, str]] = []

    checks.append(
        {
            "check": "python_version",
            "status": "ok" if sys.version_info >= (3, 11) else "warn",
            "detail": platform.python_version(),
        }
    )

    checks.append(
        {
            "check": "db_parent",
            "status": "ok" if settings.db_path.parent.exists() else "warn",
            "detail": str(settings.db_path.parent),
        }
    )

    checks.append(
        {
            "check": "oauth_client",
            "status": "ok" if settings.oauth.configured else "warn",
            "detail": (
                "client id/secret configured"
                if settings.oauth.configured
                else f"set GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET or {settings.gmail_client_secret_path}"
            ),
        }
    )

    if repository is None:
        return checks

    pending = pending_migrations(repository.connection)
    checks.append(
        {
            "check": "schema",
            "status": "ok" if not pending else "warn",
            "detail": "up to date" if not pending else ", ".join(path.name for path in pending),
        }
    )

    for account in repository.list_accounts():
        if account.is_active:
            status, detail = "ok", f"last sync {account.last_sync_at or 'never'}"
        else:
            status, detail = "warn", account.error_message or "inactive, reconnect required"
        if account.is_active and account.error_message:
            status, detail = "warn", account.error_message
        checks.append({"check": f"account_{account.email}", "status": status, "detail": detail})

    return checks
