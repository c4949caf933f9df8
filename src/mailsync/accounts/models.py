from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

ACCOUNT_FIELDS = frozenset(
    {
        "email",
        "access_token",
        "refresh_token",
        "expires_at",
        "is_active",
        "error_message",
        "history_id",
        "sync_enabled",
        "last_sync_at",
    }
)


@dataclass(slots=True)
class ConnectedAccount:
    id: str
    organization_id: str
    email: str
    refresh_token: str | None
    access_token: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    error_message: str | None = None
    history_id: str | None = None
    sync_enabled: bool = True
    last_sync_at: datetime | None = None

    def token_usable(self, now: datetime, buffer: timedelta) -> bool:
        # A token without a known expiry is never trusted.
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at - now > buffer


@dataclass(slots=True)
class AuditEntry:
    organization_id: str
    provider: str
    event_type: str
    message: str
