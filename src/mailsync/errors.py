from __future__ import annotations


class MailSyncError(Exception):
    user_message = "Something went wrong while talking to the mail provider."


class AccountNotFoundError(MailSyncError):
    user_message = "Mailbox is not connected."

    def __init__(self, account_id: str):
        super().__init__(f"Connected account not found: {account_id}")
        self.account_id = account_id


class AuthError(MailSyncError):
    """Refresh token rejected. The account needs user re-consent, never retried."""

    user_message = "Please reconnect your mailbox."

    def __init__(self, message: str, account_id: str | None = None):
        super().__init__(message)
        self.account_id = account_id


class AccountInactiveError(AuthError):
    pass


class RetryableError(MailSyncError):
    """Network, timeout or 5xx. Safe to retry with backoff, account state untouched."""

    user_message = "Try again shortly."

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class DeadlineExceeded(RetryableError):
    pass


class ProviderError(MailSyncError):
    def __init__(
        self,
        status: int,
        message: str,
        reason: str | None = None,
        *,
        rate_limited: bool = False,
        retry_after: float | None = None,
    ):
        super().__init__(f"Provider error {status}: {message}")
        self.status = status
        self.provider_message = message
        self.reason = reason
        self.rate_limited = rate_limited
        self.retry_after = retry_after

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.rate_limited:
            return "Try again shortly."
        return self.provider_message


class StaleCursorError(MailSyncError):
    """History cursor is older than the provider keeps history for."""

    def __init__(self, history_id: str | None, message: str = "History cursor expired"):
        super().__init__(f"{message} (startHistoryId={history_id})")
        self.history_id = history_id


class ParseError(MailSyncError):
    pass


__all__ = [
    "MailSyncError",
    "AccountNotFoundError",
    "AuthError",
    "AccountInactiveError",
    "RetryableError",
    "DeadlineExceeded",
    "ProviderError",
    "StaleCursorError",
    "ParseError",
]
