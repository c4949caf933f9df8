from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from mailsync.accounts import ConnectedAccount, CredentialStore
from mailsync.config import OAuthClientConfig
from mailsync.core import Deadline, KeyedLocks
from mailsync.errors import AccountInactiveError, AccountNotFoundError, AuthError, RetryableError

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)
DEACTIVATION_MESSAGE = "Failed to refresh access token. Please reconnect your mailbox."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Keeps a usable access token for each connected account.

    Refreshes are serialized per account id. A caller that waited for another
    caller's refresh re-reads the record and gets the token that refresh
    stored, so a refresh token is never exchanged twice concurrently.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthClientConfig,
        session: requests.Session | None = None,
        *,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        timeout_sec: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.store = store
        self.oauth = oauth
        self.session = session or requests.Session()
        self.refresh_buffer = refresh_buffer
        self.timeout_sec = timeout_sec
        self.clock = clock
        self.locks = locks or KeyedLocks()
        self.logger = logger or logging.getLogger(__name__)

    def _load(self, account_id: str) -> ConnectedAccount:
        account = self.store.load(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    @staticmethod
    def _check_active(account: ConnectedAccount) -> None:
        if not account.is_active:
            raise AccountInactiveError(
                account.error_message or "Mailbox is disconnected. Please reconnect your mailbox.",
                account_id=account.id,
            )
        if not account.refresh_token:
            raise AccountInactiveError("Account has no refresh token", account_id=account.id)

    def ensure_access_token(self, account_id: str, deadline: Deadline | None = None) -> str:
        account = self._load(account_id)
        self._check_active(account)
        if account.token_usable(self.clock(), self.refresh_buffer):
            return account.access_token  # type: ignore[return-value]

        with self.locks.hold(account_id):
            account = self._load(account_id)
            self._check_active(account)
            if account.token_usable(self.clock(), self.refresh_buffer):
                return account.access_token  # type: ignore[return-value]
            return self._refresh(account, deadline)

    def _post_token_request(self, account: ConnectedAccount, deadline: Deadline | None) -> requests.Response:
        timeout = deadline.timeout(self.timeout_sec) if deadline else self.timeout_sec
        try:
            return self.session.request(
                "POST",
                self.oauth.token_url,
                data={
                    "client_id": self.oauth.client_id,
                    "client_secret": self.oauth.client_secret,
                    "refresh_token": account.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise RetryableError(f"Token endpoint timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise RetryableError(f"Token endpoint unreachable: {exc}") from exc

    @staticmethod
    def _oauth_error(response: requests.Response) -> str:
        try:
            payload: Any = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(payload, dict):
            error = payload.get("error")
            description = payload.get("error_description")
            if isinstance(error, dict):
                return str(error.get("message") or error)
            if error and description:
                return f"{error}: {description}"
            if error:
                return str(error)
        return f"HTTP {response.status_code}"

    def _refresh(self, account: ConnectedAccount, deadline: Deadline | None) -> str:
        if not self.oauth.configured:
            raise RetryableError("OAuth client id/secret are not configured")

        started_at = self.clock()
        response = self._post_token_request(account, deadline)

        if response.status_code >= 500 or response.status_code in (408, 429):
            raise RetryableError(
                f"Token endpoint returned {response.status_code}: {self._oauth_error(response)}",
                status=response.status_code,
            )

        if response.status_code >= 400:
            reason = self._oauth_error(response)
            self.store.update(
                account.id,
                {"is_active": False, "error_message": f"{DEACTIVATION_MESSAGE} ({reason})"},
            )
            self.logger.warning("Account %s deactivated, refresh token rejected: %s", account.id, reason)
            raise AuthError(f"Refresh token rejected: {reason}", account_id=account.id)

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise RetryableError(f"Malformed token response: {exc}") from exc

        fields: dict[str, Any] = {
            "access_token": access_token,
            "expires_at": started_at + timedelta(seconds=expires_in),
            "error_message": None,
        }
        rotated = payload.get("refresh_token")
        if rotated and rotated != account.refresh_token:
            fields["refresh_token"] = rotated
        self.store.update(account.id, fields)
        self.logger.info("Access token refreshed for account %s, expires in %ss", account.id, expires_in)
        return access_token

    def invalidate(self, account_id: str, access_token: str) -> None:
        """Forget the expiry of a token the provider refused, unless it was already replaced."""
        self.store.update(account_id, {"expires_at": None}, expect={"access_token": access_token})

    def reconnect(
        self,
        account_id: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_in: int | None = None,
    ) -> None:
        with self.locks.hold(account_id):
            self._load(account_id)
            expires_at = None
            if access_token and expires_in:
                expires_at = self.clock() + timedelta(seconds=expires_in)
            self.store.update(
                account_id,
                {
                    "refresh_token": refresh_token,
                    "access_token": access_token,
                    "expires_at": expires_at,
                    "is_active": True,
                    "error_message": None,
                },
            )
        self.logger.info("Account %s reconnected", account_id)
