from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, stop_any, wait_exponential

from mailsync.core import Deadline
from mailsync.errors import DeadlineExceeded, ProviderError, RetryableError, StaleCursorError
from mailsync.sources.gmail.tokens import TokenManager
from mailsync.sources.models import (
    HistoryPage,
    HistoryRecord,
    MailProfile,
    SentMessage,
    ThreadPage,
    ThreadSummary,
)

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class RevokeOutcome(enum.Enum):
    REVOKED = "revoked"
    # Revocation failures are tolerated by policy: the token may already be dead.
    IGNORED = "ignored"
    SKIPPED = "skipped"


def _decode_google_error(response: requests.Response) -> tuple[str, str | None]:
    """Returns ``(message, reason)`` from a Google JSON error body."""
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:200] or f"HTTP {response.status_code}", None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        reason = None
        details = error.get("errors") or []
        if details and isinstance(details[0], dict):
            reason = details[0].get("reason")
        return str(error.get("message") or f"HTTP {response.status_code}"), reason or error.get("status")
    if isinstance(error, str):
        return str(payload.get("error_description") or error), error
    return f"HTTP {response.status_code}", None


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _should_retry(exc: BaseException) -> bool:
    """Transient failures and rate limits back off; a spent deadline never does."""
    if isinstance(exc, DeadlineExceeded):
        return False
    if isinstance(exc, RetryableError):
        return True
    return isinstance(exc, ProviderError) and exc.rate_limited


def _malformed(what: str, exc: Exception) -> RetryableError:
    return RetryableError(f"Malformed {what} response: {exc.__class__.__name__}: {exc}")


class GmailGateway:
    """Authenticated JSON client for the Gmail REST API.

    Raw provider errors never leave this class: every failure is turned into
    one of RetryableError, ProviderError or StaleCursorError here.
    """

    def __init__(
        self,
        tokens: TokenManager,
        session: requests.Session | None = None,
        *,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        revoke_url: str = "https://oauth2.googleapis.com/revoke",
        timeout_sec: float = 10.0,
        max_attempts: int = 4,
        backoff_base_sec: float = 1.0,
        backoff_max_sec: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.tokens = tokens
        self.session = session or tokens.session
        self.base_url = base_url.rstrip("/")
        self.revoke_url = revoke_url
        self.timeout_sec = timeout_sec
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_sec = backoff_base_sec
        self.backoff_max_sec = backoff_max_sec
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def _timeout(self, deadline: Deadline | None) -> float:
        return deadline.timeout(self.timeout_sec) if deadline else self.timeout_sec

    def _backoff(self, deadline: Deadline | None) -> Callable[[RetryCallState], float]:
        exponential = wait_exponential(multiplier=self.backoff_base_sec, max=self.backoff_max_sec)

        def wait(retry_state: RetryCallState) -> float:
            delay = exponential(retry_state)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, min(retry_after, self.backoff_max_sec))
            remaining = deadline.remaining() if deadline else None
            if remaining is not None:
                delay = min(delay, remaining)
            return delay

        return wait

    def _log_retry(self, method: str, path: str) -> Callable[[RetryCallState], None]:
        def log(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            self.logger.warning(
                "%s %s failed (attempt %s/%s), backing off %.1fs: %s",
                method,
                path,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                exc,
            )

        return log

    def request(
        self,
        account_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        body: dict[str, Any] | None = None,
        deadline: Deadline | None = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """One API call, retried with exponential backoff on transient failures and rate limits.

        ``Retry-After`` raises the wait, the caller's deadline caps it and stops
        further attempts. After the last attempt the original error is raised.
        """
        if not retry:
            return self._request_once(account_id, method, path, params=params, body=body, deadline=deadline)

        retrying = Retrying(
            stop=stop_any(
                stop_after_attempt(self.max_attempts),
                lambda retry_state: deadline is not None and deadline.expired(),
            ),
            wait=self._backoff(deadline),
            retry=retry_if_exception(_should_retry),
            before_sleep=self._log_retry(method, path),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(self._request_once, account_id, method, path, params=params, body=body, deadline=deadline)

    def _request_once(
        self,
        account_id: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        body: dict[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> dict[str, Any]:
        token = self.tokens.ensure_access_token(account_id, deadline)
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                timeout=self._timeout(deadline),
            )
        except requests.Timeout as exc:
            raise RetryableError(f"{method} {path} timed out") from exc
        except requests.RequestException as exc:
            raise RetryableError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise RetryableError(f"{method} {path} returned invalid JSON", status=status) from exc

        message, reason = _decode_google_error(response)
        if status == 401:
            self.tokens.invalidate(account_id, token)
            raise RetryableError(f"Access token rejected: {message}", status=status)
        if status >= 500 or status == 408:
            raise RetryableError(f"{method} {path} returned {status}: {message}", status=status)
        rate_limited = status == 429 or (status == 403 and reason in RATE_LIMIT_REASONS)
        raise ProviderError(
            status,
            message,
            reason,
            rate_limited=rate_limited,
            retry_after=_retry_after(response),
        )

    def get_profile(self, account_id: str, deadline: Deadline | None = None) -> MailProfile:
        payload = self.request(account_id, "GET", "users/me/profile", deadline=deadline)
        try:
            return MailProfile(
                email_address=payload.get("emailAddress", ""),
                messages_total=int(payload.get("messagesTotal", 0)),
                threads_total=int(payload.get("threadsTotal", 0)),
                history_id=str(payload["historyId"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise _malformed("profile", exc) from exc

    def list_threads(
        self,
        account_id: str,
        *,
        max_results: int = 50,
        page_token: str | None = None,
        query: str | None = None,
        label_ids: Iterable[str] = (),
        deadline: Deadline | None = None,
    ) -> ThreadPage:
        params: list[tuple[str, Any]] = [("maxResults", max_results)]
        if page_token:
            params.append(("pageToken", page_token))
        if query:
            params.append(("q", query))
        params.extend(("labelIds", label) for label in label_ids)

        payload = self.request(account_id, "GET", "users/me/threads", params=params, deadline=deadline)
        try:
            threads = [
                ThreadSummary(id=item["id"], snippet=item.get("snippet", ""), history_id=item.get("historyId"))
                for item in payload.get("threads", [])
            ]
        except (AttributeError, KeyError, TypeError) as exc:
            raise _malformed("thread list", exc) from exc
        return ThreadPage(
            threads=threads,
            next_page_token=payload.get("nextPageToken"),
            result_size_estimate=payload.get("resultSizeEstimate"),
        )

    def get_thread(self, account_id: str, thread_id: str, deadline: Deadline | None = None) -> dict[str, Any]:
        return self.request(
            account_id, "GET", f"users/me/threads/{thread_id}", params={"format": "full"}, deadline=deadline
        )

    def get_message(self, account_id: str, message_id: str, deadline: Deadline | None = None) -> dict[str, Any]:
        return self.request(
            account_id, "GET", f"users/me/messages/{message_id}", params={"format": "full"}, deadline=deadline
        )

    def list_history(
        self,
        account_id: str,
        start_history_id: str,
        *,
        page_token: str | None = None,
        max_results: int | None = None,
        deadline: Deadline | None = None,
    ) -> HistoryPage:
        params: list[tuple[str, Any]] = [("startHistoryId", start_history_id)]
        params.extend(("historyTypes", history_type) for history_type in HISTORY_TYPES)
        if page_token:
            params.append(("pageToken", page_token))
        if max_results:
            params.append(("maxResults", max_results))
        try:
            payload = self.request(account_id, "GET", "users/me/history", params=params, deadline=deadline)
        except ProviderError as exc:
            # Gmail answers 404 when startHistoryId is outside its retention window.
            if exc.status == 404:
                raise StaleCursorError(start_history_id, exc.provider_message) from exc
            raise
        try:
            records = [HistoryRecord.from_payload(item) for item in payload.get("history", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise _malformed("history", exc) from exc
        return HistoryPage(
            records=records,
            history_id=str(payload.get("historyId") or start_history_id),
            next_page_token=payload.get("nextPageToken"),
        )

    def send_raw(
        self,
        account_id: str,
        raw: str,
        thread_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> SentMessage:
        body: dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        # Not idempotent: a retried send after a lost response would deliver twice.
        payload = self.request(
            account_id, "POST", "users/me/messages/send", body=body, deadline=deadline, retry=False
        )
        return SentMessage(
            id=payload.get("id", ""),
            thread_id=payload.get("threadId"),
            label_ids=list(payload.get("labelIds", [])),
        )

    def batch_modify(
        self,
        account_id: str,
        message_ids: list[str],
        *,
        add_label_ids: Iterable[str] = (),
        remove_label_ids: Iterable[str] = (),
        deadline: Deadline | None = None,
    ) -> None:
        body: dict[str, Any] = {"ids": list(message_ids)}
        add = list(add_label_ids)
        remove = list(remove_label_ids)
        if add:
            body["addLabelIds"] = add
        if remove:
            body["removeLabelIds"] = remove
        self.request(account_id, "POST", "users/me/messages/batchModify", body=body, deadline=deadline)

    def revoke_token(self, token: str | None) -> RevokeOutcome:
        if not token:
            return RevokeOutcome.SKIPPED
        try:
            response = self.session.request(
                "POST",
                self.revoke_url,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_sec,
            )
        except requests.RequestException as exc:
            self.logger.warning("Token revoke failed, ignoring: %s", exc.__class__.__name__)
            return RevokeOutcome.IGNORED
        if 200 <= response.status_code < 300:
            return RevokeOutcome.REVOKED
        message, _ = _decode_google_error(response)
        self.logger.info("Token revoke returned %s, ignoring: %s", response.status_code, message)
        return RevokeOutcome.IGNORED
