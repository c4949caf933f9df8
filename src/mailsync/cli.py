from __future__ import annotations

import subprocess
import sys
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timezone
from pathlib import Path
from typing import TypeVar

import requests
import typer
from dateutil import parser as dt_parser
from rich import print
from rich.markup import escape

from mailsync.config import Settings
from mailsync.core import Deadline
from mailsync.core.db import MailRepository
from mailsync.core.logging import configure_logging, get_logger
from mailsync.errors import (
    AccountNotFoundError,
    AuthError,
    MailSyncError,
    ProviderError,
    RetryableError,
)
from mailsync.services import MailServices, build_services, run_doctor_checks
from mailsync.sources.models import OutgoingMessage

app = typer.Typer(no_args_is_help=True, help="mailsync CLI: connected Gmail mailboxes, sync and mutations")

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

T = TypeVar("T")


def _load_settings(base_dir: Path | None = None) -> Settings:
    settings = Settings.load(base_dir=base_dir)
    settings.ensure_directories()
    return settings


@contextmanager
def _services(command: str) -> Iterator[tuple[MailRepository, MailServices]]:
    settings = _load_settings()
    correlation_id = uuid.uuid4().hex
    configure_logging(settings.logs_dir, correlation_id=correlation_id, console=False)
    logger = get_logger(f"mailsync.{command}", correlation_id, command=command)
    with MailRepository(settings.db_path) as repository:
        repository.migrate()
        yield repository, build_services(settings, repository, logger)


def _guard(action: Callable[[], T]) -> T:
    """Turns core errors into a short message and a non-zero exit code."""
    try:
        return action()
    except AccountNotFoundError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(2) from exc
    except AuthError as exc:
        print(f"[red]{exc.user_message}[/red] ({exc})")
        raise typer.Exit(3) from exc
    except RetryableError as exc:
        print(f"[yellow]{exc.user_message}[/yellow] ({exc})")
        raise typer.Exit(4) from exc
    except ProviderError as exc:
        colour = "yellow" if exc.rate_limited else "red"
        print(f"[{colour}]{exc.user_message}[/{colour}] (HTTP {exc.status}, {exc.reason or 'no reason'})")
        raise typer.Exit(5) from exc
    except MailSyncError as exc:
        print(f"[red]{exc.__class__.__name__}[/red]: {exc}")
        raise typer.Exit(1) from exc


def _deadline(timeout: float | None) -> Deadline | None:
    return Deadline(timeout) if timeout else None


@app.command("init")
def init_command(
    base_dir: Path | None = typer.Option(None, help="Project root (defaults to the current directory)"),
) -> None:
    settings = _load_settings(base_dir=base_dir)
    with MailRepository(settings.db_path) as repository:
        executed = repository.migrate()
    print(f"[green]Initialized[/green]. DB: {settings.db_path}")
    print(f"Migrations: {executed if executed else 'none pending'}")


@app.command("connect")
def connect_command(
    org: str = typer.Option(..., help="Owning organization id"),
) -> None:
    """Run the installed-app OAuth consent and store (or reconnect) the mailbox."""
    from google_auth_oauthlib.flow import InstalledAppFlow

    settings = _load_settings()
    if not settings.gmail_client_secret_path.exists():
        print(f"[red]Gmail OAuth client secret not found[/red]: {settings.gmail_client_secret_path}")
        raise typer.Exit(1)

    flow = InstalledAppFlow.from_client_secrets_file(str(settings.gmail_client_secret_path), GMAIL_SCOPES)
    creds = flow.run_local_server(port=0, access_type="offline", prompt="consent")
    if not creds.refresh_token:
        print("[red]Google did not return a refresh token[/red]. Remove the app grant and try again.")
        raise typer.Exit(1)

    response = requests.get(
        f"{settings.api_base_url}/users/me/profile",
        headers={"Authorization": f"Bearer {creds.token}"},
        timeout=settings.http_timeout_sec,
    )
    response.raise_for_status()
    email = response.json()["emailAddress"]
    expires_at = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None

    with _services("connect") as (repository, services):
        existing = repository.find_account(org, email)
        if existing:
            expires_in = None
            if expires_at:
                expires_in = int((expires_at - services.tokens.clock()).total_seconds())
            services.tokens.reconnect(existing.id, creds.refresh_token, creds.token, expires_in)
            print(f"[green]Reconnected[/green] {email} (account {existing.id})")
        else:
            account = repository.create_account(
                org, email, creds.refresh_token, access_token=creds.token, expires_at=expires_at
            )
            print(f"[green]Connected[/green] {email} (account {account.id})")


@app.command("accounts")
def accounts_command(org: str | None = typer.Option(None, help="Organization id filter")) -> None:
    with _services("accounts") as (repository, _):
        accounts = repository.list_accounts(org)
    if not accounts:
        print("[yellow]No connected mailboxes[/yellow]")
    for account in accounts:
        state = "[green]active[/green]" if account.is_active else "[red]inactive[/red]"
        print(f"- {account.id} {account.email} org={account.organization_id} {state} cursor={account.history_id}")
        if account.error_message:
            print(f"    error: {account.error_message}")


@app.command("status")
def status_command(org: str = typer.Option(..., help="Organization id")) -> None:
    with _services("status") as (repository, _):
        status = repository.sync_status(org)
    print(f"Threads: {status['total_threads']}, unread: {status['unread_threads']}")
    for item in status["accounts"]:
        print(
            f"- {item['email']}: active={item['is_active']} sync={item['sync_enabled']} "
            f"last_sync={item['last_sync_at']} threads={item['thread_count']} messages={item['message_count']}"
        )
        if item["error_message"]:
            print(f"    error: {item['error_message']}")


@app.command("sync")
def sync_command(
    account: str | None = typer.Option(None, help="Account id"),
    org: str | None = typer.Option(None, help="Sync every active account of an organization"),
    full: bool = typer.Option(False, "--full", help="Full resync instead of incremental history"),
    timeout: float | None = typer.Option(None, help="Overall deadline in seconds"),
) -> None:
    if bool(account) == bool(org):
        raise typer.BadParameter("Pass exactly one of --account or --org")

    with _services("sync") as (_, services):
        if account:
            results = [_guard(lambda: services.sync.sync_account(account, full=full, deadline=_deadline(timeout)))]
        else:
            results = services.sync.sync_organization(org, full=full, deadline=_deadline(timeout))

    for result in results:
        if result.success:
            print(
                f"[green]{result.email}[/green] {result.mode}: threads={result.threads_processed} "
                f"messages={result.messages_processed} new={result.new_messages} "
                f"removed={result.removed_messages} labels={result.label_changes} cursor={result.history_id}"
            )
        else:
            print(f"[red]{result.email}[/red]: {result.error}")


@app.command("threads")
def threads_command(
    account: str = typer.Option(..., help="Account id"),
    max_results: int = typer.Option(20, "--max", help="Page size"),
    page_token: str | None = typer.Option(None, help="Continue from a previous page"),
    query: str | None = typer.Option(None, help="Gmail search expression"),
    label: list[str] = typer.Option([], help="Restrict to label id (repeatable)"),
    since: str | None = typer.Option(None, help="Only threads after this date"),
) -> None:
    parts = [query] if query else []
    if since:
        parts.append(f"after:{dt_parser.parse(since).strftime('%Y/%m/%d')}")

    with _services("threads") as (_, services):
        page = _guard(
            lambda: services.sync.list_threads(
                account,
                max_results=max_results,
                page_token=page_token,
                query=" ".join(parts) or None,
                label_ids=label,
            )
        )
    for summary in page.threads:
        print(f"- {summary.id}: {summary.snippet[:100]}")
    if page.next_page_token:
        print(f"next page: --page-token {page.next_page_token}")


@app.command("send")
def send_command(
    account: str = typer.Option(..., help="Account id"),
    to: list[str] = typer.Option(..., help="Recipient (repeatable)"),
    subject: str = typer.Option(..., help="Subject"),
    body: str | None = typer.Option(None, help="Body text"),
    body_file: Path | None = typer.Option(None, help="Read the body from a file"),
    cc: list[str] = typer.Option([], help="Cc recipient (repeatable)"),
    bcc: list[str] = typer.Option([], help="Bcc recipient (repeatable)"),
    thread_id: str | None = typer.Option(None, help="Thread to reply into"),
    in_reply_to: str | None = typer.Option(None, help="Message-ID header of the message replied to"),
    plain: bool = typer.Option(False, "--plain", help="Send text/plain instead of text/html"),
) -> None:
    if body_file:
        body = body_file.read_text(encoding="utf-8")
    if body is None:
        raise typer.BadParameter("Pass --body or --body-file")

    message = OutgoingMessage(
        to=to,
        cc=cc,
        bcc=bcc,
        subject=subject,
        body=body,
        body_type="plain" if plain else "html",
        thread_id=thread_id,
        in_reply_to=in_reply_to,
        references=[in_reply_to] if in_reply_to else [],
    )
    with _services("send") as (_, services):
        sent = _guard(lambda: services.mutations.send_message(account, message))
    print(f"[green]Sent[/green] id={sent.id} thread={sent.thread_id}")


def _report_batch(action: str, ok: bool, count: int) -> None:
    if ok:
        print(f"[green]{action}[/green]: {count} message(s)")
    else:
        print(f"[red]{action} failed[/red] for the whole batch of {count} message(s)")
        raise typer.Exit(1)


@app.command("mark-read")
def mark_read_command(
    account: str = typer.Option(..., help="Account id"),
    message_ids: list[str] = typer.Argument(..., help="Provider message ids"),
    unread: bool = typer.Option(False, "--unread", help="Mark unread instead"),
) -> None:
    with _services("mark-read") as (_, services):
        if unread:
            ok = _guard(lambda: services.mutations.mark_unread(account, message_ids))
        else:
            ok = _guard(lambda: services.mutations.mark_read(account, message_ids))
    _report_batch("Marked unread" if unread else "Marked read", ok, len(message_ids))


@app.command("archive")
def archive_command(
    account: str = typer.Option(..., help="Account id"),
    message_ids: list[str] = typer.Argument(..., help="Provider message ids"),
    undo: bool = typer.Option(False, "--undo", help="Move back to the inbox"),
) -> None:
    with _services("archive") as (_, services):
        if undo:
            ok = _guard(lambda: services.mutations.unarchive(account, message_ids))
        else:
            ok = _guard(lambda: services.mutations.archive(account, message_ids))
    _report_batch("Unarchived" if undo else "Archived", ok, len(message_ids))


@app.command("star")
def star_command(
    account: str = typer.Option(..., help="Account id"),
    message_ids: list[str] = typer.Argument(..., help="Provider message ids"),
    off: bool = typer.Option(False, "--off", help="Remove the star"),
) -> None:
    with _services("star") as (_, services):
        ok = _guard(lambda: services.mutations.set_star(account, message_ids, not off))
    _report_batch("Unstarred" if off else "Starred", ok, len(message_ids))


@app.command("disconnect")
def disconnect_command(account: str = typer.Option(..., help="Account id")) -> None:
    with _services("disconnect") as (_, services):
        result = services.disconnect.disconnect(account)
    if not result.found:
        print(f"[yellow]Account not found[/yellow]: {account}")
        return
    print(f"[green]Disconnected[/green] {result.email} (revoke: {result.revoke.value if result.revoke else '-'})")


@app.command("doctor")
def doctor_command() -> None:
    settings = _load_settings()
    with MailRepository(settings.db_path) as repository:
        checks = run_doctor_checks(settings, repository)

    print("Doctor results:")
    for check in checks:
        status = check["status"].upper()
        print(f"- {escape(f'[{status}]')} {check['check']}: {escape(check['detail'])}")


@app.command("tests")
def tests_command() -> None:
    result = subprocess.run([sys.executable, "-m", "pytest", "-q"], check=False)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)
    print("[green]Tests passed[/green]")


if __name__ == "__main__":
    app()
