from __future__ import annotations

import logging
from dataclasses import dataclass

from mailsync.accounts import AuditEntry, AuditSink, CredentialStore
from mailsync.core import KeyedLocks
from mailsync.sources.gmail import GmailGateway, RevokeOutcome

AUDIT_PROVIDER = "mail"
AUDIT_EVENT_DISCONNECTED = "disconnected"


@dataclass(slots=True)
class DisconnectResult:
    account_id: str
    status: str
    revoke: RevokeOutcome | None = None
    email: str | None = None

    @property
    def found(self) -> bool:
        return self.status == "disconnected"


class DisconnectService:
    def __init__(
        self,
        store: CredentialStore,
        gateway: GmailGateway,
        audit: AuditSink,
        logger: logging.Logger | logging.LoggerAdapter,
        *,
        locks: KeyedLocks | None = None,
        sync_locks: KeyedLocks | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.audit = audit
        self.logger = logger
        # Share the token manager's locks so a disconnect never interleaves with a refresh.
        self.locks = locks or gateway.tokens.locks
        # Taken before the token lock, the same order a sync takes them in.
        self.sync_locks = sync_locks or KeyedLocks()

    def disconnect(self, account_id: str) -> DisconnectResult:
        """Revoke and delete a mailbox, waiting for a running sync of it to finish first."""
        with self.sync_locks.hold(account_id), self.locks.hold(account_id):
            account = self.store.load(account_id)
            if account is None:
                return DisconnectResult(account_id=account_id, status="not_found")

            revoke = self.gateway.revoke_token(account.access_token or account.refresh_token)
            if not self.store.delete(account_id):
                return DisconnectResult(account_id=account_id, status="not_found", revoke=revoke)

        self.audit.record(
            AuditEntry(
                organization_id=account.organization_id,
                provider=AUDIT_PROVIDER,
                event_type=AUDIT_EVENT_DISCONNECTED,
                message=f"Disconnected mailbox {account.email}",
            )
        )
        self.logger.info("Account %s disconnected, revoke=%s", account_id, revoke.value)
        return DisconnectResult(account_id=account_id, status="disconnected", revoke=revoke, email=account.email)
