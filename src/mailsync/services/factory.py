from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import requests

from mailsync.config import Settings
from mailsync.core import KeyedLocks
from mailsync.core.db import MailRepository
from mailsync.sources.gmail import GmailGateway, GmailMutations, TokenManager

from .disconnect import DisconnectService
from .sync import SyncService


@dataclass(slots=True)
class MailServices:
    tokens: TokenManager
    gateway: GmailGateway
    mutations: GmailMutations
    sync: SyncService
    disconnect: DisconnectService


def build_services(
    settings: Settings,
    repository: MailRepository,
    logger: logging.Logger | logging.LoggerAdapter,
    session: requests.Session | None = None,
) -> MailServices:
    session = session or requests.Session()
    token_locks = KeyedLocks()
    tokens = TokenManager(
        repository,
        settings.oauth,
        session,
        refresh_buffer=timedelta(seconds=settings.token_refresh_buffer_sec),
        timeout_sec=settings.http_timeout_sec,
        locks=token_locks,
        logger=logger,
    )
    gateway = GmailGateway(
        tokens,
        session,
        base_url=settings.api_base_url,
        revoke_url=settings.oauth.revoke_url,
        timeout_sec=settings.http_timeout_sec,
        max_attempts=settings.retry_attempts,
        backoff_max_sec=settings.backoff_max_sec,
        logger=logger,
    )
    sync = SyncService(
        repository,
        repository,
        gateway,
        logger,
        runs=repository,
        max_threads=settings.max_threads,
        sync_labels=settings.sync_labels,
        history_page_size=settings.history_page_size,
    )
    return MailServices(
        tokens=tokens,
        gateway=gateway,
        mutations=GmailMutations(gateway, logger=logger),
        sync=sync,
        disconnect=DisconnectService(
            repository, gateway, repository, logger, locks=token_locks, sync_locks=sync.locks
        ),
    )
