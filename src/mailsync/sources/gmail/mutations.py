from __future__ import annotations

import logging
from collections.abc import Sequence

from mailsync.core import Deadline
from mailsync.errors import ProviderError
from mailsync.sources.gmail.envelope import build_raw_message
from mailsync.sources.gmail.gateway import GmailGateway
from mailsync.sources.models import INBOX, STARRED, UNREAD, OutgoingMessage, SentMessage

MAX_BATCH_IDS = 1000


class GmailMutations:
    """Write operations against the mailbox.

    Label changes go out as one batchModify call per operation. Gmail does
    not report per-message outcomes, so a failed call is a failure of the
    whole batch; callers that need per-message guarantees split the ids
    themselves.
    """

    def __init__(self, gateway: GmailGateway, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)

    def _modify(
        self,
        account_id: str,
        message_ids: Sequence[str],
        *,
        add: Sequence[str] = (),
        remove: Sequence[str] = (),
        deadline: Deadline | None = None,
    ) -> bool:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return True
        if len(ids) > MAX_BATCH_IDS:
            raise ValueError(f"batchModify accepts at most {MAX_BATCH_IDS} ids, got {len(ids)}")
        try:
            self.gateway.batch_modify(
                account_id,
                ids,
                add_label_ids=add,
                remove_label_ids=remove,
                deadline=deadline,
            )
        except ProviderError as exc:
            self.logger.warning(
                "batchModify failed for account %s (%s ids, +%s -%s): %s",
                account_id,
                len(ids),
                list(add),
                list(remove),
                exc,
            )
            return False
        return True

    def mark_read(self, account_id: str, message_ids: Sequence[str], deadline: Deadline | None = None) -> bool:
        return self._modify(account_id, message_ids, remove=[UNREAD], deadline=deadline)

    def mark_unread(self, account_id: str, message_ids: Sequence[str], deadline: Deadline | None = None) -> bool:
        return self._modify(account_id, message_ids, add=[UNREAD], deadline=deadline)

    def archive(self, account_id: str, message_ids: Sequence[str], deadline: Deadline | None = None) -> bool:
        return self._modify(account_id, message_ids, remove=[INBOX], deadline=deadline)

    def unarchive(self, account_id: str, message_ids: Sequence[str], deadline: Deadline | None = None) -> bool:
        return self._modify(account_id, message_ids, add=[INBOX], deadline=deadline)

    def set_star(
        self,
        account_id: str,
        message_ids: Sequence[str],
        starred: bool,
        deadline: Deadline | None = None,
    ) -> bool:
        if starred:
            return self._modify(account_id, message_ids, add=[STARRED], deadline=deadline)
        return self._modify(account_id, message_ids, remove=[STARRED], deadline=deadline)

    def send_message(
        self,
        account_id: str,
        message: OutgoingMessage,
        deadline: Deadline | None = None,
    ) -> SentMessage:
        raw = build_raw_message(message)
        sent = self.gateway.send_raw(account_id, raw, thread_id=message.thread_id, deadline=deadline)
        self.logger.info("Message sent for account %s: id=%s thread=%s", account_id, sent.id, sent.thread_id)
        return sent
