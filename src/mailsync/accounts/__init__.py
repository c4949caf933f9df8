from .models import ACCOUNT_FIELDS, AuditEntry, ConnectedAccount
from .store import AuditSink, CredentialStore, MessageSink

__all__ = [
    "ACCOUNT_FIELDS",
    "AuditEntry",
    "AuditSink",
    "ConnectedAccount",
    "CredentialStore",
    "MessageSink",
]
