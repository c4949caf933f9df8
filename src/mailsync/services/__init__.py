from .disconnect import DisconnectResult, DisconnectService
from .doctor import run_doctor_checks
from .factory import MailServices, build_services
from .sync import SyncResult, SyncService

__all__ = [
    "DisconnectResult",
    "DisconnectService",
    "MailServices",
    "SyncResult",
    "SyncService",
    "build_services",
    "run_doctor_checks",
]
