from .migrations import apply_migrations, connect_db, pending_migrations
from .repository import MailRepository

__all__ = ["connect_db", "apply_migrations", "pending_migrations", "MailRepository"]
