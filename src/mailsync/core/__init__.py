from .deadline import Deadline
from .locks import KeyedLocks

__all__ = ["Deadline", "KeyedLocks"]
