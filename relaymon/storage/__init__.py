"""Storage collaborator — protocol and in-memory reference store."""

from relaymon.storage.base import Storage
from relaymon.storage.exceptions import NotFoundError, StorageError
from relaymon.storage.memory import MemoryStorage

__all__ = [
    "MemoryStorage",
    "NotFoundError",
    "Storage",
    "StorageError",
]
