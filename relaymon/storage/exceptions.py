"""Exception hierarchy for the storage collaborator."""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage errors."""


class NotFoundError(StorageError):
    """A source, wallet or alert id does not exist."""

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} not found: {key!r}")
        self.kind = kind
        self.key = key
