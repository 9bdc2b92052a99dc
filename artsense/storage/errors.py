"""Errors shared by the storage backends."""

from __future__ import annotations


class WriteConflict(RuntimeError):
    """The aggregate changed since it was read; nothing was written."""

    def __init__(self, lot_id: str, expected_version: int) -> None:
        super().__init__(f"lot {lot_id} moved past version {expected_version}")
        self.lot_id = lot_id
        self.expected_version = expected_version


class StorageFailure(RuntimeError):
    """A durable read or write failed; no partial state was left behind."""
