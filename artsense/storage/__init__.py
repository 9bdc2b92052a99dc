"""Storage backend factory."""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from ..auction.models import Bid, LotAggregate
from ..config import ServerConfig
from .errors import StorageFailure, WriteConflict
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage
from .firestore import FirestoreStorage

__all__ = [
    "BidStorage",
    "StorageFailure",
    "WriteConflict",
    "build_storage",
]


class BidStorage(Protocol):
    """Bid ledger plus the per-lot aggregate derived from it."""

    async def get_aggregate(self, lot_id: str) -> LotAggregate | None: ...

    async def bidder_amounts(self, lot_id: str, bidder_id: str) -> list[Decimal]: ...

    async def commit_bid(self, bid: Bid, expected_version: int) -> LotAggregate:
        """Append ``bid`` and fold it into the aggregate as one atomic unit.

        Raises ``WriteConflict`` without writing anything when the stored
        aggregate version is not ``expected_version``.
        """
        ...

    async def count_bids(self, lot_id: str) -> int: ...

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]: ...

    async def list_aggregates(self) -> list[LotAggregate]: ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> BidStorage:
    backend = config.storage.backend
    options = dict(config.storage.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    if backend == "firestore":
        return FirestoreStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
