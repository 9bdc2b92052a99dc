"""In-memory storage backend for the bid ledger and lot aggregates."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from decimal import Decimal

from ..auction.models import Bid, LotAggregate
from .errors import WriteConflict


class InMemoryStorage:
    def __init__(self) -> None:
        self._bids: dict[str, list[Bid]] = defaultdict(list)
        self._bidders: dict[str, set[str]] = defaultdict(set)
        self._aggregates: dict[str, LotAggregate] = {}
        self._lock = asyncio.Lock()

    async def get_aggregate(self, lot_id: str) -> LotAggregate | None:
        async with self._lock:
            return self._aggregates.get(lot_id)

    async def bidder_amounts(self, lot_id: str, bidder_id: str) -> list[Decimal]:
        async with self._lock:
            return [bid.amount for bid in self._bids.get(lot_id, ()) if bid.bidder_id == bidder_id]

    async def commit_bid(self, bid: Bid, expected_version: int) -> LotAggregate:
        async with self._lock:
            current = self._aggregates.get(bid.lot_id) or LotAggregate.empty(bid.lot_id)
            if current.version != expected_version:
                raise WriteConflict(bid.lot_id, expected_version)
            bidders = self._bidders[bid.lot_id]
            updated = current.apply(bid, new_bidder=bid.bidder_id not in bidders)
            # No await between here and return: ledger and aggregate move together.
            self._bids[bid.lot_id].append(bid)
            bidders.add(bid.bidder_id)
            self._aggregates[bid.lot_id] = updated
            return updated

    async def count_bids(self, lot_id: str) -> int:
        async with self._lock:
            return len(self._bids.get(lot_id, ()))

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]:
        async with self._lock:
            bids = list(self._bids.get(lot_id, ()))
        return bids[:limit] if limit is not None else bids

    async def list_aggregates(self) -> list[LotAggregate]:
        async with self._lock:
            return sorted(self._aggregates.values(), key=lambda aggregate: aggregate.lot_id)

    async def close(self) -> None:
        return None
