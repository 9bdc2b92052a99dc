"""Read-only accessors over the bid ledger and lot aggregates."""

from __future__ import annotations

from dataclasses import dataclass

from ..auction.models import Bid, LotAggregate
from ..storage import BidStorage


@dataclass
class LotQueryService:
    storage: BidStorage

    async def get_lot_aggregate(self, lot_id: str) -> LotAggregate:
        """The lot's aggregate, or an empty one when nobody has bid yet."""
        aggregate = await self.storage.get_aggregate(lot_id)
        return aggregate if aggregate is not None else LotAggregate.empty(lot_id)

    async def get_bid_count(self, lot_id: str) -> int:
        return await self.storage.count_bids(lot_id)

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]:
        return await self.storage.list_bids(lot_id, limit)

    async def list_lots(self) -> list[LotAggregate]:
        return await self.storage.list_aggregates()
