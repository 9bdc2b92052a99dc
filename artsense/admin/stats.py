"""Operational stats endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..ledger.queries import LotQueryService

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_queries(request: Request) -> LotQueryService:
    return request.app.state.queries


@router.get("/stats")
async def stats(
    request: Request,
    queries: LotQueryService = Depends(_get_queries),
) -> dict[str, Any]:
    lots = await queries.list_lots()
    total_bids = sum(lot.place_bid_count for lot in lots)
    busiest = max(lots, key=lambda lot: lot.place_bid_count, default=None)
    return {
        "total_lots": len(lots),
        "total_bids": total_bids,
        "avg_bids_per_lot": round(total_bids / len(lots), 4) if lots else 0.0,
        "busiest_lot": busiest.lot_id if busiest else None,
        "live_observers": request.app.state.fanout.subscriber_count,
        "lots": [
            {
                "lotId": lot.lot_id,
                "currentHighestBid": str(lot.current_highest_bid),
                "placeBidCount": lot.place_bid_count,
                "uniqueBidders": lot.unique_bidders,
            }
            for lot in lots
        ],
    }
