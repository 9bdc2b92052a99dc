"""Shared bidding data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from ..transport.timestamps import format_timestamp, parse_timestamp


class RejectionReason(str, Enum):
    MISSING_FIELD = "missing_field"
    INVALID_AMOUNT = "invalid_amount"
    BID_TOO_LOW = "bid_too_low"
    DUPLICATE_BID = "duplicate_bid"

    @property
    def is_validation(self) -> bool:
        """True for malformed input, False for business-rule violations."""
        return self in (RejectionReason.MISSING_FIELD, RejectionReason.INVALID_AMOUNT)


@dataclass(frozen=True)
class Bid:
    bid_id: str
    lot_id: str
    bidder_id: str
    amount: Decimal
    placed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "bidId": self.bid_id,
            "lotId": self.lot_id,
            "bidderId": self.bidder_id,
            "amount": str(self.amount),
            "placedAt": format_timestamp(self.placed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bid":
        return cls(
            bid_id=data["bidId"],
            lot_id=data["lotId"],
            bidder_id=data["bidderId"],
            amount=Decimal(str(data["amount"])),
            placed_at=parse_timestamp(data["placedAt"]),
        )


@dataclass(frozen=True)
class LotAggregate:
    lot_id: str
    current_highest_bid: Decimal | None = None
    place_bid_count: int = 0
    unique_bidders: int = 0
    version: int = 0
    updated_at: datetime | None = None

    @classmethod
    def empty(cls, lot_id: str) -> "LotAggregate":
        return cls(lot_id=lot_id)

    @property
    def has_bids(self) -> bool:
        return self.place_bid_count > 0

    def apply(self, bid: Bid, *, new_bidder: bool) -> "LotAggregate":
        """Return the aggregate after folding in an accepted bid."""
        return LotAggregate(
            lot_id=self.lot_id,
            current_highest_bid=bid.amount,
            place_bid_count=self.place_bid_count + 1,
            unique_bidders=self.unique_bidders + (1 if new_bidder else 0),
            version=self.version + 1,
            updated_at=bid.placed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        highest = self.current_highest_bid
        return {
            "lotId": self.lot_id,
            "currentHighestBid": str(highest) if highest is not None else None,
            "placeBidCount": self.place_bid_count,
            "uniqueBidders": self.unique_bidders,
            "version": self.version,
            "updatedAt": format_timestamp(self.updated_at) if self.updated_at else None,
            "hasBids": self.has_bids,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LotAggregate":
        highest = data.get("currentHighestBid")
        updated_at = data.get("updatedAt")
        return cls(
            lot_id=data["lotId"],
            current_highest_bid=Decimal(str(highest)) if highest is not None else None,
            place_bid_count=int(data.get("placeBidCount", 0)),
            unique_bidders=int(data.get("uniqueBidders", 0)),
            version=int(data.get("version", 0)),
            updated_at=parse_timestamp(updated_at) if updated_at else None,
        )


@dataclass(frozen=True)
class Accepted:
    bid: Bid
    aggregate: LotAggregate

    @property
    def bid_id(self) -> str:
        return self.bid.bid_id


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str = ""


BidOutcome = Union[Accepted, Rejected]


@dataclass(frozen=True)
class BidEvent:
    """Payload pushed to live observers for every accepted bid."""

    bid: Bid
    sequence: int
    aggregate: LotAggregate | None = field(default=None, compare=False)

    @property
    def lot_id(self) -> str:
        return self.bid.lot_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "bid_accepted",
            "sequence": self.sequence,
            "lotId": self.bid.lot_id,
            "bidderId": self.bid.bidder_id,
            "amount": str(self.bid.amount),
            "placedAt": format_timestamp(self.bid.placed_at),
            "bidId": self.bid.bid_id,
        }
        if self.aggregate is not None:
            payload["aggregate"] = {
                "currentHighestBid": str(self.aggregate.current_highest_bid),
                "placeBidCount": self.aggregate.place_bid_count,
                "uniqueBidders": self.aggregate.unique_bidders,
            }
        return payload
