"""Pure accept/reject decision for a proposed bid."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from .amounts import InvalidAmountError, parse_amount
from .models import LotAggregate, Rejected, RejectionReason


@dataclass(frozen=True)
class BidProposal:
    """A bid that passed the shape checks, with its amount normalized."""

    lot_id: str
    bidder_id: str
    amount: Decimal


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def check_shape(lot_id: Any, bidder_id: Any, amount: Any) -> BidProposal | Rejected:
    """Field presence and amount parsing; needs no storage snapshot."""
    missing = [
        name
        for name, value in (("lotId", lot_id), ("bidderId", bidder_id), ("amount", amount))
        if _is_blank(value)
    ]
    if missing:
        return Rejected(RejectionReason.MISSING_FIELD, f"missing field(s): {', '.join(missing)}")
    try:
        parsed = parse_amount(amount)
    except InvalidAmountError as exc:
        return Rejected(RejectionReason.INVALID_AMOUNT, str(exc))
    return BidProposal(lot_id=str(lot_id).strip(), bidder_id=str(bidder_id).strip(), amount=parsed)


def check_against_snapshot(
    proposal: BidProposal,
    aggregate: LotAggregate | None,
    prior_amounts: Iterable[Decimal],
) -> Rejected | None:
    """Apply the duplicate and strict-increase rules to a snapshot.

    The snapshot may be stale; the storage commit re-checks the version so a
    stale acceptance never reaches the ledger.
    """
    if any(prior == proposal.amount for prior in prior_amounts):
        return Rejected(
            RejectionReason.DUPLICATE_BID,
            f"bid of {proposal.amount} already placed by {proposal.bidder_id}",
        )
    highest = aggregate.current_highest_bid if aggregate is not None else None
    if highest is not None and proposal.amount <= highest:
        return Rejected(
            RejectionReason.BID_TOO_LOW,
            f"bid must exceed current highest bid {highest}",
        )
    return None

