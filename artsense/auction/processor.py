"""Bid placement: validate, commit atomically, then notify observers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from ..notifications.sender import Notification, NotificationDispatcher
from ..storage import BidStorage, WriteConflict
from ..transport.timestamps import utc_now
from .fanout import BidFanout
from .locks import KeyedLock
from .models import Accepted, Bid, BidEvent, BidOutcome, LotAggregate, Rejected
from .validator import BidProposal, check_against_snapshot, check_shape

logger = logging.getLogger(__name__)


class TransientFailure(RuntimeError):
    """Write conflicts persisted past the retry budget."""

    def __init__(self, lot_id: str, attempts: int) -> None:
        super().__init__(f"lot {lot_id} still contended after {attempts} attempts")
        self.lot_id = lot_id
        self.attempts = attempts


class BidProcessor:
    """Accepts bids on lots while keeping each lot's aggregate exact.

    Bids on one lot run one at a time inside this process (``KeyedLock``);
    across processes the storage commit is a compare-and-swap on the
    aggregate version, so a bid validated against a stale view is retried
    against the fresh one instead of being written.
    """

    def __init__(
        self,
        storage: BidStorage,
        fanout: BidFanout,
        notifier: NotificationDispatcher | None = None,
        *,
        max_attempts: int = 5,
        retry_backoff_ms: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._storage = storage
        self._fanout = fanout
        self._notifier = notifier
        self._max_attempts = max_attempts
        self._retry_backoff_ms = retry_backoff_ms
        self._clock = clock
        self._locks = KeyedLock()

    async def place_bid(self, lot_id: Any, bidder_id: Any, amount: Any) -> BidOutcome:
        proposal = check_shape(lot_id, bidder_id, amount)
        if isinstance(proposal, Rejected):
            logger.info("bid rejected lot=%s reason=%s", lot_id, proposal.reason.value)
            return proposal
        async with self._locks.hold(proposal.lot_id):
            return await self._place_serialized(proposal)

    async def _place_serialized(self, proposal: BidProposal) -> BidOutcome:
        for attempt in range(1, self._max_attempts + 1):
            aggregate = await self._storage.get_aggregate(proposal.lot_id)
            prior_amounts = await self._storage.bidder_amounts(proposal.lot_id, proposal.bidder_id)
            rejection = check_against_snapshot(proposal, aggregate, prior_amounts)
            if rejection is not None:
                logger.info(
                    "bid rejected lot=%s bidder=%s amount=%s reason=%s",
                    proposal.lot_id,
                    proposal.bidder_id,
                    proposal.amount,
                    rejection.reason.value,
                )
                return rejection
            bid = Bid(
                bid_id=f"bid_{uuid4().hex}",
                lot_id=proposal.lot_id,
                bidder_id=proposal.bidder_id,
                amount=proposal.amount,
                placed_at=self._clock(),
            )
            expected_version = aggregate.version if aggregate is not None else 0
            try:
                updated = await self._storage.commit_bid(bid, expected_version)
            except WriteConflict:
                logger.warning(
                    "write conflict lot=%s version=%d attempt=%d/%d",
                    proposal.lot_id,
                    expected_version,
                    attempt,
                    self._max_attempts,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_backoff_ms * attempt / 1000)
                continue
            logger.info(
                "bid accepted lot=%s bidder=%s amount=%s count=%d unique=%d",
                bid.lot_id,
                bid.bidder_id,
                bid.amount,
                updated.place_bid_count,
                updated.unique_bidders,
            )
            # Still under the lot lock, so observers see commit order.
            await self._broadcast(bid, updated)
            self._notify(bid, updated)
            return Accepted(bid=bid, aggregate=updated)
        raise TransientFailure(proposal.lot_id, self._max_attempts)

    async def _broadcast(self, bid: Bid, aggregate: LotAggregate) -> None:
        try:
            await self._fanout.broadcast(BidEvent(bid=bid, sequence=aggregate.version, aggregate=aggregate))
        except Exception:
            logger.exception("fan-out failed for bid %s", bid.bid_id)

    def _notify(self, bid: Bid, aggregate: LotAggregate) -> None:
        if self._notifier is None:
            return
        notification = Notification(
            recipient=bid.bidder_id,
            subject=f"Bid received on lot {bid.lot_id}",
            body=(
                f"Your bid of {bid.amount} on lot {bid.lot_id} is now the highest "
                f"of {aggregate.place_bid_count} bid(s)."
            ),
        )
        try:
            self._notifier.dispatch(notification)
        except Exception:
            logger.exception("could not dispatch notification for bid %s", bid.bid_id)
