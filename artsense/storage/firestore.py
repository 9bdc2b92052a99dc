"""Firestore storage backend leveraging google-cloud-firestore."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Callable

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2 import service_account

from ..auction.models import Bid, LotAggregate
from .errors import StorageFailure, WriteConflict


class FirestoreStorage:
    def __init__(
        self,
        *,
        project_id: str,
        bids_collection: str = "bids",
        aggregates_collection: str = "lot_aggregates",
        credentials_path: str | None = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id required for firestore backend")
        client_kwargs: dict[str, Any] = {"project": project_id}
        if credentials_path:
            client_kwargs["credentials"] = service_account.Credentials.from_service_account_file(
                credentials_path
            )
        self._client = firestore.Client(**client_kwargs)
        self._bids_collection_name = bids_collection
        self._aggregates_collection_name = aggregates_collection

    def _bids(self):
        return self._client.collection(self._bids_collection_name)

    def _aggregates(self):
        return self._client.collection(self._aggregates_collection_name)

    def _bidder_query(self, lot_id: str, bidder_id: str):
        return (
            self._bids()
            .where(filter=FieldFilter("lotId", "==", lot_id))
            .where(filter=FieldFilter("bidderId", "==", bidder_id))
        )

    async def _run(self, func: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(str(exc)) from exc

    async def get_aggregate(self, lot_id: str) -> LotAggregate | None:
        doc = await self._run(self._aggregates().document(lot_id).get)
        if not doc.exists:
            return None
        return LotAggregate.from_dict(doc.to_dict())

    async def bidder_amounts(self, lot_id: str, bidder_id: str) -> list[Decimal]:
        docs = await self._run(lambda: list(self._bidder_query(lot_id, bidder_id).stream()))
        return [Decimal(doc.to_dict()["amount"]) for doc in docs]

    def _commit_in_transaction(self, bid: Bid, expected_version: int) -> LotAggregate:
        aggregate_ref = self._aggregates().document(bid.lot_id)
        bid_ref = self._bids().document(bid.bid_id)
        prior_query = self._bidder_query(bid.lot_id, bid.bidder_id).limit(1)

        @firestore.transactional
        def apply(transaction) -> LotAggregate:
            snapshot = aggregate_ref.get(transaction=transaction)
            current = (
                LotAggregate.from_dict(snapshot.to_dict())
                if snapshot.exists
                else LotAggregate.empty(bid.lot_id)
            )
            if current.version != expected_version:
                raise WriteConflict(bid.lot_id, expected_version)
            seen = bool(list(prior_query.get(transaction=transaction)))
            updated = current.apply(bid, new_bidder=not seen)
            transaction.set(bid_ref, bid.to_dict())
            transaction.set(aggregate_ref, updated.to_dict())
            return updated

        # A single attempt: retries happen in the processor against a fresh snapshot.
        return apply(self._client.transaction(max_attempts=1))

    async def commit_bid(self, bid: Bid, expected_version: int) -> LotAggregate:
        try:
            return await asyncio.to_thread(self._commit_in_transaction, bid, expected_version)
        except gcp_exceptions.Aborted as exc:
            raise WriteConflict(bid.lot_id, expected_version) from exc
        except ValueError as exc:
            # Contended commits surface as ValueError chained from Aborted.
            if isinstance(exc.__cause__, gcp_exceptions.Aborted):
                raise WriteConflict(bid.lot_id, expected_version) from exc
            raise
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StorageFailure(str(exc)) from exc

    async def count_bids(self, lot_id: str) -> int:
        query = self._bids().where(filter=FieldFilter("lotId", "==", lot_id))
        results = await self._run(lambda: query.count().get())
        return int(results[0][0].value)

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]:
        query = self._bids().where(filter=FieldFilter("lotId", "==", lot_id)).order_by("placedAt")
        if limit is not None:
            query = query.limit(limit)
        docs = await self._run(lambda: list(query.stream()))
        return [Bid.from_dict(doc.to_dict()) for doc in docs]

    async def list_aggregates(self) -> list[LotAggregate]:
        docs = await self._run(lambda: list(self._aggregates().order_by("lotId").stream()))
        return [LotAggregate.from_dict(doc.to_dict()) for doc in docs]

    async def close(self) -> None:
        await self._run(self._client.close)
