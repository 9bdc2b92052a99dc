"""Redis storage backend using redis-py asyncio client."""

from __future__ import annotations

from decimal import Decimal

import orjson
from redis import asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..auction.models import Bid, LotAggregate
from .errors import StorageFailure, WriteConflict


class RedisStorage:
    def __init__(self, *, url: str, prefix: str = "artsense:bids") -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")

    def _lot_key(self, lot_id: str, suffix: str) -> str:
        return f"{self._prefix}:lot:{lot_id}:{suffix}"

    def _lots_key(self) -> str:
        return f"{self._prefix}:lots"

    def _decode_aggregate(self, raw: bytes | None) -> LotAggregate | None:
        if raw is None:
            return None
        return LotAggregate.from_dict(orjson.loads(raw))

    async def get_aggregate(self, lot_id: str) -> LotAggregate | None:
        try:
            raw = await self._redis.get(self._lot_key(lot_id, "aggregate"))
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc
        return self._decode_aggregate(raw)

    async def bidder_amounts(self, lot_id: str, bidder_id: str) -> list[Decimal]:
        try:
            members = await self._redis.smembers(self._lot_key(lot_id, f"amounts:{bidder_id}"))
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc
        return [Decimal(member.decode() if isinstance(member, bytes) else member) for member in members]

    async def commit_bid(self, bid: Bid, expected_version: int) -> LotAggregate:
        aggregate_key = self._lot_key(bid.lot_id, "aggregate")
        bidders_key = self._lot_key(bid.lot_id, "bidders")
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(aggregate_key)
                current = self._decode_aggregate(await pipe.get(aggregate_key))
                current = current or LotAggregate.empty(bid.lot_id)
                if current.version != expected_version:
                    await pipe.unwatch()
                    raise WriteConflict(bid.lot_id, expected_version)
                seen = await pipe.sismember(bidders_key, bid.bidder_id)
                updated = current.apply(bid, new_bidder=not seen)
                pipe.multi()
                pipe.set(aggregate_key, orjson.dumps(updated.to_dict()))
                pipe.rpush(self._lot_key(bid.lot_id, "ledger"), orjson.dumps(bid.to_dict()))
                pipe.sadd(bidders_key, bid.bidder_id)
                pipe.sadd(self._lot_key(bid.lot_id, f"amounts:{bid.bidder_id}"), str(bid.amount))
                pipe.sadd(self._lots_key(), bid.lot_id)
                await pipe.execute()
        except WatchError as exc:
            raise WriteConflict(bid.lot_id, expected_version) from exc
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc
        return updated

    async def count_bids(self, lot_id: str) -> int:
        try:
            return int(await self._redis.llen(self._lot_key(lot_id, "ledger")))
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]:
        if limit is not None and limit <= 0:
            return []
        end = -1 if limit is None else limit - 1
        try:
            values = await self._redis.lrange(self._lot_key(lot_id, "ledger"), 0, end)
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc
        return [Bid.from_dict(orjson.loads(value)) for value in values]

    async def list_aggregates(self) -> list[LotAggregate]:
        try:
            lot_ids = sorted(
                member.decode() if isinstance(member, bytes) else member
                for member in await self._redis.smembers(self._lots_key())
            )
            if not lot_ids:
                return []
            values = await self._redis.mget([self._lot_key(lot_id, "aggregate") for lot_id in lot_ids])
        except RedisError as exc:
            raise StorageFailure(str(exc)) from exc
        return [aggregate for aggregate in map(self._decode_aggregate, values) if aggregate]

    async def close(self) -> None:
        await self._redis.aclose()
