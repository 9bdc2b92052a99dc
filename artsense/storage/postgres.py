"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import asyncpg
import orjson

from ..auction.models import Bid, LotAggregate
from .errors import StorageFailure, WriteConflict


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    def _aggregate_from_row(self, row: asyncpg.Record) -> LotAggregate:
        return LotAggregate(
            lot_id=row["lot_id"],
            current_highest_bid=row["current_highest_bid"],
            place_bid_count=row["place_bid_count"],
            unique_bidders=row["unique_bidders"],
            version=row["version"],
            updated_at=row["updated_at"],
        )

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await self._open_pool()
        return self._pool

    async def _open_pool(self) -> asyncpg.Pool:
        try:
            pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageFailure(f"postgres unavailable: {exc}") from exc
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bids (
                        seq BIGSERIAL PRIMARY KEY,
                        bid_id TEXT NOT NULL UNIQUE,
                        lot_id TEXT NOT NULL,
                        bidder_id TEXT NOT NULL,
                        amount NUMERIC(18, 2) NOT NULL,
                        placed_at TIMESTAMPTZ NOT NULL,
                        data JSONB NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS idx_bids_lot_bidder
                    ON bids (lot_id, bidder_id);
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS lot_aggregates (
                        lot_id TEXT PRIMARY KEY,
                        current_highest_bid NUMERIC(18, 2),
                        place_bid_count BIGINT NOT NULL DEFAULT 0,
                        unique_bidders BIGINT NOT NULL DEFAULT 0,
                        version BIGINT NOT NULL DEFAULT 0,
                        updated_at TIMESTAMPTZ
                    );
                    """
                )
        except (OSError, asyncpg.PostgresError) as exc:
            await pool.close()
            raise StorageFailure(f"postgres schema setup failed: {exc}") from exc
        return pool

    async def get_aggregate(self, lot_id: str) -> LotAggregate | None:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """SELECT * FROM lot_aggregates WHERE lot_id=$1""",
                    lot_id,
                )
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc
        return self._aggregate_from_row(row) if row else None

    async def bidder_amounts(self, lot_id: str, bidder_id: str) -> list[Decimal]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """SELECT amount FROM bids WHERE lot_id=$1 AND bidder_id=$2""",
                    lot_id,
                    bidder_id,
                )
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc
        return [row["amount"] for row in rows]

    async def commit_bid(self, bid: Bid, expected_version: int) -> LotAggregate:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    seen = await conn.fetchval(
                        """SELECT EXISTS(SELECT 1 FROM bids WHERE lot_id=$1 AND bidder_id=$2)""",
                        bid.lot_id,
                        bid.bidder_id,
                    )
                    new_bidder = 0 if seen else 1
                    if expected_version == 0:
                        row = await conn.fetchrow(
                            """
                            INSERT INTO lot_aggregates(
                                lot_id, current_highest_bid, place_bid_count,
                                unique_bidders, version, updated_at
                            ) VALUES($1, $2, 1, $3, 1, $4)
                            ON CONFLICT (lot_id) DO NOTHING
                            RETURNING *
                            """,
                            bid.lot_id,
                            bid.amount,
                            new_bidder,
                            bid.placed_at,
                        )
                    else:
                        row = await conn.fetchrow(
                            """
                            UPDATE lot_aggregates SET
                                current_highest_bid=$3,
                                place_bid_count=place_bid_count + 1,
                                unique_bidders=unique_bidders + $4,
                                version=version + 1,
                                updated_at=$5
                            WHERE lot_id=$1 AND version=$2
                            RETURNING *
                            """,
                            bid.lot_id,
                            expected_version,
                            bid.amount,
                            new_bidder,
                            bid.placed_at,
                        )
                    if row is None:
                        # Raising inside the transaction block rolls it back.
                        raise WriteConflict(bid.lot_id, expected_version)
                    await conn.execute(
                        """
                        INSERT INTO bids(bid_id, lot_id, bidder_id, amount, placed_at, data)
                        VALUES($1, $2, $3, $4, $5, $6)
                        """,
                        bid.bid_id,
                        bid.lot_id,
                        bid.bidder_id,
                        bid.amount,
                        bid.placed_at,
                        orjson.dumps(bid.to_dict()).decode(),
                    )
        except (asyncpg.SerializationError, asyncpg.DeadlockDetectedError) as exc:
            raise WriteConflict(bid.lot_id, expected_version) from exc
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc
        return self._aggregate_from_row(row)

    async def count_bids(self, lot_id: str) -> int:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(
                    """SELECT COUNT(*) FROM bids WHERE lot_id=$1""",
                    lot_id,
                )
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc

    async def list_bids(self, lot_id: str, limit: int | None = None) -> list[Bid]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """SELECT data FROM bids WHERE lot_id=$1 ORDER BY seq LIMIT $2""",
                    lot_id,
                    limit,
                )
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc
        return [Bid.from_dict(self._decode(row["data"])) for row in rows]

    async def list_aggregates(self) -> list[LotAggregate]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch("SELECT * FROM lot_aggregates ORDER BY lot_id")
        except asyncpg.PostgresError as exc:
            raise StorageFailure(str(exc)) from exc
        return [self._aggregate_from_row(row) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
