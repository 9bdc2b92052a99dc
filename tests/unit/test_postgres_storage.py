"""Unit tests for the asyncpg backend's commit transaction and error mapping."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import orjson
import pytest

from artsense.auction.models import Bid
from artsense.storage import StorageFailure, WriteConflict
from artsense.storage.postgres import PostgresStorage

_PLACED = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _bid(bidder_id: str = "a@example.com", amount: str = "100.00") -> Bid:
    return Bid(
        bid_id="bid_1",
        lot_id="L1",
        bidder_id=bidder_id,
        amount=Decimal(amount),
        placed_at=_PLACED,
    )


def _row(highest: str, count: int, unique: int, version: int) -> dict:
    return {
        "lot_id": "L1",
        "current_highest_bid": Decimal(highest),
        "place_bid_count": count,
        "unique_bidders": unique,
        "version": version,
        "updated_at": _PLACED,
    }


@pytest.fixture
def conn():
    """Mock asyncpg connection whose transaction() is an async context manager."""
    connection = MagicMock()
    connection.fetchval = AsyncMock(return_value=False)
    connection.fetchrow = AsyncMock()
    connection.fetch = AsyncMock(return_value=[])
    connection.execute = AsyncMock()
    return connection


@pytest.fixture
def pool(conn):
    """Mock pool handing out the mock connection."""
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    mock_pool.close = AsyncMock()
    return mock_pool


@pytest.fixture
def storage(pool):
    """PostgresStorage with its pool already opened."""
    backend = PostgresStorage(dsn="postgresql://localhost/artsense")
    backend._pool = pool
    return backend


class TestCommitBid:
    """Test suite for the version-conditional commit."""

    @pytest.mark.asyncio
    async def test_first_bid_inserts_aggregate_and_ledger_row(self, storage, conn):
        """Test that version 0 inserts the aggregate then the bid."""
        conn.fetchrow.return_value = _row("100.00", 1, 1, 1)

        aggregate = await storage.commit_bid(_bid(), expected_version=0)

        sql, *args = conn.fetchrow.await_args.args
        assert "ON CONFLICT (lot_id) DO NOTHING" in sql
        assert args == ["L1", Decimal("100.00"), 1, _PLACED]
        conn.transaction.assert_called_once()
        assert "INSERT INTO bids" in conn.execute.await_args.args[0]
        assert aggregate.version == 1
        assert aggregate.current_highest_bid == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_lost_first_bid_race_is_a_conflict(self, storage, conn):
        """Test that a concurrent first insert leaves no ledger row behind."""
        conn.fetchrow.return_value = None

        with pytest.raises(WriteConflict) as excinfo:
            await storage.commit_bid(_bid(), expected_version=0)

        assert excinfo.value.expected_version == 0
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_version_is_a_conflict(self, storage, conn):
        """Test that the UPDATE is conditional on the expected version."""
        conn.fetchrow.return_value = None

        with pytest.raises(WriteConflict):
            await storage.commit_bid(_bid(amount="150.00"), expected_version=3)

        sql, *args = conn.fetchrow.await_args.args
        assert "WHERE lot_id=$1 AND version=$2" in sql
        assert args[:3] == ["L1", 3, Decimal("150.00")]
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returning_bidder_does_not_grow_unique_count(self, storage, conn):
        """Test that the new-bidder check runs inside the transaction."""
        conn.fetchval.return_value = True
        conn.fetchrow.return_value = _row("150.00", 2, 1, 2)

        await storage.commit_bid(_bid(amount="150.00"), expected_version=1)

        assert "SELECT EXISTS" in conn.fetchval.await_args.args[0]
        assert conn.fetchrow.await_args.args[4] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [asyncpg.SerializationError("could not serialize"), asyncpg.DeadlockDetectedError("deadlock")],
    )
    async def test_serialization_failures_are_conflicts(self, storage, conn, error):
        """Test that transaction rollbacks from Postgres are retried as conflicts."""
        conn.fetchrow.side_effect = error

        with pytest.raises(WriteConflict):
            await storage.commit_bid(_bid(), expected_version=1)

    @pytest.mark.asyncio
    async def test_other_driver_errors_are_storage_failures(self, storage, conn):
        """Test that any other Postgres error surfaces as StorageFailure."""
        conn.execute.side_effect = asyncpg.NumericValueOutOfRangeError("numeric field overflow")
        conn.fetchrow.return_value = _row("100.00", 1, 1, 1)

        with pytest.raises(StorageFailure):
            await storage.commit_bid(_bid(), expected_version=0)


class TestQueries:
    """Test suite for the read paths."""

    @pytest.mark.asyncio
    async def test_missing_aggregate_is_none(self, storage, conn):
        """Test that an unknown lot has no aggregate row."""
        conn.fetchrow.return_value = None
        assert await storage.get_aggregate("L1") is None

    @pytest.mark.asyncio
    async def test_bid_history_decodes_json_rows(self, storage, conn):
        """Test that ledger rows decode from their JSONB payload."""
        conn.fetch.return_value = [{"data": orjson.dumps(_bid(amount="10.00").to_dict()).decode()}]

        bids = await storage.list_bids("L1", 5)

        assert [bid.amount for bid in bids] == [Decimal("10.00")]
        assert conn.fetch.await_args.args[1:] == ("L1", 5)

    @pytest.mark.asyncio
    async def test_read_errors_are_storage_failures(self, storage, conn):
        """Test that read failures surface as StorageFailure."""
        conn.fetchval.side_effect = asyncpg.UndefinedTableError("relation does not exist")
        with pytest.raises(StorageFailure):
            await storage.count_bids("L1")


class TestPoolBootstrap:
    """Test suite for lazy pool creation."""

    @pytest.mark.asyncio
    async def test_concurrent_first_use_opens_one_pool(self, pool):
        """Test that racing first calls share a single pool."""
        backend = PostgresStorage(dsn="postgresql://localhost/artsense")

        async def _create_pool(**_):
            await asyncio.sleep(0)
            return pool

        with patch("artsense.storage.postgres.asyncpg.create_pool", side_effect=_create_pool) as create:
            pools = await asyncio.gather(*(backend._ensure_pool() for _ in range(5)))

        assert create.call_count == 1
        assert all(opened is pool for opened in pools)

    @pytest.mark.asyncio
    async def test_schema_setup_failure_closes_pool(self, pool, conn):
        """Test that a failed table bootstrap is a StorageFailure and leaks no pool."""
        conn.execute.side_effect = asyncpg.InsufficientPrivilegeError("permission denied")
        backend = PostgresStorage(dsn="postgresql://localhost/artsense")

        with patch("artsense.storage.postgres.asyncpg.create_pool", AsyncMock(return_value=pool)):
            with pytest.raises(StorageFailure):
                await backend.get_aggregate("L1")

        pool.close.assert_awaited_once()
        assert backend._pool is None

    @pytest.mark.asyncio
    async def test_unreachable_server_is_storage_failure(self):
        """Test that connection errors while opening the pool are wrapped."""
        backend = PostgresStorage(dsn="postgresql://localhost/artsense")
        with patch(
            "artsense.storage.postgres.asyncpg.create_pool",
            AsyncMock(side_effect=OSError("connection refused")),
        ):
            with pytest.raises(StorageFailure):
                await backend.count_bids("L1")
