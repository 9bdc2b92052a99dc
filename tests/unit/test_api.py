"""HTTP and WebSocket tests for the bidding endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from artsense.config import get_server_config
from artsense.main import app


@pytest.fixture
def client(monkeypatch):
    """Test client running the app lifespan against the packaged config."""
    monkeypatch.delenv("ARTSENSE_CONFIG_PATH", raising=False)
    get_server_config.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_server_config.cache_clear()


def _bid(client: TestClient, lot_id, bidder_id, amount):
    return client.post("/bids", json={"lotId": lot_id, "bidderId": bidder_id, "amount": amount})


class TestMeta:
    """Test suite for the root, ping and admin endpoints."""

    def test_root_and_ping(self, client):
        """Test that the root reports the storage backend and ping answers."""
        assert client.get("/").json()["storage_backend"] == "in_memory"
        assert client.get("/ping").json()["status"] == "ok"

    def test_admin_endpoints(self, client):
        """Test that health, stats and config reflect the running service."""
        _bid(client, "L1", "a@example.com", "100")
        health = client.get("/admin/health").json()
        assert health["status"] == "healthy"
        assert health["live_observers"] == 0
        stats = client.get("/admin/stats").json()
        assert stats["total_lots"] == 1
        assert stats["total_bids"] == 1
        assert stats["busiest_lot"] == "L1"
        config = client.get("/admin/config").json()
        assert config["bidding"]["max_attempts"] == 5


class TestPlaceBid:
    """Test suite for POST /bids."""

    def test_end_to_end_scenario(self, client):
        """Test the accept, too-low, tie and raise sequence on one lot."""
        response = _bid(client, "L1", "A", "100")
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "accepted"
        assert body["bidId"].startswith("bid_")
        assert body["aggregate"]["currentHighestBid"] == "100.00"

        response = _bid(client, "L1", "B", 90)
        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "bid_too_low"

        assert _bid(client, "L1", "B", "$150").status_code == 201

        response = _bid(client, "L1", "A", "150.00")
        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "bid_too_low"

        assert _bid(client, "L1", "A", "200").status_code == 201

        aggregate = client.get("/lots/L1").json()
        assert aggregate["currentHighestBid"] == "200.00"
        assert aggregate["placeBidCount"] == 3
        assert aggregate["uniqueBidders"] == 2
        assert aggregate["hasBids"] is True
        assert client.get("/lots/L1/bids/count").json() == {"lotId": "L1", "count": 3}

    def test_duplicate_submission(self, client):
        """Test that resubmitting an accepted bid is a duplicate conflict."""
        assert _bid(client, "L2", "A", "50").status_code == 201
        response = _bid(client, "L2", "A", "50")
        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "duplicate_bid"

    def test_validation_rejections_are_client_errors(self, client):
        """Test that missing fields and bad amounts return 422."""
        response = client.post("/bids", json={"lotId": "L1", "amount": "10"})
        assert response.status_code == 422
        assert response.json()["detail"]["reason"] == "missing_field"

        response = _bid(client, "L1", "A", "ten dollars")
        assert response.status_code == 422
        assert response.json()["detail"]["reason"] == "invalid_amount"

    def test_amount_above_storable_maximum_is_invalid(self, client):
        """Test that an amount no backend can store is rejected before any write."""
        response = _bid(client, "L1", "A", "10000000000000000000")
        assert response.status_code == 422
        assert response.json()["detail"]["reason"] == "invalid_amount"
        assert client.get("/lots/L1/bids/count").json()["count"] == 0

    def test_wrongly_typed_body_fails_schema(self, client):
        """Test that a body failing the JSON schema never reaches the processor."""
        response = client.post("/bids", json={"lotId": "L1", "bidderId": "A", "amount": [10]})
        assert response.status_code == 422
        assert client.get("/lots/L1/bids/count").json()["count"] == 0


class TestQueries:
    """Test suite for the lot query endpoints."""

    def test_lot_without_bids(self, client):
        """Test that an unknown lot reads as an empty aggregate."""
        aggregate = client.get("/lots/unknown").json()
        assert aggregate["hasBids"] is False
        assert aggregate["placeBidCount"] == 0
        assert aggregate["currentHighestBid"] is None

    def test_bid_history(self, client):
        """Test that history is in acceptance order and honours the limit."""
        for bidder, amount in (("A", "10"), ("B", "20"), ("C", "30")):
            _bid(client, "L3", bidder, amount)
        history = client.get("/lots/L3/bids").json()
        assert [bid["bidderId"] for bid in history] == ["A", "B", "C"]
        assert [bid["amount"] for bid in client.get("/lots/L3/bids?limit=1").json()] == ["10.00"]
        assert client.get("/lots/L3/bids?limit=0").status_code == 422


class TestSubscribe:
    """Test suite for the /ws/bids live stream."""

    def test_observer_receives_accepted_bids_for_its_lot(self, client):
        """Test that a lot-filtered observer sees only accepted bids on that lot."""
        with client.websocket_connect("/ws/bids?lot_id=L1") as websocket:
            _bid(client, "L2", "A", "10")
            _bid(client, "L1", "A", "10")
            _bid(client, "L1", "B", "5")
            _bid(client, "L1", "B", "25")

            first = websocket.receive_json()
            second = websocket.receive_json()

        assert first["type"] == "bid_accepted"
        assert (first["lotId"], first["amount"], first["sequence"]) == ("L1", "10.00", 1)
        assert (second["bidderId"], second["amount"], second["sequence"]) == ("B", "25.00", 2)
        assert second["aggregate"]["uniqueBidders"] == 2

    def test_unfiltered_observer_sees_every_lot(self, client):
        """Test that an observer without a lot filter sees every lot."""
        with client.websocket_connect("/ws/bids") as websocket:
            _bid(client, "L7", "A", "10")
            _bid(client, "L8", "A", "10")
            lots = [websocket.receive_json()["lotId"] for _ in range(2)]
        assert lots == ["L7", "L8"]

    def test_disconnect_unregisters_observer(self, client):
        """Test that every closed connection leaves the observer registry."""
        fanout = app.state.fanout
        for _ in range(3):
            with client.websocket_connect("/ws/bids?lot_id=L1"):
                assert fanout.subscriber_count == 1
        assert fanout.subscriber_count == 0
        assert client.get("/admin/health").json()["live_observers"] == 0

    def test_bids_after_disconnect_still_succeed(self, client):
        """Test that broadcasting with no observers left does not affect bids."""
        with client.websocket_connect("/ws/bids") as websocket:
            _bid(client, "L5", "A", "10")
            assert websocket.receive_json()["sequence"] == 1
        assert _bid(client, "L5", "B", "20").status_code == 201
        assert app.state.fanout.subscriber_count == 0
