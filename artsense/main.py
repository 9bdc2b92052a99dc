from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from jsonschema import ValidationError
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import stats as admin_stats
from .auction.fanout import BidFanout, Subscription
from .auction.models import Rejected
from .auction.processor import BidProcessor, TransientFailure
from .config import ServerConfig, get_server_config
from .ledger.queries import LotQueryService
from .notifications.sender import NotificationDispatcher, build_sender
from .storage import StorageFailure, build_storage
from .transport.canonical_json import canonical_dumps
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    logging.getLogger("artsense").setLevel(server_config.log_level)
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    fanout = BidFanout(
        backend=server_config.fanout.backend,
        options=dict(server_config.fanout.options),
        queue_size=server_config.fanout.queue_size,
    )
    notifier = NotificationDispatcher(build_sender(server_config.notifications))
    processor = BidProcessor(
        storage,
        fanout,
        notifier,
        max_attempts=server_config.bidding.max_attempts,
        retry_backoff_ms=server_config.bidding.retry_backoff_ms,
    )

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.fanout = fanout
    app.state.notifier = notifier
    app.state.processor = processor
    app.state.queries = LotQueryService(storage)
    app.state.start_time = datetime.now(timezone.utc)

    yield

    await fanout.close()
    await notifier.close()
    await storage.close()


app = FastAPI(
    title="Artsense Live Bidding",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_bid_processor(request: Request) -> BidProcessor:
    return request.app.state.processor


def get_query_service(request: Request) -> LotQueryService:
    return request.app.state.queries


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "artsense-bidding",
        "version": app.version,
        "storage_backend": settings.storage.backend,
        "fanout_backend": settings.fanout.backend,
    }


@app.get("/ping", tags=["meta"])
async def ping() -> dict[str, Any]:
    return {"status": "ok", "version": app.version}


@app.post("/bids", tags=["bids"], status_code=status.HTTP_201_CREATED)
async def place_bid(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    processor: BidProcessor = Depends(get_bid_processor),
) -> dict[str, Any]:
    try:
        schemas.validate("place_bid", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc
    try:
        outcome = await processor.place_bid(
            payload.get("lotId"),
            payload.get("bidderId"),
            payload.get("amount"),
        )
    except TransientFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except StorageFailure as exc:
        logger.error("storage failure while placing bid: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail="storage unavailable") from exc
    if isinstance(outcome, Rejected):
        raise HTTPException(
            status_code=422 if outcome.reason.is_validation else status.HTTP_409_CONFLICT,
            detail={
                "status": "rejected",
                "reason": outcome.reason.value,
                "message": outcome.message,
            },
        )
    return {
        "status": "accepted",
        "bidId": outcome.bid_id,
        "bid": outcome.bid.to_dict(),
        "aggregate": outcome.aggregate.to_dict(),
    }


@app.get("/lots/{lot_id}", tags=["lots"])
async def get_lot_aggregate(
    lot_id: str,
    queries: LotQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    try:
        aggregate = await queries.get_lot_aggregate(lot_id)
    except StorageFailure as exc:
        raise HTTPException(status_code=500, detail="storage unavailable") from exc
    return aggregate.to_dict()


@app.get("/lots/{lot_id}/bids/count", tags=["lots"])
async def get_bid_count(
    lot_id: str,
    queries: LotQueryService = Depends(get_query_service),
) -> dict[str, Any]:
    try:
        count = await queries.get_bid_count(lot_id)
    except StorageFailure as exc:
        raise HTTPException(status_code=500, detail="storage unavailable") from exc
    return {"lotId": lot_id, "count": count}


@app.get("/lots/{lot_id}/bids", tags=["lots"])
async def list_bids(
    lot_id: str,
    limit: int | None = Query(default=None, ge=1, le=1000),
    queries: LotQueryService = Depends(get_query_service),
) -> list[dict[str, Any]]:
    try:
        bids = await queries.list_bids(lot_id, limit)
    except StorageFailure as exc:
        raise HTTPException(status_code=500, detail="storage unavailable") from exc
    return [bid.to_dict() for bid in bids]


@app.websocket("/ws/bids")
async def subscribe_bids(websocket: WebSocket, lot_id: str | None = None) -> None:
    """Stream accepted bids, for every lot or only ``lot_id``.

    Client messages are read and ignored; they only serve to notice the
    disconnect. The stream ends when either side goes away.
    """
    fanout: BidFanout = websocket.app.state.fanout
    # Registered before the handshake completes so no event falls in between.
    subscription = await fanout.subscribe(lot_id or None)
    tasks: set[asyncio.Task] = set()
    try:
        await websocket.accept()
        sender = asyncio.create_task(_forward_events(websocket, subscription))
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        tasks = {sender, receiver}
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        fanout.unsubscribe(subscription)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
    if sender in done and sender.exception() is not None:
        logger.warning(
            "event stream %s ended: %s", subscription.subscription_id, sender.exception()
        )
    elif sender in done and websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close(code=1001)


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        async for event in subscription:
            await websocket.send_text(canonical_dumps(event.to_dict()).decode())
    except WebSocketDisconnect:
        logger.info("observer %s went away mid-send", subscription.subscription_id)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
