"""
WebSocket event stream.

Each connection gets its own subscription on the memory store's event
channel and receives stored/deleted/purged/cleared notifications as
JSON messages until it sends {"type": "stop"} or disconnects.
"""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from memory_engine.core.memory import MemoryStore
from memory_engine.models.domain import MemoryEvent
from memory_engine.models.schemas import WSEventMessage

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["WebSocket"])


class EventSubscriptions:
    """Maps open sockets to their event queues."""

    def __init__(self) -> None:
        self._queues: dict[int, asyncio.Queue[MemoryEvent]] = {}

    async def open(self, websocket: WebSocket, store: MemoryStore) -> asyncio.Queue[MemoryEvent]:
        await websocket.accept()
        queue = store.subscribe()
        self._queues[id(websocket)] = queue
        logger.info("event_stream_opened", subscribers=store.events.subscriber_count)
        return queue

    def close(self, websocket: WebSocket, store: MemoryStore) -> None:
        queue = self._queues.pop(id(websocket), None)
        if queue is not None:
            store.unsubscribe(queue)
        logger.info("event_stream_closed", subscribers=store.events.subscriber_count)


subscriptions = EventSubscriptions()


async def _send(websocket: WebSocket, data: dict[str, Any]) -> bool:
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.info("event_stream_send_failed", error=str(e), message_type=data.get("type"))
        return False


def _event_message(event: MemoryEvent) -> dict[str, Any]:
    return WSEventMessage(
        kind=event.kind.value,
        memory_id=event.memory_id,
        reason=event.reason,
        timestamp=event.timestamp,
    ).model_dump(mode="json")


@router.websocket("/ws/events")
async def events_endpoint(websocket: WebSocket) -> None:
    """
    Stream memory events.

    Protocol:
    - Server sends: {"type": "ready"} once subscribed
    - Server sends: {"type": "event", "kind": "stored", "memory_id": "...", ...}
    - Client sends: {"type": "stop"} to end the stream
    """
    store: MemoryStore | None = getattr(websocket.app.state, "memory_store", None)
    if store is None:
        await websocket.accept()
        await _send(websocket, {"type": "error", "error": "Memory store not initialized"})
        await websocket.close()
        return

    queue = await subscriptions.open(websocket, store)

    async def forward_events() -> None:
        while True:
            event = await queue.get()
            if not await _send(websocket, _event_message(event)):
                return

    forwarder = asyncio.create_task(forward_events())
    try:
        await _send(websocket, {"type": "ready"})
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "stop":
                break
    except WebSocketDisconnect:
        logger.info("event_stream_client_disconnected")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        subscriptions.close(websocket, store)
