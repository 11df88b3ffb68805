"""
WebSocket streaming of execution progress events.

Subscribers of /ws/executions/{execution_id} receive every event published
for that run after they connect. The most recent event of each run is kept
so a late subscriber starts from the current status and progress.
"""

import logging
import json
import asyncio
from collections import OrderedDict
from typing import Any, Dict, Optional, Set
from fastapi import WebSocket, WebSocketDisconnect

from engine.broadcaster import ProgressBroadcaster
from models.execution import ExecutionEvent

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30.0
MAX_REMEMBERED_RUNS = 1000


class ConnectionManager:
    """Subscriber sets and last-known event per execution."""

    def __init__(self, max_remembered: int = MAX_REMEMBERED_RUNS):
        self.subscribers: Dict[str, Set[WebSocket]] = {}
        self.last_events: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.max_remembered = max_remembered
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, execution_id: str):
        await websocket.accept()
        async with self._lock:
            self.subscribers.setdefault(execution_id, set()).add(websocket)
        logger.info(f"Subscriber joined execution {execution_id}")

    async def disconnect(self, websocket: WebSocket, execution_id: str):
        async with self._lock:
            self._drop(execution_id, {websocket})
        logger.info(f"Subscriber left execution {execution_id}")

    def subscriber_count(self, execution_id: str) -> int:
        return len(self.subscribers.get(execution_id, ()))

    def last_event(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self.last_events.get(execution_id)

    async def broadcast(self, execution_id: str, message: Dict[str, Any]):
        """
        Remember a message as the run's latest and send it to its subscribers.

        Connections that fail to receive it are dropped.
        """
        async with self._lock:
            self._remember(execution_id, message)
            targets = set(self.subscribers.get(execution_id, ()))

        if not targets:
            return

        payload = json.dumps(message, default=str)
        dead = set()
        for websocket in targets:
            try:
                await websocket.send_text(payload)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(f"Dropping subscriber of execution {execution_id}: {e}")
                dead.add(websocket)

        if dead:
            async with self._lock:
                self._drop(execution_id, dead)

    def _remember(self, execution_id: str, message: Dict[str, Any]):
        self.last_events[execution_id] = message
        self.last_events.move_to_end(execution_id)
        while len(self.last_events) > self.max_remembered:
            self.last_events.popitem(last=False)

    def _drop(self, execution_id: str, websockets: Set[WebSocket]):
        remaining = self.subscribers.get(execution_id)
        if remaining is None:
            return
        remaining -= websockets
        if not remaining:
            del self.subscribers[execution_id]


class WebSocketBroadcaster(ProgressBroadcaster):
    """Progress broadcaster that fans events out to WebSocket subscribers."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def publish(self, execution_id: str, event: ExecutionEvent) -> None:
        await self.manager.broadcast(execution_id, event.model_dump(mode="json"))


manager = ConnectionManager()


async def websocket_endpoint(websocket: WebSocket, execution_id: str):
    """
    Stream progress events of one execution.

    The first message is a ``connected`` acknowledgement, followed by the
    run's latest event when one has been published. After that every
    status, node_start, node_complete and notification event is forwarded.
    Clients may send ``ping`` to get ``pong``; idle connections get a
    ``keepalive`` message.
    """
    await manager.connect(websocket, execution_id)

    try:
        await websocket.send_json({
            "type": "connected",
            "execution_id": execution_id,
            "subscribers": manager.subscriber_count(execution_id),
        })
        latest = manager.last_event(execution_id)
        if latest is not None:
            await websocket.send_json(latest)

        while True:
            try:
                text = await asyncio.wait_for(websocket.receive_text(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "keepalive", "execution_id": execution_id})
                continue
            if text == "ping":
                await websocket.send_text("pong")

    except (WebSocketDisconnect, RuntimeError):
        logger.info(f"Stream closed for execution {execution_id}")
    finally:
        await manager.disconnect(websocket, execution_id)
