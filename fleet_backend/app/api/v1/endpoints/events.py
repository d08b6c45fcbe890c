"""
Real-time Event Stream.

A WebSocket per client. The bearer token is passed as the `token` query
parameter; the connection then receives the events of the caller's private
channel, plus the operator channel for operators.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status

from fleet_backend.app.core.jwt import decode_access_token
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.services.event_bus import Subscription, OPERATOR_CHANNEL, user_channel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


def channels_for(claims: Dict[str, Any]) -> List[str]:
    channels = [user_channel(claims["user_id"])]
    if claims.get("role") == UserRole.OPERATOR.value:
        channels.append(OPERATOR_CHANNEL)
    return channels


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_dict())


async def _until_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def serve_subscription(websocket: WebSocket, subscription: Subscription) -> None:
    """
    Forward events until the client disconnects or the subscription closes.

    Incoming client messages are ignored.
    """
    sender = asyncio.create_task(_forward(websocket, subscription))
    receiver = asyncio.create_task(_until_disconnect(websocket))
    done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)

    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        exc = task.exception()
        if exc is not None and not isinstance(exc, WebSocketDisconnect):
            raise exc


@router.websocket("/ws")
async def event_stream(websocket: WebSocket, token: Optional[str] = Query(None)):
    claims = decode_access_token(token) if token else None
    if not claims or not claims.get("user_id"):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    bus = websocket.app.state.event_bus
    await websocket.accept()
    subscription = bus.subscribe(*channels_for(claims))
    logger.info("Event stream opened", extra={"user_id": claims["user_id"], "channels": sorted(subscription.channels)})

    try:
        await websocket.send_json({"event": "subscribed", "channels": sorted(subscription.channels)})
        await serve_subscription(websocket, subscription)
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        logger.info(
            "Event stream closed",
            extra={"user_id": claims["user_id"], "dropped_events": subscription.dropped},
        )
