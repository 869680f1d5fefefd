import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.config import NOTIFY_PING_INTERVAL
from app.models.notification import ControlMessage
from app.services.notifications import (
    ChannelError,
    NotificationChannelDown,
    NotificationDispatcher,
    QueueChannel,
    Session,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_controls(websocket: WebSocket, dispatcher: NotificationDispatcher, session: Session) -> None:
    """Apply subscribe/unsubscribe messages until the client goes away."""
    while True:
        raw = await websocket.receive_json()
        try:
            msg = ControlMessage.model_validate(raw)
        except ValidationError:
            await websocket.send_json({"type": "error", "message": "Unsupported control message"})
            continue

        if dispatcher.session(session.user_id) is not session:
            # Replaced by a newer socket; its subscriptions are its own.
            return
        if msg.type == "subscribe":
            dispatcher.subscribe(session.user_id, msg.event)
            await websocket.send_json({"type": "subscribed", "event": msg.event})
        else:
            dispatcher.unsubscribe(session.user_id, msg.event, session.forward)
            await websocket.send_json({"type": "unsubscribed", "event": msg.event})


@router.websocket("/ws/notifications/{user_id}")
async def notifications_ws(websocket: WebSocket, user_id: str, groups: str = Query("")):
    """Per-user notification stream.

    Hospital staff pass ``groups=hospital:<id>`` to receive assignments for
    their hospital. Clients send ``{"type": "subscribe", "event": ...}`` to
    choose which of case_assigned, status_update and resource_update they get.
    """
    await websocket.accept()
    dispatcher: NotificationDispatcher | None = getattr(websocket.app.state, "dispatcher", None)
    if dispatcher is None or not dispatcher.running:
        await websocket.send_json({"type": "error", "message": "Notifications unavailable"})
        await websocket.close()
        return

    group_list = [g for g in groups.split(",") if g]
    channel = QueueChannel(user_id)
    try:
        session = await dispatcher.connect(user_id, groups=group_list, channel=channel)
    except NotificationChannelDown as e:
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close()
        return

    logger.info("Notification client connected for %s", user_id)
    reader = asyncio.create_task(_read_controls(websocket, dispatcher, session))
    try:
        while not reader.done():
            receive = asyncio.create_task(channel.receive())
            done, _pending = await asyncio.wait(
                {reader, receive},
                timeout=NOTIFY_PING_INTERVAL,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receive in done:
                try:
                    event = receive.result()
                except ChannelError:
                    # A newer socket for this user took over, or the dispatcher stopped.
                    await websocket.send_json({"type": "error", "message": "Notification session closed"})
                    await websocket.close()
                    break
                await websocket.send_json(event)
                continue
            receive.cancel()
            try:
                await receive
            except asyncio.CancelledError:
                pass
            if not done:
                await websocket.send_json({"type": "ping"})
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    finally:
        reader.cancel()
        try:
            await reader
        except (asyncio.CancelledError, WebSocketDisconnect):
            pass
        except Exception:
            logger.debug("Control reader for %s ended with an error", user_id)
        await dispatcher.disconnect(user_id, session)
        logger.info("Notification client disconnected for %s", user_id)
