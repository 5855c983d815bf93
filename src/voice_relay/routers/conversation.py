import asyncio
import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from voice_relay.services.conversation import ConnectionHandler

router = APIRouter(prefix="/ws", tags=["Conversation"])
logger = logging.getLogger(__name__)


async def handle_connection(websocket: WebSocket, handler: ConnectionHandler):
    """
    Main loop for a single client's WebSocket connection.

    Every inbound event is handled in its own task so that an interrupt is
    processed while an utterance still waits for its reply. The handler keeps
    utterances in arrival order.
    """
    handler.on_connect()
    tasks: set[asyncio.Task] = set()

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON frame from {handler.connection_id}")
                continue

            task = asyncio.create_task(handler.dispatch(message))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Unexpected error for {handler.connection_id}: {e}", exc_info=True)
    finally:
        handler.on_disconnect()
        for task in list(tasks):
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/conversation")
async def conversation_socket(websocket: WebSocket):
    app_state = websocket.app.state

    registry = getattr(app_state, "session_registry", None)
    queue = getattr(app_state, "synthesis_queue", None)
    completion = getattr(app_state, "completion_client", None)
    if registry is None or queue is None or completion is None:
        logger.error("Conversation services not initialized")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    send_lock = asyncio.Lock()

    async def emit(message: dict[str, Any]) -> None:
        async with send_lock:
            await websocket.send_json(message)

    handler = ConnectionHandler(
        connection_id,
        emit,
        registry,
        queue,
        completion,
        rng=getattr(app_state, "rng", None),
    )
    await handle_connection(websocket, handler)
