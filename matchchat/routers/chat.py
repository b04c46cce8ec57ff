import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from jose import JWTError
from starlette.websockets import WebSocketState

from matchchat.core.exceptions import Forbidden, InvalidArgument, MessagingError, NotFound
from matchchat.schemas.chat import Conversation, Message
from matchchat.services.chat_service import ChatService
from matchchat.services.directory import IdentityDirectory
from matchchat.services.presenters import present_conversation_list, present_thread
from matchchat.services.viewers import ViewerContext
from matchchat.utils.dependencies import get_chat_service, get_directory
from matchchat.utils.security import decode_access_token
from matchchat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["chat"])
manager = ConnectionManager()

CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404
CLOSE_UPDATES_FAILED = 1011


async def _authenticate(websocket: WebSocket, directory: IdentityDirectory) -> Optional[ViewerContext]:
    # JWT guards the socket: token comes in as ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return None
    try:
        sub = decode_access_token(token).get("sub")
    except JWTError:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return None
    if not sub:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return None
    try:
        profile = await directory.resolve_participant(sub)
    except NotFound:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return None
    return ViewerContext(role=profile.role, id=sub)


async def _send_json(websocket: WebSocket, payload: dict) -> None:
    await websocket.send_text(json.dumps(payload))


def _stopped_reporter(websocket: WebSocket):
    async def report(error: Exception) -> None:
        logger.warning(f"Live updates stopped for socket: {error}")
        if websocket.application_state == WebSocketState.CONNECTED:
            await websocket.close(code=CLOSE_UPDATES_FAILED)
    return report


@router.websocket("/conversations")
async def conversations_socket(websocket: WebSocket, service: ChatService = Depends(get_chat_service), directory: IdentityDirectory = Depends(get_directory)):
    viewer = await _authenticate(websocket, directory)
    if viewer is None:
        return
    selected = websocket.query_params.get("selected")

    async def push(conversations: List[Conversation]) -> None:
        items = present_conversation_list(viewer, conversations, selected_id=selected)
        await _send_json(websocket, {"type": "conversations", "items": [i.model_dump(mode="json") for i in items]})

    await manager.connect(viewer.id, websocket)
    try:
        subscription = await service.subscribe_conversations(viewer, push, _stopped_reporter(websocket))
        manager.attach(websocket, subscription)
        while True:
            # nothing to act on; keeps the socket open until the client leaves
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(viewer.id, websocket)


@router.websocket("/conversations/{conversation_id}")
async def thread_socket(conversation_id: str, websocket: WebSocket, service: ChatService = Depends(get_chat_service), directory: IdentityDirectory = Depends(get_directory)):
    viewer = await _authenticate(websocket, directory)
    if viewer is None:
        return
    try:
        conversation = await service.get_conversation(conversation_id)
        await service.resolve_actor(conversation, viewer.id)
    except NotFound:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    except Forbidden:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    async def push(messages: List[Message]) -> None:
        current = await service.get_conversation(conversation_id)
        thread = present_thread(viewer, current, messages)
        await _send_json(websocket, {"type": "thread", "thread": thread.model_dump(mode="json")})

    await manager.connect(viewer.id, websocket)
    try:
        subscription = await service.subscribe_messages(conversation_id, push, _stopped_reporter(websocket))
        manager.attach(websocket, subscription)
        await service.mark_conversation_read(conversation_id, viewer.id)

        while True:
            try:
                msg = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await _send_json(websocket, {"type": "error", "detail": "Invalid message payload"})
                continue
            # Expect {"type": "read"} or {"type": "message", "text": str, "client_message_id"?: str}
            if msg.get("type") == "read":
                await service.mark_conversation_read(conversation_id, viewer.id)
                continue
            if msg.get("type") != "message":
                await _send_json(websocket, {"type": "error", "detail": "Unknown frame type"})
                continue
            try:
                sent = await service.send_message(conversation_id, viewer.id, msg.get("text") or "")
            except (Forbidden, InvalidArgument) as e:
                await _send_json(websocket, {"type": "error", "detail": e.message, "client_message_id": msg.get("client_message_id")})
                continue
            await _send_json(websocket, {"type": "ack", "message_id": sent.id, "client_message_id": msg.get("client_message_id")})
    except WebSocketDisconnect:
        pass
    except MessagingError as e:
        logger.info(f"Closing thread socket for {viewer.id}: {e.message}")
        await websocket.close(code=CLOSE_NOT_FOUND if isinstance(e, NotFound) else CLOSE_FORBIDDEN)
    finally:
        await manager.disconnect(viewer.id, websocket)
