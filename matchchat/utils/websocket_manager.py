import logging
from typing import Dict, List

from fastapi import WebSocket

from matchchat.services.subscriptions import Subscription


logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks the subscriptions each open socket owns."""

    def __init__(self) -> None:
        self._subscriptions: Dict[int, List[Subscription]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscriptions.setdefault(id(websocket), [])
        logger.debug(f"Socket for {user_id} opened")

    def attach(self, websocket: WebSocket, subscription: Subscription) -> None:
        self._subscriptions.setdefault(id(websocket), []).append(subscription)

    def subscription_count(self, websocket: WebSocket) -> int:
        return len(self._subscriptions.get(id(websocket), []))

    async def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        for subscription in self._subscriptions.pop(id(websocket), []):
            await subscription.cancel()
        logger.debug(f"Socket for {user_id} closed")
