"""Real-time channels to the backend's Socket.IO server."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
import structlog

from ..config import ChatSettings
from ..errors import ChannelError
from .api import TokenProvider

logger = structlog.get_logger()

Handler = Callable[..., Any]


class RealtimeChannel(ABC):
    """A single tagged connection carrying named events."""

    @abstractmethod
    def on(self, event: str, handler: Handler) -> None:
        """Register a handler; ``connect`` handlers take no arguments."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection, raising ChannelError on failure."""
        pass

    @abstractmethod
    async def emit(self, event: str, data: Any = None) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass


ChannelFactory = Callable[[Dict[str, str]], Awaitable[RealtimeChannel]]


class SocketIOChannel(RealtimeChannel):
    """Socket.IO connection over the websocket transport."""

    def __init__(self, url: str, query: Dict[str, str], token: Optional[str] = None) -> None:
        self.url = url
        self.query = dict(query)
        self._token = token
        self._client = socketio.AsyncClient(reconnection=True)
        self._client.on("disconnect", self._on_disconnect)

    def _on_disconnect(self, *args: Any) -> None:
        logger.info("socket_disconnected", **self.query)

    def on(self, event: str, handler: Handler) -> None:
        self._client.on(event, handler)

    async def connect(self) -> None:
        url = f"{self.url}?{urlencode(self.query)}"
        try:
            await self._client.connect(
                url,
                auth={"token": self._token} if self._token else None,
                transports=["websocket"],
            )
        except SocketConnectionError as e:
            logger.warning("socket_connect_failed", error=str(e), **self.query)
            raise ChannelError(str(e)) from e
        logger.info("socket_connected", **self.query)

    async def emit(self, event: str, data: Any = None) -> None:
        await self._client.emit(event, data)

    async def disconnect(self) -> None:
        await self._client.disconnect()

    @property
    def connected(self) -> bool:
        return self._client.connected


def socketio_channel_factory(settings: ChatSettings, token_provider: TokenProvider) -> ChannelFactory:
    """Build channels against ``settings.api_url`` authenticated with the current token."""

    async def open_channel(query: Dict[str, str]) -> RealtimeChannel:
        token = await token_provider()
        return SocketIOChannel(settings.api_url, query, token=token)

    return open_channel
