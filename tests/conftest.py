"""Shared fakes for the chat core tests."""

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from homeservices_chat.config import ChatSettings
from homeservices_chat.domain.models import Contact, Identity, Message, Room
from homeservices_chat.errors import ApiError, ChannelError
from homeservices_chat.repositories.contacts import ContactStore
from homeservices_chat.services.realtime import RealtimeChannel

BASE_TIME = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


def make_message(message_id: str, sender_id: str = "worker-a", minutes: int = 0, **fields: Any) -> Message:
    """Build a confirmed message ``minutes`` after BASE_TIME."""
    return Message(
        id=message_id,
        sender_id=sender_id,
        sender_role=fields.pop("sender_role", "worker"),
        created_at=fields.pop("created_at", BASE_TIME + timedelta(minutes=minutes)),
        content=fields.pop("content", f"message {message_id}"),
        **fields,
    )


class FakeChannel(RealtimeChannel):
    """In-memory channel recording emits and delivering events on demand."""

    def __init__(self, query: Dict[str, str], fail: bool = False) -> None:
        self.query = query
        self.fail = fail
        self.handlers: Dict[str, Any] = {}
        self.emitted: List[Tuple[str, Any]] = []
        self.disconnects = 0
        self._connected = False

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event] = handler

    async def connect(self) -> None:
        if self.fail:
            raise ChannelError("connection refused")
        self._connected = True
        if "connect" in self.handlers:
            await self.deliver("connect")

    async def deliver(self, event: str, *args: Any) -> None:
        result = self.handlers[event](*args)
        if inspect.isawaitable(result):
            await result

    async def emit(self, event: str, data: Any = None) -> None:
        if not self._connected:
            raise RuntimeError("channel is closed")
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self._connected = False
        self.disconnects += 1

    @property
    def connected(self) -> bool:
        return self._connected

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.emitted if event == name]


class FakeChannelFactory:
    """Channel factory handing out FakeChannels; ``fail_types`` refuse to connect."""

    def __init__(self) -> None:
        self.channels: List[FakeChannel] = []
        self.fail_types: Set[str] = set()

    async def __call__(self, query: Dict[str, str]) -> FakeChannel:
        channel = FakeChannel(query, fail=query.get("type") in self.fail_types)
        self.channels.append(channel)
        return channel

    def of_type(self, channel_type: str) -> List[FakeChannel]:
        return [channel for channel in self.channels if channel.query.get("type") == channel_type]


class FakeApi:
    """Backend stand-in for session tests.

    ``fail`` names operations that raise ApiError; ``gates`` maps an operation
    to an asyncio.Event the call waits on before completing.
    """

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.messages: Dict[str, List[Message]] = {}
        self.read_updates: List[Message] = []
        self.fail: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, Any]] = []
        self._counter = 0

    async def _enter(self, operation: str, argument: Any = None) -> None:
        self.calls.append((operation, argument))
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        if operation in self.fail:
            raise ApiError(f"{operation} failed", status_code=503)

    def called(self, operation: str) -> List[Any]:
        return [argument for name, argument in self.calls if name == operation]

    async def resolve_room(self, customer_id: str, worker_id: str) -> Room:
        await self._enter("resolve_room", (customer_id, worker_id))
        return Room(room_id=f"room-{customer_id}-{worker_id}", customer_id=customer_id, worker_id=worker_id)

    async def fetch_messages(self, room_id: str) -> List[Message]:
        await self._enter("fetch_messages", room_id)
        return list(self.messages.get(room_id, []))

    async def send_text(self, room: Room, content: str) -> Message:
        await self._enter("send_text", content)
        self._counter += 1
        return Message(
            id=f"srv-{self._counter}",
            content=content,
            sender_id=self.user_id,
            sender_role="customer",
            created_at=BASE_TIME + timedelta(hours=1, minutes=self._counter),
        )

    async def send_image(self, room: Room, asset: Any) -> Message:
        await self._enter("send_image", asset.uri)
        self._counter += 1
        return Message(
            id=f"srv-{self._counter}",
            images=[f"https://cdn.example.com/{self._counter}.jpg"],
            sender_id=self.user_id,
            sender_role="customer",
            created_at=BASE_TIME + timedelta(hours=1, minutes=self._counter),
        )

    async def mark_read(self, room_id: str) -> List[Message]:
        await self._enter("mark_read", room_id)
        return list(self.read_updates)


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(
        api_url="http://chat.test",
        read_receipt_debounce=0,
        heartbeat_interval=0.01,
    )


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="cust-1", role="customer")


@pytest.fixture
def worker_a() -> Contact:
    return Contact(id="worker-a", display_name="Alice", unread_count=3)


@pytest.fixture
def worker_b() -> Contact:
    return Contact(id="worker-b", display_name="Bob")


@pytest.fixture
def contacts(worker_a: Contact, worker_b: Contact) -> ContactStore:
    return ContactStore([worker_a, worker_b])


@pytest.fixture
def api(identity: Identity) -> FakeApi:
    return FakeApi(identity.user_id)


@pytest.fixture
def channels() -> FakeChannelFactory:
    return FakeChannelFactory()


def room_id_for(identity: Identity, peer: Contact) -> str:
    customer_id, worker_id = identity.room_pair(peer.id)
    return f"room-{customer_id}-{worker_id}"


def active_channel(channels: FakeChannelFactory) -> Optional[FakeChannel]:
    chat = channels.of_type("chat")
    return chat[-1] if chat else None
