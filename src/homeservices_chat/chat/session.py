"""Room session lifecycle and message flow for the selected contact.

A session walks ``IDLE -> RESOLVING -> ACTIVE -> CLOSING -> IDLE``. At most
one room connection is open at a time; the previous one is always torn down
before the next room starts resolving.

Network calls are never cancelled when the user leaves a room. Instead each
one carries the ``RoomContext`` it started in, and its result is dropped if
that context is no longer the active one.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Set

import structlog
from pydantic import ValidationError

from ..config import ChatSettings
from ..domain.models import TEMP_ID_PREFIX, Contact, DateGroup, Identity, ImageAsset, Message, Room, utcnow
from ..errors import (
    ApiError,
    ChannelError,
    ImageUploadError,
    InvalidStateError,
    MessageFetchError,
    MessageSendError,
    RoomResolutionError,
)
from ..metrics import MESSAGES_RECEIVED, MESSAGES_SENT, READ_RECEIPTS_POSTED, SEND_FAILURES, STALE_RESULTS
from ..repositories.contacts import ContactStore
from ..repositories.messages import MessageStore
from ..services.api import ChatApiClient
from ..services.realtime import ChannelFactory, RealtimeChannel

logger = structlog.get_logger()


class SessionState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    ACTIVE = "active"
    CLOSING = "closing"


def _temp_id(kind: str = "") -> str:
    return f"{TEMP_ID_PREFIX}{kind}{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass(eq=False)
class RoomContext:
    """Everything owned by one entered room; discarded wholesale on exit."""

    room: Room
    peer: Contact
    store: MessageStore
    channel: Optional[RealtimeChannel] = None
    mark_read_handle: Optional[asyncio.TimerHandle] = None
    sending: bool = False
    pending_sends: Set[str] = field(default_factory=set)


class RoomSessionManager:
    """Owns the single active room connection and mediates its message flow."""

    def __init__(
        self,
        identity: Identity,
        api: ChatApiClient,
        channel_factory: ChannelFactory,
        contacts: ContactStore,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.identity = identity
        self.contacts = contacts
        self.settings = settings or ChatSettings()
        self._api = api
        self._channel_factory = channel_factory
        self._context: Optional[RoomContext] = None
        self._selection = 0
        self._background: Set[asyncio.Task] = set()
        self.state = SessionState.IDLE
        self.draft = ""
        self.fetch_error: Optional[MessageFetchError] = None

    @property
    def room(self) -> Optional[Room]:
        return self._context.room if self._context else None

    @property
    def peer(self) -> Optional[Contact]:
        return self._context.peer if self._context else None

    @property
    def store(self) -> Optional[MessageStore]:
        return self._context.store if self._context else None

    @property
    def sending(self) -> bool:
        return bool(self._context and self._context.sending)

    def groups(self, **kwargs: Any) -> List[DateGroup]:
        """Date-grouped projection of the active room's log (empty when idle)."""
        if self._context is None:
            return []
        return self._context.store.project(**kwargs)

    def _is_current(self, ctx: RoomContext) -> bool:
        return self._context is ctx

    def _require_active(self) -> RoomContext:
        if self.state is not SessionState.ACTIVE or self._context is None:
            raise InvalidStateError(f"no active room (state={self.state.value})")
        return self._context

    def _discard_stale(self, ctx: RoomContext, operation: str) -> None:
        STALE_RESULTS.inc()
        logger.info("stale_room_result_discarded", room_id=ctx.room.room_id, operation=operation)

    # Lifecycle

    async def select_contact(self, peer: Contact) -> Optional[Room]:
        """Enter the room shared with ``peer``.

        Returns the room once ACTIVE, or None when a newer selection (or a
        close) superseded this one while it was resolving.
        """
        if self.state is not SessionState.IDLE:
            await self.close_room()

        self._selection += 1
        selection = self._selection
        self.state = SessionState.RESOLVING
        self.fetch_error = None
        customer_id, worker_id = self.identity.room_pair(peer.id)
        logger.info("room_resolving", peer_id=peer.id, customer_id=customer_id, worker_id=worker_id)

        try:
            room = await self._api.resolve_room(customer_id, worker_id)
        except ApiError as e:
            logger.error("room_resolution_failed", peer_id=peer.id, error=str(e))
            if selection != self._selection:
                return None
            self.state = SessionState.IDLE
            raise RoomResolutionError("Failed to start chat") from e
        if selection != self._selection:
            logger.info("room_selection_superseded", room_id=room.room_id)
            return None

        fetch_error = None
        try:
            messages = await self._api.fetch_messages(room.room_id)
        except ApiError as e:
            messages = []
            fetch_error = MessageFetchError(f"Failed to load messages for room {room.room_id}")
            fetch_error.__cause__ = e
            logger.error("message_fetch_failed", room_id=room.room_id, error=str(e))
        if selection != self._selection:
            logger.info("room_selection_superseded", room_id=room.room_id)
            return None

        ctx = RoomContext(room=room, peer=peer, store=MessageStore(room.room_id, messages))
        self._context = ctx
        self.fetch_error = fetch_error

        channel = await self._open_channel(ctx)
        if not self._is_current(ctx):
            if channel is not None:
                await self._close_channel(channel, room.room_id)
            logger.info("room_selection_superseded", room_id=room.room_id)
            return None

        ctx.channel = channel
        self.state = SessionState.ACTIVE
        self.contacts.reset_unread(peer.id)
        if fetch_error is None:
            self._schedule_mark_read(ctx)
        logger.info("room_active", room_id=room.room_id, messages=len(ctx.store), live=channel is not None)
        return room

    async def _open_channel(self, ctx: RoomContext) -> Optional[RealtimeChannel]:
        room_id = ctx.room.room_id
        try:
            channel = await self._channel_factory(
                {"roomId": room_id, "userId": self.identity.user_id, "type": "chat"}
            )

            async def join() -> None:
                await channel.emit("joinRoom", room_id)

            channel.on("connect", join)
            channel.on("newMessage", partial(self._on_new_message, ctx))
            channel.on("messageUpdated", partial(self._on_message_updated, ctx))
            channel.on("messageRead", partial(self._on_message_read, ctx))
            await channel.connect()
        except ChannelError as e:
            # The room stays usable over REST without live updates.
            logger.warning("room_channel_unavailable", room_id=room_id, error=str(e))
            return None
        return channel

    async def _close_channel(self, channel: RealtimeChannel, room_id: str) -> None:
        try:
            await channel.disconnect()
        except Exception as e:
            logger.warning("room_channel_close_failed", room_id=room_id, error=str(e))

    async def close_room(self) -> None:
        """Leave the current room: close its connection and discard its log.

        In-flight requests are left running; their results are ignored.
        """
        self._selection += 1
        selection = self._selection
        ctx, self._context = self._context, None
        if ctx is None and self.state is SessionState.IDLE:
            return

        self.state = SessionState.CLOSING
        self.draft = ""
        self.fetch_error = None
        if ctx is not None:
            if ctx.mark_read_handle is not None:
                ctx.mark_read_handle.cancel()
                ctx.mark_read_handle = None
            if ctx.channel is not None:
                await self._close_channel(ctx.channel, ctx.room.room_id)
            logger.info("room_closed", room_id=ctx.room.room_id, pending_sends=len(ctx.pending_sends))
        if selection == self._selection:
            self.state = SessionState.IDLE

    async def flush(self) -> None:
        """Fire any debounced read receipt now and wait for background work."""
        ctx = self._context
        if ctx is not None and ctx.mark_read_handle is not None:
            ctx.mark_read_handle.cancel()
            ctx.mark_read_handle = None
            self._spawn_mark_read(ctx)
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Inbound events

    def _parse(self, ctx: RoomContext, payload: Any, event: str) -> Optional[Message]:
        try:
            return Message.model_validate(payload)
        except ValidationError as e:
            logger.warning("invalid_room_event", room_id=ctx.room.room_id, event_name=event, error=str(e))
            return None

    def _on_new_message(self, ctx: RoomContext, payload: Any) -> None:
        if not self._is_current(ctx):
            return
        message = self._parse(ctx, payload, "newMessage")
        if message is None:
            return
        MESSAGES_RECEIVED.inc()
        added = ctx.store.append(message)
        logger.debug("message_received", room_id=ctx.room.room_id, message_id=message.id, added=added)
        if message.sender_id != self.identity.user_id:
            self._schedule_mark_read(ctx)

    def _on_message_updated(self, ctx: RoomContext, payload: Any) -> None:
        if not self._is_current(ctx):
            return
        message = self._parse(ctx, payload, "messageUpdated")
        if message is not None:
            ctx.store.update(message)

    def _on_message_read(self, ctx: RoomContext, payload: Any) -> None:
        if not self._is_current(ctx) or not isinstance(payload, dict):
            return
        message_id = payload.get("messageId")
        reader_id = payload.get("userId")
        if not message_id or not reader_id:
            return
        message = ctx.store.get(str(message_id))
        # Receipts only matter on the sender's side.
        if message is None or message.sender_id != self.identity.user_id:
            return
        read_at = payload.get("readAt")
        try:
            read_at = datetime.fromisoformat(str(read_at).replace("Z", "+00:00")) if read_at else utcnow()
        except ValueError:
            read_at = utcnow()
        ctx.store.add_read_receipt(message.id, str(reader_id), read_at)

    # Sending

    def _optimistic(self, temp_id: str, **fields: Any) -> Message:
        return Message(
            id=temp_id,
            sender_id=self.identity.user_id,
            sender_role=self.identity.role,
            created_at=utcnow(),
            read_by=[],
            **fields,
        )

    async def _broadcast(self, ctx: RoomContext, event: str, data: Dict[str, Any]) -> None:
        if ctx.channel is None:
            return
        try:
            await ctx.channel.emit(event, data)
        except Exception as e:
            logger.warning("room_broadcast_failed", room_id=ctx.room.room_id, event_name=event, error=str(e))

    async def send_text(self, content: Optional[str] = None) -> Optional[Message]:
        """Send ``content`` (or the current draft) with optimistic display.

        Returns the confirmed message, or None when there is nothing to send,
        a send is already running, or the room was left before confirmation.
        On failure the optimistic entry is removed, the draft restored and
        MessageSendError raised.
        """
        ctx = self._require_active()
        text = (self.draft if content is None else content).strip()
        if not text or ctx.sending:
            return None

        self.draft = ""
        ctx.sending = True
        temp = self._optimistic(_temp_id(), content=text)
        ctx.store.append(temp)
        ctx.pending_sends.add(temp.id)
        try:
            confirmed = await self._api.send_text(ctx.room, text)
        except ApiError as e:
            SEND_FAILURES.labels(kind="text").inc()
            logger.error("message_send_failed", room_id=ctx.room.room_id, temp_id=temp.id, error=str(e))
            self._roll_back(ctx, temp.id, draft=text)
            raise MessageSendError("Failed to send message") from e
        except BaseException:
            # Cancelled or unexpected failure: still no optimistic leftovers.
            self._roll_back(ctx, temp.id, draft=text)
            raise
        finally:
            ctx.sending = False
            ctx.pending_sends.discard(temp.id)

        MESSAGES_SENT.labels(kind="text").inc()
        return await self._confirm(ctx, temp.id, confirmed)

    async def send_image(self, asset: ImageAsset) -> Optional[Message]:
        """Upload an image, previewing the local file until the server URL arrives."""
        ctx = self._require_active()
        temp = self._optimistic(_temp_id("img-"), images=[asset.uri])
        ctx.store.append(temp)
        ctx.pending_sends.add(temp.id)
        try:
            confirmed = await self._api.send_image(ctx.room, asset)
        except (ApiError, OSError) as e:
            SEND_FAILURES.labels(kind="image").inc()
            logger.error("image_upload_failed", room_id=ctx.room.room_id, temp_id=temp.id, error=str(e))
            self._roll_back(ctx, temp.id)
            raise ImageUploadError("Failed to send image. Please try again.") from e
        except BaseException:
            self._roll_back(ctx, temp.id)
            raise
        finally:
            ctx.pending_sends.discard(temp.id)

        MESSAGES_SENT.labels(kind="image").inc()
        return await self._confirm(ctx, temp.id, confirmed)

    def _roll_back(self, ctx: RoomContext, temp_id: str, draft: Optional[str] = None) -> None:
        """Remove an unconfirmed optimistic entry, restoring the draft it came from."""
        if not self._is_current(ctx):
            return
        ctx.store.remove(temp_id)
        if draft is not None:
            self.draft = draft

    async def _confirm(self, ctx: RoomContext, temp_id: str, confirmed: Message) -> Optional[Message]:
        if not self._is_current(ctx):
            self._discard_stale(ctx, "send")
            return None
        ctx.store.replace(temp_id, confirmed)
        await self._broadcast(ctx, "sendMessage", confirmed.to_wire())
        return confirmed

    # Read receipts

    def _schedule_mark_read(self, ctx: RoomContext) -> None:
        if ctx.mark_read_handle is not None:
            ctx.mark_read_handle.cancel()
        loop = asyncio.get_running_loop()
        ctx.mark_read_handle = loop.call_later(
            self.settings.read_receipt_debounce, self._spawn_mark_read, ctx
        )

    def _spawn_mark_read(self, ctx: RoomContext) -> None:
        ctx.mark_read_handle = None
        if not self._is_current(ctx):
            return
        task = asyncio.get_running_loop().create_task(self._mark_read(ctx))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def mark_read(self) -> None:
        """Mark the active room's unread messages read right away."""
        ctx = self._require_active()
        if ctx.mark_read_handle is not None:
            ctx.mark_read_handle.cancel()
            ctx.mark_read_handle = None
        await self._mark_read(ctx)

    async def _mark_read(self, ctx: RoomContext) -> None:
        room_id = ctx.room.room_id
        try:
            updated = await self._api.mark_read(room_id)
        except ApiError as e:
            # The next trigger retries the same unread set.
            READ_RECEIPTS_POSTED.labels(outcome="failed").inc()
            logger.warning("mark_read_failed", room_id=room_id, error=str(e))
            return
        READ_RECEIPTS_POSTED.labels(outcome="ok").inc()

        if not self._is_current(ctx):
            self._discard_stale(ctx, "mark_read")
            return
        changed = ctx.store.merge_read_updates(updated)
        for message in updated:
            await self._broadcast(
                ctx,
                "messageRead",
                {"messageId": message.id, "userId": self.identity.user_id, "roomId": room_id},
            )
        self.contacts.reset_unread(ctx.peer.id)
        logger.debug("messages_marked_read", room_id=room_id, updated=len(updated), changed=changed)
