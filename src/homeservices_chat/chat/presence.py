"""Presence tracking over the control channel."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set

import structlog

from ..config import ChatSettings
from ..errors import ChannelError
from ..metrics import PRESENCE_EVENTS
from ..repositories.contacts import ContactStore
from ..services.realtime import ChannelFactory, RealtimeChannel

logger = structlog.get_logger()


class PresenceTracker:
    """Announces local liveness and mirrors contacts' liveness into the contact store.

    Presence is best effort: if the control channel cannot be opened, chat
    keeps working and every contact simply stays offline.
    """

    def __init__(
        self,
        contacts: ContactStore,
        channel_factory: ChannelFactory,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.contacts = contacts
        self.settings = settings or ChatSettings()
        self._channel_factory = channel_factory
        self._channel: Optional[RealtimeChannel] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._user_id: Optional[str] = None
        self.online_peers: Set[str] = set()

    @property
    def running(self) -> bool:
        return self._channel is not None

    async def start(self, user_id: str) -> bool:
        """Open the control channel for ``user_id``; returns False when presence is unavailable."""
        if self._channel is not None:
            await self.stop()

        self._user_id = user_id
        self.online_peers.clear()
        try:
            channel = await self._channel_factory({"userId": user_id, "type": "presence"})

            async def announce() -> None:
                await channel.emit("userOnline", user_id)

            channel.on("connect", announce)
            channel.on("userOnline", self.on_peer_online)
            channel.on("userOffline", self.on_peer_offline)
            await channel.connect()
        except ChannelError as e:
            logger.warning("presence_unavailable", user_id=user_id, error=str(e))
            return False

        self._channel = channel
        self._heartbeat_task = asyncio.create_task(self._heartbeat(channel, user_id))
        logger.info("presence_started", user_id=user_id)
        return True

    async def _heartbeat(self, channel: RealtimeChannel, user_id: str) -> None:
        """Re-announce activity so the server can expire stale presence."""
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                await channel.emit("updateActivity", user_id)
            except Exception as e:
                logger.warning("presence_heartbeat_failed", user_id=user_id, error=str(e))

    def on_peer_online(self, peer_id: str) -> None:
        PRESENCE_EVENTS.labels(status="online").inc()
        self.online_peers.add(peer_id)
        self.contacts.set_online(peer_id, True)

    def on_peer_offline(self, peer_id: str) -> None:
        PRESENCE_EVENTS.labels(status="offline").inc()
        self.online_peers.discard(peer_id)
        self.contacts.set_online(peer_id, False)

    async def stop(self, user_id: Optional[str] = None) -> None:
        """Announce offline, cancel the heartbeat and close the channel."""
        user_id = user_id or self._user_id
        channel, self._channel = self._channel, None
        task, self._heartbeat_task = self._heartbeat_task, None

        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if channel is None:
            return
        try:
            await channel.emit("userOffline", user_id)
        except Exception as e:
            logger.warning("presence_offline_announce_failed", user_id=user_id, error=str(e))
        finally:
            try:
                await channel.disconnect()
            except Exception as e:
                logger.warning("presence_disconnect_failed", user_id=user_id, error=str(e))
        self.online_peers.clear()
        logger.info("presence_stopped", user_id=user_id)

    @asynccontextmanager
    async def session(self, user_id: str) -> AsyncIterator["PresenceTracker"]:
        """Run presence for the duration of the block, always stopping it on exit."""
        await self.start(user_id)
        try:
            yield self
        finally:
            await self.stop(user_id)
