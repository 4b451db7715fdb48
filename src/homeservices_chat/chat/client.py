"""
Chat Feature Facade

Wires the chat core together for one signed-in user:

- identity from the backend, with the cached identity as fallback
- the contact list for the user's role
- presence over a control channel for as long as the feature is visible
- one room session at a time for the selected contact

``stop()`` always runs on exit when the client is used as an async context
manager, so no connection or timer outlives the feature.
"""

from datetime import datetime
from typing import Any, List, Optional

import structlog

from ..config import ChatSettings
from ..domain.activity import activity_label
from ..domain.models import Contact, Identity, Room
from ..errors import ApiError, ContactsLoadError, InvalidStateError
from ..repositories.contacts import ContactStore
from ..services.api import ChatApiClient, TokenProvider
from ..services.identity import IdentityCache, load_identity
from ..services.realtime import ChannelFactory, socketio_channel_factory
from .presence import PresenceTracker
from .session import RoomSessionManager

logger = structlog.get_logger()


class ChatClient:
    """Lifetime owner of the chat feature for the signed-in user."""

    def __init__(
        self,
        settings: Optional[ChatSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        api: Optional[ChatApiClient] = None,
        channel_factory: Optional[ChannelFactory] = None,
        identity_cache: Optional[IdentityCache] = None,
    ) -> None:
        self.settings = settings or ChatSettings()
        self.api = api or ChatApiClient(self.settings, token_provider=token_provider)
        self._channel_factory = channel_factory or socketio_channel_factory(self.settings, self.api.token)
        self.identity_cache = identity_cache or IdentityCache(self.settings.identity_cache_path)
        self.contacts = ContactStore()
        self.presence = PresenceTracker(self.contacts, self._channel_factory, self.settings)
        self.identity: Optional[Identity] = None
        self.session: Optional[RoomSessionManager] = None
        self.contacts_error: Optional[ContactsLoadError] = None

    async def __aenter__(self) -> "ChatClient":
        try:
            await self.start()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> Identity:
        """Load identity and contacts, then start presence.

        Raises IdentityLoadError when no identity is available; a failed
        contact list is recorded in ``contacts_error`` and leaves the list empty.
        """
        self.identity = await load_identity(self.api, self.identity_cache)
        self.session = RoomSessionManager(
            self.identity, self.api, self._channel_factory, self.contacts, self.settings
        )
        try:
            await self.refresh_contacts()
        except ContactsLoadError as e:
            self.contacts_error = e
        await self.presence.start(self.identity.user_id)
        logger.info("chat_started", user_id=self.identity.user_id, contacts=len(self.contacts))
        return self.identity

    async def refresh_contacts(self) -> List[Contact]:
        identity = self._require_identity()
        try:
            contacts = await self.api.list_contacts(identity.role)
        except ApiError as e:
            logger.error("contacts_load_failed", role=identity.role, error=str(e))
            raise ContactsLoadError("Failed to load contacts") from e
        self.contacts.replace_all(contacts)
        # Presence events outrank the liveness snapshot in the list payload.
        for peer_id in self.presence.online_peers:
            self.contacts.set_online(peer_id, True)
        self.contacts_error = None
        return self.contacts.contacts

    async def open_conversation(self, contact_id: str) -> Optional[Room]:
        """Enter the room shared with a listed contact."""
        session = self._require_session()
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise InvalidStateError(f"unknown contact {contact_id}")
        return await session.select_contact(contact)

    async def close_conversation(self) -> None:
        if self.session is not None:
            await self.session.close_room()

    def activity_label(self, contact_id: str, now: Optional[datetime] = None) -> Optional[str]:
        contact = self.contacts.get(contact_id)
        if contact is None:
            return None
        return activity_label(contact, now)

    async def stop(self) -> None:
        """Tear down the room, presence and HTTP client; safe to call twice."""
        try:
            if self.session is not None:
                await self.session.close_room()
                # Let in-flight read receipts finish before the HTTP client closes.
                await self.session.flush()
        finally:
            try:
                await self.presence.stop()
            finally:
                await self.api.aclose()
        logger.info("chat_stopped", user_id=self.identity.user_id if self.identity else None)

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise InvalidStateError("chat client not started")
        return self.identity

    def _require_session(self) -> RoomSessionManager:
        if self.session is None:
            raise InvalidStateError("chat client not started")
        return self.session
