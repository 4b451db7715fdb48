"""Exceptions raised by the chat core.

Every failure is scoped to the chat feature. Presence and read-receipt
failures are only logged and never reach callers.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for chat core errors."""


class ApiError(ChatError):
    """A REST call to the backend failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ChannelError(ChatError):
    """A real-time connection could not be established."""


class IdentityLoadError(ChatError):
    """Unable to load identity from the backend or the local cache."""


class ContactsLoadError(ChatError):
    """The contact list could not be fetched."""


class RoomResolutionError(ChatError):
    """The backend did not resolve a room for the selected contact."""


class MessageFetchError(ChatError):
    """The initial message page for a room could not be fetched."""


class MessageSendError(ChatError):
    """A message could not be persisted; the optimistic entry was rolled back."""


class ImageUploadError(MessageSendError):
    """An image message could not be uploaded."""


class InvalidStateError(ChatError):
    """The operation is not allowed in the current session state."""
