"""Domain models for the chat core.

Backend payloads arrive with camelCase keys, ``_id`` or ``id`` identifiers and
optional fields. They are normalized here, at the boundary, so the stores only
ever hold these strict shapes.
"""

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple
from urllib.parse import unquote, urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

TEMP_ID_PREFIX = "temp-"

Role = Literal["customer", "worker"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _opaque_id(value: Any) -> Any:
    # Ids are opaque strings; some endpoints send numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReadReceipt(BaseModel):
    """Record that a user has viewed a message."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(
        validation_alias=AliasChoices("userId", "user_id"), serialization_alias="userId"
    )
    read_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("readAt", "read_at"),
        serialization_alias="readAt",
    )

    @field_validator("user_id", mode="before")
    @classmethod
    def normalize_user_id(cls, value: Any) -> Any:
        return _opaque_id(value)

    @field_validator("read_at")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return _aware(value)


def merge_receipts(existing: Iterable[ReadReceipt], incoming: Iterable[ReadReceipt]) -> List[ReadReceipt]:
    """Append-or-update receipts by user id; the result never loses an entry."""
    merged: Dict[str, ReadReceipt] = {}
    for receipt in existing:
        merged[receipt.user_id] = receipt
    for receipt in incoming:
        merged[receipt.user_id] = receipt
    return list(merged.values())


class Message(BaseModel):
    """A chat message, either server-confirmed or optimistic."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id"), serialization_alias="_id")
    content: Optional[str] = None
    images: Optional[List[str]] = None
    sender_id: str = Field(
        validation_alias=AliasChoices("senderId", "sender_id"), serialization_alias="senderId"
    )
    sender_role: str = Field(
        default="",
        validation_alias=AliasChoices("senderRole", "sender_role"),
        serialization_alias="senderRole",
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("createdAt", "created_at"),
        serialization_alias="createdAt",
    )
    read_by: List[ReadReceipt] = Field(
        default_factory=list,
        validation_alias=AliasChoices("readBy", "read_by"),
        serialization_alias="readBy",
    )

    @field_validator("id", "sender_id", mode="before")
    @classmethod
    def normalize_ids(cls, value: Any) -> Any:
        return _opaque_id(value)

    @field_validator("read_by", mode="before")
    @classmethod
    def default_read_by(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("sender_role", mode="before")
    @classmethod
    def default_role(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return _aware(value)

    @property
    def is_temporary(self) -> bool:
        """True until the server has confirmed this message."""
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def is_seen(self) -> bool:
        """Read by someone other than its sender."""
        return any(receipt.user_id != self.sender_id for receipt in self.read_by)

    def read_status(self, viewer_id: str) -> Tuple[bool, bool]:
        """Return ``(is_sent, is_read)`` as shown to ``viewer_id``.

        Both flags are false for messages the viewer did not send.
        """
        if self.sender_id != viewer_id:
            return False, False
        return not self.is_temporary, self.is_seen

    def merged_with(self, later: "Message") -> "Message":
        """Take the later copy of this message while keeping every known receipt."""
        return later.model_copy(update={"read_by": merge_receipts(self.read_by, later.read_by)})

    def with_receipt(self, receipt: ReadReceipt) -> "Message":
        return self.model_copy(update={"read_by": merge_receipts(self.read_by, [receipt])})

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with the backend's field names."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Contact(BaseModel):
    """A conversation partner as shown in the contact list."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    display_name: str = Field(validation_alias=AliasChoices("name", "displayName", "display_name"))
    email: str = "No email"
    last_seen_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("lastSeen", "lastSeenAt", "last_seen_at")
    )
    is_online: bool = Field(default=False, validation_alias=AliasChoices("isOnline", "is_online"))
    unread_count: int = Field(default=0, validation_alias=AliasChoices("unreadCount", "unread_count"))

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value: Any) -> Any:
        return _opaque_id(value)

    @field_validator("last_seen_at")
    @classmethod
    def make_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else _aware(value)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], fallback_name: str) -> "Contact":
        """Normalize a contact-list entry, filling in the defaults the list view expects."""
        data = {key: value for key, value in payload.items() if value is not None}
        if "_id" not in data and "id" not in data:
            raise ValueError("contact payload has no id")
        data.setdefault("name", data.get("displayName") or fallback_name)
        if not data["name"]:
            data["name"] = fallback_name
        if not data.get("email"):
            data["email"] = "No email"
        return cls.model_validate(data)


class Room(BaseModel):
    """Exclusive channel between one customer and one worker."""

    room_id: str
    customer_id: str
    worker_id: str


class Identity(BaseModel):
    """The signed-in user as seen by the chat core."""

    user_id: str
    role: Role

    def room_pair(self, peer_id: str) -> Tuple[str, str]:
        """``(customer_id, worker_id)`` for a conversation with ``peer_id``."""
        if self.role == "customer":
            return self.user_id, peer_id
        return peer_id, self.user_id


class DateGroup(BaseModel):
    """Messages of one calendar day with a display label."""

    date_key: date
    label: str
    messages: List[Message]


class ImageAsset(BaseModel):
    """A locally picked image waiting to be uploaded."""

    uri: str
    mime_type: str = "image/jpeg"
    file_name: str = "image.jpg"

    @property
    def path(self) -> Path:
        parsed = urlparse(self.uri)
        if parsed.scheme == "file":
            return Path(unquote(parsed.path))
        return Path(self.uri)

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()
