"""REST client for the marketplace backend's chat endpoints.

Every response is normalized into domain models before it is returned, so
nothing downstream ever sees the backend's raw payload shapes.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from ..config import ChatSettings
from ..domain.models import Contact, Identity, ImageAsset, Message, Room
from ..errors import ApiError

logger = structlog.get_logger()

TokenProvider = Callable[[], Awaitable[Optional[str]]]


def static_token(token: Optional[str]) -> TokenProvider:
    """Token provider returning a fixed bearer token."""

    async def provide() -> Optional[str]:
        return token

    return provide


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        return str(payload.get("detail") or payload.get("message") or payload)
    return str(payload)


class ChatApiClient:
    """Async HTTP client for identity, contacts, rooms and messages."""

    def __init__(
        self,
        settings: Optional[ChatSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or ChatSettings()
        self._token_provider = token_provider or static_token(self.settings.api_token)
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=self.settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def token(self) -> Optional[str]:
        """Current bearer token, shared with the real-time channels."""
        return await self._token_provider()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = kwargs.pop("headers", {})
        token = await self.token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("api_request", method=method, path=path)
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _detail(e.response)
            logger.error("api_response_error", method=method, path=path, status=status, detail=detail)
            raise ApiError(f"{method} {path} failed with {status}", status_code=status, detail=detail) from e
        except httpx.HTTPError as e:
            logger.error("api_transport_error", method=method, path=path, error=str(e))
            raise ApiError(f"{method} {path} failed: {e}") from e

        logger.debug("api_response", method=method, path=path, status=response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"{method} {path} returned invalid JSON", status_code=response.status_code) from e

    def _message(self, payload: Any, path: str) -> Message:
        try:
            return Message.model_validate(payload)
        except ValidationError as e:
            logger.error("api_invalid_message", path=path, error=str(e))
            raise ApiError(f"{path} returned a malformed message") from e

    async def get_me(self) -> Identity:
        """Fetch the signed-in user's id and role."""
        payload = await self._request("GET", "/users/me")
        user_id = payload.get("_id") or payload.get("id") if isinstance(payload, dict) else None
        if not user_id:
            raise ApiError("/users/me returned an unexpected payload")
        try:
            return Identity(user_id=str(user_id), role=payload.get("role"))
        except ValidationError as e:
            raise ApiError("/users/me returned an incomplete profile") from e

    async def list_contacts(self, role: str) -> List[Contact]:
        """Contacts for the role: approved workers for customers, chats for workers."""
        if role == "customer":
            path, fallback_name = "/users/approved-workers", "Unnamed Worker"
        elif role == "worker":
            path, fallback_name = "/chat/my-chats", "Unnamed Customer"
        else:
            raise ApiError(f"no contact list for role {role!r}")

        payload = await self._request("GET", path, params={"includeActivity": "true"})
        if not isinstance(payload, list):
            raise ApiError(f"{path} did not return a list")

        contacts = []
        for entry in payload:
            try:
                contacts.append(Contact.from_payload(entry, fallback_name))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("contact_skipped", path=path, error=str(e))
        return contacts

    async def resolve_room(self, customer_id: str, worker_id: str) -> Room:
        """Resolve (creating on first use) the room for a customer/worker pair."""
        payload = await self._request(
            "GET", "/chat/rooms", params={"customerId": customer_id, "workerId": worker_id}
        )
        room_id = payload.get("roomId") if isinstance(payload, dict) else None
        if not room_id:
            raise ApiError("Room ID missing in API response")
        return Room(room_id=str(room_id), customer_id=customer_id, worker_id=worker_id)

    async def fetch_messages(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        """Fetch the latest page of messages, oldest first."""
        path = f"/chat/rooms/{room_id}/messages"
        params: Dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        payload = await self._request("GET", path, params=params)
        items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ApiError(f"{path} did not return a message list")
        # The server pages newest-first.
        return [self._message(item, path) for item in reversed(items)]

    async def send_text(self, room: Room, content: str) -> Message:
        path = f"/chat/rooms/{room.room_id}/messages"
        payload = await self._request(
            "POST",
            path,
            json={"content": content, "customerId": room.customer_id, "workerId": room.worker_id},
        )
        return self._message(payload, path)

    async def send_image(self, room: Room, asset: ImageAsset) -> Message:
        """Upload a picked image as a multipart message."""
        path = f"/chat/rooms/{room.room_id}/messages"
        content = await asyncio.to_thread(asset.read_bytes)
        files = {"images": (asset.file_name, content, asset.mime_type)}
        data = {"customerId": room.customer_id, "workerId": room.worker_id}
        payload = await self._request(
            "POST", path, files=files, data=data, timeout=self.settings.image_upload_timeout
        )
        return self._message(payload, path)

    async def mark_read(self, room_id: str) -> List[Message]:
        """Mark the room's unread messages read; returns the updated messages."""
        path = f"/chat/rooms/{room_id}/mark-read"
        payload = await self._request("POST", path, json={})
        updated = payload.get("updatedMessages") if isinstance(payload, dict) else None
        if not isinstance(updated, list):
            return []
        return [self._message(item, path) for item in updated]
