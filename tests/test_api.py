"""Test suite for the backend REST client."""

import json

import httpx
import pytest

from homeservices_chat.domain.models import ImageAsset, Room
from homeservices_chat.errors import ApiError
from homeservices_chat.services.api import ChatApiClient, static_token

ROOM = Room(room_id="r1", customer_id="cust-1", worker_id="worker-a")


def message_payload(message_id, minutes=0, **extra):
    payload = {
        "_id": message_id,
        "senderId": "worker-a",
        "senderRole": "worker",
        "createdAt": f"2024-03-10T09:{minutes:02d}:00.000Z",
    }
    payload.update(extra)
    return payload


def client_for(handler, settings, token="tok-123"):
    return ChatApiClient(settings, token_provider=static_token(token), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_requests_carry_bearer_token(settings):
    seen = []

    def handler(request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"_id": "cust-1", "role": "customer"})

    async with client_for(handler, settings) as client:
        identity = await client.get_me()

    assert identity.user_id == "cust-1"
    assert identity.role == "customer"
    assert seen == ["Bearer tok-123"]


@pytest.mark.asyncio
async def test_missing_token_sends_no_auth_header(settings):
    seen = []

    def handler(request):
        seen.append("Authorization" in request.headers)
        return httpx.Response(200, json={"id": "w-1", "role": "worker"})

    async with client_for(handler, settings, token=None) as client:
        await client.get_me()

    assert seen == [False]


@pytest.mark.asyncio
async def test_get_me_rejects_incomplete_profile(settings):
    def handler(request):
        return httpx.Response(200, json={"role": "customer"})

    async with client_for(handler, settings) as client:
        with pytest.raises(ApiError):
            await client.get_me()


@pytest.mark.asyncio
async def test_list_contacts_for_customer(settings):
    def handler(request):
        assert request.url.path == "/users/approved-workers"
        assert request.url.params["includeActivity"] == "true"
        return httpx.Response(
            200,
            json=[
                {"_id": "w1", "name": "Wendy", "isOnline": True, "unreadCount": 2},
                {"id": "w2"},
                {"name": "no id"},
            ],
        )

    async with client_for(handler, settings) as client:
        contacts = await client.list_contacts("customer")

    assert [c.id for c in contacts] == ["w1", "w2"]
    assert contacts[0].is_online and contacts[0].unread_count == 2
    assert contacts[1].display_name == "Unnamed Worker"
    assert contacts[1].email == "No email"


@pytest.mark.asyncio
async def test_list_contacts_for_worker(settings):
    def handler(request):
        assert request.url.path == "/chat/my-chats"
        return httpx.Response(200, json=[{"_id": "c1"}])

    async with client_for(handler, settings) as client:
        contacts = await client.list_contacts("worker")

    assert contacts[0].display_name == "Unnamed Customer"


@pytest.mark.asyncio
async def test_resolve_room(settings):
    def handler(request):
        assert request.url.path == "/chat/rooms"
        assert request.url.params["customerId"] == "cust-1"
        assert request.url.params["workerId"] == "worker-a"
        return httpx.Response(200, json={"roomId": "r1"})

    async with client_for(handler, settings) as client:
        room = await client.resolve_room("cust-1", "worker-a")

    assert room == ROOM


@pytest.mark.asyncio
async def test_resolve_room_without_id_fails(settings):
    def handler(request):
        return httpx.Response(200, json={})

    async with client_for(handler, settings) as client:
        with pytest.raises(ApiError, match="Room ID missing"):
            await client.resolve_room("cust-1", "worker-a")


@pytest.mark.asyncio
async def test_fetch_messages_reverses_newest_first_page(settings):
    def handler(request):
        assert request.url.path == "/chat/rooms/r1/messages"
        return httpx.Response(200, json={"items": [message_payload("m3", 3), message_payload("m2", 2), message_payload("m1", 1)]})

    async with client_for(handler, settings) as client:
        messages = await client.fetch_messages("r1")

    assert [m.id for m in messages] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_send_text_posts_room_pair(settings):
    bodies = []
    timeouts = []

    def handler(request):
        bodies.append(json.loads(request.content))
        timeouts.append(request.extensions["timeout"]["read"])
        return httpx.Response(201, json=message_payload("srv-1", content="Hi", senderId="cust-1"))

    async with client_for(handler, settings) as client:
        message = await client.send_text(ROOM, "Hi")

    assert bodies == [{"content": "Hi", "customerId": "cust-1", "workerId": "worker-a"}]
    assert message.id == "srv-1"
    assert message.sender_id == "cust-1"
    assert timeouts == [settings.request_timeout]


@pytest.mark.asyncio
async def test_send_image_uploads_multipart(settings, tmp_path):
    picture = tmp_path / "pick.png"
    picture.write_bytes(b"\x89PNG-bytes")
    seen = {}

    def handler(request):
        seen["content_type"] = request.headers["Content-Type"]
        seen["body"] = request.content
        seen["read_timeout"] = request.extensions["timeout"]["read"]
        return httpx.Response(201, json=message_payload("srv-2", images=["https://cdn.example.com/p.png"]))

    asset = ImageAsset(uri=str(picture), mime_type="image/png", file_name="pick.png")
    async with client_for(handler, settings) as client:
        message = await client.send_image(ROOM, asset)

    assert seen["content_type"].startswith("multipart/form-data")
    assert b"\x89PNG-bytes" in seen["body"]
    assert b'name="images"; filename="pick.png"' in seen["body"]
    assert b'name="customerId"' in seen["body"]
    assert seen["read_timeout"] == settings.image_upload_timeout
    assert message.images == ["https://cdn.example.com/p.png"]


@pytest.mark.asyncio
async def test_mark_read_returns_updated_messages(settings):
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/chat/rooms/r1/mark-read"
        return httpx.Response(
            200, json={"updatedMessages": [message_payload("m1", readBy=[{"userId": "cust-1", "readAt": "2024-03-10T10:00:00Z"}])]}
        )

    async with client_for(handler, settings) as client:
        updated = await client.mark_read("r1")

    assert updated[0].read_by[0].user_id == "cust-1"


@pytest.mark.asyncio
async def test_http_error_becomes_api_error(settings):
    def handler(request):
        return httpx.Response(500, json={"message": "boom"})

    async with client_for(handler, settings) as client:
        with pytest.raises(ApiError) as excinfo:
            await client.fetch_messages("r1")

    assert excinfo.value.status_code == 500
    assert excinfo.value.detail == "boom"


@pytest.mark.asyncio
async def test_transport_error_becomes_api_error(settings):
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    async with client_for(handler, settings) as client:
        with pytest.raises(ApiError) as excinfo:
            await client.send_text(ROOM, "Hello")

    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_malformed_message_becomes_api_error(settings):
    def handler(request):
        return httpx.Response(201, json={"content": "missing ids"})

    async with client_for(handler, settings) as client:
        with pytest.raises(ApiError):
            await client.send_text(ROOM, "Hello")


@pytest.mark.asyncio
async def test_unreadable_image_raises_before_upload(settings, tmp_path):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json=message_payload("srv-3"))

    asset = ImageAsset(uri=str(tmp_path / "gone.jpg"))
    async with client_for(handler, settings) as client:
        with pytest.raises(OSError):
            await client.send_image(ROOM, asset)

    assert requests == []
