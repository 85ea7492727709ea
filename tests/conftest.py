import os

os.environ.setdefault("CHANNELSYNC_LOG_TO_FILE", "0")

import asyncio
import json
from collections import OrderedDict, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import httpx
import pytest

from services.messages.api import MessagesAPIClient
from services.messages.coordinator import MutationCoordinator
from services.messages.feed import ChangeFeed, FeedEvent, FeedEventType, FeedSubscription
from services.notifications.presenters import NotificationPresenter, PermissionState
from shared.chat.messages import CurrentUser, Message
from shared.config.sync import ApiConfig
from shared.storage.message_cache.store import MessageCacheStore

BASE_URL = "http://chat.test"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def iso(seconds: float) -> str:
    return ts(seconds).isoformat().replace("+00:00", "Z")


def record(
    message_id: str,
    content: str = "hello",
    *,
    sender: str = "u2",
    channel: str = "c1",
    created: float = 0,
    updated: Optional[float] = None,
    sender_name: Optional[str] = None,
) -> dict:
    return {
        "id": message_id,
        "channelId": channel,
        "senderId": sender,
        "senderName": sender_name,
        "content": content,
        "createdAt": iso(created),
        "updatedAt": iso(updated) if updated is not None else None,
    }


def message(message_id: str, content: str = "hello", **kwargs) -> Message:
    return Message.from_dict(record(message_id, content, **kwargs))


def insert_event(message_id: str, content: str = "hello", **kwargs) -> FeedEvent:
    return FeedEvent(
        type=FeedEventType.INSERT,
        message_id=message_id,
        message=message(message_id, content, **kwargs),
    )


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ----------------------------------------------------------------------
# In-memory message API behind httpx.MockTransport
# ----------------------------------------------------------------------

class FakeServer:
    def __init__(self, user: Optional[dict] = None):
        self.user = user if user is not None else {"id": "u1", "name": "Ada"}
        self.channels: Dict[str, "OrderedDict[str, dict]"] = defaultdict(OrderedDict)
        self.requests: List[httpx.Request] = []
        self.clock = 100.0

        self._failures: Dict[str, List[int]] = defaultdict(list)
        self._gates: Dict[str, asyncio.Event] = {}
        self._held: Dict[str, int] = defaultdict(int)
        self._next_id = 1

    # --- test controls ---

    def add(self, message_id: str, content: str = "hello", **kwargs) -> dict:
        rec = record(message_id, content, **kwargs)
        self.channels[rec["channelId"]][message_id] = rec
        return rec

    def edit_directly(self, channel_id: str, message_id: str, content: str) -> dict:
        rec = self.channels[channel_id][message_id]
        rec["content"] = content
        rec["updatedAt"] = self._tick()
        return rec

    def fail_next(self, method: str, status: int) -> None:
        self._failures[method].append(status)

    def hold(self, method: str) -> None:
        self._gates[method] = asyncio.Event()
        self._held[method] = 0

    def release(self, method: str) -> None:
        self._gates.pop(method).set()

    async def wait_held(self, method: str, count: int = 1) -> None:
        for _ in range(1000):
            if self._held[method] >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"{count} {method} request(s) never reached the server")

    @property
    def mutations(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method != "GET"]

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r.method == method)

    # --- transport ---

    def _tick(self) -> str:
        self.clock += 1
        return iso(self.clock)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.method

        gate = self._gates.get(method)
        if gate is not None:
            self._held[method] += 1
            await gate.wait()

        if self._failures[method]:
            status = self._failures[method].pop(0)
            return httpx.Response(status, json={"error": f"HTTP {status}"})

        parts = [p for p in request.url.path.split("/") if p]
        # /api/auth/session
        if parts[1:] == ["auth", "session"]:
            if not self.user:
                return httpx.Response(401, json={"error": "Unauthorized"})
            return httpx.Response(200, json={"user": self.user})

        if len(parts) < 3 or parts[1] != "messages":
            return httpx.Response(404, json={"error": "Not found"})

        channel_id = parts[2]
        messages = self.channels[channel_id]

        if len(parts) == 3:
            if method == "GET":
                return httpx.Response(200, json=list(messages.values()))
            if method == "POST":
                body = json.loads(request.content)
                message_id = f"m{self._next_id}"
                self._next_id += 1
                rec = {
                    "id": message_id,
                    "channelId": channel_id,
                    "senderId": self.user["id"],
                    "senderName": self.user.get("name"),
                    "content": body["content"],
                    "createdAt": self._tick(),
                    "updatedAt": None,
                }
                messages[message_id] = rec
                return httpx.Response(201, json=rec)

        if len(parts) == 4:
            message_id = parts[3]
            if message_id not in messages:
                return httpx.Response(404, json={"error": "Message not found"})
            if method == "PATCH":
                body = json.loads(request.content)
                rec = messages[message_id]
                rec["content"] = body["content"]
                rec["updatedAt"] = self._tick()
                return httpx.Response(200, json={"message": dict(rec)})
            if method == "DELETE":
                del messages[message_id]
                return httpx.Response(200, json={"ok": True})

        return httpx.Response(405, json={"error": "Method not allowed"})


# ----------------------------------------------------------------------
# In-process change feed
# ----------------------------------------------------------------------

class FakeSubscription(FeedSubscription):
    def __init__(self, channel_id: str, *, ready: bool = True):
        self.channel_id = channel_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ready = asyncio.Event()
        if ready:
            self._ready.set()

    def push(self, event: FeedEvent) -> None:
        self._queue.put_nowait(event)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def events(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def aclose(self) -> None:
        self.closed = True
        self._queue.put_nowait(None)


class FakeFeed(ChangeFeed):
    def __init__(self, *, ready: bool = True):
        self.subscriptions: List[FakeSubscription] = []
        self.initial_events: List[object] = []
        self._ready = ready

    @property
    def latest(self) -> FakeSubscription:
        return self.subscriptions[-1]

    def subscribe(self, channel_id: str) -> FakeSubscription:
        subscription = FakeSubscription(channel_id, ready=self._ready)
        for item in self.initial_events:
            if isinstance(item, Exception):
                subscription.fail(item)
            else:
                subscription.push(item)
        self.subscriptions.append(subscription)
        return subscription


class RecordingPresenter(NotificationPresenter):
    def __init__(self, *, grant: bool = True, error: Optional[Exception] = None):
        super().__init__()
        self.grant = grant
        self.error = error
        self.requests = 0
        self.shown: List[tuple] = []

    async def request_permission(self) -> bool:
        self.requests += 1
        if self.error is not None:
            raise self.error
        self.permission = PermissionState.GRANTED if self.grant else PermissionState.DENIED
        return self.grant

    async def show(self, title: str, body: str, *, tag: str) -> None:
        self.shown.append((title, body, tag))


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def api_config():
    return ApiConfig(base_url=BASE_URL, prefix="/api", token="secret-token")


@pytest.fixture
async def http_client(server):
    client = httpx.AsyncClient(
        base_url=BASE_URL,
        transport=httpx.MockTransport(server.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def api(api_config, http_client):
    return MessagesAPIClient(api_config, client=http_client)


@pytest.fixture
def viewer():
    return CurrentUser(user_id="u1", name="Ada")


@pytest.fixture
def store():
    return MessageCacheStore("c1")


@pytest.fixture
def failures():
    return []


@pytest.fixture
def coordinator(store, api, viewer, failures):
    return MutationCoordinator(store, api, user=viewer, on_failure=failures.append)


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def presenter():
    return RecordingPresenter()
