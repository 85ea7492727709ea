import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import httpx

from shared.chat.messages import Message
from shared.config.sync import ApiConfig, FeedConfig
from shared.logging.logger import get_logger

log = get_logger("messages.feed")


class FeedUnavailable(Exception):
    """
    Raised when the change feed cannot be (re)established after the
    configured number of attempts. The subscription is dead afterwards.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FeedEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    # Emitted after a dropped connection is re-established; events may
    # have been missed in between.
    RESYNC = "resync"


@dataclass(frozen=True)
class FeedEvent:
    type: FeedEventType
    message_id: Optional[str] = None
    message: Optional[Message] = None
    event_id: Optional[str] = None

    @classmethod
    def resync(cls) -> "FeedEvent":
        return cls(type=FeedEventType.RESYNC)

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        *,
        channel_id: str,
        event_id: Optional[str] = None,
        default_type: Optional[str] = None,
    ) -> "FeedEvent":
        """
        Decode a change event.

        Accepted shapes:
          {"type": "insert", "record": {...}}
          {"eventType": "INSERT", "new": {...}, "old": {...}}   (postgres changes)
        Raises ValueError for anything else.
        """
        if not isinstance(payload, dict):
            raise ValueError("feed payload must be an object")

        raw_type = payload.get("type") or payload.get("eventType") or default_type
        try:
            event_type = FeedEventType(str(raw_type or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown feed event type: {raw_type!r}") from None
        if event_type == FeedEventType.RESYNC:
            raise ValueError("resync is not a wire event")

        if event_type == FeedEventType.DELETE:
            record = payload.get("record") or payload.get("old") or payload.get("new")
            if not isinstance(record, dict):
                raise ValueError("delete event without record")
            message_id = record.get("id") or record.get("message_id") or record.get("messageId")
            if message_id is None:
                raise ValueError("delete event without message id")
            return cls(type=event_type, message_id=str(message_id), event_id=event_id)

        record = payload.get("record") or payload.get("new")
        message = Message.from_dict(record, channel_id=channel_id)
        if message.channel_id != channel_id:
            raise ValueError(
                f"event for channel {message.channel_id} on channel {channel_id} feed"
            )
        return cls(
            type=event_type,
            message_id=message.message_id,
            message=message,
            event_id=event_id,
        )


# ----------------------------------------------------------------------
# Interfaces
# ----------------------------------------------------------------------

class FeedSubscription(ABC):
    """
    One open connection to the change feed for one channel.

    events() may be iterated once; aclose() ends the iteration and
    releases the connection.
    """

    channel_id: str

    @abstractmethod
    def events(self) -> AsyncIterator[FeedEvent]:
        raise NotImplementedError

    @abstractmethod
    async def wait_ready(self, timeout: float) -> bool:
        """Wait until the subscription is established. False on timeout."""
        raise NotImplementedError

    @abstractmethod
    async def aclose(self) -> None:
        raise NotImplementedError


class ChangeFeed(ABC):
    @abstractmethod
    def subscribe(self, channel_id: str) -> FeedSubscription:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


# ----------------------------------------------------------------------
# Server-Sent Events implementation
# ----------------------------------------------------------------------

@dataclass
class SSEFrame:
    event: str
    data: str
    event_id: Optional[str] = None


class SSESubscription(FeedSubscription):
    """
    SSE subscription for a channel's change stream.

    Rules:
    - Handles keepalives, reconnect backoff, and Last-Event-ID resume
    - Signals readiness once the first stream response is accepted
    - Yields a RESYNC event after every successful reconnect
    """

    def __init__(
        self,
        channel_id: str,
        url: str,
        *,
        client: httpx.AsyncClient,
        headers: Dict[str, str],
        config: FeedConfig,
    ):
        self.channel_id = str(channel_id)
        self._url = url
        self._client = client
        self._headers = headers
        self._config = config

        self._ready = asyncio.Event()
        self._closed = False
        self._connected_once = False
        self._last_event_id: Optional[str] = None

    # ------------------------------------------------------------------

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def events(self) -> AsyncIterator[FeedEvent]:
        async for frame in self._iter_frames():
            if frame.event == "__resync__":
                yield FeedEvent.resync()
                continue

            if frame.event in {"ping", "keepalive"}:
                continue

            try:
                payload = json.loads(frame.data)
            except ValueError:
                log.debug(f"[{self.channel_id}] Ignoring non-JSON feed frame")
                continue

            default_type = frame.event if frame.event != "message" else None
            try:
                event = FeedEvent.from_payload(
                    payload,
                    channel_id=self.channel_id,
                    event_id=frame.event_id,
                    default_type=default_type,
                )
            except ValueError as e:
                log.warning(f"[{self.channel_id}] Dropping invalid feed event: {e}")
                continue

            yield event

    # ------------------------------------------------------------------

    async def _iter_frames(self) -> AsyncIterator[SSEFrame]:
        backoff_seconds = 1.0
        failure_count = 0
        max_failures = self._config.max_failures

        while not self._closed:
            headers = dict(self._headers)
            if self._last_event_id:
                headers["Last-Event-ID"] = self._last_event_id

            try:
                async with self._client.stream("GET", self._url, headers=headers) as resp:
                    ct = resp.headers.get("content-type")
                    status = resp.status_code

                    if status == 204:
                        log.debug(f"[{self.channel_id}] Feed keepalive HTTP 204")
                        # 204 is an empty keepalive; do not backoff exponentially.
                        failure_count = 0
                        await asyncio.sleep(2)
                        continue

                    if status != 200 or (ct and "text/event-stream" not in ct):
                        body_preview = ""
                        try:
                            raw = await resp.aread()
                            body_preview = raw.decode(errors="ignore")[:500]
                        except httpx.HTTPError:
                            body_preview = "<unreadable>"

                        log.error(
                            f"[{self.channel_id}] Feed connection failed [{status}] "
                            f"content-type={ct} body={body_preview}"
                        )

                        failure_count += 1
                        if failure_count >= max_failures or status in (401, 403, 404):
                            self._closed = True
                            raise FeedUnavailable(
                                f"Feed unavailable after {failure_count} attempts "
                                f"(last status={status})",
                                status_code=status,
                            )

                        await asyncio.sleep(backoff_seconds)
                        backoff_seconds = min(backoff_seconds * 2, self._config.max_backoff_seconds)
                        continue

                    log.info(f"[{self.channel_id}] Change feed connected")
                    backoff_seconds = 1.0
                    failure_count = 0

                    if self._connected_once:
                        yield SSEFrame(event="__resync__", data="")
                    self._connected_once = True
                    self._ready.set()

                    async for frame in self._read_stream(resp):
                        if frame.event_id:
                            self._last_event_id = frame.event_id
                        yield frame

            except asyncio.CancelledError:
                raise

            except FeedUnavailable:
                raise

            except httpx.HTTPError as e:
                failure_count += 1
                log.warning(
                    f"[{self.channel_id}] Feed stream error (attempt={failure_count}): {e}"
                )

                if failure_count >= max_failures:
                    self._closed = True
                    raise FeedUnavailable(
                        f"Feed repeatedly failed after {failure_count} attempts"
                    ) from e

            if self._closed:
                break

            log.debug(
                f"[{self.channel_id}] Feed reconnecting in {backoff_seconds:.1f}s"
            )
            await asyncio.sleep(backoff_seconds)
            backoff_seconds = min(backoff_seconds * 2, self._config.max_backoff_seconds)

    async def _read_stream(self, resp: httpx.Response) -> AsyncIterator[SSEFrame]:
        """
        Parse a single HTTP response body into SSE frames.
        """
        data_lines: List[str] = []
        event_name: Optional[str] = None
        event_id: Optional[str] = None

        async for raw_line in resp.aiter_lines():
            if self._closed:
                break

            line = raw_line.strip("\ufeff").rstrip("\r")

            # Empty line signals dispatch
            if line == "":
                if data_lines:
                    yield SSEFrame(
                        event=event_name or "message",
                        data="\n".join(data_lines),
                        event_id=event_id,
                    )

                data_lines = []
                event_name = None
                event_id = None
                continue

            # Comments/keepalives begin with ':'
            if line.startswith(":"):
                continue

            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
                continue

            if line.startswith("event:"):
                event_name = line[6:].strip() or event_name
                continue

            if line.startswith("id:"):
                event_id = line[3:].strip() or event_id
                continue

        # Flush any trailing data when the stream closes without a newline
        if data_lines and not self._closed:
            yield SSEFrame(
                event=event_name or "message",
                data="\n".join(data_lines),
                event_id=event_id,
            )

    async def aclose(self) -> None:
        self._closed = True


class SSEChangeFeed(ChangeFeed):
    """
    Change feed over Server-Sent Events.

    GET {prefix}/messages/{channel_id}/stream, text/event-stream, each data
    frame a JSON change event.
    """

    def __init__(
        self,
        api_config: ApiConfig,
        feed_config: FeedConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_config = api_config
        self._feed_config = feed_config

        self._client = client or httpx.AsyncClient(
            base_url=api_config.base_url,
            timeout=httpx.Timeout(api_config.timeout_seconds, read=None),
            follow_redirects=True,
        )
        self._client_owned = client is None

    def stream_path(self, channel_id: str) -> str:
        return f"{self._api_config.prefix}/messages/{quote(str(channel_id), safe='')}/stream"

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        if self._api_config.token:
            headers["Authorization"] = f"Bearer {self._api_config.token}"
        return headers

    def subscribe(self, channel_id: str) -> FeedSubscription:
        log.debug(f"[{channel_id}] Opening feed subscription")
        return SSESubscription(
            channel_id,
            self.stream_path(channel_id),
            client=self._client,
            headers=self._build_headers(),
            config=self._feed_config,
        )

    async def aclose(self) -> None:
        if self._client_owned:
            await self._client.aclose()


__all__ = [
    "ChangeFeed",
    "FeedEvent",
    "FeedEventType",
    "FeedSubscription",
    "FeedUnavailable",
    "SSEChangeFeed",
    "SSESubscription",
]
