from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from shared.chat.errors import (
    AuthenticationError,
    TransientError,
    error_for_status,
)
from shared.chat.messages import CurrentUser, Message
from shared.config.sync import ApiConfig
from shared.logging.logger import get_logger

log = get_logger("messages.api")


class MessagesAPIClient:
    """
    Authenticated REST client for the message API.

    Endpoints (relative to the configured prefix):
        GET    /messages/{channel_id}
        POST   /messages/{channel_id}                 {content}
        PATCH  /messages/{channel_id}/{message_id}    {content}
        DELETE /messages/{channel_id}/{message_id}
        GET    /auth/session

    Every failure is raised as a ChatSyncError subtype; transport problems
    and 5xx become TransientError. Nothing is retried here.
    """

    def __init__(
        self,
        config: ApiConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config

        # Allow caller to supply a shared client; otherwise own lifecycle
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Accept": "application/json",
                "User-Agent": "channelsync/0.1",
            },
            timeout=config.timeout_seconds,
            follow_redirects=True,
        )
        self._client_owned = client is None

    # ------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------

    def messages_path(self, channel_id: str, message_id: Optional[str] = None) -> str:
        path = f"{self._config.prefix}/messages/{quote(str(channel_id), safe='')}"
        if message_id is not None:
            path += f"/{quote(str(message_id), safe='')}"
        return path

    def _auth_headers(self) -> Dict[str, str]:
        if not self._config.token:
            return {}
        return {"Authorization": f"Bearer {self._config.token}"}

    # ------------------------------------------------------------
    # SESSION
    # ------------------------------------------------------------

    async def get_current_user(self) -> Optional[CurrentUser]:
        """
        Return the signed-in user, or None when there is no session.
        """
        path = f"{self._config.prefix}{self._config.session_path}"
        try:
            payload = await self._request("GET", path)
        except AuthenticationError:
            log.info("No active session (HTTP 401)")
            return None

        if not isinstance(payload, dict):
            return None

        user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        try:
            return CurrentUser.from_dict(user)
        except ValueError:
            log.warning("Session payload has no user id; treating as signed out")
            return None

    # ------------------------------------------------------------
    # MESSAGES
    # ------------------------------------------------------------

    async def list_messages(self, channel_id: str) -> List[Message]:
        payload = await self._request("GET", self.messages_path(channel_id))

        records = payload
        if isinstance(payload, dict):
            records = payload.get("messages")
        if not isinstance(records, list):
            raise TransientError(
                f"Unexpected message list payload for channel {channel_id}"
            )

        out: List[Message] = []
        for record in records:
            try:
                out.append(Message.from_dict(record, channel_id=channel_id))
            except ValueError as e:
                log.warning(f"[{channel_id}] Skipping invalid message record: {e}")

        out.sort(key=lambda m: m.created_at)
        return out

    async def create_message(self, channel_id: str, content: str) -> Message:
        payload = await self._request(
            "POST", self.messages_path(channel_id), json={"content": content}
        )
        return self._parse_message(payload, channel_id)

    async def update_message(self, channel_id: str, message_id: str, content: str) -> Message:
        payload = await self._request(
            "PATCH",
            self.messages_path(channel_id, message_id),
            json={"content": content},
        )
        return self._parse_message(payload, channel_id)

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        payload = await self._request("DELETE", self.messages_path(channel_id, message_id))

        if isinstance(payload, dict) and payload.get("ok") is False:
            raise TransientError(f"Delete of {message_id} was not acknowledged")

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    @staticmethod
    def _parse_message(payload: Any, channel_id: str) -> Message:
        # PATCH answers {"message": {...}}; POST answers the bare record.
        record = payload
        if isinstance(payload, dict) and isinstance(payload.get("message"), dict):
            record = payload["message"]

        try:
            return Message.from_dict(record, channel_id=channel_id)
        except ValueError as e:
            raise TransientError(f"Invalid message in response: {e}") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"

        if isinstance(body, dict):
            for key in ("message", "error", "detail"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"HTTP {response.status_code}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            r = await self._client.request(
                method, path, json=json, headers=self._auth_headers()
            )
        except httpx.TimeoutException as e:
            log.error(f"{method} {path} timed out: {e}")
            raise TransientError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            log.error(f"{method} {path} failed: {e}")
            raise TransientError(f"{method} {path} failed: {e}") from e

        if r.status_code >= 400:
            detail = self._error_detail(r)
            log.warning(f"{method} {path} rejected [{r.status_code}]: {detail}")
            raise error_for_status(r.status_code, detail)

        if not r.content:
            return None

        try:
            return r.json()
        except ValueError as e:
            log.error(
                f"{method} {path} returned invalid JSON "
                f"(content-type={r.headers.get('content-type')})"
            )
            raise TransientError(f"{method} {path} returned invalid JSON") from e

    async def aclose(self) -> None:
        if self._client_owned:
            await self._client.aclose()


__all__ = ["MessagesAPIClient"]
