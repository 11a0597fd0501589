import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from funnelbot.config.settings import settings
from funnelbot.scenario.types import MediaConfig, MediaType
from funnelbot.utils.errors import PermanentDeliveryError, TransientDeliveryError
from funnelbot.utils.logging import get_logger

logger = get_logger()

# Telegram does not expose "is blocked"; these descriptions are how it surfaces
PERMANENT_ERROR_MARKERS = (
    (403, "bot was blocked by the user"),
    (403, "user is deactivated"),
    (400, "chat not found"),
)

_MEDIA_METHODS = {
    MediaType.PHOTO: ("sendPhoto", "photo"),
    MediaType.VIDEO: ("sendVideo", "video"),
    MediaType.VIDEO_NOTE: ("sendVideoNote", "video_note"),
    MediaType.AUDIO: ("sendAudio", "audio"),
}


@dataclass(frozen=True)
class MessageRef:
    chat_id: str
    message_id: int


def classify_telegram_error(
    status_code: Optional[int],
    description: Optional[str],
    retry_after: Optional[float] = None,
) -> Exception:
    """
    Map a Bot API failure onto the delivery error taxonomy.

    Blocked, deactivated and unknown chats are permanent; everything else
    (rate limits, 5xx, malformed responses) is worth retrying.
    """
    text = (description or "").lower()
    for code, marker in PERMANENT_ERROR_MARKERS:
        if status_code == code and marker in text:
            return PermanentDeliveryError(
                description or marker,
                error_code="CONTACT_UNREACHABLE",
                status_code=status_code,
            )

    return TransientDeliveryError(
        description or f"Telegram error: {status_code}",
        error_code="RATE_LIMITED" if status_code == 429 else "TELEGRAM_ERROR",
        status_code=status_code,
        retry_after=retry_after,
    )


class TelegramGateway:
    """Thin async client for the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.TELEGRAM_TIMEOUT_SECONDS
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, data: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/bot{self.token}/{method}"
        try:
            response = await self._client.post(url, json=data)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(
                f"Telegram request {method} failed: {e}",
                error_code="TELEGRAM_NETWORK_ERROR",
            ) from e

        try:
            body = response.json()
        except ValueError:
            raise classify_telegram_error(response.status_code, response.text)

        if response.status_code == 200 and body.get("ok"):
            return body.get("result")

        parameters = body.get("parameters") or {}
        raise classify_telegram_error(
            body.get("error_code", response.status_code),
            body.get("description"),
            parameters.get("retry_after"),
        )

    @staticmethod
    def _ref(chat_id: str, result: Dict[str, Any]) -> MessageRef:
        return MessageRef(chat_id=str(chat_id), message_id=int(result["message_id"]))

    async def send_message(
        self,
        chat_id: str,
        html: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> MessageRef:
        data: Dict[str, Any] = {"chat_id": chat_id, "text": html, "parse_mode": "HTML"}
        if reply_markup:
            data["reply_markup"] = reply_markup
        return self._ref(chat_id, await self._call("sendMessage", data))

    async def send_media(
        self,
        chat_id: str,
        items: Sequence[MediaConfig],
        caption: Optional[str] = None,
    ) -> List[MessageRef]:
        """Send items one by one; the caption goes on the first item that accepts one."""
        refs = []
        for item in items:
            method, field = _MEDIA_METHODS[item.type]
            data: Dict[str, Any] = {"chat_id": chat_id, field: item.file_id_or_url}
            if caption and item.type != MediaType.VIDEO_NOTE:
                data["caption"] = caption
                data["parse_mode"] = "HTML"
                caption = None
            refs.append(self._ref(chat_id, await self._call(method, data)))
        return refs

    async def send_media_group(
        self,
        chat_id: str,
        items: Sequence[MediaConfig],
        caption: Optional[str] = None,
    ) -> List[MessageRef]:
        media = []
        for index, item in enumerate(items):
            entry: Dict[str, Any] = {"type": item.type.value, "media": item.file_id_or_url}
            if caption and index == 0:
                entry["caption"] = caption
                entry["parse_mode"] = "HTML"
            media.append(entry)

        result = await self._call(
            "sendMediaGroup", {"chat_id": chat_id, "media": json.dumps(media)}
        )
        return [self._ref(chat_id, message) for message in result or []]

    async def delete_message(self, chat_id: str, message_id: int) -> bool:
        return bool(
            await self._call(
                "deleteMessage", {"chat_id": chat_id, "message_id": message_id}
            )
        )

    async def send_chat_action(self, chat_id: str, action: str = "typing") -> None:
        """Silent probe: a chat action creates no message."""
        await self._call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def get_member_status(self, group_id: str, chat_id: str) -> str:
        result = await self._call(
            "getChatMember", {"chat_id": group_id, "user_id": chat_id}
        )
        return (result or {}).get("status", "left")
