import json

import httpx
import pytest
import pytest_asyncio
import respx

from funnelbot.scenario.types import MediaConfig, MediaType
from funnelbot.services.telegram import TelegramGateway, classify_telegram_error
from funnelbot.utils.errors import PermanentDeliveryError, TransientDeliveryError

BASE_URL = "https://telegram.test"
TOKEN = "123:abc"

pytestmark = pytest.mark.unit


def api(method: str) -> str:
    return f"{BASE_URL}/bot{TOKEN}/{method}"


def ok(result):
    return httpx.Response(200, json={"ok": True, "result": result})


def failure(status_code: int, description: str, **parameters):
    body = {"ok": False, "error_code": status_code, "description": description}
    if parameters:
        body["parameters"] = parameters
    return httpx.Response(status_code, json=body)


@pytest_asyncio.fixture
async def telegram():
    gateway = TelegramGateway(TOKEN, base_url=BASE_URL, timeout=2)
    yield gateway
    await gateway.close()


class TestClassification:
    @pytest.mark.parametrize(
        "status_code, description",
        [
            (403, "Forbidden: bot was blocked by the user"),
            (403, "Forbidden: user is deactivated"),
            (400, "Bad Request: chat not found"),
        ],
    )
    def test_unreachable_contacts_are_permanent(self, status_code, description):
        error = classify_telegram_error(status_code, description)
        assert isinstance(error, PermanentDeliveryError)
        assert error.status_code == status_code

    @pytest.mark.parametrize(
        "status_code, description",
        [
            (429, "Too Many Requests: retry after 5"),
            (502, "Bad Gateway"),
            (400, "Bad Request: message is too long"),
            (None, None),
        ],
    )
    def test_everything_else_is_transient(self, status_code, description):
        assert isinstance(
            classify_telegram_error(status_code, description), TransientDeliveryError
        )

    def test_rate_limit_keeps_retry_after(self):
        error = classify_telegram_error(429, "Too Many Requests", retry_after=7)
        assert error.error_code == "RATE_LIMITED"
        assert error.retry_after == 7


class TestGateway:
    @respx.mock
    async def test_send_message(self, telegram):
        route = respx.post(api("sendMessage")).mock(
            return_value=ok({"message_id": 42, "chat": {"id": 1}})
        )

        ref = await telegram.send_message("1", "<b>Hi</b>")

        assert ref.chat_id == "1"
        assert ref.message_id == 42
        sent = json.loads(route.calls.last.request.content)
        assert sent == {"chat_id": "1", "text": "<b>Hi</b>", "parse_mode": "HTML"}

    @respx.mock
    async def test_blocked_user_raises_permanent_error(self, telegram):
        respx.post(api("sendMessage")).mock(
            return_value=failure(403, "Forbidden: bot was blocked by the user")
        )

        with pytest.raises(PermanentDeliveryError) as exc_info:
            await telegram.send_message("1", "Hi")
        assert exc_info.value.error_code == "CONTACT_UNREACHABLE"

    @respx.mock
    async def test_flood_control_raises_transient_error(self, telegram):
        respx.post(api("sendMessage")).mock(
            return_value=failure(429, "Too Many Requests: retry after 7", retry_after=7)
        )

        with pytest.raises(TransientDeliveryError) as exc_info:
            await telegram.send_message("1", "Hi")
        assert exc_info.value.retry_after == 7

    @respx.mock
    async def test_non_json_response_is_transient(self, telegram):
        respx.post(api("sendMessage")).mock(
            return_value=httpx.Response(502, text="<html>Bad Gateway</html>")
        )

        with pytest.raises(TransientDeliveryError) as exc_info:
            await telegram.send_message("1", "Hi")
        assert exc_info.value.status_code == 502

    @respx.mock
    async def test_network_error_is_transient(self, telegram):
        respx.post(api("sendChatAction")).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(TransientDeliveryError) as exc_info:
            await telegram.send_chat_action("1")
        assert exc_info.value.error_code == "TELEGRAM_NETWORK_ERROR"

    @respx.mock
    async def test_caption_skips_video_notes(self, telegram):
        note_route = respx.post(api("sendVideoNote")).mock(
            return_value=ok({"message_id": 1})
        )
        photo_route = respx.post(api("sendPhoto")).mock(
            return_value=ok({"message_id": 2})
        )

        refs = await telegram.send_media(
            "1",
            [
                MediaConfig(type=MediaType.VIDEO_NOTE, file_id_or_url="note"),
                MediaConfig(type=MediaType.PHOTO, file_id_or_url="photo"),
            ],
            caption="Caption",
        )

        assert [ref.message_id for ref in refs] == [1, 2]
        assert "caption" not in json.loads(note_route.calls.last.request.content)
        photo_body = json.loads(photo_route.calls.last.request.content)
        assert photo_body["caption"] == "Caption"
        assert photo_body["photo"] == "photo"

    @respx.mock
    async def test_media_group_puts_caption_on_first_item(self, telegram):
        route = respx.post(api("sendMediaGroup")).mock(
            return_value=ok([{"message_id": 5}, {"message_id": 6}])
        )

        refs = await telegram.send_media_group(
            "1",
            [
                MediaConfig(type=MediaType.PHOTO, file_id_or_url="a"),
                MediaConfig(type=MediaType.VIDEO, file_id_or_url="b"),
            ],
            caption="Album",
        )

        assert [ref.message_id for ref in refs] == [5, 6]
        media = json.loads(json.loads(route.calls.last.request.content)["media"])
        assert media[0]["caption"] == "Album"
        assert "caption" not in media[1]

    @respx.mock
    async def test_member_status(self, telegram):
        respx.post(api("getChatMember")).mock(return_value=ok({"status": "kicked"}))
        assert await telegram.get_member_status("-100", "1") == "kicked"
