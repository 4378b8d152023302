import asyncio
import json

import httpx
import pytest

from wa_tg_bridge.errors import DeliveryError
from wa_tg_bridge.telegram import FORUM_GROUP_STATE_KEY, TelegramClient

TOKEN = "123:abc"


class BotApi:
    """Canned Bot API responses keyed by method name"""

    def __init__(self):
        self.calls = []
        self.results = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if "/file/bot" in request.url.path:
            self.calls.append(("file", request.url.path))
            return httpx.Response(200, content=b"file-bytes")

        method = request.url.path.rsplit("/", 1)[-1]
        if request.headers.get("content-type", "").startswith("application/json"):
            params = json.loads(request.content or b"{}")
        else:
            params = {}
        self.calls.append((method, params))

        result = self.results.get(method, True)
        if callable(result):
            result = result(params)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json={"ok": True, "result": result})

    def methods(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def api():
    return BotApi()


def make_client(api, db=None):
    return TelegramClient(TOKEN, "1000", db=db, transport=httpx.MockTransport(api))


def test_initialize_loads_forum_group(api, db):
    db.set_state(FORUM_GROUP_STATE_KEY, "-100777")
    api.results["getMe"] = {"id": 1, "username": "bridge_bot"}
    client = make_client(api, db)

    asyncio.run(client.initialize())

    assert client.is_ready
    assert client.bot_username == "bridge_bot"
    assert client.forum_group_id == "-100777"
    assert client.target_chat_id == "-100777"


def test_api_error_raises_delivery_error(api):
    api.results["sendMessage"] = httpx.Response(
        400, json={"ok": False, "description": "Bad Request: chat not found"}
    )
    client = make_client(api)

    with pytest.raises(DeliveryError, match="chat not found"):
        asyncio.run(client.send_message("1", "hi"))


def test_non_json_response_raises_delivery_error(api):
    api.results["getMe"] = httpx.Response(502, content=b"<html>bad gateway</html>")
    client = make_client(api)

    with pytest.raises(DeliveryError):
        asyncio.run(client.initialize())
    assert not client.is_ready


def test_create_topic_requires_forum_group(api):
    client = make_client(api)

    with pytest.raises(DeliveryError, match="Forum group not configured"):
        asyncio.run(client.create_forum_topic("Alice"))
    assert api.calls == []


def test_create_topic(api, db):
    api.results["createForumTopic"] = {"message_thread_id": 42}
    client = make_client(api, db)
    client.set_forum_group(-100200)

    assert asyncio.run(client.create_forum_topic("x" * 200)) == 42
    method, params = api.calls[-1]
    assert params["chat_id"] == "-100200"
    assert len(params["name"]) == 128
    assert db.get_state(FORUM_GROUP_STATE_KEY) == "-100200"


def test_send_message_params(api):
    api.results["sendMessage"] = lambda p: {"message_id": 7, "chat": {"id": p["chat_id"]}}
    client = make_client(api)

    sent = asyncio.run(client.send_message("-100200", "<b>hi</b>", thread_id=5, reply_to=3))

    assert sent["message_id"] == 7
    params = api.calls[-1][1]
    assert params["message_thread_id"] == 5
    assert params["parse_mode"] == "HTML"
    assert params["reply_parameters"] == {"message_id": 3, "allow_sending_without_reply": True}
    assert "reply_markup" not in params


def test_send_to_topic_falls_back_to_admin(api):
    def send(params):
        if params["chat_id"] == "-100200":
            return httpx.Response(400, json={"ok": False, "description": "thread not found"})
        return {"message_id": 9, "chat": {"id": params["chat_id"]}}

    api.results["sendMessage"] = send
    client = make_client(api)
    client.forum_group_id = "-100200"

    sent = asyncio.run(client.send_message_to_topic(5, "hello"))

    assert sent["chat"]["id"] == "1000"
    assert [c[1]["chat_id"] for c in api.calls] == ["-100200", "1000"]


def test_clear_reaction_sends_empty_list(api):
    client = make_client(api)
    asyncio.run(client.set_message_reaction("-100200", 9, None))
    assert api.calls[-1] == ("setMessageReaction",
                             {"chat_id": "-100200", "message_id": 9, "reaction": []})


def test_send_media_uses_multipart(api, tmp_path):
    path = tmp_path / "pic.jpg"
    path.write_bytes(b"jpeg")
    client = make_client(api)
    client.forum_group_id = "-100200"

    asyncio.run(client.send_media(5, "photo", str(path), caption="look"))
    asyncio.run(client.send_media(5, "unknown", str(path)))

    assert api.methods() == ["sendPhoto", "sendDocument"]


def test_download_file(api, tmp_path):
    api.results["getFile"] = {"file_path": "photos/file_1.jpg"}
    client = make_client(api)

    local = asyncio.run(client.download_file("FILEID", str(tmp_path / "out")))

    assert local.endswith("FILEID_file_1.jpg")
    with open(local, "rb") as fh:
        assert fh.read() == b"file-bytes"
    assert api.calls[-1][0] == "file"
    assert api.calls[-1][1].endswith("/photos/file_1.jpg")


def test_poll_updates_advances_offset_and_survives_handler_errors(api):
    batches = [
        [{"update_id": 10, "message": {"text": "a"}}, {"update_id": 11, "message": {"text": "boom"}}],
        [{"update_id": 12, "message": {"text": "c"}}],
    ]
    offsets = []
    seen = []
    stop = asyncio.Event()

    def get_updates(params):
        offsets.append(params.get("offset"))
        if batches:
            return batches.pop(0)
        stop.set()
        return []

    api.results["getUpdates"] = get_updates

    async def handler(update):
        seen.append(update["update_id"])
        if update["message"]["text"] == "boom":
            raise RuntimeError("handler bug")

    client = make_client(api)
    asyncio.run(client.poll_updates(handler, stop, timeout=0))

    assert seen == [10, 11, 12]
    assert offsets == [None, 12, 13]
