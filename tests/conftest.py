import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the package in this repository is importable without installation.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from wa_tg_bridge.database import Database  # noqa: E402
from wa_tg_bridge.errors import DeliveryError  # noqa: E402

ADMIN_ID = "1000"
FORUM_ID = "-100200"


class FakeTelegram:
    """Records every Bot API call the bridge makes"""

    def __init__(self, admin_chat_id=ADMIN_ID, forum_group_id=FORUM_ID):
        self.admin_chat_id = admin_chat_id
        self.forum_group_id = forum_group_id
        self.is_ready = True
        self.topics = []
        self.messages = []
        self.media = []
        self.reactions = []
        self.qr_codes = []
        self.callback_answers = []
        self.fail_topics = False
        self._next_id = 500

    def _sent(self, chat_id):
        self._next_id += 1
        return {"message_id": self._next_id, "chat": {"id": chat_id}}

    def texts(self):
        return [m["text"] for m in self.messages]

    def set_forum_group(self, chat_id):
        self.forum_group_id = str(chat_id)

    async def create_forum_topic(self, name):
        await asyncio.sleep(0)
        if self.fail_topics:
            raise DeliveryError("topic creation failed")
        self.topics.append(name)
        return 100 + len(self.topics)

    async def send_message(self, chat_id, text, thread_id=None, reply_to=None,
                           parse_mode="HTML", reply_markup=None):
        self.messages.append({"chat_id": chat_id, "text": text, "thread_id": thread_id,
                              "reply_to": reply_to, "reply_markup": reply_markup})
        return self._sent(chat_id)

    async def send_message_to_topic(self, thread_id, text, reply_to=None):
        return await self.send_message(self.forum_group_id or self.admin_chat_id, text,
                                       thread_id=thread_id, reply_to=reply_to)

    async def send_to_admin(self, text, reply_markup=None):
        return await self.send_message(self.admin_chat_id, text, reply_markup=reply_markup)

    async def send_media(self, thread_id, media_type, file_path, caption="", reply_to=None):
        self.media.append({"thread_id": thread_id, "media_type": media_type,
                           "file_path": file_path, "caption": caption, "reply_to": reply_to})
        return self._sent(self.forum_group_id)

    async def set_message_reaction(self, chat_id, message_id, emoji):
        self.reactions.append((str(chat_id), message_id, emoji))

    async def send_qr_code(self, png):
        self.qr_codes.append(png)
        return self._sent(self.admin_chat_id)

    async def answer_callback_query(self, query_id, text=None, show_alert=False):
        self.callback_answers.append((query_id, text))

    async def download_file(self, file_id, dest_dir):
        path = Path(dest_dir) / f"{file_id}.bin"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"telegram-file")
        return str(path)


class FakeSession:
    """Stands in for the WhatsApp bridge session"""

    def __init__(self):
        self.starts = 0
        self.stops = 0
        self.logouts = 0
        self.sent = []
        self.sent_media = []
        self.credentials = False
        self.fail_start = False
        self.fail_send_to = set()
        self.media_payload = None
        self._next_id = 0

    def has_credentials(self):
        return self.credentials

    async def start(self, manager):
        self.starts += 1
        if self.fail_start:
            raise DeliveryError("bridge unreachable")

    async def stop(self):
        self.stops += 1

    async def logout(self):
        self.logouts += 1

    async def send_text(self, identity, text, quoted_id=None):
        if identity in self.fail_send_to:
            raise DeliveryError(f"send to {identity} failed")
        self._next_id += 1
        self.sent.append({"identity": identity, "text": text, "quoted_id": quoted_id})
        return f"WA-OUT-{self._next_id}"

    async def send_media(self, identity, file_path, caption=None, quoted_id=None, as_sticker=False):
        self._next_id += 1
        self.sent_media.append({"identity": identity, "file_path": file_path, "caption": caption,
                                "quoted_id": quoted_id, "as_sticker": as_sticker})
        return f"WA-OUT-{self._next_id}"

    async def download_media(self, raw):
        return self.media_payload


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "bridge.db"))
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def telegram():
    return FakeTelegram()


@pytest.fixture
def session():
    return FakeSession()
