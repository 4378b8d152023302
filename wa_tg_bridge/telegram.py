"""
Telegram Bot API Client

Thin async client over the Bot API using httpx. Covers what the bridge
needs: forum topics, text and media messages, reactions, file downloads
and long-polling for updates.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .database import Database
from .errors import DeliveryError

logger = logging.getLogger(__name__)

FORUM_GROUP_STATE_KEY = "forum_group_id"

QR_CAPTION = (
    "📱 <b>Scan this QR code with WhatsApp</b>\n\n"
    "Open WhatsApp → Settings → Linked Devices → Link a Device"
)

# media type -> (Bot API method, multipart field)
MEDIA_METHODS = {
    "photo": ("sendPhoto", "photo"),
    "video": ("sendVideo", "video"),
    "audio": ("sendAudio", "audio"),
    "voice": ("sendVoice", "voice"),
    "sticker": ("sendSticker", "sticker"),
    "animation": ("sendAnimation", "animation"),
    "document": ("sendDocument", "document"),
}


class TelegramClient:
    """Async Telegram Bot API client"""

    def __init__(self, bot_token: str, admin_chat_id: str, db: Optional[Database] = None,
                 api_base: str = "https://api.telegram.org",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            bot_token: Bot token from @BotFather
            admin_chat_id: Chat id of the only operator
            db: Database for persisting the forum group id
            api_base: Bot API root URL
            transport: Optional httpx transport (tests)
        """
        self.bot_token = bot_token
        self.admin_chat_id = str(admin_chat_id)
        self.db = db
        self.api_base = api_base.rstrip("/")
        self.forum_group_id: Optional[str] = None
        self.bot_username: Optional[str] = None
        self.is_ready = False
        self.client = httpx.AsyncClient(transport=transport, timeout=35.0)

    async def _api(self, method: str, params: Optional[Dict[str, Any]] = None,
                   files: Optional[Dict] = None, timeout: float = 35.0) -> Any:
        """
        Call a Bot API method and return its `result`.

        Raises DeliveryError when the API reports a failure.
        """
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            if files:
                data = {k: str(v) for k, v in payload.items()}
                response = await self.client.post(url, data=data, files=files, timeout=timeout)
            else:
                response = await self.client.post(url, json=payload, timeout=timeout)
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"Telegram {method} failed: {type(e).__name__}")

        if not body.get("ok"):
            description = body.get("description", f"HTTP {response.status_code}")
            raise DeliveryError(f"Telegram {method} failed: {description}")
        return body.get("result")

    async def initialize(self):
        """Verify the token and load the stored forum group"""
        me = await self._api("getMe", timeout=10)
        self.bot_username = me.get("username")
        self.is_ready = True
        logger.info(f"✅ Telegram bot initialized: @{self.bot_username}")

        if self.db is not None:
            self.forum_group_id = self.db.get_state(FORUM_GROUP_STATE_KEY)
            if self.forum_group_id:
                logger.info(f"Forum group loaded: {self.forum_group_id}")

    def set_forum_group(self, chat_id):
        self.forum_group_id = str(chat_id)
        if self.db is not None:
            self.db.set_state(FORUM_GROUP_STATE_KEY, self.forum_group_id)
        logger.info(f"Forum group set to: {self.forum_group_id}")

    @property
    def target_chat_id(self) -> str:
        """Where bridged messages go: the forum group, else the admin chat"""
        return self.forum_group_id or self.admin_chat_id

    # ==========================================
    # TOPICS AND MESSAGES
    # ==========================================

    async def create_forum_topic(self, name: str) -> int:
        if not self.forum_group_id:
            raise DeliveryError("Forum group not configured. Use /setgroup command.")
        topic = await self._api("createForumTopic", {
            "chat_id": self.forum_group_id,
            "name": name[:128],
        })
        thread_id = topic["message_thread_id"]
        logger.info(f"Created forum topic: \"{name}\" ({thread_id})")
        return thread_id

    async def send_message(self, chat_id, text: str, thread_id: Optional[int] = None,
                           reply_to: Optional[int] = None, parse_mode: Optional[str] = "HTML",
                           reply_markup: Optional[Dict] = None) -> Dict:
        params = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "message_thread_id": thread_id,
            "reply_markup": reply_markup,
        }
        if reply_to:
            params["reply_parameters"] = {"message_id": reply_to, "allow_sending_without_reply": True}
        return await self._api("sendMessage", params)

    async def send_message_to_topic(self, thread_id: Optional[int], text: str,
                                    reply_to: Optional[int] = None) -> Dict:
        """Send into a thread; falls back to the admin chat if the thread is unusable"""
        try:
            return await self.send_message(self.target_chat_id, text, thread_id=thread_id,
                                           reply_to=reply_to)
        except DeliveryError as e:
            logger.error(f"❌ Failed to send to topic {thread_id}: {e}")
            return await self.send_to_admin(text)

    async def send_to_admin(self, text: str, reply_markup: Optional[Dict] = None) -> Dict:
        return await self.send_message(self.admin_chat_id, text, reply_markup=reply_markup)

    async def send_media(self, thread_id: Optional[int], media_type: str, file_path: str,
                         caption: str = "", reply_to: Optional[int] = None) -> Dict:
        method, field = MEDIA_METHODS.get(media_type, MEDIA_METHODS["document"])
        params = {
            "chat_id": self.target_chat_id,
            "message_thread_id": thread_id,
        }
        if media_type != "sticker" and caption:
            params["caption"] = caption
            params["parse_mode"] = "HTML"
        if reply_to:
            params["reply_to_message_id"] = reply_to

        path = Path(file_path)
        with path.open("rb") as fh:
            return await self._api(method, params, files={field: (path.name, fh)}, timeout=120)

    async def set_message_reaction(self, chat_id, message_id: int, emoji: Optional[str]):
        """Set a single emoji reaction; None clears it"""
        reaction = [{"type": "emoji", "emoji": emoji}] if emoji else []
        await self._api("setMessageReaction", {
            "chat_id": chat_id,
            "message_id": message_id,
            "reaction": reaction,
        })

    async def send_qr_code(self, png: bytes) -> Dict:
        return await self._api(
            "sendPhoto",
            {"chat_id": self.admin_chat_id, "caption": QR_CAPTION, "parse_mode": "HTML"},
            files={"photo": ("qr.png", png, "image/png")},
        )

    async def answer_callback_query(self, query_id: str, text: Optional[str] = None,
                                    show_alert: bool = False):
        await self._api("answerCallbackQuery", {
            "callback_query_id": query_id,
            "text": text,
            "show_alert": show_alert or None,
        })

    # ==========================================
    # FILES
    # ==========================================

    async def download_file(self, file_id: str, dest_dir: str) -> str:
        """Download a Telegram file into dest_dir and return the local path"""
        meta = await self._api("getFile", {"file_id": file_id}, timeout=15)
        remote_path = meta.get("file_path")
        if not remote_path:
            raise DeliveryError("Telegram getFile returned no file_path")

        url = f"{self.api_base}/file/bot{self.bot_token}/{remote_path}"
        try:
            response = await self.client.get(url, timeout=60)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"Telegram file download failed: {type(e).__name__}")

        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        local_path = dest / f"{file_id[:32]}_{Path(remote_path).name}"
        local_path.write_bytes(response.content)
        return str(local_path)

    # ==========================================
    # UPDATES
    # ==========================================

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 25) -> List[Dict]:
        return await self._api("getUpdates", {
            "offset": offset,
            "timeout": timeout,
            "allowed_updates": ["message", "callback_query"],
        }, timeout=timeout + 10)

    async def poll_updates(self, handler: Callable[[Dict], Awaitable],
                           stop_event: asyncio.Event, timeout: int = 25):
        """Long-poll getUpdates until stop_event is set, feeding each update to handler"""
        offset = None
        while not stop_event.is_set():
            try:
                updates = await self.get_updates(offset, timeout)
            except DeliveryError as e:
                logger.warning(f"⚠️  Telegram polling error: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=5)
                except asyncio.TimeoutError:
                    pass
                continue

            for update in updates or []:
                offset = max(offset or 0, int(update.get("update_id", 0)) + 1)
                try:
                    await handler(update)
                except Exception as e:
                    logger.error(f"❌ Error handling Telegram update: {e}", exc_info=True)

    async def close(self):
        await self.client.aclose()
