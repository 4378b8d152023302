"""
Bridge Handlers

Moves traffic between the two networks: WhatsApp events are rendered into
per-contact Telegram threads, and operator replies in those threads are sent
back to WhatsApp.
"""

import logging
from typing import Dict, List, Optional

from .connection import BridgeListener, ConnectionManager
from .correlator import MessageCorrelator
from .database import Database
from .directory import ContactDirectory, display_name, phone_from_identity
from .errors import ValidationError, handle_error, safe_error_message
from .media import MediaStore, media_type_for
from .messages import (
    ACK_DELIVERED, ACK_PLAYED, ACK_READ, AckEvent, CallEvent, EditEvent,
    GroupParticipantsEvent, GroupUpdateEvent, InboundMessage, ReactionEvent, RevokeEvent,
)
from .models import Contact, Direction
from .rate_limiter import RateLimiter
from .security import check_message_size, escape_html, is_authorized_user
from .telegram import TelegramClient
from .vault import ContentVault

logger = logging.getLogger(__name__)

CALL_LOG_STATE_KEY = "call_log_thread_id"
CALL_LOG_TITLE = "📞 Call Logs"

ACK_EMOJI = {
    ACK_DELIVERED: "✅",
    ACK_READ: "👀",
    ACK_PLAYED: "🔊",
}

# Telegram message fields that carry media, in lookup order
TELEGRAM_MEDIA_FIELDS = ("photo", "video", "audio", "voice", "document", "sticker", "animation")


def telegram_media_kind(msg: Dict) -> str:
    for kind in TELEGRAM_MEDIA_FIELDS:
        if msg.get(kind):
            return kind
    return "text"


def render_text_body(message: InboundMessage) -> str:
    """HTML body for a non-media message"""
    if message.kind == "location" and message.location:
        return (f"📍 <b>Location:</b>\nLat: {message.location.latitude}"
                f"\nLng: {message.location.longitude}")
    if message.kind in ("vcard", "multi_vcard"):
        return f"📇 <b>Contact Card</b>\n<code>{escape_html(message.body or 'Contact shared')}</code>"
    if message.body:
        return escape_html(message.body)
    return f"<i>[{escape_html(message.kind or 'unknown')} message]</i>"


class BridgeHandlers(BridgeListener):
    """WhatsApp -> Telegram event handling and Telegram -> WhatsApp replies"""

    def __init__(self, db: Database, directory: ContactDirectory, correlator: MessageCorrelator,
                 vault: ContentVault, telegram: TelegramClient, connection: ConnectionManager,
                 media: MediaStore, rate_limiter: RateLimiter):
        self.db = db
        self.directory = directory
        self.correlator = correlator
        self.vault = vault
        self.telegram = telegram
        self.connection = connection
        self.media = media
        self.rate_limiter = rate_limiter
        self._call_log_thread_id: Optional[int] = None

    # ==========================================
    # MESSAGES
    # ==========================================

    async def on_message(self, message: InboundMessage):
        await self._forward(message, echo=False)

    async def on_message_echo(self, message: InboundMessage):
        # Messages sent from Telegram are already mapped
        if self.correlator.knows(message.id):
            return
        await self._forward(message, echo=True)

    async def _forward(self, message: InboundMessage, echo: bool):
        if message.is_status:
            return
        if not self.rate_limiter.can_proceed(f"wa_{message.chat}"):
            return

        push_name = None if (echo or message.is_group) else message.push_name
        contact = self.directory.resolve(message.chat, platform_name=push_name)
        if contact.is_muted:
            return

        thread_id = await self.directory.thread_for(contact)
        if thread_id is None:
            return

        reply_to = None
        if message.quoted_id:
            mapped = self.correlator.by_primary_id(message.quoted_id)
            if mapped:
                reply_to = mapped.secondary_msg_id

        if echo:
            prefix = "📤 <b>You:</b> "
        else:
            prefix = "📩 " + self._sender_prefix(message)

        if message.has_media:
            sent = await self._forward_media(message, thread_id, prefix, reply_to, echo)
        else:
            sent = await self.telegram.send_message_to_topic(
                thread_id, prefix + render_text_body(message), reply_to=reply_to
            )

        if sent:
            self.correlator.record(
                message.id,
                sent["message_id"],
                sent["chat"]["id"],
                thread_id,
                contact.id,
                Direction.OUTGOING.value if echo else Direction.INCOMING.value,
                message.kind or "text",
                self.vault.encrypt(message.body) if message.body else None,
            )

    def _sender_prefix(self, message: InboundMessage) -> str:
        if not (message.is_group and message.author):
            return ""
        author = self.directory.find(message.author)
        if author:
            name = display_name(author)
        else:
            name = message.push_name or phone_from_identity(message.author)
        return f"<b>[{escape_html(name)}]</b>\n"

    async def _forward_media(self, message: InboundMessage, thread_id: int, prefix: str,
                             reply_to: Optional[int], echo: bool) -> Optional[Dict]:
        direction = "outgoing" if echo else "incoming"
        placeholder = None
        saved = None
        try:
            payload = await message.download()
            if payload is None:
                placeholder = "[Media download failed]"
            else:
                saved = self.media.save(payload, message.id, direction)
                if saved is None:
                    placeholder = "[Media too large or save failed]"
        except Exception as e:
            logger.error(f"❌ Error downloading media {message.id}: {e}")
            placeholder = "[Error processing media]"

        if placeholder:
            return await self.telegram.send_message_to_topic(
                thread_id, prefix + escape_html(placeholder), reply_to=reply_to
            )

        media_type = media_type_for(saved.mimetype)
        if message.kind == "sticker":
            media_type = "sticker"
        caption = prefix + (escape_html(message.body) if message.body else f"<i>[{media_type}]</i>")

        file_path = saved.file_path
        if media_type == "sticker" and saved.mimetype == "image/webp":
            file_path = self.media.convert_sticker_to_png(file_path)

        try:
            return await self.telegram.send_media(thread_id, media_type, file_path, caption, reply_to)
        except Exception as e:
            logger.error(f"❌ Failed to forward media {message.id}: {e}")
            return await self.telegram.send_message_to_topic(
                thread_id, prefix + escape_html("[Error processing media]"), reply_to=reply_to
            )

    # ==========================================
    # RECEIPTS, REACTIONS, EDITS
    # ==========================================

    async def on_ack(self, ack: AckEvent):
        if not ack.from_me:
            return
        emoji = ACK_EMOJI.get(ack.ack)
        if emoji is None:
            return
        mapped = self.correlator.by_primary_id(ack.message_id)
        if not mapped or not mapped.secondary_msg_id:
            return
        try:
            await self.telegram.set_message_reaction(mapped.secondary_chat_id,
                                                     mapped.secondary_msg_id, emoji)
        except Exception as e:
            logger.debug(f"Could not set receipt reaction: {e}")

    async def on_reaction(self, reaction: ReactionEvent):
        mapped = self.correlator.by_primary_id(reaction.message_id)
        if not mapped or not mapped.secondary_msg_id:
            return

        if reaction.emoji:
            self.correlator.record_reaction(reaction.message_id, reaction.emoji, reaction.reactor,
                                            mapped.secondary_msg_id, mapped.secondary_chat_id)
            emoji = reaction.emoji
        else:
            self.correlator.remove_reaction(reaction.message_id, reaction.reactor)
            emoji = None

        try:
            await self.telegram.set_message_reaction(mapped.secondary_chat_id,
                                                     mapped.secondary_msg_id, emoji)
        except Exception as e:
            # Telegram only accepts a fixed emoji set
            logger.debug(f"Could not mirror reaction: {e}")

    def _sender_name(self, chat: str, sender: Optional[str], from_me: bool) -> str:
        if from_me:
            return "You"
        identity = sender if chat.endswith("@g.us") and sender else chat
        contact = self.directory.find(identity)
        if contact:
            return display_name(contact)
        return phone_from_identity(identity) if identity else "Someone"

    async def on_revoke(self, revoke: RevokeEvent):
        mapped = self.correlator.by_primary_id(revoke.message_id)
        if not mapped:
            return
        name = self._sender_name(revoke.chat, revoke.sender, revoke.from_me)
        text = f"🗑 <b>{escape_html(name)}</b> deleted a message"
        await self.telegram.send_message_to_topic(mapped.thread_id, text,
                                                  reply_to=mapped.secondary_msg_id)

    async def on_edit(self, edit: EditEvent):
        mapped = self.correlator.by_primary_id(edit.message_id)
        if not mapped:
            return
        old_body = self.vault.decrypt(mapped.content) or ""
        name = self._sender_name(edit.chat, edit.sender, edit.from_me)
        text = (
            f"✏️ <b>{escape_html(name)}</b> edited a message:\n"
            f"<s>{escape_html(old_body[:200])}</s>\n"
            f"➡️ {escape_html(edit.new_body[:500])}"
        )
        await self.telegram.send_message_to_topic(mapped.thread_id, text,
                                                  reply_to=mapped.secondary_msg_id)
        if edit.new_body:
            self.correlator.update_content(edit.message_id, self.vault.encrypt(edit.new_body))

    # ==========================================
    # GROUPS
    # ==========================================

    def _participant_names(self, participants: List[str]) -> List[str]:
        names = []
        for identity in participants:
            try:
                contact = self.directory.find(identity)
                names.append(display_name(contact) if contact else phone_from_identity(identity))
            except Exception as e:
                logger.warning(f"⚠️  Could not resolve participant {identity}: {e}")
                names.append(identity)
        return names

    async def _group_notice(self, event: GroupParticipantsEvent, verb: str, icon: str):
        group = self.directory.find(event.group)
        if not group or not group.thread_id:
            return
        names = self._participant_names(event.participants)
        if not names:
            return
        text = f"{icon} <b>{', '.join(escape_html(n) for n in names)}</b> {verb} the group"
        await self.telegram.send_message_to_topic(group.thread_id, text)

    async def on_group_join(self, event: GroupParticipantsEvent):
        await self._group_notice(event, "joined", "👥➕")

    async def on_group_leave(self, event: GroupParticipantsEvent):
        await self._group_notice(event, "left", "👥➖")

    async def on_group_update(self, event: GroupUpdateEvent):
        group = self.directory.find(event.group)
        if not group:
            return

        if event.subject:
            self.directory.resolve(event.group, is_group=True, group_name=event.subject)
            text = f"👥🔄 Group renamed to: <b>{escape_html(event.subject)}</b>"
        elif event.description is not None:
            text = "👥🔄 Group description updated"
        else:
            text = "👥🔄 <b>Group updated</b>"

        if group.thread_id:
            await self.telegram.send_message_to_topic(group.thread_id, text)

    # ==========================================
    # CALLS
    # ==========================================

    async def _call_log_thread(self) -> Optional[int]:
        if self._call_log_thread_id:
            return self._call_log_thread_id

        stored = self.db.get_state(CALL_LOG_STATE_KEY)
        if stored:
            self._call_log_thread_id = int(stored)
            return self._call_log_thread_id

        if not self.telegram.forum_group_id:
            logger.warning("⚠️  Forum group not configured. Call logs sent to admin chat.")
            return None

        try:
            thread_id = await self.telegram.create_forum_topic(CALL_LOG_TITLE)
        except Exception as e:
            logger.error(f"❌ Failed to create Call Logs thread: {e}")
            return None

        self._call_log_thread_id = thread_id
        self.db.set_state(CALL_LOG_STATE_KEY, str(thread_id))
        await self.telegram.send_message_to_topic(
            thread_id,
            "📞 <b>Call Logs</b>\n\nAll incoming and outgoing call notifications will appear here."
        )
        logger.info(f"Created Call Logs thread: {thread_id}")
        return thread_id

    async def on_call(self, call: CallEvent):
        if call.status not in ("offer", "timeout"):
            return

        contact = self.directory.resolve(call.caller, is_group=False)
        call_type = "video" if call.is_video else "voice"
        if call.status == "timeout":
            direction = "missed"
        else:
            direction = "outgoing" if call.from_me else "incoming"

        record_id = self.db.insert_call_record(call.call_id, contact.id, call_type, direction)

        icon = "📹" if call.is_video else "📞"
        label = {"incoming": "⬇️ Incoming", "outgoing": "⬆️ Outgoing", "missed": "❗ Missed"}[direction]
        text = (
            f"{icon} <b>{label} {call_type} call</b>\n"
            f"👤 <b>Contact:</b> {escape_html(display_name(contact))}\n"
            f"📱 <b>Phone:</b> +{escape_html(contact.phone or '')}"
        )

        thread_id = await self._call_log_thread()
        if thread_id:
            sent = await self.telegram.send_message_to_topic(thread_id, text)
        else:
            sent = await self.telegram.send_to_admin(text)

        if sent:
            self.db.set_call_secondary_msg(record_id, sent["message_id"])
        logger.info(f"Call record: {direction} {call_type} from {display_name(contact)}")

    # ==========================================
    # TELEGRAM -> WHATSAPP
    # ==========================================

    def _resolve_reply_target(self, msg: Dict):
        """(contact, quoted WhatsApp id) for an operator message"""
        contact: Optional[Contact] = None
        quoted_id = None

        thread_id = msg.get("message_thread_id")
        if thread_id:
            contact = self.directory.find_by_thread(thread_id)

        replied = msg.get("reply_to_message")
        if replied:
            mapped = self.correlator.by_secondary_id(replied["message_id"], msg["chat"]["id"])
            if mapped:
                quoted_id = mapped.primary_msg_id
                if contact is None and mapped.contact_id:
                    contact = self.directory.find_by_id(mapped.contact_id)

        return contact, quoted_id

    async def handle_telegram_reply(self, msg: Dict):
        """Send an operator message from a contact thread to WhatsApp"""
        sender_id = (msg.get("from") or {}).get("id")
        if not is_authorized_user(sender_id, self.telegram.admin_chat_id):
            return

        chat_id = msg["chat"]["id"]
        thread_id = msg.get("message_thread_id")
        message_id = msg["message_id"]

        try:
            if not self.connection.is_ready:
                await self.telegram.send_message(chat_id, "⚠️ WhatsApp is not connected.",
                                                 thread_id=thread_id, reply_to=message_id)
                return

            if not self.rate_limiter.can_proceed(f"tg_{sender_id}"):
                return

            contact, quoted_id = self._resolve_reply_target(msg)
            if contact is None:
                await self.telegram.send_message(
                    chat_id, "❌ Cannot determine WhatsApp recipient. Reply in a contact topic.",
                    thread_id=thread_id, reply_to=message_id,
                )
                return

            text = msg.get("text") or msg.get("caption") or ""
            if not check_message_size(text):
                raise ValidationError("Message too long.")

            kind = telegram_media_kind(msg)
            if kind != "text":
                sent_id = await self._send_media_to_whatsapp(msg, kind, contact, quoted_id)
            elif text:
                sent_id = await self.connection.send_text(contact.identity, text, quoted_id=quoted_id)
            else:
                return

            self.correlator.record(sent_id, message_id, chat_id, thread_id, contact.id,
                                   Direction.OUTGOING.value, kind,
                                   self.vault.encrypt(text) if text else None)

            try:
                await self.telegram.set_message_reaction(chat_id, message_id, "✅")
            except Exception as e:
                logger.debug(f"Could not set sent reaction: {e}")

            logger.info(f"Message sent from Telegram to WhatsApp: {contact.identity}")

        except Exception as e:
            handle_error(e, "telegram reply")
            try:
                await self.telegram.send_message(
                    chat_id, f"❌ Failed to send: {safe_error_message(e)}",
                    thread_id=thread_id, reply_to=message_id, parse_mode=None,
                )
            except Exception as notify_error:
                logger.error(f"❌ Could not report send failure: {notify_error}")

    async def _send_media_to_whatsapp(self, msg: Dict, kind: str, contact: Contact,
                                      quoted_id: Optional[str]) -> str:
        media = msg[kind]
        file_id = media[-1]["file_id"] if kind == "photo" else media["file_id"]
        caption = msg.get("caption") if kind not in ("voice", "sticker") else None

        file_path = await self.telegram.download_file(file_id, str(self.media.root / "outgoing"))
        try:
            return await self.connection.send_media(
                contact.identity, file_path, caption=caption,
                quoted_id=quoted_id, as_sticker=kind == "sticker",
            )
        finally:
            self.media.cleanup_file(file_path)
