"""
Operator Commands

Slash commands the admin sends to the bot, plus the inline menu buttons
that map onto them.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

import pytz

from .connection import ConnectionManager
from .correlator import MessageCorrelator
from .database import Database, parse_db_time, utcnow
from .directory import ContactDirectory, display_name, identity_for_phone
from .errors import ValidationError, handle_error
from .media import MediaStore
from .models import CallRecord, Contact, Direction
from .rate_limiter import RateLimiter
from .scheduler import MessageScheduler, parse_delay
from .security import (
    check_message_size, escape_html, is_authorized_user, is_valid_phone_number,
    sanitize_command, sanitize_phone_number,
)
from .telegram import TelegramClient
from .vault import ContentVault

logger = logging.getLogger(__name__)

INACTIVE_DAYS = 30
MAX_QUERY_LENGTH = 100
MAX_ALIAS_LENGTH = 50

MAIN_MENU = {
    "inline_keyboard": [
        [
            {"text": "📊 Status", "callback_data": "cmd_status"},
            {"text": "📒 Contacts", "callback_data": "cmd_contacts"},
            {"text": "🔍 Search", "callback_data": "cmd_search"},
        ],
        [
            {"text": "📞 Calls", "callback_data": "cmd_calls"},
            {"text": "🔑 Login", "callback_data": "cmd_login"},
            {"text": "🚪 Logout", "callback_data": "cmd_logout"},
        ],
        [
            {"text": "📨 Find", "callback_data": "cmd_find"},
            {"text": "⏰ Scheduled", "callback_data": "cmd_scheduled"},
            {"text": "📡 Broadcast", "callback_data": "cmd_broadcast"},
        ],
        [
            {"text": "🔇 Muted", "callback_data": "cmd_muted"},
            {"text": "📦 Archive", "callback_data": "cmd_archive"},
            {"text": "🔄 Restart", "callback_data": "cmd_restart"},
        ],
        [
            {"text": "🧹 Cleanup", "callback_data": "cmd_cleanup"},
            {"text": "❓ Help", "callback_data": "cmd_help"},
        ],
    ]
}

HELP_TEXT = (
    "📖 <b>All Commands</b>\n\n"
    "<b>🔗 Connection</b>\n"
    "/login - Connect WhatsApp\n"
    "/logout - Disconnect &amp; clear session\n"
    "/restart - Restart WhatsApp\n"
    "/setgroup - Set forum group\n"
    "/status - Connection status\n\n"
    "<b>💬 Messaging</b>\n"
    "/send [phone] [msg] - Send message\n"
    "/broadcast [msg] - Send to multiple contacts\n"
    "/schedule [phone] [time] [msg] - Schedule message\n"
    "/scheduled - View scheduled messages\n"
    "/cancelschedule [id] - Cancel scheduled\n"
    "/find [query] - Search message history\n\n"
    "<b>👥 Contacts</b>\n"
    "/contacts - List contacts\n"
    "/search [query] - Search contacts\n"
    "/alias [phone] [name] - Set nickname\n"
    "/mute [phone] - Mute contact\n"
    "/unmute [phone] - Unmute contact\n"
    "/muted - List muted contacts\n\n"
    "<b>📂 Management</b>\n"
    "/calls - Call records\n"
    "/archive - Auto-archive inactive\n"
    "/unarchive [phone] - Unarchive contact\n"
    "/cleanup - Clean old media files"
)

START_TEXT = (
    "🌉 <b>WhatsApp-Telegram Bridge</b>\n\n"
    "Tap any button below or type /help for all commands.\n\n"
    "<b>Quick Setup:</b>\n"
    "1. Create a Telegram group with Topics enabled\n"
    "2. Add this bot as admin\n"
    "3. Use /setgroup in the group\n"
    "4. Use /login to get a WhatsApp QR code"
)


def parse_command(text: str):
    """('/cmd', [args]) with any @botname suffix removed"""
    parts = text.split()
    if not parts:
        return "", []
    command = parts[0].lower().split("@", 1)[0]
    return command, parts[1:]


class CommandHandler:
    """Dispatches admin slash commands"""

    def __init__(self, db: Database, directory: ContactDirectory, correlator: MessageCorrelator,
                 vault: ContentVault, telegram: TelegramClient, connection: ConnectionManager,
                 scheduler: MessageScheduler, media: MediaStore, rate_limiter: RateLimiter,
                 timezone=None, media_retention_days: int = 7, broadcast_delay: float = 1.0):
        self.db = db
        self.directory = directory
        self.correlator = correlator
        self.vault = vault
        self.telegram = telegram
        self.connection = connection
        self.scheduler = scheduler
        self.media = media
        self.rate_limiter = rate_limiter
        self.timezone = timezone or pytz.UTC
        self.media_retention_days = media_retention_days
        self.broadcast_delay = broadcast_delay
        self.started_at = time.monotonic()

        self.commands = {
            "/start": self.cmd_start,
            "/help": self.cmd_help,
            "/status": self.cmd_status,
            "/setgroup": self.cmd_setgroup,
            "/contacts": self.cmd_contacts,
            "/search": self.cmd_search,
            "/find": self.cmd_find,
            "/muted": self.cmd_muted,
            "/calls": self.cmd_calls,
            "/login": self.cmd_login,
            "/logout": self.cmd_logout,
            "/restart": self.cmd_restart,
            "/send": self.cmd_send,
            "/alias": self.cmd_alias,
            "/mute": self.cmd_mute,
            "/unmute": self.cmd_unmute,
            "/archive": self.cmd_archive,
            "/unarchive": self.cmd_unarchive,
            "/schedule": self.cmd_schedule,
            "/scheduled": self.cmd_scheduled,
            "/cancelschedule": self.cmd_cancelschedule,
            "/broadcast": self.cmd_broadcast,
            "/cleanup": self.cmd_cleanup,
        }

    # ==========================================
    # DISPATCH
    # ==========================================

    def is_command(self, msg: Dict) -> bool:
        return (msg.get("text") or "").startswith("/")

    async def handle_command(self, msg: Dict) -> bool:
        """Run a slash command. Returns True if a handler ran."""
        sender_id = (msg.get("from") or {}).get("id")
        if not is_authorized_user(sender_id, self.telegram.admin_chat_id):
            logger.warning(f"⚠️  Ignoring command from unauthorized user {sender_id}")
            return False

        text = msg.get("text") or ""
        if not check_message_size(text):
            await self._error(msg, "Message too large.")
            return False

        if not self.rate_limiter.can_proceed(f"tg_cmd_{sender_id}"):
            await self._reply(msg, "⚠️ Too many commands. Please wait.", parse_mode=None)
            return False

        command, args = parse_command(sanitize_command(text))
        handler = self.commands.get(command)
        if handler is None:
            return False

        logger.info(f"Command: {command}")
        try:
            await handler(msg, args)
        except Exception as e:
            handle_error(e, command)
            await self._error(msg, "Command error. Check logs.")
        return True

    async def handle_callback(self, query: Dict):
        """Inline menu button press"""
        sender_id = (query.get("from") or {}).get("id")
        if not is_authorized_user(sender_id, self.telegram.admin_chat_id):
            await self.telegram.answer_callback_query(query["id"], "Unauthorized", show_alert=True)
            return

        await self.telegram.answer_callback_query(query["id"])
        data = query.get("data") or ""
        message = query.get("message") or {}
        if not data.startswith("cmd_") or not message:
            return

        await self.handle_command({
            "message_id": message.get("message_id"),
            "chat": message.get("chat", {}),
            "message_thread_id": message.get("message_thread_id"),
            "from": query["from"],
            "text": "/" + data[len("cmd_"):],
        })

    # ==========================================
    # REPLY HELPERS
    # ==========================================

    async def _reply(self, msg: Dict, text: str, parse_mode: Optional[str] = "HTML",
                     reply_markup: Optional[Dict] = None):
        await self.telegram.send_message(msg["chat"]["id"], text,
                                         thread_id=msg.get("message_thread_id"),
                                         parse_mode=parse_mode, reply_markup=reply_markup)

    async def _error(self, msg: Dict, text: str):
        await self._reply(msg, f"❌ {text}", parse_mode=None)

    async def _usage(self, msg: Dict, text: str):
        await self._reply(msg, f"💡 Usage: {text}", parse_mode=None)

    def _format_time(self, value) -> str:
        dt = parse_db_time(value)
        if dt is None:
            return "Never"
        return dt.astimezone(self.timezone).strftime("%Y-%m-%d %H:%M")

    def _phone_arg(self, raw: str) -> str:
        """Validated digits for a phone argument"""
        phone = sanitize_phone_number(raw).lstrip("+")
        if not is_valid_phone_number(phone):
            raise ValidationError("Invalid phone (7-15 digits).")
        return phone

    def _known_contact(self, phone: str) -> Contact:
        contact = self.directory.find(identity_for_phone(phone))
        if contact is None:
            raise ValidationError(f"Contact +{phone} not found.")
        return contact

    # ==========================================
    # CORE COMMANDS
    # ==========================================

    async def cmd_start(self, msg: Dict, args: List[str]):
        await self._reply(msg, START_TEXT, reply_markup=MAIN_MENU)

    async def cmd_help(self, msg: Dict, args: List[str]):
        await self._reply(msg, HELP_TEXT, reply_markup=MAIN_MENU)

    async def cmd_status(self, msg: Dict, args: List[str]):
        status = self.connection.status()
        stats = self.db.get_stats()
        archived = len(self.directory.list_archived())
        uptime_min = int((time.monotonic() - self.started_at) / 60)
        forum = self.telegram.forum_group_id
        has_session = self.connection.session.has_credentials()

        text = (
            "📊 <b>Bridge Status</b>\n\n"
            f"<b>WhatsApp:</b> {'🟢 Connected' if status['ready'] else '🔴 ' + status['state']}\n"
            f"<b>Paired:</b> {'✅ Yes' if status['paired'] else '❌ No'}\n"
            f"<b>Saved Session:</b> {'💾 Yes' if has_session else '🚫 No'}\n"
            f"<b>Forum Group:</b> {'✅ ' + escape_html(forum) if forum else '❌ Not set'}\n\n"
            "<b>📈 Stats</b>\n"
            f"<b>Contacts:</b> {stats['contacts']} (🔇{stats['muted_contacts']} 📦{archived})\n"
            f"<b>Messages:</b> {stats['messages']}\n"
            f"<b>Calls:</b> {stats['calls']}\n"
            f"<b>Scheduled:</b> {stats['scheduled_pending']}\n"
            f"<b>Uptime:</b> {uptime_min}min"
        )
        await self._reply(msg, text)

    async def cmd_setgroup(self, msg: Dict, args: List[str]):
        if msg["chat"].get("type") != "supergroup":
            await self._error(msg, "Use this in a supergroup with Topics enabled.")
            return
        self.telegram.set_forum_group(msg["chat"]["id"])
        await self._reply(msg, "✅ <b>Forum group configured!</b> New contacts will get topic threads here.")

    async def cmd_login(self, msg: Dict, args: List[str]):
        if self.connection.is_ready:
            await self._reply(msg, "✅ <b>WhatsApp is already connected!</b>\nUse /logout first to re-login.")
            return
        await self._reply(msg, "⏳ <b>Generating WhatsApp QR code...</b>\nPlease wait.")
        await self.connection.request_pairing()

    async def cmd_logout(self, msg: Dict, args: List[str]):
        if not self.connection.is_ready and not self.connection.is_paired \
                and not self.connection.session.has_credentials():
            await self._reply(msg, "⚠️ Not connected. Use /login.", parse_mode=None)
            return
        await self._reply(msg, "⏳ Logging out...", parse_mode=None)
        await self.connection.logout()

    async def cmd_restart(self, msg: Dict, args: List[str]):
        if not self.connection.is_paired and not self.connection.session.has_credentials():
            await self._reply(msg, "⚠️ No session. Use /login.", parse_mode=None)
            return
        await self._reply(msg, "🔄 Restarting WhatsApp...", parse_mode=None)
        await self.connection.restart()

    async def cmd_cleanup(self, msg: Dict, args: List[str]):
        removed = self.media.cleanup_old_files(self.media_retention_days)
        await self._reply(msg, f"🧹 Cleaned up {removed} old media files.")

    # ==========================================
    # CONTACTS
    # ==========================================

    @staticmethod
    def _contact_line(index: int, contact: Contact) -> str:
        kind = "👥" if contact.is_group else "👤"
        muted = "🔇" if contact.is_muted else ""
        return (f"{index}. {kind}{muted} <b>{escape_html(display_name(contact))}</b>"
                f" (+{escape_html(contact.phone or 'N/A')})")

    async def cmd_contacts(self, msg: Dict, args: List[str]):
        contacts = self.directory.list_active()
        if not contacts:
            await self._reply(msg, "📭 No contacts yet.")
            return
        lines = [self._contact_line(i, c) for i, c in enumerate(contacts[:50], 1)]
        await self._reply(msg, f"📒 <b>Contacts ({len(contacts)})</b>\n\n" + "\n".join(lines))

    async def cmd_search(self, msg: Dict, args: List[str]):
        query = " ".join(args)
        if not query:
            await self._usage(msg, "/search <name or number>")
            return
        if len(query) > MAX_QUERY_LENGTH:
            await self._error(msg, "Search query too long.")
            return

        results = self.directory.search(query)
        if not results:
            await self._reply(msg, f"🔍 No results for \"{escape_html(query)}\"")
            return
        lines = [self._contact_line(i, c) for i, c in enumerate(results, 1)]
        await self._reply(msg, f"🔍 <b>Results for \"{escape_html(query)}\"</b>\n\n" + "\n".join(lines))

    async def cmd_find(self, msg: Dict, args: List[str]):
        query = " ".join(args)
        if not query:
            await self._usage(msg, "/find <keyword>\nSearches through message history.")
            return
        if len(query) > MAX_QUERY_LENGTH:
            await self._error(msg, "Query too long.")
            return

        matches = self.correlator.find_messages(query, self.vault)
        if not matches:
            await self._reply(msg, f"🔍 No messages found for \"{escape_html(query)}\"")
            return

        lines = []
        for match in matches[:15]:
            name = (match.get("alias") or match.get("saved_name") or match.get("platform_name")
                    or match.get("group_name") or match.get("phone") or "?")
            icon = "📩" if match.get("direction") == Direction.INCOMING.value else "📤"
            lines.append(f"{icon} <b>{escape_html(name)}:</b> {escape_html(match['text'][:80])}")
        await self._reply(msg, f"🔍 <b>Messages matching \"{escape_html(query)}\"</b>\n\n"
                          + "\n\n".join(lines))

    async def cmd_muted(self, msg: Dict, args: List[str]):
        muted = self.directory.list_muted()
        if not muted:
            await self._reply(msg, "🔊 No muted contacts.")
            return
        lines = [f"{i}. 🔇 <b>{escape_html(display_name(c))}</b> (+{escape_html(c.phone or '')})"
                 for i, c in enumerate(muted, 1)]
        await self._reply(msg, "🔇 <b>Muted Contacts</b>\n\n" + "\n".join(lines))

    async def cmd_calls(self, msg: Dict, args: List[str]):
        rows = self.db.recent_call_records(20)
        if not rows:
            await self._reply(msg, "📞 No call records yet.")
            return

        lines = []
        for row in rows:
            record = CallRecord.from_row(row)
            name = (row.get("alias") or row.get("saved_name") or row.get("platform_name")
                    or row.get("phone") or "Unknown")
            icon = "📹" if record.call_type == "video" else "📞"
            arrow = {"incoming": "⬇️", "outgoing": "⬆️"}.get(record.direction, "❗")
            lines.append(f"{icon}{arrow} <b>{escape_html(name)}</b> - {self._format_time(record.occurred_at)}")
        await self._reply(msg, "📞 <b>Recent Calls</b>\n\n" + "\n".join(lines))

    async def cmd_alias(self, msg: Dict, args: List[str]):
        if len(args) < 2:
            await self._usage(msg, "/alias <phone> <nickname>\nExample: /alias 919876543210 Boss")
            return
        try:
            phone = self._phone_arg(args[0])
            contact = self._known_contact(phone)
        except ValidationError as e:
            await self._error(msg, str(e))
            return

        alias = " ".join(args[1:])[:MAX_ALIAS_LENGTH]
        self.directory.set_alias(contact.identity, alias)
        await self._reply(msg, f"🏷 Alias set: <b>{escape_html(alias)}</b> for +{phone}")

    async def _set_muted(self, msg: Dict, args: List[str], muted: bool):
        command = "/mute" if muted else "/unmute"
        if not args:
            await self._usage(msg, f"{command} <phone>\nExample: {command} 919876543210")
            return
        try:
            phone = self._phone_arg(args[0])
            contact = self._known_contact(phone)
        except ValidationError as e:
            await self._error(msg, str(e))
            return

        self.directory.set_muted(contact.identity, muted)
        if muted:
            await self._reply(msg, f"🔇 Muted +{phone}. Messages won't be forwarded.")
        else:
            await self._reply(msg, f"🔊 Unmuted +{phone}. Messages will be forwarded again.")

    async def cmd_mute(self, msg: Dict, args: List[str]):
        await self._set_muted(msg, args, True)

    async def cmd_unmute(self, msg: Dict, args: List[str]):
        await self._set_muted(msg, args, False)

    async def cmd_archive(self, msg: Dict, args: List[str]):
        if args and args[0].lower() != "all":
            try:
                phone = self._phone_arg(args[0])
                contact = self._known_contact(phone)
            except ValidationError as e:
                await self._error(msg, str(e))
                return
            self.directory.set_archived(contact.identity, True)
            await self._reply(msg, f"📦 Archived +{phone}")
            return

        inactive = self.directory.list_inactive_since(INACTIVE_DAYS)
        if not inactive:
            await self._reply(msg, f"📦 No inactive contacts ({INACTIVE_DAYS}+ days).")
            return

        if args:
            for contact in inactive:
                self.directory.set_archived(contact.identity, True)
            await self._reply(msg, f"📦 Archived {len(inactive)} inactive contacts.")
            return

        lines = [f"{i}. <b>{escape_html(display_name(c))}</b>: last active {self._format_time(c.last_active_at)}"
                 for i, c in enumerate(inactive[:20], 1)]
        await self._reply(
            msg,
            f"📦 <b>Inactive Contacts ({INACTIVE_DAYS}+ days): {len(inactive)}</b>\n\n"
            + "\n".join(lines) + "\n\nTo archive all: <code>/archive all</code>"
        )

    async def cmd_unarchive(self, msg: Dict, args: List[str]):
        if not args:
            archived = self.directory.list_archived()
            if not archived:
                await self._reply(msg, "📦 No archived contacts.")
                return
            lines = [f"{i}. <b>{escape_html(display_name(c))}</b> (+{escape_html(c.phone or '')})"
                     for i, c in enumerate(archived[:20], 1)]
            await self._reply(msg, "📦 <b>Archived Contacts</b>\n\n" + "\n".join(lines)
                              + "\n\nUse: /unarchive &lt;phone&gt;")
            return

        try:
            phone = self._phone_arg(args[0])
            contact = self._known_contact(phone)
        except ValidationError as e:
            await self._error(msg, str(e))
            return
        self.directory.set_archived(contact.identity, False)
        await self._reply(msg, f"📤 Unarchived +{phone}")

    # ==========================================
    # SENDING
    # ==========================================

    async def cmd_send(self, msg: Dict, args: List[str]):
        if len(args) < 2:
            await self._usage(msg, "/send <phone> <message>\nExample: /send 919876543210 Hello!")
            return
        try:
            phone = self._phone_arg(args[0])
        except ValidationError as e:
            await self._error(msg, str(e))
            return

        text = " ".join(args[1:])
        if not text.strip():
            await self._error(msg, "Message cannot be empty.")
            return
        if not self.connection.is_ready:
            await self._error(msg, "WhatsApp not connected. Use /login.")
            return

        identity = identity_for_phone(phone)
        try:
            sent_id = await self.connection.send_text(identity, text)
        except Exception as e:
            handle_error(e, "/send")
            await self._error(msg, "Failed to send. Check logs.")
            return

        contact = self.directory.resolve(identity)
        self.correlator.record(sent_id, msg.get("message_id"), msg["chat"]["id"],
                               msg.get("message_thread_id"), contact.id,
                               Direction.OUTGOING.value, "text", self.vault.encrypt(text))
        await self._reply(msg, f"✅ Sent to +{phone}")

    async def cmd_broadcast(self, msg: Dict, args: List[str]):
        if not args:
            await self._usage(msg, "/broadcast <message>\n"
                                   "Sends to ALL active (non-muted, non-archived) contacts.\n"
                                   "⚠️ Use with caution!")
            return
        if not self.connection.is_ready:
            await self._error(msg, "WhatsApp not connected.")
            return

        recipients = [c for c in self.directory.list_active() if not c.is_group and not c.is_muted]
        if not recipients:
            await self._error(msg, "No eligible contacts.")
            return

        if args[0].lower() != "confirm":
            preview = " ".join(args)
            await self._reply(
                msg,
                "📡 <b>Broadcast Preview</b>\n\n"
                f"👥 Recipients: {len(recipients)} contacts\n"
                f"💬 Message: {escape_html(preview[:200])}\n\n"
                "⚠️ To confirm, type:\n"
                f"<code>/broadcast confirm {escape_html(preview[:100])}</code>"
            )
            return

        text = " ".join(args[1:])
        if not text.strip():
            await self._error(msg, "Message cannot be empty after \"confirm\".")
            return

        await self._reply(msg, f"📡 Broadcasting to {len(recipients)} contacts...")
        sent = failed = 0
        for contact in recipients:
            try:
                await self.connection.send_text(contact.identity, text)
                sent += 1
            except Exception as e:
                failed += 1
                logger.warning(f"⚠️  Broadcast to {contact.identity} failed: {e}")
            if self.broadcast_delay:
                await asyncio.sleep(self.broadcast_delay)

        logger.info(f"Broadcast complete: {sent} sent, {failed} failed")
        await self._reply(msg, f"📡 <b>Broadcast complete!</b>\n✅ Sent: {sent}\n❌ Failed: {failed}")

    # ==========================================
    # SCHEDULED MESSAGES
    # ==========================================

    async def cmd_schedule(self, msg: Dict, args: List[str]):
        if len(args) < 3:
            await self._usage(msg, "/schedule <phone> <time> <message>\n"
                                   "Time formats: 5m, 1h, 30m, 2h30m, 1d\n"
                                   "Example: /schedule 919876543210 30m Hello in 30 minutes!")
            return
        try:
            phone = self._phone_arg(args[0])
            delay = parse_delay(args[1])
        except ValidationError as e:
            await self._error(msg, str(e))
            return

        text = " ".join(args[2:])
        if not text.strip():
            await self._error(msg, "Message cannot be empty.")
            return

        due_at = utcnow() + delay
        scheduled_id = self.scheduler.schedule(identity_for_phone(phone), f"+{phone}", text, due_at)
        preview = text[:100] + ("..." if len(text) > 100 else "")
        await self._reply(
            msg,
            "⏰ <b>Message scheduled!</b>\n"
            f"📱 To: +{phone}\n"
            f"⏳ At: {self._format_time(due_at)}\n"
            f"💬 {escape_html(preview)}\n"
            f"🔢 ID: <code>{scheduled_id}</code>"
        )

    async def cmd_scheduled(self, msg: Dict, args: List[str]):
        upcoming = self.scheduler.list_upcoming()
        if not upcoming:
            await self._reply(msg, "⏰ No scheduled messages.")
            return
        lines = [
            f"🔢 <code>{s.id}</code> → {escape_html(s.target_display or s.target_identity)}"
            f" at {self._format_time(s.due)}\n   💬 {escape_html(s.body[:60])}"
            for s in upcoming
        ]
        await self._reply(msg, "⏰ <b>Scheduled Messages</b>\n\n" + "\n\n".join(lines))

    async def cmd_cancelschedule(self, msg: Dict, args: List[str]):
        if not args:
            await self._usage(msg, "/cancelschedule <id>")
            return
        try:
            scheduled_id = int(args[0])
        except ValueError:
            await self._error(msg, "Invalid ID.")
            return

        if self.scheduler.cancel(scheduled_id):
            await self._reply(msg, f"❌ Scheduled message #{scheduled_id} cancelled.")
        else:
            await self._error(msg, f"Message #{scheduled_id} not found or already sent.")
