import asyncio

import pytest

from conftest import ADMIN_ID, FORUM_ID
from wa_tg_bridge.commands import MAIN_MENU, CommandHandler, parse_command
from wa_tg_bridge.connection import ConnectionManager, ConnectionState
from wa_tg_bridge.correlator import MessageCorrelator
from wa_tg_bridge.directory import ContactDirectory
from wa_tg_bridge.media import MediaStore
from wa_tg_bridge.rate_limiter import RateLimiter
from wa_tg_bridge.scheduler import MessageScheduler
from wa_tg_bridge.vault import ContentVault

BOB = "15550001111@s.whatsapp.net"


@pytest.fixture
def handler(db, telegram, session, tmp_path):
    connection = ConnectionManager(session, db, telegram)
    connection.state = ConnectionState.READY
    return CommandHandler(
        db,
        ContactDirectory(db, telegram),
        MessageCorrelator(db),
        ContentVault("commands-test-secret"),
        telegram,
        connection,
        MessageScheduler(db),
        MediaStore(str(tmp_path / "media")),
        RateLimiter(100),
        broadcast_delay=0,
    )


def command(text, user_id=ADMIN_ID, chat_type="supergroup"):
    return {"message_id": 10, "from": {"id": int(user_id)},
            "chat": {"id": int(FORUM_ID), "type": chat_type}, "text": text}


def run(handler, text, **kwargs):
    return asyncio.run(handler.handle_command(command(text, **kwargs)))


def last_text(handler):
    return handler.telegram.texts()[-1]


def test_parse_command():
    assert parse_command("/Send@BridgeBot 123 hi there") == ("/send", ["123", "hi", "there"])
    assert parse_command("   ") == ("", [])


def test_unauthorized_user_is_ignored(handler):
    assert run(handler, "/status", user_id="42") is False
    assert handler.telegram.messages == []


def test_unknown_command_is_not_handled(handler):
    assert run(handler, "/nope") is False
    assert handler.telegram.messages == []


def test_start_shows_menu(handler):
    assert run(handler, "/start")
    assert handler.telegram.messages[-1]["reply_markup"] == MAIN_MENU


def test_status(handler):
    handler.directory.resolve(BOB, platform_name="Bob")
    run(handler, "/status")

    text = last_text(handler)
    assert "🟢 Connected" in text
    assert "<b>Contacts:</b> 1" in text
    assert FORUM_ID in text


def test_command_rate_limit(handler):
    handler.rate_limiter = RateLimiter(2)
    run(handler, "/help")
    run(handler, "/help")
    assert run(handler, "/help") is False
    assert last_text(handler) == "⚠️ Too many commands. Please wait."


def test_failing_handler_reports_generic_error(handler, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("db gone")

    monkeypatch.setattr(handler.db, "get_stats", broken)
    assert run(handler, "/status")
    assert last_text(handler) == "❌ Command error. Check logs."


def test_setgroup_requires_supergroup(handler):
    run(handler, "/setgroup", chat_type="private")
    assert last_text(handler).startswith("❌")

    handler.telegram.forum_group_id = None
    run(handler, "/setgroup")
    assert handler.telegram.forum_group_id == FORUM_ID


def test_send_validation(handler):
    run(handler, "/send 123")
    assert last_text(handler).startswith("💡 Usage: /send")

    run(handler, "/send 12ab hello")
    assert last_text(handler) == "❌ Invalid phone (7-15 digits)."

    handler.connection.state = ConnectionState.DISCONNECTED
    run(handler, "/send 15550001111 hello")
    assert last_text(handler) == "❌ WhatsApp not connected. Use /login."
    assert handler.connection.session.sent == []


def test_send_records_outgoing_message(handler):
    run(handler, "/send +15550001111 hello there")

    assert handler.connection.session.sent == [{"identity": BOB, "text": "hello there", "quoted_id": None}]
    assert last_text(handler) == "✅ Sent to +15550001111"
    mapping = handler.correlator.by_primary_id("WA-OUT-1")
    assert mapping.direction == "outgoing"
    assert handler.vault.decrypt(mapping.content) == "hello there"
    assert handler.directory.find(BOB) is not None


def test_send_failure(handler):
    handler.connection.session.fail_send_to.add(BOB)
    run(handler, "/send 15550001111 hello")
    assert last_text(handler) == "❌ Failed to send. Check logs."


def test_mute_unknown_and_known_contact(handler):
    run(handler, "/mute 15550001111")
    assert last_text(handler) == "❌ Contact +15550001111 not found."

    handler.directory.resolve(BOB, platform_name="Bob")
    run(handler, "/mute 15550001111")
    assert handler.directory.find(BOB).is_muted

    run(handler, "/muted")
    assert "Bob" in last_text(handler)

    run(handler, "/unmute 15550001111")
    assert not handler.directory.find(BOB).is_muted


def test_alias(handler):
    handler.directory.resolve(BOB, platform_name="Bob")
    run(handler, "/alias 15550001111 The Boss")

    assert handler.directory.find(BOB).alias == "The Boss"
    run(handler, "/contacts")
    assert "The Boss" in last_text(handler)


def test_archive_and_unarchive(handler):
    handler.directory.resolve(BOB, platform_name="Bob")

    run(handler, "/archive 15550001111")
    assert handler.directory.find(BOB).is_archived
    run(handler, "/unarchive")
    assert "Bob" in last_text(handler)

    run(handler, "/unarchive 15550001111")
    assert not handler.directory.find(BOB).is_archived


def test_archive_all_inactive(handler):
    handler.directory.resolve(BOB, platform_name="Bob")
    handler.db.conn.execute("UPDATE contacts SET last_active_at = '2000-01-01 00:00:00'")
    handler.db.conn.commit()

    run(handler, "/archive")
    assert "Inactive Contacts" in last_text(handler)
    assert not handler.directory.find(BOB).is_archived

    run(handler, "/archive all")
    assert last_text(handler) == "📦 Archived 1 inactive contacts."
    assert handler.directory.find(BOB).is_archived


def test_find_searches_decrypted_history(handler):
    contact = handler.directory.resolve(BOB, platform_name="Bob")
    handler.correlator.record("M1", 1, FORUM_ID, 101, contact.id, "incoming", "text",
                              handler.vault.encrypt("Invoice attached"))

    run(handler, "/find invoice")
    assert "📩 <b>Bob:</b> Invoice attached" in last_text(handler)

    run(handler, "/find nothing-here")
    assert "No messages found" in last_text(handler)


def test_schedule_and_cancel(handler):
    run(handler, "/schedule 15550001111 30m see you soon")

    assert "Message scheduled!" in last_text(handler)
    upcoming = handler.scheduler.list_upcoming()
    assert len(upcoming) == 1
    assert upcoming[0].target_identity == BOB
    assert upcoming[0].target_display == "+15550001111"
    assert upcoming[0].body == "see you soon"

    run(handler, "/scheduled")
    assert "see you soon" in last_text(handler)

    run(handler, f"/cancelschedule {upcoming[0].id}")
    assert "cancelled" in last_text(handler)
    run(handler, f"/cancelschedule {upcoming[0].id}")
    assert last_text(handler) == f"❌ Message #{upcoming[0].id} not found or already sent."
    run(handler, "/cancelschedule abc")
    assert last_text(handler) == "❌ Invalid ID."


def test_schedule_rejects_bad_delay(handler):
    run(handler, "/schedule 15550001111 soon hello")
    assert last_text(handler).startswith("❌ Invalid time")
    run(handler, "/schedule 15550001111 30d hello")
    assert last_text(handler) == "❌ Maximum delay is 7 days."
    assert handler.scheduler.list_upcoming() == []


def test_broadcast_preview_then_confirm(handler):
    handler.directory.resolve(BOB, platform_name="Bob")
    handler.directory.resolve("15550002222@s.whatsapp.net", platform_name="Eve")
    handler.directory.resolve("15550003333@s.whatsapp.net", platform_name="Muted")
    handler.directory.set_muted("15550003333@s.whatsapp.net", True)
    handler.directory.resolve("120363@g.us", group_name="Team")
    handler.connection.session.fail_send_to.add("15550002222@s.whatsapp.net")

    run(handler, "/broadcast Office closed")
    assert "Recipients: 2 contacts" in last_text(handler)
    assert handler.connection.session.sent == []

    run(handler, "/broadcast confirm Office closed")
    assert last_text(handler) == "📡 <b>Broadcast complete!</b>\n✅ Sent: 1\n❌ Failed: 1"
    assert [s["identity"] for s in handler.connection.session.sent] == [BOB]


def test_login_when_already_connected(handler):
    run(handler, "/login")
    assert "already connected" in last_text(handler)
    assert handler.connection.session.starts == 0


def test_login_requests_pairing(handler):
    handler.connection.state = ConnectionState.DISCONNECTED
    run(handler, "/login")
    assert handler.connection.qr_requested
    assert handler.connection.session.starts == 1


def test_cleanup(handler):
    run(handler, "/cleanup")
    assert last_text(handler) == "🧹 Cleaned up 0 old media files."


def test_callback_maps_to_command(handler):
    query = {"id": "q1", "from": {"id": int(ADMIN_ID)}, "data": "cmd_help",
             "message": {"message_id": 5, "chat": {"id": int(FORUM_ID)}}}
    asyncio.run(handler.handle_callback(query))

    assert handler.telegram.callback_answers == [("q1", None)]
    assert "All Commands" in last_text(handler)


def test_callback_from_stranger(handler):
    query = {"id": "q2", "from": {"id": 42}, "data": "cmd_status",
             "message": {"message_id": 5, "chat": {"id": int(FORUM_ID)}}}
    asyncio.run(handler.handle_callback(query))

    assert handler.telegram.callback_answers == [("q2", "Unauthorized")]
    assert handler.telegram.messages == []
