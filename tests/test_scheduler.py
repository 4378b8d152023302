import asyncio
from datetime import datetime, timedelta

import pytest
import pytz

from wa_tg_bridge.errors import ValidationError
from wa_tg_bridge.scheduler import (
    DeliveryOutcome, MessageScheduler, format_outcome, parse_delay,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=pytz.UTC)


@pytest.mark.parametrize("text,expected", [
    ("5m", timedelta(minutes=5)),
    ("1h", timedelta(hours=1)),
    ("2h30m", timedelta(hours=2, minutes=30)),
    ("1d", timedelta(days=1)),
    ("90s", timedelta(seconds=90)),
    ("15", timedelta(minutes=15)),
    (" 1H ", timedelta(hours=1)),
])
def test_parse_delay_accepts(text, expected):
    assert parse_delay(text) == expected


@pytest.mark.parametrize("text", ["", "soon", "5x", "1h later", "30s", "0", "8d"])
def test_parse_delay_rejects(text):
    with pytest.raises(ValidationError):
        parse_delay(text)


def make_scheduler(db, fail_for=()):
    sent = []
    notified = []

    async def send(identity, body):
        if identity in fail_for:
            raise RuntimeError("not connected")
        sent.append((identity, body))

    async def notify(outcome):
        notified.append(outcome)

    scheduler = MessageScheduler(db, send=send, notify=notify, clock=lambda: NOW)
    return scheduler, sent, notified


def test_tick_delivers_due_messages_oldest_first(db):
    scheduler, sent, notified = make_scheduler(db)
    late = scheduler.schedule("2@s.whatsapp.net", "+2", "second", NOW - timedelta(minutes=1))
    early = scheduler.schedule("1@s.whatsapp.net", "+1", "first", NOW - timedelta(minutes=5))
    future = scheduler.schedule("3@s.whatsapp.net", "+3", "later", NOW + timedelta(minutes=5))

    outcomes = asyncio.run(scheduler.tick())

    assert [o.message.id for o in outcomes] == [early, late]
    assert sent == [("1@s.whatsapp.net", "first"), ("2@s.whatsapp.net", "second")]
    assert len(notified) == 2
    assert scheduler.get(early).status == "sent"
    assert scheduler.get(early).sent_at is not None
    assert scheduler.get(future).status == "pending"
    assert [m.id for m in scheduler.list_upcoming()] == [future]


def test_tick_isolates_failures(db):
    scheduler, sent, notified = make_scheduler(db, fail_for={"bad@s.whatsapp.net"})
    bad = scheduler.schedule("bad@s.whatsapp.net", "+bad", "nope", NOW - timedelta(minutes=2))
    good = scheduler.schedule("good@s.whatsapp.net", "+good", "yes", NOW - timedelta(minutes=1))

    outcomes = asyncio.run(scheduler.tick())

    assert [o.success for o in outcomes] == [False, True]
    assert outcomes[0].error == "not connected"
    assert scheduler.get(bad).status == "failed"
    assert scheduler.get(good).status == "sent"

    # Terminal rows are never retried
    assert asyncio.run(scheduler.tick()) == []
    assert len(sent) == 1


def test_tick_without_send_callback(db):
    scheduler = MessageScheduler(db, send=None)
    scheduler.schedule("1@s.whatsapp.net", "+1", "hello", NOW - timedelta(minutes=1))

    assert asyncio.run(scheduler.tick(NOW)) == []
    assert len(scheduler.list_upcoming()) == 1


def test_notify_failure_does_not_stop_tick(db):
    async def send(identity, body):
        return "id"

    async def notify(outcome):
        raise RuntimeError("telegram down")

    scheduler = MessageScheduler(db, send=send, notify=notify)
    first = scheduler.schedule("1@s.whatsapp.net", None, "a", NOW - timedelta(minutes=2))
    second = scheduler.schedule("2@s.whatsapp.net", None, "b", NOW - timedelta(minutes=1))

    outcomes = asyncio.run(scheduler.tick(NOW))

    assert [o.success for o in outcomes] == [True, True]
    assert scheduler.get(first).status == "sent"
    assert scheduler.get(second).status == "sent"


def test_cancel_only_once(db):
    scheduler, _, _ = make_scheduler(db)
    scheduled_id = scheduler.schedule("1@s.whatsapp.net", "+1", "hi", NOW + timedelta(hours=1))

    assert scheduler.cancel(scheduled_id)
    assert not scheduler.cancel(scheduled_id)
    assert not scheduler.cancel(9999)
    assert scheduler.get(scheduled_id).status == "cancelled"
    assert scheduler.list_upcoming() == []
    assert scheduler.list_recent()[0].id == scheduled_id


def test_cancelled_message_is_not_sent(db):
    scheduler, sent, _ = make_scheduler(db)
    scheduled_id = scheduler.schedule("1@s.whatsapp.net", "+1", "hi", NOW - timedelta(minutes=1))
    scheduler.cancel(scheduled_id)

    assert asyncio.run(scheduler.tick()) == []
    assert sent == []


def test_cancel_during_send_is_logged(db, caplog):
    sent = []
    scheduler = MessageScheduler(db, clock=lambda: NOW)

    async def send(identity, body):
        scheduler.cancel(scheduled_id)
        sent.append((identity, body))

    scheduler.send = send
    scheduled_id = scheduler.schedule("1@s.whatsapp.net", "+1", "hi", NOW - timedelta(minutes=1))

    with caplog.at_level("WARNING", logger="wa_tg_bridge.scheduler"):
        outcomes = asyncio.run(scheduler.tick())

    assert sent == [("1@s.whatsapp.net", "hi")]
    assert outcomes[0].success
    assert scheduler.get(scheduled_id).status == "cancelled"
    assert "cancelled while sending" in caplog.text


def test_format_outcome(db):
    scheduler, _, _ = make_scheduler(db)
    scheduled_id = scheduler.schedule("1@s.whatsapp.net", "+1", "<b>hi</b>", NOW)
    message = scheduler.get(scheduled_id)

    ok = format_outcome(DeliveryOutcome(message, success=True))
    assert "Scheduled message sent" in ok
    assert "&lt;b&gt;hi&lt;/b&gt;" in ok
    assert "+1" in ok

    failed = format_outcome(DeliveryOutcome(message, success=False, error="boom"))
    assert "Scheduled message failed" in failed


def test_message_due_in_one_minute_is_sent_once(db):
    now = [NOW]
    sent = []

    async def send(identity, body):
        sent.append((identity, body))

    scheduler = MessageScheduler(db, send=send, clock=lambda: now[0])
    scheduled_id = scheduler.schedule("1@s.whatsapp.net", "+1", "see you", NOW + parse_delay("1m"))

    assert asyncio.run(scheduler.tick()) == []
    now[0] = NOW + timedelta(minutes=1, seconds=1)
    asyncio.run(scheduler.tick())
    asyncio.run(scheduler.tick())

    assert sent == [("1@s.whatsapp.net", "see you")]
    assert scheduler.get(scheduled_id).status == "sent"
