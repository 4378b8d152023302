"""
Message Scheduler Module

Stores messages for later delivery and sends the due ones on a fixed
interval using APScheduler. Each due row is attempted once: success marks it
sent, any exception marks it failed.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .database import Database, utcnow
from .errors import ValidationError
from .models import ScheduledMessage, ScheduleStatus
from .security import escape_html

logger = logging.getLogger(__name__)

_DELAY_PART = re.compile(r"(\d+)\s*([dhms])")
_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}

MIN_DELAY = timedelta(minutes=1)
MAX_DELAY = timedelta(days=7)


def parse_delay(text: str) -> timedelta:
    """
    Parse a compact delay like "2h30m", "45m" or "1d".

    A bare number means minutes. The result must fall between MIN_DELAY and
    MAX_DELAY. Raises ValidationError for anything else.
    """
    value = (text or "").strip().lower()
    if value.isdigit():
        delay = timedelta(minutes=int(value))
    else:
        parts = _DELAY_PART.findall(value)
        if not parts or _DELAY_PART.sub("", value).strip():
            raise ValidationError(f"Invalid time: {text!r}. Examples: 5m, 1h, 2h30m")
        delay = timedelta(seconds=sum(int(amount) * _UNIT_SECONDS[unit] for amount, unit in parts))

    if delay < MIN_DELAY:
        raise ValidationError("Minimum delay is 1 minute.")
    if delay > MAX_DELAY:
        raise ValidationError("Maximum delay is 7 days.")
    return delay


@dataclass
class DeliveryOutcome:
    """Result of one scheduled delivery attempt"""
    message: ScheduledMessage
    success: bool
    error: Optional[str] = None


def format_outcome(outcome: DeliveryOutcome) -> str:
    """Operator notification text for a delivery outcome"""
    msg = outcome.message
    target = escape_html(msg.target_display or msg.target_identity.split("@", 1)[0])
    if outcome.success:
        preview = msg.body[:100] + ("..." if len(msg.body) > 100 else "")
        return (
            "⏰ <b>Scheduled message sent!</b>\n"
            f"📱 To: {target}\n"
            f"💬 {escape_html(preview)}"
        )
    return (
        "❌ <b>Scheduled message failed!</b>\n"
        f"📱 To: {target}\n"
        "⚠️ Check logs for details."
    )


SendCallback = Callable[[str, str], Awaitable]
NotifyCallback = Callable[[DeliveryOutcome], Awaitable]


class MessageScheduler:
    """Deferred delivery backed by the scheduled_messages table"""

    def __init__(self, db: Database, send: Optional[SendCallback] = None,
                 notify: Optional[NotifyCallback] = None, interval_seconds: int = 30,
                 clock: Callable[[], datetime] = utcnow):
        """
        Args:
            db: Database instance
            send: async callable(target_identity, body) performing the delivery
            notify: async callable(DeliveryOutcome) informing the operator
            interval_seconds: How often due messages are processed
            clock: Returns the current aware UTC datetime
        """
        self.db = db
        self.send = send
        self.notify = notify
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.scheduler = None
        self.is_running = False

    def start(self):
        """Start the periodic tick job"""
        if self.is_running:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="scheduled_delivery",
            name="Scheduled message delivery",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info(f"✅ Scheduler started ({self.interval_seconds}s interval)")

    def stop(self):
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self.is_running = False
            logger.info("Scheduler stopped")

    def schedule(self, target_identity: str, target_display: Optional[str],
                 body: str, due_at: datetime) -> int:
        """Store a pending message. A due_at in the past is sent on the next tick."""
        scheduled_id = self.db.insert_scheduled(target_identity, target_display, body, due_at)
        logger.info(f"Scheduled message {scheduled_id} for {target_identity} at {due_at}")
        return scheduled_id

    def cancel(self, scheduled_id: int) -> bool:
        """Cancel a pending message; False if missing or no longer pending"""
        return self.db.finish_scheduled(scheduled_id, ScheduleStatus.CANCELLED.value)

    def get(self, scheduled_id: int) -> Optional[ScheduledMessage]:
        return ScheduledMessage.from_row(self.db.get_scheduled(scheduled_id))

    def list_upcoming(self) -> List[ScheduledMessage]:
        return [ScheduledMessage.from_row(r) for r in self.db.list_pending_scheduled()]

    def list_recent(self, limit: int = 20) -> List[ScheduledMessage]:
        return [ScheduledMessage.from_row(r) for r in self.db.list_recent_scheduled(limit)]

    async def tick(self, now: Optional[datetime] = None) -> List[DeliveryOutcome]:
        """Deliver every pending message due at `now`, oldest first"""
        if self.send is None:
            logger.warning("⚠️  Scheduler has no send callback configured")
            return []

        now = now or self.clock()
        outcomes = []

        for row in self.db.due_scheduled(now):
            message = ScheduledMessage.from_row(row)
            try:
                await self.send(message.target_identity, message.body)
            except Exception as e:
                self.db.finish_scheduled(message.id, ScheduleStatus.FAILED.value)
                message.status = ScheduleStatus.FAILED.value
                outcome = DeliveryOutcome(message, success=False, error=str(e))
                logger.error(f"❌ Failed to send scheduled message {message.id}: {e}")
            else:
                if not self.db.finish_scheduled(message.id, ScheduleStatus.SENT.value, sent_at=now):
                    logger.warning(f"⚠️  Scheduled message {message.id} was cancelled while "
                                   f"sending; it was delivered anyway")
                message.status = ScheduleStatus.SENT.value
                outcome = DeliveryOutcome(message, success=True)
                logger.info(f"✅ Scheduled message {message.id} sent to {message.target_identity}")

            outcomes.append(outcome)
            await self._notify(outcome)

        return outcomes

    async def _notify(self, outcome: DeliveryOutcome):
        if self.notify is None:
            return
        try:
            await self.notify(outcome)
        except Exception as e:
            logger.warning(f"⚠️  Scheduler notify failed for {outcome.message.id}: {e}")
