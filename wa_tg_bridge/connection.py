"""
WhatsApp Connection Manager

Owns the lifecycle of the WhatsApp session: QR pairing, readiness,
reconnects with exponential backoff, logout. Raw session events are
normalized and fanned out to registered listeners.

States:
    DISCONNECTED -> QR_PENDING -> AUTHENTICATING -> READY
    READY -> RECONNECTING -> READY | DISCONNECTED
    any -> LOGGED_OUT
"""

import asyncio
import io
import logging
from enum import Enum
from typing import Dict, List, Optional

import qrcode

from .config import ReconnectConfig
from .database import Database
from .errors import DeliveryError
from .messages import (
    AckEvent, CallEvent, EditEvent, GroupParticipantsEvent, GroupUpdateEvent,
    InboundMessage, ReactionEvent, RevokeEvent, classify_message, normalize_message,
)

logger = logging.getLogger(__name__)

PAIRED_STATE_KEY = "wa_paired"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    QR_PENDING = "qr_pending"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"
    LOGGED_OUT = "logged_out"


def backoff_delay(attempt: int, base: float = 5, ceiling: float = 300) -> float:
    """Delay before reconnect attempt N (1-based)"""
    return min(base * 2 ** (attempt - 1), ceiling)


def render_qr_png(payload: str) -> bytes:
    """Render a pairing payload as a PNG image"""
    qr = qrcode.QRCode(box_size=10, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    buffer = io.BytesIO()
    qr.make_image().save(buffer, format="PNG")
    return buffer.getvalue()


class BridgeListener:
    """Base class for connection event consumers; override what you need"""

    async def on_ready(self):
        pass

    async def on_message(self, message: InboundMessage):
        pass

    async def on_message_echo(self, message: InboundMessage):
        pass

    async def on_call(self, call: CallEvent):
        pass

    async def on_ack(self, ack: AckEvent):
        pass

    async def on_reaction(self, reaction: ReactionEvent):
        pass

    async def on_revoke(self, revoke: RevokeEvent):
        pass

    async def on_edit(self, edit: EditEvent):
        pass

    async def on_group_join(self, event: GroupParticipantsEvent):
        pass

    async def on_group_leave(self, event: GroupParticipantsEvent):
        pass

    async def on_group_update(self, event: GroupUpdateEvent):
        pass


class ConnectionManager:
    """WhatsApp session lifecycle and event fan-out"""

    def __init__(self, session, db: Database, telegram,
                 reconnect: Optional[ReconnectConfig] = None, print_qr: bool = False):
        """
        Args:
            session: Transport implementing start/stop/logout/send_text/send_media/
                download_media/has_credentials
            db: Database used for the durable paired flag
            telegram: Operator channel (send_to_admin, send_qr_code)
            reconnect: Backoff and QR limits
            print_qr: Also print QR codes as ASCII on stdout
        """
        self.session = session
        self.db = db
        self.telegram = telegram
        self.reconnect = reconnect or ReconnectConfig()
        self.print_qr = print_qr

        self.state = ConnectionState.DISCONNECTED
        self.qr_attempts = 0
        self.reconnect_attempts = 0
        self.pending_qr: Optional[str] = None
        self.qr_requested = False
        self.auto_reconnect = True

        self._backoff_task: Optional[asyncio.Task] = None
        self._listeners: List[BridgeListener] = []

    # ==========================================
    # LISTENERS
    # ==========================================

    def add_listener(self, listener: BridgeListener):
        self._listeners.append(listener)

    async def dispatch(self, event: str, *args):
        """Call `event` on every listener; one failing listener never stops the rest"""
        for listener in list(self._listeners):
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                await handler(*args)
            except Exception as e:
                logger.error(f"❌ Listener {type(listener).__name__}.{event} failed: {e}",
                             exc_info=True)

    # ==========================================
    # STATUS
    # ==========================================

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def is_paired(self) -> bool:
        return self.db.get_state(PAIRED_STATE_KEY) == "1"

    def status(self) -> Dict:
        return {
            "state": self.state.value,
            "ready": self.is_ready,
            "paired": self.is_paired,
            "auto_reconnect": self.auto_reconnect,
            "qr_attempts": self.qr_attempts,
            "reconnect_attempts": self.reconnect_attempts,
            "qr_requested": self.qr_requested,
            "qr_pending": self.pending_qr is not None,
        }

    def _set_state(self, state: ConnectionState):
        if state != self.state:
            logger.info(f"WhatsApp state: {self.state.value} -> {state.value}")
            self.state = state

    async def _notify(self, text: str):
        try:
            await self.telegram.send_to_admin(text)
        except Exception as e:
            logger.warning(f"⚠️  Could not notify operator: {e}")

    # ==========================================
    # LIFECYCLE COMMANDS
    # ==========================================

    async def start(self) -> bool:
        """Start the session. A failure is treated like a dropped connection."""
        self.auto_reconnect = True
        try:
            await self.session.start(self)
            return True
        except Exception as e:
            logger.error(f"❌ WhatsApp session start failed: {e}")
            if self.auto_reconnect:
                self._set_state(ConnectionState.RECONNECTING)
                await self._schedule_reconnect()
            return False

    async def stop(self):
        """Shut down without touching stored credentials"""
        self.auto_reconnect = False
        self._cancel_backoff()
        await self._stop_session()
        self._set_state(ConnectionState.DISCONNECTED)

    async def request_pairing(self):
        """Operator asked for a QR code"""
        self.qr_requested = True
        self.qr_attempts = 0
        self.reconnect_attempts = 0
        self._cancel_backoff()
        self.auto_reconnect = True

        if self.pending_qr:
            await self._send_qr(self.pending_qr)
            return
        await self.start()

    async def restart(self):
        self._cancel_backoff()
        self.qr_requested = True
        await self._stop_session()
        self._set_state(ConnectionState.DISCONNECTED)
        await self.start()

    async def logout(self):
        """Invalidate the session and wipe local credentials"""
        self.auto_reconnect = False
        self._cancel_backoff()
        try:
            await self.session.logout()
        except Exception as e:
            logger.error(f"❌ WhatsApp logout failed: {e}")

        self.db.delete_state(PAIRED_STATE_KEY)
        self.qr_attempts = 0
        self.reconnect_attempts = 0
        self.pending_qr = None
        self.qr_requested = False
        self._set_state(ConnectionState.LOGGED_OUT)
        await self._notify("👋 <b>WhatsApp logged out successfully.</b>\nUse /login to connect again.")

    async def _stop_session(self):
        try:
            await self.session.stop()
        except Exception as e:
            logger.warning(f"⚠️  Error stopping WhatsApp session: {e}")

    # ==========================================
    # SESSION CALLBACKS
    # ==========================================

    async def handle_qr(self, payload: str):
        self.qr_attempts += 1
        self.pending_qr = payload
        self._set_state(ConnectionState.QR_PENDING)
        logger.info(f"QR code received (attempt {self.qr_attempts}/{self.reconnect.max_qr_attempts})")

        if self.qr_attempts > self.reconnect.max_qr_attempts:
            logger.error("❌ Max QR attempts reached. Waiting for /login command.")
            self.pending_qr = None
            self.qr_requested = False
            self.auto_reconnect = False
            await self._stop_session()
            self._set_state(ConnectionState.DISCONNECTED)
            await self._notify("❌ <b>Max QR attempts reached.</b>\nUse /login to try again.")
            return

        if self.qr_requested:
            await self._send_qr(payload)

    async def _send_qr(self, payload: str):
        if self.print_qr:
            qr = qrcode.QRCode()
            qr.add_data(payload)
            qr.print_ascii(invert=True)
        try:
            await self.telegram.send_qr_code(render_qr_png(payload))
        except Exception as e:
            logger.error(f"❌ Failed to send QR code: {e}")

    async def handle_authenticating(self):
        self._set_state(ConnectionState.AUTHENTICATING)

    async def handle_open(self):
        self._cancel_backoff()
        self.qr_attempts = 0
        self.reconnect_attempts = 0
        self.pending_qr = None
        self.qr_requested = False
        self._set_state(ConnectionState.READY)
        self.db.set_state(PAIRED_STATE_KEY, "1")
        logger.info("✅ WhatsApp client is ready")
        await self._notify("🟢 <b>WhatsApp is connected and ready!</b>")
        await self.dispatch("on_ready")

    async def handle_close(self, logged_out: bool = False, reason: Optional[str] = None):
        was_ready = self.is_ready
        logger.warning(f"⚠️  WhatsApp disconnected: {reason or 'unknown'}")

        if logged_out:
            self.auto_reconnect = False
            self._cancel_backoff()
            self.db.delete_state(PAIRED_STATE_KEY)
            self._set_state(ConnectionState.LOGGED_OUT)
            await self._notify("🔴 <b>WhatsApp logged out.</b>\nUse /login to reconnect.")
            return

        if not self.auto_reconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._set_state(ConnectionState.RECONNECTING)
        if was_ready:
            await self._notify("🔴 <b>WhatsApp disconnected!</b>\n⏳ Auto-reconnecting...")
        await self._schedule_reconnect()

    # ==========================================
    # RECONNECT BACKOFF
    # ==========================================

    async def _schedule_reconnect(self) -> Optional[float]:
        """Arm the next retry. Returns its delay, or None once the cap is hit."""
        self._cancel_backoff()
        self.reconnect_attempts += 1

        if self.reconnect_attempts > self.reconnect.max_attempts:
            logger.error(f"❌ Max reconnect attempts reached ({self.reconnect.max_attempts})")
            self.reconnect_attempts = 0
            self._set_state(ConnectionState.DISCONNECTED)
            await self._notify("❌ <b>Auto-reconnect failed.</b>\nUse /login to connect manually.")
            return None

        delay = backoff_delay(self.reconnect_attempts, self.reconnect.base_delay_seconds,
                              self.reconnect.max_delay_seconds)
        logger.info(f"Reconnect attempt {self.reconnect_attempts} in {delay:.0f}s")
        self._backoff_task = asyncio.create_task(self._reconnect_after(delay))
        return delay

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._backoff_task = None
        try:
            await self.session.start(self)
        except Exception as e:
            logger.error(f"❌ Reconnect attempt failed: {e}")
            if self.auto_reconnect:
                await self._schedule_reconnect()

    def _cancel_backoff(self):
        task = self._backoff_task
        self._backoff_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ==========================================
    # EVENTS FROM THE SESSION
    # ==========================================

    async def handle_raw_message(self, raw: Dict):
        special = classify_message(raw)
        if isinstance(special, ReactionEvent):
            await self.dispatch("on_reaction", special)
            return
        if isinstance(special, RevokeEvent):
            await self.dispatch("on_revoke", special)
            return
        if isinstance(special, EditEvent):
            await self.dispatch("on_edit", special)
            return

        message = normalize_message(raw, downloader=self.session.download_media)
        if message is None:
            return
        if message.from_me:
            await self.dispatch("on_message_echo", message)
        else:
            await self.dispatch("on_message", message)

    async def handle_ack(self, ack: AckEvent):
        await self.dispatch("on_ack", ack)

    async def handle_call(self, call: CallEvent):
        await self.dispatch("on_call", call)

    async def handle_group_participants(self, event: GroupParticipantsEvent):
        if event.action == "add":
            await self.dispatch("on_group_join", event)
        elif event.action in ("remove", "leave"):
            await self.dispatch("on_group_leave", event)

    async def handle_group_update(self, event: GroupUpdateEvent):
        await self.dispatch("on_group_update", event)

    # ==========================================
    # OUTBOUND
    # ==========================================

    def _require_ready(self):
        if not self.is_ready:
            raise DeliveryError("WhatsApp is not connected.")

    async def send_text(self, identity: str, text: str, quoted_id: Optional[str] = None) -> str:
        """Send text; returns the WhatsApp message id"""
        self._require_ready()
        return await self.session.send_text(identity, text, quoted_id=quoted_id)

    async def send_media(self, identity: str, file_path: str, caption: Optional[str] = None,
                         quoted_id: Optional[str] = None, as_sticker: bool = False) -> str:
        self._require_ready()
        return await self.session.send_media(identity, file_path, caption=caption,
                                             quoted_id=quoted_id, as_sticker=as_sticker)
