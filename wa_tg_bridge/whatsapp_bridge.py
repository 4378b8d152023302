"""
WhatsApp Bridge Session

Talks to a local WhatsApp web bridge process over HTTP. The bridge process
holds the actual protocol connection; this session starts/stops it, long-polls
its event queue and relays events to the ConnectionManager.
"""

import asyncio
import base64
import logging
import shutil
from pathlib import Path
from typing import Dict, Optional

import httpx

from .errors import DeliveryError
from .messages import AckEvent, CallEvent, GroupParticipantsEvent, GroupUpdateEvent, MediaPayload

logger = logging.getLogger(__name__)


async def dispatch_event(manager, event: Dict):
    """Route one bridge event to the matching ConnectionManager callback"""
    kind = event.get("type")

    if kind == "qr":
        await manager.handle_qr(event["qr"])
    elif kind == "connection":
        status = event.get("connection")
        if status == "open":
            await manager.handle_open()
        elif status == "connecting":
            await manager.handle_authenticating()
        elif status == "close":
            await manager.handle_close(logged_out=bool(event.get("logged_out")),
                                       reason=event.get("reason"))
    elif kind == "message":
        await manager.handle_raw_message(event["message"])
    elif kind == "ack":
        await manager.handle_ack(AckEvent(
            message_id=event["id"],
            chat=event.get("chat", ""),
            ack=int(event["ack"]),
            from_me=event.get("from_me", True),
        ))
    elif kind == "call":
        await manager.handle_call(CallEvent(
            call_id=event.get("id", ""),
            caller=event["from"],
            is_video=bool(event.get("is_video")),
            from_me=bool(event.get("from_me")),
            status=event.get("status", "offer"),
        ))
    elif kind == "group_participants":
        await manager.handle_group_participants(GroupParticipantsEvent(
            group=event["group"],
            participants=list(event.get("participants", [])),
            action=event.get("action", ""),
        ))
    elif kind == "group_update":
        await manager.handle_group_update(GroupUpdateEvent(
            group=event["group"],
            subject=event.get("subject"),
            description=event.get("description"),
        ))
    else:
        logger.debug(f"Ignoring unknown bridge event: {kind}")


class HttpBridgeSession:
    """WhatsApp session backed by the local bridge HTTP API"""

    def __init__(self, base_url: str = "http://localhost:8080", session_dir: str = "wa_session",
                 poll_timeout: int = 25, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            base_url: Bridge process URL
            session_dir: Directory where the bridge keeps its credentials
            poll_timeout: Long-poll timeout for the event queue (seconds)
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.session_dir = Path(session_dir)
        self.poll_timeout = poll_timeout
        self.client = httpx.AsyncClient(base_url=self.base_url, transport=transport,
                                        timeout=poll_timeout + 10)
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    def has_credentials(self) -> bool:
        """True if the session directory holds saved credentials"""
        if not self.session_dir.exists():
            return False
        return any(p.name.startswith("creds") or p.suffix == ".json"
                   for p in self.session_dir.iterdir())

    async def _post(self, path: str, payload: Optional[Dict] = None, timeout: float = 30.0) -> Dict:
        try:
            response = await self.client.post(path, json=payload or {}, timeout=timeout)
        except httpx.HTTPError as e:
            raise DeliveryError(f"WhatsApp bridge unreachable: {type(e).__name__}")
        if response.status_code != 200:
            raise DeliveryError(f"Bridge HTTP {response.status_code}: {response.text[:200]}")
        try:
            result = response.json()
        except ValueError:
            raise DeliveryError("Bridge returned invalid JSON")
        if result.get("success") is False:
            raise DeliveryError(f"Bridge error: {result.get('message', 'unknown error')}")
        return result

    # ==========================================
    # LIFECYCLE
    # ==========================================

    async def start(self, manager):
        """Ask the bridge to connect and begin relaying its events"""
        self.session_dir.mkdir(parents=True, exist_ok=True)
        await self._post("/api/session/start", {"session_dir": str(self.session_dir.resolve())})
        self._running = True
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_events(manager))
        logger.info(f"Connected to WhatsApp bridge at {self.base_url}")

    async def _poll_events(self, manager):
        while self._running:
            try:
                response = await self.client.get(
                    "/api/events", params={"timeout": self.poll_timeout}
                )
                response.raise_for_status()
                events = response.json().get("events", [])
            except (httpx.HTTPError, ValueError) as e:
                if not self._running:
                    return
                logger.error(f"❌ Lost contact with WhatsApp bridge: {e}")
                self._running = False
                await manager.handle_close(logged_out=False, reason="bridge unreachable")
                return

            for event in events:
                try:
                    await dispatch_event(manager, event)
                except Exception as e:
                    logger.error(f"❌ Error handling bridge event {event.get('type')}: {e}",
                                 exc_info=True)

    def _cancel_poll(self):
        self._running = False
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def stop(self):
        self._cancel_poll()
        try:
            await self._post("/api/session/stop")
        except DeliveryError as e:
            logger.debug(f"Bridge stop request failed: {e}")

    async def logout(self):
        """Log out on the bridge and wipe the local credential directory"""
        self._cancel_poll()
        try:
            await self._post("/api/session/logout")
        finally:
            self.clear_session_dir()

    def clear_session_dir(self):
        try:
            if self.session_dir.exists():
                shutil.rmtree(self.session_dir)
            self.session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"❌ Failed to clear session directory: {e}")

    async def close(self):
        await self.stop()
        await self.client.aclose()

    # ==========================================
    # MESSAGING
    # ==========================================

    async def send_text(self, identity: str, text: str, quoted_id: Optional[str] = None) -> str:
        logger.info(f"📤 Sending message to {identity} (len={len(text)})")
        result = await self._post("/api/send", {
            "recipient": identity,
            "message": text,
            "quoted_id": quoted_id,
        })
        return result["id"]

    async def send_media(self, identity: str, file_path: str, caption: Optional[str] = None,
                         quoted_id: Optional[str] = None, as_sticker: bool = False) -> str:
        logger.info(f"📤 Sending media to {identity}: {Path(file_path).name}")
        result = await self._post("/api/send", {
            "recipient": identity,
            "message": caption or "",
            "media_path": str(Path(file_path).resolve()),
            "quoted_id": quoted_id,
            "as_sticker": as_sticker,
        }, timeout=120.0)
        return result["id"]

    async def download_media(self, raw: Dict) -> Optional[MediaPayload]:
        try:
            result = await self._post("/api/download", {"message": raw}, timeout=120.0)
        except DeliveryError as e:
            logger.error(f"❌ Failed to download media: {e}")
            return None
        return MediaPayload(
            mimetype=result.get("mimetype") or "application/octet-stream",
            data=base64.b64decode(result.get("data", "")),
            filename=result.get("filename"),
        )
