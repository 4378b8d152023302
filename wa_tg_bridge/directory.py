"""
Contact Directory

Maps WhatsApp identities to contacts and lazily creates one Telegram forum
thread per contact. Thread creation is single-flight per identity: while one
task is creating a thread, concurrent callers wait and then read the result.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

from .database import Database, utcnow
from .models import Contact
from .security import escape_html, sanitize_contact_name

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"


def phone_from_identity(identity: str) -> str:
    return identity.split("@", 1)[0]


def identity_for_phone(phone: str) -> str:
    """Individual identity for a bare phone number"""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"{digits}{USER_SUFFIX}"


def display_name(contact: Contact) -> str:
    """alias > saved name > platform name > group name > phone > identity"""
    group_name = contact.group_name if contact.is_group else None
    raw = (contact.alias or contact.saved_name or contact.platform_name
           or group_name or contact.phone or contact.identity)
    return sanitize_contact_name(raw)


def thread_title(contact: Contact) -> str:
    name = display_name(contact)
    if contact.is_group:
        return f"👥 {name}"
    return f"{name} ({contact.phone or 'Unknown'})"


def intro_text(contact: Contact) -> str:
    """HTML card posted as the first message of a new thread"""
    name = escape_html(display_name(contact))
    if contact.is_group:
        return f"👥 <b>Group:</b> {name}"

    lines = [
        f"👤 <b>Contact:</b> {name}",
        f"📱 <b>Phone:</b> +{escape_html(contact.phone or 'Unknown')}",
    ]
    if contact.saved_name:
        lines.append(f"📒 <b>Saved:</b> {escape_html(contact.saved_name)}")
    if contact.platform_name:
        lines.append(f"🏷 <b>Push Name:</b> {escape_html(contact.platform_name)}")
    return "\n".join(lines)


class KeyedCreationLock:
    """Per-key in-flight marker; waiters are released when the owner finishes"""

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Event] = {}

    def held(self, key: str) -> bool:
        return key in self._in_flight

    async def wait(self, key: str):
        event = self._in_flight.get(key)
        if event is not None:
            await event.wait()

    @asynccontextmanager
    async def hold(self, key: str):
        event = asyncio.Event()
        self._in_flight[key] = event
        try:
            yield
        finally:
            del self._in_flight[key]
            event.set()


class ContactDirectory:
    """Contact upserts, lookups and thread assignment"""

    def __init__(self, db: Database, telegram):
        self.db = db
        self.telegram = telegram
        self._locks = KeyedCreationLock()

    def resolve(self, identity: str, phone: Optional[str] = None,
                platform_name: Optional[str] = None, saved_name: Optional[str] = None,
                is_group: Optional[bool] = None, group_name: Optional[str] = None) -> Contact:
        """
        Upsert a contact by identity.

        Only supplied hints overwrite stored values. A new contact without a
        phone hint gets the phone derived from its identity; is_group is
        derived from the identity when not given.

        Args:
            identity: WhatsApp identity (e.g. 15551230000@s.whatsapp.net)
            phone: Phone number without the domain part
            platform_name: Name the remote user set on their profile
            saved_name: Name from the local address book
            is_group: Whether the identity is a group chat
            group_name: Group subject

        Returns:
            The stored contact after the upsert
        """
        if is_group is None:
            is_group = identity.endswith(GROUP_SUFFIX)
        row = self.db.upsert_contact(
            identity,
            phone=phone or None,
            default_phone=phone_from_identity(identity),
            platform_name=platform_name or None,
            saved_name=saved_name or None,
            is_group=is_group,
            group_name=group_name or None,
        )
        return Contact.from_row(row)

    async def thread_for(self, contact: Contact) -> Optional[int]:
        """Existing thread id, or create one. None when creation failed."""
        current = self.find(contact.identity) or contact
        if current.thread_id:
            return current.thread_id

        key = current.identity
        if self._locks.held(key):
            await self._locks.wait(key)
            refreshed = self.find(key)
            return refreshed.thread_id if refreshed else None

        async with self._locks.hold(key):
            return await self._create_thread(current)

    async def _create_thread(self, contact: Contact) -> Optional[int]:
        title = thread_title(contact)
        try:
            thread_id = await self.telegram.create_forum_topic(title)
        except Exception as e:
            logger.error(f"❌ Failed to create thread for {contact.identity}: {e}")
            return None

        self.set_thread_id(contact.identity, thread_id)
        logger.info(f"✅ Created thread {thread_id} for {contact.identity}")

        try:
            await self.telegram.send_message_to_topic(thread_id, intro_text(contact))
        except Exception as e:
            logger.warning(f"⚠️  Could not post intro for {contact.identity}: {e}")

        return thread_id

    # ==========================================
    # POINT UPDATES
    # ==========================================

    def set_alias(self, identity: str, alias: Optional[str]) -> bool:
        return self.db.set_contact_flag(identity, "alias", alias)

    def set_muted(self, identity: str, muted: bool) -> bool:
        return self.db.set_contact_flag(identity, "is_muted", muted)

    def set_archived(self, identity: str, archived: bool) -> bool:
        return self.db.set_contact_flag(identity, "is_archived", archived)

    def set_thread_id(self, identity: str, thread_id: int) -> bool:
        contact = self.find(identity)
        if contact is None:
            return False
        return self.db.set_contact_thread(contact.id, thread_id)

    # ==========================================
    # LOOKUPS
    # ==========================================

    def find(self, identity: str) -> Optional[Contact]:
        return Contact.from_row(self.db.get_contact_by_identity(identity))

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        return Contact.from_row(self.db.get_contact_by_id(contact_id))

    def find_by_thread(self, thread_id: int) -> Optional[Contact]:
        return Contact.from_row(self.db.get_contact_by_thread(thread_id))

    def list_active(self, limit: Optional[int] = None) -> List[Contact]:
        return [Contact.from_row(r) for r in self.db.list_contacts(limit=limit)]

    def list_muted(self) -> List[Contact]:
        return [Contact.from_row(r) for r in self.db.list_contacts(muted=True)]

    def list_archived(self) -> List[Contact]:
        return [Contact.from_row(r) for r in self.db.list_contacts(archived=True)]

    def list_inactive_since(self, days: int) -> List[Contact]:
        cutoff = utcnow() - timedelta(days=days)
        return [Contact.from_row(r) for r in self.db.list_contacts_inactive_since(cutoff)]

    def search(self, query: str) -> List[Contact]:
        return [Contact.from_row(r) for r in self.db.search_contacts(query)]
