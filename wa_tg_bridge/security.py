"""
Input Validation and Sanitizing

Checks applied to operator input before anything is sent or stored, plus
helpers for rendering untrusted names into Telegram HTML.
"""

import re
from pathlib import Path
from typing import Optional

from .config import DEFAULT_KEYS

MAX_MESSAGE_SIZE = 65536
MAX_COMMAND_LENGTH = 4096

_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")
_COMMAND_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_PHONE = re.compile(r"^\+?\d{7,15}$")
_IDENTITY = re.compile(r"^\d+@(s\.whatsapp\.net|g\.us|c\.us)$")


def is_authorized_user(user_id, admin_chat_id: str) -> bool:
    """Only the configured admin may drive the bridge"""
    return str(user_id) == str(admin_chat_id)


def sanitize_phone_number(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return re.sub(r"[^\d+]", "", phone)


def is_valid_phone_number(phone: str) -> bool:
    """7-15 digits, optional leading +"""
    return bool(_PHONE.match(sanitize_phone_number(phone)))


def is_valid_identity(identity: str) -> bool:
    if not identity or not isinstance(identity, str):
        return False
    return bool(_IDENTITY.match(identity))


def check_message_size(text: Optional[str]) -> bool:
    """True if the text fits the maximum accepted size"""
    return not (text and len(text) > MAX_MESSAGE_SIZE)


def sanitize_command(text: Optional[str]) -> str:
    """Strip null bytes and control chars (keeps \\n, \\r, \\t), limit length"""
    if not text:
        return ""
    return _COMMAND_CONTROL_CHARS.sub("", text).strip()[:MAX_COMMAND_LENGTH]


def sanitize_contact_name(name: Optional[str]) -> str:
    if not name:
        return "Unknown"
    return _CONTROL_CHARS.sub("", name).strip() or "Unknown"


def escape_html(text: Optional[str]) -> str:
    """Escape text for Telegram's HTML parse mode"""
    if not text:
        return ""
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def is_secure_encryption_key(key: Optional[str]) -> bool:
    if not key or len(key) < 16:
        return False
    return key not in DEFAULT_KEYS


def is_within_directory(file_path, directory) -> bool:
    """Reject paths that escape the media directory"""
    resolved = Path(file_path).resolve()
    base = Path(directory).resolve()
    return resolved == base or base in resolved.parents
