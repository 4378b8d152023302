"""
Data Models

Row dataclasses for the persisted entities and the small enums shared
across the bridge.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from .database import parse_db_time


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _from_row(cls, row: Optional[Dict]):
    """Build a dataclass from a DB row dict, ignoring joined extras"""
    if row is None:
        return None
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


@dataclass
class Contact:
    """One remote identity, individual or group"""
    id: int
    identity: str
    phone: Optional[str] = None
    platform_name: Optional[str] = None
    saved_name: Optional[str] = None
    alias: Optional[str] = None
    is_group: bool = False
    group_name: Optional[str] = None
    thread_id: Optional[int] = None
    is_muted: bool = False
    is_archived: bool = False
    last_active_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.is_group = bool(self.is_group)
        self.is_muted = bool(self.is_muted)
        self.is_archived = bool(self.is_archived)

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> Optional["Contact"]:
        return _from_row(cls, row)


@dataclass
class MessageMapping:
    primary_msg_id: str
    direction: str
    secondary_msg_id: Optional[int] = None
    secondary_chat_id: Optional[str] = None
    thread_id: Optional[int] = None
    contact_id: Optional[int] = None
    message_kind: str = "text"
    content: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> Optional["MessageMapping"]:
        return _from_row(cls, row)


@dataclass
class ReactionMapping:
    primary_msg_id: str
    emoji: str
    reactor_identity: str
    secondary_msg_id: Optional[int] = None
    secondary_chat_id: Optional[str] = None
    created_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> Optional["ReactionMapping"]:
        return _from_row(cls, row)


@dataclass
class ScheduledMessage:
    id: int
    target_identity: str
    body: str
    due_at: str
    status: str = ScheduleStatus.PENDING.value
    target_display: Optional[str] = None
    sent_at: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def due(self) -> Optional[datetime]:
        return parse_db_time(self.due_at)

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> Optional["ScheduledMessage"]:
        return _from_row(cls, row)


@dataclass
class CallRecord:
    id: int
    call_type: str
    direction: str
    call_id: Optional[str] = None
    contact_id: Optional[int] = None
    duration: int = 0
    secondary_msg_id: Optional[int] = None
    occurred_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> Optional["CallRecord"]:
        return _from_row(cls, row)
