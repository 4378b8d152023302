"""
WhatsApp Event Normalization

Turns raw WhatsApp web-protocol payloads (as relayed by the local bridge
process) into the small set of typed events the bridge handlers consume.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_BROADCAST = "status@broadcast"

# Raw content type -> message kind
KIND_MAP = {
    "conversation": "text",
    "extendedTextMessage": "text",
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "stickerMessage": "sticker",
    "locationMessage": "location",
    "liveLocationMessage": "location",
    "contactMessage": "vcard",
    "contactsArrayMessage": "multi_vcard",
}

MEDIA_TYPES = ("imageMessage", "videoMessage", "audioMessage", "documentMessage",
               "documentWithCaptionMessage", "stickerMessage")

# Wrapper types whose payload is another message
_WRAPPERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2",
             "documentWithCaptionMessage")

# Keys carried alongside the real content
_IGNORED_KEYS = ("senderKeyDistributionMessage", "messageContextInfo")

PROTOCOL_REVOKE = 0
PROTOCOL_EDIT = 14

# Delivery receipt levels
ACK_DELIVERED = 2
ACK_READ = 3
ACK_PLAYED = 4


def normalize_jid(jid: Optional[str]) -> Optional[str]:
    """Drop the device suffix and map legacy domains: 1555:3@c.us -> 1555@s.whatsapp.net"""
    if not jid or "@" not in jid:
        return jid
    user, domain = jid.split("@", 1)
    user = user.split(":", 1)[0]
    if domain == "c.us":
        domain = "s.whatsapp.net"
    return f"{user}@{domain}"


def unwrap(message: Optional[Dict]) -> Dict:
    """Strip ephemeral/view-once wrappers"""
    message = message or {}
    for _ in range(3):
        for wrapper in _WRAPPERS:
            inner = message.get(wrapper)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                message = inner["message"]
                break
        else:
            return message
    return message


def content_type(message: Dict) -> Optional[str]:
    for key in message:
        if key not in _IGNORED_KEYS:
            return key
    return None


@dataclass
class MediaPayload:
    """Downloaded media bytes"""
    mimetype: str
    data: bytes
    filename: Optional[str] = None


@dataclass
class Location:
    latitude: float
    longitude: float


@dataclass
class InboundMessage:
    """Normalized WhatsApp message"""
    id: str
    chat: str
    from_me: bool
    body: str = ""
    kind: str = "text"
    author: Optional[str] = None
    quoted_id: Optional[str] = None
    has_media: bool = False
    is_status: bool = False
    push_name: Optional[str] = None
    location: Optional[Location] = None
    raw: Dict = field(default_factory=dict, repr=False)
    downloader: Optional[Callable[[Dict], Awaitable[Optional[MediaPayload]]]] = field(
        default=None, repr=False
    )

    @property
    def is_group(self) -> bool:
        return self.chat.endswith("@g.us")

    async def download(self) -> Optional[MediaPayload]:
        """Fetch the media bytes lazily; None when there is nothing to fetch"""
        if not self.has_media or self.downloader is None:
            return None
        return await self.downloader(self.raw)


@dataclass
class AckEvent:
    message_id: str
    chat: str
    ack: int
    from_me: bool = True


@dataclass
class ReactionEvent:
    message_id: str
    chat: str
    reactor: str
    emoji: str  # empty string clears the reaction


@dataclass
class RevokeEvent:
    message_id: str
    chat: str
    from_me: bool = False
    sender: Optional[str] = None


@dataclass
class EditEvent:
    message_id: str
    chat: str
    new_body: str
    from_me: bool = False
    sender: Optional[str] = None


@dataclass
class CallEvent:
    call_id: str
    caller: str
    is_video: bool = False
    from_me: bool = False
    status: str = "offer"


@dataclass
class GroupParticipantsEvent:
    group: str
    participants: List[str]
    action: str  # add | remove | promote | demote


@dataclass
class GroupUpdateEvent:
    group: str
    subject: Optional[str] = None
    description: Optional[str] = None


def _text_of(message_type: str, message: Dict, content: Any) -> str:
    if message_type == "conversation":
        return message.get("conversation") or ""
    if not isinstance(content, dict):
        return ""
    return content.get("text") or content.get("caption") or content.get("displayName") or ""


def normalize_message(raw: Dict, downloader=None) -> Optional[InboundMessage]:
    """
    Build an InboundMessage from a raw web-protocol message.

    Returns None for payloads without content or without a chat id.
    """
    key = raw.get("key") or {}
    message = unwrap(raw.get("message"))
    if not message or not key.get("remoteJid"):
        return None

    message_type = content_type(message) or "conversation"
    content = message.get(message_type) or {}
    if message_type in ("protocolMessage", "reactionMessage"):
        return None
    context = (content.get("contextInfo") if isinstance(content, dict) else None) or {}
    chat = normalize_jid(key["remoteJid"])

    location = None
    if isinstance(content, dict) and content.get("degreesLatitude") is not None:
        location = Location(
            latitude=content["degreesLatitude"],
            longitude=content.get("degreesLongitude", 0.0),
        )

    author = context.get("participant") or key.get("participant") or raw.get("participant")

    return InboundMessage(
        id=key.get("id", ""),
        chat=chat,
        from_me=bool(key.get("fromMe")),
        body=_text_of(message_type, message, content),
        kind=KIND_MAP.get(message_type, message_type),
        author=normalize_jid(author),
        quoted_id=context.get("stanzaId"),
        has_media=any(t in message for t in MEDIA_TYPES),
        is_status=chat == STATUS_BROADCAST,
        push_name=raw.get("pushName"),
        location=location,
        raw=raw,
        downloader=downloader,
    )


def classify_message(raw: Dict):
    """
    Reactions, revokes and edits arrive as regular messages; split them out.

    Returns one of ReactionEvent, RevokeEvent or EditEvent, or None for an
    ordinary message.
    """
    key = raw.get("key") or {}
    message = unwrap(raw.get("message"))
    chat = normalize_jid(key.get("remoteJid"))
    from_me = bool(key.get("fromMe"))
    sender = normalize_jid(key.get("participant") or key.get("remoteJid"))

    reaction = message.get("reactionMessage")
    if isinstance(reaction, dict):
        target = reaction.get("key") or {}
        reactor = "me" if from_me else sender
        return ReactionEvent(
            message_id=target.get("id", ""),
            chat=chat,
            reactor=reactor,
            emoji=reaction.get("text") or "",
        )

    protocol = message.get("protocolMessage")
    if isinstance(protocol, dict):
        target = protocol.get("key") or {}
        kind = protocol.get("type")
        if kind in (PROTOCOL_REVOKE, "REVOKE"):
            return RevokeEvent(message_id=target.get("id", ""), chat=chat,
                               from_me=from_me, sender=sender)
        if kind in (PROTOCOL_EDIT, "MESSAGE_EDIT"):
            edited = unwrap(protocol.get("editedMessage"))
            edited_type = content_type(edited) or "conversation"
            return EditEvent(
                message_id=target.get("id", ""),
                chat=chat,
                new_body=_text_of(edited_type, edited, edited.get(edited_type)),
                from_me=from_me,
                sender=sender,
            )

    return None
