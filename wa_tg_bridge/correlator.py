"""
Message Correlator

Keeps the mapping between WhatsApp message ids and the Telegram messages
they were bridged to, so replies, receipts, reactions, edits and revokes
can be routed to the right place on the other side.
"""

import logging
from typing import Dict, List, Optional

from .database import Database
from .models import MessageMapping, ReactionMapping

logger = logging.getLogger(__name__)


class MessageCorrelator:
    """Cross-network id mapping over the message_map and reaction_map tables"""

    def __init__(self, db: Database):
        self.db = db

    def record(self, primary_msg_id: str, secondary_msg_id: Optional[int],
               secondary_chat_id, thread_id: Optional[int], contact_id: Optional[int],
               direction: str, message_kind: str = "text",
               content: Optional[str] = None):
        """Idempotent upsert keyed by the WhatsApp message id"""
        self.db.upsert_message_map(
            primary_msg_id, secondary_msg_id, secondary_chat_id, thread_id,
            contact_id, direction, message_kind, content
        )

    def by_primary_id(self, primary_msg_id: str) -> Optional[MessageMapping]:
        return MessageMapping.from_row(self.db.get_message_map(primary_msg_id))

    def by_secondary_id(self, secondary_msg_id: int, secondary_chat_id) -> Optional[MessageMapping]:
        return MessageMapping.from_row(
            self.db.get_message_map_by_secondary(secondary_msg_id, secondary_chat_id)
        )

    def knows(self, primary_msg_id: str) -> bool:
        return self.db.get_message_map(primary_msg_id) is not None

    def update_content(self, primary_msg_id: str, content: str) -> bool:
        return self.db.update_message_content(primary_msg_id, content)

    def count(self, direction: Optional[str] = None) -> int:
        return self.db.count_message_maps(direction)

    # ==========================================
    # CONTENT SEARCH
    # ==========================================

    def search_content(self, query: str, limit: int = 20) -> List[Dict]:
        """Coarse LIKE pre-filter. Encrypted rows will rarely match; not exact."""
        return self.db.search_message_content(query, limit)

    def find_messages(self, query: str, vault, limit: int = 20, scan: int = 500) -> List[Dict]:
        """
        Exact case-insensitive search over decrypted content.

        Candidates from the LIKE pre-filter are decrypted and filtered first,
        then up to `scan` recent rows are decrypted to pick up encrypted
        matches the pre-filter cannot see. Each result dict gets a `text` key
        with the plaintext.
        """
        needle = query.lower()
        found: List[Dict] = []
        seen = set()

        def collect(rows):
            for row in rows:
                if len(found) >= limit:
                    return
                if row["primary_msg_id"] in seen:
                    continue
                text = vault.decrypt(row.get("content"))
                if text and needle in text.lower():
                    seen.add(row["primary_msg_id"])
                    found.append(dict(row, text=text))

        collect(self.search_content(query, limit))
        if len(found) < limit:
            logger.debug(f"Search has {len(found)} pre-filter hits, scanning {scan} recent rows")
            collect(self.db.recent_messages_with_content(scan))
        return found

    # ==========================================
    # REACTIONS
    # ==========================================

    def record_reaction(self, primary_msg_id: str, emoji: str, reactor_identity: str,
                        secondary_msg_id: Optional[int] = None, secondary_chat_id=None):
        self.db.replace_reaction(primary_msg_id, secondary_msg_id, secondary_chat_id,
                                 emoji, reactor_identity)

    def remove_reaction(self, primary_msg_id: str, reactor_identity: str) -> bool:
        return self.db.delete_reaction(primary_msg_id, reactor_identity)

    def reactions_for(self, primary_msg_id: str) -> List[ReactionMapping]:
        return [ReactionMapping.from_row(r) for r in self.db.list_reactions(primary_msg_id)]
