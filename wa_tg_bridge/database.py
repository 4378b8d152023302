"""
Database Management Module

Manages all SQLite operations for the bridge: contacts and their threads,
cross-network message mappings, reactions, call records, scheduled messages
and small bits of app state. Schema changes are applied through a versioned
migration ledger.
"""

import sqlite3
import logging
from datetime import datetime
from typing import List, Dict, Optional

import pytz

logger = logging.getLogger(__name__)

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def to_db_time(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as naive UTC text, the way every timestamp is stored"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(pytz.utc)
    return dt.strftime(DB_TIME_FORMAT)


def parse_db_time(value) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.strptime(str(value), DB_TIME_FORMAT)
        except ValueError:
            try:
                dt = datetime.fromisoformat(str(value))
            except ValueError:
                return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.utc)
    return dt.astimezone(pytz.utc)


def _add_columns(conn, table: str, columns: Dict[str, str]):
    """ALTER TABLE for each column not already present"""
    existing = [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]
    for name, ddl in columns.items():
        if name not in existing:
            logger.info(f"Adding {table}.{name} column...")
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def _migrate_contact_alias_and_muted(conn):
    _add_columns(conn, "contacts", {
        "alias": "TEXT",
        "is_muted": "INTEGER NOT NULL DEFAULT 0",
    })


def _migrate_message_content(conn):
    _add_columns(conn, "message_map", {"content": "TEXT"})


def _migrate_scheduled_messages(conn):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS scheduled_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            target_identity TEXT NOT NULL,
            target_display TEXT,
            body TEXT NOT NULL,
            due_at TIMESTAMP NOT NULL,
            sent_at TIMESTAMP,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'sent', 'failed', 'cancelled')),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_scheduled_pending
        ON scheduled_messages(status, due_at)
    """)


def _migrate_reaction_map(conn):
    conn.execute("""
        CREATE TABLE IF NOT EXISTS reaction_map (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            primary_msg_id TEXT NOT NULL,
            secondary_msg_id INTEGER,
            secondary_chat_id TEXT,
            emoji TEXT,
            reactor_identity TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_reaction_primary
        ON reaction_map(primary_msg_id)
    """)


def _migrate_lookup_indexes(conn):
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_message_map_secondary
        ON message_map(secondary_msg_id, secondary_chat_id)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_call_records_occurred
        ON call_records(occurred_at DESC)
    """)


def _migrate_contact_activity_and_archive(conn):
    _add_columns(conn, "contacts", {
        "last_active_at": "TIMESTAMP",
        "is_archived": "INTEGER NOT NULL DEFAULT 0",
    })


# Applied in ascending version order, each inside its own transaction
MIGRATIONS = [
    (1, "add_contact_alias_and_muted", _migrate_contact_alias_and_muted),
    (2, "add_message_content_for_search", _migrate_message_content),
    (3, "create_scheduled_messages_table", _migrate_scheduled_messages),
    (4, "create_reaction_map_table", _migrate_reaction_map),
    (5, "add_lookup_indexes", _migrate_lookup_indexes),
    (6, "add_contact_last_active_and_archived", _migrate_contact_activity_and_archive),
]

# Columns callers may update through set_contact_flag()
_CONTACT_FLAGS = ("alias", "is_muted", "is_archived")


class Database:
    """SQLite store for the bridge"""

    def __init__(self, db_path: str = "data/bridge.db"):
        """Initialize database connection"""
        self.db_path = db_path
        self.conn = None
        self._connect()

    def _connect(self):
        """Create database connection with optimizations"""
        self.conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=10.0
        )
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

    def initialize(self):
        """Create base tables if missing, then apply pending migrations"""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT UNIQUE NOT NULL,
                phone TEXT,
                platform_name TEXT,
                saved_name TEXT,
                is_group INTEGER NOT NULL DEFAULT 0,
                group_name TEXT,
                thread_id INTEGER,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_contacts_thread
            ON contacts(thread_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS message_map (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                primary_msg_id TEXT UNIQUE NOT NULL,
                secondary_msg_id INTEGER,
                secondary_chat_id TEXT,
                thread_id INTEGER,
                contact_id INTEGER REFERENCES contacts(id),
                direction TEXT NOT NULL CHECK(direction IN ('incoming', 'outgoing')),
                message_kind TEXT NOT NULL DEFAULT 'text',
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS call_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                call_id TEXT,
                contact_id INTEGER REFERENCES contacts(id),
                call_type TEXT NOT NULL DEFAULT 'voice',
                direction TEXT NOT NULL DEFAULT 'incoming',
                duration INTEGER NOT NULL DEFAULT 0,
                secondary_msg_id INTEGER,
                occurred_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER UNIQUE NOT NULL,
                name TEXT NOT NULL,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.commit()

        self.run_migrations()

    # ==========================================
    # MIGRATIONS
    # ==========================================

    def applied_migrations(self) -> List[int]:
        rows = self.conn.execute("SELECT version FROM migrations ORDER BY version").fetchall()
        return [row["version"] for row in rows]

    def run_migrations(self) -> int:
        """Apply every migration not yet in the ledger. Returns how many ran."""
        applied = set(self.applied_migrations())
        ran = 0

        for version, name, migrate in sorted(MIGRATIONS, key=lambda m: m[0]):
            if version in applied:
                continue

            self.conn.execute("BEGIN")
            try:
                migrate(self.conn)
                self.conn.execute(
                    "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, to_db_time(utcnow()))
                )
                self.conn.commit()
            except Exception as e:
                self.conn.rollback()
                logger.error(f"❌ Migration v{version} ({name}) failed: {e}")
                raise

            ran += 1
            logger.info(f"✅ Migration applied: v{version} ({name})")

        if ran:
            logger.info(f"Applied {ran} migration(s)")
        else:
            logger.debug("Database schema up to date")
        return ran

    # ==========================================
    # CONTACTS
    # ==========================================

    def upsert_contact(self, identity: str, phone: Optional[str] = None,
                       platform_name: Optional[str] = None, saved_name: Optional[str] = None,
                       is_group: bool = False, group_name: Optional[str] = None,
                       default_phone: Optional[str] = None) -> Dict:
        """
        Insert a contact or update the supplied fields of an existing one.

        None means "not supplied": the stored value is kept. default_phone is
        only used when the row is first inserted. last_active_at is always
        refreshed.
        """
        now = to_db_time(utcnow())
        self.conn.execute("""
            INSERT INTO contacts
            (identity, phone, platform_name, saved_name, is_group, group_name,
             last_active_at, created_at, updated_at)
            VALUES (:identity, COALESCE(:phone, :default_phone), :platform_name, :saved_name,
                    :is_group, :group_name, :now, :now, :now)
            ON CONFLICT(identity) DO UPDATE SET
                phone = COALESCE(:phone, contacts.phone, :default_phone),
                platform_name = COALESCE(excluded.platform_name, contacts.platform_name),
                saved_name = COALESCE(excluded.saved_name, contacts.saved_name),
                is_group = COALESCE(excluded.is_group, contacts.is_group),
                group_name = COALESCE(excluded.group_name, contacts.group_name),
                last_active_at = excluded.last_active_at,
                updated_at = excluded.updated_at
        """, {
            "identity": identity,
            "phone": phone,
            "default_phone": default_phone,
            "platform_name": platform_name,
            "saved_name": saved_name,
            "is_group": int(bool(is_group)),
            "group_name": group_name,
            "now": now,
        })
        self.conn.commit()
        return self.get_contact_by_identity(identity)

    def get_contact_by_identity(self, identity: str) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM contacts WHERE identity = ?", (identity,)
        ).fetchone()
        return dict(row) if row else None

    def get_contact_by_id(self, contact_id: int) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM contacts WHERE id = ?", (contact_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_contact_by_thread(self, thread_id: int) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM contacts WHERE thread_id = ?", (thread_id,)
        ).fetchone()
        return dict(row) if row else None

    def set_contact_thread(self, contact_id: int, thread_id: int) -> bool:
        """Assign a thread once; an already assigned thread is never replaced"""
        cursor = self.conn.execute("""
            UPDATE contacts SET thread_id = ?, updated_at = ?
            WHERE id = ? AND thread_id IS NULL
        """, (thread_id, to_db_time(utcnow()), contact_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def set_contact_flag(self, identity: str, column: str, value) -> bool:
        """Point update of alias/is_muted/is_archived"""
        if column not in _CONTACT_FLAGS:
            raise ValueError(f"Unsupported contact column: {column}")
        if column != "alias":
            value = int(bool(value))
        cursor = self.conn.execute(
            f"UPDATE contacts SET {column} = ?, updated_at = ? WHERE identity = ?",
            (value, to_db_time(utcnow()), identity)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def list_contacts(self, muted: Optional[bool] = None, archived: bool = False,
                      limit: Optional[int] = None) -> List[Dict]:
        """Contacts ordered by most recent activity"""
        query = "SELECT * FROM contacts WHERE is_archived = ?"
        params = [int(archived)]
        if muted is not None:
            query += " AND is_muted = ?"
            params.append(int(muted))
        query += " ORDER BY COALESCE(last_active_at, updated_at) DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        return [dict(row) for row in self.conn.execute(query, params).fetchall()]

    def list_contacts_inactive_since(self, cutoff: datetime) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT * FROM contacts
            WHERE is_archived = 0
              AND COALESCE(last_active_at, created_at) < ?
            ORDER BY COALESCE(last_active_at, created_at) ASC
        """, (to_db_time(cutoff),)).fetchall()
        return [dict(row) for row in rows]

    def search_contacts(self, query: str, limit: int = 50) -> List[Dict]:
        """Case-insensitive substring match over names, phone and identity"""
        pattern = f"%{query.lower()}%"
        rows = self.conn.execute("""
            SELECT * FROM contacts
            WHERE is_archived = 0 AND (
                LOWER(COALESCE(platform_name, '')) LIKE ?
                OR LOWER(COALESCE(saved_name, '')) LIKE ?
                OR LOWER(COALESCE(alias, '')) LIKE ?
                OR LOWER(COALESCE(group_name, '')) LIKE ?
                OR COALESCE(phone, '') LIKE ?
                OR LOWER(identity) LIKE ?
            )
            ORDER BY COALESCE(last_active_at, updated_at) DESC
            LIMIT ?
        """, (pattern, pattern, pattern, pattern, pattern, pattern, limit)).fetchall()
        return [dict(row) for row in rows]

    # ==========================================
    # MESSAGE MAP
    # ==========================================

    def upsert_message_map(self, primary_msg_id: str, secondary_msg_id: Optional[int],
                           secondary_chat_id: Optional[str], thread_id: Optional[int],
                           contact_id: Optional[int], direction: str,
                           message_kind: str = "text", content: Optional[str] = None):
        """
        Record a bridged message.

        Routing fields are last-write-wins; stored content survives an update
        that carries no content.
        """
        self.conn.execute("""
            INSERT INTO message_map
            (primary_msg_id, secondary_msg_id, secondary_chat_id, thread_id,
             contact_id, direction, message_kind, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(primary_msg_id) DO UPDATE SET
                secondary_msg_id = excluded.secondary_msg_id,
                secondary_chat_id = excluded.secondary_chat_id,
                thread_id = excluded.thread_id,
                contact_id = excluded.contact_id,
                direction = excluded.direction,
                message_kind = excluded.message_kind,
                content = COALESCE(NULLIF(excluded.content, ''), message_map.content)
        """, (primary_msg_id, secondary_msg_id,
              str(secondary_chat_id) if secondary_chat_id is not None else None,
              thread_id, contact_id, direction, message_kind, content,
              to_db_time(utcnow())))
        self.conn.commit()

    def get_message_map(self, primary_msg_id: str) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM message_map WHERE primary_msg_id = ?", (primary_msg_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_message_map_by_secondary(self, secondary_msg_id: int,
                                     secondary_chat_id) -> Optional[Dict]:
        row = self.conn.execute("""
            SELECT * FROM message_map
            WHERE secondary_msg_id = ? AND secondary_chat_id = ?
            ORDER BY id DESC LIMIT 1
        """, (secondary_msg_id, str(secondary_chat_id))).fetchone()
        return dict(row) if row else None

    def update_message_content(self, primary_msg_id: str, content: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE message_map SET content = ? WHERE primary_msg_id = ?",
            (content, primary_msg_id)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def search_message_content(self, query: str, limit: int = 20) -> List[Dict]:
        """LIKE pre-filter; content may be encrypted so results are only candidates"""
        rows = self.conn.execute("""
            SELECT m.*, c.identity, c.phone, c.alias, c.saved_name,
                   c.platform_name, c.group_name, c.is_group
            FROM message_map m
            LEFT JOIN contacts c ON c.id = m.contact_id
            WHERE m.content IS NOT NULL AND m.content LIKE ?
            ORDER BY m.id DESC
            LIMIT ?
        """, (f"%{query}%", limit)).fetchall()
        return [dict(row) for row in rows]

    def recent_messages_with_content(self, limit: int = 500) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT m.*, c.identity, c.phone, c.alias, c.saved_name,
                   c.platform_name, c.group_name, c.is_group
            FROM message_map m
            LEFT JOIN contacts c ON c.id = m.contact_id
            WHERE m.content IS NOT NULL AND m.content != ''
            ORDER BY m.id DESC
            LIMIT ?
        """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    def count_message_maps(self, direction: Optional[str] = None) -> int:
        if direction:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM message_map WHERE direction = ?", (direction,)
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM message_map").fetchone()
        return row[0]

    # ==========================================
    # REACTIONS
    # ==========================================

    def replace_reaction(self, primary_msg_id: str, secondary_msg_id: Optional[int],
                         secondary_chat_id, emoji: str, reactor_identity: str):
        """Keep exactly one row per (message, reactor)"""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            self.conn.execute("""
                DELETE FROM reaction_map
                WHERE primary_msg_id = ? AND reactor_identity = ?
            """, (primary_msg_id, reactor_identity))
            self.conn.execute("""
                INSERT INTO reaction_map
                (primary_msg_id, secondary_msg_id, secondary_chat_id, emoji,
                 reactor_identity, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (primary_msg_id, secondary_msg_id,
                  str(secondary_chat_id) if secondary_chat_id is not None else None,
                  emoji, reactor_identity, to_db_time(utcnow())))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def delete_reaction(self, primary_msg_id: str, reactor_identity: str) -> bool:
        cursor = self.conn.execute("""
            DELETE FROM reaction_map
            WHERE primary_msg_id = ? AND reactor_identity = ?
        """, (primary_msg_id, reactor_identity))
        self.conn.commit()
        return cursor.rowcount > 0

    def list_reactions(self, primary_msg_id: str) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT * FROM reaction_map WHERE primary_msg_id = ? ORDER BY id
        """, (primary_msg_id,)).fetchall()
        return [dict(row) for row in rows]

    # ==========================================
    # CALL RECORDS
    # ==========================================

    def insert_call_record(self, call_id: Optional[str], contact_id: Optional[int],
                           call_type: str, direction: str, duration: int = 0,
                           secondary_msg_id: Optional[int] = None,
                           occurred_at: Optional[datetime] = None) -> int:
        cursor = self.conn.execute("""
            INSERT INTO call_records
            (call_id, contact_id, call_type, direction, duration, secondary_msg_id, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (call_id, contact_id, call_type, direction, duration, secondary_msg_id,
              to_db_time(occurred_at or utcnow())))
        self.conn.commit()
        return cursor.lastrowid

    def set_call_secondary_msg(self, record_id: int, secondary_msg_id: int):
        self.conn.execute(
            "UPDATE call_records SET secondary_msg_id = ? WHERE id = ?",
            (secondary_msg_id, record_id)
        )
        self.conn.commit()

    def recent_call_records(self, limit: int = 20) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT cr.*, c.identity, c.phone, c.alias, c.saved_name, c.platform_name
            FROM call_records cr
            LEFT JOIN contacts c ON c.id = cr.contact_id
            ORDER BY cr.occurred_at DESC, cr.id DESC
            LIMIT ?
        """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    # ==========================================
    # SCHEDULED MESSAGES
    # ==========================================

    def insert_scheduled(self, target_identity: str, target_display: Optional[str],
                         body: str, due_at: datetime) -> int:
        cursor = self.conn.execute("""
            INSERT INTO scheduled_messages
            (target_identity, target_display, body, due_at, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
        """, (target_identity, target_display, body, to_db_time(due_at),
              to_db_time(utcnow())))
        self.conn.commit()
        return cursor.lastrowid

    def get_scheduled(self, scheduled_id: int) -> Optional[Dict]:
        row = self.conn.execute(
            "SELECT * FROM scheduled_messages WHERE id = ?", (scheduled_id,)
        ).fetchone()
        return dict(row) if row else None

    def due_scheduled(self, now: datetime) -> List[Dict]:
        """Pending rows due at or before now, oldest first"""
        rows = self.conn.execute("""
            SELECT * FROM scheduled_messages
            WHERE status = 'pending' AND due_at <= ?
            ORDER BY due_at ASC, id ASC
        """, (to_db_time(now),)).fetchall()
        return [dict(row) for row in rows]

    def finish_scheduled(self, scheduled_id: int, status: str,
                         sent_at: Optional[datetime] = None) -> bool:
        """Move a pending row to a terminal status; no-op if no longer pending"""
        cursor = self.conn.execute("""
            UPDATE scheduled_messages SET status = ?, sent_at = ?
            WHERE id = ? AND status = 'pending'
        """, (status, to_db_time(sent_at), scheduled_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def list_pending_scheduled(self) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT * FROM scheduled_messages
            WHERE status = 'pending'
            ORDER BY due_at ASC, id ASC
        """).fetchall()
        return [dict(row) for row in rows]

    def list_recent_scheduled(self, limit: int = 20) -> List[Dict]:
        rows = self.conn.execute("""
            SELECT * FROM scheduled_messages ORDER BY id DESC LIMIT ?
        """, (limit,)).fetchall()
        return [dict(row) for row in rows]

    # ==========================================
    # APP STATE
    # ==========================================

    def get_state(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM app_state WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str):
        self.conn.execute("""
            INSERT INTO app_state (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), to_db_time(utcnow())))
        self.conn.commit()

    def delete_state(self, key: str):
        self.conn.execute("DELETE FROM app_state WHERE key = ?", (key,))
        self.conn.commit()

    # ==========================================
    # UTILITY METHODS
    # ==========================================

    def get_stats(self) -> Dict:
        """Row counts for status reporting"""
        cursor = self.conn.cursor()
        stats = {}

        cursor.execute("SELECT COUNT(*) FROM contacts WHERE is_archived = 0")
        stats["contacts"] = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM contacts WHERE is_muted = 1")
        stats["muted_contacts"] = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM message_map")
        stats["messages"] = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM call_records")
        stats["calls"] = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM scheduled_messages WHERE status = 'pending'")
        stats["scheduled_pending"] = cursor.fetchone()[0]

        return stats

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
