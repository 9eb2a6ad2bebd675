"""SQLite database schema and initialization for mailrelay.

Tables:
- structured_emails: Inbound emails with serialized address blobs and thread linkage
- sent_emails: Outbound emails (replies) with thread linkage
- email_threads: Conversation threads and their participant sets
- endpoints: Delivery targets (webhook, email forward, email group)
- email_addresses: Receiving address -> endpoint mapping
- email_domains: Domain-level catch-all routing
- endpoint_deliveries: One row per delivery attempt of an email to an endpoint
- api_keys: Hashed API keys resolving to an account (user_id)

Usage:
    from mailrelay.db.models import init_database

    await init_database("data/mailrelay.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailrelay.core.errors import DatabaseError
from mailrelay.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "structured_emails",
    "sent_emails",
    "email_threads",
    "endpoints",
    "email_addresses",
    "email_domains",
    "endpoint_deliveries",
    "api_keys",
)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS email_threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    root_message_id TEXT NOT NULL,          -- Message-ID of the root email (or its row id)
    normalized_subject TEXT,                -- Lowercased, reply/forward prefixes removed
    participant_emails TEXT,                -- JSON list of lowercase addresses
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_threads_user_last
    ON email_threads(user_id, last_message_at DESC);
CREATE INDEX IF NOT EXISTS idx_threads_subject
    ON email_threads(user_id, normalized_subject);

CREATE TABLE IF NOT EXISTS structured_emails (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    message_id TEXT,                        -- RFC 5322 Message-ID, angle brackets stripped
    in_reply_to TEXT,
    references_json TEXT,                   -- JSON list of referenced Message-IDs
    subject TEXT,
    date DATETIME,
    from_data TEXT,                         -- {"text": ..., "addresses": [{"name", "address"}]}
    to_data TEXT,
    cc_data TEXT,
    recipient TEXT,                         -- Envelope recipient used for routing
    text_body TEXT,
    html_body TEXT,
    thread_id TEXT REFERENCES email_threads(id),
    thread_position INTEGER,                -- 0-based position within the thread
    is_read INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_structured_user_message
    ON structured_emails(user_id, message_id);
CREATE INDEX IF NOT EXISTS idx_structured_thread
    ON structured_emails(thread_id, thread_position);
CREATE INDEX IF NOT EXISTS idx_structured_unthreaded
    ON structured_emails(user_id, thread_id, date);

CREATE TABLE IF NOT EXISTS sent_emails (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    message_id TEXT,
    in_reply_to TEXT,
    from_address TEXT NOT NULL,             -- "Name <email>" or bare email
    to_json TEXT,                           -- JSON list of strings or {"address", "name"}
    cc_json TEXT,
    subject TEXT,
    text_body TEXT,
    status TEXT DEFAULT 'pending',          -- 'pending', 'sent', 'failed'
    failure_reason TEXT,
    thread_id TEXT REFERENCES email_threads(id),
    thread_position INTEGER,
    sent_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sent_user_message
    ON sent_emails(user_id, message_id);
CREATE INDEX IF NOT EXISTS idx_sent_thread
    ON sent_emails(thread_id, thread_position);

CREATE TABLE IF NOT EXISTS endpoints (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,                     -- 'webhook', 'email', 'email_group'
    config TEXT NOT NULL,                   -- JSON, shape depends on type
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_endpoints_user ON endpoints(user_id);

CREATE TABLE IF NOT EXISTS email_addresses (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    address TEXT NOT NULL UNIQUE,           -- Stored lowercase
    endpoint_id TEXT REFERENCES endpoints(id),
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS email_domains (
    domain TEXT PRIMARY KEY,                -- Stored lowercase
    user_id TEXT NOT NULL,
    catch_all_endpoint_id TEXT REFERENCES endpoints(id),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS endpoint_deliveries (
    id TEXT PRIMARY KEY,
    email_id TEXT NOT NULL REFERENCES structured_emails(id),
    endpoint_id TEXT NOT NULL REFERENCES endpoints(id),
    delivery_type TEXT NOT NULL,            -- 'webhook', 'email_forward'
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'success', 'failed'
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at DATETIME,
    response_data TEXT,                     -- JSON: status code, body excerpt, error
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_deliveries_email ON endpoint_deliveries(email_id);
CREATE INDEX IF NOT EXISTS idx_deliveries_endpoint ON endpoint_deliveries(endpoint_id);

CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT,
    key_hash TEXT NOT NULL UNIQUE,          -- sha256 hex of the raw key
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_used_at DATETIME
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist and creates all tables
    and indexes. Safe to call on every startup.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Stored email bodies are account data: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("Missing database tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
