"""
Database management for the liked songs cache using SQLite.
"""

import os
import sqlite3
from pathlib import Path
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)

# Database file location (env override for tests)
DB_PATH = Path(os.getenv("TUNETRIAGE_DB_PATH", "/data/tunetriage.db"))


def init_db():
    """Initialize the database with required tables."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(DB_PATH))
    cursor = conn.cursor()

    # Cached liked songs, one row per (user, track)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS liked_songs (
            user_id TEXT NOT NULL,
            track_id TEXT NOT NULL,
            track_uri TEXT NOT NULL,
            track_name TEXT NOT NULL,
            artist_name TEXT NOT NULL,
            artist_id TEXT NOT NULL,
            album_name TEXT NOT NULL,
            album_id TEXT NOT NULL,
            added_at TEXT NOT NULL,
            synced_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            popularity INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (user_id, track_id)
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_liked_songs_added ON liked_songs(user_id, added_at DESC)
    """)

    # Per-user sync state for the liked songs cache
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS liked_songs_metadata (
            user_id TEXT PRIMARY KEY,
            total_tracks INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            last_full_sync_at TEXT,
            most_recent_added_at TEXT,
            oldest_added_at TEXT,
            sync_version INTEGER NOT NULL DEFAULT 0,
            sync_status TEXT NOT NULL DEFAULT 'never_synced',
            last_error TEXT,
            first_page_track_ids TEXT,
            needs_full_sync INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
    """)

    # Migration: removal sweep escalation flag for existing DBs
    try:
        cursor.execute("ALTER TABLE liked_songs_metadata ADD COLUMN needs_full_sync INTEGER NOT NULL DEFAULT 0")
        logger.info("Added needs_full_sync column to liked_songs_metadata")
    except sqlite3.OperationalError:
        pass  # Column already exists

    # Sync leases so only one sync per user runs at a time
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS liked_songs_sync_lease (
            user_id TEXT PRIMARY KEY,
            holder_id TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
    """)

    conn.commit()
    conn.close()

    logger.info(f"Database initialized at {DB_PATH}")


@contextmanager
def get_db_connection():
    """Context manager for database connections."""
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row  # Enable column access by name
    try:
        yield conn
    finally:
        conn.close()


# Initialize database on module import
init_db()
