import json
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from tunetriage.db.database import get_db_connection
from tunetriage.models.schemas import LikedSongItem, LikedSongsMetadata

logger = logging.getLogger(__name__)

# SQLite default limit on bound parameters is 999 on older builds
_DELETE_CHUNK = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_item(row) -> LikedSongItem:
    return LikedSongItem(
        user_id=row["user_id"],
        track_id=row["track_id"],
        track_uri=row["track_uri"],
        track_name=row["track_name"],
        artist_name=row["artist_name"],
        artist_id=row["artist_id"],
        album_name=row["album_name"],
        album_id=row["album_id"],
        added_at=_from_iso(row["added_at"]),
        synced_at=_from_iso(row["synced_at"]),
        duration_ms=row["duration_ms"] or 0,
        popularity=row["popularity"] or 0,
    )


def _item_params(item: LikedSongItem) -> tuple:
    return (
        item.user_id,
        item.track_id,
        item.track_uri,
        item.track_name,
        item.artist_name,
        item.artist_id,
        item.album_name,
        item.album_id,
        item.added_at.astimezone(timezone.utc).isoformat(),
        item.synced_at.astimezone(timezone.utc).isoformat(),
        item.duration_ms,
        item.popularity,
    )


_UPSERT_ITEM_SQL = """
    INSERT INTO liked_songs
    (user_id, track_id, track_uri, track_name, artist_name, artist_id,
     album_name, album_id, added_at, synced_at, duration_ms, popularity)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(user_id, track_id) DO UPDATE SET
      track_uri = excluded.track_uri,
      track_name = excluded.track_name,
      artist_name = excluded.artist_name,
      artist_id = excluded.artist_id,
      album_name = excluded.album_name,
      album_id = excluded.album_id,
      added_at = excluded.added_at,
      synced_at = excluded.synced_at,
      duration_ms = excluded.duration_ms,
      popularity = excluded.popularity
"""


def get_metadata(user_id: str) -> Optional[LikedSongsMetadata]:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM liked_songs_metadata WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
    if not row:
        return None
    try:
        first_page_ids = json.loads(row["first_page_track_ids"] or "[]")
    except json.JSONDecodeError:
        first_page_ids = []
    return LikedSongsMetadata(
        user_id=row["user_id"],
        total_tracks=row["total_tracks"] or 0,
        last_synced_at=_from_iso(row["last_synced_at"]),
        last_full_sync_at=_from_iso(row["last_full_sync_at"]),
        most_recent_added_at=_from_iso(row["most_recent_added_at"]),
        oldest_added_at=_from_iso(row["oldest_added_at"]),
        sync_version=row["sync_version"] or 0,
        sync_status=row["sync_status"],
        last_error=row["last_error"],
        first_page_track_ids=first_page_ids,
        needs_full_sync=bool(row["needs_full_sync"]),
    )


def put_metadata(metadata: LikedSongsMetadata) -> None:
    """Full overwrite of the user's metadata row."""
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO liked_songs_metadata
            (user_id, total_tracks, last_synced_at, last_full_sync_at, most_recent_added_at,
             oldest_added_at, sync_version, sync_status, last_error, first_page_track_ids,
             needs_full_sync, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              total_tracks = excluded.total_tracks,
              last_synced_at = excluded.last_synced_at,
              last_full_sync_at = excluded.last_full_sync_at,
              most_recent_added_at = excluded.most_recent_added_at,
              oldest_added_at = excluded.oldest_added_at,
              sync_version = excluded.sync_version,
              sync_status = excluded.sync_status,
              last_error = excluded.last_error,
              first_page_track_ids = excluded.first_page_track_ids,
              needs_full_sync = excluded.needs_full_sync,
              updated_at = excluded.updated_at
            """,
            (
                metadata.user_id,
                metadata.total_tracks,
                _to_iso(metadata.last_synced_at),
                _to_iso(metadata.last_full_sync_at),
                _to_iso(metadata.most_recent_added_at),
                _to_iso(metadata.oldest_added_at),
                metadata.sync_version,
                metadata.sync_status,
                metadata.last_error,
                json.dumps(metadata.first_page_track_ids),
                1 if metadata.needs_full_sync else 0,
                _now_iso(),
            ),
        )
        conn.commit()


def delete_metadata(user_id: str) -> bool:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM liked_songs_metadata WHERE user_id = ?", (user_id,))
        deleted = cur.rowcount
        conn.commit()
    return deleted > 0


def get_items(user_id: str) -> List[LikedSongItem]:
    """Cached liked songs for a user, newest added first."""
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM liked_songs
            WHERE user_id = ?
            ORDER BY added_at DESC, track_id ASC
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    return [_row_to_item(row) for row in rows]


def get_item_ids(user_id: str) -> Set[str]:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("SELECT track_id FROM liked_songs WHERE user_id = ?", (user_id,))
        return {row["track_id"] for row in cur.fetchall()}


def count_items(user_id: str) -> int:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS count FROM liked_songs WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
    return row["count"] if row else 0


def batch_put_items(items: List[LikedSongItem]) -> int:
    """Idempotent upsert keyed by (user_id, track_id)."""
    if not items:
        return 0
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.executemany(_UPSERT_ITEM_SQL, [_item_params(item) for item in items])
        conn.commit()
    logger.debug("Upserted %s liked songs", len(items))
    return len(items)


def replace_items(user_id: str, items: List[LikedSongItem]) -> int:
    """Clear the user's cached items and write the new set in one transaction."""
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM liked_songs WHERE user_id = ?", (user_id,))
        removed = cur.rowcount
        if items:
            cur.executemany(_UPSERT_ITEM_SQL, [_item_params(item) for item in items])
        conn.commit()
    logger.info("Replaced %s cached liked songs with %s for user %s", removed, len(items), user_id)
    return len(items)


def clear_items(user_id: str) -> int:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM liked_songs WHERE user_id = ?", (user_id,))
        deleted = cur.rowcount
        conn.commit()
    return deleted


def delete_items_by_ids(user_id: str, track_ids: Iterable[str]) -> int:
    ids = [tid for tid in track_ids if tid]
    if not ids:
        return 0
    deleted = 0
    with get_db_connection() as conn:
        cur = conn.cursor()
        for i in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[i:i + _DELETE_CHUNK]
            placeholders = ",".join(["?"] * len(chunk))
            cur.execute(
                f"DELETE FROM liked_songs WHERE user_id = ? AND track_id IN ({placeholders})",
                (user_id, *chunk),
            )
            deleted += cur.rowcount
        conn.commit()
    return deleted
