import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from tunetriage.db.database import get_db_connection
from tunetriage.models.schemas import SyncLease

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    # Fixed width so expiry comparisons in SQL stay lexicographic
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def acquire(user_id: str, holder_id: str, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
    """
    Try to take the sync lease for a user.

    Succeeds when no lease exists, the existing lease has expired, or it is
    already held by holder_id (which extends it). Returns False when another
    holder has a live lease.
    """
    now = now or datetime.now(timezone.utc)
    now_iso = _iso(now)
    expires_iso = _iso(now + timedelta(seconds=ttl_seconds))
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO liked_songs_sync_lease (user_id, holder_id, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              holder_id = excluded.holder_id,
              acquired_at = excluded.acquired_at,
              expires_at = excluded.expires_at
            WHERE liked_songs_sync_lease.expires_at <= ?
               OR liked_songs_sync_lease.holder_id = excluded.holder_id
            """,
            (user_id, holder_id, now_iso, expires_iso, now_iso),
        )
        acquired = cur.rowcount > 0
        conn.commit()
    if acquired:
        logger.debug("Sync lease for user %s acquired by %s until %s", user_id, holder_id, expires_iso)
    else:
        logger.info("Sync lease for user %s is held by another worker", user_id)
    return acquired


def release(user_id: str, holder_id: str) -> bool:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM liked_songs_sync_lease WHERE user_id = ? AND holder_id = ?",
            (user_id, holder_id),
        )
        released = cur.rowcount > 0
        conn.commit()
    return released


def get(user_id: str) -> Optional[SyncLease]:
    with get_db_connection() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM liked_songs_sync_lease WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
    if not row:
        return None
    return SyncLease(
        user_id=row["user_id"],
        holder_id=row["holder_id"],
        acquired_at=datetime.fromisoformat(row["acquired_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]),
    )


def is_held(user_id: str, now: Optional[datetime] = None) -> bool:
    """True when a live (unexpired) lease exists for the user."""
    lease = get(user_id)
    if not lease:
        return False
    now = now or datetime.now(timezone.utc)
    return lease.expires_at > now
