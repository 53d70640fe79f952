"""
Bounded-cost sweep that finds which cached liked songs were unliked.

Cached tracks are checked newest first in batches against Spotify's
"check saved tracks" endpoint (one request per batch). The sweep stops as
soon as the expected number of removals is explained. If the first few
batches turn up nothing at all it gives up and asks for a full resync
instead of walking the whole library.
"""

import logging
import time
from typing import Callable, List, Optional

from tunetriage.config import settings
from tunetriage.db import liked_songs as liked_songs_store
from tunetriage.models.schemas import LikedSongItem, RemovalDetectionResult
from tunetriage.services.page_fetcher import LikedSongsPageFetcher
from tunetriage.services.retry import RetryConfig, retry_spotify_call

logger = logging.getLogger(__name__)


class RemovalDetector:
    """Confirm and purge removed liked songs for one user."""

    def __init__(
        self,
        user_id: str,
        fetcher: LikedSongsPageFetcher,
        store=liked_songs_store,
        retry_config: Optional[RetryConfig] = None,
        batch_size: Optional[int] = None,
        max_batches_without_match: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        heartbeat: Optional[Callable[[], None]] = None,
    ):
        self.user_id = user_id
        self.fetcher = fetcher
        self.store = store
        self.retry_config = retry_config
        self.batch_size = batch_size or settings.liked_songs_removal_batch_size
        self.max_batches_without_match = max_batches_without_match or settings.liked_songs_removal_max_batches
        self.sleep = sleep
        self.heartbeat = heartbeat

    def _partition(self, track_ids: List[str]) -> List[str]:
        """Return the ids from this batch that are no longer saved."""
        flags = retry_spotify_call(
            lambda: self.fetcher.check_saved(track_ids),
            "Check saved tracks",
            self.retry_config,
            sleep=self.sleep,
        )
        return [track_id for track_id, saved in zip(track_ids, flags) if not saved]

    def detect_and_remove(
        self,
        cached_tracks: List[LikedSongItem],
        expected_removals: int,
    ) -> RemovalDetectionResult:
        """
        Find and delete cached tracks that are no longer liked.

        Args:
            cached_tracks: Cached items, newest added first
            expected_removals: How many removals the caller expects to find

        Returns:
            RemovalDetectionResult with status completed, needs_full_sync
            or no_cached_tracks
        """
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        if not cached_tracks:
            logger.info("No cached tracks to check for removals (user=%s)", self.user_id)
            return RemovalDetectionResult(status="no_cached_tracks", duration_ms=elapsed_ms())

        logger.info(
            "Detecting removed liked songs for user %s (expected=%s, cached=%s)",
            self.user_id,
            expected_removals,
            len(cached_tracks),
        )

        removed_ids: List[str] = []
        tracks_checked = 0

        for batch_index, start in enumerate(range(0, len(cached_tracks), self.batch_size)):
            batch = cached_tracks[start:start + self.batch_size]
            track_ids = [item.track_id for item in batch]
            logger.debug("Checking batch %s: tracks %s-%s", batch_index + 1, start + 1, start + len(batch))

            removed = self._partition(track_ids)
            tracks_checked += len(track_ids)
            if removed:
                logger.info("Found %s removed tracks in batch %s", len(removed), batch_index + 1)
                removed_ids.extend(removed)

            if self.heartbeat:
                self.heartbeat()

            if len(removed_ids) >= expected_removals:
                break

            if batch_index + 1 >= self.max_batches_without_match and not removed_ids and expected_removals > 0:
                logger.info(
                    "Checked %s tracks without finding any of %s expected removals; full sync needed",
                    tracks_checked,
                    expected_removals,
                )
                return RemovalDetectionResult(
                    status="needs_full_sync",
                    tracks_checked=tracks_checked,
                    duration_ms=elapsed_ms(),
                )

        if removed_ids:
            deleted = self.store.delete_items_by_ids(self.user_id, removed_ids)
            logger.info("Deleted %s removed liked songs from cache (user=%s)", deleted, self.user_id)

        return RemovalDetectionResult(
            status="completed",
            removals_found=len(removed_ids),
            tracks_checked=tracks_checked,
            removed_track_ids=removed_ids,
            duration_ms=elapsed_ms(),
        )
