"""
Liked songs cache sync orchestrator.

Decides on every call whether the locally cached liked songs are stale and,
if so, does the least upstream work needed to reconcile them:

- cached: a one-page probe shows nothing changed, serve the cache as-is
- full: re-fetch the whole collection and replace the cache
- incremental: fetch only the new head of the collection (bounded by the
  most_recent_added_at watermark), then run a removal sweep when the totals
  show tracks disappeared

Every mutating sync runs under a per-user lease. Failures are recorded on
the metadata row (sync_status='error', last_error) and re-raised; the next
call self-heals with a full sync.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tunetriage.config import settings
from tunetriage.db import liked_songs as liked_songs_store
from tunetriage.db import sync_lease as sync_lease_store
from tunetriage.models.schemas import (
    AlbumSimple,
    ArtistSimple,
    ChangeDetectionResult,
    LikedSongItem,
    LikedSongsMetadata,
    LikedSongsPage,
    SyncOptions,
    SyncResult,
    Track,
)
from tunetriage.services.change_detector import ChangeDetector
from tunetriage.services.errors import SyncInProgressError
from tunetriage.services.page_fetcher import LikedSongsPageFetcher
from tunetriage.services.removal_detector import RemovalDetector
from tunetriage.services.retry import RetryConfig, get_spotify_retry_config, retry_spotify_call
from tunetriage.services.spotify_service import SpotifyService

logger = logging.getLogger(__name__)


def parse_added_at(value: Optional[str]) -> Optional[datetime]:
    """Parse a Spotify added_at string into an aware UTC datetime (None if invalid)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_liked_song_item(
    track: Dict[str, Any],
    added_at: Optional[str],
    user_id: str,
    synced_at: Optional[datetime] = None,
) -> LikedSongItem:
    """Convert a Spotify track object to a cache row."""
    now = synced_at or datetime.now(timezone.utc)
    artists = track.get("artists") or []
    first_artist = (artists[0] or {}) if artists else {}
    album = track.get("album") or {}
    return LikedSongItem(
        user_id=user_id,
        track_id=track["id"],
        track_uri=track.get("uri") or f"spotify:track:{track['id']}",
        track_name=track.get("name") or "",
        artist_name=first_artist.get("name") or "Unknown Artist",
        artist_id=first_artist.get("id") or "",
        album_name=album.get("name") or "",
        album_id=album.get("id") or "",
        # Fall back to now so a bad timestamp never drops the track
        added_at=parse_added_at(added_at) or now,
        synced_at=now,
        duration_ms=track.get("duration_ms") or 0,
        popularity=track.get("popularity") or 0,
    )


def to_track(item: LikedSongItem) -> Track:
    """Convert a cache row back to a (minimal) Spotify-shaped track."""
    return Track(
        id=item.track_id,
        uri=item.track_uri,
        name=item.track_name,
        duration_ms=item.duration_ms,
        popularity=item.popularity or 0,
        artists=[
            ArtistSimple(
                id=item.artist_id,
                name=item.artist_name,
                uri=f"spotify:artist:{item.artist_id}",
            )
        ],
        album=AlbumSimple(
            id=item.album_id,
            name=item.album_name,
            uri=f"spotify:album:{item.album_id}",
        ),
        added_at=item.added_at,
    )


class LikedSongsCache:
    """
    Liked songs cache for one user.

    Args:
        user_id: Spotify user ID owning the cache partition
        spotify: SpotifyService for this user's session
        store: Liked songs persistence (module or compatible object)
        lease_store: Sync lease persistence (module or compatible object)
        page_size: Saved-tracks page size (defaults to settings)
        retry_config: Retry config for every upstream call (defaults to presets)
        holder_id: Lease holder id (defaults to a random id per instance)
        sleep: Sleep function used between retries
        clock: Returns "now" as an aware datetime
    """

    def __init__(
        self,
        user_id: str,
        spotify: SpotifyService,
        store=liked_songs_store,
        lease_store=sync_lease_store,
        page_size: Optional[int] = None,
        retry_config: Optional[RetryConfig] = None,
        change_detector: Optional[ChangeDetector] = None,
        removal_detector: Optional[RemovalDetector] = None,
        holder_id: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.user_id = user_id
        self.spotify = spotify
        self.store = store
        self.lease_store = lease_store
        self.page_size = page_size or settings.liked_songs_page_size
        self.lease_seconds = lease_seconds or settings.liked_songs_lease_seconds
        self.holder_id = holder_id or f"sync_{uuid.uuid4().hex[:12]}"
        self.sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        presets = get_spotify_retry_config()
        self.page_retry = retry_config or presets["saved_tracks"]
        self.check_retry = retry_config or presets["default"]

        self.fetcher = LikedSongsPageFetcher(spotify)
        self.change_detector = change_detector or ChangeDetector()
        self.removal_detector = removal_detector or RemovalDetector(
            user_id,
            self.fetcher,
            store=store,
            retry_config=self.check_retry,
            sleep=sleep,
            heartbeat=self._renew_lease,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def sync_liked_songs(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Bring the cache up to date using the cheapest safe strategy.

        Raises:
            SyncInProgressError: Another worker holds the sync lease
            Exception: Any upstream/store failure, after it has been
                recorded on the metadata row
        """
        options = options or SyncOptions()
        started = time.monotonic()
        metadata = self.store.get_metadata(self.user_id)

        reason = self._full_sync_reason(metadata, options)
        if reason:
            logger.info("Performing full sync of liked songs (user=%s, reason=%s)", self.user_id, reason)
            return self._with_lease(lambda: self._full_sync(started))

        probe = self._fetch_page(0)
        changes = self.change_detector.detect(metadata, probe)

        if changes.change_type == "none":
            logger.info("No changes detected, using cached liked songs (user=%s)", self.user_id)
            return SyncResult(
                type="cached",
                total_tracks=metadata.total_tracks,
                from_cache=True,
                sync_duration_ms=self._elapsed_ms(started),
            )

        if changes.change_type == "unknown":
            logger.info("Unknown change state, falling back to full sync (user=%s)", self.user_id)
            return self._with_lease(lambda: self._full_sync(started))

        logger.info(
            "Performing incremental sync (user=%s, change=%s, new~%s, removed~%s)",
            self.user_id,
            changes.change_type,
            changes.estimated_new_tracks,
            changes.estimated_removals,
        )
        return self._with_lease(lambda: self._incremental_sync(changes, probe, options, started))

    def get_cached_liked_songs(self) -> List[Track]:
        """Cached liked songs, newest first. Never touches the network."""
        return [to_track(item) for item in self.store.get_items(self.user_id)]

    def get_liked_songs_with_cache(self, options: Optional[SyncOptions] = None) -> List[Track]:
        """Sync if needed, then return the cached liked songs."""
        result = self.sync_liked_songs(options)
        logger.info(
            "Sync result: %s, %s added, %s removed, from cache: %s",
            result.type,
            result.tracks_added,
            result.tracks_removed,
            result.from_cache,
        )
        return self.get_cached_liked_songs()

    def get_status(self) -> Optional[LikedSongsMetadata]:
        return self.store.get_metadata(self.user_id)

    def clear_cache(self) -> int:
        """Drop the user's cached items and metadata. Returns items removed."""

        def clear() -> int:
            removed = self.store.clear_items(self.user_id)
            self.store.delete_metadata(self.user_id)
            logger.info("Cleared liked songs cache for user %s (%s tracks)", self.user_id, removed)
            return removed

        return self._with_lease(clear)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _full_sync_reason(self, metadata: Optional[LikedSongsMetadata], options: SyncOptions) -> Optional[str]:
        if options.force_refresh:
            return "force_refresh"
        if metadata is None:
            return "never_synced"

        max_age = options.max_age or timedelta(hours=settings.liked_songs_max_age_hours)
        if metadata.last_synced_at is None or self._clock() - metadata.last_synced_at > max_age:
            return "cache_expired"
        if metadata.sync_status == "error":
            return "previous_error"
        if metadata.sync_status == "syncing":
            # Live syncs hold the lease; a leftover 'syncing' means the holder died
            return "abandoned_sync"
        if metadata.needs_full_sync:
            return "unresolved_removals"
        return None

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _full_sync(self, started: float) -> SyncResult:
        metadata = self.store.get_metadata(self.user_id)
        self._mark_syncing(metadata)

        try:
            previous_ids = self.store.get_item_ids(self.user_id)
            items: List[LikedSongItem] = []
            first_page_ids: List[str] = []
            newest: Optional[datetime] = None
            oldest: Optional[datetime] = None
            total = 0
            offset = 0
            synced_at = self._clock()

            while True:
                page = self._fetch_page(offset)
                total = page.total
                if offset == 0:
                    first_page_ids = [entry.track["id"] for entry in page.items]

                for entry in page.items:
                    added_at = parse_added_at(entry.added_at)
                    if added_at is not None:
                        newest = added_at if newest is None else max(newest, added_at)
                        oldest = added_at if oldest is None else min(oldest, added_at)
                    items.append(to_liked_song_item(entry.track, entry.added_at, self.user_id, synced_at))

                if not page.has_next:
                    break
                offset += self.page_size
                logger.info("Synced %s/%s liked songs", len(items), total)
                self._renew_lease()

            # Only touch cached rows once every page has been fetched
            self.store.replace_items(self.user_id, items)

            now = self._clock()
            self.store.put_metadata(
                LikedSongsMetadata(
                    user_id=self.user_id,
                    total_tracks=total,
                    last_synced_at=now,
                    last_full_sync_at=now,
                    most_recent_added_at=newest,
                    oldest_added_at=oldest,
                    sync_version=(metadata.sync_version if metadata else 0) + 1,
                    sync_status="synced",
                    last_error=None,
                    first_page_track_ids=first_page_ids,
                    needs_full_sync=False,
                )
            )
        except SyncInProgressError:
            # Lease lost mid-sync; the new holder owns the metadata row now
            raise
        except Exception as e:
            self._mark_error(e)
            raise

        fetched_ids = {item.track_id for item in items}
        result = SyncResult(
            type="full",
            tracks_added=len(fetched_ids - previous_ids),
            tracks_removed=len(previous_ids - fetched_ids),
            total_tracks=total,
            from_cache=False,
            sync_duration_ms=self._elapsed_ms(started),
        )
        logger.info(
            "Full sync complete for user %s: %s tracks (%s added, %s removed)",
            self.user_id,
            total,
            result.tracks_added,
            result.tracks_removed,
        )
        return result

    def _incremental_sync(
        self,
        changes: ChangeDetectionResult,
        probe: LikedSongsPage,
        options: SyncOptions,
        started: float,
    ) -> SyncResult:
        metadata = self.store.get_metadata(self.user_id)
        if metadata is None:
            # Cache was cleared between the probe and taking the lease
            return self._full_sync(started)

        self._mark_syncing(metadata)

        try:
            watermark = metadata.most_recent_added_at
            cached_ids = self.store.get_item_ids(self.user_id)
            new_items, seen = self._collect_new_items(probe, watermark, cached_ids)

            if new_items:
                self.store.batch_put_items(new_items)

            current_total = probe.total
            tracks_removed = max(0, metadata.total_tracks - current_total + len(new_items))
            needs_full_sync = False

            wants_sweep = tracks_removed > 0 or changes.change_type in ("removals", "additions_and_removals")
            if wants_sweep and options.incremental_only:
                logger.info("Skipping removal detection (incremental_only) for user %s", self.user_id)
                # Removed rows are still cached, so keep the stored total in step
                # with them; the next sweep sees the drift again
                current_total = metadata.total_tracks + len(new_items)
                tracks_removed = 0
            elif wants_sweep:
                expected = max(tracks_removed, changes.estimated_removals)
                new_ids = {item.track_id for item in new_items}
                candidates = [item for item in self.store.get_items(self.user_id) if item.track_id not in new_ids]
                removal = self.removal_detector.detect_and_remove(candidates, expected)
                if removal.status == "needs_full_sync":
                    logger.warning(
                        "Removal sweep could not confirm %s removals for user %s; next sync will be full",
                        expected,
                        self.user_id,
                    )
                    needs_full_sync = True
                elif removal.status == "completed":
                    tracks_removed = removal.removals_found

            newest = watermark
            oldest = metadata.oldest_added_at
            for added_at in seen:
                newest = added_at if newest is None else max(newest, added_at)
                if oldest is None or added_at < oldest:
                    oldest = added_at

            self.store.put_metadata(
                metadata.model_copy(
                    update={
                        "total_tracks": current_total,
                        "last_synced_at": self._clock(),
                        "most_recent_added_at": newest,
                        "oldest_added_at": oldest,
                        "sync_version": metadata.sync_version + 1,
                        "sync_status": "synced",
                        "last_error": None,
                        "first_page_track_ids": changes.current_first_page_ids
                        or [entry.track["id"] for entry in probe.items],
                        "needs_full_sync": needs_full_sync,
                    }
                )
            )
        except SyncInProgressError:
            raise
        except Exception as e:
            self._mark_error(e)
            raise

        logger.info(
            "Incremental sync complete for user %s: %s added, %s removed, total %s",
            self.user_id,
            len(new_items),
            tracks_removed,
            current_total,
        )
        return SyncResult(
            type="incremental",
            tracks_added=len(new_items),
            tracks_removed=tracks_removed,
            total_tracks=current_total,
            from_cache=False,
            sync_duration_ms=self._elapsed_ms(started),
            needs_full_sync=needs_full_sync,
        )

    def _collect_new_items(
        self,
        probe: LikedSongsPage,
        watermark: Optional[datetime],
        cached_ids: Set[str],
    ) -> Tuple[List[LikedSongItem], List[datetime]]:
        """
        Walk pages newest first until an item older than the watermark.

        The probe is reused as the first page. Items exactly at the watermark
        are kept only when their id is not cached yet, since several tracks
        can share one added_at second.

        Returns the new items and the parsed added_at values among them
        (fallback timestamps never move the watermarks).
        """
        synced_at = self._clock()
        new_items: List[LikedSongItem] = []
        seen: List[datetime] = []
        page = probe
        offset = 0

        while True:
            for entry in page.items:
                track_id = entry.track["id"]
                added_at = parse_added_at(entry.added_at)

                if added_at is None:
                    if track_id not in cached_ids:
                        new_items.append(to_liked_song_item(entry.track, entry.added_at, self.user_id, synced_at))
                    continue
                if watermark is not None and added_at < watermark:
                    return new_items, seen
                if watermark is not None and added_at == watermark and track_id in cached_ids:
                    continue

                new_items.append(to_liked_song_item(entry.track, entry.added_at, self.user_id, synced_at))
                seen.append(added_at)

            if not page.has_next:
                return new_items, seen
            offset += self.page_size
            logger.info("Found %s new liked songs so far (user=%s)", len(new_items), self.user_id)
            self._renew_lease()
            page = self._fetch_page(offset)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_page(self, offset: int) -> LikedSongsPage:
        return retry_spotify_call(
            lambda: self.fetcher.fetch_page(offset, self.page_size),
            f"Fetch liked songs (offset={offset})",
            self.page_retry,
            sleep=self.sleep,
        )

    def _with_lease(self, operation: Callable[[], Any]) -> Any:
        if not self.lease_store.acquire(self.user_id, self.holder_id, self.lease_seconds):
            raise SyncInProgressError(self.user_id)
        try:
            return operation()
        finally:
            self.lease_store.release(self.user_id, self.holder_id)

    def _renew_lease(self) -> None:
        """Push the lease expiry forward; raise if another worker took it over."""
        if not self.lease_store.acquire(self.user_id, self.holder_id, self.lease_seconds):
            logger.warning("Lost liked songs sync lease for user %s", self.user_id)
            raise SyncInProgressError(self.user_id)

    def _mark_syncing(self, metadata: Optional[LikedSongsMetadata]) -> None:
        base = metadata or LikedSongsMetadata(user_id=self.user_id)
        self.store.put_metadata(base.model_copy(update={"sync_status": "syncing"}))

    def _mark_error(self, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        logger.error("Liked songs sync failed for user %s: %s", self.user_id, message, exc_info=True)
        try:
            current = self.store.get_metadata(self.user_id) or LikedSongsMetadata(user_id=self.user_id)
            self.store.put_metadata(current.model_copy(update={"sync_status": "error", "last_error": message}))
        except Exception as write_error:
            logger.error("Failed to record sync error for user %s: %s", self.user_id, write_error)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
