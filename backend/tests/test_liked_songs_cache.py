from datetime import datetime, timedelta, timezone

import pytest

from conftest import BASE_TIME, FakeSpotifyClient, make_track, spotify_error
from tunetriage.models.schemas import SyncOptions
from tunetriage.services.errors import SyncInProgressError
from tunetriage.services.liked_songs_cache import LikedSongsCache, to_liked_song_item, to_track
from tunetriage.services.retry import RetryConfig
from tunetriage.services.spotify_service import SpotifyService

FAST_RETRY = RetryConfig(max_retries=3, initial_delay_ms=1, max_delay_ms=1)


class RecordingStore:
    """Proxy that records calls to the named (mutating) functions."""

    def __init__(self, target, mutations):
        self._target = target
        self._mutations = set(mutations)
        self.mutations = []

    def __getattr__(self, name):
        attr = getattr(self._target, name)
        if name not in self._mutations:
            return attr

        def wrapper(*args, **kwargs):
            self.mutations.append(name)
            return attr(*args, **kwargs)

        return wrapper


class Clock:
    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self):
        return self.now


def _modules():
    from tunetriage.db import liked_songs, sync_lease
    return liked_songs, sync_lease


def _cache(client, store=None, lease_store=None, **kwargs):
    liked_songs, sync_lease = _modules()
    return LikedSongsCache(
        "user1",
        SpotifyService(client=client),
        store=store or liked_songs,
        lease_store=lease_store or sync_lease,
        page_size=50,
        retry_config=FAST_RETRY,
        sleep=lambda _: None,
        **kwargs,
    )


def _synced(count):
    """A client with count tracks and a cache that has fully synced them."""
    client = FakeSpotifyClient.with_tracks(count)
    cache = _cache(client)
    cache.sync_liked_songs()
    client.calls.clear()
    return client, cache


# ----------------------------------------------------------------------
# Full sync
# ----------------------------------------------------------------------


def test_first_sync_is_full_and_complete(temp_db):
    store, _ = _modules()
    client = FakeSpotifyClient.with_tracks(120)

    result = _cache(client).sync_liked_songs()

    assert result.type == "full"
    assert result.from_cache is False
    assert result.tracks_added == 120
    assert result.tracks_removed == 0
    assert result.total_tracks == 120
    assert client.count("saved_tracks") == 3
    assert store.count_items("user1") == 120

    metadata = store.get_metadata("user1")
    assert metadata.total_tracks == 120
    assert metadata.sync_status == "synced"
    assert metadata.sync_version == 1
    assert metadata.last_error is None
    assert metadata.most_recent_added_at == BASE_TIME
    assert metadata.oldest_added_at == BASE_TIME - timedelta(minutes=119)
    assert metadata.first_page_track_ids == [f"t{i}" for i in range(50)]
    assert metadata.last_full_sync_at is not None


def test_full_sync_of_empty_library(temp_db):
    store, _ = _modules()
    client = FakeSpotifyClient([])
    cache = _cache(client)

    result = cache.sync_liked_songs()
    assert result.type == "full"
    assert result.total_tracks == 0

    metadata = store.get_metadata("user1")
    assert metadata.most_recent_added_at is None
    assert metadata.oldest_added_at is None

    assert cache.sync_liked_songs().type == "cached"


def test_force_refresh_reports_diff_against_previous_cache(temp_db):
    store, _ = _modules()
    client, cache = _synced(60)
    client.unlike("t10")
    client.like("n1", BASE_TIME + timedelta(minutes=1))

    result = cache.sync_liked_songs(SyncOptions(force_refresh=True))

    assert result.type == "full"
    assert result.tracks_added == 1
    assert result.tracks_removed == 1
    assert store.get_metadata("user1").sync_version == 2
    assert "t10" not in store.get_item_ids("user1")


# ----------------------------------------------------------------------
# No-op path
# ----------------------------------------------------------------------


def test_unchanged_library_serves_cache_without_writes(temp_db):
    liked_songs, sync_lease = _modules()
    client, _ = _synced(120)
    before = liked_songs.get_metadata("user1")

    store = RecordingStore(
        liked_songs,
        ["put_metadata", "batch_put_items", "replace_items", "clear_items", "delete_items_by_ids", "delete_metadata"],
    )
    lease_store = RecordingStore(sync_lease, ["acquire", "release"])
    result = _cache(client, store=store, lease_store=lease_store).sync_liked_songs()

    assert result.type == "cached"
    assert result.from_cache is True
    assert result.total_tracks == 120
    assert client.count("saved_tracks") == 1
    assert client.count("contains") == 0
    assert store.mutations == []
    assert lease_store.mutations == []
    assert liked_songs.get_metadata("user1") == before


def test_reading_cached_songs_never_calls_spotify(temp_db):
    client, cache = _synced(75)

    tracks = cache.get_cached_liked_songs()

    assert [track.id for track in tracks[:3]] == ["t0", "t1", "t2"]
    assert len(tracks) == 75
    assert client.calls == []


# ----------------------------------------------------------------------
# Incremental sync
# ----------------------------------------------------------------------


def test_incremental_fetches_only_the_new_head(temp_db):
    store, _ = _modules()
    client, cache = _synced(200)
    for i in range(3):
        client.like(f"n{i}", BASE_TIME + timedelta(minutes=i + 1))

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 3
    assert result.tracks_removed == 0
    assert result.total_tracks == 203
    assert client.count("saved_tracks") == 1
    assert client.count("contains") == 0

    metadata = store.get_metadata("user1")
    assert metadata.total_tracks == 203
    assert metadata.most_recent_added_at == BASE_TIME + timedelta(minutes=3)
    assert metadata.sync_version == 2
    assert metadata.first_page_track_ids[:4] == ["n2", "n1", "n0", "t0"]
    assert store.count_items("user1") == 203


def test_incremental_pages_until_watermark(temp_db):
    store, _ = _modules()
    client, cache = _synced(200)
    for i in range(60):
        client.like(f"n{i}", BASE_TIME + timedelta(minutes=i + 1))

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 60
    # Probe page (all new) plus the page holding the watermark boundary
    assert [call[1] for call in client.calls if call[0] == "saved_tracks"] == [0, 50]
    assert store.count_items("user1") == 260


def test_new_track_sharing_watermark_timestamp_is_not_missed(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.like("same-second", BASE_TIME)

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 1
    assert "same-second" in store.get_item_ids("user1")


def test_churn_on_first_page_runs_removal_sweep(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.unlike("t5")
    client.like("n1", BASE_TIME + timedelta(minutes=1))

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 1
    assert result.tracks_removed == 1
    assert result.needs_full_sync is False
    ids = store.get_item_ids("user1")
    assert "n1" in ids
    assert "t5" not in ids
    assert len(ids) == 120


def test_removal_outside_first_page_is_found_by_sweep(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.unlike("t70")

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 0
    assert result.tracks_removed == 1
    assert client.count("contains") == 2
    assert "t70" not in store.get_item_ids("user1")
    assert store.get_metadata("user1").total_tracks == 119


def test_unconfirmed_removals_escalate_to_full_sync(temp_db):
    store, _ = _modules()
    client, cache = _synced(300)
    client.unlike("t250")

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.needs_full_sync is True
    assert client.count("contains") == 4
    assert store.count_items("user1") == 300
    assert store.get_metadata("user1").needs_full_sync is True

    client.calls.clear()
    followup = cache.sync_liked_songs()

    assert followup.type == "full"
    assert followup.tracks_removed == 1
    assert store.count_items("user1") == 299
    assert store.get_metadata("user1").needs_full_sync is False


def test_incremental_only_skips_removal_sweep(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.unlike("t70")

    result = cache.sync_liked_songs(SyncOptions(incremental_only=True))

    assert result.type == "incremental"
    assert result.tracks_removed == 0
    assert result.total_tracks == 120
    assert client.count("contains") == 0
    assert "t70" in store.get_item_ids("user1")
    # Stored total matches the rows still cached
    assert store.get_metadata("user1").total_tracks == store.count_items("user1") == 120

    client.calls.clear()
    followup = cache.sync_liked_songs()

    assert followup.type == "incremental"
    assert followup.tracks_removed == 1
    assert "t70" not in store.get_item_ids("user1")
    assert store.get_metadata("user1").total_tracks == 119


def test_removal_sweep_skips_tracks_added_in_same_sync(temp_db):
    store, _ = _modules()
    client, cache = _synced(200)
    for i in range(210):
        client.like(f"n{i}", BASE_TIME + timedelta(minutes=i + 1))
    client.unlike("t5")

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 210
    assert result.tracks_removed == 1
    assert result.needs_full_sync is False
    # Only previously cached tracks are checked, so t5 sits in the first batch
    assert client.count("contains") == 1
    ids = store.get_item_ids("user1")
    assert "t5" not in ids
    assert len(ids) == 409


# ----------------------------------------------------------------------
# Decision rules
# ----------------------------------------------------------------------


def test_stale_cache_triggers_full_sync(temp_db):
    clock = Clock(BASE_TIME + timedelta(days=1))
    client = FakeSpotifyClient.with_tracks(60)
    cache = _cache(client, clock=clock)
    cache.sync_liked_songs()

    clock.now += timedelta(hours=25)
    assert cache.sync_liked_songs().type == "full"

    clock.now += timedelta(hours=25)
    assert cache.sync_liked_songs(SyncOptions(max_age=timedelta(hours=48))).type == "cached"


def test_abandoned_syncing_status_triggers_full_sync(temp_db):
    store, _ = _modules()
    client, cache = _synced(60)
    metadata = store.get_metadata("user1")
    store.put_metadata(metadata.model_copy(update={"sync_status": "syncing"}))

    assert cache.sync_liked_songs().type == "full"
    assert store.get_metadata("user1").sync_status == "synced"


# ----------------------------------------------------------------------
# Failures and leases
# ----------------------------------------------------------------------


def test_failed_full_sync_keeps_old_items_and_records_error(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.page_failures[50] = [spotify_error(500)]

    with pytest.raises(Exception):
        cache.sync_liked_songs(SyncOptions(force_refresh=True))

    assert store.count_items("user1") == 120
    metadata = store.get_metadata("user1")
    assert metadata.sync_status == "error"
    assert metadata.last_error
    assert metadata.sync_version == 1

    recovered = cache.sync_liked_songs()
    assert recovered.type == "full"
    assert store.get_metadata("user1").sync_status == "synced"
    assert store.get_metadata("user1").last_error is None


def test_transient_page_failures_are_retried(temp_db):
    store, _ = _modules()
    client = FakeSpotifyClient.with_tracks(120)
    client.page_failures[50] = [spotify_error(429, headers={"Retry-After": "0"}), spotify_error(503)]

    result = _cache(client).sync_liked_songs()

    assert result.type == "full"
    assert client.count("saved_tracks") == 5
    assert store.count_items("user1") == 120


def test_exhausted_retries_surface_the_error(temp_db):
    store, _ = _modules()
    client = FakeSpotifyClient.with_tracks(120)
    client.page_failures[0] = [spotify_error(503) for _ in range(3)]

    with pytest.raises(Exception) as excinfo:
        _cache(client).sync_liked_songs()

    assert excinfo.value.http_status == 503
    assert store.get_metadata("user1").sync_status == "error"
    assert store.count_items("user1") == 0


def test_sync_refused_while_another_worker_holds_lease(temp_db):
    store, sync_lease = _modules()
    client, cache = _synced(60)
    before = store.get_metadata("user1")
    assert sync_lease.acquire("user1", "other-worker", 900)

    with pytest.raises(SyncInProgressError):
        cache.sync_liked_songs(SyncOptions(force_refresh=True))

    assert store.get_metadata("user1") == before
    assert client.count("saved_tracks") == 0
    # The read-only path does not need the lease
    assert cache.sync_liked_songs().type == "cached"


def test_lease_is_released_after_sync(temp_db):
    _, sync_lease = _modules()
    client, cache = _synced(60)
    client.page_failures[0] = [spotify_error(500)]

    with pytest.raises(Exception):
        cache.sync_liked_songs(SyncOptions(force_refresh=True))

    assert sync_lease.get("user1") is None


def test_lease_is_renewed_while_paging_and_sweeping(temp_db):
    _, sync_lease = _modules()
    client = FakeSpotifyClient.with_tracks(120)
    lease = RecordingStore(sync_lease, ["acquire"])
    cache = _cache(client, lease_store=lease)

    cache.sync_liked_songs()
    # Taken once, then renewed after each of the two non-final pages
    assert lease.mutations == ["acquire"] * 3

    lease.mutations.clear()
    client.unlike("t70")
    result = cache.sync_liked_songs()

    assert result.tracks_removed == 1
    assert client.count("contains") == 2
    # Taken once, then renewed after each checked batch
    assert lease.mutations == ["acquire"] * 3


class TakeoverLease:
    """Lease store where another worker reclaims the lease on the nth acquire."""

    def __init__(self, target, takeover_at):
        self._target = target
        self._takeover_at = takeover_at
        self.acquires = 0

    def __getattr__(self, name):
        return getattr(self._target, name)

    def acquire(self, user_id, holder_id, ttl_seconds, now=None):
        self.acquires += 1
        if self.acquires == self._takeover_at:
            later = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds + 1)
            assert self._target.acquire(user_id, "other-worker", ttl_seconds, now=later)
        return self._target.acquire(user_id, holder_id, ttl_seconds, now=now)


def test_sync_stops_when_lease_is_taken_over(temp_db):
    store, sync_lease = _modules()
    client, _ = _synced(120)
    cache = _cache(client, lease_store=TakeoverLease(sync_lease, takeover_at=2))

    with pytest.raises(SyncInProgressError):
        cache.sync_liked_songs(SyncOptions(force_refresh=True))

    assert client.count("saved_tracks") == 1
    assert store.count_items("user1") == 120
    metadata = store.get_metadata("user1")
    assert metadata.sync_status != "error"
    assert metadata.last_error is None
    assert sync_lease.get("user1").holder_id == "other-worker"


# ----------------------------------------------------------------------
# Cache management and conversion
# ----------------------------------------------------------------------


def test_clear_cache(temp_db):
    client, cache = _synced(60)

    assert cache.clear_cache() == 60
    assert cache.get_status() is None
    assert cache.get_cached_liked_songs() == []


def test_get_liked_songs_with_cache_syncs_then_reads(temp_db):
    client = FakeSpotifyClient.with_tracks(70)
    cache = _cache(client)

    tracks = cache.get_liked_songs_with_cache()

    assert len(tracks) == 70
    assert tracks[0].id == "t0"
    assert cache.get_status().total_tracks == 70


def test_conversion_round_trip_preserves_fields():
    track = make_track("abc", name="Round Trip")
    item = to_liked_song_item(track, "2024-05-01T08:30:00Z", "user1")
    converted = to_track(item)

    assert converted.id == "abc"
    assert converted.uri == "spotify:track:abc"
    assert converted.name == "Round Trip"
    assert converted.duration_ms == 180000
    assert converted.popularity == 42
    assert converted.artists[0].id == "artist-abc"
    assert converted.artists[0].name == "Artist abc"
    assert converted.album.id == "album-abc"
    assert converted.album.name == "Album abc"
    assert converted.added_at == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)


def test_conversion_tolerates_sparse_tracks():
    synced_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
    item = to_liked_song_item({"id": "bare"}, "not-a-date", "user1", synced_at=synced_at)

    assert item.added_at == synced_at
    assert item.artist_name == "Unknown Artist"
    assert item.track_uri == "spotify:track:bare"
    assert item.duration_ms == 0


def test_unparsable_added_at_is_cached_without_moving_watermark(temp_db):
    store, _ = _modules()
    client, cache = _synced(120)
    client.library.insert(0, (make_track("bad-date"), "not-a-date"))

    result = cache.sync_liked_songs()

    assert result.type == "incremental"
    assert result.tracks_added == 1
    assert "bad-date" in store.get_item_ids("user1")
    assert store.get_metadata("user1").most_recent_added_at == BASE_TIME
