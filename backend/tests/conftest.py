import os
import sys
import importlib
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Make `tunetriage` importable when running tests from repo root
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Use a temp-friendly default DB path and no file logging for imports
os.environ.setdefault("TUNETRIAGE_DB_PATH", str(Path(tempfile.gettempdir()) / "tunetriage_test.db"))
os.environ.setdefault("LOG_FILE_ENABLED", "false")

from spotipy.exceptions import SpotifyException

BASE_TIME = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def make_track(track_id: str, name: str = None) -> dict:
    return {
        "id": track_id,
        "uri": f"spotify:track:{track_id}",
        "name": name or f"Song {track_id}",
        "duration_ms": 180000,
        "popularity": 42,
        "artists": [{"id": f"artist-{track_id}", "name": f"Artist {track_id}", "uri": f"spotify:artist:artist-{track_id}"}],
        "album": {"id": f"album-{track_id}", "name": f"Album {track_id}", "uri": f"spotify:album:album-{track_id}"},
    }


class FakeSpotifyClient:
    """
    In-memory stand-in for spotipy.Spotify.

    Holds the library newest first as (track, added_at) pairs and records
    every call so tests can count upstream requests.
    """

    def __init__(self, library=None, user_id="user1"):
        self.library = list(library or [])
        self.user_id = user_id
        self.calls = []
        # offset -> errors raised (in order) before that page is served
        self.page_failures = {}
        self.contains_failures = []

    @classmethod
    def with_tracks(cls, count: int, start: datetime = BASE_TIME, prefix: str = "t", **kwargs):
        """count tracks, newest first, one minute apart."""
        library = [
            (make_track(f"{prefix}{i}"), iso(start - timedelta(minutes=i)))
            for i in range(count)
        ]
        return cls(library, **kwargs)

    def like(self, track_id: str, added_at: datetime):
        self.library.insert(0, (make_track(track_id), iso(added_at)))

    def unlike(self, track_id: str):
        self.library = [entry for entry in self.library if entry[0]["id"] != track_id]

    def current_user(self):
        self.calls.append(("current_user",))
        return {"id": self.user_id}

    def current_user_saved_tracks(self, limit=20, offset=0, market=None):
        self.calls.append(("saved_tracks", offset, limit))
        failures = self.page_failures.get(offset)
        if failures:
            raise failures.pop(0)
        window = self.library[offset:offset + limit]
        has_next = offset + limit < len(self.library)
        return {
            "items": [{"added_at": added_at, "track": track} for track, added_at in window],
            "total": len(self.library),
            "offset": offset,
            "limit": limit,
            "next": f"https://api.spotify.com/v1/me/tracks?offset={offset + limit}" if has_next else None,
        }

    def current_user_saved_tracks_contains(self, tracks=None):
        self.calls.append(("contains", list(tracks)))
        if self.contains_failures:
            raise self.contains_failures.pop(0)
        saved = {track["id"] for track, _ in self.library}
        return [track_id in saved for track_id in tracks]

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


def spotify_error(status: int, headers=None) -> SpotifyException:
    return SpotifyException(status, -1, f"HTTP {status}", headers=headers)


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Use a temporary SQLite file so tests do not touch the real /data DB."""
    new_db = tmp_path / "test.db"
    monkeypatch.setenv("TUNETRIAGE_DB_PATH", str(new_db))
    # Reload modules so they pick up the new DB path
    import tunetriage.db.database as db_module
    import tunetriage.db.liked_songs as liked_songs_module
    import tunetriage.db.sync_lease as lease_module

    importlib.reload(db_module)
    importlib.reload(liked_songs_module)
    importlib.reload(lease_module)
    db_module.init_db()
    yield new_db

