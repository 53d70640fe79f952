"""
Data Models and Schemas

This module defines the Pydantic models used by the liked songs cache, both for
persisted records and for values passed between the sync components.

Classes:
    ArtistSimple / AlbumSimple / Track: Display representation of a cached track
    LikedSongItem: One cached liked song for a user
    LikedSongsMetadata: Per-user sync state ("table of contents" of the cache)
    SavedTrackItem / LikedSongsPage: One page of the upstream saved-tracks listing
    ChangeDetectionResult: Drift classification from the first-page probe
    RemovalDetectionResult: Outcome of a removal sweep
    SyncOptions / SyncResult: Input and output of a sync
    SyncLease: Per-user sync lease
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timedelta


SyncStatus = Literal["never_synced", "syncing", "synced", "error"]
ChangeType = Literal["none", "additions", "removals", "additions_and_removals", "unknown"]
RemovalDetectionStatus = Literal["completed", "needs_full_sync", "no_cached_tracks"]
SyncType = Literal["full", "incremental", "cached"]


class ArtistSimple(BaseModel):
    """
    Simplified Artist Information

    Attributes:
        id: Spotify artist ID
        name: Artist name
        uri: Spotify URI
    """
    id: str
    name: str
    uri: str


class AlbumSimple(BaseModel):
    """
    Simplified Album Information

    Attributes:
        id: Spotify album ID
        name: Album name
        uri: Spotify URI
    """
    id: str
    name: str
    uri: str


class Track(BaseModel):
    """
    Track rebuilt from the liked songs cache

    Mirrors the subset of the Spotify track object that the cache keeps, so
    callers can treat cached and live tracks the same way.
    """
    id: str
    uri: str
    name: str
    duration_ms: int
    popularity: int = 0
    artists: List[ArtistSimple] = []
    album: AlbumSimple
    added_at: Optional[datetime] = None


class LikedSongItem(BaseModel):
    """
    Cached Liked Song

    One row per (user_id, track_id). Content is keyed by track_id and only
    synced_at is refreshed on rewrite.
    """
    user_id: str
    track_id: str
    track_uri: str
    track_name: str
    artist_name: str
    artist_id: str
    album_name: str
    album_id: str
    added_at: datetime
    synced_at: datetime
    duration_ms: int = 0
    popularity: int = 0


class LikedSongsMetadata(BaseModel):
    """
    Liked Songs Sync Metadata

    Attributes:
        total_tracks: Last known size of the remote collection
        last_synced_at: When the last sync (of any kind) finished or started
        last_full_sync_at: When the last full resync finished
        most_recent_added_at: Incremental sync watermark
        oldest_added_at: Oldest added_at in the cached window
        sync_version: Bumped on every successful sync
        sync_status: never_synced / syncing / synced / error
        last_error: Message of the last failed sync, cleared on success
        first_page_track_ids: Snapshot of the first page used for churn detection
        needs_full_sync: Set when a removal sweep could not confirm removals
    """
    user_id: str
    total_tracks: int = 0
    last_synced_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    most_recent_added_at: Optional[datetime] = None
    oldest_added_at: Optional[datetime] = None
    sync_version: int = 0
    sync_status: SyncStatus = "never_synced"
    last_error: Optional[str] = None
    first_page_track_ids: List[str] = []
    needs_full_sync: bool = False


class SavedTrackItem(BaseModel):
    """A raw saved-track entry: the Spotify track object and its added_at string."""
    track: Dict[str, Any]
    added_at: Optional[str] = None


class LikedSongsPage(BaseModel):
    items: List[SavedTrackItem] = []
    total: int
    has_next: bool


class ChangeDetectionResult(BaseModel):
    change_type: ChangeType
    estimated_new_tracks: int = 0
    estimated_removals: int = 0
    current_total: Optional[int] = None
    current_first_page_ids: List[str] = []
    removals_in_first_page: Optional[int] = None


class RemovalDetectionResult(BaseModel):
    status: RemovalDetectionStatus
    removals_found: int = 0
    tracks_checked: int = 0
    removed_track_ids: List[str] = []
    duration_ms: int = 0


class SyncOptions(BaseModel):
    """
    Sync Options

    Attributes:
        force_refresh: Always do a full resync
        max_age: Cache age after which a full resync is forced (defaults to settings)
        incremental_only: Apply additions but skip the removal sweep
    """
    force_refresh: bool = False
    max_age: Optional[timedelta] = None
    incremental_only: bool = False


class SyncResult(BaseModel):
    type: SyncType
    tracks_added: int = 0
    tracks_removed: int = 0
    total_tracks: int = 0
    from_cache: bool = False
    sync_duration_ms: int = 0
    needs_full_sync: bool = False


class SyncLease(BaseModel):
    user_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime


class ErrorResponse(BaseModel):
    """
    Standard Error Response

    Attributes:
        error: Error type or code
        message: Human-readable error message
        detail: Additional error details (optional)
    """
    error: str
    message: str
    detail: Optional[str] = Field(None, description="Additional error context")
