"""
Liked songs cache routes for TuneTriage.

Provides endpoints for syncing, reading and clearing the current user's
liked songs cache. Endpoints are plain functions so the blocking Spotify
calls run in the framework threadpool.
"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional, TypeVar

import requests
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from spotipy.exceptions import SpotifyException

from tunetriage.models.schemas import LikedSongsMetadata, SyncOptions, SyncResult, Track
from tunetriage.services.errors import SyncInProgressError, UnexpectedResponseError
from tunetriage.services.liked_songs_cache import LikedSongsCache
from tunetriage.services.spotify_service import SpotifyService, get_spotify_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/liked-songs", tags=["liked-songs"])

T = TypeVar("T")


def require_auth(spotify: SpotifyService = Depends(get_spotify_service)) -> SpotifyService:
    """Authentication dependency - validates a bearer token was supplied."""
    if not spotify.access_token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide a Spotify bearer token."
        )
    return spotify


def get_liked_songs_cache(spotify: SpotifyService = Depends(require_auth)) -> LikedSongsCache:
    """Build the liked songs cache for the authenticated user."""
    try:
        user_id = spotify.get_current_user_id()
    except SpotifyException as e:
        if e.http_status == 401:
            raise HTTPException(status_code=401, detail="Spotify rejected the access token") from e
        logger.error("Failed to resolve Spotify user: %s", e)
        raise HTTPException(status_code=502, detail="Failed to reach Spotify") from e
    except requests.exceptions.RequestException as e:
        logger.error("Failed to resolve Spotify user: %s", e)
        raise HTTPException(status_code=502, detail="Failed to reach Spotify") from e
    return LikedSongsCache(user_id, spotify)


def _run(operation: Callable[[], T], action: str) -> T:
    """Run a cache operation, mapping failures to HTTP errors."""
    try:
        return operation()
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except SpotifyException as e:
        logger.error("Spotify error while %s: %s", action, e)
        if e.http_status == 401:
            raise HTTPException(status_code=401, detail="Spotify rejected the access token") from e
        raise HTTPException(status_code=502, detail=f"Spotify request failed: {e.msg or e}") from e
    except (UnexpectedResponseError, requests.exceptions.RequestException, ConnectionError, TimeoutError) as e:
        logger.error("Upstream failure while %s: %s", action, e)
        raise HTTPException(status_code=502, detail=f"Spotify request failed: {e}") from e


class SyncRequest(BaseModel):
    """Request model for triggering a liked songs sync."""
    force_refresh: bool = False
    max_age_seconds: Optional[int] = Field(default=None, ge=0)
    incremental_only: bool = False

    def to_options(self) -> SyncOptions:
        return SyncOptions(
            force_refresh=self.force_refresh,
            max_age=timedelta(seconds=self.max_age_seconds) if self.max_age_seconds is not None else None,
            incremental_only=self.incremental_only,
        )


class ClearCacheResponse(BaseModel):
    removed: int


@router.post("/sync", response_model=SyncResult)
def sync_liked_songs(
    payload: Optional[SyncRequest] = None,
    cache: LikedSongsCache = Depends(get_liked_songs_cache),
):
    """
    Sync the liked songs cache.

    Returns the sync outcome: cached (nothing changed), incremental or full.
    """
    options = (payload or SyncRequest()).to_options()
    return _run(lambda: cache.sync_liked_songs(options), "syncing liked songs")


@router.get("", response_model=List[Track])
def list_liked_songs(
    refresh: bool = Query(False, description="Sync before reading"),
    cache: LikedSongsCache = Depends(get_liked_songs_cache),
):
    """Cached liked songs, newest first."""
    if refresh:
        return _run(cache.get_liked_songs_with_cache, "refreshing liked songs")
    return cache.get_cached_liked_songs()


@router.get("/status", response_model=LikedSongsMetadata)
def get_liked_songs_status(cache: LikedSongsCache = Depends(get_liked_songs_cache)):
    metadata = cache.get_status()
    if metadata is None:
        raise HTTPException(status_code=404, detail="Liked songs have never been synced")
    return metadata


@router.delete("/cache", response_model=ClearCacheResponse)
def clear_liked_songs_cache(cache: LikedSongsCache = Depends(get_liked_songs_cache)):
    removed = _run(cache.clear_cache, "clearing liked songs cache")
    return ClearCacheResponse(removed=removed)
