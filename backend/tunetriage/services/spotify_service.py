"""
Spotify Service Module

This module provides a thin, explicitly constructed wrapper around the Spotipy
client for the endpoints the liked songs cache needs.

Classes:
    SpotifyService: Owns one Spotipy client per user session

Functions:
    get_spotify_service: Dependency injection function for FastAPI routes
    clear_user_id_cache: Forget the token to user id mapping
"""

import requests
import spotipy
from typing import List, Optional, Dict, Any
import logging
from fastapi import Request

logger = logging.getLogger(__name__)

# Spotify caps "check user's saved tracks" at 50 ids per request
SAVED_TRACKS_CONTAINS_LIMIT = 50

# Access token -> Spotify user id, shared across per-request services
_USER_IDS_BY_TOKEN: Dict[str, str] = {}
_USER_IDS_BY_TOKEN_MAX = 1024


def clear_user_id_cache() -> None:
    _USER_IDS_BY_TOKEN.clear()


class SpotifyService:
    """
    Spotify API Service

    One instance per user session. The underlying Spotipy client is built on
    first use and kept until reset_client() is called, so tests and callers
    can inject their own client instead of relying on module-level state.

    Spotipy's urllib3 retry adapter is not mounted; retries are handled by
    tunetriage.services.retry so Retry-After and backoff stay in one place.

    Methods:
        get_client: Get (and memoize) the Spotify client
        reset_client: Drop the memoized client and user id
        get_current_user_id: Fetch (and memoize) the current user's ID
        get_saved_tracks: Fetch one page of the user's saved tracks
        saved_tracks_contain: Check which track IDs are still saved
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        client: Optional[spotipy.Spotify] = None,
        requests_timeout: int = 10,
    ):
        """
        Initialize Spotify Service

        Args:
            access_token: OAuth access token for the user
            client: Pre-built Spotipy client (takes precedence over access_token)
            requests_timeout: Per-request timeout in seconds
        """
        self.access_token = access_token
        self.requests_timeout = requests_timeout
        self._client: Optional[spotipy.Spotify] = client
        self._user_id: Optional[str] = None

    def get_client(self) -> spotipy.Spotify:
        """
        Get authenticated Spotify client

        Returns:
            spotipy.Spotify: Authenticated Spotify client

        Raises:
            ValueError: If no access token is available
        """
        if self._client is None:
            if not self.access_token:
                raise ValueError("No access token available. Please authenticate first.")
            # A plain session has no urllib3 status retries, so 429/503 surface
            # as SpotifyException with the response headers (Retry-After)
            self._client = spotipy.Spotify(
                auth=self.access_token,
                requests_session=requests.Session(),
                requests_timeout=self.requests_timeout,
            )
        return self._client

    def reset_client(self) -> None:
        """Forget the memoized client and user id (e.g. after a token change)."""
        self._client = None
        self._user_id = None

    def get_current_user_id(self) -> str:
        """
        Current user's ID.

        Resolved once per access token and remembered process-wide, so
        cache reads do not cost a Spotify call on every request.
        """
        if self._user_id is None and self.access_token:
            self._user_id = _USER_IDS_BY_TOKEN.get(self.access_token)
        if self._user_id is None:
            user = self.get_client().current_user()
            self._user_id = user["id"]
            if self.access_token:
                if len(_USER_IDS_BY_TOKEN) >= _USER_IDS_BY_TOKEN_MAX:
                    _USER_IDS_BY_TOKEN.pop(next(iter(_USER_IDS_BY_TOKEN)), None)
                _USER_IDS_BY_TOKEN[self.access_token] = self._user_id
        return self._user_id

    def get_saved_tracks(self, offset: int = 0, limit: int = 50) -> Dict[str, Any]:
        """
        Fetch one page of the current user's saved tracks (newest first).

        Args:
            offset: Starting position (0-based)
            limit: Page size (Spotify max 50)

        Returns:
            Raw Spotify paging object with items, total and next
        """
        return self.get_client().current_user_saved_tracks(limit=limit, offset=offset)

    def saved_tracks_contain(self, track_ids: List[str]) -> List[bool]:
        """
        Check whether each track is still in the user's saved tracks.

        Returns:
            List of booleans parallel to track_ids
        """
        results: List[bool] = []
        client = self.get_client()
        for i in range(0, len(track_ids), SAVED_TRACKS_CONTAINS_LIMIT):
            chunk = track_ids[i:i + SAVED_TRACKS_CONTAINS_LIMIT]
            results.extend(bool(flag) for flag in client.current_user_saved_tracks_contains(tracks=chunk))
        return results


def get_spotify_service(request: Request) -> SpotifyService:
    """
    Dependency injection function for FastAPI routes

    Builds a SpotifyService from the request's bearer token.

    Example:
        @router.get("/liked-songs")
        def list_liked_songs(
            spotify: SpotifyService = Depends(get_spotify_service)
        ):
            ...
    """
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    access_token = token.strip() if scheme.lower() == "bearer" else None
    return SpotifyService(access_token=access_token or None)
