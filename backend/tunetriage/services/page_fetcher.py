"""
Adapter over the paginated Spotify saved-tracks endpoints.

No retries and no caching here: callers wrap each call in the retry policy.
"""

import logging
from typing import List

from tunetriage.models.schemas import LikedSongsPage, SavedTrackItem
from tunetriage.services.errors import UnexpectedResponseError
from tunetriage.services.spotify_service import SpotifyService

logger = logging.getLogger(__name__)


class LikedSongsPageFetcher:
    """Fetch liked songs pages and saved-status checks for one user."""

    def __init__(self, spotify: SpotifyService):
        self.spotify = spotify

    def fetch_page(self, offset: int, limit: int) -> LikedSongsPage:
        """
        Fetch one page of liked songs, preserving server order (newest first).

        Local files and unavailable tracks (no track object or no id) are
        skipped, but still count towards the server-reported total.

        Raises:
            UnexpectedResponseError: If the response is not a paging object
        """
        response = self.spotify.get_saved_tracks(offset=offset, limit=limit)
        if not isinstance(response, dict) or "items" not in response or "total" not in response:
            raise UnexpectedResponseError(
                f"Unexpected saved tracks response at offset {offset}: {type(response).__name__}"
            )

        items: List[SavedTrackItem] = []
        for item in response.get("items") or []:
            track = (item or {}).get("track")
            if not track or not track.get("id"):
                continue
            items.append(SavedTrackItem(track=track, added_at=item.get("added_at")))

        try:
            total = int(response["total"])
        except (TypeError, ValueError) as e:
            raise UnexpectedResponseError(f"Invalid total in saved tracks response: {response['total']!r}") from e

        return LikedSongsPage(items=items, total=total, has_next=bool(response.get("next")))

    def check_saved(self, track_ids: List[str]) -> List[bool]:
        """Saved status for each id, parallel to track_ids."""
        if not track_ids:
            return []
        flags = self.spotify.saved_tracks_contain(track_ids)
        if len(flags) != len(track_ids):
            raise UnexpectedResponseError(
                f"Saved status check returned {len(flags)} results for {len(track_ids)} tracks"
            )
        return flags
