"""
Exceptions raised by the liked songs cache.
"""


class LikedSongsSyncError(Exception):
    """Base class for liked songs sync failures."""


class SyncInProgressError(LikedSongsSyncError):
    """Another worker holds a live sync lease for this user."""

    def __init__(self, user_id: str):
        super().__init__(f"A liked songs sync is already running for user {user_id}")
        self.user_id = user_id


class UnexpectedResponseError(LikedSongsSyncError):
    """Spotify returned a response that does not look like a saved-tracks page."""
