"""
Drift classification for the liked songs cache.

Compares stored metadata with a single first-page probe. The total count
catches plain additions and removals; the first-page id snapshot catches
churn where equal numbers of tracks were liked and unliked.
"""

import logging
from typing import List, Optional

from tunetriage.models.schemas import ChangeDetectionResult, LikedSongsMetadata, LikedSongsPage

logger = logging.getLogger(__name__)


def _first_page_ids(probe: LikedSongsPage) -> List[str]:
    return [item.track["id"] for item in probe.items]


def count_missing_ids(stored_ids: Optional[List[str]], current_ids: List[str]) -> int:
    """How many stored first-page ids are absent from the current first page."""
    if not stored_ids:
        return 0
    current = set(current_ids)
    return sum(1 for track_id in stored_ids if track_id not in current)


class ChangeDetector:
    """Best-effort drift probe costing exactly one page fetch."""

    def detect(
        self,
        metadata: Optional[LikedSongsMetadata],
        probe: LikedSongsPage,
    ) -> ChangeDetectionResult:
        if metadata is None:
            return ChangeDetectionResult(change_type="unknown")

        current_total = probe.total
        current_ids = _first_page_ids(probe)
        diff = current_total - metadata.total_tracks

        if diff > 0:
            return ChangeDetectionResult(
                change_type="additions",
                estimated_new_tracks=diff,
                current_total=current_total,
                current_first_page_ids=current_ids,
            )

        if diff < 0:
            # Approximate: additions can also push stored ids off the first page
            return ChangeDetectionResult(
                change_type="removals",
                estimated_removals=abs(diff),
                current_total=current_total,
                current_first_page_ids=current_ids,
                removals_in_first_page=count_missing_ids(metadata.first_page_track_ids, current_ids),
            )

        stored_ids = metadata.first_page_track_ids or []
        if stored_ids and stored_ids != current_ids:
            missing = count_missing_ids(stored_ids, current_ids)
            logger.debug("First page changed with same total (%s stored ids missing)", missing)
            return ChangeDetectionResult(
                change_type="additions_and_removals",
                estimated_new_tracks=missing,
                estimated_removals=missing,
                current_total=current_total,
                current_first_page_ids=current_ids,
                removals_in_first_page=missing,
            )

        return ChangeDetectionResult(
            change_type="none",
            current_total=current_total,
            current_first_page_ids=current_ids,
        )
