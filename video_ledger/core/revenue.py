"""
Revenue updates.

Attaches externally sourced monetization data to a video's ledger record.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from ..storage.models import VideoLedgerRecord, utc_now
from ..storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


class RevenueUpdater:
    """Upserts revenue and views, last write wins. Cost events are never touched."""

    def __init__(
        self,
        repository: LedgerRepository,
        default_channel_id: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.default_channel_id = default_channel_id
        self.clock = clock

    def update_revenue(
        self,
        video_id: str,
        revenue_usd: Optional[float],
        views: Optional[int],
        channel_id: Optional[str] = None,
    ) -> VideoLedgerRecord:
        """Overwrite the revenue and view counts for a video.

        Creates the ledger record if the video has not been seen yet.

        Raises:
            ValueError: If the video id is empty or a figure is negative
        """
        if not video_id:
            raise ValueError("video_id is required")
        if revenue_usd is not None and revenue_usd < 0:
            raise ValueError("revenue_usd must be >= 0")
        if views is not None and views < 0:
            raise ValueError("views must be >= 0")

        record = self.repository.upsert_revenue(
            video_id,
            revenue_usd,
            views,
            updated_at=self.clock(),
            channel_id=channel_id,
            default_channel_id=self.default_channel_id,
        )
        logger.info("Video revenue updated video=%s revenue=%s views=%s", video_id, revenue_usd, views)
        return record
