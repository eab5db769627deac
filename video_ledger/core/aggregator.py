"""
Ledger aggregation.

Answers cost and ROI queries by folding the stored cost events together
with each video's revenue record. Nothing here is cached or written back;
every answer is computed from the full history on read.
"""

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..storage.models import (
    BUCKETS,
    CATEGORY_BUCKETS,
    CostEvent,
    VideoLedgerRecord,
    utc_now,
)
from ..storage.repository import LedgerRepository


class LedgerNotFoundError(LookupError):
    """Raised at the API boundary when a video has neither costs nor a record."""

    def __init__(self, video_id: str):
        super().__init__(f"Video not found: {video_id}")
        self.video_id = video_id


@dataclass(frozen=True)
class CostBuckets:
    """Per-bucket cost totals for one video."""
    llm_total: float = 0.0
    tts_total: float = 0.0
    media_total: float = 0.0
    image_total: float = 0.0
    storage_total: float = 0.0
    other: float = 0.0
    total: float = 0.0

    @classmethod
    def from_events(cls, events: Iterable[CostEvent]) -> "CostBuckets":
        by_bucket: Dict[str, List[float]] = {bucket: [] for bucket in BUCKETS}
        for event in events:
            by_bucket[CATEGORY_BUCKETS[event.category]].append(event.cost_usd)
        sums = {bucket: math.fsum(costs) for bucket, costs in by_bucket.items()}
        return cls(
            llm_total=sums["llm"],
            tts_total=sums["tts"],
            media_total=sums["media"],
            image_total=sums["image"],
            storage_total=sums["storage"],
            other=sums["other"],
            total=math.fsum(sums.values()),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "llmTotal": self.llm_total,
            "ttsTotal": self.tts_total,
            "mediaTotal": self.media_total,
            "imageTotal": self.image_total,
            "storageTotal": self.storage_total,
            "other": self.other,
            "total": self.total,
        }


def roi_percent(total: float, revenue: Optional[float]) -> Optional[float]:
    """(revenue - total) / total * 100; None if revenue is unknown or nothing was spent."""
    if revenue is None or total == 0:
        return None
    return round((revenue - total) / total * 100, 2)


def profit_usd(total: float, revenue: Optional[float]) -> Optional[float]:
    if revenue is None:
        return None
    return revenue - total


def cost_per_view(total: float, views: Optional[int]) -> Optional[float]:
    if not views:
        return None
    return round(total / views, 6)


@dataclass(frozen=True)
class VideoCostBreakdown:
    """Derived cost and ROI view of a single video."""
    video_id: str
    channel_id: str
    costs: CostBuckets
    events: List[CostEvent]
    revenue_usd: Optional[float]
    views: Optional[int]
    roi_percent: Optional[float]
    profit_usd: Optional[float]
    cost_per_view: Optional[float]
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "videoId": self.video_id,
            "channelId": self.channel_id,
            "costs": self.costs.to_dict(),
            "events": [event.to_dict() for event in self.events],
            "revenueUsd": self.revenue_usd,
            "views": self.views,
            "roiPercent": self.roi_percent,
            "profitUsd": self.profit_usd,
            "costPerView": self.cost_per_view,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class RankedVideo:
    video_id: str
    amount_usd: float


@dataclass(frozen=True)
class ChannelCostSummary:
    """Derived cost, revenue and ROI summary of a channel over a trailing window."""
    channel_id: str
    period_days: int
    total_cost_usd: float
    total_revenue_usd: float
    total_profit_usd: float
    avg_cost_per_video: float
    avg_revenue_per_video: float
    avg_roi_percent: Optional[float]
    video_count: int
    breakdown_by_category: Dict[str, float]
    breakdown_by_provider: Dict[str, float]
    most_expensive_videos: List[RankedVideo]
    most_profitable_videos: List[RankedVideo]
    generated_at: datetime
    unpriced_events: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "periodDays": self.period_days,
            "totalCostUsd": self.total_cost_usd,
            "totalRevenueUsd": self.total_revenue_usd,
            "totalProfitUsd": self.total_profit_usd,
            "avgCostPerVideo": self.avg_cost_per_video,
            "avgRevenuePerVideo": self.avg_revenue_per_video,
            "avgRoiPercent": self.avg_roi_percent,
            "videoCount": self.video_count,
            "breakdownByCategory": dict(self.breakdown_by_category),
            "breakdownByProvider": dict(self.breakdown_by_provider),
            "mostExpensiveVideos": [
                {"videoId": v.video_id, "costUsd": v.amount_usd} for v in self.most_expensive_videos
            ],
            "mostProfitableVideos": [
                {"videoId": v.video_id, "profitUsd": v.amount_usd} for v in self.most_profitable_videos
            ],
            "unpricedEvents": self.unpriced_events,
            "generatedAt": self.generated_at.isoformat(),
        }


@dataclass
class _VideoFold:
    costs: List[float] = field(default_factory=list)
    record: Optional[VideoLedgerRecord] = None

    @property
    def total(self) -> float:
        return math.fsum(self.costs)

    @property
    def revenue(self) -> Optional[float]:
        return self.record.revenue_usd if self.record else None


class LedgerAggregator:
    """Read-side component computing breakdowns and summaries on demand."""

    def __init__(self, repository: LedgerRepository, clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.clock = clock

    def get_video_cost_breakdown(self, video_id: str) -> Optional[VideoCostBreakdown]:
        """Sum a video's cost events into buckets and join its revenue record.

        Returns:
            The breakdown, or None if the video has no cost events and no
            ledger record
        """
        events = self.repository.fetch_cost_events(video_id=video_id)
        record = self.repository.get_ledger_record(video_id)
        if not events and record is None:
            return None

        costs = CostBuckets.from_events(events)
        revenue = record.revenue_usd if record else None
        views = record.views if record else None
        channel_id = record.channel_id if record else events[0].channel_id

        updated_candidates = [e.created_at for e in events]
        if record:
            updated_candidates.append(record.updated_at)

        return VideoCostBreakdown(
            video_id=video_id,
            channel_id=channel_id,
            costs=costs,
            events=events,
            revenue_usd=revenue,
            views=views,
            roi_percent=roi_percent(costs.total, revenue),
            profit_usd=profit_usd(costs.total, revenue),
            cost_per_view=cost_per_view(costs.total, views),
            updated_at=max(updated_candidates),
        )

    def get_channel_cost_summary(
        self,
        channel_id: str,
        days: int = 30,
        now: Optional[datetime] = None,
        top_n: int = 5,
    ) -> ChannelCostSummary:
        """Aggregate every video of a channel active within the last ``days`` days.

        A video is in scope when it has a cost event or a revenue update in
        ``[now - days, now]``. Its cost is the sum of its in-window events.

        Raises:
            ValueError: If ``days`` is less than 1
        """
        if days < 1:
            raise ValueError("days must be >= 1")
        now = now or self.clock()
        since = now - timedelta(days=days)

        events = self.repository.fetch_cost_events(channel_id=channel_id, since=since, until=now)
        records = self.repository.fetch_ledger_records(channel_id=channel_id, since=since, until=now)

        videos: Dict[str, _VideoFold] = defaultdict(_VideoFold)
        by_category: Dict[str, List[float]] = defaultdict(list)
        by_provider: Dict[str, List[float]] = defaultdict(list)
        unpriced = 0
        for event in events:
            videos[event.video_id].costs.append(event.cost_usd)
            by_category[event.category.value].append(event.cost_usd)
            by_provider[event.provider].append(event.cost_usd)
            if event.price_missing:
                unpriced += 1

        for record in records:
            videos[record.video_id].record = record
        # Videos with in-window costs but an older revenue update
        missing = [vid for vid, fold in videos.items() if fold.record is None]
        for record in self.repository.fetch_ledger_records(video_ids=missing):
            if record.channel_id == channel_id:
                videos[record.video_id].record = record

        totals = {vid: fold.total for vid, fold in videos.items()}
        total_cost = math.fsum(totals.values())
        total_revenue = math.fsum(fold.revenue or 0.0 for fold in videos.values())
        video_count = len(videos)

        rois = [
            roi for roi in (roi_percent(totals[vid], fold.revenue) for vid, fold in videos.items())
            if roi is not None
        ]

        most_expensive = sorted(
            (RankedVideo(vid, total) for vid, total in totals.items()),
            key=lambda v: (-v.amount_usd, v.video_id),
        )[:top_n]
        most_profitable = sorted(
            (
                RankedVideo(vid, fold.revenue - totals[vid])
                for vid, fold in videos.items()
                if fold.revenue is not None
            ),
            key=lambda v: (-v.amount_usd, v.video_id),
        )[:top_n]

        return ChannelCostSummary(
            channel_id=channel_id,
            period_days=days,
            total_cost_usd=total_cost,
            total_revenue_usd=total_revenue,
            total_profit_usd=total_revenue - total_cost,
            avg_cost_per_video=total_cost / video_count if video_count else 0.0,
            avg_revenue_per_video=total_revenue / video_count if video_count else 0.0,
            avg_roi_percent=round(math.fsum(rois) / len(rois), 2) if rois else None,
            video_count=video_count,
            breakdown_by_category={k: math.fsum(v) for k, v in sorted(by_category.items())},
            breakdown_by_provider={k: math.fsum(v) for k, v in sorted(by_provider.items())},
            most_expensive_videos=most_expensive,
            most_profitable_videos=most_profitable,
            generated_at=now,
            unpriced_events=unpriced,
        )
