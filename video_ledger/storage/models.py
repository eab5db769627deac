"""
Data models for storage layer.

Defines ledger entities and the enumerations they are keyed by.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class CostCategory(str, Enum):
    """Kind of billable usage a cost event represents."""
    LLM_INPUT = "llm_input"
    LLM_OUTPUT = "llm_output"
    TTS_CHARS = "tts_chars"
    MEDIA_MINUTES = "media_minutes"
    IMAGE_GENERATION = "image_generation"
    STORAGE = "storage"
    API_QUOTA = "api_quota"


class CostProvider(str, Enum):
    """Providers with a known price in the default pricing table."""
    GEMINI_FLASH = "gemini-flash"
    GEMINI_FLASH_LITE = "gemini-flash-lite"
    DEEPSEEK_V3 = "deepseek-v3"
    GOOGLE_TTS = "google-tts"
    FISH_AUDIO = "fish-audio"
    KOKORO_HF = "kokoro-hf"
    HEYGEN = "heygen"
    IMAGEN4_FAST = "imagen4-fast"
    IMAGEN4_STANDARD = "imagen4-standard"
    IMAGEN4_ULTRA = "imagen4-ultra"
    GPT_IMAGE_1_5 = "gpt-image-1.5"
    GCS = "gcs"
    YOUTUBE_API = "youtube-api"


# Breakdown bucket each category is summed into
CATEGORY_BUCKETS: Dict[CostCategory, str] = {
    CostCategory.LLM_INPUT: "llm",
    CostCategory.LLM_OUTPUT: "llm",
    CostCategory.TTS_CHARS: "tts",
    CostCategory.MEDIA_MINUTES: "media",
    CostCategory.IMAGE_GENERATION: "image",
    CostCategory.STORAGE: "storage",
    CostCategory.API_QUOTA: "other",
}

BUCKETS = ("llm", "tts", "media", "image", "storage", "other")


@dataclass(frozen=True)
class CostEvent:
    """Immutable, priced record of billable usage for one video.

    Append-only: corrections are recorded as compensating events with
    negative units and cost, never as edits of an existing row.
    """
    id: str
    video_id: str
    channel_id: str
    category: CostCategory
    provider: str
    units: float
    unit_label: str
    cost_usd: float
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_entry_id: Optional[str] = None
    source_seq: Optional[int] = None
    price_missing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "videoId": self.video_id,
            "channelId": self.channel_id,
            "category": self.category.value,
            "provider": self.provider,
            "units": self.units,
            "unitLabel": self.unit_label,
            "costUsd": self.cost_usd,
            "metadata": dict(self.metadata),
            "priceMissing": self.price_missing,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class VideoLedgerRecord:
    """Mutable per-video monetization record (last write wins)."""
    video_id: str
    channel_id: str
    revenue_usd: Optional[float]
    views: Optional[int]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "videoId": self.video_id,
            "channelId": self.channel_id,
            "revenueUsd": self.revenue_usd,
            "views": self.views,
            "updatedAt": self.updated_at.isoformat(),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
