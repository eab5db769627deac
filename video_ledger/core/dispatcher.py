"""
Event dispatching.

Routes pipeline envelopes to the cost recorder or the revenue updater.
Unknown producers can never break the consumer: anything unrecognized or
malformed is reported as processed so the loop acknowledges it.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .events import (
    ANALYTICS_REVENUE_UPDATED,
    LLM_TOKENS_USED,
    MEDIA_RENDER_COMPLETED,
    THUMBNAIL_GENERATED,
    TTS_SYNTHESIS_COMPLETED,
    AnalyticsRevenueUpdated,
    LlmTokensUsed,
    MalformedPayloadError,
    MediaRenderCompleted,
    ThumbnailGenerated,
    TtsSynthesisCompleted,
    decode_payload,
    parse_event,
)
from .recorder import CostRecorder
from .revenue import RevenueUpdater
from ..storage.models import CostCategory

logger = logging.getLogger(__name__)


class DispatchOutcome(Enum):
    """How an envelope was disposed of. Every outcome is acknowledgeable."""
    HANDLED = "handled"
    NO_TYPE = "no_type"
    UNKNOWN_TYPE = "unknown_type"
    MISSING_VIDEO_ID = "missing_video_id"
    MALFORMED = "malformed"


class _EntryWriter:
    """Records the cost events of one log entry with increasing sequence numbers."""

    def __init__(self, recorder: CostRecorder, entry_id: Optional[str]):
        self.recorder = recorder
        self.entry_id = entry_id
        self.seq = 0

    def record(self, **kwargs: Any) -> None:
        self.recorder.record(
            source_entry_id=self.entry_id,
            source_seq=self.seq if self.entry_id is not None else None,
            **kwargs,
        )
        self.seq += 1


class EventDispatcher:
    """Maps recognized envelope types to ledger operations."""

    def __init__(
        self,
        recorder: CostRecorder,
        revenue: RevenueUpdater,
        default_channel_id: str = "default",
    ):
        self.recorder = recorder
        self.revenue = revenue
        self.default_channel_id = default_channel_id
        self._handlers: Dict[str, Callable[[Any, _EntryWriter], None]] = {
            LLM_TOKENS_USED: self._on_llm_tokens_used,
            TTS_SYNTHESIS_COMPLETED: self._on_tts_synthesis_completed,
            MEDIA_RENDER_COMPLETED: self._on_media_render_completed,
            THUMBNAIL_GENERATED: self._on_thumbnail_generated,
            ANALYTICS_REVENUE_UPDATED: self._on_revenue_updated,
        }

    @property
    def recognized_types(self):
        return frozenset(self._handlers)

    def dispatch(self, fields: Mapping[str, Any], entry_id: Optional[str] = None) -> DispatchOutcome:
        """Apply one envelope to the ledger.

        Args:
            fields: Envelope fields, ``type`` and a JSON ``payload`` string
            entry_id: Id of the log entry, used to make redelivery harmless

        Returns:
            What was done with the envelope

        Raises:
            Exception: Only failures of the underlying store propagate; the
                caller must then leave the entry unacknowledged
        """
        event_type = fields.get("type")
        if not event_type:
            logger.debug("Envelope %s has no type, skipping", entry_id)
            return DispatchOutcome.NO_TYPE

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring unknown event type %s (entry %s)", event_type, entry_id)
            return DispatchOutcome.UNKNOWN_TYPE

        try:
            data = decode_payload(event_type, fields.get("payload"))
            if not data.get("videoId"):
                logger.debug("Event %s (entry %s) has no videoId, skipping", event_type, entry_id)
                return DispatchOutcome.MISSING_VIDEO_ID
            event = parse_event(event_type, data)
        except MalformedPayloadError as e:
            logger.warning("Dropping entry %s: %s", entry_id, e)
            return DispatchOutcome.MALFORMED

        handler(event, _EntryWriter(self.recorder, entry_id))
        return DispatchOutcome.HANDLED

    def _channel(self, event: Any) -> str:
        return event.channel_id or self.default_channel_id

    def _on_llm_tokens_used(self, event: LlmTokensUsed, writer: _EntryWriter) -> None:
        channel_id = self._channel(event)
        writer.record(
            video_id=event.video_id,
            channel_id=channel_id,
            category=CostCategory.LLM_INPUT,
            provider=event.provider,
            units=event.input_tokens,
            unit_label="tokens",
            pricing_key=f"{event.provider}:input",
            metadata={"task": event.task},
        )
        writer.record(
            video_id=event.video_id,
            channel_id=channel_id,
            category=CostCategory.LLM_OUTPUT,
            provider=event.provider,
            units=event.output_tokens,
            unit_label="tokens",
            pricing_key=f"{event.provider}:output",
            metadata={"task": event.task},
        )

    def _on_tts_synthesis_completed(self, event: TtsSynthesisCompleted, writer: _EntryWriter) -> None:
        writer.record(
            video_id=event.video_id,
            channel_id=self._channel(event),
            category=CostCategory.TTS_CHARS,
            provider=event.provider,
            units=event.characters,
            unit_label="characters",
            pricing_key=f"{event.provider}:chars",
            metadata={"voiceId": event.voice_id},
        )

    def _on_media_render_completed(self, event: MediaRenderCompleted, writer: _EntryWriter) -> None:
        writer.record(
            video_id=event.video_id,
            channel_id=self._channel(event),
            category=CostCategory.MEDIA_MINUTES,
            provider=event.provider,
            units=event.duration_seconds / 60,
            unit_label="minutes",
            pricing_key=f"{event.provider}:minutes",
            metadata={"quality": event.quality},
        )

    def _on_thumbnail_generated(self, event: ThumbnailGenerated, writer: _EntryWriter) -> None:
        channel_id = self._channel(event)
        for variant in event.variants:
            writer.record(
                video_id=event.video_id,
                channel_id=channel_id,
                category=CostCategory.IMAGE_GENERATION,
                provider=variant.provider,
                units=1,
                unit_label="image",
                pricing_key=f"{variant.provider}:image",
                metadata={"variantId": variant.id, "style": variant.style},
            )

    def _on_revenue_updated(self, event: AnalyticsRevenueUpdated, writer: _EntryWriter) -> None:
        self.revenue.update_revenue(
            event.video_id,
            event.revenue_usd,
            event.views,
            channel_id=event.channel_id,
        )
