"""
Cost recording.

Prices one unit of billable usage and appends it to the ledger.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from .pricing import PricingResolver
from ..storage.models import CostCategory, CostEvent, utc_now
from ..storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


class CostRecorder:
    """Converts priced usage into immutable CostEvent rows.

    The write path never reads aggregates: each call is a single append, so
    providers reporting for the same video concurrently never contend on a
    shared row.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        pricing: PricingResolver,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.pricing = pricing
        self.clock = clock

    def record(
        self,
        video_id: str,
        channel_id: str,
        category: Union[CostCategory, str],
        provider: str,
        units: float,
        unit_label: str,
        pricing_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        source_entry_id: Optional[str] = None,
        source_seq: Optional[int] = None,
    ) -> Optional[CostEvent]:
        """Price usage at today's rate and append it to the ledger.

        Args:
            video_id: Video the usage belongs to
            channel_id: Channel that owns the video
            category: Cost category of the usage
            provider: Provider that performed the work
            units: Raw units consumed; negative for a compensating entry
            unit_label: Human-readable unit name (tokens, characters, ...)
            pricing_key: ``provider:unit_type`` key to price against
            metadata: Opaque context stored with the event
            source_entry_id: Log entry the usage was delivered in
            source_seq: Position of this event within that entry

        Returns:
            The recorded event, or None if this source entry and sequence
            number had already been recorded

        Raises:
            ValueError: If the category is unknown, ids are empty or units
                are not finite
        """
        if not video_id:
            raise ValueError("video_id is required")
        if not channel_id:
            raise ValueError("channel_id is required")
        category = CostCategory(category)
        if not math.isfinite(units):
            raise ValueError(f"units must be a finite number, got {units!r}")

        price_missing = self.pricing.resolve(pricing_key) is None
        cost_usd = self.pricing.cost_for(pricing_key, units)
        event = CostEvent(
            id=str(uuid.uuid4()),
            video_id=video_id,
            channel_id=channel_id,
            category=category,
            provider=provider,
            units=units,
            unit_label=unit_label,
            cost_usd=cost_usd,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
            source_entry_id=source_entry_id,
            source_seq=source_seq,
            price_missing=price_missing,
        )

        if not self.repository.append_cost_event(event):
            logger.info(
                "Duplicate delivery of entry %s seq %s for video %s ignored",
                source_entry_id, source_seq, video_id,
            )
            return None

        logger.info(
            "Cost event recorded video=%s provider=%s category=%s cost=%.6f",
            video_id, provider, category.value, cost_usd,
        )
        return event
