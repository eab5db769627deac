"""
Pricing calculations and rate management.

Resolves ``provider:unit_type`` keys to USD unit prices. The table is fixed
when the process starts; a price change needs a redeploy and never alters
costs that were already recorded.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from ..config.loader import PriceOverride

logger = logging.getLogger(__name__)

COST_PRECISION = Decimal("0.00000001")

# Unit types priced per million units; everything else is priced per unit
_PER_MILLION_UNIT_TYPES = {"input", "output", "chars"}

_UNIT_LABELS = {
    "input": "per 1M tokens",
    "output": "per 1M tokens",
    "chars": "per 1M characters",
    "minutes": "per minute",
    "image": "per image",
    "gb_month": "per GB/month",
}


@dataclass(frozen=True)
class PriceEntry:
    """USD price for a block of ``per_units`` units of one provider's usage."""
    provider: str
    unit_type: str
    price_usd: Decimal
    per_units: int
    unit_label: str

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.unit_type}"

    def cost(self, units: float) -> float:
        """Cost of ``units`` units, rounded to 8 decimal places.

        Units may be negative for compensating entries.

        Raises:
            ValueError: If ``units`` is NaN or infinite
        """
        if not math.isfinite(units):
            raise ValueError(f"units must be a finite number, got {units!r}")
        total = (Decimal(str(units)) / Decimal(self.per_units)) * self.price_usd
        return float(total.quantize(COST_PRECISION, rounding=ROUND_HALF_UP))


def parse_pricing_key(key: str) -> Tuple[str, str]:
    """Split ``provider:unit_type`` into its parts.

    Raises:
        ValueError: If the key has no provider or no unit type
    """
    provider, sep, unit_type = key.partition(":")
    if not sep or not provider or not unit_type:
        raise ValueError(f"Invalid pricing key: {key}")
    return provider, unit_type


def default_per_units(unit_type: str) -> int:
    return 1_000_000 if unit_type in _PER_MILLION_UNIT_TYPES else 1


def default_unit_label(unit_type: str) -> str:
    return _UNIT_LABELS.get(unit_type, "per unit")


def make_entry(
    key: str,
    price_usd: float,
    per_units: Optional[int] = None,
    unit_label: Optional[str] = None,
) -> PriceEntry:
    provider, unit_type = parse_pricing_key(key)
    return PriceEntry(
        provider=provider,
        unit_type=unit_type,
        price_usd=Decimal(str(price_usd)),
        per_units=per_units or default_per_units(unit_type),
        unit_label=unit_label or default_unit_label(unit_type),
    )


# Default unit prices in USD; LLM tokens and TTS characters per 1M units
DEFAULT_PRICES: Dict[str, float] = {
    "gemini-flash:input": 0.30,
    "gemini-flash:output": 2.50,
    "gemini-flash-lite:input": 0.10,
    "gemini-flash-lite:output": 0.40,
    "deepseek-v3:input": 0.28,
    "deepseek-v3:output": 0.42,
    "google-tts:chars": 0.016,
    "fish-audio:chars": 0.012,
    "kokoro-hf:chars": 0.0,
    "heygen:minutes": 0.50,
    "imagen4-fast:image": 0.02,
    "imagen4-standard:image": 0.04,
    "imagen4-ultra:image": 0.06,
    "gpt-image-1.5:image": 0.04,
    "gcs:gb_month": 0.020,
}


class PricingTable:
    """Immutable map of pricing key to PriceEntry."""

    def __init__(self, entries: Mapping[str, PriceEntry]):
        self._entries: Dict[str, PriceEntry] = dict(entries)

    @classmethod
    def from_config(cls, overrides: Optional[Mapping[str, PriceOverride]] = None) -> "PricingTable":
        """Build the default table with configured prices layered on top."""
        entries = {key: make_entry(key, price) for key, price in DEFAULT_PRICES.items()}
        for key, override in (overrides or {}).items():
            entries[key] = make_entry(key, override.price_usd, override.per_units, override.unit_label)
        return cls(entries)

    def get(self, key: str) -> Optional[PriceEntry]:
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[PriceEntry]:
        return [self._entries[key] for key in sorted(self._entries)]


class PricingResolver:
    """Converts raw usage into USD against a fixed PricingTable.

    Unknown keys price at zero so that ingestion never stalls on a missing
    rate. Each miss is logged and counted per key so the undercount can be
    monitored.
    """

    def __init__(self, table: PricingTable):
        self.table = table
        self._gaps: Counter = Counter()

    def resolve(self, key: str) -> Optional[PriceEntry]:
        return self.table.get(key)

    def cost_for(self, key: str, units: float) -> float:
        """Calculate cost in USD for ``units`` of the given pricing key.

        Args:
            key: Pricing key, e.g. ``gemini-flash:input``
            units: Raw units consumed (tokens, characters, minutes, images)

        Returns:
            Cost in USD; 0.0 when the key has no price
        """
        entry = self.table.get(key)
        if entry is None:
            self._gaps[key] += 1
            logger.warning("Unknown pricing key %s, cost recorded as 0 (gap #%d)", key, self._gaps[key])
            return 0.0
        return entry.cost(units)

    def gap_counts(self) -> Dict[str, int]:
        """Number of zero-priced lookups per missing key since start-up."""
        return dict(self._gaps)

    def entries(self) -> List[PriceEntry]:
        return self.table.entries()
