"""
Request bodies accepted by the HTTP surface.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..storage.models import CostCategory


class _Body(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", allow_inf_nan=False,
    )


class ManualCostEvent(_Body):
    """A cost reported directly by a producer that cannot publish to the log."""
    video_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    category: CostCategory
    provider: str = Field(min_length=1)
    units: float
    unit_label: str = Field(min_length=1)
    unit_type: str = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def pricing_key(self) -> str:
        return f"{self.provider}:{self.unit_type}"


class RevenueUpdate(_Body):
    revenue_usd: Optional[float] = Field(ge=0)
    views: Optional[int] = Field(ge=0)
    channel_id: Optional[str] = None
