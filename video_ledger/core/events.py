"""
Event contracts for the pipeline event log.

Each recognized envelope type has a closed payload schema. Payloads are
validated here, before any handler runs, so a malformed producer event
becomes a typed parse failure instead of a half-applied write.
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

LLM_TOKENS_USED = "llm.tokens_used"
TTS_SYNTHESIS_COMPLETED = "tts.synthesis_completed"
MEDIA_RENDER_COMPLETED = "media.render_completed"
THUMBNAIL_GENERATED = "thumbnail.generated"
ANALYTICS_REVENUE_UPDATED = "analytics.revenue_updated"

RECOGNIZED_TYPES = frozenset({
    LLM_TOKENS_USED,
    TTS_SYNTHESIS_COMPLETED,
    MEDIA_RENDER_COMPLETED,
    THUMBNAIL_GENERATED,
    ANALYTICS_REVENUE_UPDATED,
})


class MalformedPayloadError(ValueError):
    """Raised when an envelope's payload is not valid for its type."""

    def __init__(self, event_type: str, reason: str):
        super().__init__(f"Malformed '{event_type}' payload: {reason}")
        self.event_type = event_type
        self.reason = reason


class _Payload(BaseModel):
    """Base for payload schemas: camelCase on the wire, extra fields ignored.

    Numeric ids are accepted as strings; NaN and infinities are rejected.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        allow_inf_nan=False,
        coerce_numbers_to_str=True,
    )

    video_id: str = Field(min_length=1)
    channel_id: Optional[str] = None


class LlmTokensUsed(_Payload):
    type: Literal["llm.tokens_used"]
    provider: str = Field(min_length=1)
    input_tokens: int
    output_tokens: int
    task: str


class TtsSynthesisCompleted(_Payload):
    type: Literal["tts.synthesis_completed"]
    provider: str = Field(min_length=1)
    characters: int
    voice_id: str


class MediaRenderCompleted(_Payload):
    type: Literal["media.render_completed"]
    duration_seconds: float
    quality: str
    provider: str = "heygen"


class ThumbnailVariant(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False, coerce_numbers_to_str=True)

    provider: str = Field(min_length=1)
    id: str
    style: Optional[str] = None


class ThumbnailGenerated(_Payload):
    type: Literal["thumbnail.generated"]
    variants: List[ThumbnailVariant]


class AnalyticsRevenueUpdated(_Payload):
    type: Literal["analytics.revenue_updated"]
    revenue_usd: Optional[float] = Field(ge=0)
    views: Optional[int] = Field(ge=0)


PipelineEvent = Annotated[
    Union[
        LlmTokensUsed,
        TtsSynthesisCompleted,
        MediaRenderCompleted,
        ThumbnailGenerated,
        AnalyticsRevenueUpdated,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter = TypeAdapter(PipelineEvent)


def decode_payload(event_type: str, raw_payload: Any) -> Dict[str, Any]:
    """Decode the JSON payload of an envelope into a dictionary.

    Raises:
        MalformedPayloadError: If the payload is not a JSON object
    """
    if raw_payload is None or raw_payload == "":
        return {}
    if isinstance(raw_payload, bytes):
        raw_payload = raw_payload.decode("utf-8", errors="replace")
    if isinstance(raw_payload, dict):
        return raw_payload
    try:
        data = json.loads(raw_payload)
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(event_type, f"invalid JSON ({e})")
    if not isinstance(data, dict):
        raise MalformedPayloadError(event_type, "payload must be a JSON object")
    return data


def parse_event(event_type: str, data: Dict[str, Any]):
    """Validate a decoded payload against the schema for ``event_type``.

    Returns:
        One of the PipelineEvent models

    Raises:
        MalformedPayloadError: If a required field is missing or mistyped
    """
    try:
        return _EVENT_ADAPTER.validate_python({**data, "type": event_type})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise MalformedPayloadError(event_type, problems)
