"""
Tests for event dispatching.

Tests routing of each recognized type, forward compatibility with unknown
types, and tolerance of partial or malformed producer events.
"""

import json
from unittest.mock import patch

import pytest

from video_ledger.core.dispatcher import DispatchOutcome
from video_ledger.storage.models import CostCategory


def envelope(event_type, payload):
    return {"type": event_type, "payload": json.dumps(payload)}


class TestRouting:
    """Test each recognized type produces the right ledger writes."""

    def test_llm_tokens_used_records_input_and_output(self, services):
        outcome = services.dispatcher.dispatch(envelope("llm.tokens_used", {
            "videoId": "v1", "channelId": "ch1", "provider": "gemini-flash",
            "inputTokens": 1_000_000, "outputTokens": 100_000, "task": "script",
        }), entry_id="1-0")

        assert outcome == DispatchOutcome.HANDLED
        events = services.repository.fetch_cost_events(video_id="v1")
        assert [e.category for e in events] == [CostCategory.LLM_INPUT, CostCategory.LLM_OUTPUT]
        assert events[0].cost_usd == pytest.approx(0.30)
        assert events[1].cost_usd == pytest.approx(0.25)
        assert events[0].metadata == {"task": "script"}
        assert [(e.source_entry_id, e.source_seq) for e in events] == [("1-0", 0), ("1-0", 1)]
        assert all(e.channel_id == "ch1" for e in events)

    def test_tts_synthesis_completed(self, services):
        services.dispatcher.dispatch(envelope("tts.synthesis_completed", {
            "videoId": "v1", "provider": "google-tts", "characters": 500_000, "voiceId": "en-1",
        }))
        (event,) = services.repository.fetch_cost_events(video_id="v1")
        assert event.category == CostCategory.TTS_CHARS
        assert event.unit_label == "characters"
        assert event.cost_usd == pytest.approx(0.008)
        assert event.metadata == {"voiceId": "en-1"}
        assert event.channel_id == "default"

    def test_media_render_completed_converts_seconds_to_minutes(self, services):
        services.dispatcher.dispatch(envelope("media.render_completed", {
            "videoId": "v1", "durationSeconds": 180, "quality": "1080p",
        }))
        (event,) = services.repository.fetch_cost_events(video_id="v1")
        assert event.category == CostCategory.MEDIA_MINUTES
        assert event.provider == "heygen"
        assert event.units == pytest.approx(3.0)
        assert event.cost_usd == pytest.approx(1.50)

    def test_thumbnail_generated_records_one_event_per_variant(self, services):
        services.dispatcher.dispatch(envelope("thumbnail.generated", {
            "videoId": "v1",
            "variants": [
                {"provider": "imagen4-fast", "id": "a", "style": "bold"},
                {"provider": "imagen4-ultra", "id": "b", "style": "clean"},
                {"provider": "gpt-image-1.5", "id": "c", "style": "face"},
            ],
        }), entry_id="7-0")
        events = services.repository.fetch_cost_events(video_id="v1")
        assert len(events) == 3
        assert all(e.category == CostCategory.IMAGE_GENERATION for e in events)
        assert sorted(e.source_seq for e in events) == [0, 1, 2]
        assert sum(e.cost_usd for e in events) == pytest.approx(0.12)

    def test_revenue_updated(self, services):
        outcome = services.dispatcher.dispatch(envelope("analytics.revenue_updated", {
            "videoId": "v1", "channelId": "ch1", "revenueUsd": 42.0, "views": 9000,
        }))
        assert outcome == DispatchOutcome.HANDLED
        record = services.repository.get_ledger_record("v1")
        assert record.revenue_usd == 42.0
        assert record.views == 9000
        assert services.repository.fetch_cost_events(video_id="v1") == []


class TestForwardCompatibility:
    """Test envelopes that must be acknowledged without effect."""

    def test_missing_type(self, services):
        assert services.dispatcher.dispatch({"payload": "{}"}) == DispatchOutcome.NO_TYPE

    def test_unknown_type(self, services):
        outcome = services.dispatcher.dispatch(envelope("script.generated", {"videoId": "v1"}))
        assert outcome == DispatchOutcome.UNKNOWN_TYPE
        assert services.repository.fetch_cost_events() == []

    def test_missing_video_id_is_a_no_op(self, services):
        outcome = services.dispatcher.dispatch(envelope("tts.synthesis_completed", {
            "provider": "google-tts", "characters": 10, "voiceId": "x",
        }))
        assert outcome == DispatchOutcome.MISSING_VIDEO_ID
        assert services.repository.fetch_cost_events() == []

    def test_missing_payload_is_a_no_op(self, services):
        assert services.dispatcher.dispatch({"type": "llm.tokens_used"}) == DispatchOutcome.MISSING_VIDEO_ID

    def test_invalid_json_is_dropped(self, services, caplog):
        with caplog.at_level("WARNING"):
            outcome = services.dispatcher.dispatch(
                {"type": "llm.tokens_used", "payload": "{oops"}, entry_id="3-0",
            )
        assert outcome == DispatchOutcome.MALFORMED
        assert "3-0" in caplog.text

    def test_missing_field_is_dropped_before_any_write(self, services):
        outcome = services.dispatcher.dispatch(envelope("llm.tokens_used", {
            "videoId": "v1", "provider": "gemini-flash", "inputTokens": 10, "task": "x",
        }))
        assert outcome == DispatchOutcome.MALFORMED
        assert services.repository.fetch_cost_events() == []

    def test_non_finite_number_is_dropped(self, services):
        outcome = services.dispatcher.dispatch({
            "type": "media.render_completed",
            "payload": '{"videoId": "v1", "durationSeconds": Infinity, "quality": "hd"}',
        }, entry_id="8-0")
        assert outcome == DispatchOutcome.MALFORMED
        assert services.repository.fetch_cost_events() == []

    def test_numeric_video_id_is_recorded(self, services):
        outcome = services.dispatcher.dispatch(envelope("media.render_completed", {
            "videoId": 1234, "durationSeconds": 60, "quality": "hd",
        }))
        assert outcome == DispatchOutcome.HANDLED
        assert len(services.repository.fetch_cost_events(video_id="1234")) == 1

    def test_unpriced_provider_still_recorded(self, services):
        services.dispatcher.dispatch(envelope("thumbnail.generated", {
            "videoId": "v1", "variants": [{"provider": "new-model", "id": "a"}],
        }))
        (event,) = services.repository.fetch_cost_events(video_id="v1")
        assert event.cost_usd == 0.0
        assert services.pricing.gap_counts() == {"new-model:image": 1}


class TestRedelivery:
    """Test at-least-once delivery against the ledger."""

    def test_redelivered_entry_is_not_double_counted(self, services):
        fields = envelope("llm.tokens_used", {
            "videoId": "v1", "provider": "gemini-flash",
            "inputTokens": 1_000_000, "outputTokens": 0, "task": "script",
        })
        services.dispatcher.dispatch(fields, entry_id="9-0")
        services.dispatcher.dispatch(fields, entry_id="9-0")

        breakdown = services.aggregator.get_video_cost_breakdown("v1")
        assert len(breakdown.events) == 2
        assert breakdown.costs.total == pytest.approx(0.30)

    def test_partial_failure_is_completed_on_redelivery(self, services):
        fields = envelope("thumbnail.generated", {
            "videoId": "v1",
            "variants": [{"provider": "imagen4-fast", "id": "a"}, {"provider": "imagen4-fast", "id": "b"}],
        })
        original = services.repository.append_cost_event
        calls = {"n": 0}

        def fail_second(event):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("database is locked")
            return original(event)

        with patch.object(services.repository, "append_cost_event", side_effect=fail_second):
            with pytest.raises(RuntimeError):
                services.dispatcher.dispatch(fields, entry_id="4-0")

        assert len(services.repository.fetch_cost_events(video_id="v1")) == 1
        services.dispatcher.dispatch(fields, entry_id="4-0")
        assert len(services.repository.fetch_cost_events(video_id="v1")) == 2

    def test_direct_recordings_without_entry_id_are_appended_twice(self, services):
        """Duplicates that bypass the log carry no entry id and are not deduplicated."""
        fields = envelope("media.render_completed", {
            "videoId": "v1", "durationSeconds": 60, "quality": "720p",
        })
        services.dispatcher.dispatch(fields)
        services.dispatcher.dispatch(fields)
        assert services.aggregator.get_video_cost_breakdown("v1").costs.total == pytest.approx(1.0)
