"""
Tests for the ingestion loop.

Tests acknowledgement rules, consumer group bootstrap, backoff on read
errors, stale entry recovery and cooperative shutdown.
"""

import json
from unittest.mock import MagicMock

import pytest

from video_ledger.config.loader import EventLogConfig
from video_ledger.core.dispatcher import DispatchOutcome
from video_ledger.ingest.consumer import IngestionLoop, run_in_thread
from video_ledger.ingest.log import ConsumerGroupMissing, LogEntry, MemoryEventLog, TransientLogError


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def log_config(**overrides):
    values = dict(consumer_name="test-consumer", block_ms=0, backoff_seconds=0.0)
    values.update(overrides)
    return EventLogConfig(**values)


def media_envelope(video_id="v1", seconds=60):
    return {
        "type": "media.render_completed",
        "payload": json.dumps({"videoId": video_id, "durationSeconds": seconds, "quality": "1080p"}),
    }


class TestProcessing:
    """Test dispatch and acknowledgement of delivered entries."""

    def setup_method(self):
        self.clock = ManualClock()
        self.log = MemoryEventLog(clock=self.clock)
        self.config = log_config()
        self.log.create_group(self.config.group, "0")

    def test_successful_entries_are_acked(self, services):
        self.log.append(media_envelope())
        self.log.append({"type": "script.generated", "payload": "{}"})
        loop = IngestionLoop(self.log, services.dispatcher, self.config, clock=self.clock)

        assert loop.run_once() == 2
        assert self.log.pending(self.config.group) == []
        assert loop.stats.acknowledged == 2
        assert len(services.repository.fetch_cost_events(video_id="v1")) == 1

    def test_failed_dispatch_stays_pending(self):
        entry_id = self.log.append(media_envelope())
        dispatcher = MagicMock()
        dispatcher.dispatch.side_effect = RuntimeError("database is locked")
        loop = IngestionLoop(self.log, dispatcher, self.config, clock=self.clock)

        assert loop.run_once() == 0
        assert self.log.pending(self.config.group) == [entry_id]
        assert loop.stats.failed == 1
        assert loop.stats.acknowledged == 0

    def test_failure_does_not_block_the_rest_of_the_batch(self):
        first = self.log.append(media_envelope("v1"))
        self.log.append(media_envelope("v2"))
        dispatcher = MagicMock()
        dispatcher.dispatch.side_effect = [RuntimeError("boom"), DispatchOutcome.HANDLED]
        loop = IngestionLoop(self.log, dispatcher, self.config, clock=self.clock)

        assert loop.run_once() == 1
        assert self.log.pending(self.config.group) == [first]

    def test_entries_dispatched_in_order_with_their_ids(self):
        ids = [self.log.append(media_envelope(f"v{n}")) for n in range(3)]
        dispatcher = MagicMock()
        dispatcher.dispatch.return_value = DispatchOutcome.HANDLED
        loop = IngestionLoop(self.log, dispatcher, self.config, clock=self.clock)

        loop.run_once()
        assert [c.kwargs["entry_id"] for c in dispatcher.dispatch.call_args_list] == ids

    def test_malformed_entries_are_acked(self, services):
        self.log.append({"type": "llm.tokens_used", "payload": "not json"})
        loop = IngestionLoop(self.log, services.dispatcher, self.config, clock=self.clock)
        loop.run_once()
        assert self.log.pending(self.config.group) == []


class TestGroupBootstrap:
    """Test creation of the consumer group on first read."""

    def test_missing_group_is_created_from_start_id(self, services):
        log = MemoryEventLog(clock=ManualClock())
        log.append(media_envelope())
        config = log_config()
        loop = IngestionLoop(log, services.dispatcher, config)

        assert loop.run_once() == 0
        assert loop.stats.groups_created == 1
        assert loop.run_once() == 1
        assert services.aggregator.get_video_cost_breakdown("v1") is not None


class TestReadErrors:
    """Test backoff when the log is unreachable."""

    def test_transient_error_backs_off_and_continues(self):
        log = MagicMock()
        log.read_group.side_effect = [TransientLogError("connection refused"), []]
        loop = IngestionLoop(log, MagicMock(), log_config(backoff_seconds=2.0))
        loop._stop = MagicMock()
        loop._stop.is_set.return_value = False

        assert loop.run_once() == 0
        assert loop.stats.read_errors == 1
        loop._stop.wait.assert_called_once_with(2.0)
        assert loop.run_once() == 0

    def test_group_missing_triggers_create(self):
        log = MagicMock()
        log.read_group.side_effect = ConsumerGroupMissing("NOGROUP")
        config = log_config(start_id="0")
        loop = IngestionLoop(log, MagicMock(), config)

        loop.run_once()
        log.create_group.assert_called_once_with(config.group, "0")


    def test_ack_failure_does_not_end_the_loop(self):
        log = MagicMock()
        dispatcher = MagicMock()
        dispatcher.dispatch.return_value = DispatchOutcome.HANDLED
        log.ack.side_effect = TransientLogError("connection reset")
        loop = IngestionLoop(log, dispatcher, log_config())

        def read_once(*args):
            if log.read_group.call_count > 1:
                loop.stop()
                return []
            return [LogEntry("1-0", media_envelope())]

        log.read_group.side_effect = read_once
        loop.run()

        assert loop.stats.processed == 1
        assert loop.stats.ack_errors == 1
        assert loop.stats.acknowledged == 0
        log.close.assert_called_once()

    def test_group_creation_failure_backs_off(self):
        log = MagicMock()
        log.read_group.side_effect = ConsumerGroupMissing("NOGROUP")
        log.create_group.side_effect = TransientLogError("connection refused")
        loop = IngestionLoop(log, MagicMock(), log_config(backoff_seconds=2.0))
        loop._stop = MagicMock()

        assert loop.run_once() == 0
        assert loop.stats.groups_created == 0
        assert loop.stats.read_errors == 1
        loop._stop.wait.assert_called_once_with(2.0)


class TestStaleRecovery:
    """Test periodic claiming of entries abandoned by crashed consumers."""

    def test_sweep_reprocesses_abandoned_entries(self, services):
        clock = ManualClock()
        log = MemoryEventLog(clock=clock)
        config = log_config(claim_idle_ms=1000, claim_interval_seconds=5.0)
        log.create_group(config.group, "0")
        entry_id = log.append(media_envelope())
        log.read_group(config.group, "crashed-consumer", 10, 0)

        loop = IngestionLoop(log, services.dispatcher, config, clock=clock)
        assert loop.run_once() == 0

        clock.now = 10.0
        assert loop.run_once() == 1
        assert loop.stats.reclaimed == 1
        assert log.pending(config.group) == []
        assert services.repository.fetch_cost_events(video_id="v1")[0].source_entry_id == entry_id

    def test_entry_dropped_after_max_deliveries(self, caplog):
        clock = ManualClock()
        log = MemoryEventLog(clock=clock)
        config = log_config(claim_idle_ms=1000, claim_interval_seconds=5.0, max_deliveries=2)
        log.create_group(config.group, "0")
        entry_id = log.append(media_envelope())
        dispatcher = MagicMock()
        dispatcher.dispatch.side_effect = RuntimeError("always fails")
        loop = IngestionLoop(log, dispatcher, config, clock=clock)

        loop.run_once()
        assert log.pending(config.group) == [entry_id]

        clock.now = 10.0
        with caplog.at_level("ERROR"):
            loop.run_once()
        assert log.pending(config.group) == []
        assert loop.stats.failed == 2
        assert loop.stats.dropped == 1
        assert "dropping it" in caplog.text

        clock.now = 20.0
        loop.run_once()
        assert dispatcher.dispatch.call_count == 2

    def test_non_finite_payload_is_acked_not_retried(self, services):
        log = MemoryEventLog(clock=ManualClock())
        config = log_config()
        log.create_group(config.group, "0")
        log.append({
            "type": "media.render_completed",
            "payload": '{"videoId": "v1", "durationSeconds": Infinity, "quality": "hd"}',
        })
        loop = IngestionLoop(log, services.dispatcher, config)

        loop.run_once()
        assert log.pending(config.group) == []
        assert loop.stats.failed == 0

    def test_reclaimed_entry_already_recorded_is_not_counted_twice(self, services):
        clock = ManualClock()
        log = MemoryEventLog(clock=clock)
        config = log_config(claim_idle_ms=1000)
        log.create_group(config.group, "0")
        entry_id = log.append(media_envelope(seconds=120))
        (entry,) = log.read_group(config.group, "crashed-consumer", 10, 0)
        # Recorded but crashed before the ack
        services.dispatcher.dispatch(entry.fields, entry_id=entry_id)

        clock.now = 5.0
        loop = IngestionLoop(log, services.dispatcher, config, clock=clock)
        assert loop.sweep() == 1
        assert services.aggregator.get_video_cost_breakdown("v1").costs.total == pytest.approx(1.0)


class TestShutdown:
    """Test cooperative stop."""

    def test_stop_ends_run_and_closes_log(self, services):
        log = MemoryEventLog()
        config = log_config(block_ms=50)
        loop = IngestionLoop(log, services.dispatcher, config)

        thread = run_in_thread(loop)
        log.append(media_envelope())
        loop.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert not loop.running
        assert log.closed

    def test_run_processes_until_stopped(self, services):
        log = MemoryEventLog()
        config = log_config(block_ms=50)
        log.create_group(config.group, "0")
        log.append(media_envelope())
        loop = IngestionLoop(log, services.dispatcher, config)

        original = loop.process

        def process_then_stop(entries):
            handled = original(entries)
            if handled:
                loop.stop()
            return handled

        loop.process = process_then_stop
        loop.run()
        assert loop.stats.acknowledged == 1
        assert log.closed
