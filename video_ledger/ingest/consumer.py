"""
Ingestion loop.

Turns the at-least-once event log into sequential, acknowledged processing.

Invariants:
    - Entries are dispatched strictly in delivery order, one at a time.
    - An entry is acknowledged only after its dispatch returned; a failing
      handler leaves it pending for redelivery or a later stale claim, until
      it has been delivered ``max_deliveries`` times and is dropped.
    - Log failures (read, ack, group creation) never end the loop.
    - The blocking read is the only suspension point. Stopping is
      cooperative: the in-flight read returns on its own and a running
      handler is never interrupted.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .log import ConsumerGroupMissing, EventLog, LogEntry
from ..config.loader import EventLogConfig
from ..core.dispatcher import DispatchOutcome, EventDispatcher

logger = logging.getLogger(__name__)


@dataclass
class IngestionStats:
    """Counters since the loop started."""
    processed: int = 0
    acknowledged: int = 0
    failed: int = 0
    reclaimed: int = 0
    dropped: int = 0
    read_errors: int = 0
    ack_errors: int = 0
    groups_created: int = 0


class IngestionLoop:
    """Single sequential consumer of one consumer group."""

    def __init__(
        self,
        log: EventLog,
        dispatcher: EventDispatcher,
        config: EventLogConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.log = log
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock
        self.stats = IngestionStats()
        self._stop = threading.Event()
        self._last_sweep = clock()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current read returns."""
        self._stop.set()

    def run(self) -> None:
        """Consume until stop() is called, then release the log connection."""
        logger.info(
            "Consumer %s listening on group %s",
            self.config.consumer_name, self.config.group,
        )
        try:
            while self.running:
                self.run_once()
        finally:
            self.log.close()
            logger.info("Consumer %s stopped", self.config.consumer_name)

    def run_once(self) -> int:
        """Perform one read, process the batch, and sweep stale entries if due.

        Returns:
            Number of entries dispatched successfully in this iteration
        """
        try:
            entries = self.log.read_group(
                self.config.group,
                self.config.consumer_name,
                self.config.batch_size,
                self.config.block_ms,
            )
        except ConsumerGroupMissing:
            logger.info(
                "Consumer group %s missing, creating at %s",
                self.config.group, self.config.start_id,
            )
            try:
                self.log.create_group(self.config.group, self.config.start_id)
            except Exception:
                self._back_off("Consumer group creation failed")
                return 0
            self.stats.groups_created += 1
            return 0
        except Exception:
            self._back_off("Event log read failed")
            return 0

        handled = self.process(entries)
        if self._sweep_due():
            handled += self.sweep()
        return handled

    def _back_off(self, message: str) -> None:
        self.stats.read_errors += 1
        logger.exception("%s, retrying in %.1fs", message, self.config.backoff_seconds)
        self._stop.wait(self.config.backoff_seconds)

    def process(self, entries: List[LogEntry]) -> int:
        handled = 0
        for entry in entries:
            if self._handle(entry):
                handled += 1
        return handled

    def _handle(self, entry: LogEntry) -> bool:
        self.stats.processed += 1
        try:
            outcome = self.dispatcher.dispatch(entry.fields, entry_id=entry.entry_id)
        except Exception:
            self.stats.failed += 1
            if entry.delivery_count >= self.config.max_deliveries:
                logger.exception(
                    "Failed to handle entry %s (type %s) on delivery %d, dropping it: %s",
                    entry.entry_id, entry.fields.get("type"), entry.delivery_count, dict(entry.fields),
                )
                if self._ack(entry):
                    self.stats.dropped += 1
                return False
            logger.exception(
                "Failed to handle entry %s (type %s), leaving it pending",
                entry.entry_id, entry.fields.get("type"),
            )
            return False

        self._ack(entry)
        if outcome is not DispatchOutcome.HANDLED:
            logger.debug("Entry %s acknowledged without effect: %s", entry.entry_id, outcome.value)
        return True

    def _ack(self, entry: LogEntry) -> bool:
        try:
            self.log.ack(self.config.group, entry.entry_id)
        except Exception:
            self.stats.ack_errors += 1
            logger.exception("Failed to acknowledge entry %s, it will be redelivered", entry.entry_id)
            return False
        self.stats.acknowledged += 1
        return True

    def _sweep_due(self) -> bool:
        return self.clock() - self._last_sweep >= self.config.claim_interval_seconds

    def sweep(self) -> int:
        """Claim entries left pending by crashed consumers and reprocess them."""
        self._last_sweep = self.clock()
        try:
            claimed = self.log.claim_stale(
                self.config.group,
                self.config.consumer_name,
                self.config.claim_idle_ms,
                self.config.batch_size,
            )
        except ConsumerGroupMissing:
            return 0
        except Exception:
            logger.exception("Stale entry sweep failed")
            return 0

        if claimed:
            logger.info("Reclaimed %d stale entries", len(claimed))
            self.stats.reclaimed += len(claimed)
        return self.process(claimed)


def run_in_thread(loop: IngestionLoop, name: Optional[str] = None) -> threading.Thread:
    """Start ``loop.run`` on a daemon thread; stop with ``loop.stop()`` and join."""
    thread = threading.Thread(target=loop.run, name=name or "ingestion-loop", daemon=True)
    thread.start()
    return thread
