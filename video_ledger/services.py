"""
Component wiring.

Builds every ledger component from one LedgerConfig so they share the same
repository, pricing table and clock. Constructed once at process start and
passed by reference to the CLI commands, the HTTP app and the consumer.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config.loader import LedgerConfig
from .core.aggregator import LedgerAggregator
from .core.alerts import BudgetMonitor
from .core.dispatcher import EventDispatcher
from .core.pricing import PricingResolver, PricingTable
from .core.recorder import CostRecorder
from .core.revenue import RevenueUpdater
from .ingest.consumer import IngestionLoop
from .ingest.log import EventLog, build_event_log
from .storage.models import utc_now
from .storage.repository import LedgerRepository


@dataclass
class LedgerServices:
    """The wired component graph for one process."""
    config: LedgerConfig
    repository: LedgerRepository
    pricing: PricingResolver
    recorder: CostRecorder
    revenue: RevenueUpdater
    dispatcher: EventDispatcher
    aggregator: LedgerAggregator
    budgets: BudgetMonitor

    def ingestion_loop(self, log: Optional[EventLog] = None) -> IngestionLoop:
        """Create a consumer loop over ``log`` (or the configured log)."""
        return IngestionLoop(log or build_event_log(self.config.event_log), self.dispatcher, self.config.event_log)


def build_services(
    config: LedgerConfig,
    clock: Callable[[], datetime] = utc_now,
    initialize: bool = True,
) -> LedgerServices:
    """Wire the ledger components for ``config``.

    Args:
        config: Process configuration
        clock: Source of "now" for recording and reporting
        initialize: Create the database schema if it is missing
    """
    repository = LedgerRepository(config.database.path)
    if initialize:
        repository.initialize()

    pricing = PricingResolver(PricingTable.from_config(config.pricing))
    recorder = CostRecorder(repository, pricing, clock=clock)
    revenue = RevenueUpdater(repository, default_channel_id=config.default_channel_id, clock=clock)
    dispatcher = EventDispatcher(recorder, revenue, default_channel_id=config.default_channel_id)

    return LedgerServices(
        config=config,
        repository=repository,
        pricing=pricing,
        recorder=recorder,
        revenue=revenue,
        dispatcher=dispatcher,
        aggregator=LedgerAggregator(repository, clock=clock),
        budgets=BudgetMonitor(repository, config.budgets, clock=clock),
    )
