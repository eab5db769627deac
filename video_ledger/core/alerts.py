"""
Budget alerting.

Compares the current period's spend against configured caps and raises an
alert only on the rising edge of each threshold.

Alert state:
    For every (scope, period) the index of the last alerted threshold is
    persisted. A poll fires when the highest crossed threshold is above that
    index and re-arms when spend drops back below it, so each crossing fires
    exactly once instead of on every poll while spend stays above the line.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..config.loader import BudgetConfig, BudgetPeriod, BudgetScopeConfig, ScopeKind
from ..storage.models import CATEGORY_BUCKETS, utc_now
from ..storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

NO_LEVEL = -1


@dataclass(frozen=True)
class BudgetAlert:
    """A threshold crossing for one scope in one period."""
    scope_key: str
    period: str
    threshold_label: str
    threshold_usd: float
    spent_usd: float
    cap_usd: float
    level: int

    @property
    def percent_of_cap(self) -> float:
        return self.spent_usd / self.cap_usd * 100

    @property
    def message(self) -> str:
        return (
            f"Budget '{self.scope_key}' crossed {self.threshold_label} for {self.period}: "
            f"${self.spent_usd:,.2f} of ${self.cap_usd:,.2f} ({self.percent_of_cap:.1f}%)"
        )

    def to_dict(self):
        return {
            "scope": self.scope_key,
            "period": self.period,
            "threshold": self.threshold_label,
            "thresholdUsd": self.threshold_usd,
            "spentUsd": self.spent_usd,
            "capUsd": self.cap_usd,
            "percentOfCap": round(self.percent_of_cap, 2),
            "message": self.message,
        }


@dataclass(frozen=True)
class BudgetStatus:
    """Current spend of a scope, without alert side effects."""
    scope_key: str
    period: str
    spent_usd: float
    cap_usd: float
    level: int
    level_label: Optional[str]

    def to_dict(self):
        return {
            "scope": self.scope_key,
            "period": self.period,
            "spentUsd": self.spent_usd,
            "capUsd": self.cap_usd,
            "percentOfCap": round(self.spent_usd / self.cap_usd * 100, 2),
            "level": self.level_label,
        }


def period_bounds(now: datetime, period: BudgetPeriod) -> Tuple[str, datetime]:
    """Return the period key and the start of the period containing ``now``."""
    if period == BudgetPeriod.DAY:
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start.strftime("%Y-%m-%d"), start
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.strftime("%Y-%m"), start


class BudgetMonitor:
    """Checks tracked scopes against their thresholds."""

    def __init__(
        self,
        repository: LedgerRepository,
        config: BudgetConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.config = config
        self.clock = clock

    def spend(self, scope: BudgetScopeConfig, since: datetime, until: datetime) -> float:
        """Sum the cost recorded for a scope between two instants."""
        provider = None
        categories = None
        if scope.scope == ScopeKind.PROVIDER:
            provider = scope.name
        elif scope.scope == ScopeKind.SERVICE:
            categories = [c for c, bucket in CATEGORY_BUCKETS.items() if bucket == scope.name]
        events = self.repository.fetch_cost_events(
            since=since, until=until, provider=provider, categories=categories,
        )
        return math.fsum(e.cost_usd for e in events)

    @staticmethod
    def _ordered_lines(scope: BudgetScopeConfig) -> List[Tuple[float, str]]:
        return sorted((t.usd(scope.cap_usd), t.label()) for t in scope.thresholds)

    @staticmethod
    def _level_for(spent: float, lines: List[Tuple[float, str]]) -> int:
        level = NO_LEVEL
        for index, (line_usd, _) in enumerate(lines):
            if spent >= line_usd:
                level = index
        return level

    def status(self, now: Optional[datetime] = None) -> List[BudgetStatus]:
        now = now or self.clock()
        period, start = period_bounds(now, self.config.period)
        statuses = []
        for scope in self.config.scopes:
            lines = self._ordered_lines(scope)
            spent = self.spend(scope, start, now)
            level = self._level_for(spent, lines)
            statuses.append(BudgetStatus(
                scope_key=scope.key,
                period=period,
                spent_usd=spent,
                cap_usd=scope.cap_usd,
                level=level,
                level_label=lines[level][1] if level != NO_LEVEL else None,
            ))
        return statuses

    def check(self, now: Optional[datetime] = None) -> List[BudgetAlert]:
        """Poll every scope and return the alerts that fired on this poll.

        When several thresholds are crossed between two polls a single alert
        is raised for the highest one.
        """
        now = now or self.clock()
        period, start = period_bounds(now, self.config.period)
        alerts = []

        for scope in self.config.scopes:
            lines = self._ordered_lines(scope)
            spent = self.spend(scope, start, now)
            level = self._level_for(spent, lines)
            stored = self.repository.get_alert_level(scope.key, period)
            last = NO_LEVEL if stored is None else stored

            if level > last:
                line_usd, label = lines[level]
                alert = BudgetAlert(
                    scope_key=scope.key,
                    period=period,
                    threshold_label=label,
                    threshold_usd=line_usd,
                    spent_usd=spent,
                    cap_usd=scope.cap_usd,
                    level=level,
                )
                logger.warning(alert.message)
                alerts.append(alert)
                self.repository.set_alert_level(scope.key, period, level, now)
            elif level < last:
                logger.info("Budget '%s' back below %s, re-armed", scope.key, lines[last][1])
                self.repository.set_alert_level(scope.key, period, level, now)

        return alerts
