"""
Shared fixtures: a ledger wired against a temporary database and a clock
the tests can move.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from video_ledger.config.loader import DatabaseConfig, LedgerConfig
from video_ledger.services import build_services

T0 = datetime(2026, 10, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return LedgerConfig(database=DatabaseConfig(path=os.path.join(str(tmp_path), "ledger.db")))


@pytest.fixture
def services(config, clock):
    return build_services(config, clock=clock)
