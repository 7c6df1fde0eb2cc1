from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry

from keymeter.models import TimeWindow
from keymeter.store.memory import InMemoryStore


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def now() -> "datetime":
    # mid month and mid day, so today and this month differ
    return datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def window(now: "datetime") -> "TimeWindow":
    return TimeWindow.now_utc(now)


@pytest.fixture()
def store() -> "InMemoryStore":
    return InMemoryStore()
