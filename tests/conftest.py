"""
Shared fixtures: a remote store fake, an in-memory local store and a
configuration with timings short enough for tests.
"""

import pytest

from possync.config import FeedConfig, OutboundConfig, SessionConfig, SyncConfig
from possync.local.kv import MemoryKeyValueStore
from possync.local.store import LocalStore
from possync.remote.memory import InMemoryRemoteStore


@pytest.fixture
def fast_config():
    return SyncConfig(
        outbound=OutboundConfig(
            batch_size=5,
            batch_spacing_seconds=0.05,
            debounce_seconds=0.05,
            cooldown_seconds=0.2,
        ),
        feed=FeedConfig(
            sales_window=3,
            sales_history_limit=10,
            reconnect_delay_seconds=0.05,
            sample_product_names=("Sample Latte",),
        ),
        session=SessionConfig(
            autosave_interval_seconds=60.0,
            auto_lock_minutes=0,
            failure_alert_threshold=3,
        ),
    )


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def local_store(kv):
    return LocalStore(kv)
