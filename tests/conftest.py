import pytest

import keywarden.store as store
from keywarden.config import JwksConfig, RevocationConfig, RotationConfig
from keywarden.monitor import ConsistencyMonitor
from keywarden.store.inmemory import InMemoryKeyStore, InMemoryPublicKeyRegistry

from fixtures.clock import FakeClock
from fixtures.consumers import RecordingAlertSink


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("KEYWARDEN_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("KEYWARDEN_DATABASE_URL", raising=False)
    store._key_store_instance = None
    store._registry_instance = None
    yield
    store._key_store_instance = None
    store._registry_instance = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_store():
    return InMemoryKeyStore()


@pytest.fixture
def registry():
    return InMemoryPublicKeyRegistry()


@pytest.fixture
def alerts():
    return RecordingAlertSink()


@pytest.fixture
def monitor(clock, alerts):
    return ConsistencyMonitor(clock=clock, alert_sink=alerts)


@pytest.fixture
def rotation_config():
    return RotationConfig(
        propagation_window_seconds=300,
        propagation_polls=3,
        poll_interval_seconds=2,
        monitoring_window_seconds=900,
        monitoring_interval_seconds=60,
        error_rate_threshold=0.05,
    )


@pytest.fixture
def revocation_config():
    return RevocationConfig(sla_seconds=300, step_timeout_seconds=60, consumer_poll_interval_seconds=1)


@pytest.fixture
def jwks_config():
    return JwksConfig(cache_ttl_seconds=300, key_ttl_days=90)
