import threading
from typing import Any, Dict, List, Tuple

import pytest

from sysmon2mqtt.discovery import DiscoveryRegistry, TopicLayout
from sysmon2mqtt.engine import ReportingEngine
from sysmon2mqtt.errors import PublishError, SampleUnavailable
from sysmon2mqtt.metrics import (
    BATTERY_LEVEL,
    BATTERY_STATE,
    CPU_USAGE,
    MEMORY_USAGE,
    SWAP_USAGE,
    MetricDefinition,
    MetricSource,
)

DEVICE = {"identifiers": ["testhost"], "name": "testhost"}


class FakeSession:
    """In-memory stand-in for BrokerSession recording every publish."""

    def __init__(self) -> None:
        self.epoch = 1
        self.connected = True
        self.reconnected = False
        self.messages: List[Tuple[str, str, bool, int]] = []
        self.fail_topics: set = set()
        self.subscriptions: Dict[str, Any] = {}
        self.connect_calls: List[Tuple[str, Any]] = []
        self.shutdown_calls = 0

    def connect(self, server_url, credentials=None, stop_event=None) -> bool:
        self.connect_calls.append((server_url, credentials))
        return True

    def publish(self, topic, payload, retain=True, qos=0, epoch=None) -> None:
        if not self.connected:
            raise PublishError("not connected", connection_lost=True)
        if epoch is not None and epoch != self.epoch:
            raise PublishError("stale epoch", connection_lost=True)
        if topic in self.fail_topics:
            raise PublishError(f"refused {topic}")
        self.messages.append((topic, payload, retain, qos))

    def subscribe(self, topic, callback) -> None:
        self.subscriptions[topic] = callback

    def was_reconnected_since_last_check(self) -> bool:
        reconnected = self.reconnected
        self.reconnected = False
        return reconnected

    def shutdown(self, timeout=5.0) -> None:
        self.shutdown_calls += 1
        self.connected = False

    # test helpers
    def drop(self) -> None:
        self.connected = False

    def reconnect(self) -> None:
        self.connected = True
        self.epoch += 1
        self.reconnected = True

    def topics(self) -> List[str]:
        return [topic for topic, _, _, _ in self.messages]


class FakeSource(MetricSource):
    def __init__(self, definition: MetricDefinition, value: Any = 1.0, error: Exception | None = None,
                 block: threading.Event | None = None, on_sample=None) -> None:
        self.definition = definition
        self.value = value
        self.error = error
        self.block = block
        self.on_sample = on_sample
        self.calls = 0

    def read(self) -> Any:
        self.calls += 1
        if self.on_sample:
            self.on_sample()
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        return self.value


class CountingRegistry(DiscoveryRegistry):
    def __init__(self) -> None:
        super().__init__()
        self.resets = 0

    def reset_all_announced(self) -> None:
        self.resets += 1
        super().reset_all_announced()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def topics() -> TopicLayout:
    return TopicLayout("testhost")


@pytest.fixture
def sources() -> List[FakeSource]:
    return [
        FakeSource(CPU_USAGE, 12.34),
        FakeSource(MEMORY_USAGE, 45.6),
        FakeSource(SWAP_USAGE, 0.0),
        FakeSource(BATTERY_LEVEL, error=SampleUnavailable("no battery present")),
        FakeSource(BATTERY_STATE, error=SampleUnavailable("no battery present")),
    ]


@pytest.fixture
def make_engine(session, topics):
    engines = []

    def _make(sources, registry=None, **kwargs) -> ReportingEngine:
        if registry is None:
            registry = CountingRegistry()
        registry.register_all(source.definition for source in sources)
        kwargs.setdefault("sample_timeout", 2.0)
        engine = ReportingEngine(registry, sources, session, topics, DEVICE, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine._executor.shutdown(wait=False, cancel_futures=True)
