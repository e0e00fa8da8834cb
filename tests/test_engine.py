import json
import threading

import pytest

from conftest import CountingRegistry, FakeSource
from sysmon2mqtt.config import Config, DriveConfig
from sysmon2mqtt.discovery import ComponentStateFile
from sysmon2mqtt.engine import ReportingEngine, check_drives, run
from sysmon2mqtt.errors import FatalConfigError
from sysmon2mqtt.metrics import CPU_USAGE, MEMORY_USAGE, SWAP_USAGE, UPTIME, build_sources

ALL_IDS = ["cpu_usage", "memory_usage", "swap_usage", "battery_level", "battery_state"]


def discovery_topic(metric_id):
    return f"homeassistant/sensor/testhost/{metric_id}/config"


def state_topic(metric_id):
    return f"sysmon2mqtt/testhost/{metric_id}"


def assert_discovery_before_values(topics):
    """Within each epoch segment, no state topic precedes its discovery topic."""
    announced = set()
    for topic in topics:
        if topic.endswith("/config"):
            announced.add(topic.split("/")[-2])
        elif topic.startswith("sysmon2mqtt/") and not topic.endswith("/availability"):
            assert topic.split("/")[-1] in announced, f"{topic} published before its discovery"


def test_first_tick_announces_then_publishes(make_engine, session, sources):
    engine = make_engine(sources)

    engine.tick()

    topics = session.topics()
    assert topics[0] == "sysmon2mqtt/testhost/availability"
    assert topics[1:6] == [discovery_topic(i) for i in ALL_IDS]
    assert topics[6:] == [state_topic("cpu_usage"), state_topic("memory_usage"), state_topic("swap_usage")]
    assert all(retain for _, _, retain, _ in session.messages)
    assert_discovery_before_values(topics)


def test_values_are_formatted(make_engine, session, sources):
    engine = make_engine(sources)
    engine.tick()

    values = {topic: payload for topic, payload, _, _ in session.messages}
    assert values[state_topic("cpu_usage")] == "12.3"
    assert values[state_topic("swap_usage")] == "0.0"
    assert values["sysmon2mqtt/testhost/availability"] == "online"


def test_discovery_published_once_per_epoch(make_engine, session, sources):
    engine = make_engine(sources)

    for _ in range(3):
        engine.tick()

    assert session.topics().count(discovery_topic("cpu_usage")) == 1
    assert session.topics().count(state_topic("cpu_usage")) == 3


def test_reconnects_republish_discovery_exactly_once_each(make_engine, session, sources):
    registry = CountingRegistry()
    engine = make_engine(sources, registry=registry)
    engine.tick()

    reconnects = 4
    for _ in range(reconnects):
        session.drop()
        engine.tick()
        session.reconnect()
        engine.tick()
        engine.tick()

    for metric_id in ALL_IDS:
        assert session.topics().count(discovery_topic(metric_id)) == reconnects + 1
    assert registry.resets == reconnects
    assert_discovery_before_values(session.topics())


def test_unavailable_battery_does_not_block_other_metrics(make_engine, session, sources):
    engine = make_engine(sources)
    engine.tick()

    published = session.topics()
    assert state_topic("battery_level") not in published
    assert state_topic("battery_state") not in published
    for metric_id in ("cpu_usage", "memory_usage", "swap_usage"):
        assert state_topic(metric_id) in published
    assert engine.registry.is_announced("battery_level")


def test_unexpected_os_error_from_source_is_isolated(make_engine, session):
    engine = make_engine([FakeSource(CPU_USAGE, error=OSError("boom")), FakeSource(MEMORY_USAGE, 10.0)])
    engine.tick()

    assert state_topic("cpu_usage") not in session.topics()
    assert state_topic("memory_usage") in session.topics()


@pytest.mark.parametrize("error", [ZeroDivisionError("float division by zero"), KeyError("percent"),
                                   AttributeError("'NoneType' object has no attribute 'percent'")])
def test_any_source_error_is_isolated(make_engine, session, error):
    engine = make_engine([FakeSource(CPU_USAGE, error=error), FakeSource(MEMORY_USAGE, 10.0)])
    engine.tick()
    engine.tick()

    assert state_topic("cpu_usage") not in session.topics()
    assert session.topics().count(state_topic("memory_usage")) == 2


def test_failed_discovery_aborts_tick_and_retries(make_engine, session, sources):
    engine = make_engine(sources)
    session.fail_topics.add(discovery_topic("swap_usage"))

    engine.tick()

    assert engine.registry.is_announced("cpu_usage")
    assert engine.registry.is_announced("memory_usage")
    assert not engine.registry.is_announced("swap_usage")
    assert not [t for t in session.topics() if t.startswith("sysmon2mqtt/") and not t.endswith("availability")]
    assert sources[0].calls == 0

    session.fail_topics.clear()
    session.messages.clear()
    engine.tick()

    discoveries = [t for t in session.topics() if t.endswith("/config")]
    assert discoveries == [discovery_topic(i) for i in ("swap_usage", "battery_level", "battery_state")]
    assert state_topic("cpu_usage") in session.topics()


def test_value_publish_failure_skips_only_that_metric(make_engine, session, sources):
    engine = make_engine(sources)
    session.fail_topics.add(state_topic("memory_usage"))

    engine.tick()

    assert state_topic("cpu_usage") in session.topics()
    assert state_topic("swap_usage") in session.topics()


def test_outage_then_recovery(make_engine, session, sources):
    engine = make_engine(sources, update_interval=1.0)
    engine.tick()
    before = len(session.messages)

    session.drop()
    for _ in range(5):
        engine.tick()
    assert len(session.messages) == before

    session.reconnect()
    engine.tick()
    after = session.topics()[before:]
    assert after[0] == "sysmon2mqtt/testhost/availability"
    assert after[1:6] == [discovery_topic(i) for i in ALL_IDS]
    assert state_topic("cpu_usage") in after[6:]


def test_reconnect_during_tick_never_publishes_value_before_discovery(make_engine, session):
    reconnect_once = []

    def reconnect_mid_tick():
        if not reconnect_once:
            reconnect_once.append(True)
            session.reconnect()

    engine = make_engine([FakeSource(CPU_USAGE, 1.0)])
    engine.tick()
    session.messages.clear()
    engine.sources["cpu_usage"].on_sample = reconnect_mid_tick

    engine.tick()
    assert session.messages == []

    engine.tick()
    assert session.topics()[1:] == [discovery_topic("cpu_usage"), state_topic("cpu_usage")]


def test_hub_restart_triggers_reannouncement(make_engine, session, topics, sources):
    engine = make_engine(sources)
    engine.tick()
    session.messages.clear()

    engine._on_hub_status(topics.hub_status_topic, b"offline")
    engine.tick()
    assert not [t for t in session.topics() if t.endswith("/config")]

    engine._on_hub_status(topics.hub_status_topic, b"online")
    engine.tick()
    assert [t for t in session.topics() if t.endswith("/config")] == [discovery_topic(i) for i in ALL_IDS]


def test_reconnect_and_hub_restart_together_reset_once(make_engine, session, topics, sources):
    registry = CountingRegistry()
    engine = make_engine(sources, registry=registry)
    engine.tick()

    session.reconnect()
    engine._on_hub_status(topics.hub_status_topic, b"online")
    engine.tick()
    engine.tick()

    assert registry.resets == 1
    assert session.topics().count(discovery_topic("cpu_usage")) == 2


def test_retained_hub_status_replay_is_ignored(make_engine, session, topics, sources):
    registry = CountingRegistry()
    engine = make_engine(sources, registry=registry)
    engine.tick()

    reconnects = 3
    for _ in range(reconnects):
        session.reconnect()
        engine.tick()
        # resubscribing after the reconnect redelivers the retained status
        engine._on_hub_status(topics.hub_status_topic, b"online", True)
        engine.tick()

    assert registry.resets == reconnects
    assert session.topics().count(discovery_topic("cpu_usage")) == reconnects + 1


def test_stalled_source_reports_unavailable_without_resubmitting(make_engine, session):
    release = threading.Event()
    slow = FakeSource(SWAP_USAGE, 5.0, block=release)
    engine = make_engine([FakeSource(CPU_USAGE, 1.0), slow], sample_timeout=0.1)
    try:
        engine.tick()
        engine.tick()
        assert slow.calls == 1
        assert session.topics().count(state_topic("cpu_usage")) == 2
        assert state_topic("swap_usage") not in session.topics()
    finally:
        release.set()


def test_availability_disabled(make_engine, session, sources):
    engine = make_engine(sources, availability=False)
    engine.tick()

    assert "sysmon2mqtt/testhost/availability" not in session.topics()
    payload = json.loads(session.messages[0][1])
    assert "availability_topic" not in payload


def test_stale_entities_are_removed(make_engine, session, tmp_path):
    state_file = ComponentStateFile(tmp_path / "state.json")
    state_file.save({"cpu_usage": "sensor", "drive_old": "sensor"})
    engine = make_engine([FakeSource(CPU_USAGE, 1.0)], state_file=state_file)

    engine.tick()

    removal = [(t, p) for t, p, _, _ in session.messages if t == discovery_topic("drive_old")]
    assert removal == [(discovery_topic("drive_old"), "")]
    assert state_file.load() == {"cpu_usage": "sensor"}

    session.reconnect()
    session.messages.clear()
    engine.tick()
    assert discovery_topic("drive_old") not in session.topics()


def test_missing_source_is_fatal(session, topics):
    registry = CountingRegistry()
    registry.register_all([CPU_USAGE, UPTIME])
    with pytest.raises(FatalConfigError):
        ReportingEngine(registry, [FakeSource(CPU_USAGE)], session, topics, {})


def test_run_stops_and_shuts_down(make_engine, session):
    stop = threading.Event()
    engine = make_engine([FakeSource(CPU_USAGE, 1.0, on_sample=stop.set)], stop_event=stop, update_interval=60)

    engine.run("mqtt://broker.local", None)

    assert session.connect_calls == [("mqtt://broker.local", None)]
    assert "homeassistant/status" in session.subscriptions
    assert state_topic("cpu_usage") in session.topics()
    assert session.shutdown_calls == 1


def test_run_returns_when_stopped_before_connect(make_engine, session):
    session.connect = lambda url, credentials=None, stop_event=None: False
    engine = make_engine([FakeSource(CPU_USAGE, 1.0)])

    engine.run("mqtt://broker.local")

    assert session.messages == []
    assert session.shutdown_calls == 1


def test_duplicate_drive_names_last_wins(make_engine):
    drives = [DriveConfig(path="/", name="root"), DriveConfig(path="/tmp", name="root")]
    sources = build_sources(drives)
    engine = make_engine(sources)

    ids = [d.metric_id for d in engine.registry.all_definitions_in_order()]
    assert ids.count("drive_root") == 1
    assert engine.sources["drive_root"].drive.path == "/tmp"


def test_check_drives_rejects_missing_path(tmp_path):
    check_drives([DriveConfig(path=str(tmp_path), name="tmp")])
    with pytest.raises(FatalConfigError):
        check_drives([DriveConfig(path=str(tmp_path / "missing"), name="missing")])


def test_run_fails_fast_on_inaccessible_drive(tmp_path):
    config = Config(drives=[DriveConfig(path=str(tmp_path / "missing"), name="gone")])
    with pytest.raises(FatalConfigError):
        run(config)


def test_full_first_tick_with_real_sources(make_engine, session):
    sources = build_sources([DriveConfig(path="/", name="root")])
    engine = make_engine(sources, update_interval=1.0)

    engine.tick()

    topics = session.topics()
    for metric_id in ("cpu_usage", "memory_usage", "swap_usage", "drive_root", "battery_level", "battery_state"):
        assert discovery_topic(metric_id) in topics
    for metric_id in ("cpu_usage", "memory_usage", "swap_usage", "drive_root", "uptime"):
        assert state_topic(metric_id) in topics
    assert all(retain for _, _, retain, _ in session.messages)
    assert_discovery_before_values(topics)
