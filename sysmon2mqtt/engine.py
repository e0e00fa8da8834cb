import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, Dict, Iterable, List

import psutil

from .config import Config, DriveConfig
from .credentials import Credentials, resolve_credentials
from .device import ORIGIN, DeviceInfo
from .discovery import ComponentStateFile, DiscoveryRegistry, TopicLayout, component_for, discovery_payload, format_state
from .errors import FatalConfigError, PublishError, SampleUnavailable
from .metrics import MetricSource, SampledMetric, build_sources
from .session import BrokerSession

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "~/.sysmon2mqtt_state.json"
DISCOVERY_QOS = 1
STATE_QOS = 0


class ReportingEngine:
    """
    Drives the sample -> announce -> publish cycle until stopped.

    Discovery for a metric is always published in the current connection
    epoch before any of its values; a reconnect resets every announcement.
    """

    def __init__(self, registry: DiscoveryRegistry, sources: Iterable[MetricSource], session: BrokerSession,
                 topics: TopicLayout, device: Dict[str, Any], update_interval: float = 30.0,
                 availability: bool = True, state_file: ComponentStateFile | None = None,
                 sample_timeout: float = 5.0, shutdown_timeout: float = 5.0,
                 stop_event: threading.Event | None = None) -> None:
        self.registry = registry
        self.sources: Dict[str, MetricSource] = {source.metric_id: source for source in sources}
        missing = [d.metric_id for d in registry.all_definitions_in_order() if d.metric_id not in self.sources]
        if missing:
            raise FatalConfigError(f"No metric source for: {', '.join(missing)}")
        self.session = session
        self.topics = topics
        self.device = device
        self.update_interval = update_interval
        self.availability = availability
        self.state_file = state_file
        self.sample_timeout = sample_timeout
        self.shutdown_timeout = shutdown_timeout
        self.stop_event = stop_event or threading.Event()
        self._hub_online = threading.Event()
        self._pending: Dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=max(1, len(self.sources)), thread_name_prefix="sample")

    def run(self, server_url: str, credentials: Credentials | None = None) -> None:
        self.session.subscribe(self.topics.hub_status_topic, self._on_hub_status)
        try:
            if not self.session.connect(server_url, credentials, self.stop_event):
                logger.info("Stopped before the broker connection was established")
                return

            logger.info(f"Starting monitoring loop with {self.update_interval}s interval")
            next_tick = time.monotonic()
            while not self.stop_event.is_set():
                self.tick()
                next_tick += self.update_interval
                now = time.monotonic()
                if next_tick < now:
                    logger.debug("Tick overran the update interval")
                    next_tick = now
                self.stop_event.wait(next_tick - now)
        finally:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self.session.shutdown(self.shutdown_timeout)

    def tick(self) -> None:
        # Read the epoch before the reconnect flag so a reconnect in between
        # makes this tick's publishes stale instead of misordered.
        epoch = self.session.epoch
        reconnected = self.session.was_reconnected_since_last_check()
        hub_restarted = self._hub_online.is_set()
        self._hub_online.clear()
        if reconnected or hub_restarted:
            reason = "Broker connection was rebuilt" if reconnected else "Home Assistant restarted"
            logger.info(f"{reason}, re-announcing all entities")
            self.registry.reset_all_announced()

        if self.registry.unannounced() and not self._announce(epoch):
            return
        self._publish_values(self._sample_all(), epoch)

    def _announce(self, epoch: int) -> bool:
        try:
            if self.availability:
                self.session.publish(self.topics.availability_topic, "online", retain=True,
                                     qos=DISCOVERY_QOS, epoch=epoch)
            for definition in self.registry.unannounced():
                topic = self.topics.discovery_topic(definition.metric_id, component_for(definition))
                payload = discovery_payload(definition, self.topics, self.device, ORIGIN, self.availability)
                logger.info(f"Publishing discovery config to {topic}")
                self.session.publish(topic, json.dumps(payload), retain=True, qos=DISCOVERY_QOS, epoch=epoch)
                self.registry.mark_announced(definition.metric_id)
        except PublishError as e:
            logger.warning(f"Discovery publish failed, retrying next tick: {e}")
            return False

        self._remove_stale_entities(epoch)
        return True

    def _remove_stale_entities(self, epoch: int) -> None:
        """Clear discovery configs for entities no longer configured."""
        if self.state_file is None:
            return
        current = {d.metric_id: component_for(d) for d in self.registry.all_definitions_in_order()}
        previous = self.state_file.load()
        removed = {metric_id: component for metric_id, component in previous.items() if metric_id not in current}
        if removed:
            logger.info(f"Removing {len(removed)} entit{'y' if len(removed) == 1 else 'ies'} from discovery")
        try:
            for metric_id, component in removed.items():
                self.session.publish(self.topics.discovery_topic(metric_id, component), "", retain=True,
                                     qos=DISCOVERY_QOS, epoch=epoch)
        except PublishError as e:
            # the state file keeps the old entries, so the next announcement retries
            logger.warning(f"Could not remove stale entities: {e}")
            return
        if previous != current:
            self.state_file.save(current)

    def _sample_all(self) -> List[SampledMetric]:
        samples: List[SampledMetric] = []
        futures: Dict[str, Future] = {}
        for definition in self.registry.all_definitions_in_order():
            metric_id = definition.metric_id
            if not self.registry.is_announced(metric_id):
                continue
            pending = self._pending.get(metric_id)
            if pending is not None and not pending.done():
                logger.warning(f"Previous sample of {metric_id} is still running, reporting it unavailable")
                samples.append(SampledMetric.unavailable(metric_id))
                continue
            futures[metric_id] = self._executor.submit(self.sources[metric_id].sample)
        self._pending.update(futures)

        deadline = time.monotonic() + self.sample_timeout
        for metric_id, future in futures.items():
            try:
                samples.append(future.result(timeout=max(0.0, deadline - time.monotonic())))
            except FutureTimeoutError:
                logger.warning(f"Sampling {metric_id} timed out after {self.sample_timeout}s")
                samples.append(SampledMetric.unavailable(metric_id))
            except (SampleUnavailable, OSError, RuntimeError, ValueError, psutil.Error) as e:
                logger.warning(f"Could not sample {metric_id}: {e}")
                samples.append(SampledMetric.unavailable(metric_id))
            except Exception:
                logger.exception(f"Unexpected error sampling {metric_id}")
                samples.append(SampledMetric.unavailable(metric_id))
        return samples

    def _publish_values(self, samples: List[SampledMetric], epoch: int) -> None:
        published = 0
        for sample in samples:
            if not sample.available:
                continue
            definition = self.registry.get(sample.metric_id)
            try:
                self.session.publish(self.topics.state_topic(sample.metric_id), format_state(definition, sample),
                                     retain=True, qos=STATE_QOS, epoch=epoch)
                published += 1
            except PublishError as e:
                logger.warning(f"Failed to publish {sample.metric_id}: {e}")
                if e.connection_lost:
                    logger.warning("Skipping remaining values until the broker connection is back")
                    break
        logger.debug(f"Published {published}/{len(samples)} metric values")

    def _on_hub_status(self, topic: str, payload: bytes, retained: bool = False) -> None:
        # the broker replays a retained status on every (re)subscribe; only a
        # live birth message means the hub restarted
        if payload == b"online" and not retained:
            self._hub_online.set()


def check_drives(drives: List[DriveConfig]) -> None:
    for drive in drives:
        if not Path(drive.path).is_dir():
            raise FatalConfigError(f"Drive path {drive.path!r} for '{drive.name}' is not an accessible directory")


def run(config: Config, stop_event: threading.Event | None = None) -> int:
    """Run the daemon until stop_event is set. Raises FatalConfigError on bad configuration."""
    logger.info("Application start")
    check_drives(config.drives)
    credentials = resolve_credentials(config)

    device = DeviceInfo()
    topics = TopicLayout(device.device_id, config.discovery_prefix)
    sources = build_sources(config.drives)
    registry = DiscoveryRegistry()
    registry.register_all(source.definition for source in sources)

    session = BrokerSession(
        client_id=f"sysmon2mqtt_{device.device_id}",
        availability_topic=topics.availability_topic if config.availability else None,
    )
    engine = ReportingEngine(
        registry,
        sources,
        session,
        topics,
        device.discovery_block(),
        update_interval=config.update_interval,
        availability=config.availability,
        state_file=ComponentStateFile(config.state_file or DEFAULT_STATE_FILE),
        stop_event=stop_event,
    )
    engine.run(config.mqtt_server, credentials)
    return 0
