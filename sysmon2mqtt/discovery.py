import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .metrics import MetricDefinition, SampledMetric, ValueKind

logger = logging.getLogger(__name__)

BASE_TOPIC = "sysmon2mqtt"


class DiscoveryRegistry:
    """Metric entities to announce, and whether each was announced this epoch."""

    def __init__(self) -> None:
        self._definitions: Dict[str, MetricDefinition] = {}
        self._announced: Dict[str, bool] = {}

    def register_all(self, definitions: Iterable[MetricDefinition]) -> None:
        # Re-registering an id keeps its first position and takes the newer definition.
        for definition in definitions:
            if definition.metric_id in self._definitions:
                logger.debug(f"Replacing definition for {definition.metric_id}")
            self._definitions[definition.metric_id] = definition
            self._announced[definition.metric_id] = False

    def get(self, metric_id: str) -> MetricDefinition:
        return self._definitions[metric_id]

    def mark_announced(self, metric_id: str) -> None:
        if metric_id not in self._definitions:
            raise KeyError(metric_id)
        self._announced[metric_id] = True

    def is_announced(self, metric_id: str) -> bool:
        return self._announced.get(metric_id, False)

    def reset_all_announced(self) -> None:
        self._announced = dict.fromkeys(self._definitions, False)

    def all_definitions_in_order(self) -> List[MetricDefinition]:
        return list(self._definitions.values())

    def unannounced(self) -> List[MetricDefinition]:
        return [d for d in self._definitions.values() if not self._announced[d.metric_id]]

    def __contains__(self, metric_id: object) -> bool:
        return metric_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def component_for(definition: MetricDefinition) -> str:
    return "binary_sensor" if definition.value_kind is ValueKind.BOOLEAN else "sensor"


class TopicLayout:
    def __init__(self, device_id: str, discovery_prefix: str = "homeassistant") -> None:
        self.device_id = device_id
        self.discovery_prefix = discovery_prefix
        self.base_topic = f"{BASE_TOPIC}/{device_id}"
        self.availability_topic = f"{self.base_topic}/availability"
        self.hub_status_topic = f"{discovery_prefix}/status"

    def discovery_topic(self, metric_id: str, component: str = "sensor") -> str:
        return f"{self.discovery_prefix}/{component}/{self.device_id}/{metric_id}/config"

    def state_topic(self, metric_id: str) -> str:
        return f"{self.base_topic}/{metric_id}"


def discovery_payload(definition: MetricDefinition, topics: TopicLayout, device: Dict[str, Any],
                      origin: Dict[str, Any] | None = None, availability: bool = True) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "name": definition.name,
        "unique_id": f"{topics.device_id}_{definition.metric_id}",
        "object_id": f"{topics.device_id}_{definition.metric_id}",
        "state_topic": topics.state_topic(definition.metric_id),
        "value_template": "{{ value }}",
        "device": device,
    }
    if origin:
        payload["origin"] = origin
    if availability:
        payload["availability_topic"] = topics.availability_topic
    if definition.unit.symbol:
        payload["unit_of_measurement"] = definition.unit.symbol
    if definition.device_class:
        payload["device_class"] = definition.device_class
    if definition.state_class:
        payload["state_class"] = definition.state_class
    if definition.icon:
        payload["icon"] = definition.icon
    if definition.options:
        payload["options"] = list(definition.options)
    if definition.value_kind is ValueKind.BOOLEAN:
        payload["payload_on"] = "ON"
        payload["payload_off"] = "OFF"
    return payload


def format_state(definition: MetricDefinition, sample: SampledMetric) -> str:
    """Render a sampled value as the raw state payload."""
    kind = definition.value_kind
    if kind is ValueKind.FLOAT:
        return f"{float(sample.value):.1f}"
    if kind is ValueKind.INTEGER:
        return str(int(sample.value))
    if kind is ValueKind.BOOLEAN:
        return "ON" if sample.value else "OFF"
    return str(sample.value)


class ComponentStateFile:
    """
    Remembers which entities the last complete announcement contained, so
    entities dropped from the configuration can be removed from the hub.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
            return dict(data.get("components", {}))
        except (json.JSONDecodeError, OSError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Could not read state file {self.path}: {e}")
            return {}

    def save(self, components: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({"components": components}, indent=2))
        except OSError as e:
            logger.warning(f"Could not write state file {self.path}: {e}")
