import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

import psutil

from .config import DriveConfig
from .errors import SampleUnavailable

logger = logging.getLogger(__name__)


class Unit(Enum):
    PERCENT = "percent"
    BYTES = "bytes"
    SECONDS = "seconds"
    BOOLEAN = "boolean"
    ENUM = "enum"

    @property
    def symbol(self) -> str | None:
        """unit_of_measurement as Home Assistant expects it."""
        return {Unit.PERCENT: "%", Unit.BYTES: "B", Unit.SECONDS: "s"}.get(self)


class ValueKind(Enum):
    FLOAT = "float"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ENUM = "enum"


@dataclass(frozen=True)
class MetricDefinition:
    metric_id: str
    name: str
    unit: Unit
    value_kind: ValueKind
    device_class: str | None = None
    state_class: str | None = None
    icon: str | None = None
    options: Tuple[str, ...] = ()


@dataclass
class SampledMetric:
    metric_id: str
    value: Any
    available: bool = True
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def unavailable(cls, metric_id: str) -> "SampledMetric":
        return cls(metric_id, None, available=False)


BATTERY_STATES = ("charging", "discharging", "full", "empty", "unknown")

CPU_USAGE = MetricDefinition(
    "cpu_usage", "CPU Usage", Unit.PERCENT, ValueKind.FLOAT,
    state_class="measurement", icon="mdi:cpu-64-bit",
)
MEMORY_USAGE = MetricDefinition(
    "memory_usage", "Memory Usage", Unit.PERCENT, ValueKind.FLOAT,
    state_class="measurement", icon="mdi:memory",
)
SWAP_USAGE = MetricDefinition(
    "swap_usage", "Swap Usage", Unit.PERCENT, ValueKind.FLOAT,
    state_class="measurement", icon="mdi:memory",
)
BATTERY_LEVEL = MetricDefinition(
    "battery_level", "Battery Level", Unit.PERCENT, ValueKind.FLOAT,
    device_class="battery", state_class="measurement", icon="mdi:battery",
)
BATTERY_STATE = MetricDefinition(
    "battery_state", "Battery State", Unit.ENUM, ValueKind.ENUM,
    device_class="enum", icon="mdi:battery-charging", options=BATTERY_STATES,
)
UPTIME = MetricDefinition(
    "uptime", "Uptime", Unit.SECONDS, ValueKind.INTEGER,
    device_class="duration", state_class="total_increasing", icon="mdi:clock-outline",
)


def drive_metric_id(name: str) -> str:
    return "drive_" + re.sub(r"[^a-z0-9_]", "_", name.lower())


def drive_definition(drive: DriveConfig) -> MetricDefinition:
    return MetricDefinition(
        drive_metric_id(drive.name), f"Disk {drive.name} Usage", Unit.PERCENT, ValueKind.FLOAT,
        state_class="measurement", icon="mdi:harddisk",
    )


class MetricSource:
    """Reads one metric from the OS. Subclasses implement read()."""

    definition: MetricDefinition

    @property
    def metric_id(self) -> str:
        return self.definition.metric_id

    def read(self) -> Any:
        raise NotImplementedError

    def sample(self) -> SampledMetric:
        try:
            value = self.read()
        except SampleUnavailable as e:
            logger.debug(f"{self.metric_id} unavailable: {e}")
            return SampledMetric.unavailable(self.metric_id)
        return SampledMetric(self.metric_id, value)


class CpuSource(MetricSource):
    definition = CPU_USAGE

    def __init__(self) -> None:
        # The first non-blocking call only sets the baseline and returns 0.0
        psutil.cpu_percent(interval=None)

    def read(self) -> float:
        return round(psutil.cpu_percent(interval=None), 1)


class MemorySource(MetricSource):
    definition = MEMORY_USAGE

    def read(self) -> float:
        return round(psutil.virtual_memory().percent, 1)


class SwapSource(MetricSource):
    definition = SWAP_USAGE

    def read(self) -> float:
        return round(psutil.swap_memory().percent, 1)


class DriveSource(MetricSource):
    def __init__(self, drive: DriveConfig) -> None:
        self.drive = drive
        self.definition = drive_definition(drive)

    def read(self) -> float:
        try:
            disk = psutil.disk_usage(self.drive.path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read disk usage for {self.drive.path}: {e}")
            raise SampleUnavailable(str(e)) from e
        return round(disk.percent, 1)


def _read_battery():
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, OSError, RuntimeError) as e:
        raise SampleUnavailable(f"sensors_battery failed: {e}") from e
    if battery is None:
        raise SampleUnavailable("no battery present")
    return battery


class BatteryLevelSource(MetricSource):
    definition = BATTERY_LEVEL

    def read(self) -> float:
        return round(_read_battery().percent, 1)


class BatteryStateSource(MetricSource):
    definition = BATTERY_STATE

    def read(self) -> str:
        battery = _read_battery()
        if battery.power_plugged is None:
            return "unknown"
        if battery.power_plugged:
            return "full" if battery.percent >= 100 else "charging"
        return "empty" if battery.percent <= 0 else "discharging"


class UptimeSource(MetricSource):
    definition = UPTIME

    def read(self) -> int:
        return int(time.time() - psutil.boot_time())


def build_sources(drives: List[DriveConfig]) -> List[MetricSource]:
    """Built-in sources followed by one source per configured drive."""
    sources: List[MetricSource] = [
        CpuSource(),
        MemorySource(),
        SwapSource(),
        BatteryLevelSource(),
        BatteryStateSource(),
        UptimeSource(),
    ]
    seen: Dict[str, DriveConfig] = {}
    for drive in drives:
        source = DriveSource(drive)
        if source.metric_id in seen:
            logger.warning(
                f"Drive '{drive.name}' ({drive.path}) replaces '{seen[source.metric_id].name}' "
                f"({seen[source.metric_id].path}) as {source.metric_id}"
            )
        seen[source.metric_id] = drive
        sources.append(source)
    return sources
