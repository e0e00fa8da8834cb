import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlsplit

import yaml

from .errors import FatalConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/etc/sysmon2mqtt.yaml"

# scheme -> (transport, tls, default port)
BROKER_SCHEMES: Dict[str, tuple] = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


@dataclass
class DriveConfig:
    path: str
    name: str


@dataclass
class PasswordSource:
    """Where the broker password lives: the OS keyring or a secret file."""
    kind: str = "keyring"
    secret_file: str | None = None

    def to_yaml(self) -> Any:
        if self.kind == "keyring":
            return "keyring"
        return {"secret_file": self.secret_file}


@dataclass
class BrokerAddress:
    host: str
    port: int
    transport: str = "tcp"
    tls: bool = False
    path: str = "/mqtt"


@dataclass
class Config:
    mqtt_server: str = "mqtt://localhost"
    username: str | None = None
    password_source: PasswordSource = field(default_factory=PasswordSource)
    update_interval: float = 30.0
    drives: List[DriveConfig] = field(default_factory=lambda: [DriveConfig(path="/", name="root")])
    discovery_prefix: str = "homeassistant"
    availability: bool = True
    state_file: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mqtt_server": self.mqtt_server,
            "username": self.username,
            "password_source": self.password_source.to_yaml(),
            "update_interval": self.update_interval,
            "drives": [{"path": d.path, "name": d.name} for d in self.drives],
            "discovery_prefix": self.discovery_prefix,
            "availability": self.availability,
            "state_file": self.state_file,
        }


def parse_broker_url(url: str) -> BrokerAddress:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in BROKER_SCHEMES:
        raise FatalConfigError(
            f"Unsupported MQTT server scheme '{parts.scheme}' in {url!r}; "
            f"expected one of: {', '.join(sorted(BROKER_SCHEMES))}"
        )
    if not parts.hostname:
        raise FatalConfigError(f"MQTT server URL {url!r} has no host")
    transport, tls, default_port = BROKER_SCHEMES[scheme]
    try:
        port = parts.port or default_port
    except ValueError as e:
        raise FatalConfigError(f"Invalid port in MQTT server URL {url!r}: {e}") from e
    address = BrokerAddress(host=parts.hostname, port=port, transport=transport, tls=tls)
    if transport == "websockets" and parts.path:
        address.path = parts.path
    return address


def _parse_password_source(raw: Any) -> PasswordSource:
    if raw is None or raw == "keyring":
        return PasswordSource()
    if isinstance(raw, dict) and set(raw) == {"secret_file"} and raw["secret_file"]:
        return PasswordSource(kind="secret_file", secret_file=str(raw["secret_file"]))
    raise FatalConfigError(
        f"Invalid password_source {raw!r}: use 'keyring' or {{secret_file: <path>}}"
    )


def _parse_drives(raw: Any) -> List[DriveConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise FatalConfigError("'drives' must be a list of {path, name} entries")
    drives = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("path") or not entry.get("name"):
            raise FatalConfigError(f"Drive entry {entry!r} must have both 'path' and 'name'")
        path = str(entry["path"])
        if not Path(path).is_absolute():
            raise FatalConfigError(f"Drive path {path!r} for '{entry['name']}' must be absolute")
        drives.append(DriveConfig(path=path, name=str(entry["name"])))
    return drives


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build and validate a Config from a parsed YAML mapping."""
    if not isinstance(data, dict):
        raise FatalConfigError("Configuration file must contain a mapping")

    unknown = set(data) - set(Config().to_dict())
    if unknown:
        raise FatalConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    defaults = Config()
    mqtt_server = str(data.get("mqtt_server", defaults.mqtt_server))
    parse_broker_url(mqtt_server)

    try:
        update_interval = float(data.get("update_interval", defaults.update_interval))
    except (TypeError, ValueError) as e:
        raise FatalConfigError(f"Invalid update_interval: {e}") from e
    if update_interval <= 0:
        raise FatalConfigError(f"update_interval must be positive, got {update_interval}")

    availability = data.get("availability", defaults.availability)
    if not isinstance(availability, bool):
        raise FatalConfigError(f"availability must be true or false, got {availability!r}")
    state_file = data.get("state_file")
    if state_file is not None and not (isinstance(state_file, str) and state_file):
        raise FatalConfigError(f"state_file must be a file path, got {state_file!r}")

    username = data.get("username")
    return Config(
        mqtt_server=mqtt_server,
        username=str(username) if username else None,
        password_source=_parse_password_source(data.get("password_source")),
        update_interval=update_interval,
        drives=_parse_drives(data["drives"]) if "drives" in data else defaults.drives,
        discovery_prefix=str(data.get("discovery_prefix") or defaults.discovery_prefix),
        availability=availability,
        state_file=state_file,
    )


def load_config(path: str | Path) -> Config:
    """Load the YAML config at path, writing a default one if none exists."""
    path = Path(path)
    if not path.is_file():
        logger.info(f"No config file present at {path}, writing a default one")
        config = Config()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(yaml.safe_dump(config.to_dict(), sort_keys=False))
        except OSError as e:
            raise FatalConfigError(f"Could not write default config file {path}: {e}") from e
        return config

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except OSError as e:
        raise FatalConfigError(f"Could not read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise FatalConfigError(f"Failed to parse config file {path}: {e}") from e
    return config_from_dict(data)
