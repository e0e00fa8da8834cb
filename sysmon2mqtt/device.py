import logging
import platform
import socket
from pathlib import Path
from typing import Any, Dict

from . import __version__

logger = logging.getLogger(__name__)

DMI_DIR = Path("/sys/class/dmi/id")
DMI_FIELDS = ("sys_vendor", "product_name")

# DMI vendor/product substring -> hypervisor name reported in hw_version
HYPERVISORS = {
    "qemu": "qemu",
    "kvm": "kvm",
    "vmware": "vmware",
    "virtualbox": "virtualbox",
    "innotek": "virtualbox",
    "xen": "xen",
    "virtual machine": "hyper-v",
    "bhyve": "bhyve",
}


def device_id_for(hostname: str) -> str:
    return hostname.replace('.', '_').replace('-', '_')


def os_description() -> str:
    """Human readable OS name, e.g. 'Debian GNU/Linux 12 (bookworm)'."""
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        release = {}
    return release.get("PRETTY_NAME") or release.get("NAME") or f"{platform.system()} {platform.release()}"


def detect_hypervisor(dmi_dir: Path = DMI_DIR) -> str | None:
    for name in DMI_FIELDS:
        try:
            value = (dmi_dir / name).read_text(encoding="utf-8").strip().lower()
        except OSError:
            continue
        for marker, hypervisor in HYPERVISORS.items():
            if marker in value:
                return hypervisor
    return None


class DeviceInfo:
    """Describes this host as a Home Assistant device."""

    def __init__(self, hostname: str | None = None) -> None:
        self.hostname = hostname or socket.gethostname()
        self.device_id = device_id_for(self.hostname)
        self.os_model = os_description()
        hypervisor = detect_hypervisor()
        self.hw_model = f"{platform.machine()} (virtual: {hypervisor})" if hypervisor else platform.machine()
        logger.debug(f"Host {self.hostname} ({self.os_model}, {self.hw_model}) as device {self.device_id}")

    def discovery_block(self) -> Dict[str, Any]:
        return {
            "identifiers": [self.device_id],
            "name": self.hostname,
            "model": self.os_model,
            "manufacturer": "sysmon2mqtt",
            "sw_version": f"{platform.system()} {platform.release()}",
            "hw_version": self.hw_model,
        }


ORIGIN = {
    "name": "sysmon2mqtt",
    "sw_version": __version__,
}
