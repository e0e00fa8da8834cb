import argparse
import getpass
import logging
import signal
import sys
import threading
from typing import List

from . import __version__
from .config import DEFAULT_CONFIG_FILE, load_config
from .credentials import set_password
from .engine import run
from .errors import FatalConfigError

logger = logging.getLogger("sysmon2mqtt")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sysmon2mqtt",
        description="sysmon2mqtt - push system statistics to an MQTT broker for Home Assistant",
    )
    parser.add_argument("--config-file", default=DEFAULT_CONFIG_FILE,
                        help=f"Configuration file to use (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the daemon (default)")
    subparsers.add_parser("set-password", help="Store the MQTT password for the configured user in the system keyring")
    return parser


def prompt_password() -> str:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Confirm password: "):
        raise FatalConfigError("Passwords do not match")
    if not password:
        raise FatalConfigError("Password must not be empty")
    return password


def cmd_set_password(config_file: str) -> int:
    config = load_config(config_file)
    if not config.username:
        raise FatalConfigError(
            "You must set the username for login with the MQTT server before you can set the user's password"
        )
    set_password(config.username, prompt_password())
    print(f"Password for '{config.username}' stored in the system keyring")
    return 0


def cmd_run(config_file: str) -> int:
    config = load_config(config_file)
    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping sysmon2mqtt...")
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    return run(config, stop_event)


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    if command == "run":
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    try:
        if command == "set-password":
            return cmd_set_password(args.config_file)
        return cmd_run(args.config_file)
    except FatalConfigError as e:
        logger.error(f"Fatal error: {e}")
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
