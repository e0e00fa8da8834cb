import logging
import os
from dataclasses import dataclass
from pathlib import Path

import keyring
from keyring.errors import KeyringError

from .config import Config
from .errors import SecretRetrievalError

logger = logging.getLogger(__name__)

KEYRING_SERVICE_NAME = "sysmon2mqtt"


@dataclass
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


class KeyringSecretProvider:
    def get_password(self, username: str) -> str:
        try:
            password = keyring.get_password(KEYRING_SERVICE_NAME, username)
        except KeyringError as e:
            raise SecretRetrievalError(f"Keyring error while reading password for '{username}': {e}") from e
        if password is None:
            raise SecretRetrievalError(
                f"No password for '{username}' in the system keyring. "
                "If you have not yet set the password, run `sysmon2mqtt set-password`."
            )
        return password


class SecretFileProvider:
    """Reads the password from a plaintext file that only its owner may access."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_password(self, username: str) -> str:
        try:
            stat = self.path.stat()
        except OSError as e:
            raise SecretRetrievalError(f"Failed to get password file metadata for {self.path}: {e}") from e

        # The file is not encrypted, so permissions have to be tight.
        if stat.st_mode & 0o777 != 0o600:
            raise SecretRetrievalError(
                f"Permission bits for password file {self.path} must be 0o600 (only owner can read and write)"
            )
        if stat.st_uid != os.getuid():
            raise SecretRetrievalError(f"Password file {self.path} must be owned by the current user")
        if stat.st_gid != os.getgid():
            raise SecretRetrievalError(f"Password file {self.path} must be owned by the current group")

        try:
            return self.path.read_text().rstrip("\r\n")
        except OSError as e:
            raise SecretRetrievalError(f"Failed to read password file {self.path}: {e}") from e


def secret_provider_for(config: Config):
    if config.password_source.kind == "secret_file":
        logger.info("Using secret file for MQTT password source")
        return SecretFileProvider(config.password_source.secret_file)
    logger.info("Using system keyring for MQTT password source")
    return KeyringSecretProvider()


def resolve_credentials(config: Config, provider=None) -> Credentials | None:
    """Return broker credentials, or None when no username is configured."""
    if not config.username:
        return None
    provider = provider or secret_provider_for(config)
    return Credentials(config.username, provider.get_password(config.username))


def set_password(username: str, password: str) -> None:
    try:
        keyring.set_password(KEYRING_SERVICE_NAME, username, password)
    except KeyringError as e:
        raise SecretRetrievalError(f"Keyring error while storing password for '{username}': {e}") from e
