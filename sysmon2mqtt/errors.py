class Sysmon2MqttError(Exception):
    """Base class for all sysmon2mqtt errors."""


class FatalConfigError(Sysmon2MqttError):
    """Configuration is malformed or unusable. Never retried."""


class SecretRetrievalError(FatalConfigError):
    """A username is configured but its password could not be found."""


class BrokerConnectionError(Sysmon2MqttError):
    """The broker could not be reached or refused the connection."""


class PublishError(Sysmon2MqttError):
    def __init__(self, message: str, connection_lost: bool = False) -> None:
        super().__init__(message)
        self.connection_lost = connection_lost


class SampleUnavailable(Sysmon2MqttError):
    """A metric has no value this tick, e.g. no battery on a desktop."""
