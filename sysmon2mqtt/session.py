import logging
import random
import threading
from enum import Enum
from typing import Any, Callable, Dict

import paho.mqtt.client as mqtt

from .config import BrokerAddress, parse_broker_url
from .credentials import Credentials
from .errors import BrokerConnectionError, PublishError

logger = logging.getLogger(__name__)

# (topic, payload, retained)
MessageCallback = Callable[[str, bytes, bool], None]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class Backoff:
    """
    Exponential backoff with downward jitter.

    Successive delays never decrease and never exceed ``cap``, however long
    the outage lasts. Call reset() once a connection succeeds.
    """

    def __init__(self, initial: float = 1.0, factor: float = 2.0, cap: float = 60.0,
                 jitter: float = 0.1, rng: random.Random | None = None) -> None:
        if initial <= 0 or cap < initial:
            raise ValueError(f"Backoff needs 0 < initial <= cap, got initial={initial} cap={cap}")
        if factor < 1:
            raise ValueError(f"Backoff factor must be >= 1, got {factor}")
        if not 0 <= jitter < 1:
            raise ValueError(f"Backoff jitter must be in [0, 1), got {jitter}")
        self.initial = initial
        self.factor = factor
        self.cap = cap
        self.jitter = jitter
        self._rng = rng or random.Random()
        self.reset()

    def reset(self) -> None:
        self._attempt = 0
        self._last = 0.0

    def next_delay(self) -> float:
        raw = min(self.cap, self.initial * self.factor ** self._attempt)
        if raw < self.cap:
            self._attempt += 1
        jittered = raw * (1 - self.jitter * self._rng.random())
        delay = min(self.cap, max(self._last, jittered))
        self._last = delay
        return delay


def _make_client(client_id: str, transport: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, transport=transport)


class BrokerSession:
    """
    Owns the single MQTT connection of the daemon.

    The paho network thread delivers connect/disconnect callbacks; they only
    flip state under ``_lock``. Everything else runs on the caller's thread.
    Each successful CONNACK starts a new epoch.
    """

    def __init__(self, client_id: str, availability_topic: str | None = None, backoff: Backoff | None = None,
                 keepalive: int = 60, client_factory: Callable[[str, str], Any] | None = None) -> None:
        self.client_id = client_id
        self.availability_topic = availability_topic
        self.keepalive = keepalive
        self._backoff = backoff or Backoff()
        self._client_factory = client_factory or _make_client
        self._client: Any = None
        self._lock = threading.Lock()
        self._state = SessionState.DISCONNECTED
        self._epoch = 0
        self._reconnected = False
        self._shutting_down = False
        self._connected_event = threading.Event()
        self._subscriptions: Dict[str, MessageCallback] = {}

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    def connect(self, server_url: str, credentials: Credentials | None = None,
                stop_event: threading.Event | None = None) -> bool:
        """
        Connect to the broker, retrying with backoff until it answers.

        Returns True once the broker accepted the connection, False if
        ``stop_event`` was set first. The password is handed to paho and
        not kept on the session.
        """
        address = parse_broker_url(server_url)
        stop_event = stop_event or threading.Event()

        client = self._client_factory(self.client_id, address.transport)
        if address.transport == "websockets":
            client.ws_set_options(path=address.path)
        if address.tls:
            client.tls_set()
        if credentials:
            client.username_pw_set(credentials.username, credentials.password)
        if self.availability_topic:
            client.will_set(self.availability_topic, "offline", qos=1, retain=True)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=max(1, int(self._backoff.initial)),
                                   max_delay=max(1, int(self._backoff.cap)))
        client.enable_logger(logger)

        with self._lock:
            self._client = client
            self._state = SessionState.CONNECTING
            self._shutting_down = False
        self._backoff.reset()

        logger.info(f"Connecting to MQTT broker at {address.host}:{address.port}")
        while not stop_event.is_set():
            try:
                self._open(client, address)
                break
            except BrokerConnectionError as e:
                delay = self._backoff.next_delay()
                logger.warning(f"Failed to connect to MQTT broker: {e} (retrying in {delay:.1f}s)")
                stop_event.wait(delay)
        else:
            self._set_state(SessionState.DISCONNECTED)
            return False

        # paho keeps reconnecting on its own network thread from here on
        client.loop_start()
        while not self._connected_event.wait(timeout=0.5):
            if stop_event.is_set():
                return False
        return True

    def publish(self, topic: str, payload: str, retain: bool = True, qos: int = 0,
                epoch: int | None = None) -> None:
        """
        Publish one message on the live connection.

        When ``epoch`` is given, the publish is refused if the connection was
        rebuilt since then. Raises PublishError on any failure.
        """
        with self._lock:
            if self._state is not SessionState.CONNECTED:
                raise PublishError(f"Not connected, dropping publish to {topic}", connection_lost=True)
            if epoch is not None and epoch != self._epoch:
                raise PublishError(f"Connection was rebuilt, dropping stale publish to {topic}",
                                   connection_lost=True)
            info = self._client.publish(topic, payload, qos=qos, retain=retain)

        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            self._mark_reconnecting()
            raise PublishError(f"Connection lost while publishing to {topic}", connection_lost=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")
        logger.debug(f"Published {topic} -> {payload}")

    def subscribe(self, topic: str, callback: MessageCallback) -> None:
        """Subscribe now if connected, and again after every reconnect."""
        with self._lock:
            self._subscriptions[topic] = callback
            client = self._client if self._state is SessionState.CONNECTED else None
        if client is not None:
            client.subscribe(topic)

    def was_reconnected_since_last_check(self) -> bool:
        with self._lock:
            reconnected = self._reconnected
            self._reconnected = False
            return reconnected

    def shutdown(self, timeout: float = 5.0) -> None:
        """Publish 'offline' (best effort within timeout) and disconnect."""
        with self._lock:
            self._shutting_down = True
            client = self._client
            connected = self._state is SessionState.CONNECTED

        if client is None:
            self._set_state(SessionState.DISCONNECTED)
            return

        if connected and self.availability_topic:
            try:
                info = client.publish(self.availability_topic, "offline", qos=1, retain=True)
                info.wait_for_publish(timeout)
            except (RuntimeError, ValueError) as e:
                logger.warning(f"Could not publish offline availability: {e}")

        client.disconnect()
        client.loop_stop()
        self._connected_event.clear()
        self._set_state(SessionState.DISCONNECTED)
        logger.info("Disconnected from MQTT broker")

    def _open(self, client: Any, address: BrokerAddress) -> None:
        try:
            client.connect(address.host, address.port, keepalive=self.keepalive)
        except OSError as e:
            raise BrokerConnectionError(f"{address.host}:{address.port}: {e}") from e

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self._state = state

    def _mark_reconnecting(self) -> None:
        with self._lock:
            if self._state is SessionState.CONNECTED:
                self._state = SessionState.RECONNECTING
        self._connected_event.clear()

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code != 0:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")
            self._mark_reconnecting()
            return

        with self._lock:
            self._epoch += 1
            if self._epoch > 1:
                self._reconnected = True
            self._state = SessionState.CONNECTED
            topics = list(self._subscriptions)
            epoch = self._epoch
        self._backoff.reset()
        for topic in topics:
            client.subscribe(topic)
        self._connected_event.set()
        logger.info(f"Connected to MQTT broker (epoch {epoch})")

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        with self._lock:
            if self._shutting_down:
                self._state = SessionState.DISCONNECTED
            else:
                self._state = SessionState.RECONNECTING
            shutting_down = self._shutting_down
        self._connected_event.clear()
        if not shutting_down:
            logger.warning(f"Disconnected from MQTT broker ({reason_code}), reconnecting")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.items())
        for topic, callback in subscriptions:
            if mqtt.topic_matches_sub(topic, msg.topic):
                try:
                    callback(msg.topic, msg.payload, bool(msg.retain))
                except Exception:
                    # an exception here would kill paho's network thread
                    logger.exception(f"Error handling message on {msg.topic}")
