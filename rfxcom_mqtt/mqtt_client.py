from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import paho.mqtt.client as mqtt

from .errors import ConnectError, PublishError, TlsError
from .settings import MqttConfig

_LOGGER = logging.getLogger("rfxcom2mqtt.mqtt")

RETRY_DELAY_S = 30.0
STATE_TOPIC = "bridge/state"


@dataclass(frozen=True)
class MqttStatus:
    connected: bool
    last_error: str | None


@dataclass(frozen=True)
class BrokerMessage:
    topic: str
    payload: str


class MqttListener(Protocol):
    def subscribe_topics(self) -> list[str]: ...

    def on_message(self, message: BrokerMessage) -> None: ...


def topic_matches(pattern: str, topic: str) -> bool:
    """MQTT wildcard match. ``a/#`` also matches ``a`` itself."""
    pat = pattern.split("/")
    parts = topic.split("/")
    for i, seg in enumerate(pat):
        if seg == "#":
            # only valid as the last segment
            return i == len(pat) - 1
        if i >= len(parts):
            return False
        if seg != "+" and seg != parts[i]:
            return False
    return len(pat) == len(parts)


def _paho_client(config: MqttConfig) -> mqtt.Client:
    protocol = {3: mqtt.MQTTv31, 4: mqtt.MQTTv311, 5: mqtt.MQTTv5}.get(config.version, mqtt.MQTTv311)
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id, protocol=protocol)


class MqttClient:
    """Broker connection with a listener list, last will and background reconnect."""

    def __init__(
        self,
        config: MqttConfig,
        *,
        logger: logging.Logger | None = None,
        client_factory: Callable[[MqttConfig], Any] | None = None,
        retry_delay_s: float = RETRY_DELAY_S,
    ):
        self._config = config
        self._log = logger or _LOGGER
        self._client_factory = client_factory or _paho_client
        self._retry_delay_s = retry_delay_s

        self._lock = threading.Lock()
        self._client: Any = None
        self._connected = False
        self._last_error: str | None = None
        self._listeners: list[MqttListener] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._retry_task: asyncio.Task | None = None
        self._closing = False

    @property
    def config(self) -> MqttConfig:
        return self._config

    @property
    def base_topic(self) -> str:
        return self._config.base_topic

    def topic(self, suffix: str) -> str:
        return f"{self._config.base_topic}/{suffix}"

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(connected=self._connected, last_error=self._last_error)

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    # connection

    def _configure_tls(self, client: Any) -> None:
        cfg = self._config
        for label, path in (("CA", cfg.ca), ("certificate", cfg.cert), ("key", cfg.key)):
            if not path:
                continue
            try:
                with open(path, "rb") as f:
                    f.read()
            except OSError as e:
                raise TlsError(f"cannot read TLS {label} file {path}: {e}") from e
        try:
            client.tls_set(ca_certs=cfg.ca or None, certfile=cfg.cert or None, keyfile=cfg.key or None)
        except (OSError, ValueError) as e:
            raise TlsError(f"invalid TLS material: {e}") from e
        if not cfg.reject_unauthorized:
            client.tls_insecure_set(True)

    def _build_client(self) -> Any:
        cfg = self._config
        client = self._client_factory(cfg)
        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password or None)
        client.will_set(self.topic(STATE_TOPIC), "offline", qos=1, retain=True)
        if cfg.tls:
            self._configure_tls(client)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    async def connect(self) -> None:
        """Open the connection once. Raises ConnectError (or TlsError) on failure."""
        self._loop = asyncio.get_running_loop()
        self._closing = False
        cfg = self._config
        try:
            client = self._build_client()
        except TlsError as e:
            with self._lock:
                self._last_error = str(e)
            raise
        self._log.info("Connecting to MQTT server %s:%s", cfg.host, cfg.port)
        try:
            await asyncio.to_thread(client.connect, cfg.host, cfg.port, cfg.keepalive)
        except (OSError, ValueError) as e:
            with self._lock:
                self._last_error = str(e)
            raise ConnectError(f"MQTT connect to {cfg.host}:{cfg.port} failed: {e}") from e
        # paho reconnects by itself once the first connection succeeded
        client.reconnect_delay_set(min_delay=1, max_delay=max(1, int(self._retry_delay_s)))
        with self._lock:
            self._client = client
        client.loop_start()

    async def start(self) -> None:
        """Connect, falling back to a background retry loop on failure."""
        try:
            await self.connect()
        except ConnectError as e:
            self._log.error("%s; retrying every %ss", e, self._retry_delay_s)
            self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_loop())

    async def _retry_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._retry_delay_s)
            if self._closing:
                return
            try:
                await self.connect()
                return
            except ConnectError as e:
                self._log.warning("%s; next attempt in %ss", e, self._retry_delay_s)

    async def disconnect(self) -> None:
        self._closing = True
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        with self._lock:
            client, self._client = self._client, None
            connected = self._connected
            self._connected = False
        if client is None:
            return
        if connected:
            info = client.publish(self.topic(STATE_TOPIC), "offline", qos=1, retain=True)
            try:
                await asyncio.wait_for(asyncio.to_thread(info.wait_for_publish, 2.0), timeout=3.0)
            except (asyncio.TimeoutError, RuntimeError, ValueError, OSError):
                self._log.debug("Offline state not acknowledged before disconnect")
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        self._log.info("Disconnected from MQTT server")

    async def restart(self, config: MqttConfig | None = None) -> None:
        await self.disconnect()
        if config is not None:
            self._config = config
        await self.start()

    # paho callbacks, network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._last_error = f"connect refused: {reason_code}"
            self._log.error("MQTT connection refused: %s", reason_code)
            return
        with self._lock:
            self._connected = True
            self._last_error = None
            listeners = list(self._listeners)
        self._log.info("Connected to MQTT server")
        client.publish(self.topic(STATE_TOPIC), "online", qos=1, retain=True)
        for listener in listeners:
            self._subscribe_listener(client, listener)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
        if not self._closing:
            self._log.warning("MQTT connection lost (%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        message = BrokerMessage(topic=str(msg.topic), payload=msg.payload.decode("utf-8", errors="replace"))
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self.dispatch, message)
        else:
            self.dispatch(message)

    # listeners

    def _subscribe_listener(self, client: Any, listener: MqttListener) -> None:
        for pattern in listener.subscribe_topics():
            client.subscribe(pattern, qos=self._config.qos)
            self._log.debug("Subscribed to %s", pattern)

    def add_listener(self, listener: MqttListener) -> None:
        with self._lock:
            if listener in self._listeners:
                return
            self._listeners.append(listener)
            client = self._client if self._connected else None
        if client is not None:
            self._subscribe_listener(client, listener)

    def remove_listener(self, listener: MqttListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                return
            self._listeners.remove(listener)
            remaining = {p for other in self._listeners for p in other.subscribe_topics()}
            client = self._client if self._connected else None
        if client is not None:
            for pattern in listener.subscribe_topics():
                if pattern not in remaining:
                    client.unsubscribe(pattern)

    def dispatch(self, message: BrokerMessage) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            if not any(topic_matches(p, message.topic) for p in listener.subscribe_topics()):
                continue
            try:
                listener.on_message(message)
            except Exception:
                self._log.exception("MQTT listener failed for %s", message.topic)

    # publishing

    def _publish(self, topic: str, payload: Any, *, qos: int, retain: bool) -> None:
        with self._lock:
            client = self._client if self._connected else None
        if client is None:
            raise PublishError(f"not connected, dropping message for {topic}")
        if isinstance(payload, (dict, list)):
            data = json.dumps(payload, ensure_ascii=False)
        elif payload is None:
            data = ""
        else:
            data = str(payload)
        info = client.publish(topic, data, qos=qos, retain=retain)
        rc = getattr(info, "rc", 0)
        if rc:
            raise PublishError(f"publish to {topic} failed rc={rc}")

    def publish(
        self,
        topic: str,
        payload: Any,
        *,
        qos: int | None = None,
        retain: bool | None = None,
        use_prefix: bool = True,
    ) -> None:
        full = self.topic(topic) if use_prefix else topic
        try:
            self._publish(
                full,
                payload,
                qos=self._config.qos if qos is None else qos,
                retain=self._config.retain if retain is None else retain,
            )
        except PublishError as e:
            self._log.debug("%s", e)
