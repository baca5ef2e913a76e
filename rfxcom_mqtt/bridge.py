from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from . import __version__
from .commands import parse_payload
from .discovery import HomeAssistantDiscovery, event_entity_id, topic_suffix
from .errors import CommandError, ConnectError, ValidationError
from .mqtt_client import STATE_TOPIC, BrokerMessage, MqttClient
from .protocols import FUNCTION_COMMANDS, GROUP_FUNCTIONS, resolve_function
from .rfxcom_gateway import RfxcomGateway
from .settings import LOG_LEVELS, DeviceOverride, Settings, SettingsFile
from .store import DeviceStore, StateStore

_LOGGER = logging.getLogger("rfxcom2mqtt.bridge")

BRIDGE_ACTIONS = ("restart", "stop", "reset_devices", "reset_state")
INFO_TOPIC = "bridge/info"
REQUEST_TOPIC = "bridge/request"
SHUTDOWN_STEP_TIMEOUT_S = 10.0


class BridgeState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class CoordinatorInfo:
    receiver_type_code: int = 0
    receiver_type: str = "Unknown"
    hardware_version: str = "0.0"
    firmware_version: int = 0
    firmware_type: str = "Unknown"
    enabled_protocols: list[str] = field(default_factory=list)

    @classmethod
    def from_status(cls, status: dict[str, Any]) -> "CoordinatorInfo":
        default = cls()
        return cls(
            receiver_type_code=status.get("receiverTypeCode", default.receiver_type_code),
            receiver_type=status.get("receiverType", default.receiver_type),
            hardware_version=status.get("hardwareVersion", default.hardware_version),
            firmware_version=status.get("firmwareVersion", default.firmware_version),
            firmware_type=status.get("firmwareType", default.firmware_type),
            enabled_protocols=list(status.get("enabledProtocols") or []),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "receiverTypeCode": self.receiver_type_code,
            "receiverType": self.receiver_type,
            "hardwareVersion": self.hardware_version,
            "firmwareVersion": self.firmware_version,
            "firmwareType": self.firmware_type,
            "enabledProtocols": list(self.enabled_protocols),
        }


@dataclass
class BridgeInfo:
    version: str
    log_level: str
    coordinator: CoordinatorInfo = field(default_factory=CoordinatorInfo)

    def as_dict(self) -> dict[str, Any]:
        return {"version": self.version, "logLevel": self.log_level, "coordinator": self.coordinator.as_dict()}


@dataclass(frozen=True)
class BridgeAction:
    action: str


@dataclass(frozen=True)
class DeviceAction:
    device_id: str
    entity_id: str
    action: str


def parse_action(raw: Any) -> BridgeAction | DeviceAction:
    """Validate an administrative action ``{"type": "bridge"|"device", ...}``."""
    if isinstance(raw, (BridgeAction, DeviceAction)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(f"action must be an object, got {type(raw).__name__}")
    kind = raw.get("kind") or raw.get("type")
    action = str(raw.get("action") or "").strip()
    if not action:
        raise ValidationError("action is missing")
    if kind == "bridge":
        return BridgeAction(action=action)
    if kind == "device":
        device_id = str(raw.get("deviceId") or "").strip()
        entity = str(raw.get("entityId") or "").strip()
        if not device_id or not entity:
            raise ValidationError("device action needs deviceId and entityId")
        return DeviceAction(device_id=device_id, entity_id=entity, action=action)
    raise ValidationError(f"unknown action type {kind!r}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_log_level(level: str) -> None:
    logging.getLogger("rfxcom2mqtt").setLevel(level.upper())


class Bridge:
    """Wires radio events to MQTT and MQTT commands to the radio."""

    def __init__(
        self,
        settings: Settings,
        *,
        mqtt: MqttClient,
        gateway: RfxcomGateway,
        devices: DeviceStore,
        states: StateStore,
        discovery: HomeAssistantDiscovery | None = None,
        settings_file: SettingsFile | None = None,
        version: str = __version__,
        apply_log_level: Callable[[str], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._settings = settings
        self._mqtt = mqtt
        self._gateway = gateway
        self._devices = devices
        self._states = states
        self._discovery = discovery
        self._settings_file = settings_file
        self._version = version
        self._apply_log_level = apply_log_level or _set_log_level
        self._log = logger or _LOGGER

        self._state = BridgeState.STOPPED
        self._info = BridgeInfo(version=version, log_level=settings.log_level)
        self._health_task: asyncio.Task | None = None
        self._command_queue: asyncio.Queue | None = None
        self._command_worker: asyncio.Task | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self._settings

    def is_running(self) -> bool:
        return self._state is BridgeState.RUNNING

    def get_bridge_info(self) -> dict[str, Any]:
        return self._info.as_dict()

    # read accessors

    def devices(self) -> dict[str, dict[str, Any]]:
        return self._devices.get_all()

    def device(self, device_id: str) -> dict[str, Any] | None:
        return self._devices.get(device_id)

    def entities(self) -> dict[str, dict[str, Any]]:
        return self._states.get_all()

    def entity(self, entity_id: str) -> dict[str, Any] | None:
        return self._states.get(entity_id)

    # lifecycle

    async def start(self) -> None:
        if self._state in (BridgeState.STARTING, BridgeState.RUNNING):
            return
        self._state = BridgeState.STARTING
        self._log.info("Starting rfxcom2mqtt %s", self._version)
        self._info = BridgeInfo(version=self._version, log_level=self._settings.log_level)

        await self._devices.start()
        await self._states.start()

        loop = asyncio.get_running_loop()
        self._command_queue = asyncio.Queue()
        self._command_worker = loop.create_task(self._command_loop())

        self._mqtt.add_listener(self)
        self._gateway.subscribe_events(self.handle_event)
        self._gateway.on_status(self.handle_status)
        self._gateway.on_disconnect(self.handle_disconnect)

        await self._mqtt.start()
        await self._gateway.start()

        if self._settings.healthcheck.enabled:
            self._health_task = loop.create_task(self._health_loop())
        self._state = BridgeState.RUNNING
        self._log.info("Bridge running")

    async def _bounded(self, what: str, coro) -> None:
        try:
            await asyncio.wait_for(coro, timeout=SHUTDOWN_STEP_TIMEOUT_S)
        except asyncio.TimeoutError:
            self._log.warning("Timed out while %s", what)

    @staticmethod
    async def _cancel(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._state in (BridgeState.STOPPED, BridgeState.STOPPING):
            return
        self._state = BridgeState.STOPPING
        self._log.info("Stopping bridge")

        self._gateway.remove_handlers([self.handle_event, self.handle_status, self.handle_disconnect])
        self._mqtt.remove_listener(self)
        health, self._health_task = self._health_task, None
        worker, self._command_worker = self._command_worker, None
        self._command_queue = None
        await self._cancel(health)
        await self._cancel(worker)

        await self._bounded("saving devices", self._devices.stop())
        await self._bounded("saving entity state", self._states.stop())
        await self._bounded("disconnecting from MQTT", self._mqtt.disconnect())
        await self._bounded("closing RFXCOM", self._gateway.stop())

        self._state = BridgeState.STOPPED
        self._log.info("Bridge stopped")

    async def restart(self) -> None:
        self._log.info("Restarting bridge")
        await self.stop()
        await self.start()

    async def update_settings(self, patch: dict[str, Any]) -> Settings:
        if self._settings_file is None:
            raise ValidationError("settings are read-only")
        new = await asyncio.to_thread(self._settings_file.update, patch)
        mqtt_changed = new.mqtt != self._settings.mqtt
        level_changed = new.log_level != self._settings.log_level
        self._settings = new
        self._info.log_level = new.log_level
        if level_changed:
            self._apply_log_level(new.log_level)
        if self._discovery is not None:
            self._discovery.update_settings(new)
        if mqtt_changed and self.is_running():
            self._log.info("MQTT settings changed, reconnecting")
            await self._mqtt.restart(new.mqtt)
        return new

    # radio -> mqtt

    def handle_event(self, protocol: str, raw: dict[str, Any]) -> None:
        if self._state not in (BridgeState.STARTING, BridgeState.RUNNING):
            return
        event = dict(raw)
        event["type"] = protocol
        # lighting4 devices are addressed by their data code
        if protocol == "lighting4" and event.get("data") not in (None, ""):
            event["id"] = event["data"]
        device_id = event.get("id")
        if device_id in (None, ""):
            self._log.warning("Dropping %s event without device id", protocol)
            return
        device_id = str(device_id)
        event["id"] = device_id

        now = _now()
        if not self._devices.exists(device_id):
            override = self._settings.find_device_by_id(device_id)
            self._devices.set(
                device_id,
                {
                    "id": device_id,
                    "type": protocol,
                    "subtype": event.get("subtype"),
                    "subTypeValue": event.get("subTypeValue"),
                    "name": override.name if override is not None else device_id,
                    "originalName": device_id,
                    "entities": [],
                    "sensors": {},
                    "switches": {},
                    "binarySensors": {},
                    "covers": {},
                    "selects": {},
                },
            )
            self._log.info("New %s device %s", protocol, device_id)
        self._devices.set(device_id, {"lastSeen": now})
        self._states.set(event_entity_id(event), event)

        self._mqtt.publish(f"devices/{topic_suffix(event)}", event)

        if self._discovery is not None and self._settings.homeassistant.discovery:
            self._discovery.publish_device(event)

    def handle_status(self, status: dict[str, Any]) -> None:
        self._info.coordinator = CoordinatorInfo.from_status(status)
        info = self._info.as_dict()
        self._log.info(
            "RFXCOM %s firmware %s (%s)",
            self._info.coordinator.receiver_type,
            self._info.coordinator.firmware_version,
            self._info.coordinator.firmware_type,
        )
        self._mqtt.publish(INFO_TOPIC, info, retain=True)
        if self._discovery is not None and self._settings.homeassistant.discovery:
            self._discovery.publish_bridge(info)

    def handle_disconnect(self, info: dict[str, Any]) -> None:
        self._mqtt.publish(STATE_TOPIC, "offline", retain=True)

    # mqtt -> radio

    def subscribe_topics(self) -> list[str]:
        base = self._settings.mqtt.base_topic
        return [f"{base}/command/#", f"{base}/{REQUEST_TOPIC}/#"]

    def on_message(self, message: BrokerMessage) -> None:
        queue = self._command_queue
        if queue is None:
            self._log.debug("Bridge not running, dropping %s", message.topic)
            return
        queue.put_nowait(message)

    async def _command_loop(self) -> None:
        queue = self._command_queue
        while queue is not None:
            message = await queue.get()
            try:
                await self.handle_message(message.topic, message.payload)
            except Exception:
                self._log.exception("Command handling failed for %s", message.topic)
            finally:
                queue.task_done()

    def parse_command_topic(self, topic: str) -> tuple[str, str]:
        """``<base>/command/<type>/<entity>[/<unit>]`` -> (type, entity name)."""
        base = self._settings.mqtt.base_topic
        if not topic.startswith(f"{base}/"):
            raise ValidationError(f"topic {topic} is outside base topic {base}")
        parts = topic[len(base) + 1:].split("/")
        if parts[0] != "command":
            raise ValidationError(f"topic {topic} is not a command topic")
        if len(parts) < 3 or not parts[1] or not parts[2]:
            raise ValidationError(f"command topic {topic} lacks device type or entity")
        return parts[1].lower(), "/".join(parts[2:])

    def _resolve_override(self, device_type: str, entity_name: str) -> DeviceOverride | None:
        override = self._settings.find_device(entity_name)
        if override is not None and override.subtype is not None:
            return override
        device = self._devices.get(entity_name.split("/")[0].split(",")[0])
        if device is None or device.get("type") != device_type or device.get("subtype") is None:
            return override
        if override is None:
            return DeviceOverride(id="", name=entity_name, subtype=device["subtype"])
        return replace(override, subtype=device["subtype"])

    async def handle_command(self, topic: str, payload: Any) -> int:
        try:
            device_type, entity_name = self.parse_command_topic(topic)
        except ValidationError as e:
            self._log.warning("Ignoring message: %s", e)
            return 0
        override = self._resolve_override(device_type, entity_name)
        try:
            sent = await self._gateway.send_command(device_type, entity_name, payload, override)
        except CommandError as e:
            self._log.error("Command %s rejected: %s", topic, e)
            return 0
        except ConnectError as e:
            self._log.error("Command %s not sent: %s", topic, e)
            return 0
        self._log.info("Sent %s to %s/%s", payload, device_type, entity_name)
        if sent:
            self._record_command(device_type, entity_name, payload)
        return sent

    def _record_command(self, device_type: str, entity_name: str, payload: Any) -> None:
        """Write a sent command into the entity state; the radio never echoes our own transmissions."""
        data = parse_payload(device_type, entity_name, payload)
        fn = resolve_function(device_type, data.get("deviceFunction") or data.get("command"))
        if fn is None:
            return
        group = fn in GROUP_FUNCTIONS
        for address in entity_name.split(","):
            device_id, _, unit = address.strip().partition("/")
            record: dict[str, Any] = {
                "id": device_id,
                "type": device_type,
                "group": group,
                "command": FUNCTION_COMMANDS.get(fn, fn),
            }
            if unit and not group:
                record["unitCode"] = unit
            if fn == "setLevel" and data.get("value") is not None:
                record["level"] = data["value"]
            state = self._states.set(event_entity_id(record), record)
            self._mqtt.publish(f"devices/{topic_suffix(state)}", state)

    async def handle_message(self, topic: str, payload: Any) -> None:
        prefix = f"{self._settings.mqtt.base_topic}/{REQUEST_TOPIC}/"
        if topic.startswith(prefix):
            await self.handle_request(topic[len(prefix):], payload)
        else:
            await self.handle_command(topic, payload)

    async def handle_request(self, name: str, payload: Any) -> None:
        """``<base>/bridge/request/<name>``; only ``log_level`` is understood."""
        if name != "log_level":
            self._log.warning("Unknown bridge request %s", name)
            return
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        level = str(payload or "").strip().lower()
        if level == "warning":
            level = "warn"
        if level not in LOG_LEVELS:
            self._log.warning("Ignoring log level %r, expected one of %s", level, ", ".join(LOG_LEVELS))
            return
        if self._settings_file is not None:
            try:
                await self.update_settings({"loglevel": level})
            except OSError as e:
                self._log.error("Could not save log level %s: %s", level, e)
                return
        else:
            self._apply_log_level(level)
            self._info.log_level = level
        self._log.info("Log level set to %s", level)
        self._mqtt.publish(INFO_TOPIC, self._info.as_dict(), retain=True)

    # administrative actions

    async def execute_action(self, raw: Any) -> None:
        try:
            action = parse_action(raw)
        except ValidationError as e:
            self._log.warning("Ignoring action: %s", e)
            return

        if isinstance(action, BridgeAction):
            if action.action == "restart":
                await self.restart()
            elif action.action == "stop":
                await self.stop()
            elif action.action == "reset_devices":
                self._devices.reset()
            elif action.action == "reset_state":
                self._states.reset()
            else:
                self._log.warning("Unknown bridge action %s, expected one of %s", action.action, BRIDGE_ACTIONS)
            return

        device = self._devices.get(action.device_id)
        if device is None:
            self._log.warning("Device %s not found for action %s", action.device_id, action.action)
            return
        entity = action.entity_id
        if entity.endswith("_group"):
            entity = entity[: -len("_group")]
        topic = f"{self._settings.mqtt.base_topic}/command/{device.get('type')}/{entity}"
        try:
            await self.handle_command(topic, action.action)
        except Exception:
            self._log.exception("Action %s on %s failed", action.action, action.entity_id)

    # health check

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.healthcheck.interval_s)
            try:
                await self.health_check()
            except Exception:
                self._log.exception("Health check failed")

    async def health_check(self) -> str | None:
        if not self._settings.healthcheck.enabled or not self.is_running():
            return None
        status = await self._gateway.get_status()
        self._mqtt.publish(STATE_TOPIC, status, retain=True)
        if status != "online":
            self._log.error("Health check: RFXCOM is %s", status)
        return status
