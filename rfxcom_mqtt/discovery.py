from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from .mqtt_client import STATE_TOPIC, MqttClient
from .settings import LOG_LEVELS, DeviceOverride, Settings
from .store import DeviceStore

_LOGGER = logging.getLogger("rfxcom2mqtt.discovery")

MANUFACTURER = "Rfxcom"
ORIGIN_NAME = "rfxcom2mqtt"
ORIGIN_URL = "https://rfxcom2mqtt.github.io/rfxcom2mqtt/"

# discovery component -> DeviceState metadata map
CATEGORIES: dict[str, str] = {
    "sensor": "sensors",
    "binary_sensor": "binarySensors",
    "switch": "switches",
    "cover": "covers",
    "select": "selects",
}

SWITCH_TYPES = ("lighting1", "lighting2", "lighting3", "lighting5", "lighting6", "homeconfort")
COVER_TYPES = ("blinds1", "blinds2", "curtain1", "rfy")
MOTION_TYPES = ("security1",)
SELECT_TYPES = ("fan",)

MOTION_STATES = ("Motion", "Alarm", "Alarm Delayed", "Alert", "Panic")
FAN_SPEEDS = ("Off", "Low", "Med", "Hi")


@dataclass(frozen=True)
class SensorSpec:
    prop: str
    name: str
    device_class: str | None = None
    unit: str | None = None
    icon: str | None = None
    state_class: str | None = "measurement"
    entity_category: str | None = None
    types: tuple[str, ...] | None = None


SENSORS: tuple[SensorSpec, ...] = (
    SensorSpec("temperature", "Temperature", "temperature", "°C", "mdi:thermometer"),
    SensorSpec("humidity", "Humidity", "humidity", "%", "mdi:water-percent"),
    SensorSpec("barometer", "Pressure", "pressure", "hPa", "mdi:gauge"),
    SensorSpec("forecast", "Forecast", None, None, "mdi:weather-partly-cloudy", state_class=None),
    SensorSpec("rainfall", "Rain total", "precipitation", "mm", "mdi:weather-rainy", "total_increasing"),
    SensorSpec("rainfallRate", "Rain rate", "precipitation_intensity", "mm/h", "mdi:weather-pouring"),
    SensorSpec("averageSpeed", "Wind speed", "wind_speed", "m/s", "mdi:weather-windy"),
    SensorSpec("gustSpeed", "Wind gust", "wind_speed", "m/s", "mdi:weather-windy"),
    SensorSpec("direction", "Wind direction", None, "°", "mdi:compass"),
    SensorSpec("uv", "UV index", None, "UV index", "mdi:sunglasses"),
    SensorSpec("weight", "Weight", "weight", "kg", "mdi:scale"),
    SensorSpec("power", "Power", "power", "W", "mdi:flash"),
    SensorSpec("energy", "Energy", "energy", "kWh", "mdi:lightning-bolt", "total_increasing"),
    SensorSpec("count", "Count", None, None, "mdi:counter", "total_increasing"),
    SensorSpec("level", "Water level", None, "cm", "mdi:waves", types=("waterlevel",)),
    SensorSpec("batteryLevel", "Battery", "battery", "%", "mdi:battery", entity_category="diagnostic"),
    SensorSpec("rssi", "Signal strength", None, None, "mdi:signal", entity_category="diagnostic"),
)


def slugify(text: str) -> str:
    s = text.strip().lower()
    s = re.sub(r"[^a-z0-9_\-]+", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return s or "device"


def entity_id(device_id: str, unit_code: Any = None, group: bool = False) -> str:
    """``deviceId[/unitCode][_group]``; the unit is left out for group commands."""
    eid = str(device_id)
    if unit_code is not None and unit_code != "" and not group:
        eid = f"{eid}/{unit_code}"
    if group:
        eid = f"{eid}_group"
    return eid


def topic_suffix(event: dict[str, Any]) -> str:
    unit = event.get("unitCode")
    if unit is not None and unit != "" and not event.get("group"):
        return f"{event['id']}/{unit}"
    return str(event["id"])


def event_entity_id(event: dict[str, Any]) -> str:
    return entity_id(event["id"], event.get("unitCode"), bool(event.get("group")))


def detect_entities(event: dict[str, Any], override: DeviceOverride | None = None) -> dict[str, dict[str, dict[str, Any]]]:
    """Metadata records implied by one normalised event, keyed by DeviceState map."""
    dev_type = str(event.get("type") or "")
    eid = event_entity_id(event)
    suffix = topic_suffix(event)
    group = bool(event.get("group"))
    found: dict[str, dict[str, dict[str, Any]]] = {}

    def add(kind: str, record_id: str, record: dict[str, Any]) -> None:
        found.setdefault(kind, {})[record_id] = {
            "id": record_id,
            "entityId": eid,
            "topic": suffix,
            "type": dev_type,
            **record,
        }

    for spec in SENSORS:
        if spec.prop not in event or event.get(spec.prop) is None:
            continue
        if spec.types is not None and dev_type not in spec.types:
            continue
        add(
            "sensors",
            f"{eid}_{spec.prop}",
            {
                "name": spec.name,
                "property": spec.prop,
                "device_class": spec.device_class,
                "unit_of_measurement": spec.unit,
                "icon": spec.icon,
                "state_class": spec.state_class,
                "entity_category": spec.entity_category,
            },
        )

    if dev_type in SWITCH_TYPES:
        unit = event.get("unitCode")
        name = override.unit_name(unit) if override is not None else None
        if name is None:
            name = "Group" if group else (f"Unit {unit}" if unit is not None else "Switch")
        add(
            "switches",
            eid,
            {
                "name": name,
                "unitCode": None if group else unit,
                "group": group,
                "property": "command",
                "value_on": "Group On" if group else "On",
                "value_off": "Group Off" if group else "Off",
            },
        )

    if dev_type in MOTION_TYPES and "deviceStatus" in event:
        add(
            "binarySensors",
            f"{eid}_motion",
            {"name": "Motion", "property": "deviceStatus", "device_class": "motion", "on_values": list(MOTION_STATES)},
        )
    if "tampered" in event:
        add(
            "binarySensors",
            f"{eid}_tamper",
            {"name": "Tamper", "property": "tampered", "device_class": "tamper", "entity_category": "diagnostic"},
        )

    if dev_type in COVER_TYPES:
        unit = event.get("unitCode")
        name = override.unit_name(unit) if override is not None else None
        add("covers", eid, {"name": name or "Cover", "property": "command"})

    if dev_type in SELECT_TYPES:
        add("selects", eid, {"name": "Speed", "property": "command", "options": list(FAN_SPEEDS)})

    return found


def device_block(device: dict[str, Any], *, prefix: str) -> dict[str, Any]:
    device_id = str(device.get("id") or "")
    identifiers = [f"{prefix}_{device_id}"]
    original = device.get("originalName")
    if original and f"{prefix}_{original}" not in identifiers:
        identifiers.append(f"{prefix}_{original}")
    name = device.get("name") or device_id
    if name != device_id and f"{prefix}_{name}" not in identifiers:
        identifiers.append(f"{prefix}_{name}")
    return {
        "identifiers": identifiers,
        "name": name,
        "manufacturer": MANUFACTURER,
        "model": device.get("subTypeValue") or device.get("type") or "RFXCOM device",
        "via_device": f"{prefix}_bridge",
    }


def origin_block(version: str) -> dict[str, Any]:
    return {"name": ORIGIN_NAME, "sw": version, "url": ORIGIN_URL}


def _json_template(prop: str) -> str:
    return "{{ value_json.%s }}" % prop


def config_topic(discovery_topic: str, component: str, object_id: str) -> str:
    return f"{discovery_topic}/{component}/{object_id}/config"


def entity_config(
    component: str,
    record: dict[str, Any],
    device: dict[str, Any],
    *,
    settings: Settings,
    version: str,
) -> tuple[str, dict[str, Any]]:
    base = settings.mqtt.base_topic
    prefix = settings.homeassistant.device_prefix
    oid = slugify(f"{prefix}_{record['id']}")
    state_topic = f"{base}/devices/{record['topic']}"
    command_topic = f"{base}/command/{record['type']}/{record['topic']}"

    payload: dict[str, Any] = {
        "name": record.get("name"),
        "unique_id": oid,
        "object_id": oid,
        "availability_topic": f"{base}/{STATE_TOPIC}",
        "payload_available": "online",
        "payload_not_available": "offline",
        "state_topic": state_topic,
        "json_attributes_topic": state_topic,
        "device": device_block(device, prefix=prefix),
        "origin": origin_block(version),
    }
    if record.get("icon"):
        payload["icon"] = record["icon"]
    if record.get("entity_category"):
        payload["entity_category"] = record["entity_category"]

    prop = record.get("property", "command")
    if component == "sensor":
        payload["value_template"] = _json_template(prop)
        for key in ("device_class", "unit_of_measurement", "state_class"):
            if record.get(key):
                payload[key] = record[key]
    elif component == "binary_sensor":
        if record.get("device_class") == "tamper":
            payload["value_template"] = (
                "{{ 'ON' if value_json.%s in [true, 'Yes', 'yes', 'true', 1] else 'OFF' }}" % prop
            )
        else:
            values = ", ".join(f"'{v}'" for v in record.get("on_values") or [])
            payload["value_template"] = "{{ 'ON' if value_json.%s in [%s] else 'OFF' }}" % (prop, values)
        payload["payload_on"] = "ON"
        payload["payload_off"] = "OFF"
        payload["device_class"] = record.get("device_class")
    elif component == "switch":
        payload["command_topic"] = command_topic
        # pyRFXtrx reports "Group on"
        payload["value_template"] = "{{ value_json.%s | title }}" % prop
        payload["payload_on"] = "Group On" if record.get("group") else "On"
        payload["payload_off"] = "Group Off" if record.get("group") else "Off"
        payload["state_on"] = record.get("value_on", "On")
        payload["state_off"] = record.get("value_off", "Off")
    elif component == "cover":
        payload["command_topic"] = command_topic
        payload["payload_open"] = "Open"
        payload["payload_close"] = "Close"
        payload["payload_stop"] = "Stop"
        payload["value_template"] = (
            "{% if value_json.command in ['Open', 'Up'] %}open"
            "{% elif value_json.command in ['Close', 'Down'] %}closed"
            "{% else %}stopped{% endif %}"
        )
        payload["state_open"] = "open"
        payload["state_closed"] = "closed"
        payload["state_stopped"] = "stopped"
        payload["position_topic"] = state_topic
        payload["position_template"] = "{{ 100 if value_json.command in ['Open', 'Up'] else 0 }}"
    elif component == "select":
        payload["command_topic"] = command_topic
        payload["options"] = list(record.get("options") or [])
        payload["value_template"] = _json_template(prop)
        payload["command_template"] = '{"deviceFunction": "setSpeed", "value": "{{ value }}"}'

    return config_topic(settings.homeassistant.discovery_topic, component, oid), payload


def bridge_configs(info: dict[str, Any], *, settings: Settings) -> list[tuple[str, dict[str, Any]]]:
    base = settings.mqtt.base_topic
    prefix = settings.homeassistant.device_prefix
    disc = settings.homeassistant.discovery_topic
    coordinator = info.get("coordinator") or {}
    version = str(info.get("version") or "")
    device = {
        "identifiers": [f"{prefix}_bridge"],
        "name": "RFXCOM Bridge",
        "manufacturer": MANUFACTURER,
        "model": coordinator.get("receiverType") or "RFXtrx433",
        "sw_version": version,
        "hw_version": str(coordinator.get("hardwareVersion") or ""),
    }
    origin = origin_block(version)
    info_topic = f"{base}/bridge/info"

    configs: list[tuple[str, dict[str, Any]]] = []
    oid = f"{prefix}_bridge_connection_state"
    configs.append(
        (
            config_topic(disc, "binary_sensor", oid),
            {
                "name": "Connection state",
                "unique_id": oid,
                "object_id": oid,
                "state_topic": f"{base}/{STATE_TOPIC}",
                "payload_on": "online",
                "payload_off": "offline",
                "device_class": "connectivity",
                "entity_category": "diagnostic",
                "device": device,
                "origin": origin,
            },
        )
    )
    for key, name, template, icon in (
        ("version", "Version", "{{ value_json.version }}", "mdi:information"),
        ("firmware", "Firmware version", "{{ value_json.coordinator.firmwareVersion }}", "mdi:chip"),
        ("receiver", "Receiver type", "{{ value_json.coordinator.receiverType }}", "mdi:radio-tower"),
    ):
        oid = f"{prefix}_bridge_{key}"
        configs.append(
            (
                config_topic(disc, "sensor", oid),
                {
                    "name": name,
                    "unique_id": oid,
                    "object_id": oid,
                    "state_topic": info_topic,
                    "value_template": template,
                    "icon": icon,
                    "entity_category": "diagnostic",
                    "availability_topic": f"{base}/{STATE_TOPIC}",
                    "device": device,
                    "origin": origin,
                },
            )
        )
    oid = f"{prefix}_bridge_log_level"
    configs.append(
        (
            config_topic(disc, "select", oid),
            {
                "name": "Log level",
                "unique_id": oid,
                "object_id": oid,
                "state_topic": info_topic,
                "value_template": "{{ value_json.logLevel }}",
                "command_topic": f"{base}/bridge/request/log_level",
                "options": list(LOG_LEVELS),
                "icon": "mdi:math-log",
                "entity_category": "config",
                "availability_topic": f"{base}/{STATE_TOPIC}",
                "device": device,
                "origin": origin,
            },
        )
    )
    return configs


class HomeAssistantDiscovery:
    """Publishes retained Home Assistant discovery configs for seen devices."""

    def __init__(
        self,
        mqtt: MqttClient,
        devices: DeviceStore,
        settings: Settings,
        *,
        version: str,
        logger: logging.Logger | None = None,
    ):
        self._mqtt = mqtt
        self._devices = devices
        self._settings = settings
        self._version = version
        self._log = logger or _LOGGER

    def update_settings(self, settings: Settings) -> None:
        self._settings = settings

    def _publish(self, topic: str, payload: Any) -> None:
        self._mqtt.publish(topic, payload, qos=1, retain=True, use_prefix=False)

    def publish_device(self, event: dict[str, Any]) -> int:
        device_id = str(event["id"])
        override = self._settings.find_device_by_id(device_id)
        records = detect_entities(event, override)

        current = self._devices.get(device_id) or {}
        entities = list(current.get("entities") or [])
        eid = event_entity_id(event)
        if eid not in entities:
            entities.append(eid)
        partial: dict[str, Any] = {"entities": entities, **records}
        if override is not None:
            partial["name"] = override.name
        device = self._devices.set(device_id, partial)

        count = 0
        for component, key in CATEGORIES.items():
            for record in records.get(key, {}).values():
                topic, payload = entity_config(component, record, device, settings=self._settings, version=self._version)
                self._publish(topic, payload)
                count += 1
        self._log.debug("Published %d discovery configs for %s", count, eid)
        return count

    def publish_bridge(self, info: dict[str, Any]) -> int:
        configs = bridge_configs(info, settings=self._settings)
        for topic, payload in configs:
            self._publish(topic, payload)
        return len(configs)

    def unpublish(self, device_id: str) -> int:
        prefix = self._settings.homeassistant.device_prefix
        disc = self._settings.homeassistant.discovery_topic
        topics = [config_topic(disc, component, slugify(f"{prefix}_{device_id}")) for component in CATEGORIES]
        device = self._devices.get(device_id) or {}
        for component, key in CATEGORIES.items():
            for record_id in (device.get(key) or {}):
                topic = config_topic(disc, component, slugify(f"{prefix}_{record_id}"))
                if topic not in topics:
                    topics.append(topic)
        for topic in topics:
            self._publish(topic, "")
        self._log.info("Removed discovery configs for %s", device_id)
        return len(topics)
