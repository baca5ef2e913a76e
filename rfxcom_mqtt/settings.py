from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from .store import deep_merge

MOCK_PORT = "mock"
LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(frozen=True)
class MqttConfig:
    server: str
    port: int
    username: str
    password: str
    base_topic: str
    client_id: str
    qos: int
    retain: bool
    keepalive: int
    version: int
    tls: bool
    ca: str
    cert: str
    key: str
    reject_unauthorized: bool

    @property
    def host(self) -> str:
        host = self.server
        for scheme in ("mqtts://", "mqtt://", "ssl://", "tcp://"):
            if host.startswith(scheme):
                host = host[len(scheme):]
                break
        return host.rstrip("/")


@dataclass(frozen=True)
class RadioConfig:
    port: str
    debug: bool
    receive: tuple[str, ...]
    transmit_repeat: int

    @property
    def is_mock(self) -> bool:
        return self.port == MOCK_PORT


@dataclass(frozen=True)
class HomeAssistantConfig:
    discovery: bool
    discovery_topic: str
    device_prefix: str


@dataclass(frozen=True)
class HealthcheckConfig:
    enabled: bool
    interval_s: float


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool
    save_interval_s: float
    data_path: str


@dataclass(frozen=True)
class UnitOverride:
    unit_code: str
    name: str


@dataclass(frozen=True)
class DeviceOverride:
    id: str
    name: str
    type: str | None = None
    subtype: str | int | None = None
    units: tuple[UnitOverride, ...] = ()
    repetitions: int | None = None
    blinds_mode: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def unit_name(self, unit_code: Any) -> str | None:
        for unit in self.units:
            if str(unit.unit_code) == str(unit_code):
                return unit.name
        return None


@dataclass(frozen=True)
class Settings:
    mqtt: MqttConfig
    radio: RadioConfig
    homeassistant: HomeAssistantConfig
    healthcheck: HealthcheckConfig
    cache: CacheConfig
    devices: tuple[DeviceOverride, ...]
    log_level: str

    def find_device(self, name: str) -> DeviceOverride | None:
        for dev in self.devices:
            if dev.name == name:
                return dev
        return None

    def find_device_by_id(self, device_id: str) -> DeviceOverride | None:
        for dev in self.devices:
            if dev.id == device_id:
                return dev
        return None


def options_path() -> str:
    return os.environ.get("RFXCOM2MQTT_OPTIONS", "/data/options.json")


def read_options(path: str | None = None) -> dict[str, Any]:
    path = path or options_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def _read_int(raw: dict[str, Any], key: str, default: int) -> int:
    try:
        v = raw.get(key)
        if v is None or v == "":
            return int(default)
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _read_float(raw: dict[str, Any], key: str, default: float) -> float:
    try:
        v = raw.get(key)
        if v is None or v == "":
            return float(default)
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _read_bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    v = raw.get(key)
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _load_device(raw: dict[str, Any]) -> DeviceOverride | None:
    dev_id = str(raw.get("id") or "").strip()
    if not dev_id:
        return None
    units = []
    for u in raw.get("units") or []:
        if not isinstance(u, dict) or u.get("unitCode", u.get("unit_code")) is None:
            continue
        code = str(u.get("unitCode", u.get("unit_code")))
        units.append(UnitOverride(unit_code=code, name=str(u.get("name") or u.get("friendlyName") or code)))
    repetitions = raw.get("repetitions")
    try:
        repetitions = int(repetitions) if repetitions is not None else None
    except (TypeError, ValueError):
        repetitions = None
    return DeviceOverride(
        id=dev_id,
        name=str(raw.get("name") or dev_id),
        type=str(raw["type"]).lower() if raw.get("type") else None,
        subtype=raw.get("subtype"),
        units=tuple(units),
        repetitions=repetitions,
        blinds_mode=str(raw["blindsMode"]) if raw.get("blindsMode") else None,
        options=dict(raw.get("options") or {}),
    )


def load_settings(options: dict[str, Any]) -> Settings:
    mqtt_raw = options.get("mqtt") or {}
    server = str(mqtt_raw.get("server") or "mqtt://localhost").strip()
    version = _read_int(mqtt_raw, "version", 4)
    if version not in (3, 4, 5):
        version = 4
    qos = _read_int(mqtt_raw, "qos", 0)
    if qos not in (0, 1, 2):
        qos = 0
    ca = str(mqtt_raw.get("ca") or "")
    cert = str(mqtt_raw.get("cert") or "")
    key = str(mqtt_raw.get("key") or "")
    mqtt = MqttConfig(
        server=server,
        port=_read_int(mqtt_raw, "port", 8883 if server.startswith("mqtts://") else 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        base_topic=str(mqtt_raw.get("base_topic") or "rfxcom2mqtt").strip().rstrip("/"),
        client_id=str(mqtt_raw.get("client_id") or "rfxcom2mqtt"),
        qos=qos,
        retain=_read_bool(mqtt_raw, "retain", True),
        keepalive=max(5, _read_int(mqtt_raw, "keepalive", 60)),
        version=version,
        tls=server.startswith("mqtts://") or bool(ca or cert or key),
        ca=ca,
        cert=cert,
        key=key,
        reject_unauthorized=_read_bool(mqtt_raw, "reject_unauthorized", True),
    )

    radio_raw = options.get("rfxcom") or {}
    receive = radio_raw.get("receive") or []
    if isinstance(receive, str):
        receive = [p for p in receive.replace(",", " ").split() if p]
    transmit_raw = radio_raw.get("transmit") or {}
    radio = RadioConfig(
        port=str(radio_raw.get("usbport") or radio_raw.get("port") or "/dev/ttyUSB0"),
        debug=_read_bool(radio_raw, "debug", False),
        receive=tuple(str(p).strip().lower() for p in receive if str(p).strip()),
        transmit_repeat=max(1, _read_int(transmit_raw, "repeat", 1)),
    )

    ha_raw = options.get("homeassistant") or {}
    homeassistant = HomeAssistantConfig(
        discovery=_read_bool(ha_raw, "discovery", True),
        discovery_topic=str(ha_raw.get("discovery_topic") or "homeassistant").rstrip("/"),
        device_prefix=str(ha_raw.get("discovery_device") or ha_raw.get("device_prefix") or "rfxcom2mqtt"),
    )

    hc_raw = options.get("healthcheck") or {}
    healthcheck = HealthcheckConfig(
        enabled=_read_bool(hc_raw, "enabled", True),
        interval_s=max(5.0, _read_float(hc_raw, "interval_s", 300.0)),
    )

    cache_raw = options.get("cacheState") or options.get("cache") or {}
    # saveInterval is expressed in minutes
    if "saveInterval" in cache_raw:
        save_interval_s = _read_float(cache_raw, "saveInterval", 1.0) * 60.0
    else:
        save_interval_s = _read_float(cache_raw, "save_interval_s", 60.0)
    cache = CacheConfig(
        enabled=_read_bool(cache_raw, "enable", _read_bool(cache_raw, "enabled", True)),
        save_interval_s=max(1.0, save_interval_s),
        data_path=str(cache_raw.get("data_path") or os.environ.get("RFXCOM2MQTT_DATA") or "/data"),
    )

    devices = []
    for raw in options.get("devices") or []:
        if isinstance(raw, dict):
            dev = _load_device(raw)
            if dev is not None:
                devices.append(dev)

    loglevel = str((options.get("loglevel") or options.get("log_level") or "info")).strip().lower()

    return Settings(
        mqtt=mqtt,
        radio=radio,
        homeassistant=homeassistant,
        healthcheck=healthcheck,
        cache=cache,
        devices=tuple(devices),
        log_level=loglevel,
    )


class SettingsFile:
    """Options file the bridge may rewrite on explicit request."""

    def __init__(self, path: str | None = None):
        self._path = path or options_path()

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Settings:
        return load_settings(read_options(self._path))

    def update(self, patch: dict[str, Any]) -> Settings:
        options = read_options(self._path)
        deep_merge(options, patch)
        tmp = f"{self._path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(options, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._path)
        return load_settings(options)
