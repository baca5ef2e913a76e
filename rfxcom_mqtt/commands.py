from __future__ import annotations

import json
import re
from typing import Any

from .errors import InvalidFunction, MalformedPayload, MissingSubtype, UnknownDeviceType
from .protocols import DEVICE_FUNCTIONS, resolve_function, resolve_subtype
from .settings import DeviceOverride
from .transceiver import Transmission

_LEVEL_COMMAND = re.compile(r"^level\s+(\d+)$", re.IGNORECASE)


def parse_payload(device_type: str, entity: str, payload: Any) -> dict[str, Any]:
    """Command payload as a dict.

    ``{...}`` payloads must be JSON objects; anything else is a plain command
    word such as ``On`` or ``Stop``. ``level N`` sets a dim level.
    """
    if isinstance(payload, dict):
        return dict(payload)
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    text = str(payload if payload is not None else "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedPayload(
                f"invalid JSON payload for {device_type}/{entity}: {e}", device_type=device_type, entity=entity
            ) from e
        if not isinstance(data, dict):
            raise MalformedPayload(
                f"payload for {device_type}/{entity} is not an object", device_type=device_type, entity=entity
            )
        return data
    if not text:
        return {}
    level = _LEVEL_COMMAND.match(text)
    if level is not None:
        return {"command": "setLevel", "value": int(level.group(1))}
    return {"command": text}


class CommandStrategy:
    """Turns a command into the transmissions to perform, validating first."""

    def __init__(self, *, default_repeat: int = 1):
        self._default_repeat = max(1, int(default_repeat))

    def plan(
        self,
        device_type: str,
        entity_name: str,
        payload: Any,
        override: DeviceOverride | None = None,
    ) -> list[Transmission]:
        raise NotImplementedError

    @staticmethod
    def _check_type(device_type: str, entity: str) -> None:
        if device_type not in DEVICE_FUNCTIONS:
            raise UnknownDeviceType(f"unknown device type {device_type!r}", device_type=device_type, entity=entity)

    @staticmethod
    def _function(device_type: str, data: dict[str, Any], entity: str) -> str:
        requested = data.get("deviceFunction") or data.get("command")
        fn = resolve_function(device_type, requested)
        if fn is None:
            raise InvalidFunction(
                f"{requested!r} is not a valid function for {device_type}", device_type=device_type, entity=entity
            )
        return fn

    @staticmethod
    def _subtype(
        device_type: str,
        data: dict[str, Any],
        override: DeviceOverride | None,
        entity: str,
        default: Any = None,
    ) -> int:
        raw = data.get("subtype")
        if raw is None and override is not None:
            raw = override.subtype
        if raw is None:
            raw = default
        if raw is None:
            raise MissingSubtype(f"subtype is required for {device_type}/{entity}", device_type=device_type, entity=entity)
        subtype = resolve_subtype(device_type, raw)
        if subtype is None:
            raise MissingSubtype(
                f"unknown subtype {raw!r} for {device_type}/{entity}", device_type=device_type, entity=entity
            )
        return subtype

    @staticmethod
    def _address(entity_name: str, override: DeviceOverride | None) -> str:
        if override is not None and override.id:
            return override.id
        return entity_name

    @staticmethod
    def _options(data: dict[str, Any], override: DeviceOverride | None) -> dict[str, Any]:
        options = dict(override.options) if override is not None else {}
        extra = data.get("deviceOptions")
        if isinstance(extra, dict):
            options.update(extra)
        return options


class DefaultStrategy(CommandStrategy):
    def plan(self, device_type, entity_name, payload, override=None):
        if override is not None and override.type:
            device_type = override.type
        self._check_type(device_type, entity_name)
        data = parse_payload(device_type, entity_name, payload)
        subtype = self._subtype(device_type, data, override, entity_name)
        fn = self._function(device_type, data, entity_name)
        repeat = self._default_repeat
        if override is not None and override.repetitions:
            repeat = max(1, override.repetitions)
        tx = Transmission(
            device_type=device_type,
            subtype=subtype,
            address=self._address(entity_name, override),
            function=fn,
            value=data.get("value"),
            options=self._options(data, override),
        )
        return [tx] * repeat


class BlindsStrategy(CommandStrategy):
    """Motorised blinds (blinds1)."""

    def plan(self, device_type, entity_name, payload, override=None):
        data = parse_payload(device_type, entity_name, payload)
        subtype = self._subtype(device_type, data, override, entity_name)
        fn = self._function(device_type, data, entity_name)
        return [
            Transmission(
                device_type=device_type,
                subtype=subtype,
                address=self._address(entity_name, override),
                function=fn,
                options=self._options(data, override),
            )
        ]


class ShutterStrategy(CommandStrategy):
    """Somfy RTS (rfy). A comma separated entity name addresses several remotes."""

    def plan(self, device_type, entity_name, payload, override=None):
        data = parse_payload(device_type, entity_name, payload)
        if override is not None and override.id:
            ids = [override.id]
        else:
            ids = [part.strip() for part in entity_name.split(",") if part.strip()]
        subtype = self._subtype(device_type, data, override, entity_name, default="RFY")
        fn = self._function(device_type, data, entity_name)
        mode = (override.blinds_mode if override is not None else None) or data.get("blindsMode") or "EU"
        options = {**self._options(data, override), "venetianBlindsMode": mode}
        return [
            Transmission(
                device_type=device_type,
                subtype=subtype,
                address=dev_id if "/" in dev_id else f"{dev_id}/1",
                function=fn,
                options=options,
            )
            for dev_id in ids
        ]


class DimmerStrategy(CommandStrategy):
    """LightwaveRF style dimmers (lighting5)."""

    def plan(self, device_type, entity_name, payload, override=None):
        data = parse_payload(device_type, entity_name, payload)
        subtype = self._subtype(device_type, data, override, entity_name)
        fn = self._function(device_type, data, entity_name)
        return [
            Transmission(
                device_type=device_type,
                subtype=subtype,
                address=self._address(entity_name, override),
                function=fn,
                value=data.get("value"),
                options=self._options(data, override),
            )
        ]


STRATEGIES: dict[str, type[CommandStrategy]] = {
    "blinds1": BlindsStrategy,
    "rfy": ShutterStrategy,
    "lighting5": DimmerStrategy,
}


def build_strategies(default_repeat: int = 1) -> tuple[CommandStrategy, dict[str, CommandStrategy]]:
    strategies = {name: cls(default_repeat=default_repeat) for name, cls in STRATEGIES.items()}
    return DefaultStrategy(default_repeat=default_repeat), strategies
