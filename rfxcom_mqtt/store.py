from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import time
from typing import Any

from .errors import PersistError

_LOGGER = logging.getLogger("rfxcom2mqtt.store")


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Merge ``source`` into ``target`` in place.

    Nested dicts are merged key by key, anything else (scalars, lists) is
    overwritten. Values are copied so callers can keep mutating ``source``.
    """
    for key, value in source.items():
        current = target.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            deep_merge(current, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class JsonStore:
    """In-memory mapping of id -> record, periodically written to a JSON file.

    All mutations happen on the event loop thread; the periodic save takes a
    deep copy there and only the file write runs in a worker thread.
    """

    filename = "store.json"

    def __init__(
        self,
        data_path: str = "/data",
        *,
        save_interval_s: float = 60.0,
        enabled: bool = True,
        logger: logging.Logger | None = None,
    ):
        self._path = os.path.join(data_path, self.filename)
        self._save_interval_s = float(save_interval_s)
        self._enabled = bool(enabled)
        self._log = logger or _LOGGER
        self._data: dict[str, dict[str, Any]] = {}
        self._task: asyncio.Task | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def enabled(self) -> bool:
        return self._enabled

    def load(self) -> None:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            self._log.debug("No cached data at %s, starting empty", self._path)
            raw = {}
        except (json.JSONDecodeError, ValueError):
            ts = time.strftime("%Y%m%d-%H%M%S")
            backup = f"{self._path}.corrupt.{ts}"
            self._log.warning("Cache file %s is corrupt, moved to %s", self._path, backup)
            try:
                os.replace(self._path, backup)
            except OSError:
                self._log.exception("Could not move corrupt cache file %s", self._path)
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        self._data = {str(k): v for k, v in raw.items() if isinstance(v, dict)}
        self._log.info("Loaded %d entries from %s", len(self._data), self._path)

    def _write(self, snapshot: dict[str, Any]) -> None:
        tmp = f"{self._path}.tmp"
        try:
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self._path)
        except OSError as e:
            raise PersistError(f"could not write {self._path}: {e}") from e

    def save(self) -> bool:
        if not self._enabled:
            return False
        try:
            self._write(copy.deepcopy(self._data))
        except PersistError as e:
            self._log.error("%s", e)
            return False
        self._log.debug("Saved %d entries to %s", len(self._data), self._path)
        return True

    async def _save_loop(self) -> None:
        while True:
            await asyncio.sleep(self._save_interval_s)
            snapshot = copy.deepcopy(self._data)
            try:
                await asyncio.to_thread(self._write, snapshot)
            except PersistError as e:
                self._log.error("%s", e)

    async def start(self) -> None:
        if not self._enabled:
            return
        self.load()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._save_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._enabled:
            snapshot = copy.deepcopy(self._data)
            try:
                await asyncio.to_thread(self._write, snapshot)
            except PersistError as e:
                self._log.error("%s", e)

    def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def get_all(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._data)

    def exists(self, key: str) -> bool:
        return key in self._data

    def size(self) -> int:
        return len(self._data)

    def set(self, key: str, partial: dict[str, Any]) -> dict[str, Any]:
        target = self._data.setdefault(key, {})
        deep_merge(target, partial)
        return copy.deepcopy(target)

    def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def reset(self) -> None:
        self._data.clear()
        if self._enabled:
            try:
                self._write({})
            except PersistError as e:
                self._log.error("%s", e)
        self._log.info("Cleared %s", self._path)


class DeviceStore(JsonStore):
    """Device registry, keyed by radio device id."""

    filename = "devices.json"

    def get_by_device_id(self, device_id: str) -> dict[str, Any] | None:
        return self.get(device_id)


class StateStore(JsonStore):
    """Last known values per entity, keyed by entity id."""

    filename = "state.json"

    def set(self, key: str, partial: dict[str, Any]) -> dict[str, Any]:
        return super().set(key, {**partial, "entityId": key})

    def get_by_device_id(self, device_id: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(v) for v in self._data.values() if v.get("id") == device_id]

    def get_by_device_id_and_unit_code(self, device_id: str, unit_code: Any) -> dict[str, Any] | None:
        for value in self._data.values():
            if value.get("id") == device_id and str(value.get("unitCode")) == str(unit_code):
                return copy.deepcopy(value)
        return None
