from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .commands import build_strategies
from .errors import ConnectError
from .protocols import DEFAULT_RECEIVE, is_group, is_supported, subtype_label
from .settings import DeviceOverride, RadioConfig
from .transceiver import Transceiver, create_transceiver

_LOGGER = logging.getLogger("rfxcom2mqtt.gateway")

RETRY_DELAY_S = 60.0

EventHandler = Callable[[str, dict[str, Any]], None]
InfoHandler = Callable[[dict[str, Any]], None]


class RfxcomGateway:
    """Radio side of the bridge.

    Owns the transceiver, fans received events out to every registered
    handler (in registration order, on the event loop) and turns MQTT
    commands into transmissions through the per device type strategies.
    """

    def __init__(
        self,
        config: RadioConfig,
        *,
        transceiver: Transceiver | None = None,
        logger: logging.Logger | None = None,
        retry_delay_s: float = RETRY_DELAY_S,
    ):
        self._config = config
        self._log = logger or _LOGGER
        self._transceiver = transceiver or create_transceiver(config, logger=self._log)
        self._retry_delay_s = retry_delay_s

        self._event_handlers: list[EventHandler] = []
        self._status_handlers: list[InfoHandler] = []
        self._disconnect_handlers: list[InfoHandler] = []

        self._default_strategy, self._strategies = build_strategies(config.transmit_repeat)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._retry_task: asyncio.Task | None = None
        self._connected = False
        self._closing = False
        self._receive: tuple[str, ...] = ()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def receive(self) -> tuple[str, ...]:
        return self._receive

    @property
    def transceiver(self) -> Transceiver:
        return self._transceiver

    # handler registration

    def subscribe_events(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def on_status(self, handler: InfoHandler) -> None:
        self._status_handlers.append(handler)

    def on_disconnect(self, handler: InfoHandler) -> None:
        self._disconnect_handlers.append(handler)

    def remove_handlers(self, owner_handlers: list[Callable[..., None]]) -> None:
        for handlers in (self._event_handlers, self._status_handlers, self._disconnect_handlers):
            for handler in owner_handlers:
                while handler in handlers:
                    handlers.remove(handler)

    # lifecycle

    def _resolve_receive(self) -> tuple[str, ...]:
        valid = []
        for protocol in self._config.receive:
            if is_supported(protocol):
                valid.append(protocol)
            else:
                self._log.warning("Protocol %s is not supported, ignored", protocol)
        return tuple(valid) or DEFAULT_RECEIVE

    async def initialize(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._closing = False
        try:
            await asyncio.to_thread(
                self._transceiver.open, self._post_event, self._post_status, self._post_disconnect
            )
        except ConnectError as e:
            self._log.error("RFXCOM initialisation failed: %s", e)
            raise
        self._connected = True
        self._receive = self._resolve_receive()
        self._transceiver.enable_protocols(self._receive)
        self._log.info("RFXCOM initialised on %s, receiving %s", self._config.port, ", ".join(self._receive))
        self._transceiver.start_receiving()

    async def start(self) -> None:
        if self._connected:
            return
        try:
            await self.initialize()
        except ConnectError:
            self._log.info("Retrying RFXCOM initialisation every %ss", self._retry_delay_s)
            self._schedule_retry()

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        loop = self._loop or asyncio.get_running_loop()
        self._retry_task = loop.create_task(self._retry_loop())

    async def _retry_loop(self) -> None:
        while not self._closing and not self._connected:
            await asyncio.sleep(self._retry_delay_s)
            if self._closing:
                return
            try:
                await self.initialize()
            except ConnectError:
                continue

    async def stop(self) -> None:
        self._closing = True
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if not self._connected:
            return
        self._connected = False
        try:
            await asyncio.wait_for(asyncio.to_thread(self._transceiver.close), timeout=5.0)
        except (asyncio.TimeoutError, OSError):
            self._log.warning("RFXCOM did not close cleanly")
        self._log.info("RFXCOM stopped")

    async def get_status(self) -> str:
        if not self._connected:
            return "offline"
        try:
            await asyncio.to_thread(self._transceiver.query_status)
        except ConnectError as e:
            self._log.warning("RFXCOM status query failed: %s", e)
            return "offline"
        return "online"

    # commands

    @staticmethod
    def is_group(event: dict[str, Any]) -> bool:
        return is_group(event)

    async def send_command(
        self,
        device_type: str,
        entity_name: str,
        payload: Any,
        override: DeviceOverride | None = None,
    ) -> int:
        """Validate and transmit a command. Returns the number of transmissions."""
        device_type = str(device_type or "").lower()
        strategy = self._strategies.get(device_type, self._default_strategy)
        transmissions = strategy.plan(device_type, entity_name, payload, override)
        if not self._connected:
            raise ConnectError(f"RFXCOM not connected, {device_type}/{entity_name} not sent")
        for tx in transmissions:
            self._log.debug("Transmit %s %s %s", tx.device_type, tx.address, tx.function)
            await asyncio.to_thread(self._transceiver.transmit, tx)
        return len(transmissions)

    # transceiver callbacks, any thread

    def _call_soon(self, fn: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(fn, *args)
        else:
            fn(*args)

    def _post_event(self, protocol: str, raw: dict[str, Any]) -> None:
        self._call_soon(self.dispatch_event, protocol, raw)

    def _post_status(self, info: dict[str, Any]) -> None:
        self._call_soon(self.dispatch_status, info)

    def _post_disconnect(self, info: dict[str, Any]) -> None:
        self._call_soon(self.dispatch_disconnect, info)

    # dispatch, event loop

    def dispatch_event(self, protocol: str, raw: dict[str, Any]) -> None:
        protocol = str(protocol or "").lower()
        if protocol not in self._receive:
            self._log.debug("Dropping %s event, protocol not enabled", protocol)
            return
        event = dict(raw)
        event["group"] = is_group({**event, "type": protocol})
        if not event.get("subTypeValue"):
            label = subtype_label(protocol, event.get("subtype"))
            if label is not None:
                event["subTypeValue"] = label
        for handler in list(self._event_handlers):
            try:
                handler(protocol, dict(event))
            except Exception:
                self._log.exception("RFXCOM event handler failed")

    def dispatch_status(self, info: dict[str, Any]) -> None:
        for handler in list(self._status_handlers):
            try:
                handler(dict(info))
            except Exception:
                self._log.exception("RFXCOM status handler failed")

    def dispatch_disconnect(self, info: dict[str, Any]) -> None:
        self._connected = False
        self._log.warning("RFXCOM disconnected: %s", info.get("reason", "unknown"))
        for handler in list(self._disconnect_handlers):
            try:
                handler(dict(info))
            except Exception:
                self._log.exception("RFXCOM disconnect handler failed")
        if not self._closing and self._loop is not None:
            self._schedule_retry()
