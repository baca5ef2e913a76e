from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal

from . import __version__
from .bridge import Bridge
from .discovery import HomeAssistantDiscovery
from .mqtt_client import MqttClient
from .rfxcom_gateway import RfxcomGateway
from .settings import Settings, SettingsFile
from .store import DeviceStore, StateStore

_LOGGER = logging.getLogger("rfxcom2mqtt")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _configure_logging(level_name: str, radio_debug: bool) -> None:
    level = _LEVELS.get(level_name.lower(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "rfxcom2mqtt",
        "rfxcom2mqtt.bridge",
        "rfxcom2mqtt.gateway",
        "rfxcom2mqtt.mqtt",
        "rfxcom2mqtt.discovery",
        "rfxcom2mqtt.store",
        "paho",
    ):
        logging.getLogger(name).setLevel(level)

    # raw radio traffic is very noisy, only with rfxcom.debug
    radio = logging.DEBUG if radio_debug else level
    logging.getLogger("rfxcom2mqtt.transceiver").setLevel(radio)
    logging.getLogger("RFXtrx").setLevel(logging.DEBUG if radio_debug else logging.WARNING)


def build_bridge(settings: Settings, *, settings_file: SettingsFile | None = None) -> Bridge:
    mqtt = MqttClient(settings.mqtt, logger=logging.getLogger("rfxcom2mqtt.mqtt"))
    gateway = RfxcomGateway(settings.radio, logger=logging.getLogger("rfxcom2mqtt.gateway"))
    store_log = logging.getLogger("rfxcom2mqtt.store")
    devices = DeviceStore(
        settings.cache.data_path,
        save_interval_s=settings.cache.save_interval_s,
        enabled=settings.cache.enabled,
        logger=store_log,
    )
    states = StateStore(
        settings.cache.data_path,
        save_interval_s=settings.cache.save_interval_s,
        enabled=settings.cache.enabled,
        logger=store_log,
    )
    discovery = HomeAssistantDiscovery(
        mqtt,
        devices,
        settings,
        version=__version__,
        logger=logging.getLogger("rfxcom2mqtt.discovery"),
    )
    return Bridge(
        settings,
        mqtt=mqtt,
        gateway=gateway,
        devices=devices,
        states=states,
        discovery=discovery,
        settings_file=settings_file,
        apply_log_level=functools.partial(_configure_logging, radio_debug=settings.radio.debug),
        logger=logging.getLogger("rfxcom2mqtt.bridge"),
    )


async def run(settings: Settings, settings_file: SettingsFile | None = None) -> None:
    bridge = build_bridge(settings, settings_file=settings_file)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await bridge.start()
    try:
        await stop.wait()
    finally:
        await bridge.stop()


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    settings_file = SettingsFile()
    settings = settings_file.load()
    _configure_logging(settings.log_level, settings.radio.debug)
    _LOGGER.info("rfxcom2mqtt %s, options from %s", __version__, settings_file.path)
    asyncio.run(run(settings, settings_file))


if __name__ == "__main__":
    main()
