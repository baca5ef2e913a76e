"""RFXCOM radio to MQTT bridge."""

__version__ = "1.2.0"
