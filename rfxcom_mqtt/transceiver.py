from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import RFXtrx

from .errors import ConnectError, InvalidAddress, InvalidFunction
from .protocols import PACKET_NAMES, PACKET_TYPES
from .settings import RadioConfig

_LOGGER = logging.getLogger("rfxcom2mqtt.transceiver")

CONNECT_TIMEOUT_S = 30

EventCallback = Callable[[str, dict[str, Any]], None]
StatusCallback = Callable[[dict[str, Any]], None]
DisconnectCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class Transmission:
    device_type: str
    subtype: int
    address: str
    function: str
    value: Any = None
    options: dict[str, Any] = field(default_factory=dict)


class Transceiver:
    """Link to the RFXtrx433 radio. Methods may block and run off the event loop."""

    def open(self, on_event: EventCallback, on_status: StatusCallback, on_disconnect: DisconnectCallback) -> None:
        raise NotImplementedError

    def enable_protocols(self, protocols: tuple[str, ...]) -> None:
        raise NotImplementedError

    def start_receiving(self) -> None:
        pass

    def query_status(self) -> None:
        raise NotImplementedError

    def transmit(self, tx: Transmission) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


MOCK_STATUS: dict[str, Any] = {
    "receiverTypeCode": 83,
    "receiverType": "Mock",
    "hardwareVersion": "1.2",
    "firmwareVersion": 242,
    "firmwareType": "Ext",
    "enabledProtocols": [
        "LIGHTING1", "LIGHTING2", "LIGHTING3", "LIGHTING4", "LIGHTING5", "LIGHTING6",
        "BLINDS1", "SECURITY1", "TEMPERATURE1", "TEMPERATUREHUMIDITY1", "TEMPHUMBAROBARO1",
        "HUMIDITY1", "BBQ1", "UV1", "WEIGHT1", "WATERLEVEL", "LACROSSE", "AC", "OREGON", "HOMECONFORT",
    ],
}

MOCK_EVENTS: tuple[tuple[str, dict[str, Any]], ...] = (
    ("lighting2", {"id": "0x011B", "seqnbr": 7, "subtype": 0, "unitCode": "1", "commandNumber": 0,
                   "command": "Off", "level": 0, "rssi": 5}),
    ("lighting2", {"id": "0x011B", "seqnbr": 7, "subtype": 0, "unitCode": "2", "commandNumber": 0,
                   "command": "On", "level": 0, "rssi": 5}),
    ("lighting1", {"id": "0x011C", "seqnbr": 8, "subtype": 0, "houseCode": "A", "unitCode": "1",
                   "commandNumber": 0, "command": "Off", "rssi": 5}),
    ("lighting1", {"id": "0x011C", "seqnbr": 9, "subtype": 0, "houseCode": "A", "unitCode": "2",
                   "commandNumber": 1, "command": "On", "rssi": 5}),
    ("lighting5", {"id": "0x011D", "seqnbr": 10, "subtype": 0, "unitCode": "1", "commandNumber": 0,
                   "command": "Off", "level": 0, "rssi": 5}),
    ("lighting5", {"id": "0x011D", "seqnbr": 11, "subtype": 0, "unitCode": "2", "commandNumber": 1,
                   "command": "On", "level": 15, "rssi": 5}),
    ("blinds1", {"id": "0x011E", "seqnbr": 12, "subtype": 0, "unitCode": "1", "commandNumber": 0,
                 "command": "Open", "batteryLevel": 100, "rssi": 5}),
    ("blinds1", {"id": "0x011E", "seqnbr": 13, "subtype": 0, "unitCode": "2", "commandNumber": 1,
                 "command": "Close", "batteryLevel": 100, "rssi": 5}),
    ("security1", {"id": "0x011F", "seqnbr": 14, "subtype": 2, "deviceStatus": "Normal",
                   "tampered": False, "batteryLevel": 100, "rssi": 5}),
    ("security1", {"id": "0x011F", "seqnbr": 15, "subtype": 2, "deviceStatus": "Alarm",
                   "tampered": True, "batteryLevel": 50, "rssi": 5}),
    ("temphumbarobaro1", {"id": "0x3C01", "seqnbr": 1, "subtype": 1, "temperature": 19.0, "humidity": 60,
                          "humidityStatus": "Comfort", "barometer": 1040, "forecast": "Sunny",
                          "batteryLevel": 100, "rssi": 5}),
    ("temperaturehumidity1", {"id": "0x3C02", "seqnbr": 1, "subtype": 1, "temperature": 19.0, "humidity": 60,
                              "humidityStatus": "Comfort", "batteryLevel": 100, "rssi": 5}),
    ("temperature1", {"id": "0x3C03", "seqnbr": 1, "subtype": 1, "temperature": 19.0,
                      "batteryLevel": 100, "rssi": 5}),
    ("bbq1", {"id": "0x3C04", "seqnbr": 1, "subtype": 1, "temperature": 19.0, "batteryLevel": 100, "rssi": 5}),
    ("uv1", {"id": "0x3C05", "seqnbr": 1, "subtype": 1, "temperature": 19.0, "uv": 2,
             "batteryLevel": 100, "rssi": 5}),
    ("humidity1", {"id": "0x3C06", "seqnbr": 1, "subtype": 1, "humidity": 60, "humidityStatus": "Comfort",
                   "batteryLevel": 100, "rssi": 5}),
    ("weight1", {"id": "0x3C07", "seqnbr": 1, "subtype": 1, "weight": 60, "batteryLevel": 100, "rssi": 5}),
    ("waterlevel", {"id": "0x3C08", "seqnbr": 1, "subtype": 0, "temperature": 10.0, "level": 50,
                    "batteryLevel": 100, "rssi": 5}),
)


class MockTransceiver(Transceiver):
    """Deterministic stand-in for the radio, selected with ``port: mock``."""

    def __init__(self, *, events=MOCK_EVENTS, status: dict[str, Any] | None = None, logger=None):
        self._events = tuple(events)
        self._status = dict(status or MOCK_STATUS)
        self._log = logger or _LOGGER
        self._on_event: EventCallback | None = None
        self._on_status: StatusCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None
        self.protocols: tuple[str, ...] = ()
        self.sent: list[Transmission] = []
        self.is_open = False

    def open(self, on_event, on_status, on_disconnect) -> None:
        self._on_event = on_event
        self._on_status = on_status
        self._on_disconnect = on_disconnect
        self.is_open = True
        self._log.info("Mock transceiver opened")

    def enable_protocols(self, protocols: tuple[str, ...]) -> None:
        self.protocols = tuple(protocols)

    def start_receiving(self) -> None:
        if self._on_status is not None:
            self._on_status(dict(self._status))
        if self._on_event is not None:
            for protocol, event in self._events:
                self._on_event(protocol, copy.deepcopy(event))

    def emit(self, protocol: str, event: dict[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(protocol, dict(event))

    def drop(self) -> None:
        self.is_open = False
        if self._on_disconnect is not None:
            self._on_disconnect({"reason": "mock connection dropped"})

    def query_status(self) -> None:
        if not self.is_open:
            raise ConnectError("mock transceiver closed")

    def transmit(self, tx: Transmission) -> None:
        if not self.is_open:
            raise ConnectError("mock transceiver closed")
        self._log.info("Mock transmit %s %s %s(%s)", tx.device_type, tx.address, tx.function, tx.value or "")
        self.sent.append(tx)

    def close(self) -> None:
        self.is_open = False


# pyRFXtrx event value names -> event fields
_VALUE_KEYS = {
    "Command": "command",
    "Dim level": "level",
    "Temperature": "temperature",
    "Temperature2": "temperature2",
    "Humidity": "humidity",
    "Humidity status": "humidityStatus",
    "Barometer": "barometer",
    "Forecast": "forecast",
    "Rain rate": "rainfallRate",
    "Rain total": "rainfall",
    "Wind direction": "direction",
    "Wind average speed": "averageSpeed",
    "Wind gust": "gustSpeed",
    "Chill": "chillfactor",
    "UV": "uv",
    "Weight": "weight",
    "Energy usage": "power",
    "Total usage": "energy",
    "Current": "current",
    "Count": "count",
    "Sound": "sound",
    "Sensor Status": "deviceStatus",
    "Tamper": "tampered",
    "Battery numeric": "batteryLevel",
    "Rssi numeric": "rssi",
}

# transmit function -> (pyRFXtrx device method, passes value)
_DEVICE_METHODS = {
    "switchOn": ("send_on", False),
    "switchOff": ("send_off", False),
    "setLevel": ("send_dim", True),
    "open": ("send_open", False),
    "up": ("send_open", False),
    "close": ("send_close", False),
    "down": ("send_close", False),
    "stop": ("send_stop", False),
}

# group command numbers per family, sent with send_command
_GROUP_COMMANDS = {
    "lighting1": {"groupOff": 0x05, "groupOn": 0x06},
    "lighting2": {"groupOff": 0x03, "groupOn": 0x04},
    "lighting5": {"groupOff": 0x02, "groupOn": 0x03},
    "lighting6": {"groupOn": 0x02, "groupOff": 0x03},
}

# hex digits of the device id in a pyRFXtrx id_string ("<id>:<unit>")
_ID_DIGITS = {
    "lighting2": 7,
    "lighting3": 1,
    "lighting5": 6,
    "lighting6": 4,
    "blinds1": 6,
    "rfy": 6,
}

# interface control, get status
_GET_STATUS = bytes([0x0D, 0x00, 0x00, 0x01, 0x02, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])


def _id_string(device_type: str, address: str, *, group: bool = False) -> str:
    """pyRFXtrx id_string for an ``0x011B/1`` style address.

    lighting1 takes the house code either as a letter (``A/2``) or as its
    character code (``0x41/2``). Group commands default the unit to 0.
    Raises ValueError when the address does not fit the family.
    """
    device_id, _, unit = address.partition("/")
    device_id, unit = device_id.strip(), unit.strip()
    if not unit:
        if not group:
            raise ValueError(f"{device_type} addresses need a unit code")
        unit = "0"
    if device_type == "lighting1":
        house = device_id.upper()
        if house.startswith("0X"):
            house = chr(int(house, 16))
        if len(house) != 1 or not "A" <= house <= "P":
            raise ValueError(f"invalid house code {device_id!r}")
        return f"{house}{int(unit)}"
    digits = _ID_DIGITS.get(device_type)
    if digits is None:
        raise ValueError(f"{device_type} cannot be addressed by id")
    number = int(device_id, 16)
    if number >= 16 ** digits:
        raise ValueError(f"device id {device_id} is wider than {digits} hex digits")
    if device_type == "lighting3":
        return f"{number:x}:{int(unit, 16):03x}"
    if device_type == "lighting6":
        # group code letter followed by the unit number, e.g. B3
        return f"{number:04x}:{unit[:1].upper()}{int(unit[1:])}"
    return f"{number:0{digits}x}:{int(unit)}"


def _command_number(device: Any, command: Any) -> int | None:
    for number, name in (getattr(device, "COMMANDS", None) or {}).items():
        if name == command:
            return number
    return None


class RfxtrxTransceiver(Transceiver):
    """RFXtrx433 over a serial device (``/dev/ttyUSB0``) or TCP (``host:port``).

    The receive list is applied in software when events are dispatched. The
    decoding modes stored on the device itself are left untouched, set them
    with RFXmngr when a protocol has to be enabled on the radio.
    """

    def __init__(self, port: str, *, logger=None):
        self._port = port
        self._log = logger or _LOGGER
        self._conn: Any = None
        self._on_event: EventCallback | None = None
        self._on_status: StatusCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None

    def _transport(self) -> Any:
        if ":" in self._port and not self._port.startswith("/"):
            host, _, port = self._port.rpartition(":")
            return RFXtrx.PyNetworkTransport((host, int(port)))
        return RFXtrx.PySerialTransport(self._port)

    def open(self, on_event, on_status, on_disconnect) -> None:
        self._on_event = on_event
        self._on_status = on_status
        self._on_disconnect = on_disconnect
        try:
            conn = RFXtrx.Connect(self._transport(), self._handle)
            conn.connect(CONNECT_TIMEOUT_S)
        except (OSError, ValueError, TimeoutError, RFXtrx.RFXtrxTransportError) as e:
            raise ConnectError(f"cannot open RFXCOM on {self._port}: {e}") from e
        self._conn = conn

    def enable_protocols(self, protocols: tuple[str, ...]) -> None:
        self._log.debug("Receive filter: %s", ", ".join(protocols))

    def _send(self, data: bytes) -> None:
        if self._conn is None:
            raise ConnectError("RFXCOM not connected")
        try:
            self._conn.transport.send(data)
        except (OSError, RFXtrx.RFXtrxTransportError) as e:
            raise ConnectError(f"RFXCOM write failed: {e}") from e

    def query_status(self) -> None:
        self._send(_GET_STATUS)

    def transmit(self, tx: Transmission) -> None:
        if self._conn is None:
            raise ConnectError("RFXCOM not connected")
        packet_type = PACKET_TYPES.get(tx.device_type)
        group_command = _GROUP_COMMANDS.get(tx.device_type, {}).get(tx.function)
        method_name, with_value = _DEVICE_METHODS.get(tx.function, (None, False))
        if packet_type is None or (method_name is None and group_command is None):
            raise InvalidFunction(
                f"{tx.function} is not supported by the RFXtrx transport for {tx.device_type}",
                device_type=tx.device_type,
                entity=tx.address,
            )
        try:
            id_string = _id_string(tx.device_type, tx.address, group=group_command is not None)
            device = RFXtrx.get_device(packet_type, tx.subtype, id_string)
        except (ValueError, KeyError, IndexError) as e:
            raise InvalidAddress(
                f"{tx.address} is not a valid {tx.device_type} address: {e}",
                device_type=tx.device_type,
                entity=tx.address,
            ) from e

        if group_command is not None:
            method, args = getattr(device, "send_command", None), (group_command,)
        else:
            method, args = getattr(device, method_name, None), ()
        if method is None:
            raise InvalidFunction(
                f"{tx.function} is not available on {tx.device_type} devices",
                device_type=tx.device_type,
                entity=tx.address,
            )
        try:
            if with_value:
                args = (int(tx.value or 0),)
            method(self._conn.transport, *args)
        except (OSError, RFXtrx.RFXtrxTransportError) as e:
            raise ConnectError(f"RFXCOM write failed: {e}") from e
        except (ValueError, TypeError) as e:
            raise InvalidFunction(
                f"{tx.function} rejected for {tx.device_type} {tx.address}: {e}",
                device_type=tx.device_type,
                entity=tx.address,
            ) from e

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close_connection()

    # pyRFXtrx receive thread

    def _handle(self, event: Any) -> None:
        if isinstance(event, RFXtrx.ConnectionLost):
            self._conn = None
            if self._on_disconnect is not None:
                self._on_disconnect({"reason": "connection lost"})
            return
        if isinstance(event, RFXtrx.StatusEvent):
            if self._on_status is not None:
                self._on_status(self._status_info(event))
            return
        device = getattr(event, "device", None)
        protocol = PACKET_NAMES.get(getattr(device, "packettype", None))
        if protocol is None:
            self._log.debug("Ignoring unsupported RFXtrx event %s", event)
            return
        if self._on_event is not None:
            self._on_event(protocol, self._event_fields(protocol, event, device))

    @staticmethod
    def _status_info(event: Any) -> dict[str, Any]:
        pkt = getattr(event, "device", None)
        return {
            "receiverTypeCode": getattr(pkt, "tranceiver_type", 0),
            "receiverType": getattr(pkt, "type_string", "Unknown"),
            "hardwareVersion": str(getattr(pkt, "hardware_version", "0.0")),
            "firmwareVersion": getattr(pkt, "firmware_version", 0),
            "firmwareType": str(getattr(pkt, "firmware_type", "Unknown")),
            "enabledProtocols": [str(p).upper() for p in (getattr(pkt, "devices", None) or [])],
        }

    @staticmethod
    def _event_fields(protocol: str, event: Any, device: Any) -> dict[str, Any]:
        id_string = str(getattr(device, "id_string", ""))
        fields: dict[str, Any] = {"subtype": getattr(device, "subtype", 0)}
        if protocol == "lighting1":
            # "A2": house code A, unit 2
            house = id_string[:1]
            fields["id"] = f"0x{ord(house):02X}" if house else "0x00"
            fields["houseCode"] = house
            fields["unitCode"] = id_string[1:]
        elif protocol in _ID_DIGITS:
            raw_id, _, unit = id_string.partition(":")
            fields["id"] = f"0x{raw_id.upper()}"
            fields["unitCode"] = unit.upper()
        elif protocol == "security1":
            # the part after the colon is the packet type
            fields["id"] = f"0x{id_string.partition(':')[0].upper()}"
        else:
            fields["id"] = f"0x{id_string.replace(':', '').upper()}"

        data = getattr(event, "data", None)
        if data is not None and len(data) > 3:
            fields["seqnbr"] = data[3]
        values = getattr(event, "values", None) or {}
        number = _command_number(device, values.get("Command"))
        if number is not None:
            fields["commandNumber"] = number
        for key, value in values.items():
            name = _VALUE_KEYS.get(key)
            if name is not None:
                fields[name] = value
        return fields


def create_transceiver(config: RadioConfig, *, logger: logging.Logger | None = None) -> Transceiver:
    if config.is_mock:
        return MockTransceiver(logger=logger)
    return RfxtrxTransceiver(config.port, logger=logger)
