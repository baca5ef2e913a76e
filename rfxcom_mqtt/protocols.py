"""Static RFXCOM protocol tables.

Packet family names follow the node-rfxcom naming used on the MQTT topics
(``lighting2``, ``blinds1``, ``rfy`` ...). Transmit function names are the
ones accepted in the ``command`` / ``deviceFunction`` field of a command
payload.
"""
from __future__ import annotations

from typing import Any

SUPPORTED_PROTOCOLS: tuple[str, ...] = (
    "lighting1", "lighting2", "lighting3", "lighting4", "lighting5", "lighting6",
    "curtain1", "blinds1", "blinds2", "security1", "security2", "camera1", "remote",
    "thermostat1", "thermostat2", "thermostat3", "thermostat4", "bbq1",
    "temperaturerain1", "temperature1", "temperature2", "humidity1",
    "temperaturehumidity1", "temphumbarobaro1", "temphumbarobaro2",
    "rain1", "rain2", "rain3", "rain4", "rain5", "rain6", "rain7", "rain8", "rain9",
    "wind1", "wind2", "wind3", "wind4", "wind5", "wind6", "wind7",
    "uv1", "uv2", "uv3", "datetime",
    "elec1", "elec2", "elec3", "elec4", "elec5",
    "weight1", "weight2", "cartelectronic", "rfxsensor", "rfxmeter", "waterlevel",
    "lightning1", "lightning2", "lightning3", "lightning4", "lightning5", "lightning6", "lightning7",
    "funkbus", "edisio", "hunter", "activlink", "weather1", "weather2",
    "solar1", "solar2", "solar3", "solar4", "solar5", "solar6", "solar7",
)

DEFAULT_RECEIVE: tuple[str, ...] = (
    "lighting1", "lighting2", "lighting3", "lighting4", "lighting5", "lighting6",
    "temperaturehumidity1", "temperature1", "humidity1",
)

# command numbers addressing every unit of a device
_GROUP_COMMANDS: dict[str, tuple[int, ...]] = {
    "lighting1": (5, 6),
    "lighting2": (3, 4),
    "lighting5": (3, 4),
    "lighting6": (2, 3),
    "blinds1": (7,),
}

SUBTYPES: dict[str, dict[str, int]] = {
    "lighting1": {
        "X10": 0x00, "ARC": 0x01, "ELRO": 0x02, "WAVEMAN": 0x03, "CHACON": 0x04,
        "IMPULS": 0x05, "RISING_SUN": 0x06, "PHILIPS_SBC": 0x07, "ENERGENIE_ENER010": 0x08,
        "ENERGENIE_5_GANG": 0x09, "COCO": 0x0A, "HQ_COCO20": 0x0B, "OASE_INSCENIO_FM_N": 0x0C,
    },
    "lighting2": {"AC": 0x00, "HOMEEASY_EU": 0x01, "ANSLUT": 0x02, "KAMBROOK": 0x03},
    "lighting3": {"KOPPLA": 0x00},
    "lighting4": {"PT2262": 0x00},
    "lighting5": {
        "LIGHTWAVERF": 0x00, "EMW100": 0x01, "BBSB": 0x02, "MDREMOTE": 0x03,
        "CONRAD_RSL2": 0x04, "LIVOLO": 0x05, "TRC02": 0x06, "AOKE": 0x07, "TRC02_2": 0x08,
        "EURODOMEST": 0x09, "LIVOLO_APPLIANCE": 0x0A, "RGB432W": 0x0B, "MDREMOTE107": 0x0C,
        "LEGRAND_CAD": 0x0D, "AVANTEK": 0x0E, "IT": 0x0F, "MDREMOTE108": 0x10, "KANGTAI": 0x11,
    },
    "lighting6": {"BLYSS": 0x00, "CUVEO": 0x01},
    "chime1": {
        "BYRON_SX": 0x00, "BYRON_MP001": 0x01, "SELECT_PLUS": 0x02, "SELECT_PLUS3": 0x03,
        "ENVIVO": 0x04, "ALFAWISE": 0x05,
    },
    "fan": {
        "SIEMENS_SF01": 0x00, "LUCCI_AIR": 0x01, "SEAV_TXS4": 0x02, "WESTINGHOUSE_7226640": 0x03,
        "LUCCI_AIR_DC": 0x04, "CASAFAN": 0x05, "FT1211R": 0x06, "FALMEC": 0x07,
        "LUCCI_AIR_DCII": 0x08, "ITHO_CVE_ECO_RFT": 0x09, "NOVY": 0x0A,
    },
    "curtain1": {"HARRISON": 0x00},
    "blinds1": {
        "BLINDS_T0": 0x00, "BLINDS_T1": 0x01, "BLINDS_T2": 0x02, "BLINDS_T3": 0x03,
        "BLINDS_T4": 0x04, "BLINDS_T5": 0x05, "BLINDS_T6": 0x06, "BLINDS_T7": 0x07,
        "BLINDS_T8": 0x08, "BLINDS_T9": 0x09, "BLINDS_T10": 0x0A, "BLINDS_T11": 0x0B,
        "BLINDS_T12": 0x0C, "BLINDS_T13": 0x0D,
    },
    "rfy": {"RFY": 0x00, "RFYEXT": 0x01, "ASA": 0x03},
    "security1": {
        "X10_DOOR": 0x00, "X10_PIR": 0x01, "X10_SECURITY": 0x02, "KD101": 0x03,
        "VISONIC_POWERCODE_SENSOR_PRIMARY": 0x04, "VISONIC_POWERCODE_MOTION": 0x05,
        "VISONIC_CODESECURE": 0x06, "VISONIC_POWERCODE_SENSOR_AUX": 0x07, "MEIANTECH": 0x08,
        "SA30": 0x09, "RM174RF": 0x0A,
    },
    "homeconfort": {"TEL_010": 0x00},
}

DEVICE_FUNCTIONS: dict[str, tuple[str, ...]] = {
    "lighting1": ("switchOn", "switchOff", "groupOn", "groupOff", "chime"),
    "lighting2": ("switchOn", "switchOff", "groupOn", "groupOff", "setLevel"),
    "lighting3": ("switchOn", "switchOff", "setLevel", "increaseLevel", "decreaseLevel", "program"),
    "lighting4": ("sendData",),
    "lighting5": (
        "switchOn", "switchOff", "groupOn", "groupOff", "setLevel", "increaseLevel", "decreaseLevel", "toggleOnOff",
        "setMood", "setColour", "increaseColour", "decreaseColour", "program",
    ),
    "lighting6": ("switchOn", "switchOff", "groupOn", "groupOff"),
    "chime1": ("chime",),
    "fan": ("switchOn", "switchOff", "setSpeed", "increaseSpeed", "decreaseSpeed", "toggleLightOnOff", "program"),
    "curtain1": ("open", "close", "stop", "program"),
    "blinds1": ("open", "close", "stop", "confirm", "setLimit", "setLowerLimit", "reverse"),
    "rfy": (
        "up", "down", "stop", "program", "erase", "eraseAll", "listRemotes",
        "venetianOpen", "venetianClose", "venetianIncreaseAngle", "venetianDecreaseAngle",
        "enableSunSensor", "disableSunSensor",
    ),
    "security1": (
        "switchOnLight", "switchOffLight", "sendStatus", "sendPanic", "cancelPanic",
        "armSystemAway", "armSystemHome", "disarmSystem",
    ),
    "homeconfort": ("switchOn", "switchOff"),
}

_SWITCH_ALIASES = {"on": "switchOn", "off": "switchOff"}
_GROUP_ALIASES = {**_SWITCH_ALIASES, "group on": "groupOn", "group off": "groupOff"}
_BLIND_ALIASES = {"open": "open", "close": "close", "stop": "stop", "up": "open", "down": "close"}

# plain-text command words accepted on the command topic
COMMAND_ALIASES: dict[str, dict[str, str]] = {
    "lighting1": {**_GROUP_ALIASES, "chime": "chime"},
    "lighting2": _GROUP_ALIASES,
    "lighting3": _SWITCH_ALIASES,
    "lighting5": _GROUP_ALIASES,
    "lighting6": _GROUP_ALIASES,
    "homeconfort": _SWITCH_ALIASES,
    "fan": _SWITCH_ALIASES,
    "chime1": {"on": "chime", "chime": "chime"},
    "curtain1": _BLIND_ALIASES,
    "blinds1": _BLIND_ALIASES,
    "rfy": {"open": "up", "close": "down", "stop": "stop", "up": "up", "down": "down"},
    "security1": {"on": "switchOnLight", "off": "switchOffLight", "panic": "sendPanic", "disarm": "disarmSystem"},
}

# command word recorded in the entity state after a transmission
FUNCTION_COMMANDS: dict[str, str] = {
    "switchOn": "On",
    "switchOff": "Off",
    "groupOn": "Group On",
    "groupOff": "Group Off",
    "setLevel": "Set level",
    "open": "Open",
    "close": "Close",
    "stop": "Stop",
    "up": "Up",
    "down": "Down",
}

GROUP_FUNCTIONS = ("groupOn", "groupOff")

# RFXtrx packet type bytes
PACKET_TYPES: dict[str, int] = {
    "lighting1": 0x10, "lighting2": 0x11, "lighting3": 0x12, "lighting4": 0x13,
    "lighting5": 0x14, "lighting6": 0x15, "chime1": 0x16, "fan": 0x17,
    "curtain1": 0x18, "blinds1": 0x19, "rfy": 0x1A, "homeconfort": 0x1B,
    "security1": 0x20, "camera1": 0x28, "remote": 0x30,
    "thermostat1": 0x40, "thermostat2": 0x41, "thermostat3": 0x42, "thermostat4": 0x43,
    "bbq1": 0x4E, "temperaturerain1": 0x4F, "temperature1": 0x50, "humidity1": 0x51,
    "temperaturehumidity1": 0x52, "temphumbarobaro1": 0x54, "rain1": 0x55, "wind1": 0x56,
    "uv1": 0x57, "datetime": 0x58, "elec1": 0x59, "elec2": 0x5A, "weight1": 0x5D,
    "rfxsensor": 0x70, "rfxmeter": 0x71,
}
PACKET_NAMES: dict[int, str] = {v: k for k, v in PACKET_TYPES.items()}


def is_supported(protocol: str) -> bool:
    return protocol in SUPPORTED_PROTOCOLS


def is_group(event: dict[str, Any]) -> bool:
    """Whether the event addresses all units of its device."""
    dev_type = str(event.get("type") or "").lower()
    codes = _GROUP_COMMANDS.get(dev_type)
    if codes is not None:
        try:
            return int(event.get("commandNumber")) in codes
        except (TypeError, ValueError):
            return False
    if dev_type == "security1":
        return "group" in str(event.get("deviceStatus") or "").lower()
    if dev_type in ("chime", "chime1", "fan"):
        return "all" in str(event.get("command") or "").lower()
    return False


def resolve_subtype(device_type: str, value: Any) -> int | None:
    """Numeric subtype from a name (``AC``) or a number (``0``, ``"0x01"``)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    table = SUBTYPES.get(device_type, {})
    if text.upper() in table:
        return table[text.upper()]
    try:
        return int(text, 0)
    except ValueError:
        return None


def subtype_label(device_type: str, subtype: Any) -> str | None:
    try:
        num = int(subtype)
    except (TypeError, ValueError):
        return None
    for name, value in SUBTYPES.get(device_type, {}).items():
        if value == num:
            return name
    return None


def resolve_function(device_type: str, name: Any) -> str | None:
    """Map a function name or plain command word to a transmit function."""
    if name is None:
        return None
    text = str(name).strip()
    functions = DEVICE_FUNCTIONS.get(device_type, ())
    if text in functions:
        return text
    lowered = text.lower()
    for fn in functions:
        if fn.lower() == lowered:
            return fn
    return COMMAND_ALIASES.get(device_type, {}).get(lowered)
