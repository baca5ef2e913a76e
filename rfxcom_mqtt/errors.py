from __future__ import annotations


class RfxcomBridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConnectError(RfxcomBridgeError):
    """Transport unreachable or authentication refused. Retried in the background."""


class TlsError(ConnectError):
    """CA/cert/key material could not be read for a TLS broker connection."""


class CommandError(RfxcomBridgeError):
    def __init__(self, message: str, *, device_type: str | None = None, entity: str | None = None):
        super().__init__(message)
        self.device_type = device_type
        self.entity = entity


class UnknownDeviceType(CommandError):
    pass


class MissingSubtype(CommandError):
    pass


class InvalidFunction(CommandError):
    pass


class MalformedPayload(CommandError):
    pass


class InvalidAddress(CommandError):
    """The device id or unit cannot be encoded for the radio."""


class PublishError(RfxcomBridgeError):
    pass


class PersistError(RfxcomBridgeError):
    pass


class ValidationError(RfxcomBridgeError):
    pass
