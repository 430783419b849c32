"""Custom exceptions for the shutter tester library."""


class ShutterTesterError(Exception):
    """Base exception for all shutter tester library errors."""

    pass


class SerialIOError(ShutterTesterError):
    """Raised when serial communication fails (port closed, open refused, I/O error)."""

    pass


class DeviceNotFound(ShutterTesterError):
    """Raised when no candidate USB serial device is attached."""

    pass
