"""Domain-specific errors for magtekctl."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    DEVICE_NOT_FOUND = "DeviceNotFound"
    DEVICE_PERMISSION_DENIED = "DevicePermissionDenied"
    DEVICE_BUSY = "DeviceBusy"
    USB_COMMUNICATION_ERROR = "UsbCommunicationError"
    CARD_DATA_PARSING_ERROR = "CardDataParsingError"
    PLATFORM_NOT_SUPPORTED = "PlatformNotSupported"
    TIMEOUT = "Timeout"
    CONFIGURATION_ERROR = "ConfigurationError"


class MagtekctlError(Exception):
    """Base error for magtekctl."""

    kind = ErrorKind.USB_COMMUNICATION_ERROR


class ProfileValidationError(MagtekctlError):
    """Raised when a reader profile does not conform to schema or semantics."""

    kind = ErrorKind.CONFIGURATION_ERROR


class ProfileLoadError(MagtekctlError):
    """Raised when loading profile sources fails."""

    kind = ErrorKind.CONFIGURATION_ERROR


class DeviceNotFoundError(MagtekctlError):
    """Raised when a device id or path does not resolve to an attached reader."""

    kind = ErrorKind.DEVICE_NOT_FOUND


class DevicePermissionError(MagtekctlError):
    """Raised when the OS refuses access to the device node."""

    kind = ErrorKind.DEVICE_PERMISSION_DENIED


class DeviceBusyError(MagtekctlError):
    """Raised when the device is claimed by another process or driver."""

    kind = ErrorKind.DEVICE_BUSY


class UsbCommunicationError(MagtekctlError):
    """Transient transport failure."""

    kind = ErrorKind.USB_COMMUNICATION_ERROR


class DeviceGoneError(UsbCommunicationError):
    """Raised when a read fails because the handle is no longer valid."""


class CardDataParsingError(MagtekctlError):
    """Raised when a caller requires decoded card data and none is present."""

    kind = ErrorKind.CARD_DATA_PARSING_ERROR


class PlatformNotSupportedError(MagtekctlError):
    """Raised when the requested transport backend is unavailable."""

    kind = ErrorKind.PLATFORM_NOT_SUPPORTED


class ReaderTimeoutError(MagtekctlError):
    """Raised when waiting for a swipe exceeds its deadline."""

    kind = ErrorKind.TIMEOUT


class DeviceSelectionError(MagtekctlError):
    """Raised when a device hint cannot resolve a single attached reader."""

    kind = ErrorKind.DEVICE_NOT_FOUND
