"""Stable public API for building tooling on top of magtekctl.

This module is the supported integration surface for host applications.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable

from magtekctl.core.card_assembler import decode_report
from magtekctl.core.errors import (
    CardDataParsingError,
    DeviceBusyError,
    DeviceGoneError,
    DeviceNotFoundError,
    DevicePermissionError,
    DeviceSelectionError,
    ErrorKind,
    MagtekctlError,
    PlatformNotSupportedError,
    ProfileLoadError,
    ProfileValidationError,
    ReaderTimeoutError,
    UsbCommunicationError,
)
from magtekctl.core.model import (
    CardRecord,
    ConnectionState,
    DeviceDescriptor,
    DeviceInfo,
    PollingSpec,
    ReaderProfile,
    TrackRecord,
)
from magtekctl.core.service import ReaderService
from magtekctl.transports.base import DeviceHandle, Transport
from magtekctl.transports.hidapi import HidapiTransport
from magtekctl.transports.pyusb import PyUSBTransport

__all__ = [
    "MagtekctlError",
    "CardDataParsingError",
    "DeviceBusyError",
    "DeviceGoneError",
    "DeviceNotFoundError",
    "DevicePermissionError",
    "DeviceSelectionError",
    "ErrorKind",
    "PlatformNotSupportedError",
    "ProfileLoadError",
    "ProfileValidationError",
    "ReaderTimeoutError",
    "UsbCommunicationError",
    "CardRecord",
    "ConnectionState",
    "DeviceDescriptor",
    "DeviceHandle",
    "DeviceInfo",
    "PollingSpec",
    "ReaderProfile",
    "TrackRecord",
    "Transport",
    "HidapiTransport",
    "PyUSBTransport",
    "decode_report",
    "Client",
]


class Client:
    """Public client for interacting with magtekctl core capabilities.

    A `Client` owns one reader context: profile loading, device enumeration,
    the single active connection and its event subscriptions. Use it as a
    context manager, or call `open()`/`close()` explicitly.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        transport_name: str | None = None,
    ) -> None:
        self._service = ReaderService(transport=transport, transport_name=transport_name)

    def open(self) -> Client:
        self._service.open()
        return self

    def close(self) -> None:
        self._service.close()

    def __enter__(self) -> Client:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def state(self) -> ConnectionState:
        return self._service.state

    def list_profiles(self) -> list[ReaderProfile]:
        return self._service.list_profiles()

    def get_connected_devices(self) -> list[DeviceInfo]:
        return self._service.get_connected_devices()

    def connect(self, device_id: str) -> bool:
        return self._service.connect(device_id)

    def disconnect(self) -> None:
        self._service.disconnect()

    def is_connected(self) -> bool:
        return self._service.is_connected()

    def notify_detached(self, device_id: str) -> None:
        self._service.notify_detached(device_id)

    def on_card_swipe(self, handler: Callable[[CardRecord], None]) -> int:
        return self._service.on_card_swipe(handler)

    def on_device_connected(self, handler: Callable[[DeviceInfo], None]) -> int:
        return self._service.on_device_connected(handler)

    def on_device_disconnected(self, handler: Callable[[DeviceInfo], None]) -> int:
        return self._service.on_device_disconnected(handler)

    def on_error(self, handler: Callable[[ErrorKind, str], None]) -> int:
        return self._service.on_error(handler)

    def unsubscribe(self, token: int) -> bool:
        return self._service.unsubscribe(token)

    def wait_for_card(self, timeout_s: float) -> CardRecord:
        return self._service.wait_for_card(timeout_s)
