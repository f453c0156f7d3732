"""HID transport implementation using the hidapi bindings."""

from __future__ import annotations

import logging
import os
from typing import Any

from magtekctl.core.errors import (
    DeviceBusyError,
    DeviceGoneError,
    DeviceNotFoundError,
    DevicePermissionError,
    PlatformNotSupportedError,
    UsbCommunicationError,
)
from magtekctl.core.model import DeviceDescriptor
from magtekctl.transports.base import DeviceHandle

LOGGER = logging.getLogger(__name__)


def _load_hid() -> Any:
    try:
        import hid  # type: ignore
    except ImportError as exc:
        raise PlatformNotSupportedError(
            "HID transport requires 'hidapi' and the native libhidapi library. Install dependency and retry."
        ) from exc
    return hid


class HidapiTransport:
    name = "hidapi"

    def _raw_enumerate(self) -> list[dict[str, Any]]:
        hid = _load_hid()
        try:
            return list(hid.enumerate(0, 0))
        except OSError as exc:
            raise UsbCommunicationError(f"HID enumeration failed: {exc}") from exc

    def enumerate(self) -> list[DeviceDescriptor]:
        devices: list[DeviceDescriptor] = []
        for info in self._raw_enumerate():
            path = info.get("path") or b""
            devices.append(
                DeviceDescriptor.build(
                    vendor_id=int(info.get("vendor_id", 0)),
                    product_id=int(info.get("product_id", 0)),
                    path=os.fsdecode(path),
                    serial_number=info.get("serial_number"),
                    product_string=info.get("product_string"),
                )
            )
        return devices

    def _is_attached(self, path: str) -> bool:
        return any(os.fsdecode(info.get("path") or b"") == path for info in self._raw_enumerate())

    def open(self, path: str) -> DeviceHandle:
        hid = _load_hid()
        if not self._is_attached(path):
            raise DeviceNotFoundError(f"No HID device at {path}")

        device = hid.device()
        try:
            device.open_path(os.fsencode(path))
        except OSError as exc:
            device.close()
            if os.path.exists(path) and not os.access(path, os.R_OK | os.W_OK):
                raise DevicePermissionError(
                    f"Permission denied opening {path}. Check udev rules for the reader."
                ) from exc
            raise DeviceBusyError(f"HID device {path} could not be opened: {exc}") from exc

        LOGGER.debug("Opened HID device %s", path)
        return DeviceHandle(path=path, native=device)

    def read(self, handle: DeviceHandle, size: int, timeout_ms: int) -> bytes:
        try:
            data = handle.native.read(size, timeout_ms)
        except (OSError, ValueError) as exc:
            if not self._is_attached(handle.path):
                raise DeviceGoneError(f"HID device {handle.path} is no longer attached") from exc
            raise UsbCommunicationError(f"HID read from {handle.path} failed: {exc}") from exc
        return bytes(data) if data else b""

    def close(self, handle: DeviceHandle) -> None:
        try:
            handle.native.close()
        except OSError as exc:
            raise UsbCommunicationError(f"HID close of {handle.path} failed: {exc}") from exc
        LOGGER.debug("Closed HID device %s", handle.path)
