"""Raw libusb transport implementation using pyusb."""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from typing import Any

from magtekctl.core.errors import (
    DeviceBusyError,
    DeviceGoneError,
    DeviceNotFoundError,
    DevicePermissionError,
    MagtekctlError,
    PlatformNotSupportedError,
    UsbCommunicationError,
)
from magtekctl.core.model import DeviceDescriptor
from magtekctl.transports.base import DeviceHandle

LOGGER = logging.getLogger(__name__)

HID_INTERFACE = 0
_PATH_PREFIX = "usb:"


def _load_usb() -> Any:
    try:
        import usb.core  # type: ignore
        import usb.util  # type: ignore
    except ImportError as exc:
        raise PlatformNotSupportedError(
            "libusb transport requires 'pyusb' and a libusb backend. Install dependency and retry."
        ) from exc
    return usb


def usb_path(bus: int, address: int) -> str:
    return f"{_PATH_PREFIX}{bus}:{address}"


def parse_usb_path(path: str) -> tuple[int, int]:
    if not path.startswith(_PATH_PREFIX):
        raise DeviceNotFoundError(f"Not a libusb device path: {path}")
    try:
        bus, address = path[len(_PATH_PREFIX) :].split(":")
        return int(bus), int(address)
    except ValueError as exc:
        raise DeviceNotFoundError(f"Malformed libusb device path: {path}") from exc


def map_usb_error(exc: Exception, context: str) -> MagtekctlError:
    code = getattr(exc, "errno", None)
    if code == errno.EACCES:
        return DevicePermissionError(f"{context}: permission denied. Check udev rules for the reader.")
    if code == errno.EBUSY:
        return DeviceBusyError(f"{context}: device busy")
    if code in (errno.ENODEV, errno.ENOENT):
        return DeviceNotFoundError(f"{context}: no such device")
    return UsbCommunicationError(f"{context}: {exc}")


@dataclass
class _UsbSession:
    device: Any
    detached_kernel_driver: bool = False
    claimed: bool = False


class PyUSBTransport:
    name = "libusb"

    def _string(self, usb: Any, device: Any, index: int) -> str | None:
        if not index:
            return None
        try:
            return usb.util.get_string(device, index)
        except (usb.core.USBError, ValueError, NotImplementedError):
            # Unreadable without permission on the device node.
            return None

    def enumerate(self) -> list[DeviceDescriptor]:
        usb = _load_usb()
        devices: list[DeviceDescriptor] = []
        try:
            found = list(usb.core.find(find_all=True))
        except usb.core.NoBackendError as exc:
            raise PlatformNotSupportedError("No libusb backend available") from exc
        for device in found:
            devices.append(
                DeviceDescriptor.build(
                    vendor_id=int(device.idVendor),
                    product_id=int(device.idProduct),
                    path=usb_path(device.bus, device.address),
                    serial_number=self._string(usb, device, device.iSerialNumber),
                    product_string=self._string(usb, device, device.iProduct),
                )
            )
        return devices

    def _claim(self, usb: Any, session: _UsbSession) -> Any:
        device = session.device
        try:
            if device.is_kernel_driver_active(HID_INTERFACE):
                device.detach_kernel_driver(HID_INTERFACE)
                session.detached_kernel_driver = True
        except NotImplementedError:
            pass
        try:
            device.get_active_configuration()
        except usb.core.USBError:
            device.set_configuration()
        usb.util.claim_interface(device, HID_INTERFACE)
        session.claimed = True
        interface = device.get_active_configuration()[(HID_INTERFACE, 0)]
        return usb.util.find_descriptor(
            interface,
            custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
            == usb.util.ENDPOINT_IN,
        )

    def _release(self, usb: Any, session: _UsbSession, path: str) -> None:
        device = session.device
        try:
            if session.claimed:
                try:
                    usb.util.release_interface(device, HID_INTERFACE)
                except usb.core.USBError as exc:
                    LOGGER.warning("Releasing %s failed: %s", path, exc)
                session.claimed = False
            if session.detached_kernel_driver:
                try:
                    device.attach_kernel_driver(HID_INTERFACE)
                except usb.core.USBError as exc:
                    LOGGER.warning("Reattaching kernel driver to %s failed: %s", path, exc)
                session.detached_kernel_driver = False
        finally:
            usb.util.dispose_resources(device)

    def open(self, path: str) -> DeviceHandle:
        usb = _load_usb()
        bus, address = parse_usb_path(path)
        device = usb.core.find(custom_match=lambda d: d.bus == bus and d.address == address)
        if device is None:
            raise DeviceNotFoundError(f"No USB device at {path}")

        session = _UsbSession(device=device)
        try:
            endpoint = self._claim(usb, session)
        except usb.core.USBError as exc:
            self._release(usb, session, path)
            raise map_usb_error(exc, f"Opening {path}") from exc

        if endpoint is None:
            self._release(usb, session, path)
            raise UsbCommunicationError(f"No interrupt IN endpoint on {path}")

        LOGGER.debug("Opened USB device %s endpoint 0x%02x", path, endpoint.bEndpointAddress)
        return DeviceHandle(path=path, native=session, endpoint=endpoint.bEndpointAddress)

    def read(self, handle: DeviceHandle, size: int, timeout_ms: int) -> bytes:
        usb = _load_usb()
        # pyusb treats a zero timeout as "wait forever".
        timeout = max(timeout_ms, 1)
        try:
            data = handle.native.device.read(handle.endpoint, size, timeout=timeout)
        except usb.core.USBTimeoutError:
            return b""
        except usb.core.USBError as exc:
            if getattr(exc, "errno", None) in (errno.ENODEV, errno.ENOENT, errno.ESHUTDOWN):
                raise DeviceGoneError(f"USB device {handle.path} is no longer attached") from exc
            raise UsbCommunicationError(f"USB read from {handle.path} failed: {exc}") from exc
        return bytes(data)

    def close(self, handle: DeviceHandle) -> None:
        usb = _load_usb()
        self._release(usb, handle.native, handle.path)
        LOGGER.debug("Closed USB device %s", handle.path)
