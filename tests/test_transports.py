from __future__ import annotations

import errno
import sys
import types

import pytest

from magtekctl.core.errors import (
    DeviceBusyError,
    DeviceGoneError,
    DeviceNotFoundError,
    DevicePermissionError,
    PlatformNotSupportedError,
    UsbCommunicationError,
)
from magtekctl.core.service import build_transport
from magtekctl.transports.base import DeviceHandle
from magtekctl.transports.hidapi import HidapiTransport
from magtekctl.transports.pyusb import PyUSBTransport, map_usb_error, parse_usb_path, usb_path

READER_INFO = {
    "path": b"/dev/hidraw3",
    "vendor_id": 0x0801,
    "product_id": 0x0002,
    "serial_number": "B1234",
    "product_string": "USB Swipe Reader",
}


class FakeHidDevice:
    def __init__(self, module: types.ModuleType) -> None:
        self.module = module
        self.closed = False
        module.created.append(self)

    def open_path(self, path: bytes) -> None:
        if self.module.open_error is not None:
            raise self.module.open_error

    def read(self, size: int, timeout_ms: int) -> list[int]:
        if self.module.read_error is not None:
            raise self.module.read_error
        return list(self.module.frames.pop(0)) if self.module.frames else []

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_hid(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    module = types.ModuleType("hid")
    module.attached = [READER_INFO]
    module.frames = []
    module.created = []
    module.open_error = None
    module.read_error = None
    module.enumerate = lambda vid=0, pid=0: list(module.attached)
    module.device = lambda: FakeHidDevice(module)
    monkeypatch.setitem(sys.modules, "hid", module)
    return module


def test_missing_hid_module_raises_clean_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "hid", None)
    with pytest.raises(PlatformNotSupportedError):
        HidapiTransport().enumerate()


def test_hid_enumerate_builds_descriptors(fake_hid) -> None:
    [device] = HidapiTransport().enumerate()
    assert device.id == "801:2:B1234"
    assert device.path == "/dev/hidraw3"
    assert device.product_string == "USB Swipe Reader"


def test_hid_read_returns_bytes_and_empty_on_timeout(fake_hid) -> None:
    transport = HidapiTransport()
    handle = transport.open("/dev/hidraw3")
    fake_hid.frames.append(b"\x00%B1^A^2?")
    assert transport.read(handle, 256, 10) == b"\x00%B1^A^2?"
    assert transport.read(handle, 256, 10) == b""
    transport.close(handle)
    assert handle.native.closed


def test_hid_open_missing_path(fake_hid) -> None:
    with pytest.raises(DeviceNotFoundError):
        HidapiTransport().open("/dev/hidraw9")


def test_hid_open_failure_is_busy_when_node_is_accessible(fake_hid) -> None:
    fake_hid.open_error = OSError("open failed")
    with pytest.raises(DeviceBusyError):
        HidapiTransport().open("/dev/hidraw3")
    assert [device.closed for device in fake_hid.created] == [True]


def test_hid_read_error_after_unplug_is_device_gone(fake_hid) -> None:
    transport = HidapiTransport()
    handle = transport.open("/dev/hidraw3")
    fake_hid.read_error = OSError("read error")

    with pytest.raises(UsbCommunicationError) as transient:
        transport.read(handle, 256, 10)
    assert not isinstance(transient.value, DeviceGoneError)

    fake_hid.attached = []
    with pytest.raises(DeviceGoneError):
        transport.read(handle, 256, 10)


class FakeUSBError(OSError):
    pass


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (errno.EACCES, DevicePermissionError),
        (errno.EBUSY, DeviceBusyError),
        (errno.ENODEV, DeviceNotFoundError),
        (errno.EIO, UsbCommunicationError),
    ],
)
def test_map_usb_error(code: int, expected: type) -> None:
    error = map_usb_error(FakeUSBError(code, "boom"), "Opening usb:1:4")
    assert type(error) is expected
    assert str(error).startswith("Opening usb:1:4")


def test_usb_path_round_trip_and_rejects_garbage() -> None:
    assert parse_usb_path(usb_path(3, 17)) == (3, 17)
    with pytest.raises(DeviceNotFoundError):
        parse_usb_path("/dev/hidraw3")
    with pytest.raises(DeviceNotFoundError):
        parse_usb_path("usb:3")


def test_missing_pyusb_raises_clean_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "usb", None)
    monkeypatch.setitem(sys.modules, "usb.core", None)
    monkeypatch.setitem(sys.modules, "usb.util", None)
    with pytest.raises(PlatformNotSupportedError):
        PyUSBTransport().read(DeviceHandle(path="usb:1:2", native=None, endpoint=0x81), 8, 10)


def test_build_transport_selection(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(build_transport(), HidapiTransport)
    assert isinstance(build_transport("LibUSB"), PyUSBTransport)
    monkeypatch.setenv("MAGTEKCTL_TRANSPORT", "libusb")
    assert isinstance(build_transport(), PyUSBTransport)
    with pytest.raises(PlatformNotSupportedError):
        build_transport("bluetooth")


class FakeUsbEndpoint:
    def __init__(self, address: int) -> None:
        self.bEndpointAddress = address


class FakeUsbConfiguration:
    def __init__(self, endpoints: list[FakeUsbEndpoint]) -> None:
        self.endpoints = endpoints

    def __getitem__(self, key: tuple[int, int]) -> list[FakeUsbEndpoint]:
        return self.endpoints


class FakeUsbDevice:
    idVendor = 0x0801
    idProduct = 0x0002
    iSerialNumber = 3
    iProduct = 2

    def __init__(self, core: types.ModuleType, endpoints: list[int] | None = None) -> None:
        self.core = core
        self.bus = 1
        self.address = 4
        self.kernel_driver_active = True
        self.detached = False
        self.reattached = False
        self.configuration = FakeUsbConfiguration(
            [FakeUsbEndpoint(a) for a in (endpoints if endpoints is not None else [0x81])]
        )
        self.reads: list[bytes | Exception] = []

    def is_kernel_driver_active(self, interface: int) -> bool:
        return self.kernel_driver_active

    def detach_kernel_driver(self, interface: int) -> None:
        self.detached = True

    def attach_kernel_driver(self, interface: int) -> None:
        self.reattached = True

    def get_active_configuration(self) -> FakeUsbConfiguration:
        return self.configuration

    def set_configuration(self) -> None:
        pass

    def read(self, endpoint: int, size: int, timeout: int) -> list[int]:
        if not self.reads:
            raise self.core.USBTimeoutError("timeout", errno=errno.ETIMEDOUT)
        item = self.reads.pop(0)
        if isinstance(item, Exception):
            raise item
        return list(item)


@pytest.fixture
def fake_usb(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    usb = types.ModuleType("usb")
    core = types.ModuleType("usb.core")
    util = types.ModuleType("usb.util")

    class USBError(OSError):
        def __init__(self, strerror: str, error_code: int | None = None, errno: int | None = None):
            super().__init__(strerror)
            self.errno = errno

    class USBTimeoutError(USBError):
        pass

    class NoBackendError(ValueError):
        pass

    core.USBError = USBError
    core.USBTimeoutError = USBTimeoutError
    core.NoBackendError = NoBackendError
    core.devices = []

    def find(find_all: bool = False, custom_match=None):
        matches = [d for d in core.devices if custom_match is None or custom_match(d)]
        if find_all:
            return iter(matches)
        return matches[0] if matches else None

    core.find = find

    util.ENDPOINT_IN = 0x80
    util.claim_error = None
    util.claimed = []
    util.released = []
    util.disposed = []

    def claim_interface(device, interface: int) -> None:
        if util.claim_error is not None:
            raise util.claim_error
        util.claimed.append(device)

    util.claim_interface = claim_interface
    util.release_interface = lambda device, interface: util.released.append(device)
    util.dispose_resources = lambda device: util.disposed.append(device)
    util.endpoint_direction = lambda address: address & 0x80
    util.find_descriptor = lambda desc, custom_match=None: next(
        (e for e in desc if custom_match(e)), None
    )
    util.get_string = lambda device, index: {3: "B1234", 2: "USB Swipe Reader"}[index]

    usb.core = core
    usb.util = util
    monkeypatch.setitem(sys.modules, "usb", usb)
    monkeypatch.setitem(sys.modules, "usb.core", core)
    monkeypatch.setitem(sys.modules, "usb.util", util)
    return usb


def test_pyusb_enumerate_reads_descriptor_strings(fake_usb) -> None:
    fake_usb.core.devices.append(FakeUsbDevice(fake_usb.core))
    [device] = PyUSBTransport().enumerate()
    assert device.id == "801:2:B1234"
    assert device.path == "usb:1:4"
    assert device.product_string == "USB Swipe Reader"


def test_pyusb_open_claims_interrupt_in_endpoint(fake_usb) -> None:
    device = FakeUsbDevice(fake_usb.core, endpoints=[0x02, 0x81])
    fake_usb.core.devices.append(device)

    handle = PyUSBTransport().open("usb:1:4")
    assert handle.endpoint == 0x81
    assert device.detached
    assert fake_usb.util.claimed == [device]
    assert fake_usb.util.disposed == []


def test_pyusb_open_failure_restores_kernel_driver(fake_usb) -> None:
    device = FakeUsbDevice(fake_usb.core)
    fake_usb.core.devices.append(device)
    fake_usb.util.claim_error = fake_usb.core.USBError("busy", errno=errno.EBUSY)

    with pytest.raises(DeviceBusyError):
        PyUSBTransport().open("usb:1:4")
    assert device.detached and device.reattached
    assert fake_usb.util.released == []
    assert fake_usb.util.disposed == [device]


def test_pyusb_open_without_in_endpoint_releases_everything(fake_usb) -> None:
    device = FakeUsbDevice(fake_usb.core, endpoints=[0x02])
    fake_usb.core.devices.append(device)

    with pytest.raises(UsbCommunicationError, match="No interrupt IN endpoint"):
        PyUSBTransport().open("usb:1:4")
    assert fake_usb.util.released == [device]
    assert device.reattached
    assert fake_usb.util.disposed == [device]


def test_pyusb_open_missing_device(fake_usb) -> None:
    with pytest.raises(DeviceNotFoundError):
        PyUSBTransport().open("usb:1:4")


def test_pyusb_read_maps_timeouts_and_unplug(fake_usb) -> None:
    device = FakeUsbDevice(fake_usb.core)
    fake_usb.core.devices.append(device)
    transport = PyUSBTransport()
    handle = transport.open("usb:1:4")

    device.reads = [
        b"\x00;1=2?",
        fake_usb.core.USBError("io", errno=errno.EIO),
        fake_usb.core.USBError("gone", errno=errno.ENODEV),
    ]
    assert transport.read(handle, 64, 10) == b"\x00;1=2?"
    with pytest.raises(UsbCommunicationError) as transient:
        transport.read(handle, 64, 10)
    assert not isinstance(transient.value, DeviceGoneError)
    with pytest.raises(DeviceGoneError):
        transport.read(handle, 64, 10)
    assert transport.read(handle, 64, 0) == b""


def test_pyusb_close_releases_and_reattaches(fake_usb) -> None:
    device = FakeUsbDevice(fake_usb.core)
    fake_usb.core.devices.append(device)
    transport = PyUSBTransport()
    handle = transport.open("usb:1:4")

    transport.close(handle)
    assert fake_usb.util.released == [device]
    assert device.reattached
    assert fake_usb.util.disposed == [device]
