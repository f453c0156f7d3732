from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

import pytest

from magtekctl.core.errors import DeviceNotFoundError, MagtekctlError
from magtekctl.core.model import DeviceDescriptor, PollingSpec, ReaderProfile
from magtekctl.transports.base import DeviceHandle

TRACK1 = "%B4111111111111111^DOE/JOHN^2512101000000000000?"
TRACK2 = ";4111111111111111=2512101000000000?"

READER = DeviceDescriptor.build(
    vendor_id=0x0801, product_id=0x0002, path="/dev/hidraw3", serial_number="B1234"
)
SECOND_READER = DeviceDescriptor.build(vendor_id=0x0801, product_id=0x0010, path="/dev/hidraw5")
KEYBOARD = DeviceDescriptor.build(vendor_id=0x046D, product_id=0xC31C, path="/dev/hidraw0")

FAST_POLLING = PollingSpec(interval_ms=2, read_timeout_ms=1, report_size=64)


def report(text: str, report_id: int = 0) -> bytes:
    return bytes([report_id]) + text.encode("ascii")


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakeTransport:
    """In-memory transport that records call order and checks handle use."""

    name = "fake"

    def __init__(self, devices: list[DeviceDescriptor] | None = None) -> None:
        self.devices = list(devices) if devices is not None else [READER, SECOND_READER, KEYBOARD]
        self.calls: list[tuple[str, str, int]] = []
        self.reports: deque[bytes] = deque()
        self.read_errors: deque[MagtekctlError] = deque()
        self.open_errors: dict[str, MagtekctlError] = {}
        self.open_handles: set[int] = set()
        self.reads_on_closed = 0
        self.close_during_read = 0
        self._in_flight: dict[int, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def push(self, *frames: bytes) -> None:
        with self._lock:
            self.reports.extend(frames)

    def ops(self, name: str) -> list[tuple[str, str, int]]:
        with self._lock:
            return [call for call in self.calls if call[0] == name]

    def enumerate(self) -> list[DeviceDescriptor]:
        with self._lock:
            return list(self.devices)

    def open(self, path: str) -> DeviceHandle:
        with self._lock:
            error = self.open_errors.get(path)
            if error is not None:
                raise error
            if not any(d.path == path for d in self.devices):
                raise DeviceNotFoundError(f"No device at {path}")
            handle_id = next(self._ids)
            self.open_handles.add(handle_id)
            self.calls.append(("open", path, handle_id))
            return DeviceHandle(path=path, native=handle_id)

    def read(self, handle: DeviceHandle, size: int, timeout_ms: int) -> bytes:
        with self._lock:
            self.calls.append(("read", handle.path, handle.native))
            if handle.native not in self.open_handles:
                self.reads_on_closed += 1
            if self.read_errors:
                raise self.read_errors.popleft()
            if self.reports:
                return self.reports.popleft()
            self._in_flight[handle.native] = self._in_flight.get(handle.native, 0) + 1
        try:
            time.sleep(timeout_ms / 1000.0)
        finally:
            with self._lock:
                self._in_flight[handle.native] -= 1
        return b""

    def close(self, handle: DeviceHandle) -> None:
        with self._lock:
            if self._in_flight.get(handle.native, 0):
                self.close_during_read += 1
            self.open_handles.discard(handle.native)
            self.calls.append(("close", handle.path, handle.native))


@pytest.fixture(autouse=True)
def isolated_profile_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("MAGTEKCTL_TRANSPORT", raising=False)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fast_profile() -> ReaderProfile:
    return ReaderProfile(
        id="magtek_usb",
        name="Magtek",
        vendor_id=0x0801,
        products={0x0002: "Magtek USB Swipe Reader", 0x0010: "Magtek SureSwipe Reader"},
        fallback_name="Magtek Card Reader (PID: 0x{product_id:04x})",
        polling=FAST_POLLING,
    )
