"""Transport interfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from magtekctl.core.model import DeviceDescriptor


@dataclass(eq=False)
class DeviceHandle:
    path: str
    native: Any = field(repr=False)
    endpoint: int | None = None


class Transport(Protocol):
    name: str

    def enumerate(self) -> list[DeviceDescriptor]:
        """Return every attached device the backend can see."""

    def open(self, path: str) -> DeviceHandle:
        """Open a device by path.

        Raises DeviceNotFoundError, DevicePermissionError or DeviceBusyError.
        """

    def read(self, handle: DeviceHandle, size: int, timeout_ms: int) -> bytes:
        """Read one input report; ``b""`` when nothing arrived in time.

        Raises UsbCommunicationError, or DeviceGoneError when the handle is
        no longer usable.
        """

    def close(self, handle: DeviceHandle) -> None:
        """Release the handle."""
