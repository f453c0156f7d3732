"""Service layer used by the CLI and the public client."""

from __future__ import annotations

import logging
import os
import queue
from collections.abc import Callable, Iterator

from magtekctl.core.connection import ConnectionManager
from magtekctl.core.errors import (
    DeviceSelectionError,
    ErrorKind,
    PlatformNotSupportedError,
    ReaderTimeoutError,
)
from magtekctl.core.events import DEFAULT_QUEUE_SIZE, EventBus, Topic
from magtekctl.core.model import CardRecord, ConnectionState, DeviceInfo, MatchedDevice, ReaderProfile
from magtekctl.core.profile_loader import load_profiles
from magtekctl.core.registry import DeviceRegistry
from magtekctl.transports.base import Transport
from magtekctl.transports.hidapi import HidapiTransport
from magtekctl.transports.pyusb import PyUSBTransport

LOGGER = logging.getLogger(__name__)

TRANSPORT_ENV = "MAGTEKCTL_TRANSPORT"
DEFAULT_TRANSPORT = "hidapi"


def build_transport(name: str | None = None) -> Transport:
    selected = (name or os.environ.get(TRANSPORT_ENV) or DEFAULT_TRANSPORT).strip().lower()
    if selected == "hidapi":
        return HidapiTransport()
    if selected in ("libusb", "pyusb"):
        return PyUSBTransport()
    raise PlatformNotSupportedError(
        f"Unknown transport '{selected}'. Supported: hidapi, libusb"
    )


class ReaderService:
    """Process-wide reader context with explicit ``open``/``close``.

    Owns the transport, profiles, event bus and connection manager. Build one
    per process and pass it where it is needed.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        transport_name: str | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.transport = transport or build_transport(transport_name)
        self.bus = EventBus(queue_size=queue_size)
        self.registry = DeviceRegistry(self.transport, self.profiles)
        self.connection = ConnectionManager(self.transport, self.registry, self.bus)

    def open(self) -> ReaderService:
        self.bus.start()
        LOGGER.debug("Reader service started with %s transport", getattr(self.transport, "name", "custom"))
        return self

    def close(self) -> None:
        self.connection.disconnect()
        self.bus.wait_idle()
        self.bus.stop()

    def __enter__(self) -> ReaderService:
        return self.open()

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def list_profiles(self) -> list[ReaderProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def list_devices(self) -> list[MatchedDevice]:
        return self.registry.list_devices(active_device_id=self.connection.active_device_id)

    def get_connected_devices(self) -> list[DeviceInfo]:
        return [
            DeviceInfo.from_match(device, connected=device.descriptor.connected)
            for device in self.list_devices()
        ]

    def resolve_device(self, device_hint: str | None = None) -> DeviceInfo:
        devices = self.get_connected_devices()
        if not devices:
            raise DeviceSelectionError("No card readers found. Ensure the reader is plugged in.")

        if device_hint:
            hint = device_hint.lower()
            exact = [d for d in devices if d.device_id.lower() == hint]
            devices = exact or [
                d
                for d in devices
                if hint in d.device_id.lower()
                or hint in d.device_name.lower()
                or (d.serial_number and hint in d.serial_number.lower())
                or (d.product_string and hint in d.product_string.lower())
            ]
            if not devices:
                raise DeviceSelectionError(f"No reader found matching '{device_hint}'")

        if len(devices) > 1:
            candidate_desc = ", ".join(f"{d.device_id} ({d.device_name})" for d in devices)
            raise DeviceSelectionError(
                f"Multiple readers found: {candidate_desc}. Use --device to choose one."
            )
        return devices[0]

    def connect(self, device_id: str) -> bool:
        return self.connection.connect(device_id)

    def disconnect(self) -> None:
        self.connection.disconnect()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    def notify_detached(self, device_id: str) -> None:
        self.connection.notify_detached(device_id)

    def on_card_swipe(self, handler: Callable[[CardRecord], None]) -> int:
        return self.bus.subscribe(Topic.CARD_SWIPE, handler)

    def on_device_connected(self, handler: Callable[[DeviceInfo], None]) -> int:
        return self.bus.subscribe(Topic.DEVICE_CONNECTED, handler)

    def on_device_disconnected(self, handler: Callable[[DeviceInfo], None]) -> int:
        return self.bus.subscribe(Topic.DEVICE_DISCONNECTED, handler)

    def on_error(self, handler: Callable[[ErrorKind, str], None]) -> int:
        return self.bus.subscribe(Topic.ERROR, handler)

    def unsubscribe(self, token: int) -> bool:
        return self.bus.unsubscribe(token)

    def card_stream(self, timeout_s: float | None = None) -> Iterator[CardRecord]:
        """Subscribe now and yield swipes in order.

        Raises ReaderTimeoutError when no swipe arrives within ``timeout_s``.
        """
        cards: queue.Queue[CardRecord] = queue.Queue()
        token = self.on_card_swipe(cards.put)
        return self._drain_cards(cards, token, timeout_s)

    def _drain_cards(
        self, cards: queue.Queue[CardRecord], token: int, timeout_s: float | None
    ) -> Iterator[CardRecord]:
        try:
            while True:
                try:
                    yield cards.get(timeout=timeout_s)
                except queue.Empty:
                    raise ReaderTimeoutError(f"No card swiped within {timeout_s:g}s") from None
        finally:
            self.unsubscribe(token)

    def wait_for_card(self, timeout_s: float) -> CardRecord:
        stream = self.card_stream(timeout_s)
        try:
            return next(stream)
        finally:
            stream.close()
