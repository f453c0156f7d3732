"""Connection state machine owning at most one open reader."""

from __future__ import annotations

import logging
import threading

from magtekctl.core.errors import (
    DeviceGoneError,
    DeviceNotFoundError,
    MagtekctlError,
)
from magtekctl.core.events import EventBus, Topic
from magtekctl.core.model import CardRecord, ConnectionState, DeviceInfo, MatchedDevice
from magtekctl.core.polling import PollingLoop
from magtekctl.core.registry import DeviceRegistry
from magtekctl.transports.base import DeviceHandle, Transport

LOGGER = logging.getLogger(__name__)


class ConnectionManager:
    """Serialize connect, disconnect and detach against the polling worker.

    Every state change happens under ``_lock``. Teardown always stops and
    joins the polling loop before the handle is closed, so ``close`` never
    overlaps an in-flight ``read``.
    """

    def __init__(self, transport: Transport, registry: DeviceRegistry, bus: EventBus) -> None:
        self.transport = transport
        self.registry = registry
        self.bus = bus
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._device: MatchedDevice | None = None
        self._handle: DeviceHandle | None = None
        self._loop: PollingLoop | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def active_device_id(self) -> str | None:
        device = self._device
        return device.descriptor.id if device else None

    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.MONITORING)

    def connect(self, device_id: str) -> bool:
        with self._lock:
            if self.is_connected():
                LOGGER.info("Replacing connection to %s with %s", self.active_device_id, device_id)
                self._teardown(reason="replaced")

            self._state = ConnectionState.CONNECTING
            try:
                matched = self.registry.find(device_id)
                if matched is None:
                    raise DeviceNotFoundError(f"Device not found: {device_id}")
                handle = self.transport.open(matched.descriptor.path)
            except MagtekctlError as exc:
                self._state = ConnectionState.DISCONNECTED
                LOGGER.warning("Could not connect to %s: %s", device_id, exc)
                self._report(exc)
                return False

            self._device = matched
            self._handle = handle
            self._state = ConnectionState.CONNECTED
            self._loop = PollingLoop(
                self.transport,
                handle,
                device_id,
                on_card=self._emit_card,
                on_error=self._report,
                on_fatal=self._on_loop_failed,
                polling=matched.profile.polling,
            )
            self._loop.start()
            self._state = ConnectionState.MONITORING
            info = DeviceInfo.from_match(matched, connected=True)
            LOGGER.info("Connected to %s (%s)", device_id, info.display_name)
            self.bus.publish(Topic.DEVICE_CONNECTED, info)
            return True

    def disconnect(self) -> None:
        with self._lock:
            if not self.is_connected():
                return
            self._teardown(reason="disconnect")

    def notify_detached(self, device_id: str) -> None:
        with self._lock:
            if not self.is_connected() or device_id != self.active_device_id:
                LOGGER.debug("Ignoring detach of inactive device %s", device_id)
                return
            LOGGER.info("Reader %s was detached", device_id)
            self._teardown(reason="detached")

    def _teardown(self, *, reason: str) -> None:
        loop, handle, device = self._loop, self._handle, self._device
        self._loop = None
        if loop is not None:
            loop.stop()
            loop.join(timeout=loop.interval_s + loop.polling.read_timeout_ms / 1000.0 + 1.0)
        # A read still in flight keeps the handle; the worker closes it on exit.
        if loop is None or not loop.hand_off_close(self._close_handle):
            self._close_handle(handle)
        self._handle = None
        self._device = None
        self._state = ConnectionState.DISCONNECTED
        LOGGER.info("Disconnected from %s (%s)", device.descriptor.id if device else "<none>", reason)
        if device is not None:
            self._discard_pending_cards(device.descriptor.id)
            self.bus.publish(Topic.DEVICE_DISCONNECTED, DeviceInfo.from_match(device, connected=False))

    def _close_handle(self, handle: DeviceHandle | None) -> None:
        if handle is None:
            return
        try:
            self.transport.close(handle)
        except MagtekctlError as exc:
            LOGGER.warning("Closing %s failed: %s", handle.path, exc)

    def _on_loop_failed(self, loop: PollingLoop, exc: DeviceGoneError) -> None:
        # Runs on the worker thread. A concurrent teardown holds the lock while
        # joining this thread, so only wait while the loop is not cancelled.
        while not loop.cancelled:
            if not self._lock.acquire(timeout=loop.interval_s):
                continue
            try:
                if self._loop is not loop:
                    return
                self._loop = None
                device = self._device
                self._close_handle(self._handle)
                self._handle = None
                self._device = None
                self._state = ConnectionState.DISCONNECTED
                self._report(exc)
                if device is not None:
                    self.bus.publish(
                        Topic.DEVICE_DISCONNECTED, DeviceInfo.from_match(device, connected=False)
                    )
                return
            finally:
                self._lock.release()

    def _discard_pending_cards(self, device_id: str) -> None:
        dropped = self.bus.discard(
            Topic.CARD_SWIPE, lambda card: card.device_id == device_id
        )
        if dropped:
            LOGGER.info("Dropped %d undelivered swipe(s) from %s", dropped, device_id)

    def _emit_card(self, card: CardRecord) -> None:
        LOGGER.info("Card swipe on %s: %s", card.device_id, card)
        self.bus.publish(Topic.CARD_SWIPE, card)

    def _report(self, exc: MagtekctlError) -> None:
        self.bus.publish(Topic.ERROR, exc.kind, str(exc))

