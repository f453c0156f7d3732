"""Background worker issuing bounded reads against an open reader."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from magtekctl.core.card_assembler import decode_report
from magtekctl.core.errors import DeviceGoneError, UsbCommunicationError
from magtekctl.core.model import CardRecord, PollingSpec, RawReport
from magtekctl.transports.base import DeviceHandle, Transport

LOGGER = logging.getLogger(__name__)


class PollingLoop:
    """Poll one handle at a fixed cadence until stopped or the device goes away.

    ``on_card`` receives every card record that located at least one track.
    ``on_error`` receives transient read failures. ``on_fatal`` is called from
    the worker thread once, after the last read, when the handle became
    invalid; the loop has exited by the time it returns.
    """

    def __init__(
        self,
        transport: Transport,
        handle: DeviceHandle,
        device_id: str,
        *,
        on_card: Callable[[CardRecord], None],
        on_error: Callable[[UsbCommunicationError], None],
        on_fatal: Callable[[PollingLoop, DeviceGoneError], None],
        polling: PollingSpec | None = None,
    ) -> None:
        self.transport = transport
        self.handle = handle
        self.device_id = device_id
        self.polling = polling or PollingSpec()
        self._on_card = on_card
        self._on_error = on_error
        self._on_fatal = on_fatal
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._exit_lock = threading.Lock()
        self._exited = False
        self._closer: Callable[[DeviceHandle], None] | None = None

    @property
    def interval_s(self) -> float:
        return self.polling.interval_ms / 1000.0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("PollingLoop already started")
        self._thread = threading.Thread(
            target=self._run, name=f"magtekctl-poll-{self.device_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._cancel.set()

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if thread.is_alive():
            LOGGER.warning("Polling loop for %s did not stop within %.3fs", self.device_id, timeout)

    def hand_off_close(self, closer: Callable[[DeviceHandle], None]) -> bool:
        """Let the worker close the handle once its current read returns.

        Returns False when the worker has already exited; the caller then
        owns the close.
        """
        with self._exit_lock:
            if self._exited or self._thread is None:
                return False
            self._closer = closer
            return True

    def _run(self) -> None:
        LOGGER.debug("Polling %s every %dms", self.device_id, self.polling.interval_ms)
        try:
            while not self._cancel.is_set():
                if not self._tick():
                    return
                self._cancel.wait(self.interval_s)
            LOGGER.debug("Polling loop for %s cancelled", self.device_id)
        finally:
            with self._exit_lock:
                self._exited = True
                closer = self._closer
            if closer is not None:
                LOGGER.debug("Closing %s after late read returned", self.device_id)
                closer(self.handle)

    def _tick(self) -> bool:
        try:
            data = self.transport.read(
                self.handle, self.polling.report_size, self.polling.read_timeout_ms
            )
        except DeviceGoneError as exc:
            LOGGER.warning("Reader %s is gone: %s", self.device_id, exc)
            self._on_fatal(self, exc)
            return False
        except UsbCommunicationError as exc:
            LOGGER.warning("Read from %s failed: %s", self.device_id, exc)
            self._on_error(exc)
            return True

        if not data:
            return True

        report = RawReport(data=bytes(data), length=len(data), timestamp_ms=int(time.time() * 1000))
        card = decode_report(report.data, device_id=self.device_id)
        if not card.tracks:
            LOGGER.debug("Dropped %d byte report without track data", report.length)
            return True
        if self._cancel.is_set():
            # Stopped while this frame was in flight; it belongs to a stale session.
            return False
        self._on_card(card)
        return True
