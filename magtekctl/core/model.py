"""Core data models used across decoding, connection, and CLI."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from magtekctl.core.errors import CardDataParsingError

DEFAULT_POLL_INTERVAL_MS = 50
DEFAULT_READ_TIMEOUT_MS = 10
DEFAULT_REPORT_SIZE = 256
DEFAULT_FALLBACK_NAME = "Card Reader (PID: 0x{product_id:04x})"


def make_device_id(vendor_id: int, product_id: int, serial_number: str | None, path: str) -> str:
    return f"{vendor_id:x}:{product_id:x}:{serial_number or path}"


@dataclass(frozen=True)
class DeviceDescriptor:
    id: str
    vendor_id: int
    product_id: int
    path: str
    serial_number: str | None = None
    product_string: str | None = None
    connected: bool = False

    @classmethod
    def build(
        cls,
        *,
        vendor_id: int,
        product_id: int,
        path: str,
        serial_number: str | None = None,
        product_string: str | None = None,
    ) -> DeviceDescriptor:
        return cls(
            id=make_device_id(vendor_id, product_id, serial_number, path),
            vendor_id=vendor_id,
            product_id=product_id,
            path=path,
            serial_number=serial_number or None,
            product_string=product_string or None,
        )


@dataclass(frozen=True)
class PollingSpec:
    interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS
    report_size: int = DEFAULT_REPORT_SIZE


@dataclass(frozen=True)
class ReaderProfile:
    id: str
    name: str
    vendor_id: int
    products: dict[int, str]
    any_product: bool = False
    fallback_name: str = DEFAULT_FALLBACK_NAME
    polling: PollingSpec = field(default_factory=PollingSpec)

    def matches(self, vendor_id: int, product_id: int) -> bool:
        if vendor_id != self.vendor_id:
            return False
        return self.any_product or product_id in self.products

    def device_name(self, product_id: int) -> str:
        name = self.products.get(product_id)
        if name:
            return name
        return self.fallback_name.format(product_id=product_id)


@dataclass(frozen=True)
class MatchedDevice:
    descriptor: DeviceDescriptor
    profile: ReaderProfile


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    device_name: str
    vendor_id: int
    product_id: int
    device_path: str
    serial_number: str | None = None
    is_connected: bool = False
    product_string: str | None = None

    @classmethod
    def from_match(cls, matched: MatchedDevice, *, connected: bool) -> DeviceInfo:
        descriptor = matched.descriptor
        return cls(
            device_id=descriptor.id,
            device_name=matched.profile.device_name(descriptor.product_id),
            vendor_id=descriptor.vendor_id,
            product_id=descriptor.product_id,
            device_path=descriptor.path,
            serial_number=descriptor.serial_number,
            is_connected=connected,
            product_string=descriptor.product_string,
        )

    @property
    def display_name(self) -> str:
        if self.serial_number:
            return f"{self.device_name} (S/N: {self.serial_number})"
        return self.device_name

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["display_name"] = self.display_name
        return data


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    MONITORING = "Monitoring"


@dataclass(frozen=True)
class RawReport:
    data: bytes
    length: int
    timestamp_ms: int


@dataclass(frozen=True)
class TrackRecord:
    """Decoded (or rejected) content of a single track.

    A record with ``decoded=False`` only ever carries ``raw`` and
    ``failure_reason``.
    """

    track_number: int
    raw: str | None
    decoded: bool
    failure_reason: str | None = None
    account_number: str | None = None
    cardholder_name: str | None = None
    expiration_date: str | None = None
    service_code: str | None = None
    discretionary_data: str | None = None
    primary_account_number: str | None = None
    additional_data: str | None = None

    @classmethod
    def failed(cls, track_number: int, raw: str | None, reason: str) -> TrackRecord:
        return cls(track_number=track_number, raw=raw, decoded=False, failure_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CardRecord:
    timestamp: datetime
    raw_response_hex: str
    has_valid_data: bool
    track1: TrackRecord | None = None
    track2: TrackRecord | None = None
    track3: TrackRecord | None = None
    device_id: str | None = None
    primary_account_number: str | None = field(default=None, repr=False)
    cardholder_name: str | None = field(default=None, repr=False)
    expiration_date: str | None = None
    service_code: str | None = None
    card_brand: str | None = None
    is_valid_payment_card: bool = False
    masked_account_number: str | None = None

    @property
    def tracks(self) -> tuple[TrackRecord, ...]:
        return tuple(t for t in (self.track1, self.track2, self.track3) if t is not None)

    @property
    def decoded_tracks(self) -> tuple[TrackRecord, ...]:
        return tuple(t for t in self.tracks if t.decoded)

    @property
    def failed_tracks(self) -> tuple[TrackRecord, ...]:
        return tuple(t for t in self.tracks if not t.decoded)

    def require_valid(self) -> CardRecord:
        if not self.has_valid_data:
            reasons = "; ".join(
                f"track {t.track_number}: {t.failure_reason}" for t in self.failed_tracks
            )
            raise CardDataParsingError(
                f"No track could be decoded{': ' + reasons if reasons else ''}"
            )
        return self

    def __str__(self) -> str:
        numbers = ", ".join(str(t.track_number) for t in self.decoded_tracks)
        return (
            f"CardRecord(timestamp={self.timestamp.isoformat()}, has_valid_data={self.has_valid_data}, "
            f"masked_pan={self.masked_account_number}, brand={self.card_brand}, tracks=[{numbers}])"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "track1": self.track1.to_dict() if self.track1 else None,
            "track2": self.track2.to_dict() if self.track2 else None,
            "track3": self.track3.to_dict() if self.track3 else None,
            "timestamp": self.timestamp.isoformat(),
            "has_valid_data": self.has_valid_data,
            "device_id": self.device_id,
            "raw_response_hex": self.raw_response_hex,
            "primary_account_number": self.primary_account_number,
            "cardholder_name": self.cardholder_name,
            "expiration_date": self.expiration_date,
            "service_code": self.service_code,
            "card_brand": self.card_brand,
            "masked_account_number": self.masked_account_number,
            "is_valid_payment_card": self.is_valid_payment_card,
        }
