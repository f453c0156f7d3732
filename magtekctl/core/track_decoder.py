"""Per-track grammar for ISO 7811 magnetic stripe data."""

from __future__ import annotations

from magtekctl.core.model import TrackRecord
from magtekctl.core.report_parser import END_SENTINEL, TRACK1_START, TRACK2_START

TRACK1_FIELD_SEPARATOR = "^"
TRACK2_FIELD_SEPARATOR = "="


def _split_additional_info(info: str) -> tuple[str | None, str | None, str | None]:
    expiration = info[:4] if len(info) >= 4 else None
    service_code = info[4:7] if len(info) >= 7 else None
    discretionary = info[7:] if len(info) > 7 else None
    return expiration, service_code, discretionary


def _strip_sentinels(raw: str, start_sentinel: str) -> str | None:
    if len(raw) < 2 or not raw.startswith(start_sentinel) or not raw.endswith(END_SENTINEL):
        return None
    return raw[1:-1]


def decode_track1(raw: str) -> TrackRecord:
    content = _strip_sentinels(raw, TRACK1_START)
    if content is None:
        return TrackRecord.failed(1, raw, "Invalid Track 1 format")
    # Format code, "B" for financial cards.
    if content[:1].isalpha():
        content = content[1:]

    parts = content.split(TRACK1_FIELD_SEPARATOR)
    if len(parts) < 3:
        return TrackRecord.failed(1, raw, "Incomplete Track 1 data")

    expiration, service_code, discretionary = _split_additional_info(parts[2])
    return TrackRecord(
        track_number=1,
        raw=raw,
        decoded=True,
        account_number=parts[0],
        cardholder_name=parts[1],
        expiration_date=expiration,
        service_code=service_code,
        discretionary_data=discretionary,
    )


def decode_track2(raw: str) -> TrackRecord:
    content = _strip_sentinels(raw, TRACK2_START)
    if content is None:
        return TrackRecord.failed(2, raw, "Invalid Track 2 format")

    pan, separator, info = content.partition(TRACK2_FIELD_SEPARATOR)
    if not separator:
        return TrackRecord.failed(2, raw, "Incomplete Track 2 data")

    expiration, service_code, discretionary = _split_additional_info(info)
    return TrackRecord(
        track_number=2,
        raw=raw,
        decoded=True,
        primary_account_number=pan,
        expiration_date=expiration,
        service_code=service_code,
        discretionary_data=discretionary,
    )


def decode_track3(raw: str) -> TrackRecord:
    # Track 3 layout is firmware specific; pass it through untouched.
    return TrackRecord(track_number=3, raw=raw, decoded=True, additional_data=raw)


_DECODERS = {1: decode_track1, 2: decode_track2, 3: decode_track3}


def decode_track(track_number: int, raw: str | None) -> TrackRecord:
    """Decode one track span. Never raises; failures set ``decoded=False``."""
    if not raw:
        return TrackRecord.failed(track_number, raw, "Empty track data")
    decoder = _DECODERS.get(track_number)
    if decoder is None:
        return TrackRecord.failed(track_number, raw, f"Invalid track number {track_number}")
    return decoder(raw)
