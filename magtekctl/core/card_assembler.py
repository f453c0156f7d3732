"""Merge decoded tracks into a card record with derived payment fields."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from magtekctl.core.model import CardRecord, TrackRecord
from magtekctl.core.report_parser import parse_report
from magtekctl.core.track_decoder import decode_track

LOGGER = logging.getLogger(__name__)

VISA = "Visa"
MASTERCARD = "Mastercard"
AMERICAN_EXPRESS = "American Express"
DISCOVER = "Discover"
JCB = "JCB"
UNKNOWN = "Unknown"

_MIN_PAN_LENGTH = 13
_MAX_PAN_LENGTH = 19


def _leading_int(pan: str, digits: int) -> int:
    prefix = pan[:digits]
    return int(prefix) if prefix.isdigit() else 0


def card_brand(pan: str | None) -> str | None:
    if pan is None or len(pan) < 4:
        return None
    first = _leading_int(pan, 1)
    first_two = _leading_int(pan, 2)
    if first == 4:
        return VISA
    if 51 <= first_two <= 55:
        return MASTERCARD
    if first_two in (34, 37):
        return AMERICAN_EXPRESS
    if first_two in (60, 62, 64, 65):
        return DISCOVER
    if 35 <= first_two <= 39:
        return JCB
    return UNKNOWN


def luhn_valid(number: str) -> bool:
    if not number or not number.isdigit():
        return False
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def is_valid_payment_card(pan: str | None) -> bool:
    if pan is None or not _MIN_PAN_LENGTH <= len(pan) <= _MAX_PAN_LENGTH:
        return False
    return luhn_valid(pan)


def mask_account_number(pan: str | None) -> str | None:
    if pan is None or len(pan) < 4:
        return None
    return "*" * (len(pan) - 4) + pan[-4:]


def assemble(
    track1: TrackRecord | None = None,
    track2: TrackRecord | None = None,
    track3: TrackRecord | None = None,
    *,
    raw_response_hex: str = "",
    device_id: str | None = None,
    timestamp: datetime | None = None,
) -> CardRecord:
    pan = (track1.account_number if track1 else None) or (
        track2.primary_account_number if track2 else None
    )
    expiration = (track1.expiration_date if track1 else None) or (
        track2.expiration_date if track2 else None
    )
    service_code = (track1.service_code if track1 else None) or (
        track2.service_code if track2 else None
    )
    return CardRecord(
        timestamp=timestamp or datetime.now(timezone.utc),
        raw_response_hex=raw_response_hex,
        has_valid_data=any(t is not None and t.decoded for t in (track1, track2, track3)),
        track1=track1,
        track2=track2,
        track3=track3,
        device_id=device_id,
        primary_account_number=pan,
        cardholder_name=track1.cardholder_name if track1 else None,
        expiration_date=expiration,
        service_code=service_code,
        card_brand=card_brand(pan),
        is_valid_payment_card=is_valid_payment_card(pan),
        masked_account_number=mask_account_number(pan),
    )


def decode_report(
    data: bytes,
    *,
    device_id: str | None = None,
    timestamp: datetime | None = None,
) -> CardRecord:
    """Run a raw input report through parsing, track decoding and assembly."""
    parsed = parse_report(data)
    tracks = {
        number: decode_track(number, span)
        for number, span in ((1, parsed.track1), (2, parsed.track2), (3, parsed.track3))
        if span
    }
    card = assemble(
        tracks.get(1),
        tracks.get(2),
        tracks.get(3),
        raw_response_hex=data.hex(" "),
        device_id=device_id,
        timestamp=timestamp,
    )
    for track in card.failed_tracks:
        LOGGER.debug("Track %d failed to decode: %s", track.track_number, track.failure_reason)
    return card
