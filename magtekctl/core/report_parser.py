"""Locate track spans inside a raw HID input report."""

from __future__ import annotations

from dataclasses import dataclass

TRACK1_START = "%"
TRACK2_START = ";"
END_SENTINEL = "?"

_PRINTABLE_MIN = 0x20
_PRINTABLE_MAX = 0x7E


@dataclass(frozen=True)
class ParsedReport:
    data_string: str
    track1: str | None = None
    track2: str | None = None
    track3: str | None = None

    @property
    def has_tracks(self) -> bool:
        return any(span is not None for span in (self.track1, self.track2, self.track3))


def printable_payload(data: bytes) -> str:
    # Byte 0 is the report id / status byte.
    return "".join(chr(b) for b in data[1:] if _PRINTABLE_MIN <= b <= _PRINTABLE_MAX)


def find_track_span(data_string: str, start_sentinel: str) -> str | None:
    start = data_string.find(start_sentinel)
    if start < 0:
        return None
    end = data_string.find(END_SENTINEL, start)
    if end < 0:
        return None
    return data_string[start : end + 1]


def parse_report(data: bytes) -> ParsedReport:
    """Strip a frame to printable ASCII and locate the track 1/2 spans.

    Both spans are searched on the full string, so they may overlap. Track 3
    has no sentinel convention and is never located here.
    """
    data_string = printable_payload(data)
    if not data_string:
        return ParsedReport(data_string="")
    return ParsedReport(
        data_string=data_string,
        track1=find_track_span(data_string, TRACK1_START),
        track2=find_track_span(data_string, TRACK2_START),
    )
