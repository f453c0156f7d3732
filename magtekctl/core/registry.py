"""Device enumeration filtered by reader profiles."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from magtekctl.core.model import DeviceDescriptor, MatchedDevice, ReaderProfile
from magtekctl.transports.base import Transport


def profile_for_device(
    descriptor: DeviceDescriptor, profiles: Iterable[ReaderProfile]
) -> ReaderProfile | None:
    for profile in profiles:
        if profile.matches(descriptor.vendor_id, descriptor.product_id):
            return profile
    return None


class DeviceRegistry:
    """Stateless query over the transport's attached devices."""

    def __init__(self, transport: Transport, profiles: dict[str, ReaderProfile]) -> None:
        self.transport = transport
        self.profiles = profiles

    def list_devices(self, *, active_device_id: str | None = None) -> list[MatchedDevice]:
        matched: list[MatchedDevice] = []
        seen: set[str] = set()
        ordered = sorted(self.profiles.values(), key=lambda p: p.id)
        for descriptor in self.transport.enumerate():
            if descriptor.id in seen:
                continue
            profile = profile_for_device(descriptor, ordered)
            if profile is None:
                continue
            seen.add(descriptor.id)
            if descriptor.id == active_device_id:
                descriptor = replace(descriptor, connected=True)
            matched.append(MatchedDevice(descriptor=descriptor, profile=profile))
        return matched

    def find(self, device_id: str) -> MatchedDevice | None:
        for device in self.list_devices():
            if device.descriptor.id == device_id:
                return device
        return None
