"""
location.py - Current device location.

The engine attaches the device location to registration, to the
sync-start item and to every authored message. Where the location
comes from (GPS, configuration, nothing at all) is up to the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Location:
    latitude: float | None = None
    longitude: float | None = None


class LocationProvider(ABC):
    """Source of the device's current location."""

    @abstractmethod
    def current(self) -> Location:
        pass


class StaticLocationProvider(LocationProvider):
    """Always reports the same location (or none)."""

    def __init__(self, latitude: float | None = None, longitude: float | None = None):
        self._location = Location(latitude, longitude)

    def current(self) -> Location:
        return self._location
