# bhejo-tracking/bhejo/geocoding.py
"""
Mock address resolution for the Bhejo delivery marketplace.

There is no real geocoder behind this module. An address is mapped to the
centroid of the first known city its text mentions (case-insensitive), or to
a default centroid, and then scattered within a few kilometres so that two
addresses in the same city do not land on the same point. A short sleep
stands in for the network round trip.

Resolution is modelled as fallible (``Resolution.ok``) even though the mock
always succeeds, so that callers already handle the not-found branch.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, Optional, Tuple

from . import config, utils
from .models import Coordinates, Resolution

logger = logging.getLogger(__name__)


class AddressResolver:
    """
    Resolves free-text addresses to approximate coordinates.

    Attributes:
        centroids: City name -> centroid, matched in insertion order
        default_centroid: Used when no city name appears in the address
        jitter_km: Scatter radius around the centroid
        delay_seconds: Artificial latency per lookup
    """

    def __init__(
        self,
        centroids: Optional[Dict[str, Tuple[float, float]]] = None,
        default_centroid: Optional[Coordinates] = None,
        jitter_km: Optional[float] = None,
        delay_seconds: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.centroids = dict(centroids if centroids is not None else config.CITY_CENTROIDS)
        self.default_centroid = default_centroid or config.DEFAULT_CENTROID
        self.jitter_km = config.GEOCODE_JITTER_KM if jitter_km is None else jitter_km
        self.delay_seconds = config.GEOCODE_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self._rng = rng

    def match_city(self, address: str) -> Optional[str]:
        """Return the first known city named in the address, if any."""
        text = (address or "").lower()
        for city in self.centroids:
            if city.lower() in text:
                return city
        return None

    def centroid_for(self, address: str) -> Coordinates:
        city = self.match_city(address)
        if city is None:
            return self.default_centroid
        return self.centroids[city]

    async def resolve(self, address: str) -> Resolution:
        """
        Resolve an address to coordinates.

        Never reports not-found: unknown places resolve around the default
        centroid. The lookup yields to the event loop for ``delay_seconds``.

        Args:
            address: Free-text address as typed by the customer

        Returns:
            Resolution with ``coords`` set
        """
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        city = self.match_city(address)
        if city is None:
            logger.debug(f"No known city in address {address!r}, using default centroid")
        base_lat, base_lng = self.centroids[city] if city else self.default_centroid
        coords = utils.jitter_position(base_lat, base_lng, self.jitter_km, rng=self._rng)
        return Resolution.found(address, coords, matched_city=city)


_default_resolver: Optional[AddressResolver] = None


def get_default_resolver() -> AddressResolver:
    """Shared resolver built from the current config values."""
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = AddressResolver()
    return _default_resolver


async def resolve_address(address: str) -> Resolution:
    """Resolve an address with the shared resolver."""
    return await get_default_resolver().resolve(address)


def locate_device(provider: Optional[Callable[[], Coordinates]] = None) -> Coordinates:
    """
    Ask a device position provider for the current location.

    Falls back to the default centroid when there is no provider (geolocation
    unsupported) or the provider fails (permission denied, timeout).

    Args:
        provider: Zero-argument callable returning (lat, lng)

    Returns:
        A (lat, lng) tuple, never raises
    """
    if provider is None:
        logger.warning("Geolocation is not supported, using default position")
        return config.DEFAULT_CENTROID
    try:
        lat, lng = provider()
        return (float(lat), float(lng))
    except Exception as e:
        logger.warning(f"Geolocation failed, using default position: {e}")
        return config.DEFAULT_CENTROID
