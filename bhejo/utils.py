# bhejo-tracking/bhejo/utils.py
"""
Geographic utility functions for the Bhejo delivery marketplace.

Pure functions only: great-circle distance, position jitter, mock route
generation and the viewport/travel-time heuristics used by the tracking view.
No state, no I/O.
"""

from __future__ import annotations

import math
import random
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from . import config

Coordinates = Tuple[float, float]


def deg2rad(deg: float) -> float:
    """Convert decimal degrees to radians."""
    return deg * (math.pi / 180)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Uses the Haversine formula. The result is rounded to 2 decimal places,
    which is the precision shown to users and used for pricing.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees

    Returns:
        Distance in kilometers between the two points

    Example:
        >>> haversine_distance(12.9716, 77.5946, 12.9716, 77.5946)
        0.0
    """
    dlat = deg2rad(lat2 - lat1)
    dlon = deg2rad(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(deg2rad(lat1)) * math.cos(deg2rad(lat2)) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return round(config.EARTH_RADIUS_KM * c, 2)


def distance_between(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance between two (lat, lng) pairs."""
    return haversine_distance(a[0], a[1], b[0], b[1])


def midpoint(lat1: float, lon1: float, lat2: float, lon2: float) -> Coordinates:
    """Arithmetic midpoint of two positions; good enough for centring a city-scale map."""
    return ((lat1 + lat2) / 2, (lon1 + lon2) / 2)


def zoom_level_for(distance_km: float) -> int:
    """
    Pick a map zoom level that fits a trip of the given length.

    Walks the ascending threshold table in config and returns the zoom of the
    first band the distance falls under.

    Args:
        distance_km: Trip length in kilometres

    Returns:
        Zoom level (16 for sub-kilometre trips down to 6 for very long ones)
    """
    for upper_bound, zoom in config.ZOOM_THRESHOLDS:
        if distance_km < upper_bound:
            return zoom
    return config.FALLBACK_ZOOM


def travel_time_minutes(distance_km: float, mode: str = config.DEFAULT_TRAVEL_MODE) -> int:
    """
    Estimate travel time for a distance and mode of transport.

    Args:
        distance_km: Distance in kilometers
        mode: 'walking', 'bike', 'scooter' or 'car'; anything else is treated as bike

    Returns:
        Travel time in whole minutes, rounded up

    Example:
        >>> travel_time_minutes(5.0, "bike")  # 5km at 15km/h
        20
    """
    speed = config.TRAVEL_SPEEDS_KMH.get(mode, config.TRAVEL_SPEEDS_KMH[config.DEFAULT_TRAVEL_MODE])
    return math.ceil((distance_km / speed) * 60)


def eta_minutes(distance_km: float) -> int:
    """ETA shown beside the tracking map, at slow city-traffic speed."""
    return round((distance_km / config.CITY_TRAFFIC_SPEED_KMH) * 60)


def jitter_position(
    lat: float,
    lng: float,
    radius_km: float = config.DEFAULT_JITTER_KM,
    rng: Optional[random.Random] = None,
) -> Coordinates:
    """
    Return a random position within roughly ``radius_km`` of a centre point.

    The offset is drawn uniformly per axis. Latitude uses ~111 km per degree;
    the longitude span is widened by 1/cos(lat) so the box stays square on the ground.

    Args:
        lat: Centre latitude
        lng: Centre longitude
        radius_km: Half-width of the box the point is drawn from
        rng: Optional random source (for reproducible tests)

    Returns:
        A (lat, lng) tuple
    """
    rng = rng or random
    radius_lat = radius_km / config.KM_PER_DEGREE_LAT
    radius_lng = radius_km / (config.KM_PER_DEGREE_LAT * math.cos(deg2rad(lat)))
    return (
        lat + (rng.random() * 2 - 1) * radius_lat,
        lng + (rng.random() * 2 - 1) * radius_lng,
    )


def route_deviation_bound(direct_distance_km: float) -> float:
    """Maximum per-axis deviation (degrees) of an interior route waypoint."""
    return min(config.ROUTE_MAX_DEVIATION_DEG, direct_distance_km * config.ROUTE_DEVIATION_FACTOR)


def mock_route(
    start_lat: float,
    start_lng: float,
    end_lat: float,
    end_lng: float,
    num_points: int = config.ROUTE_WAYPOINTS,
    rng: Optional[random.Random] = None,
) -> List[Coordinates]:
    """
    Generate a plausible-looking route between two points.

    The route starts and ends exactly at the given points. Interior points sit
    on the straight line at ratio i/(num_points-1), nudged by random jitter
    whose envelope is sin(ratio * pi): no deviation near the ends, the most at
    the middle. The deviation never exceeds route_deviation_bound() per axis.

    Args:
        start_lat, start_lng: Route start (pickup)
        end_lat, end_lng: Route end (delivery)
        num_points: Total number of waypoints, at least 2
        rng: Optional random source (for reproducible tests)

    Returns:
        List of num_points (lat, lng) tuples

    Raises:
        ValueError: If num_points is less than 2
    """
    if num_points < 2:
        raise ValueError(f"A route needs at least 2 points, got {num_points}")

    rng = rng or random
    bound = route_deviation_bound(haversine_distance(start_lat, start_lng, end_lat, end_lng))

    route: List[Coordinates] = [(start_lat, start_lng)]
    for i in range(1, num_points - 1):
        ratio = i / (num_points - 1)
        lat = start_lat + ratio * (end_lat - start_lat)
        lng = start_lng + ratio * (end_lng - start_lng)

        envelope = math.sin(ratio * math.pi) * bound
        route.append((
            lat + (rng.random() * 2 - 1) * envelope,
            lng + (rng.random() * 2 - 1) * envelope,
        ))
    route.append((end_lat, end_lng))
    return route


def position_for_progress(
    route: List[Coordinates],
    progress: float,
    pickup: Coordinates,
    delivery: Coordinates,
) -> Coordinates:
    """
    Map a progress percentage to a position on the route.

    0 is the pickup point and 100 the delivery point; anything in between picks
    the route waypoint at floor(progress / 100 * (len(route) - 1)).
    """
    if progress <= 0:
        return pickup
    if progress >= 100:
        return delivery
    index = math.floor((progress / 100) * (len(route) - 1))
    return route[index]


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string, the timestamp format of the realtime store."""
    return datetime.now(timezone.utc).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_duration(minutes: float) -> str:
    """
    Format a duration in minutes as a human-readable string.

    Args:
        minutes: Duration in minutes

    Returns:
        Formatted string like "1h 23m" or "45m"
    """
    if minutes < 60:
        return f"{minutes:.0f}m"
    hours = int(minutes // 60)
    mins = int(minutes % 60)
    return f"{hours}h {mins}m"
