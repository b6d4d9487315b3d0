# bhejo-tracking/bhejo/config.py
"""
Configuration parameters for the Bhejo delivery marketplace core.

This module centralizes all tunable parameters, making it easy to:
- Adjust the live-tracking simulation
- Change the mock geocoder's city table and latency
- Tune pricing and partner earnings

All parameters are documented with their purpose and typical value ranges.
"""

from typing import Dict, Final, List, Tuple

# =============================================================================
# GEOCODING (MOCK ADDRESS RESOLVER)
# =============================================================================

CITY_CENTROIDS: Final[Dict[str, Tuple[float, float]]] = {
    "Delhi": (28.7041, 77.1025),
    "Mumbai": (19.0760, 72.8777),
    "Bangalore": (12.9716, 77.5946),
    "Chennai": (13.0827, 80.2707),
    "Kolkata": (22.5726, 88.3639),
    "Hyderabad": (17.3850, 78.4867),
    "Pune": (18.5204, 73.8567),
    "Ahmedabad": (23.0225, 72.5714),
}
"""
Known cities and their centroids. Matched in insertion order by
case-insensitive substring search on the address text.
"""

DEFAULT_CENTROID: Final[Tuple[float, float]] = (20.5937, 78.9629)
"""Fallback centroid (central India) for addresses naming no known city."""

GEOCODE_JITTER_KM: float = 5.0
"""Radius around the city centroid in which resolved addresses are scattered."""

GEOCODE_DELAY_SECONDS: float = 0.3
"""Artificial latency of the mock geocoder, standing in for a network call."""

DEFAULT_JITTER_KM: float = 2.0
"""Default radius for jitter_position when the caller gives none."""

KM_PER_DEGREE_LAT: Final[float] = 111.0
"""Approximate kilometres per degree of latitude."""

EARTH_RADIUS_KM: Final[float] = 6371.0
"""Mean Earth radius used by the Haversine formula."""

# =============================================================================
# ROUTE AND TRACKING SIMULATION
# =============================================================================

ROUTE_WAYPOINTS: int = 8
"""Number of waypoints in a generated mock route (start and end included)."""

ROUTE_MAX_DEVIATION_DEG: float = 0.01
"""Upper bound (degrees) on how far an interior waypoint may wander off the straight line."""

ROUTE_DEVIATION_FACTOR: float = 0.005
"""Deviation bound as a fraction of the direct distance, capped by ROUTE_MAX_DEVIATION_DEG."""

SIMULATION_TICK_SECONDS: float = 2.0
"""
Nominal period of the simulation loop at speed factor 1.
The effective period is SIMULATION_TICK_SECONDS / speed_factor.
"""

SIMULATION_PROGRESS_PER_TICK: float = 1.0
"""Progress percentage added per tick at speed factor 1."""

IN_TRANSIT_PROGRESS_THRESHOLD: float = 5.0
"""Once progress exceeds this value the simulation reports the order as in-transit."""

SIMULATION_MAX_FAILED_WRITES: int = 5
"""
Consecutive refused tracking writes after which a simulation gives up.
A successful write resets the count.
"""

DEMO_SPEED_FACTOR: float = 3.0
"""Speed factor used by the dashboard and CLI demo simulations."""

# =============================================================================
# TRAVEL AND MAP HEURISTICS
# =============================================================================

TRAVEL_SPEEDS_KMH: Final[Dict[str, float]] = {
    "walking": 5.0,
    "bike": 15.0,
    "scooter": 25.0,
    "car": 30.0,
}
"""Average speed per travel mode. Unknown modes fall back to DEFAULT_TRAVEL_MODE."""

DEFAULT_TRAVEL_MODE: Final[str] = "bike"

CITY_TRAFFIC_SPEED_KMH: float = 10.0
"""Speed used for the ETA shown next to the tracking map (slow city traffic)."""

ZOOM_THRESHOLDS: Final[List[Tuple[float, int]]] = [
    (1.0, 16),
    (2.0, 15),
    (5.0, 14),
    (10.0, 13),
    (20.0, 12),
    (50.0, 11),
    (100.0, 10),
    (200.0, 9),
    (500.0, 8),
    (1000.0, 7),
]
"""
Ascending (upper distance bound in km, zoom level) pairs.
The first bound the distance is strictly below wins; order matters.
"""

FALLBACK_ZOOM: Final[int] = 6
"""Zoom level for distances beyond the last threshold."""

# =============================================================================
# PRICING
# =============================================================================

BASE_FARES: Final[Dict[str, float]] = {
    "small": 50.0,
    "medium": 75.0,
    "large": 100.0,
}
"""Base fare per package size (INR). Unknown sizes are charged as small."""

WEIGHT_RATE_PER_KG: float = 10.0
"""Weight charge per kilogram."""

DISTANCE_RATE_PER_KM: float = 5.0
"""Distance charge per kilometre between resolved pickup and delivery points."""

EXPRESS_CHARGE: float = 100.0
"""Flat surcharge for express delivery (added before the discount)."""

DISCOUNT_RATE: float = 0.10
"""Flat discount applied to the subtotal (0.10 = 10% cheaper than competitors)."""

RETURN_DELIVERY_RATE: float = 0.5
"""Return delivery adds this fraction of the discounted subtotal."""

FOOD_DELIVERY_CHARGE: float = 20.0
"""Special handling surcharge for food deliveries."""

SCHEDULED_DELIVERY_CHARGE: float = 30.0
"""Surcharge for deliveries booked for a later time slot."""

PARTNER_EARNINGS_SHARE: float = 0.8
"""Share of the order price credited to the delivery partner."""

# =============================================================================
# ORDER LIFECYCLE
# =============================================================================

OTP_MIN: Final[int] = 100000
OTP_MAX: Final[int] = 999999
"""Inclusive bounds of the 6-digit delivery OTP."""

MAX_ACTIVE_ORDERS_PER_PARTNER: int = 1
"""
How many assigned or in-transit orders a partner may hold at once.
A partner at the limit cannot claim another pending order.
"""

RECENT_ADDRESSES_LIMIT: int = 5
"""How many distinct recent delivery addresses to offer a customer."""

COMPLETED_ORDERS_LIMIT: int = 5
"""How many recently completed orders to show on the partner dashboard."""

PHONE_DIGITS: Final[int] = 10
"""Required number of digits in a recipient phone number."""

# =============================================================================
# REALTIME STORE (FIREBASE REST) CONFIGURATION
# =============================================================================

USE_REMOTE_STORE: bool = False
"""
Use a Firebase Realtime Database over its REST API instead of the in-memory store.
When False, tracking and user locations live in process memory.
"""

REALTIME_DATABASE_URL: str = "https://bhejo-f30b8-default-rtdb.firebaseio.com"
"""Base URL of the Firebase Realtime Database used when USE_REMOTE_STORE is True."""

REMOTE_STORE_TIMEOUT_SECONDS: float = 5.0
"""Timeout for REST calls. Fail fast so the UI falls back to its error state."""
