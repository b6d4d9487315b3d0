# bhejo-tracking/bhejo/__init__.py

from .models import (
    Order,
    TrackingRecord,
    UserLocation,
    PriceBreakdown,
    PartnerProfile,
    Rating,
    Resolution,
    TransitionResult,
    Actor,
    OrderStatus,
    PackageSize,
    PaymentMethod,
    PaymentStatus,
    UserRole,
)
from .config import (
    CITY_CENTROIDS,
    DEFAULT_CENTROID,
    ROUTE_WAYPOINTS,
    SIMULATION_TICK_SECONDS,
    MAX_ACTIVE_ORDERS_PER_PARTNER,
)
from .geocoding import AddressResolver, resolve_address, locate_device
from .realtime import InMemoryRealtimeStore, FirebaseRestStore, StoreError, create_realtime_store
from .location_store import LocationStore
from .documents import InMemoryDocumentStore, DocumentNotFound
from .tracking import TrackingCoordinator, SimulationHandle
from .orders import OrderService, OrderRequest, OrderValidationError
from .pricing import quote
from .utils import haversine_distance, zoom_level_for, travel_time_minutes, mock_route

__version__ = "1.0.0"
__author__ = "Bhejo Team"

__all__ = [
    # Models
    "Order",
    "TrackingRecord",
    "UserLocation",
    "PriceBreakdown",
    "PartnerProfile",
    "Rating",
    "Resolution",
    "TransitionResult",
    "Actor",
    "OrderStatus",
    "PackageSize",
    "PaymentMethod",
    "PaymentStatus",
    "UserRole",
    # Stores
    "InMemoryRealtimeStore",
    "FirebaseRestStore",
    "StoreError",
    "create_realtime_store",
    "LocationStore",
    "InMemoryDocumentStore",
    "DocumentNotFound",
    # Core
    "AddressResolver",
    "TrackingCoordinator",
    "SimulationHandle",
    "OrderService",
    "OrderRequest",
    "OrderValidationError",
    # Functions
    "resolve_address",
    "locate_device",
    "quote",
    "haversine_distance",
    "zoom_level_for",
    "travel_time_minutes",
    "mock_route",
    # Config
    "CITY_CENTROIDS",
    "DEFAULT_CENTROID",
    "ROUTE_WAYPOINTS",
    "SIMULATION_TICK_SECONDS",
    "MAX_ACTIVE_ORDERS_PER_PARTNER",
]
