# bhejo-tracking/bhejo/models.py
"""
Core domain models for the Bhejo delivery marketplace.

This module defines the fundamental data structures used throughout the core:
- Order: The authoritative delivery order, owned by the document store
- TrackingRecord: Best-effort location/progress projection of an order
- UserLocation: Last known position of a customer or partner
- Rating / PartnerProfile: Post-delivery feedback and its aggregate
- Resolution / TransitionResult: Tagged results returned instead of raising

Records are validated at the store boundary: ``from_dict`` raises ValueError
for documents that do not match the expected shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

Coordinates = Tuple[float, float]


class OrderStatus(Enum):
    """Lifecycle states shared by the order document and its tracking record."""
    PENDING = "pending"          # Created, waiting for a partner
    ASSIGNED = "assigned"        # Claimed by a partner, not yet picked up
    IN_TRANSIT = "in-transit"    # Partner is on the way to the recipient
    DELIVERED = "delivered"      # Handed over, OTP verified

    @property
    def rank(self) -> int:
        """Position along pending -> assigned -> in-transit -> delivered."""
        return _STATUS_ORDER.index(self)

    @property
    def is_active(self) -> bool:
        return self in (OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT)


_STATUS_ORDER: List[OrderStatus] = [
    OrderStatus.PENDING,
    OrderStatus.ASSIGNED,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
]


class PaymentMethod(Enum):
    """Payment methods shown at checkout. Only cash on delivery is enabled."""
    CASH_ON_DELIVERY = "cod"
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"

    @property
    def enabled(self) -> bool:
        return self is PaymentMethod.CASH_ON_DELIVERY


class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PackageSize(Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class UserRole(Enum):
    """Flat role flag; the only access distinction the marketplace makes."""
    CUSTOMER = "customer"
    PARTNER = "partner"


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an action."""
    user_id: str
    role: UserRole

    @property
    def is_partner(self) -> bool:
        return self.role is UserRole.PARTNER


def _parse_coords(value: Any, name: str) -> Coordinates:
    """Validate a [lat, lng] pair coming out of a store."""
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValueError(f"{name} must be a [lat, lng] pair, got {value!r}")
    try:
        lat, lng = float(value[0]), float(value[1])
    except (TypeError, ValueError):
        raise ValueError(f"{name} must contain numbers, got {value!r}")
    return (lat, lng)


def _parse_datetime(value: Any, name: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"{name} is not an ISO timestamp: {value!r}")
    raise ValueError(f"{name} must be a datetime, got {type(value).__name__}")


def _parse_enum(enum_cls, value: Any, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValueError(f"Unknown {name}: {value!r}")


@dataclass
class PriceBreakdown:
    """
    Itemised price of an order.

    Attributes:
        base_fare: Fare for the package size
        weight_charge: Charge proportional to package weight
        distance_charge: Charge proportional to pickup-delivery distance
        express_charge: Express surcharge (0 when not express)
        discount: Amount taken off the subtotal
        return_charge: Return-delivery surcharge
        food_charge: Food handling surcharge
        scheduled_charge: Scheduled-delivery surcharge
        distance_km: Distance the distance charge was computed from
        total: Final price, rounded up to a whole rupee
    """
    base_fare: float
    weight_charge: float
    distance_charge: float
    express_charge: float
    discount: float
    return_charge: float
    food_charge: float
    scheduled_charge: float
    distance_km: float
    total: int

    @property
    def subtotal(self) -> float:
        return self.base_fare + self.weight_charge + self.distance_charge + self.express_charge

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_fare": self.base_fare,
            "weight_charge": self.weight_charge,
            "distance_charge": self.distance_charge,
            "express_charge": self.express_charge,
            "discount": self.discount,
            "return_charge": self.return_charge,
            "food_charge": self.food_charge,
            "scheduled_charge": self.scheduled_charge,
            "distance_km": self.distance_km,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceBreakdown":
        try:
            return cls(
                base_fare=float(data["base_fare"]),
                weight_charge=float(data["weight_charge"]),
                distance_charge=float(data["distance_charge"]),
                express_charge=float(data["express_charge"]),
                discount=float(data["discount"]),
                return_charge=float(data.get("return_charge", 0.0)),
                food_charge=float(data.get("food_charge", 0.0)),
                scheduled_charge=float(data.get("scheduled_charge", 0.0)),
                distance_km=float(data.get("distance_km", 0.0)),
                total=int(data["total"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid price breakdown: {e}")


@dataclass
class Order:
    """
    The authoritative order document.

    Attributes:
        order_id: Opaque identifier assigned by the document store
        customer_id: User who placed the order
        pickup_address / delivery_address: Free-text addresses as entered
        pickup_coords / delivery_coords: Resolved approximate coordinates
        package_*: What is being sent
        recipient_*: Who receives it
        price: Itemised price computed at creation time
        payment_method / payment_status: Cash on delivery, paid by hand
        status: Current lifecycle state
        partner_id: Assigned delivery partner, None while unclaimed
        delivery_otp: 6-digit hand-off code, generated when the trip starts
        otp_verified: Set once the partner submitted the matching OTP
        rated / rating / rating_comment: Customer feedback after delivery
    """
    order_id: str
    customer_id: str
    pickup_address: str
    delivery_address: str
    package_size: PackageSize
    package_weight: float
    package_description: str
    recipient_name: str
    recipient_phone: str
    price: PriceBreakdown
    pickup_coords: Optional[Coordinates] = None
    delivery_coords: Optional[Coordinates] = None
    is_express: bool = False
    is_food_delivery: bool = False
    needs_return_delivery: bool = False
    scheduled_delivery_time: Optional[datetime] = None
    additional_instructions: str = ""
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PENDING
    partner_id: Optional[str] = None
    delivery_otp: Optional[str] = None
    otp_verified: bool = False
    rated: bool = False
    rating: Optional[int] = None
    rating_comment: str = ""

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    in_transit_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    rated_at: Optional[datetime] = None

    @property
    def is_scheduled(self) -> bool:
        return self.scheduled_delivery_time is not None

    def to_dict(self) -> Dict[str, Any]:
        """Document form stored in the ``orders`` collection (id excluded)."""
        return {
            "customer_id": self.customer_id,
            "pickup_address": self.pickup_address,
            "delivery_address": self.delivery_address,
            "pickup_coords": list(self.pickup_coords) if self.pickup_coords else None,
            "delivery_coords": list(self.delivery_coords) if self.delivery_coords else None,
            "package_size": self.package_size.value,
            "package_weight": self.package_weight,
            "package_description": self.package_description,
            "recipient_name": self.recipient_name,
            "recipient_phone": self.recipient_phone,
            "price": self.price.to_dict(),
            "is_express": self.is_express,
            "is_food_delivery": self.is_food_delivery,
            "needs_return_delivery": self.needs_return_delivery,
            "scheduled_delivery_time": self.scheduled_delivery_time,
            "additional_instructions": self.additional_instructions,
            "payment_method": self.payment_method.value,
            "payment_status": self.payment_status.value,
            "status": self.status.value,
            "partner_id": self.partner_id,
            "delivery_otp": self.delivery_otp,
            "otp_verified": self.otp_verified,
            "rated": self.rated,
            "rating": self.rating,
            "rating_comment": self.rating_comment,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "in_transit_at": self.in_transit_at,
            "delivered_at": self.delivered_at,
            "rated_at": self.rated_at,
        }

    @classmethod
    def from_dict(cls, order_id: str, data: Dict[str, Any]) -> "Order":
        """
        Build an Order from a stored document.

        Raises:
            ValueError: If a required field is missing or malformed
        """
        try:
            pickup = data.get("pickup_coords")
            delivery = data.get("delivery_coords")
            rating = data.get("rating")
            return cls(
                order_id=order_id,
                customer_id=str(data["customer_id"]),
                pickup_address=str(data["pickup_address"]),
                delivery_address=str(data["delivery_address"]),
                pickup_coords=_parse_coords(pickup, "pickup_coords") if pickup is not None else None,
                delivery_coords=_parse_coords(delivery, "delivery_coords") if delivery is not None else None,
                package_size=_parse_enum(PackageSize, data["package_size"], "package size"),
                package_weight=float(data["package_weight"]),
                package_description=str(data["package_description"]),
                recipient_name=str(data["recipient_name"]),
                recipient_phone=str(data["recipient_phone"]),
                price=PriceBreakdown.from_dict(data["price"]),
                is_express=bool(data.get("is_express", False)),
                is_food_delivery=bool(data.get("is_food_delivery", False)),
                needs_return_delivery=bool(data.get("needs_return_delivery", False)),
                scheduled_delivery_time=_parse_datetime(
                    data.get("scheduled_delivery_time"), "scheduled_delivery_time"
                ),
                additional_instructions=str(data.get("additional_instructions") or ""),
                payment_method=_parse_enum(
                    PaymentMethod, data.get("payment_method", "cod"), "payment method"
                ),
                payment_status=_parse_enum(
                    PaymentStatus, data.get("payment_status", "pending"), "payment status"
                ),
                status=_parse_enum(OrderStatus, data.get("status", "pending"), "order status"),
                partner_id=data.get("partner_id"),
                delivery_otp=data.get("delivery_otp"),
                otp_verified=bool(data.get("otp_verified", False)),
                rated=bool(data.get("rated", False)),
                rating=int(rating) if rating is not None else None,
                rating_comment=str(data.get("rating_comment") or ""),
                created_at=_parse_datetime(data.get("created_at"), "created_at"),
                updated_at=_parse_datetime(data.get("updated_at"), "updated_at"),
                in_transit_at=_parse_datetime(data.get("in_transit_at"), "in_transit_at"),
                delivered_at=_parse_datetime(data.get("delivered_at"), "delivered_at"),
                rated_at=_parse_datetime(data.get("rated_at"), "rated_at"),
            )
        except KeyError as e:
            raise ValueError(f"Order {order_id} is missing field {e}")
        except TypeError as e:
            raise ValueError(f"Order {order_id} is malformed: {e}")

    def __repr__(self) -> str:
        return f"Order({self.order_id}, {self.status.value})"


@dataclass
class TrackingRecord:
    """
    Live-tracking projection of an order, keyed by order id in the realtime store.

    The current position is picked from the route by index, proportional to
    progress; it is not a continuous interpolation.

    Attributes:
        pickup_coords / delivery_coords: Resolved endpoints
        route: Ordered waypoints from pickup to delivery
        current_position: Where the parcel is shown right now
        status: Mirror of the order status, updated independently
        progress: Completion percentage, 0-100
        last_updated: ISO timestamp of the last write
        partner_id / partner_position: Set once a partner starts tracking
    """
    pickup_coords: Coordinates
    delivery_coords: Coordinates
    route: List[Coordinates]
    current_position: Coordinates
    status: OrderStatus = OrderStatus.PENDING
    progress: float = 0.0
    last_updated: str = ""
    partner_id: Optional[str] = None
    partner_position: Optional[Coordinates] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "pickup_coords": list(self.pickup_coords),
            "delivery_coords": list(self.delivery_coords),
            "route": [list(point) for point in self.route],
            "current_position": list(self.current_position),
            "status": self.status.value,
            "progress": self.progress,
            "last_updated": self.last_updated,
        }
        if self.partner_id is not None:
            data["partner_id"] = self.partner_id
        if self.partner_position is not None:
            data["partner_position"] = list(self.partner_position)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackingRecord":
        """
        Build a record from a realtime-store snapshot.

        Raises:
            ValueError: If the snapshot is not a well-formed tracking record
        """
        if not isinstance(data, dict):
            raise ValueError(f"Tracking record must be a mapping, got {type(data).__name__}")
        try:
            route_raw = data["route"]
            if not isinstance(route_raw, (list, tuple)) or len(route_raw) < 2:
                raise ValueError("route must contain at least two waypoints")
            progress = float(data.get("progress", 0))
            if not 0 <= progress <= 100:
                raise ValueError(f"progress out of range: {progress}")
            partner_position = data.get("partner_position")
            return cls(
                pickup_coords=_parse_coords(data["pickup_coords"], "pickup_coords"),
                delivery_coords=_parse_coords(data["delivery_coords"], "delivery_coords"),
                route=[_parse_coords(p, "route waypoint") for p in route_raw],
                current_position=_parse_coords(data["current_position"], "current_position"),
                status=_parse_enum(OrderStatus, data.get("status", "pending"), "tracking status"),
                progress=progress,
                last_updated=str(data.get("last_updated", "")),
                partner_id=data.get("partner_id"),
                partner_position=(
                    _parse_coords(partner_position, "partner_position")
                    if partner_position is not None else None
                ),
            )
        except KeyError as e:
            raise ValueError(f"Tracking record is missing field {e}")


@dataclass
class UserLocation:
    """Last known position of a user, keyed by user id."""
    position: Coordinates
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"position": list(self.position), "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserLocation":
        if not isinstance(data, dict) or "position" not in data:
            raise ValueError(f"Invalid user location: {data!r}")
        return cls(
            position=_parse_coords(data["position"], "position"),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class Rating:
    """One entry in the ratings log."""
    order_id: str
    partner_id: str
    customer_id: str
    rating: int
    comment: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "partner_id": self.partner_id,
            "customer_id": self.customer_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": self.created_at,
        }


@dataclass
class PartnerProfile:
    """
    Delivery partner profile, including the running rating aggregate.

    Attributes:
        partner_id: User id of the partner
        name: Display name
        vehicle_type: 'bike', 'scooter', 'car', ...
        rating: Running average of all ratings (unrounded)
        total_ratings: Number of ratings folded into the average
        is_available: Whether the partner is taking new orders
    """
    partner_id: str
    name: str = ""
    vehicle_type: str = "bike"
    rating: float = 0.0
    total_ratings: int = 0
    is_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": UserRole.PARTNER.value,
            "name": self.name,
            "vehicle_type": self.vehicle_type,
            "rating": self.rating,
            "total_ratings": self.total_ratings,
            "is_available": self.is_available,
        }

    @classmethod
    def from_dict(cls, partner_id: str, data: Dict[str, Any]) -> "PartnerProfile":
        return cls(
            partner_id=partner_id,
            name=str(data.get("name", "")),
            vehicle_type=str(data.get("vehicle_type", "bike")),
            rating=float(data.get("rating", 0.0) or 0.0),
            total_ratings=int(data.get("total_ratings", 0) or 0),
            is_available=bool(data.get("is_available", False)),
        )


@dataclass
class Resolution:
    """
    Outcome of resolving an address: coordinates, or the reason there are none.

    The mock geocoder always succeeds, but callers handle the error branch so a
    real geocoder can be swapped in without changing them.
    """
    query: str
    coords: Optional[Coordinates] = None
    error: Optional[str] = None
    matched_city: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.coords is not None

    @classmethod
    def found(cls, query: str, coords: Coordinates, matched_city: Optional[str] = None) -> "Resolution":
        return cls(query=query, coords=coords, matched_city=matched_city)

    @classmethod
    def not_found(cls, query: str, error: str = "address not found") -> "Resolution":
        return cls(query=query, error=error)


@dataclass
class TransitionResult:
    """
    Outcome of an order lifecycle action.

    ``ok`` is False when the action was rejected; ``reason`` then holds a
    user-facing explanation. ``order`` is the order as it stands afterwards.
    """
    ok: bool
    reason: str = ""
    order: Optional[Order] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accepted(cls, order: Optional[Order] = None, **extra: Any) -> "TransitionResult":
        return cls(ok=True, order=order, extra=dict(extra))

    @classmethod
    def rejected(cls, reason: str, order: Optional[Order] = None) -> "TransitionResult":
        return cls(ok=False, reason=reason, order=order)

    def __bool__(self) -> bool:
        return self.ok
