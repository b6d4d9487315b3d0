# bhejo-tracking/bhejo/orders.py
"""
Order service for the Bhejo delivery marketplace.

Applies the lifecycle rules of ``lifecycle.py`` to order documents:

1. Create: validate the request, resolve addresses, price, persist, start tracking
2. Accept / start / complete: status transitions, each written with
   compare-and-set on the source status so concurrent actors cannot both win
3. OTP verification and regeneration
4. Payment collection and rating (rating aggregation runs as a transaction)
5. Read-side queries used by the customer and partner dashboards

Business rejections come back as TransitionResult; only a malformed create
request raises (OrderValidationError). The tracking record is updated after
each transition on a best-effort basis: the order document stays authoritative.
"""

from __future__ import annotations

import logging
import math
import random
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from . import config, pricing, utils
from .documents import DocumentNotFound, InMemoryDocumentStore
from .geocoding import AddressResolver
from .lifecycle import (
    Action,
    GuardContext,
    check_mark_paid,
    check_rating,
    check_regenerate_otp,
    check_verify_otp,
    evaluate,
    fold_rating,
    generate_otp,
)
from .models import (
    Actor,
    Order,
    OrderStatus,
    PackageSize,
    PartnerProfile,
    PaymentMethod,
    PaymentStatus,
    Rating,
    TransitionResult,
)
from .tracking import TrackingCoordinator

logger = logging.getLogger(__name__)

ORDERS = "orders"
USERS = "users"
RATINGS = "ratings"
ASSIGNMENTS = "assignments"

ACTIVE_STATUSES = [OrderStatus.ASSIGNED.value, OrderStatus.IN_TRANSIT.value]
OPEN_STATUSES = [OrderStatus.PENDING.value] + ACTIVE_STATUSES


class OrderValidationError(ValueError):
    """A create-order request was rejected; the message is shown to the customer."""


@dataclass
class OrderRequest:
    """What a customer submits to create an order."""
    pickup_address: str
    delivery_address: str
    package_description: str
    recipient_name: str
    recipient_phone: str
    package_size: PackageSize = PackageSize.SMALL
    package_weight: float = 1.0
    is_express: bool = False
    is_food_delivery: bool = False
    needs_return_delivery: bool = False
    scheduled_delivery_time: Optional[datetime] = None
    additional_instructions: str = ""
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY


def normalize_phone(phone: str) -> str:
    """Keep only the digits of a phone number."""
    return re.sub(r"\D", "", phone or "")


def validate_request(request: OrderRequest, now: Optional[datetime] = None) -> None:
    """
    Check a create-order request.

    Raises:
        OrderValidationError: With the first problem found
    """
    now = now or utils.utc_now()
    if not request.pickup_address.strip():
        raise OrderValidationError("Please enter a pickup address")
    if not request.delivery_address.strip():
        raise OrderValidationError("Please enter a delivery address")
    if not request.package_description.strip():
        raise OrderValidationError("Please describe the package")
    if not request.recipient_name.strip():
        raise OrderValidationError("Please enter the recipient's name")
    if len(normalize_phone(request.recipient_phone)) != config.PHONE_DIGITS:
        raise OrderValidationError(f"Please enter a valid {config.PHONE_DIGITS}-digit phone number")
    if not math.isfinite(request.package_weight) or request.package_weight <= 0:
        raise OrderValidationError("Package weight must be greater than 0")

    scheduled = request.scheduled_delivery_time
    if scheduled is not None:
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)
        if scheduled <= now:
            raise OrderValidationError("Scheduled delivery time must be in the future")

    if not request.payment_method.enabled:
        raise OrderValidationError(
            f"{request.payment_method.value.upper()} payments are coming soon. "
            f"Please choose cash on delivery"
        )


def _start_of_week(now: datetime) -> datetime:
    """Midnight of the most recent Sunday."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=(today.weekday() + 1) % 7)


class OrderService:
    """
    Order documents plus the actions customers and partners take on them.

    Attributes:
        documents: Document store holding orders, users and ratings
        tracking: Coordinator owning the tracking records
        resolver: Address resolver used for pricing at creation
        clock: Returns the current UTC time (injected by tests)
    """

    def __init__(
        self,
        documents: InMemoryDocumentStore,
        tracking: TrackingCoordinator,
        resolver: Optional[AddressResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.documents = documents
        self.tracking = tracking
        self.resolver = resolver or tracking.resolver
        self.clock = clock or utils.utc_now
        self._rng = rng

    # -------------------------------------------------------------------------
    # Create and read
    # -------------------------------------------------------------------------

    async def create_order(self, customer_id: str, request: OrderRequest) -> Order:
        """
        Validate, price and persist a new order, then initialise its tracking.

        Args:
            customer_id: User placing the order
            request: Submitted form

        Returns:
            The stored order (status pending, unassigned, unpaid)

        Raises:
            OrderValidationError: If the request is invalid or an address
                cannot be resolved
        """
        now = self.clock()
        validate_request(request, now)

        pickup = await self.resolver.resolve(request.pickup_address)
        delivery = await self.resolver.resolve(request.delivery_address)
        for resolution in (pickup, delivery):
            if not resolution.ok:
                raise OrderValidationError(f"Could not find address: {resolution.query}")

        distance = pricing.trip_distance(pickup.coords, delivery.coords)
        price = pricing.quote(
            request.package_size,
            request.package_weight,
            distance,
            is_express=request.is_express,
            needs_return_delivery=request.needs_return_delivery,
            is_food_delivery=request.is_food_delivery,
            is_scheduled=request.scheduled_delivery_time is not None,
        )

        order = Order(
            order_id="",
            customer_id=customer_id,
            pickup_address=request.pickup_address.strip(),
            delivery_address=request.delivery_address.strip(),
            pickup_coords=pickup.coords,
            delivery_coords=delivery.coords,
            package_size=request.package_size,
            package_weight=request.package_weight,
            package_description=request.package_description.strip(),
            recipient_name=request.recipient_name.strip(),
            recipient_phone=normalize_phone(request.recipient_phone),
            price=price,
            is_express=request.is_express,
            is_food_delivery=request.is_food_delivery,
            needs_return_delivery=request.needs_return_delivery,
            scheduled_delivery_time=request.scheduled_delivery_time,
            additional_instructions=request.additional_instructions.strip(),
            payment_method=request.payment_method,
            created_at=now,
            updated_at=now,
        )
        order.order_id = await self.documents.add(ORDERS, order.to_dict())
        logger.info(f"Order {order.order_id} created by {customer_id}: ₹{price.total}, {distance:.2f} km")

        if not await self.tracking.initialize_tracking(
            order.order_id,
            order.pickup_address,
            order.delivery_address,
            pickup_coords=pickup.coords,
            delivery_coords=delivery.coords,
        ):
            logger.warning(f"Order {order.order_id} created without live tracking")
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        data = await self.documents.get(ORDERS, order_id)
        if data is None:
            return None
        try:
            return Order.from_dict(order_id, data)
        except ValueError as e:
            logger.error(f"Stored order {order_id} is malformed: {e}")
            return None

    def subscribe_order(self, order_id: str, callback: Callable[[Optional[Order]], None]) -> Callable[[], None]:
        """Push the order after every change; None while it does not exist."""
        def on_snapshot(data: Optional[Dict[str, Any]]) -> None:
            order = None
            if data is not None:
                try:
                    order = Order.from_dict(order_id, data)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed order push for {order_id}: {e}")
            callback(order)

        return self.documents.on_snapshot(ORDERS, order_id, on_snapshot)

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    async def _apply(
        self,
        order: Order,
        expected: Dict[str, Any],
        fields: Dict[str, Any],
        conflict: str,
    ) -> TransitionResult:
        """Compare-and-set one transition and reload the order."""
        try:
            written = await self.documents.compare_and_set(ORDERS, order.order_id, expected, fields)
        except DocumentNotFound:
            return TransitionResult.rejected("Order not found")
        current = await self.get_order(order.order_id)
        if not written:
            logger.info(f"Order {order.order_id}: {conflict}")
            return TransitionResult.rejected(conflict, current)
        return TransitionResult.accepted(current)

    async def _reserve_slot(self, partner_id: str, order_id: str) -> bool:
        """
        Atomically take one of the partner's active-order slots for an order.

        The active-orders query cannot see a claim that is still in flight, so
        two accepts by the same partner are serialised through this document.
        """
        def reserve(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            held = list((doc or {}).get("order_ids", []))
            if order_id in held:
                return {"order_ids": held}
            if len(held) >= config.MAX_ACTIVE_ORDERS_PER_PARTNER:
                return None
            return {"order_ids": held + [order_id]}

        return await self.documents.transaction(ASSIGNMENTS, partner_id, reserve) is not None

    async def _release_slot(self, partner_id: str, order_id: str) -> None:
        def release(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            held = list((doc or {}).get("order_ids", []))
            if order_id not in held:
                return None
            held.remove(order_id)
            return {"order_ids": held}

        await self.documents.transaction(ASSIGNMENTS, partner_id, release)

    async def accept(self, order_id: str, actor: Actor) -> TransitionResult:
        """
        Claim a pending order for a partner.

        The claim only succeeds if the order is still pending and unassigned
        at the moment of the write, so of two partners accepting at once
        exactly one gets it. The partner's slot is reserved first, so one
        partner accepting two orders at once ends up with at most
        MAX_ACTIVE_ORDERS_PER_PARTNER of them.
        """
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")

        active = len(await self.partner_active_orders(actor.user_id))
        verdict = evaluate(Action.ACCEPT, order, actor, GuardContext(active_orders=active))
        if not verdict:
            return verdict

        if not await self._reserve_slot(actor.user_id, order_id):
            logger.info(f"Partner {actor.user_id} has no free slot for order {order_id}")
            return TransitionResult.rejected("Finish your current delivery before accepting another order", order)

        now = self.clock()
        result = await self._apply(
            order,
            expected={"status": OrderStatus.PENDING.value, "partner_id": None},
            fields={"status": OrderStatus.ASSIGNED.value, "partner_id": actor.user_id, "updated_at": now},
            conflict="Order has already been accepted by another partner",
        )
        if not result:
            await self._release_slot(actor.user_id, order_id)
            return result

        logger.info(f"Order {order_id} accepted by partner {actor.user_id}")
        if await self.tracking.location_store.get_user_location(actor.user_id) is not None:
            await self.tracking.partner_start_tracking(order_id, actor.user_id)
        else:
            await self.tracking.mirror_status(order_id, OrderStatus.ASSIGNED)
        return result

    async def start(self, order_id: str, actor: Actor) -> TransitionResult:
        """Pick up the parcel: assigned -> in-transit, generating the delivery OTP if missing."""
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        verdict = evaluate(Action.START, order, actor)
        if not verdict:
            return verdict

        now = self.clock()
        fields: Dict[str, Any] = {
            "status": OrderStatus.IN_TRANSIT.value,
            "in_transit_at": now,
            "updated_at": now,
        }
        if not order.delivery_otp:
            fields["delivery_otp"] = generate_otp(self._rng)

        result = await self._apply(
            order,
            expected={
                "status": OrderStatus.ASSIGNED.value,
                "partner_id": actor.user_id,
                "delivery_otp": order.delivery_otp,
            },
            fields=fields,
            conflict="Order status changed, please refresh",
        )
        if result:
            logger.info(f"Order {order_id} is in transit")
            await self.tracking.mirror_status(order_id, OrderStatus.IN_TRANSIT)
        return result

    async def complete(self, order_id: str, actor: Actor) -> TransitionResult:
        """Hand over the parcel: in-transit -> delivered, only after OTP verification."""
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        verdict = evaluate(Action.COMPLETE, order, actor)
        if not verdict:
            return verdict

        now = self.clock()
        result = await self._apply(
            order,
            expected={
                "status": OrderStatus.IN_TRANSIT.value,
                "partner_id": actor.user_id,
                "otp_verified": True,
            },
            fields={"status": OrderStatus.DELIVERED.value, "delivered_at": now, "updated_at": now},
            conflict="Please verify delivery OTP first",
        )
        if result:
            logger.info(f"Order {order_id} delivered by partner {actor.user_id}")
            await self._release_slot(actor.user_id, order_id)
            await self.tracking.mirror_status(order_id, OrderStatus.DELIVERED)
        return result

    # -------------------------------------------------------------------------
    # OTP
    # -------------------------------------------------------------------------

    async def verify_otp(self, order_id: str, actor: Actor, candidate: str) -> TransitionResult:
        """
        Check the OTP the recipient read out to the partner.

        Repeating a correct verification keeps the order verified. There is no
        attempt limit.
        """
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        reason = check_verify_otp(order, actor, candidate)
        if reason:
            logger.info(f"OTP rejected for order {order_id}: {reason}")
            return TransitionResult.rejected(reason, order)
        if order.otp_verified:
            return TransitionResult.accepted(order)

        return await self._apply(
            order,
            expected={"delivery_otp": order.delivery_otp, "status": OrderStatus.IN_TRANSIT.value},
            fields={"otp_verified": True, "updated_at": self.clock()},
            conflict="OTP changed, please ask the recipient again",
        )

    async def regenerate_otp(self, order_id: str, actor: Actor) -> TransitionResult:
        """Replace an unverified delivery OTP; the new code is in ``extra['otp']``."""
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        reason = check_regenerate_otp(order, actor)
        if reason:
            return TransitionResult.rejected(reason, order)

        otp = generate_otp(self._rng)
        result = await self._apply(
            order,
            expected={"status": OrderStatus.IN_TRANSIT.value, "otp_verified": False},
            fields={"delivery_otp": otp, "updated_at": self.clock()},
            conflict="Delivery OTP has already been verified",
        )
        if result:
            result.extra["otp"] = otp
        return result

    # -------------------------------------------------------------------------
    # Payment and rating
    # -------------------------------------------------------------------------

    async def mark_paid(self, order_id: str, actor: Actor) -> TransitionResult:
        """Record that the partner collected cash on delivery."""
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        reason = check_mark_paid(order, actor)
        if reason:
            return TransitionResult.rejected(reason, order)

        return await self._apply(
            order,
            expected={"payment_status": order.payment_status.value},
            fields={"payment_status": PaymentStatus.PAID.value, "updated_at": self.clock()},
            conflict="Payment has already been recorded",
        )

    async def submit_rating(
        self,
        order_id: str,
        actor: Actor,
        rating: int,
        comment: str = "",
    ) -> TransitionResult:
        """
        Rate the partner of a delivered order, once.

        The order's ``rated`` flag is claimed first with compare-and-set, so a
        duplicate submission is rejected before anything else is written. The
        rating is then folded into the partner's running average inside a
        transaction; if that fails the claim is rolled back and the rating is
        refused. Appending to the ratings log comes last and a failure there
        is only logged.

        Returns:
            Accepted result with ``extra['partner_rating']`` and
            ``extra['total_ratings']`` set to the new aggregate
        """
        order = await self.get_order(order_id)
        if order is None:
            return TransitionResult.rejected("Order not found")
        reason = check_rating(order, actor, rating)
        if reason:
            return TransitionResult.rejected(reason, order)

        now = self.clock()
        result = await self._apply(
            order,
            expected={"rated": False, "status": OrderStatus.DELIVERED.value},
            fields={
                "rated": True,
                "rating": rating,
                "rating_comment": comment.strip(),
                "rated_at": now,
                "updated_at": now,
            },
            conflict="This order has already been rated",
        )
        if not result:
            return result

        entry = Rating(
            order_id=order_id,
            partner_id=order.partner_id,
            customer_id=actor.user_id,
            rating=rating,
            comment=comment.strip(),
            created_at=now,
        )

        def fold(profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            profile = profile or {}
            average, count = fold_rating(
                float(profile.get("rating") or 0.0),
                int(profile.get("total_ratings") or 0),
                rating,
            )
            return {"role": "partner", "rating": average, "total_ratings": count}

        try:
            updated = await self.documents.transaction(USERS, order.partner_id, fold)
        except Exception:
            logger.exception(f"Could not update rating of partner {order.partner_id} for order {order_id}")
            reverted = await self._apply(
                order,
                expected={"rated": True, "rating": rating, "rated_at": now},
                fields={"rated": False, "rating": None, "rating_comment": "", "rated_at": None, "updated_at": now},
                conflict="Rating changed while being saved",
            )
            return TransitionResult.rejected("Could not save your rating, please try again", reverted.order)

        try:
            await self.documents.add(RATINGS, entry.to_dict())
        except Exception:
            # The aggregate already counts this rating; only the history entry is lost
            logger.exception(f"Could not log rating of order {order_id}")

        result.extra["partner_rating"] = updated["rating"]
        result.extra["total_ratings"] = updated["total_ratings"]
        logger.info(
            f"Order {order_id} rated {rating}/5; partner {order.partner_id} now "
            f"{updated['rating']:.2f} over {updated['total_ratings']}"
        )
        return result

    # -------------------------------------------------------------------------
    # Partner profiles
    # -------------------------------------------------------------------------

    async def register_partner(self, partner_id: str, name: str, vehicle_type: str = "bike") -> PartnerProfile:
        """Create a partner profile, or return the existing one unchanged."""
        existing = await self.get_partner_profile(partner_id)
        if existing is not None:
            return existing
        profile = PartnerProfile(partner_id=partner_id, name=name, vehicle_type=vehicle_type)
        await self.documents.set(USERS, partner_id, profile.to_dict())
        return profile

    async def get_partner_profile(self, partner_id: str) -> Optional[PartnerProfile]:
        data = await self.documents.get(USERS, partner_id)
        if data is None:
            return None
        return PartnerProfile.from_dict(partner_id, data)

    async def set_availability(self, partner_id: str, available: bool) -> bool:
        try:
            await self.documents.update(USERS, partner_id, {"is_available": bool(available)})
        except DocumentNotFound:
            logger.warning(f"Cannot change availability: partner {partner_id} has no profile")
            return False
        logger.info(f"Partner {partner_id} is now {'available' if available else 'offline'}")
        return True

    async def partner_rating_summary(self, partner_id: str) -> Dict[str, Any]:
        """
        Rating aggregate and 1-5 distribution of a partner.

        Returns:
            Dictionary with 'average' (from the profile), 'total' and
            'distribution' (star -> count, from the ratings log)
        """
        profile = await self.get_partner_profile(partner_id)
        entries = await self.documents.query(
            RATINGS, where=[("partner_id", "==", partner_id)], order_by="created_at", descending=True
        )
        distribution = {star: 0 for star in range(1, 6)}
        counts = Counter(round(float(doc.get("rating", 0))) for _, doc in entries)
        for star in distribution:
            distribution[star] = counts.get(star, 0)
        return {
            "average": profile.rating if profile else 0.0,
            "total": profile.total_ratings if profile else 0,
            "distribution": distribution,
            "recent": [doc for _, doc in entries],
        }

    # -------------------------------------------------------------------------
    # Dashboard queries
    # -------------------------------------------------------------------------

    async def _orders(self, **kwargs: Any) -> List[Order]:
        orders = []
        for order_id, data in await self.documents.query(ORDERS, **kwargs):
            try:
                orders.append(Order.from_dict(order_id, data))
            except ValueError as e:
                logger.error(f"Skipping malformed order {order_id}: {e}")
        return orders

    async def available_orders(self) -> List[Order]:
        """Pending, unassigned orders, newest first."""
        return await self._orders(
            where=[("status", "==", OrderStatus.PENDING.value), ("partner_id", "==", None)],
            order_by="created_at",
            descending=True,
        )

    async def partner_active_orders(self, partner_id: str) -> List[Order]:
        return await self._orders(
            where=[("partner_id", "==", partner_id), ("status", "in", ACTIVE_STATUSES)],
            order_by="updated_at",
            descending=True,
        )

    async def partner_completed_orders(
        self, partner_id: str, limit: int = config.COMPLETED_ORDERS_LIMIT
    ) -> List[Order]:
        return await self._orders(
            where=[("partner_id", "==", partner_id), ("status", "==", OrderStatus.DELIVERED.value)],
            order_by="delivered_at",
            descending=True,
            limit=limit,
        )

    async def customer_orders(self, customer_id: str) -> List[Order]:
        """Full order history of a customer, newest first."""
        return await self._orders(
            where=[("customer_id", "==", customer_id)], order_by="created_at", descending=True
        )

    async def customer_active_orders(self, customer_id: str) -> List[Order]:
        return await self._orders(
            where=[("customer_id", "==", customer_id), ("status", "in", OPEN_STATUSES)],
            order_by="created_at",
            descending=True,
        )

    async def recent_addresses(
        self, customer_id: str, limit: int = config.RECENT_ADDRESSES_LIMIT
    ) -> List[str]:
        """Distinct delivery addresses of a customer's latest orders."""
        addresses: List[str] = []
        for order in await self.customer_orders(customer_id):
            if order.delivery_address not in addresses:
                addresses.append(order.delivery_address)
            if len(addresses) >= limit:
                break
        return addresses

    async def customer_stats(self, customer_id: str) -> Dict[str, Any]:
        """
        Order counts and spend of a customer.

        Returns:
            Dictionary with total/pending/in_transit/delivered counts,
            total_spent and avg_order_value (rounded)
        """
        stats = {
            "total_orders": 0,
            "pending_orders": 0,
            "in_transit_orders": 0,
            "delivered_orders": 0,
            "total_spent": 0,
            "avg_order_value": 0,
        }
        for order in await self.customer_orders(customer_id):
            stats["total_orders"] += 1
            if order.status is OrderStatus.PENDING:
                stats["pending_orders"] += 1
            elif order.status is OrderStatus.IN_TRANSIT:
                stats["in_transit_orders"] += 1
            elif order.status is OrderStatus.DELIVERED:
                stats["delivered_orders"] += 1
            stats["total_spent"] += order.price.total

        if stats["total_orders"] > 0:
            stats["avg_order_value"] = round(stats["total_spent"] / stats["total_orders"])
        return stats

    async def partner_earnings(self, partner_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Partner's share of delivered orders for today, this week (from
        Sunday), this month and all time, each rounded to whole rupees.
        """
        now = now or self.clock()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = _start_of_week(now)
        month_start = today_start.replace(day=1)

        totals = {"today": 0.0, "week": 0.0, "month": 0.0, "total": 0.0}
        delivered = await self._orders(
            where=[("partner_id", "==", partner_id), ("status", "==", OrderStatus.DELIVERED.value)]
        )
        for order in delivered:
            share = pricing.partner_share(order.price.total)
            totals["total"] += share
            delivered_at = order.delivered_at
            if delivered_at is None:
                continue
            if delivered_at.tzinfo is None:
                delivered_at = delivered_at.replace(tzinfo=now.tzinfo)
            if delivered_at >= today_start:
                totals["today"] += share
            if delivered_at >= week_start:
                totals["week"] += share
            if delivered_at >= month_start:
                totals["month"] += share
        return {period: round(amount) for period, amount in totals.items()}
