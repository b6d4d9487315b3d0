import asyncio
import math
import random
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from bhejo import pricing
from bhejo.documents import InMemoryDocumentStore
from bhejo.models import (
    Actor,
    OrderStatus,
    PackageSize,
    PaymentMethod,
    PaymentStatus,
    UserRole,
)
from bhejo.orders import ORDERS, RATINGS, USERS, OrderService, OrderValidationError, normalize_phone, validate_request

from conftest import NOW


async def deliver(service, customer, partner, request):
    """Drive one order from creation to delivered."""
    order = await service.create_order(customer.user_id, request)
    assert await service.accept(order.order_id, partner)
    started = await service.start(order.order_id, partner)
    assert await service.verify_otp(order.order_id, partner, started.order.delivery_otp)
    result = await service.complete(order.order_id, partner)
    assert result
    return result.order


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

def test_normalize_phone():
    assert normalize_phone("+91 98765-43210") == "919876543210"
    assert normalize_phone("(987) 654-3210") == "9876543210"


@pytest.mark.parametrize("overrides,message", [
    ({"pickup_address": "  "}, "pickup address"),
    ({"delivery_address": ""}, "delivery address"),
    ({"package_description": ""}, "describe the package"),
    ({"recipient_name": " "}, "recipient's name"),
    ({"recipient_phone": "12345"}, "10-digit phone number"),
    ({"package_weight": 0}, "greater than 0"),
    ({"package_weight": math.nan}, "greater than 0"),
    ({"package_weight": math.inf}, "greater than 0"),
    ({"scheduled_delivery_time": NOW - timedelta(hours=1)}, "must be in the future"),
    ({"payment_method": PaymentMethod.UPI}, "UPI payments are coming soon"),
])
def test_invalid_requests_are_refused(order_request, overrides, message):
    with pytest.raises(OrderValidationError, match=message):
        validate_request(order_request(**overrides), NOW)


def test_eleven_digit_phone_is_refused(order_request):
    with pytest.raises(OrderValidationError):
        validate_request(order_request(recipient_phone="+91 98765-43210"), NOW)


def test_naive_scheduled_time_is_read_as_utc(order_request):
    validate_request(
        order_request(recipient_phone="98765 43210", scheduled_delivery_time=datetime(2026, 10, 22, 9, 0)),
        NOW,
    )


def test_create_rejects_invalid_request(service, customer, order_request):
    with pytest.raises(OrderValidationError):
        asyncio.run(service.create_order(customer.user_id, order_request(package_weight=-1)))
    assert asyncio.run(service.customer_orders(customer.user_id)) == []


def test_create_rejects_nan_weight(service, customer, order_request):
    with pytest.raises(OrderValidationError, match="greater than 0"):
        asyncio.run(service.create_order(customer.user_id, order_request(package_weight=math.nan)))
    assert asyncio.run(service.customer_orders(customer.user_id)) == []


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------

def test_create_order_prices_and_starts_tracking(service, customer, order_request):
    order = asyncio.run(service.create_order(customer.user_id, order_request(recipient_phone="98765 43210")))

    assert order.order_id
    assert order.status is OrderStatus.PENDING
    assert order.partner_id is None
    assert order.payment_status is PaymentStatus.PENDING
    assert order.recipient_phone == "9876543210"
    assert order.created_at == NOW

    distance = pricing.trip_distance(order.pickup_coords, order.delivery_coords)
    assert distance < 15
    assert order.price.total == math.ceil(0.9 * (50 + 20.0 + distance * 5))

    record = asyncio.run(service.tracking.location_store.get_tracking(order.order_id))
    assert record.status is OrderStatus.PENDING
    assert record.pickup_coords == order.pickup_coords
    assert record.delivery_coords == order.delivery_coords

    stored = asyncio.run(service.get_order(order.order_id))
    assert stored.price == order.price


def test_scheduled_order_pays_the_slot_surcharge(service, customer, order_request):
    order = asyncio.run(service.create_order(
        customer.user_id,
        order_request(recipient_phone="9876543210", scheduled_delivery_time=NOW + timedelta(days=1)),
    ))
    assert order.price.scheduled_charge == 30.0


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

def test_full_lifecycle(service, customer, partner, order_request):
    tracking_store = service.tracking.location_store

    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        order_id = order.order_id

        await tracking_store.set_user_location(partner.user_id, (12.96, 77.60))
        accepted = await service.accept(order_id, partner)
        assert accepted.order.status is OrderStatus.ASSIGNED
        assert accepted.order.partner_id == partner.user_id
        record = await tracking_store.get_tracking(order_id)
        assert record.status is OrderStatus.ASSIGNED
        assert record.partner_position == (12.96, 77.60)

        started = await service.start(order_id, partner)
        otp = started.order.delivery_otp
        assert started.order.status is OrderStatus.IN_TRANSIT
        assert started.order.in_transit_at == NOW
        assert len(otp) == 6 and otp.isdigit()
        assert (await tracking_store.get_tracking(order_id)).status is OrderStatus.IN_TRANSIT

        blocked = await service.complete(order_id, partner)
        assert blocked.reason == "Please verify delivery OTP first"

        wrong = await service.verify_otp(order_id, partner, "000000" if otp != "000000" else "111111")
        assert wrong.reason == "Invalid OTP. Please check and try again"
        assert await service.verify_otp(order_id, partner, otp)
        assert await service.verify_otp(order_id, partner, otp)

        delivered = await service.complete(order_id, partner)
        assert delivered.order.status is OrderStatus.DELIVERED
        assert delivered.order.delivered_at == NOW

        record = await tracking_store.get_tracking(order_id)
        assert record.status is OrderStatus.DELIVERED
        assert record.progress == 100
        assert record.current_position == order.delivery_coords

        paid = await service.mark_paid(order_id, partner)
        assert paid.order.payment_status is PaymentStatus.PAID
        assert not await service.mark_paid(order_id, partner)

    asyncio.run(scenario())


def test_accept_without_partner_location_still_mirrors_status(service, customer, partner, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        assert await service.accept(order.order_id, partner)
        return await service.tracking.location_store.get_tracking(order.order_id)

    record = asyncio.run(scenario())
    assert record.status is OrderStatus.ASSIGNED
    assert record.partner_id is None


def test_concurrent_accept_has_exactly_one_winner(service, customer, partner, other_partner, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        results = await asyncio.gather(
            service.accept(order.order_id, partner),
            service.accept(order.order_id, other_partner),
        )
        return results, await service.get_order(order.order_id)

    results, order = asyncio.run(scenario())
    winners = [r for r in results if r]
    losers = [r for r in results if not r]
    assert len(winners) == 1
    assert losers[0].reason == "Order has already been accepted by another partner"
    assert order.partner_id == winners[0].order.partner_id


def test_partner_cannot_hold_two_active_orders(service, customer, partner, order_request):
    async def scenario():
        first = await service.create_order(customer.user_id, order_request())
        second = await service.create_order(customer.user_id, order_request())
        assert await service.accept(first.order_id, partner)
        return await service.accept(second.order_id, partner)

    result = asyncio.run(scenario())
    assert result.reason == "Finish your current delivery before accepting another order"


def test_concurrent_accepts_by_one_partner_take_one_order(service, customer, partner, order_request):
    async def scenario():
        first = await service.create_order(customer.user_id, order_request())
        second = await service.create_order(customer.user_id, order_request())
        results = await asyncio.gather(
            service.accept(first.order_id, partner),
            service.accept(second.order_id, partner),
        )
        return results, await service.partner_active_orders(partner.user_id), await service.available_orders()

    results, active, available = asyncio.run(scenario())
    assert len([r for r in results if r]) == 1
    assert [r for r in results if not r][0].reason == "Finish your current delivery before accepting another order"
    assert len(active) == 1
    assert len(available) == 1


def test_losing_an_accept_race_frees_the_partner(service, customer, partner, other_partner, order_request):
    async def scenario():
        contested = await service.create_order(customer.user_id, order_request())
        await asyncio.gather(
            service.accept(contested.order_id, partner),
            service.accept(contested.order_id, other_partner),
        )
        loser = other_partner if (await service.get_order(contested.order_id)).partner_id == partner.user_id else partner
        nxt = await service.create_order(customer.user_id, order_request())
        return await service.accept(nxt.order_id, loser)

    assert asyncio.run(scenario())


def test_partner_can_accept_again_after_delivering(service, customer, partner, order_request):
    async def scenario():
        await deliver(service, customer, partner, order_request())
        nxt = await service.create_order(customer.user_id, order_request())
        return await service.accept(nxt.order_id, partner)

    assert asyncio.run(scenario())


def test_customers_cannot_move_orders(service, customer, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        return await service.accept(order.order_id, customer)

    assert asyncio.run(scenario()).reason == "Only delivery partners can update order status"


def test_only_assigned_partner_can_start(service, customer, partner, other_partner, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        await service.accept(order.order_id, partner)
        return await service.start(order.order_id, other_partner)

    assert not asyncio.run(scenario())


def test_unknown_order(service, partner):
    assert asyncio.run(service.accept("missing", partner)).reason == "Order not found"
    assert asyncio.run(service.get_order("missing")) is None


def test_regenerate_otp(service, customer, partner, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        await service.accept(order.order_id, partner)
        await service.start(order.order_id, partner)
        regenerated = await service.regenerate_otp(order.order_id, partner)
        verified = await service.verify_otp(order.order_id, partner, regenerated.extra["otp"])
        again = await service.regenerate_otp(order.order_id, partner)
        return regenerated, verified, again

    regenerated, verified, again = asyncio.run(scenario())
    assert regenerated.order.delivery_otp == regenerated.extra["otp"]
    assert verified.order.otp_verified
    assert again.reason == "Delivery OTP has already been verified"


def test_order_subscription_sees_each_status(service, customer, partner, order_request):
    statuses = []

    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        service.subscribe_order(order.order_id, lambda o: statuses.append(o.status))
        await service.accept(order.order_id, partner)
        await service.start(order.order_id, partner)

    asyncio.run(scenario())
    assert statuses == [OrderStatus.PENDING, OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT]


# -----------------------------------------------------------------------------
# Rating
# -----------------------------------------------------------------------------

def test_rating_folds_into_partner_average(service, documents, customer, partner, order_request):
    async def scenario():
        await service.register_partner(partner.user_id, "Kiran")
        await documents.update(USERS, partner.user_id, {"rating": 4.0, "total_ratings": 3})
        order = await deliver(service, customer, partner, order_request())
        result = await service.submit_rating(order.order_id, customer, 5, " Quick and polite ")
        duplicate = await service.submit_rating(order.order_id, customer, 1)
        return order, result, duplicate

    order, result, duplicate = asyncio.run(scenario())
    assert result.extra == {"partner_rating": 4.25, "total_ratings": 4}
    assert result.order.rated
    assert result.order.rating_comment == "Quick and polite"
    assert duplicate.reason == "This order has already been rated"

    profile = asyncio.run(service.get_partner_profile(partner.user_id))
    assert (profile.rating, profile.total_ratings) == (4.25, 4)
    assert profile.name == "Kiran"


def test_concurrent_duplicate_rating_counts_once(service, documents, customer, partner, order_request):
    async def scenario():
        order = await deliver(service, customer, partner, order_request())
        return await asyncio.gather(
            service.submit_rating(order.order_id, customer, 4),
            service.submit_rating(order.order_id, customer, 2),
        )

    results = asyncio.run(scenario())
    assert sum(bool(r) for r in results) == 1

    profile = asyncio.run(service.get_partner_profile(partner.user_id))
    assert profile.total_ratings == 1
    assert len(asyncio.run(documents.query(RATINGS))) == 1


class ProfileWriteFailingStore(InMemoryDocumentStore):
    async def transaction(self, collection, doc_id, apply):
        if collection == USERS:
            raise RuntimeError("profile write refused")
        return await super().transaction(collection, doc_id, apply)


class RatingLogFailingStore(InMemoryDocumentStore):
    async def add(self, collection, data):
        if collection == RATINGS:
            raise RuntimeError("ratings log unavailable")
        return await super().add(collection, data)


def test_rating_is_rolled_back_when_the_profile_cannot_be_updated(tracking, customer, partner, order_request):
    documents = ProfileWriteFailingStore()
    service = OrderService(documents, tracking, clock=lambda: NOW, rng=random.Random(7))

    async def scenario():
        order = await deliver(service, customer, partner, order_request())
        result = await service.submit_rating(order.order_id, customer, 5)
        return result, await service.get_order(order.order_id)

    result, order = asyncio.run(scenario())
    assert not result
    assert result.reason == "Could not save your rating, please try again"
    assert not order.rated
    assert order.rating is None
    assert order.rated_at is None
    assert asyncio.run(documents.query(RATINGS)) == []


def test_rating_survives_a_ratings_log_failure(tracking, customer, partner, order_request):
    documents = RatingLogFailingStore()
    service = OrderService(documents, tracking, clock=lambda: NOW, rng=random.Random(7))

    async def scenario():
        order = await deliver(service, customer, partner, order_request())
        return await service.submit_rating(order.order_id, customer, 4)

    result = asyncio.run(scenario())
    assert result
    assert result.order.rated
    assert result.extra == {"partner_rating": 4.0, "total_ratings": 1}
    assert asyncio.run(documents.query(RATINGS)) == []


def test_rating_rejections(service, customer, partner, order_request):
    async def scenario():
        order = await service.create_order(customer.user_id, order_request())
        early = await service.submit_rating(order.order_id, customer, 5)
        delivered = await deliver(service, customer, partner, order_request())
        out_of_range = await service.submit_rating(delivered.order_id, customer, 6)
        stranger = await service.submit_rating(delivered.order_id, Actor("cust-9", UserRole.CUSTOMER), 5)
        return early, out_of_range, stranger

    early, out_of_range, stranger = asyncio.run(scenario())
    assert early.reason == "Orders can only be rated after delivery"
    assert out_of_range.reason == "Please select a rating between 1 and 5"
    assert not stranger


def test_rating_summary(service, customer, partner, order_request):
    async def scenario():
        order = await deliver(service, customer, partner, order_request())
        await service.submit_rating(order.order_id, customer, 5)
        return await service.partner_rating_summary(partner.user_id)

    summary = asyncio.run(scenario())
    assert summary["average"] == 5.0
    assert summary["total"] == 1
    assert summary["distribution"] == {1: 0, 2: 0, 3: 0, 4: 0, 5: 1}
    assert summary["recent"][0]["rating"] == 5


# -----------------------------------------------------------------------------
# Profiles and queries
# -----------------------------------------------------------------------------

def test_availability_needs_a_profile(service, partner):
    assert asyncio.run(service.set_availability(partner.user_id, True)) is False

    asyncio.run(service.register_partner(partner.user_id, "Kiran", "scooter"))
    assert asyncio.run(service.set_availability(partner.user_id, True)) is True
    profile = asyncio.run(service.get_partner_profile(partner.user_id))
    assert profile.is_available
    assert profile.vehicle_type == "scooter"


def test_dashboard_queries(service, customer, partner, order_request):
    async def scenario():
        first = await service.create_order(customer.user_id, order_request(delivery_address="Whitefield, Bangalore"))
        await service.create_order(customer.user_id, order_request(delivery_address="Whitefield, Bangalore"))
        await service.create_order(customer.user_id, order_request(delivery_address="Jayanagar, Bangalore"))
        await service.create_order("cust-2", order_request())
        await service.accept(first.order_id, partner)
        return {
            "available": await service.available_orders(),
            "active": await service.partner_active_orders(partner.user_id),
            "mine": await service.customer_orders(customer.user_id),
            "open": await service.customer_active_orders(customer.user_id),
            "addresses": await service.recent_addresses(customer.user_id),
            "stats": await service.customer_stats(customer.user_id),
        }

    result = asyncio.run(scenario())
    assert len(result["available"]) == 3
    assert [o.status for o in result["active"]] == [OrderStatus.ASSIGNED]
    assert len(result["mine"]) == 3
    assert len(result["open"]) == 3
    assert sorted(result["addresses"]) == ["Jayanagar, Bangalore", "Whitefield, Bangalore"]

    stats = result["stats"]
    assert stats["total_orders"] == 3
    assert stats["pending_orders"] == 2
    assert stats["total_spent"] == sum(o.price.total for o in result["mine"])
    assert stats["avg_order_value"] == round(stats["total_spent"] / 3)


def test_recent_addresses_are_limited(service, customer, order_request):
    async def scenario():
        for i in range(7):
            await service.create_order(customer.user_id, order_request(delivery_address=f"House {i}, Bangalore"))
        return await service.recent_addresses(customer.user_id, limit=5)

    assert len(asyncio.run(scenario())) == 5


def test_partner_earnings_by_period(service, documents, make_order):
    hundred = replace(make_order().price, total=100)
    delivered_on = [
        datetime(2026, 10, 21, 10, 0, tzinfo=timezone.utc),  # today
        datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc),   # Sunday, this week
        datetime(2026, 10, 2, 18, 0, tzinfo=timezone.utc),   # this month
        datetime(2026, 9, 30, 18, 0, tzinfo=timezone.utc),   # last month
    ]

    async def scenario():
        for i, when in enumerate(delivered_on):
            order = make_order(
                order_id=f"o{i}", status=OrderStatus.DELIVERED, partner_id="partner-1",
                price=hundred, delivered_at=when,
            )
            await documents.set(ORDERS, order.order_id, order.to_dict())
        other = make_order(status=OrderStatus.DELIVERED, partner_id="partner-2", price=hundred, delivered_at=NOW)
        await documents.set(ORDERS, "other", other.to_dict())
        active = make_order(status=OrderStatus.IN_TRANSIT, partner_id="partner-1", price=hundred)
        await documents.set(ORDERS, "active", active.to_dict())
        return await service.partner_earnings("partner-1")

    assert asyncio.run(scenario()) == {"today": 80, "week": 160, "month": 240, "total": 320}


def test_completed_orders_are_limited_and_newest_first(service, documents, make_order):
    async def scenario():
        for day in range(1, 8):
            order = make_order(
                order_id=f"o{day}", status=OrderStatus.DELIVERED, partner_id="partner-1",
                delivered_at=datetime(2026, 10, day, tzinfo=timezone.utc),
            )
            await documents.set(ORDERS, order.order_id, order.to_dict())
        return await service.partner_completed_orders("partner-1")

    completed = asyncio.run(scenario())
    assert [o.order_id for o in completed] == ["o7", "o6", "o5", "o4", "o3"]


def test_large_express_order_price(service, customer, order_request):
    order = asyncio.run(service.create_order(
        customer.user_id, order_request(package_size=PackageSize.LARGE, is_express=True, package_weight=1.0)
    ))
    distance = pricing.trip_distance(order.pickup_coords, order.delivery_coords)
    assert order.price.total == math.ceil(0.9 * (100 + 10.0 + distance * 5 + 100))
