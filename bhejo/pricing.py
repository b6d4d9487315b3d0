# bhejo-tracking/bhejo/pricing.py
"""
Price calculation for delivery orders.

The price is built from four charges, discounted, then topped up with the
optional service surcharges:

1. Base fare by package size
2. Weight charge per kilogram
3. Distance charge per kilometre between the resolved addresses
4. Express surcharge

    total = ceil(0.9 * subtotal  [+ 50% of that for return delivery]
                 [+ food handling] [+ scheduled slot])
"""

from __future__ import annotations

import math
from typing import Dict, Optional, Union

from . import config, utils
from .models import Coordinates, PackageSize, PriceBreakdown


def get_base_fare(size: Union[PackageSize, str]) -> float:
    """
    Base fare for a package size.

    Args:
        size: PackageSize or its string value; unknown sizes pay the small fare

    Returns:
        Fare in rupees
    """
    key = size.value if isinstance(size, PackageSize) else str(size).lower()
    return config.BASE_FARES.get(key, config.BASE_FARES[PackageSize.SMALL.value])


def trip_distance(pickup: Optional[Coordinates], delivery: Optional[Coordinates]) -> float:
    """Distance between resolved endpoints, 0 while either is unknown."""
    if pickup is None or delivery is None:
        return 0.0
    return utils.distance_between(pickup, delivery)


def quote(
    size: Union[PackageSize, str],
    weight_kg: float,
    distance_km: float,
    is_express: bool = False,
    needs_return_delivery: bool = False,
    is_food_delivery: bool = False,
    is_scheduled: bool = False,
) -> PriceBreakdown:
    """
    Price an order.

    Args:
        size: Package size
        weight_kg: Declared package weight
        distance_km: Pickup to delivery distance
        is_express: Express delivery requested
        needs_return_delivery: Parcel comes back to the sender afterwards
        is_food_delivery: Needs food handling
        is_scheduled: Booked for a later time slot

    Returns:
        Itemised PriceBreakdown; ``total`` is rounded up to a whole rupee
    """
    base_fare = get_base_fare(size)
    weight_charge = max(weight_kg, 0.0) * config.WEIGHT_RATE_PER_KG
    distance_charge = distance_km * config.DISTANCE_RATE_PER_KM
    express_charge = config.EXPRESS_CHARGE if is_express else 0.0

    subtotal = base_fare + weight_charge + distance_charge + express_charge
    discounted = subtotal * (1 - config.DISCOUNT_RATE)

    return_charge = discounted * config.RETURN_DELIVERY_RATE if needs_return_delivery else 0.0
    food_charge = config.FOOD_DELIVERY_CHARGE if is_food_delivery else 0.0
    scheduled_charge = config.SCHEDULED_DELIVERY_CHARGE if is_scheduled else 0.0

    final_price = discounted + return_charge + food_charge + scheduled_charge

    return PriceBreakdown(
        base_fare=base_fare,
        weight_charge=weight_charge,
        distance_charge=distance_charge,
        express_charge=express_charge,
        discount=subtotal - discounted,
        return_charge=return_charge,
        food_charge=food_charge,
        scheduled_charge=scheduled_charge,
        distance_km=distance_km,
        total=math.ceil(final_price),
    )


def partner_share(price_total: float) -> float:
    """Amount credited to the delivery partner for an order."""
    return price_total * config.PARTNER_EARNINGS_SHARE


def breakdown_rows(price: PriceBreakdown) -> Dict[str, str]:
    """Display rows for a price summary, skipping zero surcharges."""
    rows = {
        "Base Fare": f"₹{price.base_fare:.0f}",
        "Weight Charge": f"₹{price.weight_charge:.0f}",
    }
    if price.distance_charge > 0:
        rows["Distance Charge"] = f"₹{price.distance_charge:.2f} ({price.distance_km:.2f} km)"
    if price.express_charge > 0:
        rows["Express Delivery"] = f"₹{price.express_charge:.0f}"
    rows[f"Discount ({config.DISCOUNT_RATE:.0%})"] = f"-₹{price.discount:.2f}"
    if price.return_charge > 0:
        rows["Return Delivery"] = f"₹{price.return_charge:.2f}"
    if price.food_charge > 0:
        rows["Food Handling"] = f"₹{price.food_charge:.0f}"
    if price.scheduled_charge > 0:
        rows["Scheduled Slot"] = f"₹{price.scheduled_charge:.0f}"
    rows["Total Price"] = f"₹{price.total}"
    return rows
