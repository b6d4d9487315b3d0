#!/usr/bin/env python3
# bhejo-tracking/main.py
"""
Command-Line Interface for the Bhejo delivery marketplace core.

A quick way to price a delivery or watch a full order lifecycle run end to
end without the Streamlit UI.

Usage:
    python main.py quote "MG Road, Bangalore" "Indiranagar, Bangalore" --size small --weight 2
    python main.py demo                       # Create, deliver, pay and rate one order
    python main.py demo --speed 10 --verbose  # Faster simulation, debug logging
    python main.py cities                     # Show the cities the geocoder knows

Exit Codes:
    0: Success
    1: Invalid input
    2: Lifecycle or tracking error
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Dict, Optional

# Ensure bhejo package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from bhejo import config, pricing, utils
from bhejo.documents import InMemoryDocumentStore
from bhejo.geocoding import AddressResolver
from bhejo.location_store import LocationStore
from bhejo.models import Actor, OrderStatus, PackageSize, TrackingRecord, TransitionResult, UserRole
from bhejo.orders import OrderRequest, OrderService, OrderValidationError
from bhejo.realtime import create_realtime_store
from bhejo.tracking import TrackingCoordinator

logger = logging.getLogger("bhejo.cli")


def print_header(subtitle: str) -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  BHEJO - Delivery Marketplace")
    print(f"  {subtitle}")
    print("=" * 60 + "\n")


def print_rows(title: str, rows: Dict[str, str]) -> None:
    """
    Print a two-column table.

    Args:
        title: Table heading
        rows: Label -> value
    """
    print(f"  {title}")
    print("  " + "-" * 44)
    for label, value in rows.items():
        print(f"  {label:<26} {value:>16}")
    print()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# =============================================================================
# quote
# =============================================================================

async def run_quote(args: argparse.Namespace) -> int:
    print_header("Price Quote")
    resolver = AddressResolver(delay_seconds=0)
    pickup = await resolver.resolve(args.pickup)
    delivery = await resolver.resolve(args.delivery)
    if not (pickup.ok and delivery.ok):
        print("ERROR: Could not resolve one of the addresses")
        return 1

    distance = pricing.trip_distance(pickup.coords, delivery.coords)
    price = pricing.quote(
        args.size,
        args.weight,
        distance,
        is_express=args.express,
        needs_return_delivery=args.return_delivery,
        is_food_delivery=args.food,
        is_scheduled=args.scheduled,
    )

    print(f"  Pickup:   {args.pickup} -> {pickup.matched_city or 'default centroid'}")
    print(f"  Delivery: {args.delivery} -> {delivery.matched_city or 'default centroid'}")
    print(f"  Distance: {distance:.2f} km, about {utils.format_duration(utils.travel_time_minutes(distance))} by bike\n")
    print_rows("PRICE BREAKDOWN", pricing.breakdown_rows(price))
    print(f"  Partner earns ₹{round(pricing.partner_share(price.total))}\n")
    return 0


# =============================================================================
# demo
# =============================================================================

def _check(step: str, result: TransitionResult) -> bool:
    if result:
        print(f"  [OK]   {step}")
        return True
    print(f"  [FAIL] {step}: {result.reason}")
    return False


def _progress_printer():
    last: Dict[str, Optional[str]] = {"status": None}

    def on_update(record: Optional[TrackingRecord]) -> None:
        if record is None:
            return
        lat, lng = record.current_position
        marker = "" if record.status.value == last["status"] else f"  <- {record.status.value}"
        last["status"] = record.status.value
        print(f"         {record.progress:5.1f}%  ({lat:.4f}, {lng:.4f}){marker}")

    return on_update


async def run_demo(args: argparse.Namespace) -> int:
    print_header("End-to-end Order Lifecycle Demo")

    location_store = LocationStore(create_realtime_store())
    resolver = AddressResolver(delay_seconds=args.geocode_delay)
    customer = Actor("customer-demo", UserRole.CUSTOMER)
    partner = Actor("partner-demo", UserRole.PARTNER)

    async with TrackingCoordinator(location_store, resolver, tick_interval=args.tick) as tracking:
        service = OrderService(InMemoryDocumentStore(), tracking)
        await service.register_partner(partner.user_id, "Demo Partner", "bike")
        await service.set_availability(partner.user_id, True)

        try:
            order = await service.create_order(customer.user_id, OrderRequest(
                pickup_address=args.pickup,
                delivery_address=args.delivery,
                package_description="Documents",
                recipient_name="Asha",
                recipient_phone="98765 43210",
                package_size=PackageSize(args.size),
                package_weight=args.weight,
            ))
        except OrderValidationError as e:
            print(f"ERROR: {e}")
            return 1
        print(f"  [OK]   Order {order.order_id} created, ₹{order.price.total}")

        partner_home = utils.jitter_position(*order.pickup_coords, radius_km=1.0)
        await location_store.set_user_location(partner.user_id, partner_home)

        if not _check("Partner accepted", await service.accept(order.order_id, partner)):
            return 2
        started = await service.start(order.order_id, partner)
        if not _check("Parcel picked up, delivery OTP issued", started):
            return 2

        print(f"  ....   Simulating trip at x{args.speed}")
        unsubscribe = location_store.subscribe_tracking(order.order_id, _progress_printer())
        try:
            async with tracking.run_simulation(order.order_id, speed_factor=args.speed) as simulation:
                reached = await simulation.wait()
        finally:
            unsubscribe()
        if not reached:
            print("  [FAIL] Simulation did not reach the delivery point")
            return 2

        otp = started.order.delivery_otp
        if not _check(f"OTP {otp} verified", await service.verify_otp(order.order_id, partner, otp)):
            return 2
        if not _check("Delivered", await service.complete(order.order_id, partner)):
            return 2
        if not _check("Cash collected", await service.mark_paid(order.order_id, partner)):
            return 2
        rated = await service.submit_rating(order.order_id, customer, args.rating, "Quick and careful")
        if not _check(f"Rated {args.rating}/5", rated):
            return 2

        final = await service.get_order(order.order_id)
        record = await location_store.get_tracking(order.order_id)
        print()
        print_rows("SUMMARY", {
            "Order status": final.status.value,
            "Tracking status": record.status.value if record else "n/a",
            "Payment": final.payment_status.value,
            "Partner rating": f"{rated.extra['partner_rating']:.1f}",
            "Partner earnings (today)": f"₹{(await service.partner_earnings(partner.user_id))['today']}",
        })

        stats = tracking.get_tracking_stats()
        logger.info(f"Tracking stats: {stats}")
        if final.status is not OrderStatus.DELIVERED:
            return 2
    return 0


# =============================================================================
# Entry point
# =============================================================================

def main() -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="Bhejo delivery marketplace CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py quote "Koramangala, Bangalore" "Whitefield, Bangalore" --express
  python main.py demo --speed 10
  python main.py cities
        """
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging"
    )
    subparsers = parser.add_subparsers(dest="command")

    sizes = [size.value for size in PackageSize]

    quote_parser = subparsers.add_parser("quote", help="Price a delivery between two addresses")
    quote_parser.add_argument("pickup", help="Pickup address")
    quote_parser.add_argument("delivery", help="Delivery address")
    quote_parser.add_argument("--size", choices=sizes, default="small", help="Package size (default: small)")
    quote_parser.add_argument("--weight", type=float, default=1.0, help="Package weight in kg (default: 1)")
    quote_parser.add_argument("--express", action="store_true", help="Express delivery")
    quote_parser.add_argument("--return-delivery", action="store_true", help="Bring the parcel back")
    quote_parser.add_argument("--food", action="store_true", help="Food delivery")
    quote_parser.add_argument("--scheduled", action="store_true", help="Scheduled time slot")

    demo_parser = subparsers.add_parser("demo", help="Run one order through its whole lifecycle")
    demo_parser.add_argument("--pickup", default="MG Road, Bangalore", help="Pickup address")
    demo_parser.add_argument("--delivery", default="Indiranagar, Bangalore", help="Delivery address")
    demo_parser.add_argument("--size", choices=sizes, default="small", help="Package size (default: small)")
    demo_parser.add_argument("--weight", type=float, default=2.0, help="Package weight in kg (default: 2)")
    demo_parser.add_argument(
        "--speed", type=float, default=config.DEMO_SPEED_FACTOR,
        help=f"Simulation speed factor (default: {config.DEMO_SPEED_FACTOR})"
    )
    demo_parser.add_argument(
        "--tick", type=float, default=0.05,
        help="Seconds per simulation tick at speed 1 (default: 0.05)"
    )
    demo_parser.add_argument(
        "--geocode-delay", type=float, default=config.GEOCODE_DELAY_SECONDS,
        help=f"Artificial geocoder latency in seconds (default: {config.GEOCODE_DELAY_SECONDS})"
    )
    demo_parser.add_argument("--rating", type=int, choices=range(1, 6), default=5, help="Rating to give (default: 5)")

    subparsers.add_parser("cities", help="List the cities the address resolver recognises")

    args = parser.parse_args()
    configure_logging(args.verbose)

    if args.command == "cities":
        print("\nKnown Cities:")
        print("-" * 50)
        for name, (lat, lng) in config.CITY_CENTROIDS.items():
            print(f"  {name:15} ({lat:.4f}, {lng:.4f})")
        lat, lng = config.DEFAULT_CENTROID
        print(f"  {'(default)':15} ({lat:.4f}, {lng:.4f})")
        return 0

    if args.command == "quote":
        if args.weight <= 0:
            print("ERROR: Package weight must be greater than 0")
            return 1
        return asyncio.run(run_quote(args))

    if args.command == "demo":
        if args.speed <= 0:
            print("ERROR: --speed must be positive")
            return 1
        return asyncio.run(run_demo(args))

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
