"""
Bhejo - Delivery Marketplace Dashboard
======================================

Streamlit front end over the Bhejo core, for customers and delivery partners.

Features:
- Customer: price quote, order creation, live tracking, delivery OTP, rating
- Partner: availability, accepting orders, trip status, OTP check, cash collection
- pydeck tracking map with a progress simulation
- Configurable geocoder latency and simulation speed
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pandas as pd
import streamlit as st

# Ensure bhejo is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from bhejo import config, pricing, utils
from bhejo.documents import InMemoryDocumentStore
from bhejo.geocoding import AddressResolver, locate_device
from bhejo.location_store import LocationStore
from bhejo.models import Actor, Order, OrderStatus, PackageSize, PaymentMethod, PaymentStatus, TransitionResult, UserRole
from bhejo.orders import OrderRequest, OrderService, OrderValidationError
from bhejo.realtime import create_realtime_store
from bhejo.tracking import TrackingCoordinator
from tracking_map import build_tracking_deck

# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="Bhejo",
    page_icon="📦",
    layout="wide",
    initial_sidebar_state="expanded"
)

# =============================================================================
# CUSTOM STYLING
# =============================================================================

st.markdown("""
<style>
    .main .block-container {
        padding-top: 2rem;
        padding-bottom: 2rem;
    }

    /* KPI Cards */
    .kpi-card {
        background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
        border-radius: 16px;
        padding: 1.25rem;
        color: white;
        text-align: center;
        box-shadow: 0 10px 40px rgba(102, 126, 234, 0.3);
    }

    .kpi-card.green {
        background: linear-gradient(135deg, #11998e 0%, #38ef7d 100%);
        box-shadow: 0 10px 40px rgba(17, 153, 142, 0.3);
    }

    .kpi-card.orange {
        background: linear-gradient(135deg, #f093fb 0%, #f5576c 100%);
        box-shadow: 0 10px 40px rgba(245, 87, 108, 0.3);
    }

    .kpi-value {
        font-size: 2rem;
        font-weight: 800;
        margin: 0.5rem 0;
    }

    .kpi-label {
        font-size: 0.85rem;
        opacity: 0.9;
        text-transform: uppercase;
        letter-spacing: 1px;
    }

    .section-header {
        font-size: 1.4rem;
        font-weight: 700;
        color: #1a1a2e;
        margin: 1.5rem 0 1rem 0;
        padding-bottom: 0.5rem;
        border-bottom: 3px solid #667eea;
    }

    .otp-box {
        font-size: 2rem;
        font-weight: 800;
        letter-spacing: 0.5rem;
        text-align: center;
        padding: 1rem;
        border-radius: 12px;
        background: #0f172a;
        color: #e2e8f0;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)


# =============================================================================
# SERVICES
# =============================================================================

def get_services() -> Dict[str, Any]:
    """Stores and services live in session state so they survive re-runs."""
    if "services" not in st.session_state:
        location_store = LocationStore(create_realtime_store())
        tracking = TrackingCoordinator(location_store, AddressResolver())
        st.session_state["services"] = {
            "locations": location_store,
            "tracking": tracking,
            "orders": OrderService(InMemoryDocumentStore(), tracking),
        }
    return st.session_state["services"]


def run(coro):
    """Run one coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def show_result(result: TransitionResult, success: str) -> None:
    if result:
        st.success(success)
    else:
        st.error(result.reason)


def kpi_card(column, label: str, value: str, variant: str = "") -> None:
    with column:
        st.markdown(f"""
        <div class="kpi-card {variant}">
            <div class="kpi-label">{label}</div>
            <div class="kpi-value">{value}</div>
        </div>
        """, unsafe_allow_html=True)


def orders_frame(orders: List[Order], partner_view: bool = False) -> pd.DataFrame:
    rows = []
    for order in orders:
        row = {
            "Order": order.order_id[:8],
            "Pickup": order.pickup_address,
            "Delivery": order.delivery_address,
            "Size": order.package_size.value,
            "Status": order.status.value,
            "Price": f"₹{order.price.total}",
        }
        if partner_view:
            row["Earnings"] = f"₹{round(pricing.partner_share(order.price.total))}"
        if order.created_at:
            row["Created"] = order.created_at.strftime("%d %b %H:%M")
        rows.append(row)
    return pd.DataFrame(rows)


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar() -> Actor:
    """Render the sidebar and return the acting user."""
    st.sidebar.markdown("## 👤 Account")
    st.sidebar.markdown("---")

    role = st.sidebar.radio("I am a", ["Customer", "Delivery partner"], horizontal=True)
    user_role = UserRole.CUSTOMER if role == "Customer" else UserRole.PARTNER
    default_id = "customer-1" if user_role is UserRole.CUSTOMER else "partner-1"
    user_id = st.sidebar.text_input("User id", default_id)

    st.sidebar.markdown("---")
    st.sidebar.markdown("### ⚙️ Simulation")

    speed = st.sidebar.slider(
        "Speed factor",
        min_value=1.0,
        max_value=20.0,
        value=float(config.DEMO_SPEED_FACTOR),
        step=1.0,
        help="Multiplies both tick rate and progress per tick"
    )
    tick = st.sidebar.slider(
        "Tick (seconds)",
        min_value=0.05,
        max_value=2.0,
        value=0.2,
        step=0.05,
        help="Seconds between progress updates at speed 1"
    )
    delay = st.sidebar.slider(
        "Geocoder latency (seconds)",
        min_value=0.0,
        max_value=1.0,
        value=float(config.GEOCODE_DELAY_SECONDS),
        step=0.1,
    )

    services = get_services()
    services["tracking"].tick_interval = tick
    services["tracking"].resolver.delay_seconds = delay
    st.session_state["speed_factor"] = speed

    st.sidebar.markdown("---")
    st.sidebar.markdown("### 📊 Tracking Stats")
    st.sidebar.json(services["tracking"].get_tracking_stats())

    return Actor(user_id, user_role)


# =============================================================================
# TRACKING
# =============================================================================

def render_tracking(order: Order, allow_simulation: bool) -> None:
    services = get_services()
    record = run(services["locations"].get_tracking(order.order_id))
    if record is None:
        st.info("Live tracking is not available for this order.")
        return

    distance = utils.distance_between(record.pickup_coords, record.delivery_coords)
    remaining = distance * (100 - record.progress) / 100
    m1, m2, m3 = st.columns(3)
    m1.metric("Progress", f"{record.progress:.0f}%")
    m2.metric("Tracking status", record.status.value)
    m3.metric("ETA", utils.format_duration(utils.eta_minutes(remaining)))

    map_slot = st.empty()
    map_slot.pydeck_chart(build_tracking_deck(record))

    if allow_simulation and record.status is not OrderStatus.DELIVERED:
        if st.button("▶️ Simulate trip", key=f"simulate-{order.order_id}"):
            progress_bar = st.progress(int(record.progress))

            def on_update(updated) -> None:
                if updated is not None:
                    progress_bar.progress(int(updated.progress), text=f"{updated.status.value} · {updated.progress:.0f}%")

            async def simulate() -> bool:
                unsubscribe = services["locations"].subscribe_tracking(order.order_id, on_update)
                try:
                    handle = services["tracking"].run_simulation(
                        order.order_id, speed_factor=st.session_state.get("speed_factor", 1.0)
                    )
                    async with handle:
                        return await handle.wait()
                finally:
                    unsubscribe()

            if run(simulate()):
                st.success("Parcel reached the delivery point")
            st.rerun()


# =============================================================================
# CUSTOMER
# =============================================================================

def render_create_order(actor: Actor) -> None:
    services = get_services()
    st.markdown('<div class="section-header">📦 Send a Package</div>', unsafe_allow_html=True)

    recent = run(services["orders"].recent_addresses(actor.user_id))
    with st.form("create-order"):
        col1, col2 = st.columns(2)
        with col1:
            pickup = st.text_input("Pickup address", "MG Road, Bangalore")
            size = st.selectbox("Package size", [s.value for s in PackageSize])
            weight = st.number_input("Weight (kg)", min_value=0.0, value=1.0, step=0.5)
            description = st.text_input("What are you sending?", "Documents")
        with col2:
            delivery = st.text_input("Delivery address", recent[0] if recent else "Indiranagar, Bangalore")
            recipient = st.text_input("Recipient name")
            phone = st.text_input("Recipient phone")
            method = st.selectbox(
                "Payment method",
                [m.value for m in PaymentMethod],
                format_func=lambda v: v.upper() + ("" if PaymentMethod(v).enabled else " (coming soon)"),
            )

        o1, o2, o3, o4 = st.columns(4)
        express = o1.checkbox("Express")
        food = o2.checkbox("Food delivery")
        return_delivery = o3.checkbox("Return delivery")
        scheduled = o4.checkbox("Schedule for later")
        instructions = st.text_area("Instructions for the partner", "")

        quote_clicked = st.form_submit_button("💰 Get quote")
        create_clicked = st.form_submit_button("🚀 Place order")

    if recent:
        st.caption("Recent addresses: " + " · ".join(recent))

    scheduled_time = datetime.now(timezone.utc) + timedelta(hours=2) if scheduled else None

    if quote_clicked:
        resolver = services["tracking"].resolver
        pickup_res = run(resolver.resolve(pickup))
        delivery_res = run(resolver.resolve(delivery))
        price = pricing.quote(
            size, weight, pricing.trip_distance(pickup_res.coords, delivery_res.coords),
            is_express=express,
            needs_return_delivery=return_delivery,
            is_food_delivery=food,
            is_scheduled=scheduled,
        )
        st.table(pd.DataFrame(pricing.breakdown_rows(price).items(), columns=["Item", "Amount"]))

    if create_clicked:
        request = OrderRequest(
            pickup_address=pickup,
            delivery_address=delivery,
            package_description=description,
            recipient_name=recipient,
            recipient_phone=phone,
            package_size=PackageSize(size),
            package_weight=weight,
            is_express=express,
            is_food_delivery=food,
            needs_return_delivery=return_delivery,
            scheduled_delivery_time=scheduled_time,
            additional_instructions=instructions,
            payment_method=PaymentMethod(method),
        )
        try:
            with st.spinner("Finding addresses..."):
                order = run(services["orders"].create_order(actor.user_id, request))
            st.success(f"Order {order.order_id[:8]} placed: ₹{order.price.total}, cash on delivery")
        except OrderValidationError as e:
            st.error(str(e))


def render_customer(actor: Actor) -> None:
    services = get_services()
    stats = run(services["orders"].customer_stats(actor.user_id))

    col1, col2, col3, col4 = st.columns(4)
    kpi_card(col1, "Total Orders", str(stats["total_orders"]))
    kpi_card(col2, "In Transit", str(stats["in_transit_orders"]), "orange")
    kpi_card(col3, "Delivered", str(stats["delivered_orders"]), "green")
    kpi_card(col4, "Total Spent", f"₹{stats['total_spent']}")

    render_create_order(actor)

    st.markdown('<div class="section-header">🚚 My Orders</div>', unsafe_allow_html=True)
    orders = run(services["orders"].customer_orders(actor.user_id))
    if not orders:
        st.info("No orders yet.")
        return
    st.dataframe(orders_frame(orders), use_container_width=True, hide_index=True)

    labels = {f"{o.order_id[:8]} · {o.delivery_address} ({o.status.value})": o for o in orders}
    order = labels[st.selectbox("Order details", list(labels.keys()))]

    col1, col2 = st.columns([2, 1])
    with col1:
        render_tracking(order, allow_simulation=False)
    with col2:
        st.markdown(f"**Status:** {order.status.value}")
        st.markdown(f"**Partner:** {order.partner_id or 'Waiting for a partner'}")
        st.markdown(f"**Payment:** {order.payment_status.value}")
        if order.status is OrderStatus.IN_TRANSIT and order.delivery_otp:
            st.markdown("Share this OTP with your delivery partner:")
            st.markdown(f'<div class="otp-box">{order.delivery_otp}</div>', unsafe_allow_html=True)

        if order.status is OrderStatus.DELIVERED and not order.rated:
            with st.form(f"rate-{order.order_id}"):
                stars = st.slider("Rate your partner", 1, 5, 5)
                comment = st.text_input("Comment (optional)")
                if st.form_submit_button("⭐ Submit rating"):
                    result = run(services["orders"].submit_rating(order.order_id, actor, stars, comment))
                    show_result(result, "Thanks for your feedback!")
        elif order.rated:
            st.markdown(f"**Your rating:** {'⭐' * (order.rating or 0)}")


# =============================================================================
# PARTNER
# =============================================================================

def render_partner_order(actor: Actor, order: Order) -> None:
    services = get_services()
    orders = services["orders"]

    st.markdown(f"#### {order.order_id[:8]} · {order.pickup_address} → {order.delivery_address}")
    st.caption(f"Recipient: {order.recipient_name} ({order.recipient_phone}) · {order.additional_instructions or 'No instructions'}")

    col1, col2 = st.columns([2, 1])
    with col1:
        render_tracking(order, allow_simulation=order.status is OrderStatus.IN_TRANSIT)
    with col2:
        if order.status is OrderStatus.ASSIGNED:
            if st.button("📍 Share my location", key=f"locate-{order.order_id}"):
                position = locate_device(lambda: utils.jitter_position(*order.pickup_coords, radius_km=1.0))
                run(services["locations"].set_user_location(actor.user_id, position))
                run(services["tracking"].partner_start_tracking(order.order_id, actor.user_id))
                st.rerun()
            if st.button("🚚 Picked up, start delivery", key=f"start-{order.order_id}"):
                show_result(run(orders.start(order.order_id, actor)), "Delivery started, ask the recipient for the OTP")
                st.rerun()

        elif order.status is OrderStatus.IN_TRANSIT:
            if order.otp_verified:
                st.success("OTP verified")
                if st.button("✅ Mark delivered", key=f"complete-{order.order_id}"):
                    show_result(run(orders.complete(order.order_id, actor)), "Order delivered")
                    st.rerun()
            else:
                candidate = st.text_input("Delivery OTP", key=f"otp-{order.order_id}", max_chars=6)
                if st.button("🔐 Verify OTP", key=f"verify-{order.order_id}"):
                    result = run(orders.verify_otp(order.order_id, actor, candidate))
                    show_result(result, "OTP verified")
                    if result:
                        st.rerun()
                if st.button("🔄 New OTP", key=f"regen-{order.order_id}"):
                    show_result(run(orders.regenerate_otp(order.order_id, actor)), "A new OTP was sent to the customer")


def render_partner(actor: Actor) -> None:
    services = get_services()
    orders = services["orders"]

    profile = run(orders.get_partner_profile(actor.user_id))
    if profile is None:
        st.markdown('<div class="section-header">🛵 Become a Delivery Partner</div>', unsafe_allow_html=True)
        with st.form("register-partner"):
            name = st.text_input("Name")
            vehicle = st.selectbox("Vehicle", list(config.TRAVEL_SPEEDS_KMH.keys()), index=1)
            if st.form_submit_button("Register"):
                run(orders.register_partner(actor.user_id, name, vehicle))
                st.rerun()
        return

    earnings = run(orders.partner_earnings(actor.user_id))
    col1, col2, col3, col4 = st.columns(4)
    kpi_card(col1, "Today", f"₹{earnings['today']}", "green")
    kpi_card(col2, "This Week", f"₹{earnings['week']}")
    kpi_card(col3, "This Month", f"₹{earnings['month']}")
    kpi_card(col4, "Rating", f"{profile.rating:.1f} ⭐ ({profile.total_ratings})", "orange")

    available = st.toggle("Available for deliveries", value=profile.is_available)
    if available != profile.is_available:
        run(orders.set_availability(actor.user_id, available))
        st.rerun()

    st.markdown('<div class="section-header">🚚 Current Deliveries</div>', unsafe_allow_html=True)
    active = run(orders.partner_active_orders(actor.user_id))
    if not active:
        st.info("No active deliveries.")
    for order in active:
        render_partner_order(actor, order)

    st.markdown('<div class="section-header">📋 Available Orders</div>', unsafe_allow_html=True)
    if not profile.is_available:
        st.info("Go online to see available orders.")
    else:
        pending = run(orders.available_orders())
        if not pending:
            st.info("No orders waiting right now.")
        for order in pending:
            c1, c2 = st.columns([4, 1])
            c1.markdown(
                f"**{order.pickup_address} → {order.delivery_address}** · {order.package_size.value}, "
                f"{order.package_weight:g} kg · earn ₹{round(pricing.partner_share(order.price.total))}"
            )
            if c2.button("Accept", key=f"accept-{order.order_id}"):
                show_result(run(orders.accept(order.order_id, actor)), "Order accepted")
                st.rerun()

    st.markdown('<div class="section-header">✅ Recently Completed</div>', unsafe_allow_html=True)
    completed = run(orders.partner_completed_orders(actor.user_id))
    if completed:
        st.dataframe(orders_frame(completed, partner_view=True), use_container_width=True, hide_index=True)
        for order in completed:
            if order.payment_status is not PaymentStatus.PAID:
                if st.button(f"💵 Cash collected for {order.order_id[:8]}", key=f"paid-{order.order_id}"):
                    show_result(run(orders.mark_paid(order.order_id, actor)), "Payment recorded")
                    st.rerun()

    summary = run(orders.partner_rating_summary(actor.user_id))
    if summary["total"]:
        st.markdown('<div class="section-header">⭐ Ratings</div>', unsafe_allow_html=True)
        dist = pd.DataFrame(
            {"Ratings": [summary["distribution"][star] for star in range(5, 0, -1)]},
            index=[f"{star} ⭐" for star in range(5, 0, -1)],
        )
        st.bar_chart(dist)


# =============================================================================
# MAIN APPLICATION
# =============================================================================

def main():
    """Main application entry point."""
    st.markdown("""
    <div style="text-align: center; padding: 1rem 0 2rem 0;">
        <h1 style="font-size: 3rem; font-weight: 800; background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); -webkit-background-clip: text; -webkit-text-fill-color: transparent; margin-bottom: 0.5rem;">
            Bhejo
        </h1>
        <p style="font-size: 1.2rem; color: #666; max-width: 700px; margin: 0 auto;">
            Send anything across the city, tracked live
        </p>
    </div>
    """, unsafe_allow_html=True)

    actor = render_sidebar()
    if not actor.user_id.strip():
        st.warning("Enter a user id in the sidebar to continue.")
        return

    if actor.is_partner:
        render_partner(actor)
    else:
        render_customer(actor)

    st.markdown("---")
    st.markdown("""
    <div style="text-align: center; color: #888; padding: 1rem;">
        Bhejo | Cash on delivery only, more payment methods coming soon
    </div>
    """, unsafe_allow_html=True)


if __name__ == "__main__":
    main()
