"""Streamlit map: live-tracking view of one delivery on a pydeck map.

Run:
    streamlit run tracking_map.py

Builds a mock route between two addresses and lets you scrub the progress
slider to see where the parcel is shown at each percentage. The layer
helpers are also used by the dashboard in app.py.
"""

from __future__ import annotations

import asyncio
import random
from typing import Dict, List, Optional

import pandas as pd
import pydeck as pdk
import streamlit as st

from bhejo import config, utils
from bhejo.geocoding import AddressResolver
from bhejo.models import Coordinates, OrderStatus, TrackingRecord

STATUS_COLORS: Dict[OrderStatus, List[int]] = {
    OrderStatus.PENDING: [251, 191, 36],
    OrderStatus.ASSIGNED: [59, 130, 246],
    OrderStatus.IN_TRANSIT: [139, 92, 246],
    OrderStatus.DELIVERED: [16, 185, 129],
}


# -----------------------------------------------------------------------------
# Map helpers
# -----------------------------------------------------------------------------

def route_layer(route: List[Coordinates]) -> pdk.Layer:
    return pdk.Layer(
        "PathLayer",
        [{"path": [[lng, lat] for lat, lng in route], "label": "Route"}],
        get_path="path",
        get_color=[100, 116, 139],
        width_min_pixels=3,
        pickable=True,
    )


def endpoint_layer(record: TrackingRecord) -> pdk.Layer:
    data = [
        {"position": [record.pickup_coords[1], record.pickup_coords[0]], "label": "Pickup", "color": [59, 130, 246]},
        {"position": [record.delivery_coords[1], record.delivery_coords[0]], "label": "Delivery", "color": [239, 68, 68]},
    ]
    if record.partner_position is not None:
        data.append({
            "position": [record.partner_position[1], record.partner_position[0]],
            "label": f"Partner {record.partner_id}",
            "color": [234, 88, 12],
        })
    return pdk.Layer(
        "ScatterplotLayer",
        data,
        get_position="position",
        get_fill_color="color",
        get_radius=120,
        radius_min_pixels=6,
        pickable=True,
    )


def position_layer(position: Coordinates, status: OrderStatus, progress: float) -> pdk.Layer:
    data = [{
        "position": [position[1], position[0]],
        "label": f"{status.value} · {progress:.0f}%",
        "color": STATUS_COLORS.get(status, [148, 163, 184]),
    }]
    return pdk.Layer(
        "ScatterplotLayer",
        data,
        get_position="position",
        get_fill_color="color",
        get_radius=160,
        radius_min_pixels=9,
        stroked=True,
        get_line_color=[255, 255, 255],
        line_width_min_pixels=2,
        pickable=True,
    )


def build_tracking_deck(record: TrackingRecord, progress: Optional[float] = None) -> pdk.Deck:
    """
    Deck with the route, both endpoints and the parcel position.

    Args:
        record: Tracking record to draw
        progress: Draw the parcel at this progress instead of the stored one

    Returns:
        pydeck Deck centred between the endpoints, zoomed to fit the trip
    """
    if progress is None:
        position, shown = record.current_position, record.progress
    else:
        position = utils.position_for_progress(
            record.route, progress, record.pickup_coords, record.delivery_coords
        )
        shown = progress

    center_lat, center_lng = utils.midpoint(*record.pickup_coords, *record.delivery_coords)
    distance = utils.distance_between(record.pickup_coords, record.delivery_coords)
    view_state = pdk.ViewState(latitude=center_lat, longitude=center_lng, zoom=utils.zoom_level_for(distance))

    layers = [
        route_layer(record.route),
        endpoint_layer(record),
        position_layer(position, record.status, shown),
    ]
    return pdk.Deck(layers=layers, initial_view_state=view_state, tooltip={"text": "{label}"})


def route_table(record: TrackingRecord) -> pd.DataFrame:
    """Waypoints with the progress band that maps onto each of them."""
    last = len(record.route) - 1
    rows = []
    for i, (lat, lng) in enumerate(record.route):
        rows.append({
            "waypoint": i,
            "lat": round(lat, 5),
            "lng": round(lng, 5),
            "from %": round(i / last * 100, 1),
        })
    return pd.DataFrame(rows)


# -----------------------------------------------------------------------------
# Demo record
# -----------------------------------------------------------------------------

@st.cache_data(show_spinner=False)
def demo_record(pickup_address: str, delivery_address: str, seed: int) -> Dict:
    rng = random.Random(seed)
    resolver = AddressResolver(delay_seconds=0, rng=rng)
    pickup = asyncio.run(resolver.resolve(pickup_address))
    delivery = asyncio.run(resolver.resolve(delivery_address))
    route = utils.mock_route(*pickup.coords, *delivery.coords, num_points=config.ROUTE_WAYPOINTS, rng=rng)
    record = TrackingRecord(
        pickup_coords=pickup.coords,
        delivery_coords=delivery.coords,
        route=route,
        current_position=pickup.coords,
        last_updated=utils.utc_now_iso(),
    )
    return record.to_dict()


def main() -> None:
    st.set_page_config(page_title="Bhejo Live Tracking", page_icon="🛵", layout="wide")
    st.title("🛵 Live Tracking on a Map")
    st.write("**Demo:** one parcel on a mock route. Scrub the slider to move it along.")

    col1, col2, col3 = st.columns([2, 2, 1])
    with col1:
        pickup_address = st.text_input("Pickup", "MG Road, Bangalore")
    with col2:
        delivery_address = st.text_input("Delivery", "Whitefield, Bangalore")
    with col3:
        seed = st.number_input("Route seed", min_value=0, value=7, step=1)

    record = TrackingRecord.from_dict(demo_record(pickup_address, delivery_address, int(seed)))

    progress = st.slider("Progress (%)", 0, 100, 0, help="Scrub through the delivery")
    if progress >= 100:
        record.status = OrderStatus.DELIVERED
    elif progress > config.IN_TRANSIT_PROGRESS_THRESHOLD:
        record.status = OrderStatus.IN_TRANSIT

    distance = utils.distance_between(record.pickup_coords, record.delivery_coords)
    remaining = distance * (100 - progress) / 100
    m1, m2, m3 = st.columns(3)
    m1.metric("Distance", f"{distance:.2f} km")
    m2.metric("ETA", utils.format_duration(utils.eta_minutes(remaining)))
    m3.metric("Status", record.status.value)

    st.pydeck_chart(build_tracking_deck(record, progress=progress))

    st.markdown("---")
    st.markdown("#### Route Waypoints")
    st.dataframe(route_table(record), use_container_width=True, hide_index=True)


if __name__ == "__main__":
    main()
