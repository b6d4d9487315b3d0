# bhejo-tracking/bhejo/location_store.py
"""
Location Store Adapter.

Read, write and subscribe operations over the realtime store for the two
location namespaces:

- ``locations/<user_id>``: last known position of a user
- ``orderLocations/<order_id>``: tracking record of an order

The adapter holds no business rules. Store failures are logged and turned
into ``False``/``None`` so callers can retry or ignore them, never crash.
Snapshots that fail validation are treated as absent.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from . import utils
from .models import Coordinates, TrackingRecord, UserLocation
from .realtime import RealtimeStore, StoreError, Unsubscribe

logger = logging.getLogger(__name__)

USER_LOCATIONS_ROOT = "locations"
ORDER_LOCATIONS_ROOT = "orderLocations"


def user_location_path(user_id: str) -> str:
    return f"{USER_LOCATIONS_ROOT}/{user_id}"


def order_location_path(order_id: str) -> str:
    return f"{ORDER_LOCATIONS_ROOT}/{order_id}"


class LocationStore:
    """Typed access to user locations and order tracking records."""

    def __init__(self, store: RealtimeStore) -> None:
        self.store = store

    # -------------------------------------------------------------------------
    # User locations
    # -------------------------------------------------------------------------

    async def set_user_location(self, user_id: str, position: Coordinates) -> bool:
        """
        Upsert a user's position with the current timestamp.

        Returns:
            True on success, False if the store rejected the write
        """
        record = UserLocation(position=(float(position[0]), float(position[1])), timestamp=utils.utc_now_iso())
        try:
            await self.store.set(user_location_path(user_id), record.to_dict())
            return True
        except StoreError as e:
            logger.warning(f"Error updating location of user {user_id}: {e}")
            return False

    async def get_user_location(self, user_id: str) -> Optional[UserLocation]:
        try:
            data = await self.store.get(user_location_path(user_id))
        except StoreError as e:
            logger.warning(f"Error getting location of user {user_id}: {e}")
            return None
        if data is None:
            return None
        try:
            return UserLocation.from_dict(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed location of user {user_id}: {e}")
            return None

    def subscribe_user_location(
        self,
        user_id: str,
        callback: Callable[[Optional[UserLocation]], None],
    ) -> Unsubscribe:
        """
        Push every change of a user's location to ``callback``.

        The callback receives None while no location is stored. Returns a
        handle that must be called to stop the subscription.
        """
        def on_snapshot(data: Any) -> None:
            location = None
            if data is not None:
                try:
                    location = UserLocation.from_dict(data)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed location push for user {user_id}: {e}")
            callback(location)

        return self.store.on_value(user_location_path(user_id), on_snapshot)

    # -------------------------------------------------------------------------
    # Order tracking records
    # -------------------------------------------------------------------------

    async def set_tracking(self, order_id: str, record: TrackingRecord) -> bool:
        try:
            await self.store.set(order_location_path(order_id), record.to_dict())
            return True
        except StoreError as e:
            logger.warning(f"Error writing tracking record of order {order_id}: {e}")
            return False

    async def update_tracking(self, order_id: str, fields: Dict[str, Any]) -> bool:
        """Merge already-serialised fields into an order's tracking record."""
        try:
            await self.store.update(order_location_path(order_id), fields)
            return True
        except StoreError as e:
            logger.warning(f"Error updating tracking record of order {order_id}: {e}")
            return False

    async def get_tracking(self, order_id: str) -> Optional[TrackingRecord]:
        try:
            data = await self.store.get(order_location_path(order_id))
        except StoreError as e:
            logger.warning(f"Error reading tracking record of order {order_id}: {e}")
            return None
        if data is None:
            return None
        try:
            return TrackingRecord.from_dict(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed tracking record of order {order_id}: {e}")
            return None

    def subscribe_tracking(
        self,
        order_id: str,
        callback: Callable[[Optional[TrackingRecord]], None],
    ) -> Unsubscribe:
        """
        Push every change of an order's tracking record to ``callback``.

        Each push is the record as last written; a status change and a
        progress change issued concurrently may arrive in either order.
        """
        def on_snapshot(data: Any) -> None:
            record = None
            if data is not None:
                try:
                    record = TrackingRecord.from_dict(data)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed tracking push for order {order_id}: {e}")
            callback(record)

        return self.store.on_value(order_location_path(order_id), on_snapshot)

    async def list_tracking(self) -> Dict[str, TrackingRecord]:
        """All well-formed tracking records keyed by order id."""
        try:
            data = await self.store.get(ORDER_LOCATIONS_ROOT)
        except StoreError as e:
            logger.warning(f"Error listing tracking records: {e}")
            return {}

        records: Dict[str, TrackingRecord] = {}
        for order_id, raw in (data or {}).items():
            try:
                records[order_id] = TrackingRecord.from_dict(raw)
            except ValueError as e:
                logger.warning(f"Skipping malformed tracking record of order {order_id}: {e}")
        return records
