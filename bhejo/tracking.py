# bhejo-tracking/bhejo/tracking.py
"""
Order Tracking Coordinator for the Bhejo delivery marketplace.

This module owns the live-tracking projection of an order:
- Initialization (resolve both addresses, build a mock route, seed the record)
- Manual advancement of status and progress
- Attaching a partner and their last known position
- A self-driving simulation loop for demos

The simulation is tick-based, like a discrete-event simulation with a wall
clock: every tick sleeps ``tick_interval / speed_factor`` seconds and adds
``speed_factor`` percent of progress. Status flips to in-transit once progress
passes the threshold and to delivered at 100, which also ends the loop.

Every simulation runs as an asyncio task owned by the coordinator. Leaving
``async with TrackingCoordinator(...)`` cancels whatever is still running, so
no loop keeps writing after its owner is gone.

All store failures are logged, counted and turned into ``False``; nothing
here raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Set

from . import config, utils
from .geocoding import AddressResolver, get_default_resolver
from .lifecycle import can_advance
from .location_store import LocationStore
from .models import Coordinates, OrderStatus, Resolution, TrackingRecord

logger = logging.getLogger(__name__)


class SimulationHandle:
    """
    Cancellation handle of one running simulation.

    ``stop()`` cancels the loop and is safe to call more than once. The handle
    is also an async context manager that stops the loop on exit.

    Attributes:
        order_id: Order being simulated
        speed_factor: Multiplier applied to both tick rate and step size
    """

    def __init__(self, order_id: str, speed_factor: float, task: "asyncio.Task[bool]") -> None:
        self.order_id = order_id
        self.speed_factor = speed_factor
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def stop(self) -> None:
        if not self._task.done():
            logger.debug(f"Stopping simulation of order {self.order_id}")
            self._task.cancel()

    async def wait(self) -> bool:
        """
        Wait for the loop to end.

        Returns:
            True if the order reached delivered, False if the loop was stopped
            or could not run
        """
        await asyncio.wait([self._task])
        if self._task.cancelled():
            return False
        return self._task.result()

    async def __aenter__(self) -> "SimulationHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
        await self.wait()

    def __repr__(self) -> str:
        state = "done" if self.done else "running"
        return f"SimulationHandle({self.order_id}, x{self.speed_factor}, {state})"


class TrackingCoordinator:
    """
    Initializes, advances and simulates order tracking records.

    Attributes:
        location_store: Adapter over the realtime store
        resolver: Address resolver used at initialization
        tick_interval: Nominal seconds between simulation ticks at speed 1
    """

    def __init__(
        self,
        location_store: LocationStore,
        resolver: Optional[AddressResolver] = None,
        tick_interval: Optional[float] = None,
    ) -> None:
        self.location_store = location_store
        self.resolver = resolver or get_default_resolver()
        self.tick_interval = config.SIMULATION_TICK_SECONDS if tick_interval is None else tick_interval

        self._simulations: Dict[str, SimulationHandle] = {}
        self._tasks: Set["asyncio.Task[bool]"] = set()
        self._stats: Dict[str, int] = {
            "initialized": 0,
            "advanced": 0,
            "rejected": 0,
            "failures": 0,
            "simulations_started": 0,
            "simulations_completed": 0,
            "simulations_cancelled": 0,
        }

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize_tracking(
        self,
        order_id: str,
        pickup_address: str,
        delivery_address: str,
        overwrite: bool = False,
        pickup_coords: Optional[Coordinates] = None,
        delivery_coords: Optional[Coordinates] = None,
    ) -> bool:
        """
        Create the tracking record of a new order.

        Both addresses are resolved one after the other, an 8-point mock route
        is built between them, and the record is written with progress 0,
        status pending and the current position at the pickup point.

        An order that already has a record is left untouched (and reported as
        success) unless ``overwrite`` is set.

        Args:
            order_id: Order identifier shared with the order document
            pickup_address: Free-text pickup address
            delivery_address: Free-text delivery address
            overwrite: Replace an existing record instead of keeping it
            pickup_coords, delivery_coords: Already resolved endpoints; an
                address is only resolved when its coordinates are not given

        Returns:
            True if a record exists afterwards, False on resolution or write failure
        """
        if not overwrite and await self.location_store.get_tracking(order_id) is not None:
            logger.info(f"Tracking for order {order_id} already initialized, keeping it")
            return True

        pickup = await self._resolve(pickup_address, pickup_coords)
        if not pickup.ok:
            return self._fail(f"Could not resolve pickup address of order {order_id}: {pickup.error}")
        delivery = await self._resolve(delivery_address, delivery_coords)
        if not delivery.ok:
            return self._fail(f"Could not resolve delivery address of order {order_id}: {delivery.error}")

        route = utils.mock_route(
            pickup.coords[0], pickup.coords[1],
            delivery.coords[0], delivery.coords[1],
            num_points=config.ROUTE_WAYPOINTS,
        )
        record = TrackingRecord(
            pickup_coords=pickup.coords,
            delivery_coords=delivery.coords,
            route=route,
            current_position=pickup.coords,
            status=OrderStatus.PENDING,
            progress=0.0,
            last_updated=utils.utc_now_iso(),
        )
        if not await self.location_store.set_tracking(order_id, record):
            return self._fail(f"Could not write tracking record of order {order_id}")

        self._stats["initialized"] += 1
        logger.info(
            f"Tracking initialized for order {order_id} "
            f"({utils.distance_between(pickup.coords, delivery.coords):.2f} km, {len(route)} waypoints)"
        )
        return True

    async def _resolve(self, address: str, known: Optional[Coordinates]) -> Resolution:
        if known is not None:
            return Resolution.found(address, known)
        return await self.resolver.resolve(address)

    # -------------------------------------------------------------------------
    # Advancement
    # -------------------------------------------------------------------------

    async def advance(self, order_id: str, status: OrderStatus, progress: float) -> bool:
        """
        Move an order's tracking record to a new status and progress.

        The current position is picked from the route: the pickup point at 0,
        the delivery point at 100, otherwise the waypoint at
        floor(progress / 100 * (len(route) - 1)).

        Args:
            order_id: Order identifier
            status: New tracking status; must not be behind the current one
            progress: Completion percentage, 0-100

        Returns:
            True if written; False if there is no record, the update would move
            the status backwards, progress is out of range, or the write failed
        """
        if not 0 <= progress <= 100:
            self._stats["rejected"] += 1
            logger.warning(f"Rejected progress {progress} for order {order_id}: must be within 0-100")
            return False

        record = await self.location_store.get_tracking(order_id)
        if record is None:
            logger.debug(f"No tracking record for order {order_id}, nothing to advance")
            return False

        if not can_advance(record.status, status):
            self._stats["rejected"] += 1
            logger.warning(
                f"Rejected tracking regression of order {order_id}: "
                f"{record.status.value} -> {status.value}"
            )
            return False

        position = utils.position_for_progress(
            record.route, progress, record.pickup_coords, record.delivery_coords
        )
        fields = {
            "status": status.value,
            "progress": progress,
            "current_position": list(position),
            "last_updated": utils.utc_now_iso(),
        }
        if not await self.location_store.update_tracking(order_id, fields):
            return self._fail(f"Could not advance tracking of order {order_id}")

        self._stats["advanced"] += 1
        logger.debug(f"Order {order_id}: {status.value} at {progress:.0f}%")
        return True

    async def mirror_status(self, order_id: str, status: OrderStatus) -> bool:
        """
        Copy an order status change onto the tracking record, keeping its progress.

        Delivered always lands at 100%. Best effort: the order document stays
        authoritative whatever this returns.
        """
        record = await self.location_store.get_tracking(order_id)
        if record is None:
            return False
        if record.status is status:
            return True
        progress = 100.0 if status is OrderStatus.DELIVERED else record.progress
        return await self.advance(order_id, status, progress)

    # -------------------------------------------------------------------------
    # Partner
    # -------------------------------------------------------------------------

    async def partner_start_tracking(self, order_id: str, partner_id: str) -> bool:
        """
        Attach a partner and their last known position to an order's tracking.

        Sets the tracking status to assigned unless it is already further along.

        Returns:
            False if the partner has no stored location, the order has no
            tracking record, or the write failed
        """
        location = await self.location_store.get_user_location(partner_id)
        if location is None:
            return self._fail(f"Partner {partner_id} location not found, cannot start tracking {order_id}")

        record = await self.location_store.get_tracking(order_id)
        if record is None:
            return self._fail(f"No tracking record for order {order_id}")

        fields = {
            "partner_id": partner_id,
            "partner_position": list(location.position),
            "last_updated": utils.utc_now_iso(),
        }
        if can_advance(record.status, OrderStatus.ASSIGNED):
            fields["status"] = OrderStatus.ASSIGNED.value

        if not await self.location_store.update_tracking(order_id, fields):
            return self._fail(f"Could not attach partner {partner_id} to order {order_id}")
        logger.info(f"Partner {partner_id} started tracking order {order_id}")
        return True

    async def get_partner_active_tracking(self, partner_id: str) -> Dict[str, TrackingRecord]:
        """Tracking records carrying this partner that are not delivered yet."""
        records = await self.location_store.list_tracking()
        return {
            order_id: record
            for order_id, record in records.items()
            if record.partner_id == partner_id and record.status is not OrderStatus.DELIVERED
        }

    # -------------------------------------------------------------------------
    # Simulation
    # -------------------------------------------------------------------------

    def run_simulation(self, order_id: str, speed_factor: float = 1.0) -> SimulationHandle:
        """
        Start the self-driving progress loop for an order.

        Must be called from a running event loop. Starting a simulation for an
        order that already has one running stops the old one first.

        Args:
            order_id: Order to simulate; it needs a tracking record
            speed_factor: > 0; divides the tick period and multiplies the step

        Returns:
            Handle to stop or await the loop

        Raises:
            ValueError: If speed_factor is not positive
        """
        if speed_factor <= 0:
            raise ValueError(f"speed_factor must be positive, got {speed_factor}")

        previous = self._simulations.get(order_id)
        if previous is not None:
            previous.stop()

        task = asyncio.get_running_loop().create_task(
            self._simulate(order_id, speed_factor), name=f"simulate-{order_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        handle = SimulationHandle(order_id, speed_factor, task)
        self._simulations[order_id] = handle
        self._stats["simulations_started"] += 1
        logger.info(f"Simulation started for order {order_id} at x{speed_factor}")
        return handle

    async def _simulate(self, order_id: str, speed_factor: float) -> bool:
        record = await self.location_store.get_tracking(order_id)
        if record is None:
            return self._fail(f"No tracking record for order {order_id}, simulation not started")

        period = self.tick_interval / speed_factor
        step = config.SIMULATION_PROGRESS_PER_TICK * speed_factor
        progress = record.progress
        status = record.status
        failed_writes = 0

        try:
            # Local state only runs ahead of the stored record by one tick, so
            # the loop ends once a delivered write has actually landed.
            while status is not OrderStatus.DELIVERED:
                await asyncio.sleep(period)

                progress += step
                if progress >= 100:
                    progress = 100.0
                    status = OrderStatus.DELIVERED
                elif progress > config.IN_TRANSIT_PROGRESS_THRESHOLD and can_advance(status, OrderStatus.IN_TRANSIT):
                    status = OrderStatus.IN_TRANSIT

                if await self.advance(order_id, status, progress):
                    failed_writes = 0
                    continue

                current = await self.location_store.get_tracking(order_id)
                if current is None:
                    logger.info(f"Tracking record of order {order_id} is gone, simulation ended")
                    return False
                if current.status is OrderStatus.DELIVERED:
                    logger.info(f"Simulation of order {order_id} ended early, already delivered")
                    return True

                failed_writes += 1
                if failed_writes >= config.SIMULATION_MAX_FAILED_WRITES:
                    return self._fail(
                        f"Simulation of order {order_id} gave up after {failed_writes} failed writes"
                    )
                # Retry from what is actually stored
                progress = current.progress
                status = current.status

            self._stats["simulations_completed"] += 1
            logger.info(f"Simulation of order {order_id} delivered")
            return True
        except asyncio.CancelledError:
            self._stats["simulations_cancelled"] += 1
            logger.info(f"Simulation of order {order_id} cancelled at {progress:.0f}%")
            raise
        finally:
            handle = self._simulations.get(order_id)
            if handle is not None and handle._task is asyncio.current_task():
                del self._simulations[order_id]

    def active_simulations(self) -> List[str]:
        """Order ids with a simulation still running."""
        return [order_id for order_id, handle in self._simulations.items() if not handle.done]

    async def stop_all(self) -> None:
        """Cancel every running simulation and wait for them to finish."""
        handles = list(self._simulations.values())
        for handle in handles:
            handle.stop()
        for handle in handles:
            await handle.wait()
        self._simulations.clear()

    async def __aenter__(self) -> "TrackingCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop_all()

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def _fail(self, message: str) -> bool:
        self._stats["failures"] += 1
        logger.warning(message)
        return False

    def get_tracking_stats(self) -> Dict[str, int]:
        """
        Counters of what the coordinator has done so far.

        Returns:
            Dictionary with initialized/advanced/rejected/failure counts and
            simulation start/completion/cancellation counts
        """
        stats = dict(self._stats)
        stats["simulations_running"] = len(self.active_simulations())
        return stats
