import random
from datetime import datetime, timezone

import pytest

from bhejo.documents import InMemoryDocumentStore
from bhejo.geocoding import AddressResolver
from bhejo.location_store import LocationStore
from bhejo.models import Actor, Order, OrderStatus, PackageSize, UserRole
from bhejo.orders import OrderRequest, OrderService
from bhejo.pricing import quote
from bhejo.realtime import InMemoryRealtimeStore, StoreError
from bhejo.tracking import TrackingCoordinator

NOW = datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc)  # a Wednesday


class FailingRealtimeStore(InMemoryRealtimeStore):
    """Realtime store whose writes always fail."""

    async def set(self, path, value):
        raise StoreError("write refused")

    async def update(self, path, values):
        raise StoreError("write refused")


class FlakyRealtimeStore(InMemoryRealtimeStore):
    """Realtime store that refuses the next `times` updates matching `refuse`."""

    def __init__(self, refuse, times=1):
        super().__init__()
        self.refuse = refuse
        self.times = times
        self.refused = 0

    async def update(self, path, values):
        if self.refused < self.times and self.refuse(values):
            self.refused += 1
            raise StoreError("write refused")
        await super().update(path, values)


@pytest.fixture
def resolver():
    return AddressResolver(delay_seconds=0, rng=random.Random(42))


@pytest.fixture
def realtime():
    return InMemoryRealtimeStore()


@pytest.fixture
def location_store(realtime):
    return LocationStore(realtime)


@pytest.fixture
def tracking(location_store, resolver):
    return TrackingCoordinator(location_store, resolver, tick_interval=0)


@pytest.fixture
def documents():
    return InMemoryDocumentStore()


@pytest.fixture
def service(documents, tracking):
    return OrderService(documents, tracking, clock=lambda: NOW, rng=random.Random(7))


@pytest.fixture
def customer():
    return Actor("cust-1", UserRole.CUSTOMER)


@pytest.fixture
def partner():
    return Actor("partner-1", UserRole.PARTNER)


@pytest.fixture
def other_partner():
    return Actor("partner-2", UserRole.PARTNER)


@pytest.fixture
def order_request():
    def build(**overrides):
        fields = dict(
            pickup_address="12 MG Road, Bangalore",
            delivery_address="80 Feet Road, Indiranagar, Bangalore",
            package_description="Books",
            recipient_name="Ravi",
            recipient_phone="98765 43210",
            package_size=PackageSize.SMALL,
            package_weight=2.0,
        )
        fields.update(overrides)
        return OrderRequest(**fields)

    return build


@pytest.fixture
def make_order():
    """Build an Order in memory without going through the service."""
    def build(**overrides):
        fields = dict(
            order_id="order-1",
            customer_id="cust-1",
            pickup_address="MG Road, Bangalore",
            delivery_address="Indiranagar, Bangalore",
            package_size=PackageSize.SMALL,
            package_weight=1.0,
            package_description="Keys",
            recipient_name="Ravi",
            recipient_phone="9876543210",
            price=quote(PackageSize.SMALL, 1.0, 4.0),
            pickup_coords=(12.97, 77.59),
            delivery_coords=(12.98, 77.64),
            status=OrderStatus.PENDING,
            created_at=NOW,
            updated_at=NOW,
        )
        fields.update(overrides)
        return Order(**fields)

    return build
