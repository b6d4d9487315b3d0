import asyncio
import random

from bhejo import config
from bhejo.geocoding import AddressResolver, locate_device


def resolve(resolver, address):
    return asyncio.run(resolver.resolve(address))


def within(coords, centre, radius_km):
    return (
        abs(coords[0] - centre[0]) <= radius_km / 111
        and abs(coords[1] - centre[1]) <= radius_km / 50
    )


def test_known_city_resolves_near_its_centroid(resolver):
    result = resolve(resolver, "221 Brigade Road, Bangalore 560025")

    assert result.ok
    assert result.matched_city == "Bangalore"
    assert within(result.coords, config.CITY_CENTROIDS["Bangalore"], config.GEOCODE_JITTER_KM)


def test_city_match_is_case_insensitive(resolver):
    assert resolve(resolver, "bandra west, MUMBAI").matched_city == "Mumbai"


def test_first_city_in_table_order_wins(resolver):
    assert resolver.match_city("Mumbai office, Delhi branch") == "Delhi"


def test_unknown_address_still_resolves_around_default(resolver):
    result = resolve(resolver, "asdfgh qwerty")

    assert result.ok
    assert result.error is None
    assert result.matched_city is None
    assert within(result.coords, config.DEFAULT_CENTROID, config.GEOCODE_JITTER_KM)


def test_empty_address_uses_default_centroid(resolver):
    assert resolver.centroid_for("") == config.DEFAULT_CENTROID


def test_two_lookups_of_the_same_address_are_scattered():
    resolver = AddressResolver(delay_seconds=0, rng=random.Random(9))
    first = resolve(resolver, "Pune")
    second = resolve(resolver, "Pune")
    assert first.coords != second.coords


def test_custom_city_table():
    resolver = AddressResolver(centroids={"Goa": (15.2993, 74.1240)}, delay_seconds=0, jitter_km=0)
    result = resolve(resolver, "Calangute, Goa")
    assert result.coords == (15.2993, 74.1240)


def test_resolve_waits_for_the_artificial_delay():
    resolver = AddressResolver(delay_seconds=0.05)

    async def timed():
        loop = asyncio.get_running_loop()
        started = loop.time()
        await resolver.resolve("Chennai")
        return loop.time() - started

    assert asyncio.run(timed()) >= 0.04


def test_locate_device_uses_provider():
    assert locate_device(lambda: (19.1, 72.9)) == (19.1, 72.9)


def test_locate_device_falls_back_without_provider():
    assert locate_device(None) == config.DEFAULT_CENTROID


def test_locate_device_falls_back_when_provider_fails():
    def denied():
        raise PermissionError("User denied geolocation")

    assert locate_device(denied) == config.DEFAULT_CENTROID
