import pytest

from cartsync.exceptions import LogisticsError, ShipmentNotFoundError
from cartsync.logistics import (
    COURIER_RATES,
    DistanceCalculator,
    FixedDistanceCalculator,
    LogisticsService,
    generate_tracking_number,
    shipping_rate,
)
from cartsync.models import Address, ShipmentStatus

MANILA = Address(street="1 Rizal Ave", city="Manila", province="Metro Manila", postal_code="1000")
CEBU = Address(street="2 Osmena Blvd", city="Cebu City", province="Cebu", postal_code="6000")


class BrokenDistanceCalculator(DistanceCalculator):
    async def distance_km(self, origin, destination):
        raise RuntimeError("geocoder down")


def test_rate_for_five_kilos_over_one_hundred_km():
    rate = shipping_rate("jt_express", COURIER_RATES["jt_express"], 5, 100)

    assert rate.base_rate == 50
    assert rate.weight_rate == 75
    assert rate.distance_rate == 50
    assert rate.total == 175
    assert rate.estimated_days == 2


def test_weight_is_capped_and_distance_rounds_up():
    rate = shipping_rate("lbc", COURIER_RATES["lbc"], 80, 101)

    assert rate.weight_rate == 50 * 20
    assert rate.distance_rate == 55
    assert rate.estimated_days == 3


async def test_quote_returns_one_rate_per_courier(store):
    service = LogisticsService(store, FixedDistanceCalculator(100))

    rates = await service.quote(MANILA, CEBU, 5)

    assert [rate.courier for rate in rates] == [
        "jt_express", "ninja_van", "flash_express", "xde_logistics", "lbc",
    ]
    assert min(rates, key=lambda rate: rate.total).courier == "flash_express"


async def test_quote_wraps_distance_failures(store):
    service = LogisticsService(store, BrokenDistanceCalculator())

    with pytest.raises(LogisticsError, match="Failed to calculate shipping rate"):
        await service.quote(MANILA, CEBU, 5)


def test_tracking_number_format():
    number = generate_tracking_number("ninja_van", now_ms=1712345678901)

    assert number.startswith("NI45678901")
    assert len(number) == 13
    assert number[-3:].isdigit()


async def test_create_and_track_shipment(store):
    service = LogisticsService(store)

    created = await service.create_shipment(MANILA, CEBU, 2.5, "jt_express")
    tracked = await service.track_shipment(created.tracking_number)

    assert created.tracking_number.startswith("JT")
    assert tracked.status == ShipmentStatus.PENDING
    assert tracked.current_location == "Manila"
    assert tracked.history[0].description == "Shipment created"
    assert tracked.estimated_delivery > tracked.history[0].timestamp


async def test_unknown_courier_is_rejected(store):
    with pytest.raises(LogisticsError):
        await LogisticsService(store).create_shipment(MANILA, CEBU, 1, "pigeon_post")

    assert store.paths("shipments/") == []


async def test_tracking_unknown_shipment(store):
    with pytest.raises(ShipmentNotFoundError):
        await LogisticsService(store).track_shipment("JT0000000000")
