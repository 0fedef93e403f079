"""
Shipping rate quotes and shipment tracking.
"""
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from cartsync.document_store import DocumentStore
from cartsync.exceptions import DocumentStoreError, LogisticsError, ShipmentNotFoundError
from cartsync.models import (
    Address,
    ShipmentStatus,
    ShippingRate,
    TrackingHistory,
    TrackingInfo,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CourierRate:
    base_rate: float
    per_kg: float
    max_weight: float


# Base rates for the supported couriers (PHP)
COURIER_RATES: Dict[str, CourierRate] = {
    "jt_express": CourierRate(base_rate=50, per_kg=15, max_weight=50),
    "ninja_van": CourierRate(base_rate=60, per_kg=18, max_weight=50),
    "flash_express": CourierRate(base_rate=45, per_kg=12, max_weight=50),
    "xde_logistics": CourierRate(base_rate=55, per_kg=16, max_weight=50),
    "lbc": CourierRate(base_rate=65, per_kg=20, max_weight=50),
}

DEFAULT_DELIVERY_DAYS = 3


def shipping_rate(courier: str, rate: CourierRate, weight_kg: float, distance_km: float) -> ShippingRate:
    weight_rate = min(weight_kg, rate.max_weight) * rate.per_kg
    # 5 per started 10 km
    distance_rate = math.ceil(distance_km / 10) * 5
    return ShippingRate(
        courier=courier,
        base_rate=rate.base_rate,
        weight_rate=weight_rate,
        distance_rate=distance_rate,
        total=rate.base_rate + weight_rate + distance_rate,
        # 1 day per 100 km plus 1 day buffer
        estimated_days=math.ceil(distance_km / 100) + 1,
    )


def shipment_path(tracking_number: str) -> str:
    return f"shipments/{tracking_number}"


class DistanceCalculator(ABC):
    @abstractmethod
    async def distance_km(self, origin: Address, destination: Address) -> float:
        ...


class FixedDistanceCalculator(DistanceCalculator):
    """Stand-in for a geodistance service: every route has the same length"""

    def __init__(self, distance: float = 100.0):
        self.distance = distance

    async def distance_km(self, origin: Address, destination: Address) -> float:
        return self.distance


def generate_tracking_number(courier: str, now_ms: Optional[int] = None) -> str:
    prefix = courier.upper()[:2]
    timestamp = str(now_ms if now_ms is not None else int(time.time() * 1000))[-8:]
    suffix = str(random.randint(0, 999)).zfill(3)
    return f"{prefix}{timestamp}{suffix}"


class LogisticsService:
    def __init__(
        self,
        store: DocumentStore,
        distance_calculator: Optional[DistanceCalculator] = None,
        courier_rates: Optional[Dict[str, CourierRate]] = None
    ):
        self.store = store
        self.distance_calculator = distance_calculator or FixedDistanceCalculator()
        self.courier_rates = courier_rates or COURIER_RATES

    async def quote(self, origin: Address, destination: Address, weight_kg: float) -> List[ShippingRate]:
        """One rate per courier"""
        try:
            distance = await self.distance_calculator.distance_km(origin, destination)
        except Exception as e:
            logger.error(f"Error calculating shipping rate: {e}")
            raise LogisticsError("Failed to calculate shipping rate") from e
        return [
            shipping_rate(courier, rate, weight_kg, distance)
            for courier, rate in self.courier_rates.items()
        ]

    async def create_shipment(
        self,
        origin: Address,
        destination: Address,
        weight_kg: float,
        courier: str
    ) -> TrackingInfo:
        if courier not in self.courier_rates:
            raise LogisticsError(f"Unknown courier: {courier}")

        now = utcnow()
        tracking = TrackingInfo(
            tracking_number=generate_tracking_number(courier),
            status=ShipmentStatus.PENDING,
            current_location=origin.city,
            estimated_delivery=now + timedelta(days=DEFAULT_DELIVERY_DAYS),
            history=[TrackingHistory(
                timestamp=now,
                status=ShipmentStatus.PENDING,
                location=origin.city,
                description="Shipment created",
            )],
        )
        document = {
            **tracking.model_dump(mode="json"),
            "origin": origin.model_dump(),
            "destination": destination.model_dump(),
            "weight": weight_kg,
            "courier": courier,
            "created_at": now.isoformat(),
        }
        try:
            await self.store.set(shipment_path(tracking.tracking_number), document)
        except DocumentStoreError as e:
            logger.error(f"Error creating shipment: {e}")
            raise LogisticsError("Failed to create shipment") from e

        logger.info(f"Shipment {tracking.tracking_number} created with {courier}")
        return tracking

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        try:
            data = await self.store.get(shipment_path(tracking_number))
        except DocumentStoreError as e:
            logger.error(f"Error tracking shipment: {e}")
            raise LogisticsError("Failed to track shipment") from e
        if data is None:
            raise ShipmentNotFoundError(tracking_number)
        try:
            return TrackingInfo.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Invalid shipment document {tracking_number}: {e}")
            raise LogisticsError("Failed to track shipment") from e
