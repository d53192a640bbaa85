"""
Order pricing.

Pure and synchronous: nothing in here touches the database. Callers load
the shop first and pass it in; a missing shop or a shop without
coordinates is a PricingUnavailable, never a zero-cost order.
"""
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from config import Settings
from errors import PricingUnavailable
from schemas import Coordinates, DeliveryAddress, OrderValue, Shop

EARTH_RADIUS_METERS = 6371000

_DEFAULT_SETTINGS = Settings()


class PricingBreakdown(OrderValue):
    distance_meters: int = 0
    distance_km: float = 0
    delivery_mode: str = "fixed"
    segments: int = 0
    shopper_earning: float = 0

    def order_value(self) -> OrderValue:
        """The stored part of the breakdown."""
        return OrderValue(**self.model_dump(include=set(OrderValue.model_fields)))

    def audit_details(self) -> dict:
        return self.model_dump()


def haversine_meters(a: Coordinates, b: Coordinates) -> float:
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_fee(distance_meters: float, fee_per_segment: float, segment_meters: float = 500) -> Tuple[float, int]:
    """Charge ``fee_per_segment`` for every started segment of the trip."""
    if distance_meters < 0:
        raise ValueError("distance cannot be negative")
    segments = math.ceil(distance_meters / segment_meters)
    return round(segments * fee_per_segment, 2), segments


def flat_tax(subtotal: float, rate_percent: float) -> int:
    amount = Decimal(str(subtotal)) * Decimal(str(rate_percent)) / Decimal(100)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def items_subtotal(items: Iterable) -> float:
    return round(sum(item.price * item.quantity for item in items), 2)


def price_order(
    items: Iterable,
    shop: Optional[Shop],
    address: DeliveryAddress,
    settings: Optional[Settings] = None,
) -> PricingBreakdown:
    """Price ``items`` (anything with ``price`` and ``quantity``) for delivery
    from ``shop`` to ``address``.

    Unavailable items must already be filtered out by the caller.
    """
    settings = settings or _DEFAULT_SETTINGS
    if shop is None:
        raise PricingUnavailable("Shop not found, cannot price the order")
    if shop.coordinates is None:
        raise PricingUnavailable("Shop has no coordinates, cannot price the order", shop_id=shop.id)
    if address is None or address.coordinates is None:
        raise PricingUnavailable("Delivery address has no coordinates")

    subtotal = items_subtotal(items)
    distance = haversine_meters(shop.coordinates, address.coordinates)

    if shop.delivery_fee_mode == "distance":
        per_segment = shop.fee_per_segment
        if per_segment is None:
            per_segment = settings.default_fee_per_segment
        delivery_fee, segments = distance_fee(distance, per_segment, settings.segment_meters)
    else:
        delivery_fee = shop.delivery_fee if shop.delivery_fee is not None else settings.default_fixed_delivery_fee
        delivery_fee = round(delivery_fee, 2)
        segments = 0

    taxes = flat_tax(subtotal, settings.tax_rate_percent)
    total = round(subtotal + taxes + delivery_fee, 2)

    return PricingBreakdown(
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        service_fee=0,
        taxes=taxes,
        discount=0,
        total=total,
        distance_meters=round(distance),
        distance_km=round(distance / 1000, 1),
        delivery_mode=shop.delivery_fee_mode,
        segments=segments,
        shopper_earning=delivery_fee,
    )
