"""
Delivery-fee discounts.

``find_best_discount`` is pure: it picks, among the discounts handed to it,
the one that takes the most off the fee right now. The Mongo query in
``repositories.Repositories.candidate_discounts`` only narrows the list.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from schemas import DeliveryDiscount


@dataclass
class DiscountResult:
    final_fee: float
    original_fee: float
    discount_amount: float
    discount_applied: Optional[DeliveryDiscount] = None

    def to_dict(self) -> dict:
        applied = None
        if self.discount_applied is not None:
            applied = self.discount_applied.model_dump(include={"id", "name", "discount_type", "discount_value"})
        return {
            "final_fee": self.final_fee,
            "original_fee": self.original_fee,
            "discount_amount": self.discount_amount,
            "discount_applied": applied,
        }


def _aware(dt: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_applicable(discount: DeliveryDiscount, subtotal: float, shop_id: Optional[str], now: datetime) -> bool:
    if not discount.is_active:
        return False
    if not (_aware(discount.start_date) <= _aware(now) <= _aware(discount.end_date)):
        return False
    if subtotal < discount.min_order_value:
        return False
    return discount.shop_id is None or discount.shop_id == shop_id


def reduction(discount: DeliveryDiscount, original_fee: float) -> float:
    if discount.discount_type == "free":
        amount = original_fee
    elif discount.discount_type == "fixed":
        amount = discount.discount_value
    else:
        amount = original_fee * discount.discount_value / 100
    return round(max(0.0, min(amount, original_fee)), 2)


def find_best_discount(
    discounts: Iterable[DeliveryDiscount],
    original_fee: float,
    subtotal: float,
    shop_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DiscountResult:
    now = now or datetime.now(timezone.utc)
    best = None
    best_amount = 0.0
    for discount in discounts:
        if not is_applicable(discount, subtotal, shop_id, now):
            continue
        amount = reduction(discount, original_fee)
        if amount > best_amount:
            best, best_amount = discount, amount
    return DiscountResult(
        final_fee=round(original_fee - best_amount, 2),
        original_fee=original_fee,
        discount_amount=best_amount,
        discount_applied=best,
    )
