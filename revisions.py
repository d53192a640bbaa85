"""
Item revision overlay.

A revision never rewrites an item's original price or quantity. It fills
in ``is_available`` / ``revised_quantity`` / ``revised_price`` next to
them, so the order as placed can always be rebuilt.
"""
from dataclasses import dataclass
from typing import Iterable, List, Tuple

from errors import InvalidRevision
from schemas import OrderItem, RevisedItemIn


_NO_OVERLAY = {"is_available": None, "revised_quantity": None, "revised_price": None, "revision_notes": None}


@dataclass(frozen=True)
class PricedLine:
    price: float
    quantity: int


def clear_revision(items: Iterable[OrderItem]) -> List[OrderItem]:
    """Drop any revision overlay, leaving the items as originally placed."""
    return [item.model_copy(update=_NO_OVERLAY) for item in items]


def apply_revision(items: List[OrderItem], revisions: Iterable[RevisedItemIn]) -> Tuple[List[OrderItem], List[PricedLine]]:
    """Return the overlaid items and the lines that still count toward the subtotal.

    Items the shopper did not mention are taken as available at their
    original price and quantity; any overlay from an earlier round is
    cleared for them.
    """
    revisions = list(revisions)
    if not revisions:
        raise InvalidRevision("A revision must list at least one item")

    by_id = {}
    known = {item.item_id for item in items}
    for rev in revisions:
        if rev.item_id not in known:
            raise InvalidRevision(f"Item '{rev.item_id}' is not part of this order", item_id=rev.item_id)
        if rev.item_id in by_id:
            raise InvalidRevision(f"Item '{rev.item_id}' is listed twice", item_id=rev.item_id)
        by_id[rev.item_id] = rev

    revised_items = []
    lines = []
    for item in items:
        rev = by_id.get(item.item_id)
        if rev is None:
            revised_items.append(item.model_copy(update=_NO_OVERLAY))
            lines.append(PricedLine(item.price, item.quantity))
            continue

        if not rev.is_available:
            revised_items.append(item.model_copy(update={
                "is_available": False, "revised_quantity": 0, "revised_price": None, "revision_notes": rev.notes,
            }))
            continue

        quantity = item.quantity if rev.revised_quantity is None else rev.revised_quantity
        if quantity < 1:
            raise InvalidRevision(
                f"Item '{item.name}' is marked available with quantity {quantity}; mark it unavailable instead",
                item_id=item.item_id,
            )
        price = item.price if rev.revised_price is None else rev.revised_price
        if price < 0:
            raise InvalidRevision(f"Item '{item.name}' has a negative price", item_id=item.item_id)

        revised_items.append(item.model_copy(update={
            "is_available": True, "revised_quantity": quantity, "revised_price": price, "revision_notes": rev.notes,
        }))
        lines.append(PricedLine(price, quantity))

    return revised_items, lines
