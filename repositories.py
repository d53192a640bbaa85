"""
Collection access for orders and the records they touch.

Order status changes go through ``compare_and_set_status``: one
``find_one_and_update`` that checks the expected current status and writes
the new status together with its timeline entries, so a status change and
its history are never stored apart. Any pymongo failure comes out as
PersistenceError and means nothing was applied.
"""
import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, now_utc, serialize_doc, to_mongo, to_object_id
from errors import ConcurrencyConflict, NotFound, PersistenceError
from order_states import OrderStatus
from schemas import DeliveryDiscount, Order, PersonalShopper, Shop, TimelineEntry, User

logger = logging.getLogger(__name__)

ORDERS = "order"
SHOPS = "shop"
USERS = "user"
SHOPPERS = "personalshopper"
DISCOUNTS = "deliverydiscount"


def rolling_average(average: float, count: int, rating: int) -> float:
    """Fold one more rating into an average of ``count`` ratings, one decimal."""
    value = (Decimal(str(average)) * count + rating) / (count + 1)
    return float(value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


@contextmanager
def _guard(collection: str):
    try:
        yield
    except PyMongoError as exc:
        logger.error("mongo operation on %s failed: %s", collection, exc)
        raise PersistenceError(f"Database operation on '{collection}' failed", collection=collection) from exc


def _id_filter(doc_id: str, kind: str) -> Dict[str, Any]:
    oid = to_object_id(doc_id)
    if oid is None:
        raise NotFound(f"{kind} '{doc_id}' not found", id=doc_id)
    return {"_id": oid}


class Repositories:
    def __init__(self, database: Database):
        self.db = database

    # Orders

    def insert_order(self, order: Order) -> Order:
        with _guard(ORDERS):
            order_id = create_document(ORDERS, order, database=self.db)
        return self.get_order(order_id)

    def get_order(self, order_id: str) -> Order:
        filt = _id_filter(order_id, "Order")
        with _guard(ORDERS):
            doc = self.db[ORDERS].find_one(filt)
        if not doc:
            raise NotFound(f"Order '{order_id}' not found", id=order_id)
        return Order.model_validate(serialize_doc(doc))

    def find_orders(self, filt: dict, sort_field: str = "created_at", skip: int = 0,
                    limit: Optional[int] = None) -> List[Order]:
        with _guard(ORDERS):
            cursor = self.db[ORDERS].find(to_mongo(filt)).sort(sort_field, DESCENDING)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [Order.model_validate(serialize_doc(d)) for d in cursor]

    def count_orders(self, filt: dict) -> int:
        with _guard(ORDERS):
            return self.db[ORDERS].count_documents(to_mongo(filt))

    def compare_and_set_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
        entries: Iterable[TimelineEntry],
        fields: Optional[dict] = None,
        extra_filter: Optional[dict] = None,
    ) -> Order:
        """Move ``order_id`` from ``expected`` to ``new_status`` in one write.

        Raises ConcurrencyConflict when the order is no longer in ``expected``
        (or no longer matches ``extra_filter``) at write time.
        """
        filt = _id_filter(order_id, "Order")
        filt["status"] = expected.value
        if extra_filter:
            filt.update(extra_filter)
        to_set = dict(fields or {})
        to_set["status"] = new_status.value
        to_set["updated_at"] = now_utc()
        update = {
            "$set": to_mongo(to_set),
            "$push": {"timeline": {"$each": [to_mongo(e.model_dump()) for e in entries]}},
        }
        with _guard(ORDERS):
            doc = self.db[ORDERS].find_one_and_update(filt, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            current = self.get_order(order_id)
            raise ConcurrencyConflict(
                f"Order '{order_id}' changed while it was being updated",
                current=current.status.value,
                expected=expected.value,
            )
        return Order.model_validate(serialize_doc(doc))

    def set_order_fields(self, order_id: str, fields: dict, extra_filter: Optional[dict] = None) -> Optional[Order]:
        """Set fields without a status change; None when ``extra_filter`` did not match."""
        filt = _id_filter(order_id, "Order")
        if extra_filter:
            filt.update(extra_filter)
        to_set = dict(fields)
        to_set["updated_at"] = now_utc()
        with _guard(ORDERS):
            doc = self.db[ORDERS].find_one_and_update(
                filt, {"$set": to_mongo(to_set)}, return_document=ReturnDocument.AFTER
            )
        if doc is None:
            return None
        return Order.model_validate(serialize_doc(doc))

    # Shops

    def get_shop(self, shop_id: str) -> Optional[Shop]:
        oid = to_object_id(shop_id)
        if oid is None:
            return None
        with _guard(SHOPS):
            doc = self.db[SHOPS].find_one({"_id": oid})
        return Shop.model_validate(serialize_doc(doc)) if doc else None

    # Customers

    def get_user(self, user_id: str) -> Optional[User]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        with _guard(USERS):
            doc = self.db[USERS].find_one({"_id": oid})
        return User.model_validate(serialize_doc(doc)) if doc else None

    def increment_user(self, user_id: str, **amounts) -> None:
        oid = to_object_id(user_id)
        if oid is None:
            return
        with _guard(USERS):
            self.db[USERS].update_one({"_id": oid}, {"$inc": amounts})

    # Personal shoppers

    def get_shopper(self, shopper_id: str) -> Optional[PersonalShopper]:
        oid = to_object_id(shopper_id)
        if oid is None:
            return None
        with _guard(SHOPPERS):
            doc = self.db[SHOPPERS].find_one({"_id": oid})
        return PersonalShopper.model_validate(serialize_doc(doc)) if doc else None

    def increment_shopper(self, shopper_id: str, **amounts) -> None:
        oid = to_object_id(shopper_id)
        if oid is None:
            return
        with _guard(SHOPPERS):
            self.db[SHOPPERS].update_one({"_id": oid}, {"$inc": amounts})

    def set_shopper_fields(self, shopper_id: str, fields: dict) -> PersonalShopper:
        filt = _id_filter(shopper_id, "Personal shopper")
        with _guard(SHOPPERS):
            doc = self.db[SHOPPERS].find_one_and_update(
                filt, {"$set": to_mongo(fields)}, return_document=ReturnDocument.AFTER
            )
        if doc is None:
            raise NotFound(f"Personal shopper '{shopper_id}' not found", id=shopper_id)
        return PersonalShopper.model_validate(serialize_doc(doc))

    def add_shopper_rating(self, shopper_id: str, rating: int, attempts: int = 2) -> float:
        """Fold ``rating`` into the shopper's average; returns the new average.

        Guarded on the count read, so two ratings landing together cannot
        both count against the same prior average.
        """
        filt = _id_filter(shopper_id, "Personal shopper")
        for _ in range(attempts):
            shopper = self.get_shopper(shopper_id)
            if shopper is None:
                raise NotFound(f"Personal shopper '{shopper_id}' not found", id=shopper_id)
            old = shopper.rating
            new_average = rolling_average(old.average, old.count, rating)
            # a shopper stored without ratings has no count field yet
            seen = old.count if old.count else {"$in": [0, None]}
            with _guard(SHOPPERS):
                result = self.db[SHOPPERS].update_one(
                    dict(filt, **{"rating.count": seen}),
                    {"$set": {"rating.average": new_average, "rating.count": old.count + 1}},
                )
            if result.modified_count:
                return new_average
        raise ConcurrencyConflict(f"Rating for shopper '{shopper_id}' kept changing, retry")

    # Discounts

    def insert_discount(self, discount: DeliveryDiscount) -> DeliveryDiscount:
        with _guard(DISCOUNTS):
            discount_id = create_document(DISCOUNTS, discount, database=self.db)
            doc = self.db[DISCOUNTS].find_one({"_id": to_object_id(discount_id)})
        return DeliveryDiscount.model_validate(serialize_doc(doc))

    def list_discounts(self) -> List[DeliveryDiscount]:
        with _guard(DISCOUNTS):
            cursor = self.db[DISCOUNTS].find({}).sort("created_at", DESCENDING)
            return [DeliveryDiscount.model_validate(serialize_doc(d)) for d in cursor]

    def set_discount_active(self, discount_id: str, is_active: bool) -> DeliveryDiscount:
        filt = _id_filter(discount_id, "Discount")
        with _guard(DISCOUNTS):
            doc = self.db[DISCOUNTS].find_one_and_update(
                filt, {"$set": {"is_active": is_active, "updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFound(f"Discount '{discount_id}' not found", id=discount_id)
        return DeliveryDiscount.model_validate(serialize_doc(doc))

    def candidate_discounts(self, subtotal: float) -> List[DeliveryDiscount]:
        # the date window is checked by find_best_discount
        filt = {"is_active": True, "min_order_value": {"$lte": subtotal}}
        with _guard(DISCOUNTS):
            return [DeliveryDiscount.model_validate(serialize_doc(d)) for d in self.db[DISCOUNTS].find(filt)]

    # Diagnostics

    def collection_names(self) -> List[str]:
        with _guard(self.db.name):
            return sorted(self.db.list_collection_names())
