"""
Order lifecycle service.

Every status change follows the same path: authorize the actor, check the
transition table, work out the fields the new status brings with it, then
write status + fields + timeline in one conditional update. Notifications
are built from the stored result and handed to the publisher last; a
publisher failure is logged and never undoes the change.
"""
import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError

import notifications as notify
from config import Settings
from database import now_utc
from discounts import find_best_discount
from errors import (
    AccessDenied,
    AlreadyRated,
    BelowMinimum,
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ShopUnavailable,
    ValidationError,
)
from notifications import Notification
from order_states import (
    ACTIVE_STATUSES,
    TERMINAL_STATES,
    Actor,
    ActorRole,
    OrderStatus,
    can_be_cancelled,
    ensure_role_for,
    ensure_transition,
    parse_status,
)
from pricing import price_order
from repositories import Repositories
from revisions import apply_revision, clear_revision
from schemas import (
    DeliveryAddress,
    Order,
    OrderItem,
    OrderItemIn,
    PaymentInfo,
    RevisedItemIn,
    Shop,
    TimelineEntry,
)

logger = logging.getLogger(__name__)

S = OrderStatus

PAYMENT_REQUEST_STATUSES = frozenset({S.FINAL_SHOPPING, S.BILL_APPROVED, S.OUT_FOR_DELIVERY})


def generate_order_number(now: datetime) -> str:
    return f"DW{now:%y%m%d%H%M%S}{secrets.randbelow(10000):04d}"


def generate_otp() -> str:
    return str(1000 + secrets.randbelow(9000))


def _coerce(model, value, field: str):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {field}: {exc.errors()[0]['msg']}", field=field) from exc


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class OrderService:
    """Drives orders through their lifecycle on behalf of customers,
    personal shoppers and admin."""

    def __init__(
        self,
        repos: Repositories,
        publish: Optional[Callable[[List[Notification]], None]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = now_utc,
        otp_factory: Callable[[], str] = generate_otp,
    ):
        self.repos = repos
        self._publish = publish
        self.settings = settings or Settings()
        self.clock = clock
        self.otp_factory = otp_factory

    # Fan-out

    def _fan_out(self, notes: List[Notification]) -> None:
        if not notes or self._publish is None:
            return
        try:
            self._publish(notes)
        except Exception as exc:
            logger.warning("could not hand %d notification(s) to the publisher: %s", len(notes), exc)

    # Placing and pricing

    def _active_shop(self, shop_id: str) -> Shop:
        shop = self.repos.get_shop(shop_id)
        if shop is None:
            raise ShopUnavailable(f"Shop '{shop_id}' not found", shop_id=shop_id)
        if not shop.is_active:
            raise ShopUnavailable(f"Shop '{shop.name}' is not taking orders", shop_id=shop_id)
        return shop

    def quote(self, shop_id: str, items: Iterable, delivery_address) -> dict:
        """Price a prospective order and preview the best delivery discount."""
        lines = [_coerce(OrderItemIn, item, "items") for item in items]
        if not lines:
            raise ValidationError("At least one item is required", field="items")
        address = _coerce(DeliveryAddress, delivery_address, "delivery_address")
        shop = self._active_shop(shop_id)
        pricing = price_order(lines, shop, address, self.settings)
        best = find_best_discount(
            self.repos.candidate_discounts(pricing.subtotal),
            pricing.delivery_fee,
            pricing.subtotal,
            shop_id=shop.id,
            now=self.clock(),
        )
        return {"pricing": pricing.model_dump(), "delivery_discount": best.to_dict()}

    def place_order(
        self,
        customer_id: str,
        shop_id: str,
        items: Iterable,
        delivery_address,
        special_instructions: Optional[str] = None,
        payment_method: str = "cash",
    ) -> Order:
        if not customer_id:
            raise ValidationError("customer_id is required", field="customer_id")
        if not shop_id:
            raise ValidationError("shop_id is required", field="shop_id")
        lines = [_coerce(OrderItemIn, item, "items") for item in (items or [])]
        if not lines:
            raise ValidationError("At least one item is required", field="items")
        address = _coerce(DeliveryAddress, delivery_address, "delivery_address")
        payment = _coerce(PaymentInfo, {"method": payment_method}, "payment_method")

        shop = self._active_shop(shop_id)
        subtotal = round(sum(line.price * line.quantity for line in lines), 2)
        if subtotal < shop.min_order_value:
            raise BelowMinimum(subtotal, shop.min_order_value)

        customer = self.repos.get_user(customer_id)
        if customer is not None:
            address = address.model_copy(update={
                "contact_name": address.contact_name or customer.name,
                "contact_phone": address.contact_phone or customer.phone,
            })

        pricing = price_order(lines, shop, address, self.settings)
        now = self.clock()
        order = Order(
            order_number=generate_order_number(now),
            customer_id=customer_id,
            shop_id=shop_id,
            items=[OrderItem(item_id=str(ObjectId()), **line.model_dump()) for line in lines],
            order_value=pricing.order_value(),
            shopper_commission=pricing.shopper_earning,
            status=S.PENDING_SHOPPER,
            timeline=[TimelineEntry(
                status=S.PENDING_SHOPPER,
                timestamp=now,
                note="Order placed",
                updated_by=ActorRole.CUSTOMER.value,
                pricing_details=pricing.audit_details(),
            )],
            delivery_address=address,
            special_instructions=special_instructions,
            payment=payment,
        )
        order = self.repos.insert_order(order)
        self.repos.increment_user(customer_id, total_orders=1)
        logger.info("order %s placed: subtotal=%s total=%s", order.order_number,
                    order.order_value.subtotal, order.order_value.total)
        self._fan_out(notify.order_placed(order))
        return order

    # Core transition machinery

    def _load(self, order_id: str) -> Order:
        if not order_id:
            raise ValidationError("order_id is required", field="order_id")
        return self.repos.get_order(order_id)

    def _authorize(self, order: Order, actor: Actor, target: OrderStatus) -> None:
        ensure_role_for(actor, target, order.status)
        if actor.is_admin:
            return
        if actor.role == ActorRole.CUSTOMER and order.customer_id != actor.id:
            raise AccessDenied("This order belongs to another customer", order_id=order.id)
        if actor.role == ActorRole.SHOPPER:
            if target == S.ACCEPTED_BY_SHOPPER:
                return
            if order.personal_shopper_id != actor.id:
                raise AccessDenied("This order is not assigned to you", order_id=order.id)

    def _commit(
        self,
        order: Order,
        actor: Actor,
        targets: List[OrderStatus],
        note: Optional[str] = None,
        fields: Optional[dict] = None,
        pricing_details: Optional[dict] = None,
        extra_filter: Optional[dict] = None,
    ) -> Order:
        """Write one or more consecutive hops as a single update."""
        current = order.status
        for target in targets:
            ensure_transition(current, target)
            current = target
        now = self.clock()
        entries = [
            TimelineEntry(
                status=target,
                timestamp=now,
                note=note,
                updated_by=actor.role.value,
                pricing_details=pricing_details if i == 0 else None,
            )
            for i, target in enumerate(targets)
        ]
        updated = self.repos.compare_and_set_status(
            order.id, order.status, targets[-1], entries, fields=fields, extra_filter=extra_filter,
        )
        logger.info("order %s: %s -> %s by %s", order.id, order.status.value, targets[-1].value, actor.role.value)
        return updated

    def transition(self, order_id: str, actor: Actor, target, payload: Optional[dict] = None) -> Order:
        """Move an order to ``target`` (one hop), applying that status's side effects."""
        target = parse_status(target) if not isinstance(target, OrderStatus) else target
        payload = payload or {}
        order = self._load(order_id)
        self._authorize(order, actor, target)
        ensure_transition(order.status, target)

        handler = self._handlers().get(target)
        if handler is not None:
            return handler(order, actor, payload)
        updated = self._commit(order, actor, [target], note=payload.get("note"))
        self._fan_out(notify.status_changed(updated, actor.role, payload.get("note")))
        return updated

    def _handlers(self) -> Dict[OrderStatus, Callable[[Order, Actor, dict], Order]]:
        return {
            S.ACCEPTED_BY_SHOPPER: self._enter_accepted,
            S.SHOPPER_REVISED_ORDER: self._enter_revised,
            S.REVISION_REJECTED: self._enter_revision_rejected,
            S.BILL_UPLOADED: self._enter_bill_uploaded,
            S.BILL_APPROVED: self._enter_bill_approved,
            S.BILL_REJECTED: self._enter_bill_rejected,
            S.OUT_FOR_DELIVERY: self._enter_out_for_delivery,
            S.DELIVERED: self._enter_delivered,
            S.CANCELLED: self._enter_cancelled,
        }

    # Per-status side effects

    def _enter_accepted(self, order: Order, actor: Actor, payload: dict) -> Order:
        if actor.is_admin:
            shopper_id = payload.get("shopper_id")
            if not shopper_id:
                raise ValidationError("shopper_id is required to assign an order", field="shopper_id")
        else:
            shopper_id = actor.id
        shopper = self.repos.get_shopper(shopper_id)
        if shopper is None:
            raise NotFound(f"Personal shopper '{shopper_id}' not found", id=shopper_id)
        if not actor.is_admin and not shopper.is_online:
            raise AccessDenied("Go online to accept orders", shopper_id=shopper_id)

        # claim only if nobody else got there first
        try:
            updated = self._commit(
                order, actor, [S.ACCEPTED_BY_SHOPPER],
                note=payload.get("note") or "Accepted by personal shopper",
                fields={"personal_shopper_id": shopper_id},
                extra_filter={"personal_shopper_id": None},
            )
        except ConcurrencyConflict as exc:
            logger.warning("shopper %s lost the claim on order %s", shopper_id, order.id)
            raise ConcurrencyConflict("Order is no longer available", order_id=order.id, **exc.context) from exc
        self.repos.increment_shopper(shopper_id, total_orders=1)
        self._fan_out(notify.order_claimed(updated))
        return updated

    def _revision_update(self, order: Order, revised_items: Iterable, notes: Optional[str]):
        revisions = [_coerce(RevisedItemIn, item, "items") for item in (revised_items or [])]
        new_items, lines = apply_revision(order.items, revisions)
        shop = self.repos.get_shop(order.shop_id)
        pricing = price_order(lines, shop, order.delivery_address, self.settings)
        fields = {
            "items": [item.model_dump() for item in new_items],
            "revised_order_value": pricing.order_value().model_dump(),
            "shopper_commission": pricing.shopper_earning,
            "revision_notes": notes,
            "revision_rejection_reason": None,
        }
        return fields, pricing

    def _enter_revised(self, order: Order, actor: Actor, payload: dict) -> Order:
        fields, pricing = self._revision_update(order, payload.get("items"), payload.get("notes"))
        updated = self._commit(
            order, actor, [S.SHOPPER_REVISED_ORDER],
            note=payload.get("note") or "Shopper revised the order",
            fields=fields, pricing_details=pricing.audit_details(),
        )
        self._fan_out(notify.revision_submitted(updated))
        return updated

    def _enter_revision_rejected(self, order: Order, actor: Actor, payload: dict) -> Order:
        reason = payload.get("reason")
        # the order goes back to its placed value until the next revision
        fields = {
            "items": [item.model_dump() for item in clear_revision(order.items)],
            "revised_order_value": None,
            "shopper_commission": order.order_value.delivery_fee,
            "revision_rejection_reason": reason,
        }
        updated = self._commit(
            order, actor, [S.REVISION_REJECTED],
            note=reason or payload.get("note") or "Customer rejected the revision",
            fields=fields,
        )
        self._fan_out(notify.revision_reviewed(updated, approved=False))
        return updated

    def _enter_bill_uploaded(self, order: Order, actor: Actor, payload: dict) -> Order:
        amount = payload.get("bill_amount")
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("A bill amount is required", field="bill_amount")
        if not math.isfinite(amount) or amount <= 0:
            raise ValidationError("Bill amount must be positive", field="bill_amount")
        fields = {
            "bill.amount": amount,
            "bill.photo": payload.get("bill_photo") or order.bill.photo,
            "bill.uploaded_at": self.clock(),
            "bill.approved_at": None,
            "bill.rejected_at": None,
            "bill.rejection_reason": None,
        }
        updated = self._commit(order, actor, [S.BILL_UPLOADED],
                               note=payload.get("note") or "Bill uploaded", fields=fields)
        self._fan_out(notify.bill_uploaded(updated))
        return updated

    def _enter_bill_approved(self, order: Order, actor: Actor, payload: dict) -> Order:
        updated = self._commit(order, actor, [S.BILL_APPROVED],
                               note=payload.get("note") or "Bill approved",
                               fields={"bill.approved_at": self.clock()})
        self._fan_out(notify.bill_reviewed(updated, approved=True))
        return updated

    def _enter_bill_rejected(self, order: Order, actor: Actor, payload: dict) -> Order:
        reason = payload.get("reason")
        updated = self._commit(order, actor, [S.BILL_REJECTED],
                               note=reason or payload.get("note") or "Bill rejected",
                               fields={"bill.rejected_at": self.clock(), "bill.rejection_reason": reason})
        self._fan_out(notify.bill_reviewed(updated, approved=False))
        return updated

    def _enter_out_for_delivery(self, order: Order, actor: Actor, payload: dict) -> Order:
        fields = {}
        fresh_otp = order.delivery_otp is None
        if fresh_otp:
            fields["delivery_otp"] = self.otp_factory()
        updated = self._commit(order, actor, [S.OUT_FOR_DELIVERY],
                               note=payload.get("note") or "Out for delivery", fields=fields)
        notes = notify.status_changed(updated, actor.role, payload.get("note"))
        if fresh_otp:
            notes += notify.delivery_otp(updated)
        self._fan_out(notes)
        return updated

    def _enter_delivered(self, order: Order, actor: Actor, payload: dict) -> Order:
        if self.settings.require_delivery_otp and not actor.is_admin:
            if not order.delivery_otp or payload.get("otp") != order.delivery_otp:
                raise ValidationError("Delivery code does not match", field="otp")
        now = self.clock()
        commission = order.authoritative_value.delivery_fee
        fields = {
            "actual_delivery_time": now,
            "payment.status": "paid",
            "payment.paid_at": now,
            "shopper_commission": commission,
        }
        updated = self._commit(order, actor, [S.DELIVERED],
                               note=payload.get("note") or "Order delivered", fields=fields)
        # the delivery is already committed; a failed counter must not undo it
        try:
            if updated.personal_shopper_id:
                self.repos.increment_shopper(updated.personal_shopper_id, completed_orders=1, earnings=commission)
            self.repos.increment_user(updated.customer_id, total_spent=updated.authoritative_value.total)
        except PersistenceError as exc:
            logger.error("order %s delivered but settlement counters were not updated: %s", updated.id, exc)
        self._fan_out(notify.status_changed(updated, actor.role) + notify.order_delivered(updated))
        return updated

    def _enter_cancelled(self, order: Order, actor: Actor, payload: dict) -> Order:
        if not can_be_cancelled(order.status, actor.role):
            raise InvalidTransition(
                order.status.value, S.CANCELLED.value,
                message=f"Order cannot be cancelled at this stage ({order.status.value})",
            )
        reason = payload.get("reason")
        fields = {
            "cancellation": {
                "reason": reason,
                "cancelled_by": actor.role.value,
                "cancelled_at": self.clock(),
            }
        }
        updated = self._commit(order, actor, [S.CANCELLED],
                               note=reason or f"Cancelled by {actor.role.value}", fields=fields)
        self._fan_out(notify.order_cancelled(updated))
        return updated

    # Named operations

    def accept(self, order_id: str, actor: Actor) -> Order:
        return self.transition(order_id, actor, S.ACCEPTED_BY_SHOPPER)

    def assign(self, order_id: str, shopper_id: str) -> Order:
        return self.transition(order_id, Actor.system(), S.ACCEPTED_BY_SHOPPER, {"shopper_id": shopper_id})

    def revise_items(self, order_id: str, actor: Actor, revised_items: Iterable, notes: Optional[str] = None) -> Order:
        """Shopper proposes substitutions; the order lands in review with a
        freshly priced ``revised_order_value``."""
        order = self._load(order_id)
        self._authorize(order, actor, S.SHOPPER_REVISED_ORDER)
        ensure_transition(order.status, S.SHOPPER_REVISED_ORDER)
        fields, pricing = self._revision_update(order, revised_items, notes)
        updated = self._commit(
            order, actor, [S.SHOPPER_REVISED_ORDER, S.CUSTOMER_REVIEWING_REVISION],
            note=notes or "Shopper revised the order",
            fields=fields, pricing_details=pricing.audit_details(),
        )
        self._fan_out(notify.revision_submitted(updated))
        return updated

    def approve_revision(self, order_id: str, actor: Actor) -> Order:
        order = self._load(order_id)
        self._authorize(order, actor, S.CUSTOMER_APPROVED_REVISION)
        updated = self._commit(order, actor, [S.CUSTOMER_APPROVED_REVISION, S.FINAL_SHOPPING],
                               note="Customer approved the revision")
        self._fan_out(notify.revision_reviewed(updated, approved=True))
        return updated

    def reject_revision(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, actor, S.REVISION_REJECTED, {"reason": reason})

    def upload_bill(self, order_id: str, actor: Actor, amount, photo: Optional[str] = None) -> Order:
        return self.transition(order_id, actor, S.BILL_UPLOADED, {"bill_amount": amount, "bill_photo": photo})

    def approve_bill(self, order_id: str, actor: Actor) -> Order:
        return self.transition(order_id, actor, S.BILL_APPROVED)

    def reject_bill(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, actor, S.BILL_REJECTED, {"reason": reason})

    def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self.transition(order_id, actor, S.CANCELLED, {"reason": reason})

    def rate(self, order_id: str, actor: Actor, rating: int, review: Optional[str] = None) -> None:
        if actor.role != ActorRole.CUSTOMER:
            raise AccessDenied("Only the customer can rate an order")
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be a whole number from 1 to 5", field="rating")
        order = self._load(order_id)
        if order.customer_id != actor.id:
            raise AccessDenied("This order belongs to another customer", order_id=order.id)
        if order.rating is not None:
            raise AlreadyRated("Order has already been rated", order_id=order.id)
        if order.status != S.DELIVERED:
            raise ValidationError("Only delivered orders can be rated", field="status", status=order.status.value)

        rated = self.repos.set_order_fields(
            order.id,
            {"rating": {"rating": rating, "review": review, "rated_at": self.clock()}},
            extra_filter={"status": S.DELIVERED.value, "rating": None},
        )
        if rated is None:
            raise AlreadyRated("Order has already been rated", order_id=order.id)
        if rated.personal_shopper_id:
            average = self.repos.add_shopper_rating(rated.personal_shopper_id, rating)
            logger.info("shopper %s rated %s, average now %s", rated.personal_shopper_id, rating, average)
        self._fan_out(notify.order_rated(rated))

    def request_payment(self, order_id: str, actor: Actor, upi_id: str) -> Order:
        """Ask the customer to pay the shopper in-app over UPI."""
        if not upi_id:
            raise ValidationError("upi_id is required", field="upi_id")
        order = self._load(order_id)
        if actor.role == ActorRole.CUSTOMER:
            raise AccessDenied("Only the shopper can request payment")
        if actor.role == ActorRole.SHOPPER and order.personal_shopper_id != actor.id:
            raise AccessDenied("This order is not assigned to you", order_id=order.id)
        if order.status not in PAYMENT_REQUEST_STATUSES:
            raise ValidationError(
                f"Payment cannot be requested while the order is {order.status.value}",
                field="status", status=order.status.value,
            )
        if order.bill.approved_at and order.bill.amount:
            amount_due = order.bill.amount
        else:
            amount_due = order.authoritative_value.total
        updated = self.repos.set_order_fields(
            order.id,
            {"payment.method": "upi", "payment.status": "awaiting_payment",
             "payment.upi_id": upi_id, "payment.amount_due": amount_due},
            extra_filter={"status": {"$in": [s.value for s in PAYMENT_REQUEST_STATUSES]}},
        )
        if updated is None:
            raise ConcurrencyConflict("Order changed while requesting payment", order_id=order.id)
        self._fan_out(notify.payment_requested(updated))
        return updated

    def ping_location(self, order_id: str, actor: Actor, lat: float, lng: float,
                      address: Optional[str] = None) -> dict:
        order = self._load(order_id)
        if actor.role != ActorRole.SHOPPER or order.personal_shopper_id != actor.id:
            raise AccessDenied("Only the assigned shopper can share location", order_id=order.id)
        if order.status not in ACTIVE_STATUSES:
            raise ValidationError(f"Order is {order.status.value}, location is not shared",
                                  field="status", status=order.status.value)
        location = {"lat": lat, "lng": lng, "address": address, "updated_at": self.clock()}
        self.repos.set_shopper_fields(actor.id, {"current_location": location})
        self._fan_out(notify.shopper_location(order, location))
        return location

    def set_online(self, shopper_id: str, is_online: bool):
        shopper = self.repos.set_shopper_fields(shopper_id, {"is_online": bool(is_online)})
        logger.info("shopper %s is now %s", shopper_id, "online" if shopper.is_online else "offline")
        return shopper

    # Reads

    def get_order(self, order_id: str, actor: Actor) -> Order:
        order = self._load(order_id)
        if actor.is_admin:
            return order
        if actor.role == ActorRole.CUSTOMER and order.customer_id == actor.id:
            return order
        if actor.role == ActorRole.SHOPPER and (
            order.personal_shopper_id == actor.id or order.status == S.PENDING_SHOPPER
        ):
            return order
        raise AccessDenied("You cannot view this order", order_id=order.id)

    def customer_orders(self, customer_id: str) -> List[Order]:
        return self.repos.find_orders({"customer_id": customer_id})

    def customer_stats(self, customer_id: str) -> dict:
        orders = self.customer_orders(customer_id)
        delivered = [o for o in orders if o.status == S.DELIVERED]
        return {
            "total_orders": len(orders),
            "active_orders": sum(1 for o in orders if o.status not in TERMINAL_STATES),
            "delivered_orders": len(delivered),
            "cancelled_orders": sum(1 for o in orders if o.status == S.CANCELLED),
            "total_spent": round(sum(o.authoritative_value.total for o in delivered), 2),
        }

    def _online_shopper(self, shopper_id: str):
        shopper = self.repos.get_shopper(shopper_id)
        if shopper is None:
            raise NotFound(f"Personal shopper '{shopper_id}' not found", id=shopper_id)
        return shopper

    def available_orders(self, shopper_id: str) -> List[Order]:
        if not self._online_shopper(shopper_id).is_online:
            raise AccessDenied("Go online to see available orders", shopper_id=shopper_id)
        return self.repos.find_orders({"status": S.PENDING_SHOPPER})

    def active_orders(self, shopper_id: str) -> List[Order]:
        return self.repos.find_orders({
            "personal_shopper_id": shopper_id,
            "status": {"$in": sorted(s.value for s in ACTIVE_STATUSES)},
        })

    def completed_orders(self, shopper_id: str, page: int = 1, limit: int = 20) -> dict:
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        filt = {"personal_shopper_id": shopper_id, "status": S.DELIVERED}
        total = self.repos.count_orders(filt)
        orders = self.repos.find_orders(filt, sort_field="actual_delivery_time",
                                        skip=(page - 1) * limit, limit=limit)
        return {
            "orders": orders,
            "pagination": {"current": page, "pages": math.ceil(total / limit), "total": total},
        }

    def earnings(self, shopper_id: str) -> dict:
        now = _aware(self.clock())
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # weeks start on Sunday
        start_of_week = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
        start_of_month = start_of_day.replace(day=1)

        totals = {"today": 0.0, "this_week": 0.0, "this_month": 0.0, "total": 0.0}
        for order in self.repos.find_orders({"personal_shopper_id": shopper_id, "status": S.DELIVERED}):
            earning = order.shopper_commission or order.order_value.delivery_fee or 0
            when = _aware(order.actual_delivery_time or order.updated_at or order.created_at)
            totals["total"] += earning
            if when is None:
                continue
            if when >= start_of_month:
                totals["this_month"] += earning
            if when >= start_of_week:
                totals["this_week"] += earning
            if when >= start_of_day:
                totals["today"] += earning
        return {k: round(v, 2) for k, v in totals.items()}
