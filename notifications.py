"""
Real-time order notifications.

The order service builds ``Notification`` records for each accepted change
and hands them to a publisher. In the API the publisher schedules
``RoomHub.deliver`` as a background task, so delivery happens after the
response is sent and a failed send is only logged.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from order_states import ActorRole, OrderStatus
from schemas import Order

logger = logging.getLogger(__name__)

SHOPPERS_ROOM = "personalShoppers"

STATUS_MESSAGES: Dict[OrderStatus, str] = {
    OrderStatus.PENDING_SHOPPER: "Your order has been placed and is waiting for a personal shopper",
    OrderStatus.ACCEPTED_BY_SHOPPER: "Your order has been accepted by a personal shopper!",
    OrderStatus.SHOPPER_AT_SHOP: "Your shopper has reached the shop",
    OrderStatus.SHOPPING_IN_PROGRESS: "Your shopper is picking your items",
    OrderStatus.SHOPPER_REVISED_ORDER: "Your shopper has revised the order",
    OrderStatus.CUSTOMER_REVIEWING_REVISION: "Please review the revised order",
    OrderStatus.REVISION_REJECTED: "The revised order was rejected",
    OrderStatus.CUSTOMER_APPROVED_REVISION: "The revised order was approved",
    OrderStatus.FINAL_SHOPPING: "Your shopper is finishing the shopping",
    OrderStatus.BILL_UPLOADED: "The bill has been uploaded, please review it",
    OrderStatus.BILL_APPROVED: "The bill was approved",
    OrderStatus.BILL_REJECTED: "The bill was rejected",
    OrderStatus.OUT_FOR_DELIVERY: "Your order is out for delivery",
    OrderStatus.DELIVERED: "Your order has been delivered",
    OrderStatus.CANCELLED: "The order has been cancelled",
    OrderStatus.REFUNDED: "The order has been refunded",
}


def customer_room(customer_id: str) -> str:
    return f"customer_{customer_id}"


def shopper_room(shopper_id: str) -> str:
    return f"shopper_{shopper_id}"


@dataclass
class Notification:
    room: str
    event: str
    payload: dict = field(default_factory=dict)


def _base(order: Order) -> dict:
    return {"order_id": order.id, "order_number": order.order_number, "status": order.status.value}


# Builders, one per kind of change

def order_placed(order: Order) -> List[Notification]:
    summary = dict(
        _base(order),
        shop_id=order.shop_id,
        item_count=len(order.items),
        order_value=order.order_value.model_dump(),
        delivery_address=order.delivery_address.model_dump(),
    )
    return [
        Notification(customer_room(order.customer_id), "orderPlaced",
                     dict(_base(order), message=STATUS_MESSAGES[order.status])),
        Notification(SHOPPERS_ROOM, "newOrderAvailable", summary),
    ]


def status_changed(order: Order, actor_role: ActorRole, note: Optional[str] = None) -> List[Notification]:
    """Generic update: the customer always hears about it, the assigned
    shopper hears about changes made by someone else."""
    payload = dict(
        _base(order),
        message=note or STATUS_MESSAGES[order.status],
        timeline=[entry.model_dump() for entry in order.timeline],
    )
    out = [Notification(customer_room(order.customer_id), "orderUpdate", payload)]
    if order.personal_shopper_id and actor_role != ActorRole.SHOPPER:
        out.append(Notification(shopper_room(order.personal_shopper_id), "orderUpdate", payload))
    return out


def order_claimed(order: Order) -> List[Notification]:
    return [
        Notification(customer_room(order.customer_id), "orderUpdate",
                     dict(_base(order), message=STATUS_MESSAGES[order.status],
                          personal_shopper_id=order.personal_shopper_id)),
        Notification(SHOPPERS_ROOM, "orderClaimed", {"order_id": order.id}),
    ]


def delivery_otp(order: Order) -> List[Notification]:
    return [Notification(customer_room(order.customer_id), "deliveryOtp",
                         dict(_base(order), otp=order.delivery_otp,
                              message="Share this code with your shopper on delivery"))]


def bill_uploaded(order: Order) -> List[Notification]:
    return [Notification(customer_room(order.customer_id), "billUploaded",
                         dict(_base(order), amount=order.bill.amount, photo=order.bill.photo))]


def bill_reviewed(order: Order, approved: bool) -> List[Notification]:
    if not order.personal_shopper_id:
        return []
    event = "billApproved" if approved else "billRejected"
    return [Notification(shopper_room(order.personal_shopper_id), event,
                         dict(_base(order), reason=order.bill.rejection_reason))]


def revision_submitted(order: Order) -> List[Notification]:
    revised = order.revised_order_value.model_dump() if order.revised_order_value else None
    return [Notification(customer_room(order.customer_id), "orderRevised",
                         dict(_base(order), items=[i.model_dump() for i in order.items],
                              revised_order_value=revised, notes=order.revision_notes))]


def revision_reviewed(order: Order, approved: bool) -> List[Notification]:
    if not order.personal_shopper_id:
        return []
    event = "revisionApproved" if approved else "revisionRejected"
    return [Notification(shopper_room(order.personal_shopper_id), event,
                         dict(_base(order), reason=order.revision_rejection_reason))]


def order_cancelled(order: Order) -> List[Notification]:
    cancellation = order.cancellation.model_dump() if order.cancellation else {}
    payload = dict(_base(order), message=STATUS_MESSAGES[OrderStatus.CANCELLED], **cancellation)
    out = [Notification(customer_room(order.customer_id), "orderCancelled", payload)]
    if order.personal_shopper_id:
        out.append(Notification(shopper_room(order.personal_shopper_id), "orderCancelled", payload))
    else:
        out.append(Notification(SHOPPERS_ROOM, "orderWithdrawn", {"order_id": order.id}))
    return out


def order_delivered(order: Order) -> List[Notification]:
    out = [Notification(customer_room(order.customer_id), "orderDelivered",
                        dict(_base(order), message=STATUS_MESSAGES[OrderStatus.DELIVERED]))]
    if order.personal_shopper_id:
        out.append(Notification(shopper_room(order.personal_shopper_id), "earningsUpdate",
                                dict(_base(order), commission=order.shopper_commission)))
    return out


def payment_requested(order: Order) -> List[Notification]:
    return [Notification(customer_room(order.customer_id), "paymentRequested",
                         dict(_base(order), upi_id=order.payment.upi_id, amount_due=order.payment.amount_due))]


def shopper_location(order: Order, location: dict) -> List[Notification]:
    return [Notification(customer_room(order.customer_id), "shopperLocationUpdate",
                         dict(_base(order), location=location))]


def order_rated(order: Order) -> List[Notification]:
    if not order.personal_shopper_id or not order.rating:
        return []
    return [Notification(shopper_room(order.personal_shopper_id), "orderRated",
                         dict(_base(order), rating=order.rating.rating, review=order.rating.review))]


class RoomHub:
    """WebSocket connections grouped by room key."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    async def join(self, room: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.rooms.setdefault(room, set()).add(websocket)
        logger.info("socket joined room %s", room)

    def leave(self, room: str, websocket: WebSocket) -> None:
        members = self.rooms.get(room)
        if not members:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room]

    async def emit(self, room: str, event: str, payload: dict) -> int:
        """Send to whoever is in ``room`` right now; returns how many got it."""
        message = {"event": event, "data": jsonable_encoder(payload)}
        sent = 0
        for websocket in list(self.rooms.get(room, ())):
            try:
                await websocket.send_json(message)
                sent += 1
            except Exception as exc:
                logger.warning("dropping socket in %s after failed %s: %s", room, event, exc)
                self.leave(room, websocket)
        return sent

    async def deliver(self, notifications: List[Notification]) -> None:
        for note in notifications:
            try:
                await self.emit(note.room, note.event, note.payload)
            except Exception as exc:
                logger.warning("notification %s to %s failed: %s", note.event, note.room, exc)
