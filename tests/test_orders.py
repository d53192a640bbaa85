from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from database import create_document, to_object_id
from errors import (
    AccessDenied,
    AlreadyRated,
    BelowMinimum,
    ConcurrencyConflict,
    InvalidRevision,
    InvalidTransition,
    NotFound,
    PersistenceError,
    PricingUnavailable,
    ShopUnavailable,
    ValidationError,
)
from order_states import TRANSITIONS, Actor, OrderStatus
from orders import OrderService
from repositories import ORDERS, SHOPPERS, USERS
from schemas import DeliveryDiscount, PersonalShopper, Shop

from conftest import BASKET

S = OrderStatus

INVALID_PAIRS = [(a, b) for a in OrderStatus for b in OrderStatus if b not in TRANSITIONS[a]]
VALID_PAIRS = [(a, b) for a in OrderStatus for b in sorted(TRANSITIONS[a])]


def _payload_for(target, order, shopper_id):
    if target == S.ACCEPTED_BY_SHOPPER:
        return {"shopper_id": shopper_id}
    if target == S.SHOPPER_REVISED_ORDER:
        return {"items": [{"item_id": order.items[0].item_id, "is_available": True}]}
    if target == S.BILL_UPLOADED:
        return {"bill_amount": 98.5}
    return {"note": "moving on"}


def _stored(mongo, order_id):
    return mongo[ORDERS].find_one({"_id": to_object_id(order_id)})


# Placing

def test_place_order_prices_and_records(place, publisher, mongo, customer_id):
    order = place()

    assert order.status == S.PENDING_SHOPPER
    assert order.order_number.startswith("DW")
    assert order.order_value.subtotal == 100
    assert order.order_value.delivery_fee == 30
    assert order.order_value.taxes == 5
    assert order.order_value.total == 135
    assert order.shopper_commission == 30
    assert order.revised_order_value is None
    assert [e.status for e in order.timeline] == [S.PENDING_SHOPPER]
    assert order.timeline[0].pricing_details["segments"] == 3
    assert len({i.item_id for i in order.items}) == 2

    assert order.delivery_address.contact_name == "Asha"
    assert order.delivery_address.contact_phone == "9876543210"
    assert mongo[USERS].find_one({"_id": to_object_id(customer_id)})["total_orders"] == 1

    assert (f"customer_{customer_id}", "orderPlaced") in publisher.events()
    assert ("personalShoppers", "newOrderAvailable") in publisher.events()


def test_below_minimum_is_rejected(service, customer_id, shop_id, address):
    with pytest.raises(BelowMinimum) as err:
        service.place_order(customer_id, shop_id, [{"name": "Gum", "price": 10, "quantity": 1}], address)
    assert err.value.context == {"subtotal": 10, "minimum": 50}


def test_inactive_or_missing_shop(service, mongo, customer_id, address):
    closed = create_document("shop", Shop(name="Closed", coordinates={"lat": 1, "lng": 1}, is_active=False),
                             database=mongo)
    with pytest.raises(ShopUnavailable):
        service.place_order(customer_id, closed, BASKET, address)
    with pytest.raises(ShopUnavailable):
        service.place_order(customer_id, "64b000000000000000000000", BASKET, address)


def test_shop_without_coordinates_cannot_take_orders(service, mongo, customer_id, address):
    shop = create_document("shop", Shop(name="Nowhere"), database=mongo)
    with pytest.raises(PricingUnavailable):
        service.place_order(customer_id, shop, BASKET, address)
    assert mongo[ORDERS].count_documents({}) == 0


@pytest.mark.parametrize("items, address_override", [
    ([], None),
    ([{"name": "Rice", "price": 10, "quantity": 0}], None),
    ([{"name": "Rice", "price": -1, "quantity": 1}], None),
    (None, {"street": "x", "city": "y"}),
])
def test_malformed_input_is_validation_error(service, customer_id, shop_id, address, items, address_override):
    with pytest.raises(ValidationError):
        service.place_order(customer_id, shop_id, BASKET if items is None else items, address_override or address)


# Transition table through the service

@pytest.mark.parametrize("current, target", VALID_PAIRS)
def test_every_valid_transition_appends_one_entry(current, target, place, force_status, service, admin, shopper_id):
    order = place()
    force_status(order.id, current, None if current == S.PENDING_SHOPPER else shopper_id)
    before = service.repos.get_order(order.id)

    updated = service.transition(order.id, admin, target, _payload_for(target, before, shopper_id))

    assert updated.status == target
    assert len(updated.timeline) == len(before.timeline) + 1
    assert updated.timeline[-1].status == target
    assert updated.timeline[-1].updated_by == "admin"


@pytest.mark.parametrize("current, target", INVALID_PAIRS)
def test_invalid_transition_leaves_order_untouched(current, target, place, force_status, service, admin, mongo,
                                                   shopper_id):
    order = place()
    force_status(order.id, current, shopper_id)
    before = _stored(mongo, order.id)

    with pytest.raises(InvalidTransition) as err:
        service.transition(order.id, admin, target, _payload_for(target, order, shopper_id))

    assert err.value.context["current"] == current.value
    assert err.value.context["requested"] == target.value
    after = _stored(mongo, order.id)
    assert after["status"] == before["status"]
    assert after["timeline"] == before["timeline"]


def test_unknown_order_is_not_found(service, admin):
    with pytest.raises(NotFound):
        service.transition("64b000000000000000000000", admin, S.CANCELLED)
    with pytest.raises(NotFound):
        service.transition("not-an-id", admin, S.CANCELLED)


def test_unknown_status_is_validation_error(place, service, admin):
    with pytest.raises(ValidationError):
        service.transition(place().id, admin, "teleported")


# Authorization

def test_identity_is_checked_before_the_table(place, service):
    order = place()
    with pytest.raises(AccessDenied):
        service.transition(order.id, Actor.customer("someone-else"), S.BILL_APPROVED)


def test_only_assigned_shopper_can_progress(place, service, shopper_id, other_shopper_id):
    order = place()
    service.accept(order.id, Actor.shopper(shopper_id))
    with pytest.raises(AccessDenied):
        service.transition(order.id, Actor.shopper(other_shopper_id), S.SHOPPER_AT_SHOP)
    moved = service.transition(order.id, Actor.shopper(shopper_id), S.SHOPPER_AT_SHOP)
    assert moved.status == S.SHOPPER_AT_SHOP


def test_customer_cannot_drive_shopper_steps(place, service, customer_id):
    order = place()
    with pytest.raises(AccessDenied):
        service.accept(order.id, Actor.customer(customer_id))


def test_customer_cannot_skip_to_final_shopping(shopping, service, shopper_id, customer_id):
    customer = Actor.customer(customer_id)
    with pytest.raises(AccessDenied):
        service.transition(shopping.id, customer, S.FINAL_SHOPPING)
    assert service.repos.get_order(shopping.id).status == S.SHOPPING_IN_PROGRESS


def test_customer_cannot_reopen_shopping_after_bill_rejection(shopping, service, shopper_id, customer_id):
    customer = Actor.customer(customer_id)
    service.upload_bill(shopping.id, Actor.shopper(shopper_id), 120)
    service.reject_bill(shopping.id, customer, "Wrong brand")
    with pytest.raises(AccessDenied):
        service.transition(shopping.id, customer, S.FINAL_SHOPPING)
    assert service.repos.get_order(shopping.id).status == S.BILL_REJECTED

    redo = service.transition(shopping.id, Actor.shopper(shopper_id), S.FINAL_SHOPPING)
    assert redo.status == S.FINAL_SHOPPING


# Claiming

def test_accept_assigns_shopper(place, service, shopper_id, mongo, publisher, customer_id):
    order = place()
    accepted = service.accept(order.id, Actor.shopper(shopper_id))

    assert accepted.status == S.ACCEPTED_BY_SHOPPER
    assert accepted.personal_shopper_id == shopper_id
    assert mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})["total_orders"] == 1
    assert (f"customer_{customer_id}", "orderUpdate") in publisher.events()
    assert ("personalShoppers", "orderClaimed") in publisher.events()


def test_offline_shopper_cannot_accept(place, service, mongo):
    offline = create_document("personalshopper", PersonalShopper(name="Off", phone="9000000000"), database=mongo)
    with pytest.raises(AccessDenied):
        service.accept(place().id, Actor.shopper(offline))


def test_second_claim_loses(place, service, shopper_id, other_shopper_id):
    order = place()
    service.accept(order.id, Actor.shopper(shopper_id))
    with pytest.raises(InvalidTransition):
        service.accept(order.id, Actor.shopper(other_shopper_id))


def test_claim_race_is_a_conflict(place, service, shopper_id, other_shopper_id):
    order = place()
    stale = service.repos.get_order(order.id)
    service.accept(order.id, Actor.shopper(shopper_id))

    # second shopper read the order before the first claim landed
    with pytest.raises(ConcurrencyConflict):
        service._enter_accepted(stale, Actor.shopper(other_shopper_id), {})
    assert service.repos.get_order(order.id).personal_shopper_id == shopper_id


def test_admin_assign_needs_shopper(place, service, admin, shopper_id):
    order = place()
    with pytest.raises(ValidationError):
        service.transition(order.id, admin, S.ACCEPTED_BY_SHOPPER)
    assert service.assign(order.id, shopper_id).personal_shopper_id == shopper_id


# Bill

@pytest.fixture
def shopping(place, service, shopper_id):
    """An order accepted and in the shop, items being picked."""
    order = place()
    shopper = Actor.shopper(shopper_id)
    service.accept(order.id, shopper)
    service.transition(order.id, shopper, S.SHOPPER_AT_SHOP)
    return service.transition(order.id, shopper, S.SHOPPING_IN_PROGRESS)


@pytest.mark.parametrize("amount", [None, 0, -5, "abc"])
def test_bill_needs_positive_amount(shopping, service, shopper_id, amount):
    with pytest.raises(ValidationError) as err:
        service.upload_bill(shopping.id, Actor.shopper(shopper_id), amount)
    assert err.value.context["field"] == "bill_amount"
    assert service.repos.get_order(shopping.id).status == S.SHOPPING_IN_PROGRESS


def test_bill_review_cycle(shopping, service, shopper_id, customer_id, publisher):
    shopper, customer = Actor.shopper(shopper_id), Actor.customer(customer_id)
    uploaded = service.upload_bill(shopping.id, shopper, 120, photo="https://cdn.example.com/bill.jpg")
    assert uploaded.bill.amount == 120
    assert uploaded.bill.photo == "https://cdn.example.com/bill.jpg"

    rejected = service.reject_bill(shopping.id, customer, "Wrong brand")
    assert rejected.status == S.BILL_REJECTED
    assert rejected.bill.rejection_reason == "Wrong brand"
    assert (f"shopper_{shopper_id}", "billRejected") in publisher.events()

    service.transition(shopping.id, shopper, S.FINAL_SHOPPING)
    service.upload_bill(shopping.id, shopper, 110)
    approved = service.approve_bill(shopping.id, customer)
    assert approved.status == S.BILL_APPROVED
    assert approved.bill.approved_at is not None
    assert approved.bill.rejection_reason is None


# Delivery

def test_otp_generated_once_and_kept(shopping, service, shopper_id, force_status, publisher, customer_id):
    shopper = Actor.shopper(shopper_id)
    service.transition(shopping.id, shopper, S.FINAL_SHOPPING)
    out = service.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY)
    otp = out.delivery_otp
    assert otp.isdigit() and len(otp) == 4
    assert 1000 <= int(otp) <= 9999
    assert (f"customer_{customer_id}", "deliveryOtp") in publisher.events()

    force_status(shopping.id, S.FINAL_SHOPPING, shopper_id)
    again = service.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY)
    assert again.delivery_otp == otp
    assert [e for e in publisher.events() if e[1] == "deliveryOtp"] == [(f"customer_{customer_id}", "deliveryOtp")]


def test_delivery_settles_money(shopping, service, shopper_id, mongo, customer_id):
    shopper = Actor.shopper(shopper_id)
    service.transition(shopping.id, shopper, S.FINAL_SHOPPING)
    service.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY)
    delivered = service.transition(shopping.id, shopper, S.DELIVERED)

    assert delivered.status == S.DELIVERED
    assert delivered.actual_delivery_time is not None
    assert delivered.payment.status == "paid"
    assert delivered.payment.paid_at is not None
    assert delivered.shopper_commission == 30

    stored_shopper = mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})
    assert stored_shopper["completed_orders"] == 1
    assert stored_shopper["earnings"] == 30
    assert mongo[USERS].find_one({"_id": to_object_id(customer_id)})["total_spent"] == 135


def test_delivery_otp_enforced_when_configured(shopping, repos, publisher, shopper_id):
    strict = OrderService(repos, publish=publisher, settings=Settings(require_delivery_otp=True))
    shopper = Actor.shopper(shopper_id)
    strict.transition(shopping.id, shopper, S.FINAL_SHOPPING)
    otp = strict.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY).delivery_otp

    with pytest.raises(ValidationError):
        strict.transition(shopping.id, shopper, S.DELIVERED, {"otp": "0000"})
    assert strict.transition(shopping.id, shopper, S.DELIVERED, {"otp": otp}).status == S.DELIVERED


# Revision

def test_revision_reprices_without_touching_originals(shopping, service, shopper_id, publisher, customer_id):
    rice, dal = shopping.items
    revised = service.revise_items(shopping.id, Actor.shopper(shopper_id), [
        {"item_id": rice.item_id, "is_available": True, "revised_quantity": 1, "revised_price": 35},
        {"item_id": dal.item_id, "is_available": False},
    ], notes="Only one bag left")

    assert revised.status == S.CUSTOMER_REVIEWING_REVISION
    assert [e.status for e in revised.timeline[-2:]] == [S.SHOPPER_REVISED_ORDER, S.CUSTOMER_REVIEWING_REVISION]
    assert revised.timeline[-2].pricing_details["subtotal"] == 35

    value = revised.revised_order_value
    assert value.subtotal == 35
    assert value.taxes == 2
    assert value.delivery_fee == 30
    assert value.service_fee == 0
    assert value.total == 67
    assert revised.shopper_commission == 30
    assert revised.order_value.total == 135

    new_rice, new_dal = revised.items
    assert (new_rice.price, new_rice.quantity) == (30, 2)
    assert (new_rice.revised_price, new_rice.revised_quantity) == (35, 1)
    assert new_dal.is_available is False
    assert (new_dal.price, new_dal.quantity) == (40, 1)
    assert revised.revision_notes == "Only one bag left"
    assert (f"customer_{customer_id}", "orderRevised") in publisher.events()


def test_revision_with_nothing_available(shopping, service, shopper_id):
    revised = service.revise_items(shopping.id, Actor.shopper(shopper_id), [
        {"item_id": item.item_id, "is_available": False} for item in shopping.items
    ])
    value = revised.revised_order_value
    assert value.subtotal == 0
    assert value.taxes == 0
    assert value.total == value.delivery_fee


@pytest.mark.parametrize("revision", [
    [],
    [{"item_id": "nope", "is_available": True}],
    "zero",
    "twice",
])
def test_bad_revisions_are_rejected(shopping, service, shopper_id, revision):
    first = shopping.items[0].item_id
    if revision == "zero":
        revision = [{"item_id": first, "is_available": True, "revised_quantity": 0}]
    elif revision == "twice":
        revision = [{"item_id": first, "is_available": False}, {"item_id": first, "is_available": True}]
    with pytest.raises(InvalidRevision):
        service.revise_items(shopping.id, Actor.shopper(shopper_id), revision)
    assert service.repos.get_order(shopping.id).status == S.SHOPPING_IN_PROGRESS


def test_revision_only_from_shopping(place, service, shopper_id):
    order = place()
    service.accept(order.id, Actor.shopper(shopper_id))
    with pytest.raises(InvalidTransition):
        service.revise_items(order.id, Actor.shopper(shopper_id),
                             [{"item_id": order.items[0].item_id, "is_available": False}])


def test_rejected_revision_loops_back_to_shopping(shopping, service, shopper_id, customer_id, publisher, admin):
    shopper, customer = Actor.shopper(shopper_id), Actor.customer(customer_id)
    first = shopping.items[0].item_id
    service.revise_items(shopping.id, shopper, [{"item_id": first, "is_available": False}])

    with pytest.raises(AccessDenied):
        service.transition(shopping.id, customer, S.FINAL_SHOPPING)
    with pytest.raises(InvalidTransition):
        service.transition(shopping.id, admin, S.FINAL_SHOPPING)

    rejected = service.reject_revision(shopping.id, customer, "Need the rice")
    assert rejected.status == S.REVISION_REJECTED
    assert rejected.revision_rejection_reason == "Need the rice"
    assert (f"shopper_{shopper_id}", "revisionRejected") in publisher.events()

    back = service.transition(shopping.id, shopper, S.SHOPPING_IN_PROGRESS)
    assert back.status == S.SHOPPING_IN_PROGRESS

    second = service.revise_items(shopping.id, shopper,
                                  [{"item_id": first, "is_available": True, "revised_quantity": 3}])
    assert second.revised_order_value.subtotal == 130
    assert second.revision_rejection_reason is None


def test_approved_revision_goes_to_final_shopping(shopping, service, shopper_id, customer_id):
    service.revise_items(shopping.id, Actor.shopper(shopper_id),
                         [{"item_id": shopping.items[1].item_id, "is_available": False}])
    approved = service.approve_revision(shopping.id, Actor.customer(customer_id))
    assert approved.status == S.FINAL_SHOPPING
    assert [e.status for e in approved.timeline[-2:]] == [S.CUSTOMER_APPROVED_REVISION, S.FINAL_SHOPPING]


def test_delivery_pays_revised_fee(shopping, service, shopper_id, customer_id, mongo):
    shopper = Actor.shopper(shopper_id)
    service.revise_items(shopping.id, shopper, [{"item_id": shopping.items[1].item_id, "is_available": False}])
    service.approve_revision(shopping.id, Actor.customer(customer_id))
    service.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY)
    delivered = service.transition(shopping.id, shopper, S.DELIVERED)

    assert delivered.shopper_commission == delivered.revised_order_value.delivery_fee
    spent = mongo[USERS].find_one({"_id": to_object_id(customer_id)})["total_spent"]
    assert spent == delivered.revised_order_value.total == 60 + 3 + 30


def test_rejected_revision_restores_placed_value(shopping, service, shopper_id, customer_id, mongo):
    shopper = Actor.shopper(shopper_id)
    dal = shopping.items[1].item_id
    revised = service.revise_items(shopping.id, shopper, [{"item_id": dal, "is_available": False}])
    assert revised.revised_order_value.total == 93

    rejected = service.reject_revision(shopping.id, Actor.customer(customer_id), "Need the dal")
    assert rejected.revised_order_value is None
    assert rejected.authoritative_value.total == 135
    assert rejected.shopper_commission == 30
    assert all(item.is_available is None and item.revised_quantity is None for item in rejected.items)

    for status in (S.SHOPPING_IN_PROGRESS, S.FINAL_SHOPPING, S.OUT_FOR_DELIVERY):
        service.transition(shopping.id, shopper, status)
    delivered = service.transition(shopping.id, shopper, S.DELIVERED)

    assert delivered.shopper_commission == 30
    assert mongo[USERS].find_one({"_id": to_object_id(customer_id)})["total_spent"] == 135
    assert mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})["earnings"] == 30


def test_delivery_stands_when_counters_fail(shopping, service, shopper_id, publisher, customer_id, monkeypatch):
    shopper = Actor.shopper(shopper_id)
    service.transition(shopping.id, shopper, S.FINAL_SHOPPING)
    service.transition(shopping.id, shopper, S.OUT_FOR_DELIVERY)

    def broken(*args, **kwargs):
        raise PersistenceError("Database operation on 'personal_shopper' failed")

    monkeypatch.setattr(service.repos, "increment_shopper", broken)
    delivered = service.transition(shopping.id, shopper, S.DELIVERED)

    assert delivered.status == S.DELIVERED
    assert service.repos.get_order(shopping.id).status == S.DELIVERED
    assert (f"customer_{customer_id}", "orderDelivered") in publisher.events()


# Cancellation

def test_customer_cancel_records_who_and_why(place, service, customer_id, publisher):
    order = place()
    cancelled = service.cancel(order.id, Actor.customer(customer_id), "Changed my mind")
    assert cancelled.status == S.CANCELLED
    assert cancelled.cancellation.cancelled_by == "customer"
    assert cancelled.cancellation.reason == "Changed my mind"
    assert ("personalShoppers", "orderWithdrawn") in publisher.events()


def test_cancelled_order_cannot_be_cancelled_again(place, service, customer_id, admin):
    order = place()
    service.cancel(order.id, Actor.customer(customer_id))
    with pytest.raises(InvalidTransition):
        service.cancel(order.id, admin)


def test_customer_cannot_cancel_during_final_shopping(shopping, service, shopper_id, customer_id, admin):
    service.transition(shopping.id, Actor.shopper(shopper_id), S.FINAL_SHOPPING)
    with pytest.raises(InvalidTransition) as err:
        service.cancel(shopping.id, Actor.customer(customer_id))
    assert "cannot be cancelled" in err.value.message
    assert service.cancel(shopping.id, admin, "Shop closed").cancellation.cancelled_by == "admin"


# Rating

def _deliver(order, service, shopper_id):
    shopper = Actor.shopper(shopper_id)
    service.transition(order.id, shopper, S.FINAL_SHOPPING)
    service.transition(order.id, shopper, S.OUT_FOR_DELIVERY)
    return service.transition(order.id, shopper, S.DELIVERED)


def test_rating_before_delivery_fails(shopping, service, customer_id):
    with pytest.raises(ValidationError):
        service.rate(shopping.id, Actor.customer(customer_id), 5)


def test_rating_once_updates_shopper_average(shopping, service, shopper_id, customer_id, mongo, publisher):
    mongo[SHOPPERS].update_one({"_id": to_object_id(shopper_id)},
                               {"$set": {"rating": {"average": 4.5, "count": 2}}})
    _deliver(shopping, service, shopper_id)
    customer = Actor.customer(customer_id)

    service.rate(shopping.id, customer, 3, "Late but fine")
    stored = mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})
    assert stored["rating"] == {"average": 4.0, "count": 3}
    assert service.repos.get_order(shopping.id).rating.review == "Late but fine"
    assert (f"shopper_{shopper_id}", "orderRated") in publisher.events()

    with pytest.raises(AlreadyRated):
        service.rate(shopping.id, customer, 5)
    assert mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})["rating"]["count"] == 3


@pytest.mark.parametrize("rating", [0, 6, 2.5])
def test_rating_must_be_one_to_five(shopping, service, shopper_id, customer_id, rating):
    _deliver(shopping, service, shopper_id)
    with pytest.raises(ValidationError):
        service.rate(shopping.id, Actor.customer(customer_id), rating)


def test_only_the_ordering_customer_rates(shopping, service, shopper_id):
    _deliver(shopping, service, shopper_id)
    with pytest.raises(AccessDenied):
        service.rate(shopping.id, Actor.customer("64b000000000000000000001"), 5)


# Payment and location

def test_upi_payment_request(shopping, service, shopper_id, customer_id, publisher):
    shopper = Actor.shopper(shopper_id)
    with pytest.raises(ValidationError):
        service.request_payment(shopping.id, shopper, "ravi@upi")

    service.upload_bill(shopping.id, shopper, 104)
    service.approve_bill(shopping.id, Actor.customer(customer_id))
    requested = service.request_payment(shopping.id, shopper, "ravi@upi")
    assert requested.payment.method == "upi"
    assert requested.payment.status == "awaiting_payment"
    assert requested.payment.upi_id == "ravi@upi"
    assert requested.payment.amount_due == 104
    assert (f"customer_{customer_id}", "paymentRequested") in publisher.events()


def test_location_ping_reaches_customer(shopping, service, shopper_id, customer_id, mongo, publisher):
    location = service.ping_location(shopping.id, Actor.shopper(shopper_id), 12.975, 77.59)
    assert location["lat"] == 12.975
    stored = mongo[SHOPPERS].find_one({"_id": to_object_id(shopper_id)})
    assert stored["current_location"]["lng"] == 77.59
    assert (f"customer_{customer_id}", "shopperLocationUpdate") in publisher.events()
    assert len(service.repos.get_order(shopping.id).timeline) == len(shopping.timeline)


# Notifications

def test_publisher_failure_does_not_undo_transition(place, repos, shopper_id):
    def broken(_notes):
        raise RuntimeError("socket server down")

    quiet = OrderService(repos, publish=broken)
    order = place()
    accepted = quiet.accept(order.id, Actor.shopper(shopper_id))
    assert accepted.status == S.ACCEPTED_BY_SHOPPER
    assert repos.get_order(order.id).status == S.ACCEPTED_BY_SHOPPER


def test_customer_actions_reach_assigned_shopper(shopping, service, shopper_id, customer_id, publisher):
    publisher.batches.clear()
    service.cancel(shopping.id, Actor.customer(customer_id), "Too slow")
    rooms = {room for room, _ in publisher.events()}
    assert rooms == {f"customer_{customer_id}", f"shopper_{shopper_id}"}


# Reads

def test_shopper_queries(place, service, shopper_id, other_shopper_id, mongo):
    first, second = place(), place()
    shopper = Actor.shopper(shopper_id)
    service.accept(first.id, shopper)

    assert [o.id for o in service.available_orders(other_shopper_id)] == [second.id]
    assert [o.id for o in service.active_orders(shopper_id)] == [first.id]

    mongo[SHOPPERS].update_one({"_id": to_object_id(other_shopper_id)}, {"$set": {"is_online": False}})
    with pytest.raises(AccessDenied):
        service.available_orders(other_shopper_id)


def test_completed_orders_and_earnings(shopping, service, shopper_id):
    _deliver(shopping, service, shopper_id)
    page = service.completed_orders(shopper_id, page=1, limit=10)
    assert page["pagination"] == {"current": 1, "pages": 1, "total": 1}
    assert page["orders"][0].id == shopping.id

    earnings = service.earnings(shopper_id)
    assert earnings == {"today": 30, "this_week": 30, "this_month": 30, "total": 30}


def test_customer_stats(place, service, customer_id, shopper_id):
    kept, dropped = place(), place()
    service.cancel(dropped.id, Actor.customer(customer_id))
    service.accept(kept.id, Actor.shopper(shopper_id))

    stats = service.customer_stats(customer_id)
    assert stats == {
        "total_orders": 2,
        "active_orders": 1,
        "delivered_orders": 0,
        "cancelled_orders": 1,
        "total_spent": 0,
    }


def test_order_visibility(place, service, customer_id, shopper_id, other_shopper_id):
    order = place()
    assert service.get_order(order.id, Actor.customer(customer_id)).id == order.id
    assert service.get_order(order.id, Actor.shopper(other_shopper_id)).id == order.id
    service.accept(order.id, Actor.shopper(shopper_id))
    with pytest.raises(AccessDenied):
        service.get_order(order.id, Actor.shopper(other_shopper_id))
    with pytest.raises(AccessDenied):
        service.get_order(order.id, Actor.customer("64b000000000000000000001"))


def test_quote_previews_discount(service, shop_id, address, mongo):
    now = datetime.now(timezone.utc)
    service.repos.insert_discount(DeliveryDiscount(
        name="Free delivery week", discount_type="free",
        start_date=now - timedelta(days=1), end_date=now + timedelta(days=6),
    ))
    quote = service.quote(shop_id, BASKET, address)
    assert quote["pricing"]["total"] == 135
    assert quote["delivery_discount"]["discount_amount"] == 30
    assert quote["delivery_discount"]["final_fee"] == 0
    assert quote["delivery_discount"]["discount_applied"]["name"] == "Free delivery week"
