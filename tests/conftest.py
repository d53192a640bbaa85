import mongomock
import pytest

from config import Settings
from database import create_document, to_object_id
from order_states import Actor, OrderStatus
from orders import OrderService
from repositories import ORDERS, Repositories
from schemas import PersonalShopper, Shop, User

SHOP_COORDS = {"lat": 12.9716, "lng": 77.5946}
# roughly 1200m north of the shop
NEARBY_COORDS = {"lat": 12.9824, "lng": 77.5946}

BASKET = [
    {"product_id": "p-rice", "name": "Rice", "price": 30, "quantity": 2},
    {"product_id": "p-dal", "name": "Dal", "price": 40, "quantity": 1, "notes": "yellow"},
]


class RecordingPublisher:
    def __init__(self):
        self.batches = []

    def __call__(self, notes):
        self.batches.append(list(notes))

    @property
    def sent(self):
        return [n for batch in self.batches for n in batch]

    def events(self):
        return [(n.room, n.event) for n in self.sent]


@pytest.fixture
def mongo():
    return mongomock.MongoClient().get_database("marketplace_test")


@pytest.fixture
def repos(mongo):
    return Repositories(mongo)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(repos, publisher):
    return OrderService(repos, publish=publisher, settings=Settings())


@pytest.fixture
def shop_id(mongo):
    shop = Shop(
        name="Corner Grocers",
        coordinates=SHOP_COORDS,
        delivery_fee_mode="distance",
        fee_per_segment=10,
        min_order_value=50,
    )
    return create_document("shop", shop, database=mongo)


@pytest.fixture
def customer_id(mongo):
    return create_document("user", User(name="Asha", email="asha@example.com", phone="9876543210"), database=mongo)


@pytest.fixture
def shopper_id(mongo):
    return create_document("personalshopper", PersonalShopper(name="Ravi", phone="9123456780", is_online=True),
                           database=mongo)


@pytest.fixture
def other_shopper_id(mongo):
    return create_document("personalshopper", PersonalShopper(name="Meera", phone="9123456781", is_online=True),
                           database=mongo)


@pytest.fixture
def address():
    return {"street": "12 MG Road", "city": "Bengaluru", "coordinates": NEARBY_COORDS}


@pytest.fixture
def place(service, customer_id, shop_id, address):
    def _place(items=None):
        return service.place_order(customer_id, shop_id, items or BASKET, address)
    return _place


@pytest.fixture
def force_status(mongo):
    """Put an order straight into ``status`` without going through the service."""
    def _force(order_id, status, shopper_id=None, **fields):
        to_set = {"status": OrderStatus(status).value, "personal_shopper_id": shopper_id}
        to_set.update(fields)
        mongo[ORDERS].update_one({"_id": to_object_id(order_id)}, {"$set": to_set})
    return _force


@pytest.fixture
def admin():
    return Actor.system()
