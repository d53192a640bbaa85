import logging
import os
import uuid
from typing import List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from config import load_settings
from database import db
from errors import MarketplaceError, ValidationError
from notifications import Notification, RoomHub
from order_states import Actor, ActorRole
from orders import OrderService
from repositories import Repositories
from schemas import (
    AcceptRequest,
    ActiveFlag,
    DeliveryDiscount,
    LocationPing,
    OnlineRequest,
    Order,
    PaymentRequest,
    PlaceOrderRequest,
    QuoteRequest,
    RateRequest,
    ReasonRequest,
    ReviseRequest,
    TransitionRequest,
)

settings = load_settings()

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Local Delivery Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

hub = RoomHub()

# bill images are written under <upload_dir>/bills and served from /uploads
app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# Dependencies

def get_repos() -> Repositories:
    return Repositories(db)


def get_service(background_tasks: BackgroundTasks, repos: Repositories = Depends(get_repos)) -> OrderService:
    def publish(notes: List[Notification]) -> None:
        # runs after the response has been sent
        background_tasks.add_task(hub.deliver, notes)

    return OrderService(repos, publish=publish, settings=settings)


def get_actor(
    x_actor_role: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
) -> Actor:
    try:
        role = ActorRole((x_actor_role or "").lower())
    except ValueError:
        raise HTTPException(status_code=401, detail="X-Actor-Role must be customer, shopper or admin")
    if role == ActorRole.ADMIN:
        # no configured token means no admin access
        if not settings.admin_token or x_admin_token != settings.admin_token:
            raise HTTPException(status_code=401, detail="Invalid admin token")
        return Actor.system()
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id is required")
    return Actor(role, x_actor_id)


def require(actor: Actor, *roles: ActorRole) -> None:
    if actor.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise HTTPException(status_code=403, detail=f"Only {allowed} can do this")


def present(order: Order, actor: Actor) -> dict:
    data = order.model_dump(mode="json")
    # the delivery code is the customer's to hand over
    if actor.role == ActorRole.SHOPPER:
        data.pop("delivery_otp", None)
    return data


@app.get("/")
def root():
    return {"name": "Local Delivery Marketplace", "status": "ok"}


# Customer endpoints

@app.post("/api/orders/quote")
def quote_order(payload: QuoteRequest, service: OrderService = Depends(get_service)):
    return service.quote(payload.shop_id, payload.items, payload.delivery_address)


@app.post("/api/orders", status_code=201)
def place_order(payload: PlaceOrderRequest, actor: Actor = Depends(get_actor),
                service: OrderService = Depends(get_service)):
    require(actor, ActorRole.CUSTOMER)
    order = service.place_order(
        actor.id,
        payload.shop_id,
        payload.items,
        payload.delivery_address,
        special_instructions=payload.special_instructions,
        payment_method=payload.payment_method,
    )
    return {"message": "Order placed successfully", "order": present(order, actor)}


@app.get("/api/orders/customer")
def customer_orders(actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    require(actor, ActorRole.CUSTOMER)
    return [present(o, actor) for o in service.customer_orders(actor.id)]


@app.get("/api/orders/customer/stats")
def customer_stats(actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    require(actor, ActorRole.CUSTOMER)
    return service.customer_stats(actor.id)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    return present(service.get_order(order_id, actor), actor)


# Lifecycle endpoints

@app.put("/api/orders/{order_id}/status")
def update_status(order_id: str, payload: TransitionRequest, actor: Actor = Depends(get_actor),
                  service: OrderService = Depends(get_service)):
    order = service.transition(order_id, actor, payload.status, payload.model_dump(exclude={"status"}))
    return {"message": "Order status updated successfully", "order": present(order, actor)}


def _store_bill_image(order_id: str, image: UploadFile) -> str:
    if not (image.content_type or "").startswith("image/"):
        raise ValidationError("Bill must be an image", field="bill_image")
    data = image.file.read(settings.max_bill_image_bytes + 1)
    if not data:
        raise ValidationError("Bill image is empty", field="bill_image")
    if len(data) > settings.max_bill_image_bytes:
        raise ValidationError("Bill image is too large", field="bill_image")
    ext = os.path.splitext(image.filename or "")[1].lower() or ".jpg"
    name = f"{order_id}_{uuid.uuid4().hex}{ext}"
    folder = os.path.join(settings.upload_dir, "bills")
    os.makedirs(folder, exist_ok=True)
    with open(os.path.join(folder, name), "wb") as fh:
        fh.write(data)
    return name


@app.post("/api/orders/{order_id}/bill")
def upload_bill(
    order_id: str,
    bill_amount: float = Form(...),
    bill_image: UploadFile = File(...),
    note: Optional[str] = Form(None),
    actor: Actor = Depends(get_actor),
    service: OrderService = Depends(get_service),
):
    name = _store_bill_image(order_id, bill_image)
    try:
        order = service.transition(order_id, actor, "bill_uploaded", {
            "bill_amount": bill_amount,
            "bill_photo": f"/uploads/bills/{name}",
            "note": note,
        })
    except MarketplaceError:
        os.remove(os.path.join(settings.upload_dir, "bills", name))
        raise
    return {"message": "Bill uploaded", "order": present(order, actor)}


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: ReasonRequest, actor: Actor = Depends(get_actor),
                 service: OrderService = Depends(get_service)):
    order = service.cancel(order_id, actor, payload.reason)
    return {"message": "Order cancelled", "order": present(order, actor)}


@app.put("/api/orders/{order_id}/approve-bill")
def approve_bill(order_id: str, actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    order = service.approve_bill(order_id, actor)
    return {"message": "Bill approved", "order": present(order, actor)}


@app.put("/api/orders/{order_id}/reject-bill")
def reject_bill(order_id: str, payload: ReasonRequest, actor: Actor = Depends(get_actor),
                service: OrderService = Depends(get_service)):
    order = service.reject_bill(order_id, actor, payload.reason)
    return {"message": "Bill rejected", "order": present(order, actor)}


@app.put("/api/orders/{order_id}/rate")
def rate_order(order_id: str, payload: RateRequest, actor: Actor = Depends(get_actor),
               service: OrderService = Depends(get_service)):
    service.rate(order_id, actor, payload.rating, payload.review)
    return {"message": "Thanks for rating your shopper"}


@app.put("/api/orders/{order_id}/revise")
def revise_order(order_id: str, payload: ReviseRequest, actor: Actor = Depends(get_actor),
                 service: OrderService = Depends(get_service)):
    order = service.revise_items(order_id, actor, payload.items, payload.notes)
    return {"message": "Revision sent to the customer", "order": present(order, actor)}


@app.post("/api/orders/{order_id}/approve-revision")
def approve_revision(order_id: str, actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    order = service.approve_revision(order_id, actor)
    return {"message": "Revision approved", "order": present(order, actor)}


@app.post("/api/orders/{order_id}/reject-revision")
def reject_revision(order_id: str, payload: ReasonRequest, actor: Actor = Depends(get_actor),
                    service: OrderService = Depends(get_service)):
    order = service.reject_revision(order_id, actor, payload.reason)
    return {"message": "Revision rejected", "order": present(order, actor)}


@app.post("/api/orders/{order_id}/request-payment")
def request_payment(order_id: str, payload: PaymentRequest, actor: Actor = Depends(get_actor),
                    service: OrderService = Depends(get_service)):
    order = service.request_payment(order_id, actor, payload.upi_id)
    return {"message": "Payment requested", "order": present(order, actor)}


@app.post("/api/orders/{order_id}/location")
def share_location(order_id: str, payload: LocationPing, actor: Actor = Depends(get_actor),
                   service: OrderService = Depends(get_service)):
    return service.ping_location(order_id, actor, payload.lat, payload.lng, payload.address)


# Personal shopper endpoints

@app.post("/api/shopper/accept")
def accept_order(payload: AcceptRequest, actor: Actor = Depends(get_actor),
                 service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    order = service.accept(payload.order_id, actor)
    return {"message": "Order accepted successfully", "order": present(order, actor)}


@app.put("/api/shopper/online")
def set_online(payload: OnlineRequest, actor: Actor = Depends(get_actor),
               service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    shopper = service.set_online(actor.id, payload.is_online)
    return {"is_online": shopper.is_online}


@app.get("/api/shopper/orders/available")
def available_orders(actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    return [present(o, actor) for o in service.available_orders(actor.id)]


@app.get("/api/shopper/orders/active")
def active_orders(actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    return [present(o, actor) for o in service.active_orders(actor.id)]


@app.get("/api/shopper/orders/completed")
def completed_orders(page: int = 1, limit: int = 20, actor: Actor = Depends(get_actor),
                     service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    result = service.completed_orders(actor.id, page, limit)
    result["orders"] = [present(o, actor) for o in result["orders"]]
    return result


@app.get("/api/shopper/earnings")
def shopper_earnings(actor: Actor = Depends(get_actor), service: OrderService = Depends(get_service)):
    require(actor, ActorRole.SHOPPER)
    return service.earnings(actor.id)


# Admin endpoints

@app.post("/api/admin/discounts", status_code=201)
def admin_create_discount(discount: DeliveryDiscount, actor: Actor = Depends(get_actor),
                          repos: Repositories = Depends(get_repos)):
    require(actor, ActorRole.ADMIN)
    return repos.insert_discount(discount)


@app.get("/api/admin/discounts")
def admin_list_discounts(actor: Actor = Depends(get_actor), repos: Repositories = Depends(get_repos)):
    require(actor, ActorRole.ADMIN)
    return repos.list_discounts()


@app.put("/api/admin/discounts/{discount_id}/active")
def admin_toggle_discount(discount_id: str, payload: ActiveFlag, actor: Actor = Depends(get_actor),
                          repos: Repositories = Depends(get_repos)):
    require(actor, ActorRole.ADMIN)
    return repos.set_discount_active(discount_id, payload.is_active)


# Real-time channel

@app.websocket("/ws/{room}")
async def room_socket(websocket: WebSocket, room: str):
    await hub.join(room, websocket)
    try:
        while True:
            # clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(room, websocket)


@app.get("/api/schema")
def get_schema():
    # Let admin tools read available schemas
    from inspect import getmembers, isclass
    import schemas as schema_module
    classes = {
        name: cls.model_json_schema()
        for name, cls in getmembers(schema_module)
        if isclass(cls) and issubclass(cls, BaseModel) and cls.__module__ == schema_module.__name__
    }
    return classes


@app.get("/test")
def test_database(repos: Repositories = Depends(get_repos)):
    response = {
        "backend": "running",
        "database": settings.database_name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = repos.collection_names()[:10]
        response["connection_status"] = "Connected"
    except MarketplaceError as exc:
        logger.warning("database check failed: %s", exc.message)
        response["error"] = exc.message
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
