# main.py
import json
import logging
import uuid
from typing import List

from fastapi import FastAPI, HTTPException, Request, Depends, Response, WebSocket, WebSocketDisconnect, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import ValidationError

from order_service import config
from order_service.collaborators import HttpPaymentGateway, HttpEarningsLedger
from order_service.database import make_database, create_tables
from order_service.errors import OrderError
from order_service.events import DRIVER_LOCATION
from order_service.schemas import (
    Actor, DriverAvailability, DriverLocationUpdate, DriverRegister, DriverStatusUpdate,
    Order, OrderCreate, OrderStatus, RatingRequest, Role, TransitionRequest,
)
from order_service.service import OrderService
from order_service.state_machine import check_ownership
from shared.auth import decode_token

logger = logging.getLogger("order-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

app = FastAPI(title="SmartEats Order Service", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    return response


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    trace_id = getattr(request.state, "trace_id", None)
    logger.info(f"[TRACE {trace_id}] {type(exc).__name__}: {exc.reason}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.reason, "error": type(exc).__name__},
    )


# ------------------------- AUTH HELPERS -------------------------
def get_current_actor(request: Request) -> Actor:
    user_id = request.headers.get("x-user-id")
    role = request.headers.get("x-user-role")
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Missing user identity")
    try:
        role = Role(role)
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role {role}")
    return Actor(user_id=user_id, role=role, restaurant_id=request.headers.get("x-restaurant-id"))


def customer_required(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != Role.CUSTOMER:
        raise HTTPException(status_code=403, detail="Customers only")
    return actor


def driver_required(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != Role.DRIVER:
        raise HTTPException(status_code=403, detail="Drivers only")
    return actor


def admin_required(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admins only")
    return actor


def get_service(request: Request) -> OrderService:
    return request.app.state.service


# ------------------------- STARTUP / SHUTDOWN -------------------------
@app.on_event("startup")
async def startup():
    logger.info("Connecting database...")
    create_tables(config.DATABASE_URL)
    database = make_database(config.DATABASE_URL)
    await database.connect()

    payments = HttpPaymentGateway() if config.PAYMENT_SERVICE_URL else None
    ledger = HttpEarningsLedger() if config.DRIVER_SERVICE_URL else None
    app.state.database = database
    app.state.service = OrderService(database, payments=payments, ledger=ledger)
    logger.info("Startup complete.")


@app.on_event("shutdown")
async def shutdown():
    await app.state.service.close()
    logger.info("Disconnecting database...")
    await app.state.database.disconnect()


# ------------------------- ORDERS -------------------------
@app.post("/orders", response_model=Order, status_code=201)
async def create_order(
    body: OrderCreate,
    request: Request,
    actor: Actor = Depends(customer_required),
    service: OrderService = Depends(get_service),
):
    return await service.create_order(
        actor.user_id,
        body.restaurant_id,
        body.items,
        body.delivery_address,
        body.payment,
        pickup_location=body.pickup_location,
        delivery_fee=body.delivery_fee,
        coupons=body.coupons,
        special_instructions=body.special_instructions,
        preparation_minutes=body.preparation_minutes,
        trace_id=request.state.trace_id,
    )


@app.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_service),
):
    order = await service.get_order(order_id)
    # drivers may look at an offer before they accept it
    if not (actor.role == Role.DRIVER and order.status == OrderStatus.READY and not order.driver_id):
        check_ownership(order, actor)
    return order


@app.post("/orders/{order_id}/transitions", response_model=Order)
async def transition_order(
    order_id: str,
    body: TransitionRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_service),
):
    return await service.request_transition(
        order_id, actor, body.status, note=body.note, trace_id=request.state.trace_id
    )


@app.post("/orders/{order_id}/accept", response_model=Order)
async def accept_order(
    order_id: str,
    request: Request,
    actor: Actor = Depends(driver_required),
    service: OrderService = Depends(get_service),
):
    return await service.accept_assignment(order_id, actor.user_id, trace_id=request.state.trace_id)


@app.post("/orders/{order_id}/decline", response_model=Order)
async def decline_order(
    order_id: str,
    request: Request,
    actor: Actor = Depends(driver_required),
    service: OrderService = Depends(get_service),
):
    return await service.decline_offer(order_id, actor.user_id, trace_id=request.state.trace_id)


@app.post("/orders/{order_id}/rating", response_model=Order)
async def rate_order(
    order_id: str,
    body: RatingRequest,
    actor: Actor = Depends(get_current_actor),
    service: OrderService = Depends(get_service),
):
    return await service.rate_order(order_id, actor, body)


# ------------------------- DRIVERS -------------------------
@app.put("/internal/drivers/{driver_id}", response_model=DriverAvailability)
async def register_driver(
    driver_id: str,
    body: DriverRegister,
    actor: Actor = Depends(admin_required),
    service: OrderService = Depends(get_service),
):
    return await service.upsert_driver(driver_id, is_verified=body.is_verified)


@app.post("/drivers/me/status", response_model=DriverAvailability)
async def set_driver_status(
    body: DriverStatusUpdate,
    actor: Actor = Depends(driver_required),
    service: OrderService = Depends(get_service),
):
    return await service.set_driver_online(actor.user_id, body.is_online)


@app.post("/drivers/me/location", response_model=DriverAvailability)
async def set_driver_location(
    body: DriverLocationUpdate,
    request: Request,
    actor: Actor = Depends(driver_required),
    service: OrderService = Depends(get_service),
):
    return await service.update_driver_location(
        actor.user_id, body.lat, body.lng, trace_id=request.state.trace_id
    )


@app.get("/drivers/me/available-orders", response_model=List[Order])
async def available_orders(
    actor: Actor = Depends(driver_required),
    service: OrderService = Depends(get_service),
):
    return await service.available_orders(actor.user_id)


# ------------------------- LIVE UPDATES -------------------------
@app.websocket("/ws")
async def live_updates(websocket: WebSocket, token: str = Query(None)):
    identity = decode_token(token, secret=config.JWT_SECRET)
    if identity is None or identity["role"] not in {r.value for r in Role}:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    service: OrderService = websocket.app.state.service
    connection_id = str(uuid.uuid4())
    service.register_session(
        connection_id,
        identity["id"],
        identity["role"],
        restaurant_id=identity["restaurant_id"],
        channel=websocket,
    )
    await websocket.send_json({"type": "session:ready", "connection_id": connection_id})

    try:
        while True:
            msg = await websocket.receive_text()
            if msg == "ping":
                await websocket.send_text("pong")
                continue
            try:
                message = json.loads(msg)
            except ValueError:
                logger.warning(f"[WS] Ignoring non-JSON message on {connection_id}")
                continue
            if message.get("type") != DRIVER_LOCATION or identity["role"] != Role.DRIVER.value:
                continue
            try:
                location = DriverLocationUpdate(lat=message.get("lat"), lng=message.get("lng"))
                await service.update_driver_location(identity["id"], location.lat, location.lng)
            except ValidationError:
                await websocket.send_json({"type": "error", "detail": "invalid location"})
            except OrderError as e:
                await websocket.send_json({"type": "error", "detail": e.reason})
    except WebSocketDisconnect:
        pass
    finally:
        service.unregister_session(connection_id)


# ------------------------- HEALTH / METRICS -------------------------
@app.get("/health")
async def health():
    return {"status": "order-service healthy"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
