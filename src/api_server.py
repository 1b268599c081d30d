"""
HTTP API for the booking core.

All endpoints live under /api/v1 and answer JSON:
  success: {"status": "ok", ...payload}
  failure: {"status": "error", "error": "<ErrorName>", "message": "..."}

Booking admission failures carry a machine-readable reason so clients can
offer another slot instead of a generic error:
  409 {"status": "error", "error": "AdmissionError", "reason": "SlotUnavailable", ...}

Caller identity comes from the authentication layer in front of this service,
either as an "actor" object in the JSON body or as X-Actor-Role / X-Actor-Id
headers.
Inbox and chat reads, and review writes, reject calls that carry no identity.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from bookings import BookingCore
from bookings.errors import (
    AdmissionError,
    BookingCoreError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from bookings.models import Actor
from config import CFG


logger = logging.getLogger(__name__)

CORE_KEY = web.AppKey("booking_core", BookingCore)

# Checked in order: SlotOverlapError is both Conflict and Validation -> 409.
ERROR_STATUS: tuple[tuple[type[BookingCoreError], int, str], ...] = (
    (AdmissionError, 409, "AdmissionError"),
    (ConflictError, 409, "ConflictError"),
    (InvalidTransitionError, 400, "InvalidTransition"),
    (ValidationError, 400, "ValidationError"),
    (NotFoundError, 404, "NotFound"),
    (ForbiddenError, 403, "Forbidden"),
)


def _error_response(status: int, error: str, message: str, **extra: Any) -> web.Response:
    return web.json_response({"status": "error", "error": error, "message": message, **extra}, status=status)


def _ok(payload: dict[str, Any] | None = None, *, status: int = 200) -> web.Response:
    return web.json_response({"status": "ok", **(payload or {})}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate domain errors into HTTP answers."""
    try:
        return await handler(request)
    except BookingCoreError as error:
        for error_cls, status, code in ERROR_STATUS:
            if isinstance(error, error_cls):
                extra: dict[str, Any] = {}
                if isinstance(error, AdmissionError):
                    extra["reason"] = error.reason
                logger.debug("%s %s -> %s: %s", request.method, request.path, status, error)
                return _error_response(status, code, str(error), **extra)
        raise
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return _error_response(500, "InternalError", "Internal server error")


def _core(request: web.Request) -> BookingCore:
    return request.app[CORE_KEY]


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _actor(request: web.Request, data: dict[str, Any] | None = None, *, required: bool = False) -> Actor | None:
    """Resolve caller identity from body, headers or viewer_* query params."""
    if data and data.get("actor") is not None:
        return Actor.parse(data["actor"])
    role = request.headers.get("X-Actor-Role") or request.query.get("viewer_role")
    actor_id = request.headers.get("X-Actor-Id") or request.query.get("viewer_id")
    if role or actor_id:
        return Actor.parse({"role": role, "id": actor_id})
    if required:
        raise ValidationError("actor is required")
    return None


def _int_param(request: web.Request, name: str) -> int:
    return int(request.match_info[name])


def _field(data: dict[str, Any], name: str) -> Any:
    """Body field by snake_case name, falling back to its camelCase spelling."""
    if name in data:
        return data[name]
    head, *rest = name.split("_")
    return data.get(head + "".join(part.title() for part in rest))


def _body_int(data: dict[str, Any], name: str) -> int:
    value = _field(data, name)
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer") from None


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "shopbook-api",
    })


# ============ Shops ============

async def create_shop_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    shop = await _core(request).shops.register_shop(
        data.get("name"),
        data.get("owner_id"),
        data.get("address"),
    )
    return _ok({"shop": shop.to_dict()}, status=201)


async def get_shop_handler(request: web.Request) -> web.Response:
    shop = await _core(request).shops.get_shop(_int_param(request, "shop_id"))
    return _ok({"shop": shop.to_dict()})


async def update_shop_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    shop = await _core(request).shops.update_profile(
        _int_param(request, "shop_id"),
        name=data.get("name"),
        address=data.get("address"),
        actor=_actor(request, data),
    )
    return _ok({"shop": shop.to_dict()})


async def toggle_work_mode_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    shop_id = _int_param(request, "shop_id")
    state = await _core(request).gate.toggle_work_mode(shop_id, actor=_actor(request, data))
    return _ok({"shop_id": shop_id, "work_mode_on": state})


async def get_work_mode_handler(request: web.Request) -> web.Response:
    shop_id = _int_param(request, "shop_id")
    state = await _core(request).gate.is_open(shop_id)
    return _ok({"shop_id": shop_id, "work_mode_on": state})


async def owner_shops_handler(request: web.Request) -> web.Response:
    shops = await _core(request).shops.list_shops_by_owner(request.match_info["owner_id"])
    return _ok({"shops": [shop.to_dict() for shop in shops]})


# ============ Slots ============

async def list_slots_handler(request: web.Request) -> web.Response:
    slots = await _core(request).slots.list_slots(_int_param(request, "shop_id"))
    return _ok({"slots": [slot.to_dict() for slot in slots]})


async def add_slot_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    slot = await _core(request).slots.add_slot(
        _int_param(request, "shop_id"),
        data.get("start"),
        data.get("end"),
        actor=_actor(request, data),
    )
    return _ok({"slot_id": slot.id, "slot": slot.to_dict()}, status=201)


async def _slot_of_shop(request: web.Request) -> int:
    slot_id = _int_param(request, "slot_id")
    slot = await _core(request).slots.get_slot(slot_id)
    if slot.shop_id != _int_param(request, "shop_id"):
        raise NotFoundError("Slot not found.")
    return slot_id


async def update_slot_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    slot_id = await _slot_of_shop(request)
    slot = await _core(request).slots.update_slot(
        slot_id,
        data.get("start"),
        data.get("end"),
        actor=_actor(request, data),
    )
    return _ok({"slot": slot.to_dict()})


async def delete_slot_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    slot_id = await _slot_of_shop(request)
    await _core(request).slots.delete_slot(slot_id, actor=_actor(request, data))
    return _ok({"slot_id": slot_id})


# ============ Services ============

async def list_services_handler(request: web.Request) -> web.Response:
    services = await _core(request).shops.list_services(_int_param(request, "shop_id"))
    return _ok({"services": [service.to_dict() for service in services]})


async def add_service_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    service = await _core(request).shops.add_service(
        _int_param(request, "shop_id"),
        data.get("name"),
        data.get("price"),
        data.get("duration_min"),
        actor=_actor(request, data),
    )
    return _ok({"service": service.to_dict()}, status=201)


async def _service_of_shop(request: web.Request) -> int:
    service_id = _int_param(request, "service_id")
    service = await _core(request).shops.get_service(service_id)
    if service.shop_id != _int_param(request, "shop_id"):
        raise NotFoundError("Service not found.")
    return service_id


async def update_service_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    service_id = await _service_of_shop(request)
    service = await _core(request).shops.update_service(
        service_id,
        name=data.get("name"),
        price=data.get("price"),
        duration_min=data.get("duration_min"),
        actor=_actor(request, data),
    )
    return _ok({"service": service.to_dict()})


async def delete_service_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    service_id = await _service_of_shop(request)
    await _core(request).shops.delete_service(service_id, actor=_actor(request, data))
    return _ok({"service_id": service_id})


# ============ Bookings ============

async def create_booking_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    booking = await _core(request).ledger.create_booking(
        _body_int(data, "shop_id"),
        _body_int(data, "slot_id"),
        _body_int(data, "service_id"),
        _field(data, "customer_id"),
        data.get("date"),
        actor=_actor(request, data),
    )
    return _ok({"booking": booking.to_dict()}, status=201)


async def get_booking_handler(request: web.Request) -> web.Response:
    booking = await _core(request).ledger.get_booking(
        _int_param(request, "booking_id"),
        actor=_actor(request),
    )
    return _ok({"booking": booking.to_dict()})


async def update_booking_status_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    booking = await _core(request).ledger.update_status(
        _int_param(request, "booking_id"),
        data.get("status"),
        _actor(request, data, required=True),
    )
    return _ok({"booking": booking.to_dict()})


async def update_payment_status_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    booking = await _core(request).ledger.set_payment_status(
        _int_param(request, "booking_id"),
        _field(data, "payment_status"),
    )
    return _ok({"booking": booking.to_dict()})


async def shop_bookings_handler(request: web.Request) -> web.Response:
    bookings = await _core(request).ledger.list_bookings(
        shop_id=_int_param(request, "shop_id"),
        status=request.query.get("status"),
        date_from=request.query.get("date_from"),
        date_to=request.query.get("date_to"),
    )
    return _ok({"bookings": [booking.to_dict() for booking in bookings]})


async def customer_bookings_handler(request: web.Request) -> web.Response:
    bookings = await _core(request).ledger.list_bookings(
        customer_id=request.match_info["customer_id"],
        status=request.query.get("status"),
        date_from=request.query.get("date_from"),
        date_to=request.query.get("date_to"),
    )
    return _ok({"bookings": [booking.to_dict() for booking in bookings]})


# ============ Notifications ============

async def list_notifications_handler(request: web.Request) -> web.Response:
    target_type = request.match_info["target_type"]
    target_id = request.match_info["target_id"]
    actor = _actor(request, required=True)
    dispatcher = _core(request).notifications
    items = await dispatcher.list_for(
        target_type,
        target_id,
        unread_only=request.query.get("unread") in {"1", "true", "yes"},
        before=request.query.get("before"),
        actor=actor,
    )
    unread = await dispatcher.unread_count(target_type, target_id, actor=actor)
    next_before = items[-1].id if len(items) >= CFG.notifications_page_limit else None
    return _ok({
        "items": [item.to_dict() for item in items],
        "unread_count": unread,
        "next_before": next_before,
    })


async def mark_notification_read_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    notification = await _core(request).notifications.mark_read(
        _int_param(request, "notification_id"),
        actor=_actor(request, data, required=True),
    )
    return _ok({"notification": notification.to_dict()})


async def mark_all_notifications_read_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    changed = await _core(request).notifications.mark_all_read(
        request.match_info["target_type"],
        request.match_info["target_id"],
        actor=_actor(request, data, required=True),
    )
    return _ok({"marked": changed, "unread_count": 0})


# ============ Reviews ============

async def add_review_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    review = await _core(request).reviews.add_review(
        _body_int(data, "shop_id"),
        _field(data, "customer_id"),
        data.get("rating"),
        data.get("comment"),
        actor=_actor(request, data, required=True),
    )
    return _ok({"review": review.to_dict()}, status=201)


async def list_reviews_handler(request: web.Request) -> web.Response:
    shop_id = _int_param(request, "shop_id")
    reviews = _core(request).reviews
    items = await reviews.list_reviews(shop_id)
    return _ok({
        "reviews": [review.to_dict() for review in items],
        "rating": await reviews.rating_summary(shop_id),
    })


async def update_review_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    review = await _core(request).reviews.update_review(
        _int_param(request, "review_id"),
        rating=data.get("rating"),
        comment=data.get("comment"),
        actor=_actor(request, data, required=True),
    )
    return _ok({"review": review.to_dict()})


async def delete_review_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    review_id = _int_param(request, "review_id")
    await _core(request).reviews.delete_review(review_id, actor=_actor(request, data, required=True))
    return _ok({"review_id": review_id})


# ============ Chat ============

async def open_room_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    room = await _core(request).chat.open_room(
        _body_int(data, "booking_id"),
        _field(data, "shop_id"),
        _field(data, "customer_id"),
        actor=_actor(request, data),
    )
    return _ok({"room": room.to_dict()})


async def post_message_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    message = await _core(request).chat.post_message(
        _int_param(request, "room_id"),
        _actor(request, data, required=True),
        data.get("content"),
    )
    return _ok({"message": message.to_dict()}, status=201)


async def list_messages_handler(request: web.Request) -> web.Response:
    room_id = _int_param(request, "room_id")
    viewer = _actor(request, required=True)
    chat = _core(request).chat
    messages = await chat.list_messages(room_id, since=request.query.get("since"), viewer=viewer)
    return _ok({
        "messages": [message.to_dict() for message in messages],
        "unread_count": await chat.unread_messages(room_id, viewer),
    })


async def mark_room_read_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    cursor = await _core(request).chat.mark_room_read(
        _int_param(request, "room_id"),
        _actor(request, data, required=True),
    )
    return _ok({"read_message_id": cursor})


def create_api_app(core: BookingCore) -> web.Application:
    """Create the aiohttp application bound to a booking core."""
    app = web.Application(middlewares=[error_middleware])
    app[CORE_KEY] = core

    app.router.add_get("/api/v1/health", health_handler)
    app.router.add_get("/", health_handler)

    app.router.add_post("/api/v1/shops", create_shop_handler)
    app.router.add_get("/api/v1/shops/{shop_id:\\d+}", get_shop_handler)
    app.router.add_patch("/api/v1/shops/{shop_id:\\d+}", update_shop_handler)
    app.router.add_get("/api/v1/shops/{shop_id:\\d+}/work-mode", get_work_mode_handler)
    app.router.add_patch("/api/v1/shops/{shop_id:\\d+}/work-mode", toggle_work_mode_handler)
    app.router.add_get("/api/v1/owners/{owner_id}/shops", owner_shops_handler)

    app.router.add_get("/api/v1/shops/{shop_id:\\d+}/slots", list_slots_handler)
    app.router.add_post("/api/v1/shops/{shop_id:\\d+}/slots", add_slot_handler)
    app.router.add_put("/api/v1/shops/{shop_id:\\d+}/slots/{slot_id:\\d+}", update_slot_handler)
    app.router.add_delete("/api/v1/shops/{shop_id:\\d+}/slots/{slot_id:\\d+}", delete_slot_handler)

    app.router.add_get("/api/v1/shops/{shop_id:\\d+}/services", list_services_handler)
    app.router.add_post("/api/v1/shops/{shop_id:\\d+}/services", add_service_handler)
    app.router.add_put("/api/v1/shops/{shop_id:\\d+}/services/{service_id:\\d+}", update_service_handler)
    app.router.add_delete("/api/v1/shops/{shop_id:\\d+}/services/{service_id:\\d+}", delete_service_handler)

    app.router.add_post("/api/v1/bookings", create_booking_handler)
    app.router.add_get("/api/v1/bookings/{booking_id:\\d+}", get_booking_handler)
    app.router.add_patch("/api/v1/bookings/{booking_id:\\d+}/status", update_booking_status_handler)
    app.router.add_patch("/api/v1/bookings/{booking_id:\\d+}/payment-status", update_payment_status_handler)
    app.router.add_get("/api/v1/shops/{shop_id:\\d+}/bookings", shop_bookings_handler)
    app.router.add_get("/api/v1/customers/{customer_id}/bookings", customer_bookings_handler)

    app.router.add_get("/api/v1/notifications/{target_type}/{target_id}", list_notifications_handler)
    app.router.add_put("/api/v1/notifications/{notification_id:\\d+}/read", mark_notification_read_handler)
    app.router.add_put("/api/v1/notifications/{target_type}/{target_id}/read-all", mark_all_notifications_read_handler)

    app.router.add_post("/api/v1/reviews", add_review_handler)
    app.router.add_get("/api/v1/shops/{shop_id:\\d+}/reviews", list_reviews_handler)
    app.router.add_put("/api/v1/reviews/{review_id:\\d+}", update_review_handler)
    app.router.add_delete("/api/v1/reviews/{review_id:\\d+}", delete_review_handler)

    app.router.add_post("/api/v1/chat-rooms", open_room_handler)
    app.router.add_post("/api/v1/chat-rooms/{room_id:\\d+}/messages", post_message_handler)
    app.router.add_get("/api/v1/chat-rooms/{room_id:\\d+}/messages", list_messages_handler)
    app.router.add_put("/api/v1/chat-rooms/{room_id:\\d+}/read", mark_room_read_handler)

    return app


async def start_api_server(app: web.Application) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, CFG.api_host, CFG.api_port)
    await site.start()

    logger.info("API server started on %s:%s", CFG.api_host, CFG.api_port)

    return runner


async def stop_api_server(runner: web.AppRunner):
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
