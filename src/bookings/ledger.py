"""Booking records and their lifecycle."""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, timedelta

import aiosqlite

from bookings.availability import read_work_mode
from bookings.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ShopClosedError,
    SlotUnavailableError,
    ValidationError,
)
from bookings.models import (
    BOOKING_STATUSES,
    ROLE_CUSTOMER,
    ROLE_SHOP,
    STATUS_CANCELED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    Actor,
    Booking,
)
from bookings.notifications import TYPE_BOOKING_CREATED, TYPE_BOOKING_STATUS_CHANGED, insert_notification
from bookings.shops import fetch_service, fetch_shop
from bookings.slots import fetch_slot
from config import CFG
from database import Store, utc_now_iso, utc_today


logger = logging.getLogger(__name__)

BOOKING_COLUMNS = (
    "id, shop_id, slot_id, service_id, customer_id, booking_date, status, payment_status, created_at, updated_at"
)
MAX_PAYMENT_STATUS_LENGTH = 32

# (from, to) -> roles allowed to make the move. Anything else is illegal.
TRANSITIONS: dict[tuple[str, str], frozenset[str]] = {
    (STATUS_PENDING, STATUS_CONFIRMED): frozenset({ROLE_SHOP}),
    (STATUS_PENDING, STATUS_CANCELED): frozenset({ROLE_SHOP, ROLE_CUSTOMER}),
    (STATUS_CONFIRMED, STATUS_CANCELED): frozenset({ROLE_SHOP, ROLE_CUSTOMER}),
    (STATUS_CONFIRMED, STATUS_COMPLETED): frozenset({ROLE_SHOP}),
}
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELED})


def can_transition(current: str, requested: str, role: str) -> bool:
    return role in TRANSITIONS.get((current, requested), frozenset())


def parse_booking_date(raw: object, *, today: date | None = None) -> str:
    """Validate an ISO booking date against today and the booking horizon."""
    try:
        value = date.fromisoformat(str(raw or "").strip())
    except ValueError:
        raise ValidationError("date must be in YYYY-MM-DD format.") from None
    ref = today or utc_today()
    if value < ref:
        raise ValidationError("Booking date is in the past.")
    if CFG.booking_horizon_days and value > ref + timedelta(days=CFG.booking_horizon_days):
        raise ValidationError(f"Bookings are accepted at most {CFG.booking_horizon_days} days ahead.")
    return value.isoformat()


def _parse_filter_date(raw: object, field: str) -> str | None:
    if raw is None or raw == "":
        return None
    try:
        return date.fromisoformat(str(raw).strip()).isoformat()
    except ValueError:
        raise ValidationError(f"{field} must be in YYYY-MM-DD format.") from None


def _is_party(booking: Booking, actor: Actor) -> bool:
    if actor.role == ROLE_SHOP:
        return actor.id == str(booking.shop_id)
    return actor.id == booking.customer_id


def _status_message(booking: Booking, status: str, actor: Actor) -> tuple[str, str]:
    who = "The shop" if actor.role == ROLE_SHOP else "The customer"
    title = f"Booking {status}"
    return title, f"{who} marked booking #{booking.id} for {booking.booking_date} as {status}."


async def fetch_booking(db: aiosqlite.Connection, booking_id: int) -> Booking | None:
    async with db.execute(f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE id = ?", (int(booking_id),)) as cur:
        row = await cur.fetchone()
    return Booking.from_row(row) if row else None


class BookingLedger:
    """Admits bookings against slot capacity and drives their lifecycle.

    Both admission and status changes run inside ``BEGIN IMMEDIATE``
    transactions: SQLite grants the write lock to one connection at a time,
    so the availability check and the insert for a ``(slot, date)`` pair are
    never interleaved with a competing request. The partial unique index on
    ``bookings(slot_id, booking_date)`` backs the same rule at storage level.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def create_booking(
        self,
        shop_id: int,
        slot_id: int,
        service_id: int,
        customer_id: str,
        booking_date: object,
        *,
        actor: Actor | None = None,
    ) -> Booking:
        customer = str(customer_id or "").strip()
        if not customer:
            raise ValidationError("customer_id is required.")
        if actor is not None and not (actor.role == ROLE_CUSTOMER and actor.id == customer):
            raise ForbiddenError("Bookings can only be made by the customer themselves.")

        async def _op() -> int:
            async with self.store.transaction() as db:
                shop = await fetch_shop(db, shop_id)
                if not shop:
                    raise NotFoundError("Shop not found.")
                # Read inside the write transaction: never a stale copy.
                if not await read_work_mode(db, shop_id):
                    raise ShopClosedError("The shop is not accepting bookings right now.")
                slot = await fetch_slot(db, slot_id)
                if not slot or slot.shop_id != shop.id:
                    raise NotFoundError("Slot not found for this shop.")
                day = parse_booking_date(booking_date)
                service = await fetch_service(db, service_id)
                if not service or service.shop_id != shop.id:
                    raise NotFoundError("Service not found for this shop.")

                async with db.execute(
                    "SELECT id FROM bookings WHERE slot_id = ? AND booking_date = ? AND status != ? LIMIT 1",
                    (slot.id, day, STATUS_CANCELED),
                ) as cur:
                    taken = await cur.fetchone()
                if taken:
                    raise SlotUnavailableError("This slot is already booked for that date.")

                now = utc_now_iso()
                try:
                    cursor = await db.execute(
                        """
                        INSERT INTO bookings (shop_id, slot_id, service_id, customer_id, booking_date,
                                              status, payment_status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, 'unpaid', ?, ?)
                        """,
                        (shop.id, slot.id, service.id, customer, day, STATUS_PENDING, now, now),
                    )
                except sqlite3.IntegrityError:
                    raise SlotUnavailableError("This slot is already booked for that date.") from None
                booking_id = int(cursor.lastrowid)

                await insert_notification(
                    db,
                    target_type=ROLE_SHOP,
                    target_id=shop.id,
                    notification_type=TYPE_BOOKING_CREATED,
                    title="New booking",
                    message=(
                        f"New booking #{booking_id}: {service.name} on {day} "
                        f"at {slot.start_time}-{slot.end_time}."
                    ),
                    booking_id=booking_id,
                )
                return booking_id

        try:
            booking_id = await self.store.run(_op, where="bookings.create")
        except (ShopClosedError, SlotUnavailableError) as error:
            logger.info(
                "Booking rejected (%s): shop=%s slot=%s date=%s customer=%s",
                error.reason,
                shop_id,
                slot_id,
                booking_date,
                customer,
            )
            raise
        logger.info("Booking %s created: shop=%s slot=%s date=%s", booking_id, shop_id, slot_id, booking_date)
        return await self.get_booking(booking_id)

    async def update_status(self, booking_id: int, new_status: str, actor: Actor) -> Booking:
        """Apply one lifecycle transition and notify the counterparty."""
        requested = str(new_status or "").strip().lower()
        if requested not in BOOKING_STATUSES:
            raise ValidationError(f"Unknown booking status: {new_status!r}.")

        async def _op() -> Booking:
            async with self.store.transaction() as db:
                booking = await fetch_booking(db, booking_id)
                if not booking:
                    raise NotFoundError("Booking not found.")
                if not _is_party(booking, actor):
                    raise ForbiddenError("Only the booking's shop or customer can change it.")
                if not can_transition(booking.status, requested, actor.role):
                    raise InvalidTransitionError(booking.status, requested, actor.role)

                # Conditional on the status we validated against.
                cursor = await db.execute(
                    "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (requested, utc_now_iso(), booking.id, booking.status),
                )
                if cursor.rowcount != 1:
                    raise InvalidTransitionError(booking.status, requested, actor.role)

                title, message = _status_message(booking, requested, actor)
                if actor.role == ROLE_SHOP:
                    target_type, target_id = ROLE_CUSTOMER, booking.customer_id
                else:
                    target_type, target_id = ROLE_SHOP, booking.shop_id
                await insert_notification(
                    db,
                    target_type=target_type,
                    target_id=target_id,
                    notification_type=TYPE_BOOKING_STATUS_CHANGED,
                    title=title,
                    message=message,
                    booking_id=booking.id,
                )
                return booking

        previous = await self.store.run(_op, where="bookings.update_status")
        logger.info(
            "Booking %s: %s -> %s by %s %s",
            booking_id,
            previous.status,
            requested,
            actor.role,
            actor.id,
        )
        return await self.get_booking(booking_id)

    async def set_payment_status(self, booking_id: int, payment_status: str) -> Booking:
        """Record the tag reported by the payment provider."""
        tag = str(payment_status or "").strip().lower()
        if not tag or len(tag) > MAX_PAYMENT_STATUS_LENGTH:
            raise ValidationError("payment_status must be a short non-empty tag.")

        async def _op() -> None:
            async with self.store.transaction() as db:
                cursor = await db.execute(
                    "UPDATE bookings SET payment_status = ?, updated_at = ? WHERE id = ?",
                    (tag, utc_now_iso(), int(booking_id)),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Booking not found.")

        await self.store.run(_op, where="bookings.payment_status")
        logger.info("Booking %s payment status -> %s", booking_id, tag)
        return await self.get_booking(booking_id)

    async def get_booking(self, booking_id: int, *, actor: Actor | None = None) -> Booking:
        async with self.store.connect() as db:
            booking = await fetch_booking(db, booking_id)
        if not booking:
            raise NotFoundError("Booking not found.")
        if actor is not None and not _is_party(booking, actor):
            raise ForbiddenError("Only the booking's shop or customer can view it.")
        return booking

    async def list_bookings(
        self,
        *,
        shop_id: int | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        date_from: object = None,
        date_to: object = None,
    ) -> list[Booking]:
        """List bookings of one shop or one customer in insertion order."""
        if (shop_id is None) == (customer_id is None):
            raise ValidationError("Pass exactly one of shop_id or customer_id.")

        clauses: list[str] = []
        params: list[object] = []
        if shop_id is not None:
            clauses.append("shop_id = ?")
            params.append(int(shop_id))
        else:
            clauses.append("customer_id = ?")
            params.append(str(customer_id))
        if status:
            wanted = str(status).strip().lower()
            if wanted not in BOOKING_STATUSES:
                raise ValidationError(f"Unknown booking status: {status!r}.")
            clauses.append("status = ?")
            params.append(wanted)
        lower = _parse_filter_date(date_from, "date_from")
        upper = _parse_filter_date(date_to, "date_to")
        if lower:
            clauses.append("booking_date >= ?")
            params.append(lower)
        if upper:
            clauses.append("booking_date <= ?")
            params.append(upper)

        rows = await self.store.fetch_all(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE {' AND '.join(clauses)} ORDER BY id",
            params,
        )
        return [Booking.from_row(row) for row in rows]
