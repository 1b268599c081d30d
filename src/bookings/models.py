"""Booking domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import aiosqlite

from bookings.errors import ValidationError

ROLE_SHOP = "shop"
ROLE_CUSTOMER = "customer"
ROLES = {ROLE_SHOP, ROLE_CUSTOMER}

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_COMPLETED = "completed"
STATUS_CANCELED = "canceled"
BOOKING_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED, STATUS_COMPLETED, STATUS_CANCELED}
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED)


@dataclass(frozen=True, slots=True)
class Actor:
    """Caller identity handed over by the authentication layer."""

    role: str
    id: str

    @classmethod
    def parse(cls, raw: Any) -> "Actor":
        if not isinstance(raw, dict):
            raise ValidationError("actor must be an object with role and id.")
        role = str(raw.get("role") or "").strip().lower()
        actor_id = str(raw.get("id") or "").strip()
        if role not in ROLES:
            raise ValidationError("actor.role must be 'shop' or 'customer'.")
        if not actor_id:
            raise ValidationError("actor.id is required.")
        return cls(role=role, id=actor_id)

    @classmethod
    def shop(cls, shop_id: int) -> "Actor":
        return cls(role=ROLE_SHOP, id=str(shop_id))

    @classmethod
    def customer(cls, customer_id: str) -> "Actor":
        return cls(role=ROLE_CUSTOMER, id=str(customer_id))

    def is_shop(self, shop_id: int) -> bool:
        return self.role == ROLE_SHOP and self.id == str(shop_id)


class _RowModel:
    """Mixin for dataclasses built from ``aiosqlite.Row`` objects."""

    @classmethod
    def from_row(cls, row: aiosqlite.Row):
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Shop(_RowModel):
    id: int
    name: str
    owner_id: str
    address: str
    work_mode_on: bool
    created_at: str
    updated_at: str | None = None

    def __post_init__(self) -> None:
        self.work_mode_on = bool(self.work_mode_on)


@dataclass(slots=True)
class TimeSlot(_RowModel):
    id: int
    shop_id: int
    start_time: str
    end_time: str
    created_at: str


@dataclass(slots=True)
class Service(_RowModel):
    id: int
    shop_id: int
    name: str
    price: float
    duration_min: int
    created_at: str


@dataclass(slots=True)
class Booking(_RowModel):
    id: int
    shop_id: int
    slot_id: int
    service_id: int
    customer_id: str
    booking_date: str
    status: str
    payment_status: str
    created_at: str
    updated_at: str


@dataclass(slots=True)
class Notification(_RowModel):
    id: int
    target_type: str
    target_id: str
    type: str
    title: str
    message: str
    booking_id: int | None
    chat_room_id: int | None
    is_read: bool
    created_at: str

    def __post_init__(self) -> None:
        self.is_read = bool(self.is_read)


@dataclass(slots=True)
class ChatRoom(_RowModel):
    id: int
    booking_id: int
    shop_id: int
    customer_id: str
    shop_read_message_id: int
    customer_read_message_id: int
    created_at: str

    def participant(self, actor: Actor) -> bool:
        if actor.role == ROLE_SHOP:
            return actor.id == str(self.shop_id)
        return actor.id == self.customer_id

    def read_cursor(self, role: str) -> int:
        return self.shop_read_message_id if role == ROLE_SHOP else self.customer_read_message_id


@dataclass(slots=True)
class Message(_RowModel):
    id: int
    room_id: int
    sender_role: str
    sender_id: str
    content: str
    created_at: str
    # Derived from the viewer's read cursor; the stored row never changes.
    is_read: bool = False


@dataclass(slots=True)
class Review(_RowModel):
    id: int
    shop_id: int
    customer_id: str
    rating: int
    comment: str
    created_at: str
    updated_at: str | None = None
