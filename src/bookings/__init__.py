"""Booking core entrypoints and component factory."""

from dataclasses import dataclass

from bookings.availability import AvailabilityGate
from bookings.chat import ChatSessionManager
from bookings.ledger import BookingLedger
from bookings.notifications import NotificationDispatcher
from bookings.reviews import ReviewBook
from bookings.shops import ShopDirectory
from bookings.slots import TimeSlotRegistry
from database import Store


@dataclass(frozen=True)
class BookingCore:
    """All booking components wired to one shared store."""

    store: Store
    shops: ShopDirectory
    slots: TimeSlotRegistry
    gate: AvailabilityGate
    ledger: BookingLedger
    notifications: NotificationDispatcher
    chat: ChatSessionManager
    reviews: ReviewBook


def build_booking_core(store: Store) -> BookingCore:
    return BookingCore(
        store=store,
        shops=ShopDirectory(store),
        slots=TimeSlotRegistry(store),
        gate=AvailabilityGate(store),
        ledger=BookingLedger(store),
        notifications=NotificationDispatcher(store),
        chat=ChatSessionManager(store),
        reviews=ReviewBook(store),
    )


__all__ = [
    "AvailabilityGate",
    "BookingCore",
    "BookingLedger",
    "ChatSessionManager",
    "NotificationDispatcher",
    "ReviewBook",
    "ShopDirectory",
    "TimeSlotRegistry",
    "build_booking_core",
]
