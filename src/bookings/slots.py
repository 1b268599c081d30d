"""Bookable time windows per shop."""

from __future__ import annotations

import logging
import re

import aiosqlite

from bookings.errors import ConflictError, NotFoundError, SlotOverlapError, ValidationError
from bookings.models import ACTIVE_STATUSES, Actor, TimeSlot
from bookings.shops import ensure_shop_actor, fetch_shop
from database import Store, utc_now_iso, utc_today


logger = logging.getLogger(__name__)

TIME_OF_DAY_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
SLOT_COLUMNS = "id, shop_id, start_time, end_time, created_at"


def parse_time_of_day(raw: object, *, field: str) -> str:
    """Normalize ``H:MM``/``HH:MM`` to zero-padded ``HH:MM``."""
    match = TIME_OF_DAY_RE.match(str(raw or "").strip())
    if not match:
        raise ValidationError(f"{field} must be a time of day in HH:MM format.")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValidationError(f"{field} is not a valid time of day.")
    return f"{hours:02d}:{minutes:02d}"


def validate_window(start: object, end: object) -> tuple[str, str]:
    start_time = parse_time_of_day(start, field="start")
    end_time = parse_time_of_day(end, field="end")
    # Zero-padded HH:MM strings compare in chronological order.
    if start_time >= end_time:
        raise ValidationError("Slot start must be earlier than its end.")
    return start_time, end_time


async def fetch_slot(db: aiosqlite.Connection, slot_id: int) -> TimeSlot | None:
    async with db.execute(f"SELECT {SLOT_COLUMNS} FROM time_slots WHERE id = ?", (int(slot_id),)) as cur:
        row = await cur.fetchone()
    return TimeSlot.from_row(row) if row else None


async def _find_overlap(
    db: aiosqlite.Connection,
    shop_id: int,
    start_time: str,
    end_time: str,
    *,
    exclude_slot_id: int | None = None,
) -> TimeSlot | None:
    # Half-open windows: 09:00-10:00 and 10:00-11:00 do not overlap.
    async with db.execute(
        f"""
        SELECT {SLOT_COLUMNS}
          FROM time_slots
         WHERE shop_id = ?
           AND start_time < ?
           AND end_time > ?
           AND id != ?
         ORDER BY start_time
         LIMIT 1
        """,
        (int(shop_id), end_time, start_time, int(exclude_slot_id or 0)),
    ) as cur:
        row = await cur.fetchone()
    return TimeSlot.from_row(row) if row else None


class TimeSlotRegistry:
    """Owns the set of time slots for every shop."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def add_slot(self, shop_id: int, start: object, end: object, *, actor: Actor | None = None) -> TimeSlot:
        ensure_shop_actor(actor, shop_id)
        start_time, end_time = validate_window(start, end)

        async def _op() -> int:
            async with self.store.transaction() as db:
                if not await fetch_shop(db, shop_id):
                    raise NotFoundError("Shop not found.")
                clash = await _find_overlap(db, shop_id, start_time, end_time)
                if clash:
                    raise SlotOverlapError(
                        f"Slot {start_time}-{end_time} overlaps {clash.start_time}-{clash.end_time}."
                    )
                cursor = await db.execute(
                    "INSERT INTO time_slots (shop_id, start_time, end_time, created_at) VALUES (?, ?, ?, ?)",
                    (int(shop_id), start_time, end_time, utc_now_iso()),
                )
                return int(cursor.lastrowid)

        slot_id = await self.store.run(_op, where="slots.add")
        logger.info("Slot %s (%s-%s) added to shop %s", slot_id, start_time, end_time, shop_id)
        return await self.get_slot(slot_id)

    async def update_slot(self, slot_id: int, start: object, end: object, *, actor: Actor | None = None) -> TimeSlot:
        start_time, end_time = validate_window(start, end)

        async def _op() -> None:
            async with self.store.transaction() as db:
                slot = await fetch_slot(db, slot_id)
                if not slot:
                    raise NotFoundError("Slot not found.")
                ensure_shop_actor(actor, slot.shop_id)
                clash = await _find_overlap(db, slot.shop_id, start_time, end_time, exclude_slot_id=slot.id)
                if clash:
                    raise SlotOverlapError(
                        f"Slot {start_time}-{end_time} overlaps {clash.start_time}-{clash.end_time}."
                    )
                await db.execute(
                    "UPDATE time_slots SET start_time = ?, end_time = ? WHERE id = ?",
                    (start_time, end_time, int(slot_id)),
                )

        await self.store.run(_op, where="slots.update")
        logger.info("Slot %s moved to %s-%s", slot_id, start_time, end_time)
        return await self.get_slot(slot_id)

    async def delete_slot(self, slot_id: int, *, actor: Actor | None = None) -> None:
        """Delete a slot unless a pending/confirmed booking holds it today or later.

        Completed, canceled and past bookings keep their slot_id as a dangling
        reference.
        """
        today = utc_today().isoformat()

        async def _op() -> int:
            async with self.store.transaction() as db:
                slot = await fetch_slot(db, slot_id)
                if not slot:
                    raise NotFoundError("Slot not found.")
                ensure_shop_actor(actor, slot.shop_id)
                async with db.execute(
                    f"""
                    SELECT COUNT(*) FROM bookings
                     WHERE slot_id = ?
                       AND status IN ({", ".join("?" for _ in ACTIVE_STATUSES)})
                       AND booking_date >= ?
                    """,
                    (int(slot_id), *ACTIVE_STATUSES, today),
                ) as cur:
                    row = await cur.fetchone()
                if int(row[0] if row else 0) > 0:
                    raise ConflictError("Slot has upcoming active bookings.")
                await db.execute("DELETE FROM time_slots WHERE id = ?", (int(slot_id),))
                return slot.shop_id

        shop_id = await self.store.run(_op, where="slots.delete")
        logger.info("Slot %s removed from shop %s", slot_id, shop_id)

    async def get_slot(self, slot_id: int) -> TimeSlot:
        async with self.store.connect() as db:
            slot = await fetch_slot(db, slot_id)
        if not slot:
            raise NotFoundError("Slot not found.")
        return slot

    async def list_slots(self, shop_id: int) -> list[TimeSlot]:
        rows = await self.store.fetch_all(
            f"SELECT {SLOT_COLUMNS} FROM time_slots WHERE shop_id = ? ORDER BY start_time, id",
            (int(shop_id),),
        )
        return [TimeSlot.from_row(row) for row in rows]
