#!/usr/bin/env python3
"""
Dynamic smoke test: time slot registry policy.

Validates:
- slot windows must satisfy start < end and use HH:MM times;
- overlapping windows of the same shop are rejected, touching ones are not;
- a slot may be re-saved over its own window;
- only the owning shop can manage its slots;
- a slot held by an upcoming pending/confirmed booking cannot be deleted,
  and becomes deletable once that booking is canceled.

Run:
  python3 scripts/smoke_slot_registry_policy.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app")])
    for root in candidates:
        if (root / "src" / "bookings").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with src/bookings")


REPO_ROOT = _resolve_repo_root()


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _expect(exc_type: type[BaseException], coro, msg: str) -> BaseException:
    try:
        await coro
    except exc_type as error:
        return error
    raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from bookings import build_booking_core
    from bookings.errors import (
        ConflictError,
        ForbiddenError,
        NotFoundError,
        SlotOverlapError,
        ValidationError,
    )
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path))
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Slot Barber", "owner-1")
    other = await core.shops.register_shop("Other Barber", "owner-2")
    owner = Actor.shop(shop.id)

    first = await core.slots.add_slot(shop.id, "9:00", "10:00", actor=owner)
    _assert(first.start_time == "09:00" and first.end_time == "10:00", f"unexpected normalized window: {first}")

    touching = await core.slots.add_slot(shop.id, "10:00", "11:00", actor=owner)
    _assert(touching.id != first.id, "touching slot must be accepted as a new slot")

    overlap = await _expect(
        SlotOverlapError,
        core.slots.add_slot(shop.id, "09:30", "10:30", actor=owner),
        "overlapping slot must be rejected",
    )
    _assert(isinstance(overlap, ConflictError), "overlap must be reported as a conflict")
    _assert(isinstance(overlap, ValidationError), "overlap must also be a validation failure")

    # Same window in another shop is independent.
    await core.slots.add_slot(other.id, "09:30", "10:30")

    await _expect(ValidationError, core.slots.add_slot(shop.id, "12:00", "12:00", actor=owner), "start == end must fail")
    await _expect(ValidationError, core.slots.add_slot(shop.id, "13:00", "12:00", actor=owner), "start > end must fail")
    await _expect(ValidationError, core.slots.add_slot(shop.id, "9am", "10am", actor=owner), "bad format must fail")
    await _expect(ValidationError, core.slots.add_slot(shop.id, "24:00", "24:30", actor=owner), "hour 24 must fail")
    await _expect(NotFoundError, core.slots.add_slot(999_999, "08:00", "09:00"), "unknown shop must fail")

    await _expect(
        ForbiddenError,
        core.slots.add_slot(shop.id, "14:00", "15:00", actor=Actor.shop(other.id)),
        "foreign shop must not add slots",
    )
    await _expect(
        ForbiddenError,
        core.slots.add_slot(shop.id, "14:00", "15:00", actor=Actor.customer("cust-1")),
        "customer must not add slots",
    )

    same = await core.slots.update_slot(first.id, "09:00", "10:00", actor=owner)
    _assert(same.start_time == "09:00", "re-saving own window must succeed")
    await _expect(
        SlotOverlapError,
        core.slots.update_slot(first.id, "09:00", "10:30", actor=owner),
        "update into a neighbour must be rejected",
    )
    moved = await core.slots.update_slot(first.id, "08:00", "09:00", actor=owner)
    _assert(moved.start_time == "08:00" and moved.end_time == "09:00", f"slot not moved: {moved}")

    slots = await core.slots.list_slots(shop.id)
    _assert([s.start_time for s in slots] == ["08:00", "10:00"], f"unexpected slot order: {slots}")

    service = await core.shops.add_service(shop.id, "Haircut", 25, 30, actor=owner)
    booking = await core.ledger.create_booking(shop.id, touching.id, service.id, "cust-1", utc_today().isoformat())

    await _expect(
        ConflictError,
        core.slots.delete_slot(touching.id, actor=owner),
        "slot with an upcoming booking must not be deletable",
    )
    await _expect(
        ConflictError,
        core.shops.delete_service(service.id, actor=owner),
        "service with an upcoming booking must not be deletable",
    )

    await core.ledger.update_status(booking.id, "canceled", Actor.customer("cust-1"))
    await core.slots.delete_slot(touching.id, actor=owner)
    await _expect(NotFoundError, core.slots.get_slot(touching.id), "deleted slot must be gone")

    # History keeps the dangling slot reference.
    kept = await core.ledger.get_booking(booking.id)
    _assert(kept.slot_id == touching.id, "booking must keep its slot id after slot deletion")

    await core.shops.delete_service(service.id, actor=owner)
    _assert(await core.shops.list_services(shop.id) == [], "service list must be empty after deletion")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-slots-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: slot registry policy smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_slot_registry_policy() -> None:
    main()


if __name__ == "__main__":
    main()
