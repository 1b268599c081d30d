#!/usr/bin/env python3
"""
Dynamic smoke test: booking admission under concurrency.

Validates:
- N concurrent requests for the same (slot, date) admit exactly one booking,
  every other request fails with reason SlotUnavailable;
- the shop gets exactly one booking_created notification;
- a canceled booking frees its (slot, date) for a new request;
- other dates and other slots stay independent.

Run:
  python3 scripts/smoke_booking_concurrency.py
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
import tempfile
from datetime import timedelta
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
CONCURRENT_REQUESTS = 50


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from bookings import build_booking_core
    from bookings.errors import SlotUnavailableError
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path), busy_timeout_ms=30_000, retries=8)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Busy Barber", "owner-1")
    owner = Actor.shop(shop.id)
    slot = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    spare_slot = await core.slots.add_slot(shop.id, "10:00", "11:00", actor=owner)
    service = await core.shops.add_service(shop.id, "Haircut", 25, 30, actor=owner)
    day = (utc_today() + timedelta(days=1)).isoformat()

    results = await asyncio.gather(
        *(
            core.ledger.create_booking(shop.id, slot.id, service.id, f"cust-{idx}", day)
            for idx in range(CONCURRENT_REQUESTS)
        ),
        return_exceptions=True,
    )
    admitted = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    _assert(len(admitted) == 1, f"expected exactly one admitted booking, got {len(admitted)}")
    _assert(
        all(isinstance(r, SlotUnavailableError) for r in rejected),
        f"unexpected rejection types: {[type(r).__name__ for r in rejected if not isinstance(r, SlotUnavailableError)]}",
    )
    _assert(len(rejected) == CONCURRENT_REQUESTS - 1, f"unexpected rejection count: {len(rejected)}")
    _assert(all(r.reason == "SlotUnavailable" for r in rejected), "rejections must carry SlotUnavailable reason")

    winner = admitted[0]
    live = await core.ledger.list_bookings(shop_id=shop.id, date_from=day, date_to=day)
    _assert([b.id for b in live] == [winner.id], f"ledger must hold only the winner: {live}")

    shop_inbox = await core.notifications.list_for("shop", shop.id)
    created = [n for n in shop_inbox if n.type == "booking_created"]
    _assert(len(created) == 1 and created[0].booking_id == winner.id, f"unexpected shop notifications: {created}")

    # Other dates and slots are independent.
    next_day = (utc_today() + timedelta(days=2)).isoformat()
    await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-late", next_day)
    await core.ledger.create_booking(shop.id, spare_slot.id, service.id, "cust-late", day)

    await core.ledger.update_status(winner.id, "canceled", Actor.customer(winner.customer_id))
    rebooked = await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-rebook", day)
    _assert(rebooked.id != winner.id, "canceled booking must free its slot for a new booking")

    try:
        await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-too-late", day)
    except SlotUnavailableError:
        pass
    else:
        raise AssertionError("slot must be taken again after rebooking")

    history = await core.ledger.list_bookings(shop_id=shop.id, date_from=day, date_to=day)
    _assert([b.status for b in history].count("canceled") == 1, f"canceled booking must stay in history: {history}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-booking-concurrency-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: booking concurrency smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_booking_concurrency() -> None:
    main()


if __name__ == "__main__":
    main()
