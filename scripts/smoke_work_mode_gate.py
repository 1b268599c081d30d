#!/usr/bin/env python3
"""
Dynamic smoke test: shop work mode gate.

Validates:
- new shops start accepting bookings;
- while work mode is off, booking attempts fail with reason ShopClosed and
  nothing is written;
- concurrent toggles serialize: each caller sees a distinct flip and the
  final state matches the number of flips;
- only the shop itself can switch its work mode.

Run:
  python3 scripts/smoke_work_mode_gate.py
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
TOGGLES = 12


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from bookings import build_booking_core
    from bookings.errors import AdmissionError, ForbiddenError, NotFoundError, ShopClosedError
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Gate Salon", "owner-1")
    owner = Actor.shop(shop.id)
    _assert(shop.work_mode_on is True, "new shop must be open")
    _assert(await core.gate.is_open(shop.id) is True, "is_open must report open")

    slot = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    service = await core.shops.add_service(shop.id, "Manicure", 30, 45, actor=owner)
    today = utc_today().isoformat()

    state = await core.gate.toggle_work_mode(shop.id, actor=owner)
    _assert(state is False, "first toggle must close the shop")

    try:
        await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-1", today)
    except ShopClosedError as error:
        _assert(isinstance(error, AdmissionError), "ShopClosed must be an admission error")
        _assert(error.reason == "ShopClosed", f"unexpected reason: {error.reason}")
    else:
        raise AssertionError("booking must be rejected while work mode is off")
    _assert(await core.ledger.list_bookings(shop_id=shop.id) == [], "rejected booking must not be stored")

    state = await core.gate.toggle_work_mode(shop.id, actor=owner)
    _assert(state is True, "second toggle must reopen the shop")
    booking = await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-1", today)
    _assert(booking.status == "pending", "booking must be admitted once reopened")

    # Toggles from concurrent requests serialize on the write lock.
    results = await asyncio.gather(*(core.gate.toggle_work_mode(shop.id, actor=owner) for _ in range(TOGGLES)))
    _assert(results.count(False) == TOGGLES // 2, f"toggle results not alternating: {results}")
    _assert(results.count(True) == TOGGLES // 2, f"toggle results not alternating: {results}")
    _assert(await core.gate.is_open(shop.id) is True, "even number of flips must leave the shop open")

    _assert(await core.gate.set_work_mode(shop.id, False, actor=owner) is False, "set_work_mode(False) failed")
    _assert(await core.gate.is_open(shop.id) is False, "explicit close not persisted")
    await core.gate.set_work_mode(shop.id, True, actor=owner)

    for intruder in (Actor.customer("cust-1"), Actor.shop(shop.id + 1000)):
        try:
            await core.gate.toggle_work_mode(shop.id, actor=intruder)
        except ForbiddenError:
            pass
        else:
            raise AssertionError(f"{intruder} must not toggle work mode")
    _assert(await core.gate.is_open(shop.id) is True, "forbidden toggle must not change state")

    for call in (core.gate.is_open(999_999), core.gate.toggle_work_mode(999_999)):
        try:
            await call
        except NotFoundError:
            pass
        else:
            raise AssertionError("unknown shop must raise NotFoundError")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-work-mode-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: work mode gate smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_work_mode_gate() -> None:
    main()


if __name__ == "__main__":
    main()
