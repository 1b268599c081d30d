#!/usr/bin/env python3
"""
Dynamic smoke test: booking lifecycle and admission validation.

Validates:
- allowed transitions per role, InvalidTransition for everything else;
- terminal statuses (completed, canceled) never change again;
- only the booking's shop or customer may act on it;
- every status change notifies the counterparty;
- admission rejects past dates, dates beyond the horizon and foreign
  slots/services;
- two concurrent confirmations: one wins, the other is an invalid transition;
- payment status tagging and list filters.

Run:
  python3 scripts/smoke_booking_state_machine.py
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
        ForbiddenError,
        InvalidTransitionError,
        NotFoundError,
        ValidationError,
    )
    from bookings.ledger import TRANSITIONS, can_transition, parse_booking_date
    from bookings.models import Actor
    from config import CFG
    from database import Store, utc_today

    _assert(can_transition("pending", "confirmed", "shop"), "shop must confirm pending")
    _assert(not can_transition("pending", "confirmed", "customer"), "customer must not confirm")
    _assert(can_transition("confirmed", "canceled", "customer"), "customer may cancel confirmed")
    _assert(not can_transition("pending", "completed", "shop"), "pending cannot jump to completed")
    _assert(
        all(src not in {"completed", "canceled"} for src, _dst in TRANSITIONS),
        "terminal statuses must have no outgoing transitions",
    )

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Lifecycle Spa", "owner-1")
    other = await core.shops.register_shop("Other Spa", "owner-2")
    owner = Actor.shop(shop.id)
    customer = Actor.customer("cust-1")
    stranger = Actor.customer("cust-2")

    slot_a = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    slot_b = await core.slots.add_slot(shop.id, "10:00", "11:00", actor=owner)
    slot_c = await core.slots.add_slot(shop.id, "11:00", "12:00", actor=owner)
    foreign_slot = await core.slots.add_slot(other.id, "09:00", "10:00")
    service = await core.shops.add_service(shop.id, "Massage", 60, 60, actor=owner)
    foreign_service = await core.shops.add_service(other.id, "Sauna", 20, 30)

    today = utc_today()
    iso_today = today.isoformat()

    # Admission validation.
    await _expect(
        ValidationError,
        core.ledger.create_booking(shop.id, slot_a.id, service.id, "cust-1", (today - timedelta(days=1)).isoformat()),
        "past date must be rejected",
    )
    if CFG.booking_horizon_days:
        too_far = (today + timedelta(days=CFG.booking_horizon_days + 1)).isoformat()
        await _expect(
            ValidationError,
            core.ledger.create_booking(shop.id, slot_a.id, service.id, "cust-1", too_far),
            "date beyond horizon must be rejected",
        )
    await _expect(
        ValidationError,
        core.ledger.create_booking(shop.id, slot_a.id, service.id, "cust-1", "31.12.2030"),
        "non-ISO date must be rejected",
    )
    await _expect(
        NotFoundError,
        core.ledger.create_booking(shop.id, foreign_slot.id, service.id, "cust-1", iso_today),
        "slot of another shop must be rejected",
    )
    await _expect(
        NotFoundError,
        core.ledger.create_booking(shop.id, slot_a.id, foreign_service.id, "cust-1", iso_today),
        "service of another shop must be rejected",
    )
    await _expect(
        ForbiddenError,
        core.ledger.create_booking(shop.id, slot_a.id, service.id, "cust-1", iso_today, actor=stranger),
        "customer must not book on behalf of another customer",
    )
    _assert(parse_booking_date(iso_today) == iso_today, "today must be a valid booking date")
    # The default reference day is the UTC calendar day, like stored timestamps.
    utc_yesterday = (utc_today() - timedelta(days=1)).isoformat()
    try:
        parse_booking_date(utc_yesterday)
    except ValidationError:
        pass
    else:
        raise AssertionError("the day before the UTC date must be in the past")
    _assert(
        parse_booking_date(utc_yesterday, today=utc_today() - timedelta(days=1)) == utc_yesterday,
        "an explicit reference day must override the UTC clock",
    )

    # pending -> confirmed -> completed
    booking = await core.ledger.create_booking(shop.id, slot_a.id, service.id, "cust-1", iso_today, actor=customer)
    _assert(booking.status == "pending" and booking.payment_status == "unpaid", f"unexpected new booking: {booking}")

    error = await _expect(
        InvalidTransitionError,
        core.ledger.update_status(booking.id, "confirmed", customer),
        "customer must not confirm",
    )
    _assert(error.current == "pending" and error.requested == "confirmed", f"unexpected error payload: {error}")
    await _expect(
        InvalidTransitionError,
        core.ledger.update_status(booking.id, "completed", owner),
        "pending -> completed must be rejected",
    )
    await _expect(ForbiddenError, core.ledger.update_status(booking.id, "canceled", stranger), "stranger must be forbidden")
    await _expect(
        ForbiddenError,
        core.ledger.update_status(booking.id, "confirmed", Actor.shop(other.id)),
        "foreign shop must be forbidden",
    )
    await _expect(ValidationError, core.ledger.update_status(booking.id, "archived", owner), "unknown status must fail")
    await _expect(NotFoundError, core.ledger.update_status(999_999, "confirmed", owner), "unknown booking must fail")

    confirmed = await core.ledger.update_status(booking.id, "confirmed", owner)
    _assert(confirmed.status == "confirmed", "shop confirm failed")
    completed = await core.ledger.update_status(booking.id, "completed", owner)
    _assert(completed.status == "completed", "shop complete failed")
    for status, actor in (("canceled", owner), ("canceled", customer), ("confirmed", owner), ("pending", owner)):
        await _expect(
            InvalidTransitionError,
            core.ledger.update_status(booking.id, status, actor),
            f"completed booking must not move to {status}",
        )

    inbox = await core.notifications.list_for("customer", "cust-1")
    status_changes = [n for n in inbox if n.type == "booking_status_changed" and n.booking_id == booking.id]
    _assert(len(status_changes) == 2, f"customer must be told about confirm and complete: {status_changes}")

    # pending -> canceled by customer notifies the shop.
    second = await core.ledger.create_booking(shop.id, slot_b.id, service.id, "cust-1", iso_today)
    canceled = await core.ledger.update_status(second.id, "canceled", customer)
    _assert(canceled.status == "canceled", "customer cancel failed")
    await _expect(
        InvalidTransitionError,
        core.ledger.update_status(second.id, "confirmed", owner),
        "canceled booking must stay canceled",
    )
    shop_inbox = await core.notifications.list_for("shop", shop.id)
    _assert(
        any(n.type == "booking_status_changed" and n.booking_id == second.id for n in shop_inbox),
        "shop must be told about customer cancellation",
    )

    # Concurrent confirmations: exactly one wins.
    third = await core.ledger.create_booking(shop.id, slot_c.id, service.id, "cust-3", iso_today)
    results = await asyncio.gather(
        core.ledger.update_status(third.id, "confirmed", owner),
        core.ledger.update_status(third.id, "confirmed", owner),
        return_exceptions=True,
    )
    wins = [r for r in results if not isinstance(r, BaseException)]
    losses = [r for r in results if isinstance(r, InvalidTransitionError)]
    _assert(len(wins) == 1 and len(losses) == 1, f"unexpected concurrent confirm outcome: {results}")

    paid = await core.ledger.set_payment_status(third.id, "Paid")
    _assert(paid.payment_status == "paid", f"payment status not stored: {paid}")
    await _expect(ValidationError, core.ledger.set_payment_status(third.id, ""), "empty payment status must fail")
    await _expect(NotFoundError, core.ledger.set_payment_status(999_999, "paid"), "unknown booking must fail")

    # Listing and filters.
    all_for_shop = await core.ledger.list_bookings(shop_id=shop.id)
    _assert([b.id for b in all_for_shop] == [booking.id, second.id, third.id], "shop bookings must be in insertion order")
    mine = await core.ledger.list_bookings(customer_id="cust-1")
    _assert({b.id for b in mine} == {booking.id, second.id}, f"unexpected customer bookings: {mine}")
    only_canceled = await core.ledger.list_bookings(shop_id=shop.id, status="canceled")
    _assert([b.id for b in only_canceled] == [second.id], f"status filter failed: {only_canceled}")
    future_only = await core.ledger.list_bookings(shop_id=shop.id, date_from=(today + timedelta(days=1)).isoformat())
    _assert(future_only == [], "date_from filter failed")
    await _expect(ValidationError, core.ledger.list_bookings(), "listing needs shop_id or customer_id")
    await _expect(
        ValidationError,
        core.ledger.list_bookings(shop_id=shop.id, customer_id="cust-1"),
        "listing accepts only one owner filter",
    )

    fetched = await core.ledger.get_booking(third.id, actor=owner)
    _assert(fetched.status == "confirmed", "get_booking must return current state")
    await _expect(ForbiddenError, core.ledger.get_booking(third.id, actor=stranger), "stranger must not view booking")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-booking-state-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: booking state machine smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_booking_state_machine() -> None:
    main()


if __name__ == "__main__":
    main()
