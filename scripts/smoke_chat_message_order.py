#!/usr/bin/env python3
"""
Dynamic smoke test: chat message ordering, polling and read state.

Validates:
- concurrently posted messages come back in insertion order with strictly
  increasing created_at;
- polling with `since` (message id or timestamp) returns exactly the
  messages after that point, never skipping or repeating one;
- read state is tracked per participant and never rewrites messages.

Run:
  python3 scripts/smoke_chat_message_order.py
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
POSTED = 30
CUT = 10


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from bookings import build_booking_core
    from bookings.errors import ValidationError
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Order Studio", "owner-1")
    owner = Actor.shop(shop.id)
    customer = Actor.customer("cust-1")
    slot = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    service = await core.shops.add_service(shop.id, "Tattoo", 100, 120, actor=owner)
    booking = await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-1", utc_today().isoformat())
    room = await core.chat.open_room(booking.id, shop.id, "cust-1")

    empty = await core.chat.list_messages(room.id, viewer=customer)
    _assert(empty == [], "new room must have no messages")

    posted = await asyncio.gather(
        *(
            core.chat.post_message(room.id, customer if idx % 2 else owner, f"message {idx}")
            for idx in range(POSTED)
        )
    )
    _assert(len({m.id for m in posted}) == POSTED, "every post must store a message")

    listed = await core.chat.list_messages(room.id)
    ids = [m.id for m in listed]
    stamps = [m.created_at for m in listed]
    _assert(ids == sorted(ids), f"messages must come back in insertion order: {ids}")
    _assert(all(a < b for a, b in zip(stamps, stamps[1:])), "created_at must strictly increase within a room")
    _assert(len(listed) == POSTED, f"expected {POSTED} messages, got {len(listed)}")

    pivot = listed[CUT - 1]
    by_id = await core.chat.list_messages(room.id, since=str(pivot.id))
    by_time = await core.chat.list_messages(room.id, since=pivot.created_at)
    expected = ids[CUT:]
    _assert([m.id for m in by_id] == expected, "since=<id> must return exactly the later messages")
    _assert([m.id for m in by_time] == expected, "since=<timestamp> must return exactly the later messages")
    tail = await core.chat.list_messages(room.id, since=listed[-1].id)
    _assert(tail == [], "polling from the newest message must return nothing")

    for malformed in ("yesterday-ish", "\u00b2", "\u0663\u0664", "-5"):
        try:
            await core.chat.list_messages(room.id, since=malformed)
        except ValidationError:
            continue
        raise AssertionError(f"malformed since must be rejected: {malformed!r}")

    # Read state per participant.
    customer_sent = sum(1 for m in listed if m.sender_role == "customer")
    shop_sent = POSTED - customer_sent
    customer_unread = await core.chat.unread_messages(room.id, customer)
    _assert(0 <= customer_unread <= shop_sent, f"customer unread out of range: {customer_unread}")

    cursor = await core.chat.mark_room_read(room.id, customer)
    _assert(cursor == ids[-1], "read cursor must move to the newest message")
    _assert(await core.chat.unread_messages(room.id, customer) == 0, "customer must have nothing unread")
    seen = await core.chat.list_messages(room.id, viewer=customer)
    _assert(all(m.is_read for m in seen), "every message must be read for the customer")

    late = await core.chat.post_message(room.id, owner, "See you soon")
    _assert(await core.chat.unread_messages(room.id, customer) == 1, "new shop message must be unread for customer")
    _assert(await core.chat.unread_messages(room.id, owner) == 0, "own message must not be unread for the sender")
    view = await core.chat.list_messages(room.id, since=ids[-1], viewer=customer)
    _assert([m.id for m in view] == [late.id] and view[0].is_read is False, f"unexpected poll view: {view}")

    # Messages are immutable: the stored content is untouched by read tracking.
    row = await store.fetch_one("SELECT content FROM messages WHERE id = ?", (late.id,))
    _assert(row["content"] == "See you soon", "message content must not change")

    pings = await core.notifications.list_for("customer", "cust-1")
    _assert(
        sum(1 for n in pings if n.type == "new_message") == shop_sent + 1,
        "customer must get one new_message notification per shop message",
    )


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-chat-order-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: chat message order smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_chat_message_order() -> None:
    main()


if __name__ == "__main__":
    main()
