#!/usr/bin/env python3
"""
Dynamic smoke test: booking chat room creation.

Validates:
- concurrent open_room calls for one booking all return the same room;
- a room can only be opened for an existing booking by its own participants;
- only participants may read or post in a room;
- message content is validated.

Run:
  python3 scripts/smoke_chat_room_idempotence.py
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
CONCURRENT_OPENS = 20


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
    from bookings.chat import MAX_MESSAGE_LENGTH
    from bookings.errors import ForbiddenError, NotFoundError, ValidationError
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Chatty Nails", "owner-1")
    owner = Actor.shop(shop.id)
    customer = Actor.customer("cust-1")
    slot = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    service = await core.shops.add_service(shop.id, "Nails", 40, 60, actor=owner)
    booking = await core.ledger.create_booking(shop.id, slot.id, service.id, "cust-1", utc_today().isoformat())

    rooms = await asyncio.gather(
        *(
            core.chat.open_room(booking.id, shop.id, "cust-1", actor=owner if idx % 2 else customer)
            for idx in range(CONCURRENT_OPENS)
        )
    )
    room_ids = {room.id for room in rooms}
    _assert(len(room_ids) == 1, f"concurrent opens must converge on one room: {room_ids}")
    row = await store.fetch_one("SELECT COUNT(*) FROM chat_rooms WHERE booking_id = ?", (booking.id,))
    _assert(int(row[0]) == 1, "exactly one room row must exist per booking")

    room = rooms[0]
    _assert(room.booking_id == booking.id and room.customer_id == "cust-1", f"unexpected room: {room}")
    again = await core.chat.open_room(booking.id, shop.id, "cust-1")
    _assert(again.id == room.id, "re-opening must return the existing room")

    await _expect(NotFoundError, core.chat.open_room(999_999, shop.id, "cust-1"), "unknown booking must fail")
    await _expect(
        ForbiddenError,
        core.chat.open_room(booking.id, shop.id, "cust-2"),
        "room participants must match the booking",
    )
    await _expect(
        ForbiddenError,
        core.chat.open_room(booking.id, shop.id, "cust-1", actor=Actor.customer("cust-2")),
        "non-party must not open the room",
    )

    await _expect(
        ForbiddenError,
        core.chat.post_message(room.id, Actor.customer("cust-2"), "hi"),
        "stranger must not post",
    )
    await _expect(
        ForbiddenError,
        core.chat.post_message(room.id, Actor.shop(shop.id + 1), "hi"),
        "another shop must not post",
    )
    await _expect(
        ForbiddenError,
        core.chat.list_messages(room.id, viewer=Actor.customer("cust-2")),
        "stranger must not read",
    )
    await _expect(ValidationError, core.chat.post_message(room.id, customer, "   "), "blank message must fail")
    await _expect(
        ValidationError,
        core.chat.post_message(room.id, customer, "x" * (MAX_MESSAGE_LENGTH + 1)),
        "oversized message must fail",
    )
    await _expect(NotFoundError, core.chat.post_message(999_999, customer, "hi"), "unknown room must fail")

    message = await core.chat.post_message(room.id, customer, "  Can I come 10 minutes late?  ")
    _assert(message.content == "Can I come 10 minutes late?", "message content must be trimmed")
    shop_inbox = await core.notifications.list_for("shop", shop.id)
    pings = [n for n in shop_inbox if n.type == "new_message"]
    _assert(len(pings) == 1 and pings[0].chat_room_id == room.id, f"shop must be notified about the message: {pings}")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-chat-rooms-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: chat room idempotence smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_chat_room_idempotence() -> None:
    main()


if __name__ == "__main__":
    main()
