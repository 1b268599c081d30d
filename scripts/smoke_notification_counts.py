#!/usr/bin/env python3
"""
Dynamic smoke test: notification inbox and unread counters.

Validates:
- unread count always equals the number of unread rows, also after
  concurrent emits and concurrent (duplicate) mark-read calls;
- mark_all_read only touches one target's inbox and reports how many rows
  changed;
- inbox listing is newest first and supports unread-only paging;
- listing pages past the per-call cap through a `before` id cursor;
- only the addressed recipient may list or mark its inbox;
- malformed targets, cursors and unknown ids are rejected.

Run:
  python3 scripts/smoke_notification_counts.py
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
EMITTED = 20


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


async def _run_checks(db_path: Path) -> None:
    from bookings.errors import ForbiddenError, NotFoundError, ValidationError
    from bookings.models import Actor
    from bookings.notifications import NotificationDispatcher
    from config import CFG
    from database import Store

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    dispatcher = NotificationDispatcher(store)

    ids = await asyncio.gather(
        *(
            dispatcher.emit("customer", "cust-1", "booking_status_changed", f"update #{idx}", title="Update")
            for idx in range(EMITTED)
        )
    )
    _assert(len(set(ids)) == EMITTED, "every emit must create its own notification")
    await dispatcher.emit("shop", 7, "booking_created", "someone booked")
    await dispatcher.emit("customer", "cust-2", "new_message", "hello")

    _assert(await dispatcher.unread_count("customer", "cust-1") == EMITTED, "unread count mismatch after emits")
    _assert(await dispatcher.unread_count("shop", "7") == 1, "shop target ids are compared as text")

    inbox = await dispatcher.list_for("customer", "cust-1")
    _assert([n.id for n in inbox] == sorted(ids, reverse=True), "inbox must be newest first")
    _assert(all(n.is_read is False for n in inbox), "new notifications must be unread")

    # Duplicate and concurrent mark-read calls count once.
    to_mark = sorted(ids)[:5]
    await asyncio.gather(*(dispatcher.mark_read(nid) for nid in to_mark + to_mark))
    unread = await dispatcher.unread_count("customer", "cust-1")
    _assert(unread == EMITTED - len(to_mark), f"unread count drifted: {unread}")
    unread_rows = await dispatcher.list_for("customer", "cust-1", unread_only=True)
    _assert(len(unread_rows) == unread, "unread list and unread count must agree")
    _assert(not {n.id for n in unread_rows} & set(to_mark), "read notifications must not be listed as unread")

    page = await dispatcher.list_for("customer", "cust-1", limit=3)
    _assert(len(page) == 3, f"limit not applied: {len(page)}")

    changed = await dispatcher.mark_all_read("customer", "cust-1")
    _assert(changed == EMITTED - len(to_mark), f"mark_all_read changed {changed} rows")
    _assert(await dispatcher.unread_count("customer", "cust-1") == 0, "inbox must be fully read")
    _assert(await dispatcher.mark_all_read("customer", "cust-1") == 0, "second mark_all_read must be a no-op")
    _assert(await dispatcher.unread_count("customer", "cust-2") == 1, "other inbox must be untouched")

    single = await dispatcher.mark_read(ids[0])
    _assert(single.is_read is True, "mark_read must return the read notification")

    for call, exc_type in (
        (dispatcher.mark_read(999_999), NotFoundError),
        (dispatcher.get(999_999), NotFoundError),
        (dispatcher.emit("admin", "x", "booking_created", "nope"), ValidationError),
        (dispatcher.emit("customer", "", "booking_created", "nope"), ValidationError),
        (dispatcher.emit("customer", "cust-1", "booking_created", "   "), ValidationError),
        (dispatcher.list_for("nobody", "x"), ValidationError),
    ):
        try:
            await call
        except exc_type:
            continue
        raise AssertionError(f"expected {exc_type.__name__}")

    # Inbox access is restricted to the addressed recipient.
    owner = Actor("customer", "cust-1")
    _assert(
        len(await dispatcher.list_for("customer", "cust-1", actor=owner)) == EMITTED,
        "recipient must see its own inbox",
    )
    _assert(await dispatcher.unread_count("shop", 7, actor=Actor("shop", "7")) == 1, "shop reads its own count")
    for intruder in (Actor("customer", "cust-2"), Actor("shop", "cust-1")):
        for call in (
            dispatcher.list_for("customer", "cust-1", actor=intruder),
            dispatcher.unread_count("customer", "cust-1", actor=intruder),
            dispatcher.mark_read(ids[1], actor=intruder),
            dispatcher.mark_all_read("customer", "cust-1", actor=intruder),
            dispatcher.get(ids[1], actor=intruder),
        ):
            try:
                await call
            except ForbiddenError:
                continue
            raise AssertionError(f"{intruder} must not touch another inbox")

    # Paging with `before` walks past the per-call cap down to the oldest row.
    total = CFG.notifications_page_limit + 5
    for idx in range(total):
        await dispatcher.emit("customer", "cust-bulk", "booking_status_changed", f"bulk #{idx}")
    bulk_actor = Actor("customer", "cust-bulk")
    first_page = await dispatcher.list_for("customer", "cust-bulk", actor=bulk_actor)
    _assert(len(first_page) == CFG.notifications_page_limit, f"first page not capped: {len(first_page)}")
    seen: list[int] = []
    before = None
    while True:
        page = await dispatcher.list_for("customer", "cust-bulk", before=before, limit=40, actor=bulk_actor)
        if not page:
            break
        seen.extend(n.id for n in page)
        before = page[-1].id
    _assert(len(seen) == total, f"paging returned {len(seen)} of {total}")
    _assert(len(set(seen)) == total, "paging must not repeat rows")
    _assert(seen == sorted(seen, reverse=True), "pages must continue newest to oldest")
    oldest = await dispatcher.list_for("customer", "cust-bulk", before=seen[-1], actor=bulk_actor)
    _assert(oldest == [], "nothing is older than the last page")
    unread_seen: list[int] = []
    before = None
    while page := await dispatcher.list_for("customer", "cust-bulk", unread_only=True, before=before):
        unread_seen.extend(n.id for n in page)
        before = page[-1].id
    _assert(sorted(unread_seen) == sorted(seen), "unread paging must cover every unread row")

    for raw in ("abc", "-1", "\u0663", "1.5"):
        try:
            await dispatcher.list_for("customer", "cust-bulk", before=raw)
        except ValidationError:
            continue
        raise AssertionError(f"malformed before {raw!r} must be rejected")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-notifications-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: notification counts smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_notification_counts() -> None:
    main()


if __name__ == "__main__":
    main()
