#!/usr/bin/env python3
"""
Dynamic smoke test: shop reviews and shops listed by owner.

Validates:
- only a customer with a completed booking at the shop may review it, and
  only once;
- the shop is notified about a new review;
- only the author edits or deletes a review; edits bump updated_at;
- listing is newest first and the rating summary follows edits/deletes;
- ratings outside 1..5 and unknown ids are rejected;
- shops are listed per owner.

Run:
  python3 scripts/smoke_review_book.py
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
    from bookings.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
    from bookings.models import Actor
    from database import Store, utc_today

    store = Store(str(db_path), busy_timeout_ms=10_000, retries=5)
    await store.init()
    core = build_booking_core(store)

    shop = await core.shops.register_shop("Review Barbers", "owner-1")
    second = await core.shops.register_shop("Review Barbers North", "owner-1")
    other = await core.shops.register_shop("Elsewhere", "owner-2")
    owner = Actor.shop(shop.id)
    alice = Actor.customer("alice")
    bob = Actor.customer("bob")

    slot_a = await core.slots.add_slot(shop.id, "09:00", "10:00", actor=owner)
    slot_b = await core.slots.add_slot(shop.id, "10:00", "11:00", actor=owner)
    service = await core.shops.add_service(shop.id, "Haircut", 25, 30, actor=owner)
    today = utc_today().isoformat()

    booking = await core.ledger.create_booking(shop.id, slot_a.id, service.id, "alice", today, actor=alice)
    # Pending bookings do not entitle a review yet.
    await _expect(
        ForbiddenError,
        core.reviews.add_review(shop.id, "alice", 5, "great", actor=alice),
        "a review needs a completed booking",
    )
    await core.ledger.update_status(booking.id, "confirmed", owner)
    await core.ledger.update_status(booking.id, "completed", owner)

    bob_booking = await core.ledger.create_booking(shop.id, slot_b.id, service.id, "bob", today, actor=bob)
    await core.ledger.update_status(bob_booking.id, "canceled", bob)
    await _expect(
        ForbiddenError,
        core.reviews.add_review(shop.id, "bob", 4, actor=bob),
        "a canceled booking does not entitle a review",
    )
    await _expect(
        ForbiddenError,
        core.reviews.add_review(shop.id, "alice", 4, actor=bob),
        "nobody reviews on behalf of another customer",
    )
    await _expect(
        ForbiddenError,
        core.reviews.add_review(other.id, "alice", 4, actor=alice),
        "a completed booking only entitles a review of that shop",
    )
    for bad_rating in (0, 6, "five", 4.5, True, None):
        await _expect(
            ValidationError,
            core.reviews.add_review(shop.id, "alice", bad_rating, actor=alice),
            f"rating {bad_rating!r} must be rejected",
        )
    await _expect(NotFoundError, core.reviews.add_review(999_999, "alice", 5), "unknown shop")

    before = await core.notifications.unread_count("shop", shop.id)
    review = await core.reviews.add_review(shop.id, "alice", "4", "  Quick and tidy  ", actor=alice)
    _assert(review.rating == 4 and review.comment == "Quick and tidy", f"unexpected review: {review}")
    _assert(review.updated_at is None, "a new review has no edit time")
    inbox = await core.notifications.list_for("shop", shop.id, actor=owner)
    _assert(await core.notifications.unread_count("shop", shop.id) == before + 1, "shop must be notified")
    _assert(inbox[0].type == "review_added", f"newest shop notification must be the review: {inbox[0]}")

    await _expect(
        ConflictError,
        core.reviews.add_review(shop.id, "alice", 5, actor=alice),
        "a second review of the same shop must conflict",
    )

    # Only the author edits or deletes.
    for intruder in (bob, owner):
        await _expect(
            ForbiddenError,
            core.reviews.update_review(review.id, rating=1, actor=intruder),
            f"{intruder} must not edit the review",
        )
        await _expect(
            ForbiddenError,
            core.reviews.delete_review(review.id, actor=intruder),
            f"{intruder} must not delete the review",
        )
    await _expect(ValidationError, core.reviews.update_review(review.id, actor=alice), "empty edit")
    edited = await core.reviews.update_review(review.id, rating=5, comment="Even better", actor=alice)
    _assert((edited.rating, edited.comment) == (5, "Even better"), f"edit not applied: {edited}")
    _assert(edited.updated_at is not None, "an edit must set updated_at")
    _assert(edited.created_at == review.created_at, "an edit must keep created_at")

    listed = await core.reviews.list_reviews(shop.id)
    _assert([r.id for r in listed] == [review.id], f"unexpected listing: {listed}")
    summary = await core.reviews.rating_summary(shop.id)
    _assert(summary == {"count": 1, "average": 5.0}, f"unexpected summary: {summary}")
    await _expect(NotFoundError, core.reviews.list_reviews(999_999), "unknown shop has no reviews page")

    await core.reviews.delete_review(review.id, actor=alice)
    _assert(await core.reviews.list_reviews(shop.id) == [], "deleted review must disappear")
    _assert(
        await core.reviews.rating_summary(shop.id) == {"count": 0, "average": None},
        "summary of a shop without reviews",
    )
    await _expect(NotFoundError, core.reviews.get_review(review.id), "deleted review is gone")
    await _expect(NotFoundError, core.reviews.delete_review(review.id, actor=alice), "second delete")

    # After deleting, the customer may review again.
    again = await core.reviews.add_review(shop.id, "alice", 3, actor=alice)
    _assert(again.id != review.id and again.comment == "", f"unexpected second review: {again}")

    owned = await core.shops.list_shops_by_owner("owner-1")
    _assert([s.id for s in owned] == [shop.id, second.id], f"unexpected owner listing: {owned}")
    _assert(await core.shops.list_shops_by_owner("nobody") == [], "unknown owner has no shops")
    await _expect(ValidationError, core.shops.list_shops_by_owner("  "), "blank owner id")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-reviews-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: review book smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_review_book() -> None:
    main()


if __name__ == "__main__":
    main()
