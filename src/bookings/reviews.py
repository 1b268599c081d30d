"""Customer reviews of shops."""

from __future__ import annotations

import logging
import sqlite3

import aiosqlite

from bookings.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from bookings.models import ROLE_CUSTOMER, ROLE_SHOP, STATUS_COMPLETED, Actor, Review
from bookings.notifications import TYPE_REVIEW_ADDED, insert_notification
from bookings.shops import fetch_shop
from database import Store, utc_now_iso


logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MAX_COMMENT_LENGTH = 2000

REVIEW_COLUMNS = "id, shop_id, customer_id, rating, comment, created_at, updated_at"


async def fetch_review(db: aiosqlite.Connection, review_id: int) -> Review | None:
    async with db.execute(f"SELECT {REVIEW_COLUMNS} FROM reviews WHERE id = ?", (int(review_id),)) as cur:
        row = await cur.fetchone()
    return Review.from_row(row) if row else None


def _clean_rating(raw: object) -> int:
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise ValidationError("Rating must be a whole number from 1 to 5.")
    try:
        rating = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be a whole number from 1 to 5.") from None
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationError("Rating must be a whole number from 1 to 5.")
    return rating


def _clean_comment(raw: object) -> str:
    comment = str(raw or "").strip()
    if len(comment) > MAX_COMMENT_LENGTH:
        raise ValidationError("Review comment is too long.")
    return comment


def _ensure_author(actor: Actor | None, review: Review) -> None:
    if actor is not None and not (actor.role == ROLE_CUSTOMER and actor.id == review.customer_id):
        raise ForbiddenError("Only the author can change this review.")


class ReviewBook:
    """Reviews left by customers who were served by a shop.

    A customer may review a shop once, and only after one of their bookings
    there reached ``completed``. Only the author edits or deletes a review.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def add_review(
        self,
        shop_id: int,
        customer_id: str,
        rating: object,
        comment: object = "",
        *,
        actor: Actor | None = None,
    ) -> Review:
        customer = str(customer_id or "").strip()
        if not customer:
            raise ValidationError("customer_id is required.")
        if actor is not None and not (actor.role == ROLE_CUSTOMER and actor.id == customer):
            raise ForbiddenError("Reviews can only be written by the customer themselves.")
        clean_rating = _clean_rating(rating)
        clean_comment = _clean_comment(comment)

        async def _op() -> int:
            async with self.store.transaction() as db:
                shop = await fetch_shop(db, shop_id)
                if not shop:
                    raise NotFoundError("Shop not found.")
                async with db.execute(
                    "SELECT 1 FROM bookings WHERE shop_id = ? AND customer_id = ? AND status = ? LIMIT 1",
                    (shop.id, customer, STATUS_COMPLETED),
                ) as cur:
                    served = await cur.fetchone()
                if not served:
                    raise ForbiddenError("Only customers with a completed booking can review this shop.")
                try:
                    cursor = await db.execute(
                        """
                        INSERT INTO reviews (shop_id, customer_id, rating, comment, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (shop.id, customer, clean_rating, clean_comment, utc_now_iso()),
                    )
                except sqlite3.IntegrityError:
                    raise ConflictError("This shop was already reviewed by the customer.") from None
                review_id = int(cursor.lastrowid)
                await insert_notification(
                    db,
                    target_type=ROLE_SHOP,
                    target_id=shop.id,
                    notification_type=TYPE_REVIEW_ADDED,
                    title="New review",
                    message=f"A customer rated your shop {clean_rating}/5.",
                )
                return review_id

        review_id = await self.store.run(_op, where="reviews.add")
        logger.info("Review %s added: shop=%s customer=%s rating=%s", review_id, shop_id, customer, clean_rating)
        return await self.get_review(review_id)

    async def get_review(self, review_id: int) -> Review:
        async with self.store.connect() as db:
            review = await fetch_review(db, review_id)
        if not review:
            raise NotFoundError("Review not found.")
        return review

    async def list_reviews(self, shop_id: int) -> list[Review]:
        """Reviews of a shop, newest first."""
        async with self.store.connect() as db:
            if not await fetch_shop(db, shop_id):
                raise NotFoundError("Shop not found.")
            async with db.execute(
                f"SELECT {REVIEW_COLUMNS} FROM reviews WHERE shop_id = ? ORDER BY id DESC",
                (int(shop_id),),
            ) as cur:
                rows = await cur.fetchall()
        return [Review.from_row(row) for row in rows]

    async def rating_summary(self, shop_id: int) -> dict[str, object]:
        row = await self.store.fetch_one(
            "SELECT COUNT(*) AS total, AVG(rating) AS average FROM reviews WHERE shop_id = ?",
            (int(shop_id),),
        )
        total = int(row["total"] if row else 0)
        average = round(float(row["average"]), 2) if total else None
        return {"count": total, "average": average}

    async def update_review(
        self,
        review_id: int,
        *,
        rating: object = None,
        comment: object = None,
        actor: Actor | None = None,
    ) -> Review:
        changes: dict[str, object] = {}
        if rating is not None:
            changes["rating"] = _clean_rating(rating)
        if comment is not None:
            changes["comment"] = _clean_comment(comment)
        if not changes:
            raise ValidationError("Nothing to update.")

        async def _op() -> None:
            async with self.store.transaction() as db:
                review = await fetch_review(db, review_id)
                if not review:
                    raise NotFoundError("Review not found.")
                _ensure_author(actor, review)
                assignments = ", ".join(f"{column} = ?" for column in changes)
                await db.execute(
                    f"UPDATE reviews SET {assignments}, updated_at = ? WHERE id = ?",
                    (*changes.values(), utc_now_iso(), int(review_id)),
                )

        await self.store.run(_op, where="reviews.update")
        return await self.get_review(review_id)

    async def delete_review(self, review_id: int, *, actor: Actor | None = None) -> None:
        async def _op() -> int:
            async with self.store.transaction() as db:
                review = await fetch_review(db, review_id)
                if not review:
                    raise NotFoundError("Review not found.")
                _ensure_author(actor, review)
                await db.execute("DELETE FROM reviews WHERE id = ?", (int(review_id),))
                return review.shop_id

        shop_id = await self.store.run(_op, where="reviews.delete")
        logger.info("Review %s removed from shop %s", review_id, shop_id)
