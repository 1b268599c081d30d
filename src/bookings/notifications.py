"""Poll-delivered notification inbox for shops and customers."""

from __future__ import annotations

import logging

import aiosqlite

from bookings.errors import ForbiddenError, NotFoundError, ValidationError
from bookings.models import ROLES, Actor, Notification
from config import CFG
from database import Store, utc_now_iso


logger = logging.getLogger(__name__)

TYPE_BOOKING_CREATED = "booking_created"
TYPE_BOOKING_STATUS_CHANGED = "booking_status_changed"
TYPE_NEW_MESSAGE = "new_message"
TYPE_PROFILE_UPDATED = "profile_updated"
TYPE_REVIEW_ADDED = "review_added"

MAX_MESSAGE_LENGTH = 1000

NOTIFICATION_COLUMNS = (
    "id, target_type, target_id, type, title, message, booking_id, chat_room_id, is_read, created_at"
)


def _normalize_target(target_type: str, target_id: object) -> tuple[str, str]:
    kind = str(target_type or "").strip().lower()
    if kind not in ROLES:
        raise ValidationError("Notification target must be a shop or a customer.")
    ident = str(target_id if target_id is not None else "").strip()
    if not ident:
        raise ValidationError("Notification target id is required.")
    return kind, ident


def ensure_target_actor(actor: Actor | None, target_type: str, target_id: object) -> None:
    """Only the addressed shop or customer may read its inbox (None means trusted caller)."""
    if actor is not None and (actor.role != target_type or actor.id != str(target_id)):
        raise ForbiddenError("Notifications belong to another recipient.")


def _parse_before(raw: object) -> int | None:
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    if not (text.isascii() and text.isdigit()):
        raise ValidationError("before must be a notification id.")
    return int(text)


async def insert_notification(
    db: aiosqlite.Connection,
    *,
    target_type: str,
    target_id: object,
    notification_type: str,
    message: str,
    title: str = "",
    booking_id: int | None = None,
    chat_room_id: int | None = None,
) -> int:
    """Insert a notification using an already open write transaction."""
    kind, ident = _normalize_target(target_type, target_id)
    text = str(message or "").strip()
    if not text:
        raise ValidationError("Notification message cannot be empty.")
    cursor = await db.execute(
        """
        INSERT INTO notifications (target_type, target_id, type, title, message,
                                   booking_id, chat_room_id, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
        """,
        (kind, ident, str(notification_type), str(title or ""), text[:MAX_MESSAGE_LENGTH], booking_id, chat_room_id, utc_now_iso()),
    )
    return int(cursor.lastrowid)


class NotificationDispatcher:
    """Emits notifications and tracks their read state.

    The unread counter is never stored: it is counted from the rows it
    summarizes, so it cannot drift from the inbox contents.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def emit(
        self,
        target_type: str,
        target_id: object,
        notification_type: str,
        message: str,
        *,
        title: str = "",
        booking_id: int | None = None,
        chat_room_id: int | None = None,
    ) -> int:
        async def _op() -> int:
            async with self.store.transaction() as db:
                return await insert_notification(
                    db,
                    target_type=target_type,
                    target_id=target_id,
                    notification_type=notification_type,
                    message=message,
                    title=title,
                    booking_id=booking_id,
                    chat_room_id=chat_room_id,
                )

        notification_id = await self.store.run(_op, where="notifications.emit")
        logger.debug("Notification %s (%s) emitted to %s:%s", notification_id, notification_type, target_type, target_id)
        return notification_id

    async def list_for(
        self,
        target_type: str,
        target_id: object,
        *,
        unread_only: bool = False,
        before: object = None,
        limit: int | None = None,
        actor: Actor | None = None,
    ) -> list[Notification]:
        """Return one page of a target's notifications, newest first.

        Pages are cut by id: pass the smallest id of the previous page as
        ``before`` to get the next, older page.
        """
        kind, ident = _normalize_target(target_type, target_id)
        ensure_target_actor(actor, kind, ident)
        safe_limit = max(1, min(int(limit or CFG.notifications_page_limit), CFG.notifications_page_limit))

        where = "target_type = ? AND target_id = ?"
        params: list[object] = [kind, ident]
        if unread_only:
            where += " AND is_read = 0"
        cursor_id = _parse_before(before)
        if cursor_id is not None:
            where += " AND id < ?"
            params.append(cursor_id)
        params.append(safe_limit)

        rows = await self.store.fetch_all(
            f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE {where} ORDER BY id DESC LIMIT ?",
            params,
        )
        return [Notification.from_row(row) for row in rows]

    async def get(self, notification_id: int, *, actor: Actor | None = None) -> Notification:
        row = await self.store.fetch_one(
            f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?",
            (int(notification_id),),
        )
        if not row:
            raise NotFoundError("Notification not found.")
        notification = Notification.from_row(row)
        ensure_target_actor(actor, notification.target_type, notification.target_id)
        return notification

    async def mark_read(self, notification_id: int, *, actor: Actor | None = None) -> Notification:
        """Flip a notification to read. Marking twice is a no-op."""

        async def _op() -> None:
            async with self.store.transaction() as db:
                async with db.execute(
                    "SELECT target_type, target_id FROM notifications WHERE id = ?",
                    (int(notification_id),),
                ) as cur:
                    row = await cur.fetchone()
                if not row:
                    raise NotFoundError("Notification not found.")
                ensure_target_actor(actor, row["target_type"], row["target_id"])
                await db.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (int(notification_id),))

        await self.store.run(_op, where="notifications.mark_read")
        return await self.get(notification_id)

    async def mark_all_read(self, target_type: str, target_id: object, *, actor: Actor | None = None) -> int:
        """Mark every unread notification of a target as read; returns how many changed."""
        kind, ident = _normalize_target(target_type, target_id)
        ensure_target_actor(actor, kind, ident)

        async def _op() -> int:
            async with self.store.transaction() as db:
                cursor = await db.execute(
                    """
                    UPDATE notifications
                       SET is_read = 1
                     WHERE target_type = ? AND target_id = ? AND is_read = 0
                    """,
                    (kind, ident),
                )
                return int(cursor.rowcount or 0)

        changed = await self.store.run(_op, where="notifications.mark_all_read")
        if changed:
            logger.info("Marked %s notifications read for %s:%s", changed, kind, ident)
        return changed

    async def unread_count(self, target_type: str, target_id: object, *, actor: Actor | None = None) -> int:
        kind, ident = _normalize_target(target_type, target_id)
        ensure_target_actor(actor, kind, ident)
        row = await self.store.fetch_one(
            "SELECT COUNT(*) FROM notifications WHERE target_type = ? AND target_id = ? AND is_read = 0",
            (kind, ident),
        )
        return int(row[0] if row else 0)
