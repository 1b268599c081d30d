"""Chat rooms bound one-to-one to bookings."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import aiosqlite

from bookings.errors import ForbiddenError, NotFoundError, ValidationError
from bookings.ledger import fetch_booking
from bookings.models import ROLE_CUSTOMER, ROLE_SHOP, Actor, ChatRoom, Message
from bookings.notifications import TYPE_NEW_MESSAGE, insert_notification
from config import CFG
from database import Store, utc_now_iso


logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
PREVIEW_LENGTH = 80
ROOM_COLUMNS = "id, booking_id, shop_id, customer_id, shop_read_message_id, customer_read_message_id, created_at"
MESSAGE_COLUMNS = "id, room_id, sender_role, sender_id, content, created_at"
READ_CURSOR_COLUMNS = {
    ROLE_SHOP: "shop_read_message_id",
    ROLE_CUSTOMER: "customer_read_message_id",
}


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(raw: str) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_since(raw: object) -> tuple[str, object] | None:
    """Interpret ``since`` as a message id cursor or an ISO timestamp."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    if text.isascii() and text.isdigit():
        return "id", int(text)
    try:
        return "created_at", _to_iso(_parse_iso(text))
    except ValueError:
        raise ValidationError("since must be a message id or an ISO timestamp.") from None


async def fetch_room(db: aiosqlite.Connection, room_id: int) -> ChatRoom | None:
    async with db.execute(f"SELECT {ROOM_COLUMNS} FROM chat_rooms WHERE id = ?", (int(room_id),)) as cur:
        row = await cur.fetchone()
    return ChatRoom.from_row(row) if row else None


async def _next_created_at(db: aiosqlite.Connection, room_id: int) -> str:
    """Timestamp for a new message, strictly after the room's latest one.

    Keeps ``created_at`` order identical to insertion order even when the
    clock stalls or steps back.
    """
    now = _parse_iso(utc_now_iso())
    async with db.execute("SELECT MAX(created_at) FROM messages WHERE room_id = ?", (int(room_id),)) as cur:
        row = await cur.fetchone()
    if row and row[0]:
        floor = _parse_iso(row[0]) + timedelta(microseconds=1)
        if floor > now:
            now = floor
    return _to_iso(now)


class ChatSessionManager:
    """Opens booking chat rooms and stores their messages.

    Clients poll ``list_messages``; there is no server-side subscription.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def open_room(
        self,
        booking_id: int,
        shop_id: int,
        customer_id: str,
        *,
        actor: Actor | None = None,
    ) -> ChatRoom:
        """Return the booking's chat room, creating it on first contact."""

        async def _op() -> tuple[ChatRoom, bool]:
            async with self.store.transaction() as db:
                booking = await fetch_booking(db, booking_id)
                if not booking:
                    raise NotFoundError("Booking not found.")
                if str(shop_id) != str(booking.shop_id) or str(customer_id) != booking.customer_id:
                    raise ForbiddenError("Chat participants must be the booking's shop and customer.")
                if actor is not None and not (
                    actor.is_shop(booking.shop_id)
                    or (actor.role == ROLE_CUSTOMER and actor.id == booking.customer_id)
                ):
                    raise ForbiddenError("Only the booking's shop or customer can open its chat.")

                cursor = await db.execute(
                    """
                    INSERT INTO chat_rooms (booking_id, shop_id, customer_id, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(booking_id) DO NOTHING
                    """,
                    (booking.id, booking.shop_id, booking.customer_id, utc_now_iso()),
                )
                created = cursor.rowcount == 1
                async with db.execute(
                    f"SELECT {ROOM_COLUMNS} FROM chat_rooms WHERE booking_id = ?",
                    (booking.id,),
                ) as cur:
                    row = await cur.fetchone()
                return ChatRoom.from_row(row), created

        room, created = await self.store.run(_op, where="chat.open_room")
        if created:
            logger.info("Chat room %s opened for booking %s", room.id, booking_id)
        return room

    async def get_room(self, room_id: int, *, actor: Actor | None = None) -> ChatRoom:
        async with self.store.connect() as db:
            room = await fetch_room(db, room_id)
        if not room:
            raise NotFoundError("Chat room not found.")
        if actor is not None and not room.participant(actor):
            raise ForbiddenError("Not a participant of this chat.")
        return room

    async def post_message(self, room_id: int, sender: Actor, content: str) -> Message:
        text = str(content or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty.")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError("Message is too long.")

        async def _op() -> Message:
            async with self.store.transaction() as db:
                room = await fetch_room(db, room_id)
                if not room:
                    raise NotFoundError("Chat room not found.")
                if not room.participant(sender):
                    raise ForbiddenError("Not a participant of this chat.")

                created_at = await _next_created_at(db, room.id)
                cursor = await db.execute(
                    """
                    INSERT INTO messages (room_id, sender_role, sender_id, content, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (room.id, sender.role, sender.id, text, created_at),
                )
                message_id = int(cursor.lastrowid)
                # The sender has obviously read everything up to their own message.
                await db.execute(
                    f"UPDATE chat_rooms SET {READ_CURSOR_COLUMNS[sender.role]} = ? WHERE id = ?",
                    (message_id, room.id),
                )

                if sender.role == ROLE_SHOP:
                    target_type, target_id = ROLE_CUSTOMER, room.customer_id
                else:
                    target_type, target_id = ROLE_SHOP, room.shop_id
                preview = text if len(text) <= PREVIEW_LENGTH else text[: PREVIEW_LENGTH - 1] + "…"
                await insert_notification(
                    db,
                    target_type=target_type,
                    target_id=target_id,
                    notification_type=TYPE_NEW_MESSAGE,
                    title="New message",
                    message=preview,
                    booking_id=room.booking_id,
                    chat_room_id=room.id,
                )
                return Message(
                    id=message_id,
                    room_id=room.id,
                    sender_role=sender.role,
                    sender_id=sender.id,
                    content=text,
                    created_at=created_at,
                    is_read=True,
                )

        message = await self.store.run(_op, where="chat.post_message")
        logger.debug("Message %s posted to room %s by %s %s", message.id, room_id, sender.role, sender.id)
        return message

    async def list_messages(
        self,
        room_id: int,
        *,
        since: object = None,
        viewer: Actor | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Messages in ``created_at`` order, insertion order breaking ties.

        ``since`` is either the id of the last message the client holds or an
        ISO timestamp; only strictly later messages are returned.
        A ``viewer`` of None is reserved for trusted internal callers; the HTTP
        layer always passes the caller.
        """
        room = await self.get_room(room_id, actor=viewer)
        cursor_filter = parse_since(since)
        safe_limit = max(1, min(int(limit or CFG.messages_page_limit), CFG.messages_page_limit))

        where = "room_id = ?"
        params: list[object] = [room.id]
        if cursor_filter is not None:
            column, value = cursor_filter
            where += f" AND {column} > ?"
            params.append(value)
        params.append(safe_limit)

        rows = await self.store.fetch_all(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE {where} ORDER BY created_at, id LIMIT ?",
            params,
        )
        messages = [Message.from_row(row) for row in rows]
        if viewer is not None:
            read_upto = room.read_cursor(viewer.role)
            for message in messages:
                message.is_read = message.sender_role == viewer.role or message.id <= read_upto
        return messages

    async def mark_room_read(self, room_id: int, reader: Actor) -> int:
        """Advance the reader's cursor to the latest message; returns the cursor."""

        async def _op() -> int:
            async with self.store.transaction() as db:
                room = await fetch_room(db, room_id)
                if not room:
                    raise NotFoundError("Chat room not found.")
                if not room.participant(reader):
                    raise ForbiddenError("Not a participant of this chat.")
                column = READ_CURSOR_COLUMNS[reader.role]
                await db.execute(
                    f"""
                    UPDATE chat_rooms
                       SET {column} = MAX({column}, COALESCE((SELECT MAX(id) FROM messages WHERE room_id = ?), 0))
                     WHERE id = ?
                    """,
                    (room.id, room.id),
                )
                async with db.execute(f"SELECT {column} FROM chat_rooms WHERE id = ?", (room.id,)) as cur:
                    row = await cur.fetchone()
                return int(row[0] if row else 0)

        return await self.store.run(_op, where="chat.mark_read")

    async def unread_messages(self, room_id: int, reader: Actor) -> int:
        room = await self.get_room(room_id, actor=reader)
        row = await self.store.fetch_one(
            "SELECT COUNT(*) FROM messages WHERE room_id = ? AND sender_role != ? AND id > ?",
            (room.id, reader.role, room.read_cursor(reader.role)),
        )
        return int(row[0] if row else 0)
