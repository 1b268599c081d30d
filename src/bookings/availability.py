"""Shop work-mode gate."""

from __future__ import annotations

import logging

import aiosqlite

from bookings.errors import NotFoundError
from bookings.models import Actor
from bookings.shops import ensure_shop_actor
from database import Store, utc_now_iso


logger = logging.getLogger(__name__)


async def read_work_mode(db: aiosqlite.Connection, shop_id: int) -> bool | None:
    """Current work mode as seen by this connection, or None for unknown shops."""
    async with db.execute("SELECT work_mode_on FROM shops WHERE id = ?", (int(shop_id),)) as cur:
        row = await cur.fetchone()
    return bool(row[0]) if row else None


class AvailabilityGate:
    """Work mode switch; when off, no new bookings are admitted."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def toggle_work_mode(self, shop_id: int, *, actor: Actor | None = None) -> bool:
        """Flip work mode and return the new state.

        The flip is a single UPDATE inside a write transaction, so concurrent
        toggles serialize and each one observes the previous result.
        """
        ensure_shop_actor(actor, shop_id)

        async def _op() -> bool:
            async with self.store.transaction() as db:
                cursor = await db.execute(
                    "UPDATE shops SET work_mode_on = 1 - work_mode_on, updated_at = ? WHERE id = ?",
                    (utc_now_iso(), int(shop_id)),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Shop not found.")
                state = await read_work_mode(db, shop_id)
                return bool(state)

        state = await self.store.run(_op, where="availability.toggle")
        logger.info("Shop %s work mode is now %s", shop_id, "on" if state else "off")
        return state

    async def set_work_mode(self, shop_id: int, enabled: bool, *, actor: Actor | None = None) -> bool:
        ensure_shop_actor(actor, shop_id)

        async def _op() -> None:
            async with self.store.transaction() as db:
                cursor = await db.execute(
                    "UPDATE shops SET work_mode_on = ?, updated_at = ? WHERE id = ?",
                    (1 if enabled else 0, utc_now_iso(), int(shop_id)),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Shop not found.")

        await self.store.run(_op, where="availability.set")
        logger.info("Shop %s work mode set %s", shop_id, "on" if enabled else "off")
        return bool(enabled)

    async def is_open(self, shop_id: int) -> bool:
        async with self.store.connect() as db:
            state = await read_work_mode(db, shop_id)
        if state is None:
            raise NotFoundError("Shop not found.")
        return state
