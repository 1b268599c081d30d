"""Shop registry and the service catalog each shop publishes."""

from __future__ import annotations

import logging

import aiosqlite

from bookings.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from bookings.models import ACTIVE_STATUSES, Actor, Service, Shop
from bookings.notifications import TYPE_PROFILE_UPDATED, insert_notification
from config import CFG
from database import Store, utc_now_iso, utc_today


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 120
MAX_ADDRESS_LENGTH = 300
MAX_SERVICE_PRICE = 1_000_000

SHOP_COLUMNS = "id, name, owner_id, address, work_mode_on, created_at, updated_at"
SERVICE_COLUMNS = "id, shop_id, name, price, duration_min, created_at"


async def fetch_shop(db: aiosqlite.Connection, shop_id: int) -> Shop | None:
    async with db.execute(f"SELECT {SHOP_COLUMNS} FROM shops WHERE id = ?", (int(shop_id),)) as cur:
        row = await cur.fetchone()
    return Shop.from_row(row) if row else None


async def fetch_service(db: aiosqlite.Connection, service_id: int) -> Service | None:
    async with db.execute(f"SELECT {SERVICE_COLUMNS} FROM services WHERE id = ?", (int(service_id),)) as cur:
        row = await cur.fetchone()
    return Service.from_row(row) if row else None


def ensure_shop_actor(actor: Actor | None, shop_id: int) -> None:
    """Reject callers that are not the shop itself (None means trusted caller)."""
    if actor is not None and not actor.is_shop(shop_id):
        raise ForbiddenError("Only the shop can manage this resource.")


def _clean_name(raw: str, *, what: str) -> str:
    name = str(raw or "").strip()
    if not name:
        raise ValidationError(f"{what} name cannot be empty.")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"{what} name is too long.")
    return name


def _clean_address(raw: str | None) -> str:
    address = str(raw or "").strip()
    if len(address) > MAX_ADDRESS_LENGTH:
        raise ValidationError("Address is too long.")
    return address


def _clean_price(raw: object) -> float:
    try:
        price = float(raw)
    except (TypeError, ValueError):
        raise ValidationError("Price must be a number.") from None
    if price < 0 or price > MAX_SERVICE_PRICE:
        raise ValidationError("Price is out of range.")
    return round(price, 2)


def _clean_duration(raw: object) -> int:
    if isinstance(raw, bool):
        raise ValidationError("Duration must be a whole number of minutes.")
    try:
        duration = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Duration must be a whole number of minutes.") from None
    if duration <= 0 or duration > 24 * 60:
        raise ValidationError("Duration must be between 1 and 1440 minutes.")
    return duration


class ShopDirectory:
    """Shop registration, profile edits and the per-shop service catalog."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def register_shop(self, name: str, owner_id: str, address: str | None = None) -> Shop:
        clean_name = _clean_name(name, what="Shop")
        owner = str(owner_id or "").strip()
        if not owner:
            raise ValidationError("Shop owner is required.")
        clean_address = _clean_address(address)

        async def _op() -> int:
            async with self.store.transaction() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO shops (name, owner_id, address, work_mode_on, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (clean_name, owner, clean_address, 1 if CFG.default_work_mode else 0, utc_now_iso()),
                )
                return int(cursor.lastrowid)

        shop_id = await self.store.run(_op, where="shops.register")
        logger.info("Shop %s registered by owner %s", shop_id, owner)
        return await self.get_shop(shop_id)

    async def get_shop(self, shop_id: int) -> Shop:
        async with self.store.connect() as db:
            shop = await fetch_shop(db, shop_id)
        if not shop:
            raise NotFoundError("Shop not found.")
        return shop

    async def update_profile(
        self,
        shop_id: int,
        *,
        name: str | None = None,
        address: str | None = None,
        actor: Actor | None = None,
    ) -> Shop:
        """Edit shop profile fields and let the shop know about it."""
        ensure_shop_actor(actor, shop_id)
        changes: dict[str, str] = {}
        if name is not None:
            changes["name"] = _clean_name(name, what="Shop")
        if address is not None:
            changes["address"] = _clean_address(address)
        if not changes:
            raise ValidationError("Nothing to update.")

        async def _op() -> None:
            async with self.store.transaction() as db:
                if not await fetch_shop(db, shop_id):
                    raise NotFoundError("Shop not found.")
                assignments = ", ".join(f"{column} = ?" for column in changes)
                await db.execute(
                    f"UPDATE shops SET {assignments}, updated_at = ? WHERE id = ?",
                    (*changes.values(), utc_now_iso(), int(shop_id)),
                )
                await insert_notification(
                    db,
                    target_type="shop",
                    target_id=shop_id,
                    notification_type=TYPE_PROFILE_UPDATED,
                    title="Profile updated",
                    message="Shop profile was updated: " + ", ".join(sorted(changes)),
                )

        await self.store.run(_op, where="shops.update_profile")
        logger.info("Shop %s profile updated (%s)", shop_id, ", ".join(sorted(changes)))
        return await self.get_shop(shop_id)

    async def add_service(
        self,
        shop_id: int,
        name: str,
        price: object,
        duration_min: object,
        *,
        actor: Actor | None = None,
    ) -> Service:
        ensure_shop_actor(actor, shop_id)
        clean_name = _clean_name(name, what="Service")
        clean_price = _clean_price(price)
        duration = _clean_duration(duration_min)

        async def _op() -> int:
            async with self.store.transaction() as db:
                if not await fetch_shop(db, shop_id):
                    raise NotFoundError("Shop not found.")
                cursor = await db.execute(
                    """
                    INSERT INTO services (shop_id, name, price, duration_min, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (int(shop_id), clean_name, clean_price, duration, utc_now_iso()),
                )
                return int(cursor.lastrowid)

        service_id = await self.store.run(_op, where="shops.add_service")
        logger.info("Service %s added to shop %s", service_id, shop_id)
        return await self.get_service(service_id)

    async def get_service(self, service_id: int) -> Service:
        async with self.store.connect() as db:
            service = await fetch_service(db, service_id)
        if not service:
            raise NotFoundError("Service not found.")
        return service

    async def update_service(
        self,
        service_id: int,
        *,
        name: str | None = None,
        price: object = None,
        duration_min: object = None,
        actor: Actor | None = None,
    ) -> Service:
        changes: dict[str, object] = {}
        if name is not None:
            changes["name"] = _clean_name(name, what="Service")
        if price is not None:
            changes["price"] = _clean_price(price)
        if duration_min is not None:
            changes["duration_min"] = _clean_duration(duration_min)
        if not changes:
            raise ValidationError("Nothing to update.")

        async def _op() -> None:
            async with self.store.transaction() as db:
                service = await fetch_service(db, service_id)
                if not service:
                    raise NotFoundError("Service not found.")
                ensure_shop_actor(actor, service.shop_id)
                assignments = ", ".join(f"{column} = ?" for column in changes)
                await db.execute(
                    f"UPDATE services SET {assignments} WHERE id = ?",
                    (*changes.values(), int(service_id)),
                )

        await self.store.run(_op, where="shops.update_service")
        return await self.get_service(service_id)

    async def delete_service(self, service_id: int, *, actor: Actor | None = None) -> None:
        """Remove a service unless an upcoming active booking still uses it."""
        today = utc_today().isoformat()

        async def _op() -> int:
            async with self.store.transaction() as db:
                service = await fetch_service(db, service_id)
                if not service:
                    raise NotFoundError("Service not found.")
                ensure_shop_actor(actor, service.shop_id)
                async with db.execute(
                    f"""
                    SELECT COUNT(*) FROM bookings
                     WHERE service_id = ?
                       AND status IN ({", ".join("?" for _ in ACTIVE_STATUSES)})
                       AND booking_date >= ?
                    """,
                    (int(service_id), *ACTIVE_STATUSES, today),
                ) as cur:
                    row = await cur.fetchone()
                if int(row[0] if row else 0) > 0:
                    raise ConflictError("Service is used by upcoming bookings.")
                await db.execute("DELETE FROM services WHERE id = ?", (int(service_id),))
                return service.shop_id

        shop_id = await self.store.run(_op, where="shops.delete_service")
        logger.info("Service %s removed from shop %s", service_id, shop_id)

    async def list_services(self, shop_id: int) -> list[Service]:
        rows = await self.store.fetch_all(
            f"SELECT {SERVICE_COLUMNS} FROM services WHERE shop_id = ? ORDER BY id",
            (int(shop_id),),
        )
        return [Service.from_row(row) for row in rows]

    async def list_shops_by_owner(self, owner_id: str) -> list[Shop]:
        owner = str(owner_id or "").strip()
        if not owner:
            raise ValidationError("Shop owner is required.")
        rows = await self.store.fetch_all(
            f"SELECT {SHOP_COLUMNS} FROM shops WHERE owner_id = ? ORDER BY id",
            (owner,),
        )
        return [Shop.from_row(row) for row in rows]
