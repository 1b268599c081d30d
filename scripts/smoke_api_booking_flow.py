#!/usr/bin/env python3
"""
Dynamic smoke test: HTTP booking flow end to end.

Scenario through the real aiohttp app (no network, in-process test server):
- register a shop, add a slot and a service;
- customer books it; the shop's inbox shows booking_created;
- a second customer asking for the same slot/date gets 409 SlotUnavailable;
- shop switches work mode off; new bookings get 409 ShopClosed;
- shop confirms, customer opens the chat and both exchange messages;
- shop completes the booking; a late cancel is 400 InvalidTransition;
- inbox and chat reads need the caller identity; other callers get 403;
- the served customer reviews the shop; only the author edits or deletes;
- shops are listed per owner;
- error mapping: invalid JSON -> 400, unknown ids -> 404, wrong actor -> 403,
  overlapping slot -> 409.

Run:
  python3 scripts/smoke_api_booking_flow.py
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


async def _json(resp, expected_status: int) -> dict:
    body = await resp.json()
    _assert(
        resp.status == expected_status,
        f"{resp.method} {resp.url.path}: expected {expected_status}, got {resp.status}: {body}",
    )
    return body


CUSTOMER_HEADERS = {"X-Actor-Role": "customer", "X-Actor-Id": "cust-1"}


async def _run_checks(db_path: Path) -> None:
    from aiohttp.test_utils import TestClient, TestServer

    from api_server import create_api_app
    from bookings import build_booking_core
    from database import Store, utc_today

    store = Store(str(db_path))
    await store.init()
    app = create_api_app(build_booking_core(store))

    async with TestClient(TestServer(app)) as client:
        body = await _json(await client.get("/api/v1/health"), 200)
        _assert(body["status"] == "ok", "health must be ok")

        body = await _json(await client.post("/api/v1/shops", json={"name": "Flow Barber", "owner_id": "owner-1"}), 201)
        shop_id = body["shop"]["id"]
        shop_actor = {"role": "shop", "id": str(shop_id)}
        _assert(body["shop"]["work_mode_on"] is True, "new shop must be open")

        body = await _json(
            await client.post(
                f"/api/v1/shops/{shop_id}/slots",
                json={"start": "10:00", "end": "11:00", "actor": shop_actor},
            ),
            201,
        )
        slot_id = body["slot_id"]
        body = await _json(
            await client.post(
                f"/api/v1/shops/{shop_id}/slots",
                json={"start": "10:30", "end": "11:30", "actor": shop_actor},
            ),
            409,
        )
        _assert(body["status"] == "error", "overlap must be an error")

        body = await _json(
            await client.post(
                f"/api/v1/shops/{shop_id}/services",
                json={"name": "Haircut", "price": 25, "duration_min": 30, "actor": shop_actor},
            ),
            201,
        )
        service_id = body["service"]["id"]

        today = utc_today().isoformat()
        booking_request = {"shop_id": shop_id, "slot_id": slot_id, "service_id": service_id, "date": today}

        body = await _json(
            await client.post(
                "/api/v1/bookings",
                json={**booking_request, "customer_id": "cust-1", "actor": {"role": "customer", "id": "cust-1"}},
            ),
            201,
        )
        booking = body["booking"]
        _assert(booking["status"] == "pending", f"new booking must be pending: {booking}")

        shop_headers = {"X-Actor-Role": "shop", "X-Actor-Id": str(shop_id)}
        shop_inbox_url = f"/api/v1/notifications/shop/{shop_id}"
        body = await _json(await client.get(shop_inbox_url, headers=shop_headers), 200)
        _assert(body["unread_count"] == 1, f"shop must have one unread notification: {body}")
        _assert(body["items"][0]["type"] == "booking_created", "shop must be told about the booking")
        _assert(body["next_before"] is None, "a short inbox has no older page")
        shop_notification_id = body["items"][0]["id"]
        await _json(await client.get(shop_inbox_url), 400)
        await _json(await client.get(shop_inbox_url, headers=CUSTOMER_HEADERS), 403)
        await _json(
            await client.put(f"/api/v1/notifications/{shop_notification_id}/read", headers=CUSTOMER_HEADERS),
            403,
        )
        await _json(await client.put(f"{shop_inbox_url}/read-all", headers=CUSTOMER_HEADERS), 403)
        body = await _json(
            await client.get(shop_inbox_url, params={"before": str(shop_notification_id)}, headers=shop_headers),
            200,
        )
        _assert(body["items"] == [], "nothing is older than the first notification")
        await _json(await client.get(shop_inbox_url, params={"before": "x"}, headers=shop_headers), 400)

        body = await _json(
            await client.post("/api/v1/bookings", json={**booking_request, "customer_id": "cust-2"}),
            409,
        )
        _assert(body["reason"] == "SlotUnavailable", f"unexpected reason: {body}")

        body = await _json(
            await client.patch(f"/api/v1/shops/{shop_id}/work-mode", json={"actor": shop_actor}),
            200,
        )
        _assert(body["work_mode_on"] is False, "toggle must close the shop")
        body = await _json(
            await client.post("/api/v1/bookings", json={**booking_request, "customer_id": "cust-3"}),
            409,
        )
        _assert(body["reason"] == "ShopClosed", f"unexpected reason: {body}")
        await _json(
            await client.patch(
                f"/api/v1/shops/{shop_id}/work-mode",
                headers={"X-Actor-Role": "customer", "X-Actor-Id": "cust-1"},
            ),
            403,
        )

        booking_url = f"/api/v1/bookings/{booking['id']}"
        body = await _json(
            await client.patch(f"{booking_url}/status", json={"status": "confirmed", "actor": shop_actor}),
            200,
        )
        _assert(body["booking"]["status"] == "confirmed", "shop must confirm")

        body = await _json(
            await client.post(
                "/api/v1/chat-rooms",
                json={
                    "bookingId": booking["id"],
                    "shopId": shop_id,
                    "customerId": "cust-1",
                    "actor": {"role": "customer", "id": "cust-1"},
                },
            ),
            200,
        )
        room_id = body["room"]["id"]
        messages_url = f"/api/v1/chat-rooms/{room_id}/messages"

        await _json(
            await client.post(
                messages_url,
                json={"content": "Running 5 minutes late", "actor": {"role": "customer", "id": "cust-1"}},
            ),
            201,
        )
        body = await _json(
            await client.post(messages_url, json={"content": "No problem", "actor": shop_actor}),
            201,
        )
        last_id = body["message"]["id"]
        await _json(
            await client.post(
                messages_url,
                json={"content": "hi", "actor": {"role": "customer", "id": "cust-9"}},
            ),
            403,
        )

        body = await _json(
            await client.get(messages_url, params={"viewer_role": "customer", "viewer_id": "cust-1"}),
            200,
        )
        _assert([m["content"] for m in body["messages"]] == ["Running 5 minutes late", "No problem"], f"{body}")
        _assert(body["unread_count"] == 1, f"customer must have one unread chat message: {body}")
        body = await _json(
            await client.get(
                messages_url,
                params={"since": str(last_id), "viewer_role": "customer", "viewer_id": "cust-1"},
            ),
            200,
        )
        _assert(body["messages"] == [], "polling from the newest id must return nothing")
        await _json(await client.get(messages_url), 400)
        await _json(await client.get(messages_url, headers={"X-Actor-Role": "customer", "X-Actor-Id": "cust-9"}), 403)

        body = await _json(
            await client.put(f"/api/v1/chat-rooms/{room_id}/read", json={"actor": {"role": "customer", "id": "cust-1"}}),
            200,
        )
        _assert(body["read_message_id"] == last_id, "read cursor must move to the newest message")

        body = await _json(
            await client.patch(f"{booking_url}/status", json={"status": "completed", "actor": shop_actor}),
            200,
        )
        _assert(body["booking"]["status"] == "completed", "shop must complete")
        body = await _json(
            await client.patch(
                f"{booking_url}/status",
                json={"status": "canceled", "actor": {"role": "customer", "id": "cust-1"}},
            ),
            400,
        )
        _assert(body["error"] == "InvalidTransition", f"unexpected error: {body}")

        # Reviews: the served customer writes one; only the author may change it.
        body = await _json(
            await client.post(
                "/api/v1/reviews",
                json={
                    "shopId": shop_id,
                    "customerId": "cust-1",
                    "rating": 4,
                    "comment": "Sharp cut",
                    "actor": {"role": "customer", "id": "cust-1"},
                },
            ),
            201,
        )
        review_id = body["review"]["id"]
        await _json(
            await client.post("/api/v1/reviews", json={"shop_id": shop_id, "customer_id": "cust-1", "rating": 5}),
            400,
        )
        await _json(
            await client.post(
                "/api/v1/reviews",
                json={"shop_id": shop_id, "customer_id": "cust-2", "rating": 5, "actor": {"role": "customer", "id": "cust-2"}},
            ),
            403,
        )
        await _json(
            await client.post(
                "/api/v1/reviews",
                json={"shop_id": shop_id, "customer_id": "cust-1", "rating": 5, "actor": {"role": "customer", "id": "cust-1"}},
            ),
            409,
        )
        review_url = f"/api/v1/reviews/{review_id}"
        await _json(
            await client.put(review_url, json={"rating": 1}, headers={"X-Actor-Role": "customer", "X-Actor-Id": "cust-2"}),
            403,
        )
        await _json(await client.delete(review_url, json={"actor": shop_actor}), 403)
        body = await _json(await client.put(review_url, json={"rating": 5}, headers=CUSTOMER_HEADERS), 200)
        _assert(body["review"]["rating"] == 5, f"review edit not applied: {body}")
        body = await _json(await client.get(f"/api/v1/shops/{shop_id}/reviews"), 200)
        _assert([r["id"] for r in body["reviews"]] == [review_id], f"unexpected reviews: {body}")
        _assert(body["rating"] == {"count": 1, "average": 5.0}, f"unexpected rating summary: {body}")
        await _json(await client.delete(review_url, headers=CUSTOMER_HEADERS), 200)
        body = await _json(await client.get(f"/api/v1/shops/{shop_id}/reviews"), 200)
        _assert(body["reviews"] == [], "deleted review must disappear")
        await _json(await client.get("/api/v1/shops/999999/reviews"), 404)

        body = await _json(await client.get("/api/v1/owners/owner-1/shops"), 200)
        _assert([s["id"] for s in body["shops"]] == [shop_id], f"unexpected owner shops: {body}")

        body = await _json(
            await client.get("/api/v1/customers/cust-1/bookings", params={"status": "completed"}),
            200,
        )
        _assert([b["id"] for b in body["bookings"]] == [booking["id"]], f"unexpected customer bookings: {body}")

        body = await _json(await client.get("/api/v1/notifications/customer/cust-1", headers=CUSTOMER_HEADERS), 200)
        _assert(body["unread_count"] >= 3, f"customer must have status and chat notifications: {body}")
        first_id = body["items"][0]["id"]
        body = await _json(await client.put(f"/api/v1/notifications/{first_id}/read", headers=CUSTOMER_HEADERS), 200)
        _assert(body["notification"]["is_read"] is True, "notification must be marked read")
        body = await _json(await client.put(
                "/api/v1/notifications/customer/cust-1/read-all",
                json={"actor": {"role": "customer", "id": "cust-1"}},
            ),
            200,
        )
        body = await _json(await client.get("/api/v1/notifications/customer/cust-1", headers=CUSTOMER_HEADERS), 200)
        _assert(body["unread_count"] == 0, "read-all must clear the inbox")

        # Error mapping.
        await _json(
            await client.post("/api/v1/shops", data="{not json", headers={"Content-Type": "application/json"}),
            400,
        )
        await _json(await client.get("/api/v1/bookings/999999"), 404)
        await _json(await client.get("/api/v1/shops/999999"), 404)
        await _json(
            await client.get(booking_url, headers={"X-Actor-Role": "customer", "X-Actor-Id": "cust-2"}),
            403,
        )
        await _json(await client.patch(f"{booking_url}/status", json={"status": "confirmed"}), 400)


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="shopbook-smoke-api-flow-"))
    try:
        db_path = tmpdir / "state.db"
        os.environ["DB_PATH"] = str(db_path)
        sys.path.insert(0, str(REPO_ROOT / "src"))

        asyncio.run(_run_checks(db_path))
        print("OK: api booking flow smoke passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_api_booking_flow() -> None:
    main()


if __name__ == "__main__":
    main()
