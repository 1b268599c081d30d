"""SQLite lock contention journal.

Booking admission, status transitions and chat room creation all run inside
short ``BEGIN IMMEDIATE`` transactions. When several writers collide, SQLite
may still report ``database is locked`` after ``busy_timeout`` expires and the
store retries. Each such event is appended as one JSON line to the file named
by ``SQLITE_LOCK_LOG_PATH`` so contention hot spots can be inspected later:

  {"ts": "...", "where": "bookings.create", "attempt": 1, "retries": 3, ...}

Nothing is written when the variable is unset. Journal failures are ignored.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config import clean_env


logger = logging.getLogger(__name__)


def resolve_lock_log_path() -> Path | None:
    """Return the journal path from the environment, if configured."""
    raw = clean_env(os.getenv("SQLITE_LOCK_LOG_PATH"))
    return Path(raw) if raw else None


def build_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    db_path: str | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the JSON payload for one lock event.

    attempt is 1-based (1..retries).
    """
    payload: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "where": str(where or ""),
        "attempt": int(attempt),
        "retries": int(retries),
        "error": str(exc),
        "pid": os.getpid(),
    }
    if db_path:
        payload["db_path"] = str(db_path)
    if delay_sec is not None:
        payload["delay_sec"] = round(float(delay_sec), 4)
    for key, value in (extra or {}).items():
        payload.setdefault(key, value)
    return payload


def log_sqlite_lock_event(
    *,
    where: str,
    exc: BaseException,
    attempt: int,
    retries: int,
    delay_sec: float | None = None,
    db_path: str | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Append a lock event to the journal (best effort)."""
    path = resolve_lock_log_path()
    if path is None:
        return
    payload = build_lock_event(
        where=where,
        exc=exc,
        attempt=attempt,
        retries=retries,
        delay_sec=delay_sec,
        db_path=db_path,
        extra=extra,
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")
    except OSError as error:
        logger.debug("Lock journal write failed: %s", error)
