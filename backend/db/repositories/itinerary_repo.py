"""
db/repositories/itinerary_repo.py
-----------------------------------
Persistence for approved itineraries: the `itinerary` and
`itinerary_items` tables (db/schema.sql).

The plain functions accept a psycopg2 connection object; commit/rollback
is managed by the caller via db.connection.get_conn().
PostgresItineraryRepository wraps them into the single idempotent
"persist this itinerary for this user" call the orchestrator uses.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from db.connection import get_conn
from modules.errors import PersistenceError
from schemas.itinerary import Itinerary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistedItinerary:
    itinerary_id: str
    item_count: int


# ── itinerary table ────────────────────────────────────────────────────────────

def insert_itinerary(conn, user_id: str, itinerary: Itinerary) -> Optional[str]:
    """
    Insert the itinerary header row. Returns its UUID, or None when a row
    with the same external_id already exists.
    """
    prices = [i.event.price for i in itinerary.items if i.event.price is not None]
    currency = prices[0].currency if prices else "SGD"
    sql = """
        INSERT INTO itinerary (
            external_id, created_by, summary, itinerary_date,
            total_cost_min, total_cost_max, total_cost_currency, status
        ) VALUES (
            %(external_id)s, %(created_by)s, %(summary)s, %(itinerary_date)s,
            %(total_cost_min)s, %(total_cost_max)s, %(currency)s, %(status)s
        )
        ON CONFLICT (external_id) DO NOTHING
        RETURNING id
    """
    row = {
        "external_id":    itinerary.id,
        "created_by":     user_id,
        "summary":        itinerary.name,
        "itinerary_date": itinerary.date,
        "total_cost_min": sum(p.min for p in prices),
        "total_cost_max": itinerary.total_cost,
        "currency":       currency,
        "status":         itinerary.status.value,
    }
    with conn.cursor() as cur:
        cur.execute(sql, row)
        found = cur.fetchone()
        return str(found[0]) if found else None


def get_itinerary_by_external_id(conn, external_id: str) -> dict | None:
    sql = """
        SELECT i.id, i.external_id, i.created_by, i.summary, i.status,
               (SELECT COUNT(*) FROM itinerary_items it WHERE it.itinerary_id = i.id) AS item_count
        FROM itinerary i
        WHERE i.external_id = %s
    """
    with conn.cursor() as cur:
        cur.execute(sql, (external_id,))
        row = cur.fetchone()
        if not row:
            return None
        cols = [d[0] for d in cur.description]
        return dict(zip(cols, row))


def get_itinerary(conn, itinerary_id: str) -> dict | None:
    """Return the itinerary row with its items (ordered) under `items`, or None."""
    with conn.cursor() as cur:
        cur.execute("SELECT * FROM itinerary WHERE id = %s", (itinerary_id,))
        row = cur.fetchone()
        if not row:
            return None
        header = dict(zip([d[0] for d in cur.description], row))
        cur.execute(
            "SELECT * FROM itinerary_items WHERE itinerary_id = %s ORDER BY sort_order",
            (itinerary_id,),
        )
        cols = [d[0] for d in cur.description]
        header["items"] = [dict(zip(cols, r)) for r in cur.fetchall()]
        return header


# ── itinerary_items table ─────────────────────────────────────────────────────

def insert_items(conn, itinerary_id: str, itinerary: Itinerary) -> int:
    """Insert one row per item with a JSON event snapshot. Returns rows written."""
    sql = """
        INSERT INTO itinerary_items (
            itinerary_id, event_id, event_snapshot,
            time_start, time_end, notes, sort_order
        ) VALUES (
            %(itinerary_id)s, %(event_id)s, %(event_snapshot)s::jsonb,
            %(time_start)s, %(time_end)s, %(notes)s, %(sort_order)s
        )
    """
    rows: list[dict[str, Any]] = [
        {
            "itinerary_id":   itinerary_id,
            "event_id":       item.event.id,
            "event_snapshot": json.dumps(item.event.to_dict()),
            "time_start":     item.scheduled_time.start,
            "time_end":       item.scheduled_time.end,
            "notes":          item.notes,
            "sort_order":     idx,
        }
        for idx, item in enumerate(itinerary.items)
    ]
    with conn.cursor() as cur:
        cur.executemany(sql, rows)
    return len(rows)


# ── Repository ─────────────────────────────────────────────────────────────────

class PostgresItineraryRepository:
    """Idempotent on the itinerary's own id: persisting twice writes once."""

    def persist(self, user_id: str, itinerary: Itinerary) -> PersistedItinerary:
        try:
            with get_conn() as conn:
                new_id = insert_itinerary(conn, user_id, itinerary)
                if new_id is None:
                    existing = get_itinerary_by_external_id(conn, itinerary.id)
                    logger.info("[itinerary_repo] %s already persisted", itinerary.id)
                    return PersistedItinerary(str(existing["id"]), int(existing["item_count"]))
                count = insert_items(conn, new_id, itinerary)
        except Exception as exc:
            raise PersistenceError(str(exc) or type(exc).__name__) from exc
        logger.info("[itinerary_repo] persisted %s as %s (%d items)", itinerary.id, new_id, count)
        return PersistedItinerary(new_id, count)
