"""
db/
----
Storage layer for the outing planner.

Storage architecture:
  PostgreSQL (psycopg2) — approved itineraries
    tables: itinerary, itinerary_items
    schema: db/schema.sql
    apply:  python scripts/run_migrations.py

  Redis (redis-py) — volatile run-state mirror
    runstate:{run_id}   TTL = RUN_STATE_TTL

Public exports (import from here for convenience):
    from db import get_conn, close_pool, get_redis
    from db.repositories.itinerary_repo import PostgresItineraryRepository
"""

from db.connection import get_conn, close_pool
from db.redis_client import get_redis

__all__ = ["get_conn", "close_pool", "get_redis"]
