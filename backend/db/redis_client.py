"""
db/redis_client.py
-------------------
Redis mirror of in-flight run state.

  runstate:{run_id}   hash, expires RUN_STATE_TTL seconds after the last write

The in-memory RunContext stays authoritative; the hash only lets another
process (an ops shell, a second API worker) see where a run is. Nested
values (agent_states, errors) are stored as JSON strings and decoded again
by get_run_state().
"""

from __future__ import annotations

import json
import threading
from typing import Any

import redis

import config

RUN_STATE_PREFIX = "runstate:"
_JSON_FIELDS = frozenset({"agent_states", "errors"})

_client: redis.Redis | None = None
_client_lock = threading.Lock()


def get_redis() -> redis.Redis:
    global _client
    with _client_lock:
        if _client is None:
            _client = redis.Redis(
                host=config.REDIS_HOST,
                port=config.REDIS_PORT,
                db=config.REDIS_DB,
                password=config.REDIS_PASSWORD or None,
                decode_responses=True,
                socket_timeout=2,
                socket_connect_timeout=2,
            )
        return _client


def run_state_key(run_id: str) -> str:
    return f"{RUN_STATE_PREFIX}{run_id}"


def encode_run_state(fields: dict[str, Any]) -> dict[str, str]:
    """Hash-ready mapping; None values are left out."""
    return {
        k: json.dumps(v) if isinstance(v, (dict, list)) else str(v)
        for k, v in fields.items()
        if v is not None
    }


def set_run_state(run_id: str, fields: dict[str, Any], client: redis.Redis | None = None) -> None:
    encoded = encode_run_state(fields)
    if not encoded:
        return
    key = run_state_key(run_id)
    pipe = (client or get_redis()).pipeline(transaction=True)
    pipe.hset(key, mapping=encoded)
    pipe.expire(key, config.RUN_STATE_TTL)
    pipe.execute()


def get_run_state(run_id: str, client: redis.Redis | None = None) -> dict[str, Any] | None:
    raw = (client or get_redis()).hgetall(run_state_key(run_id))
    if not raw:
        return None
    state: dict[str, Any] = dict(raw)
    for name in _JSON_FIELDS & state.keys():
        try:
            state[name] = json.loads(state[name])
        except json.JSONDecodeError:
            pass  # leave a hand-edited value as the raw string
    return state


def ping_redis() -> None:
    """Raises redis.RedisError when the server is unreachable."""
    get_redis().ping()
