#!/usr/bin/env python
"""
scripts/run_migrations.py
--------------------------
Apply db/schema.sql to the configured Postgres database and check that
every table it declares exists afterwards.

Usage:
    python scripts/run_migrations.py             # apply + verify
    python scripts/run_migrations.py --dry-run   # list statements only
    python scripts/run_migrations.py --verify    # verify only

Exit status is 0 on success and 1 on a connection error, an SQL error or
a missing table. All statements run in one transaction; the schema uses
IF NOT EXISTS throughout, so re-running is harmless.
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import re
import sys

# Run as a script from anywhere: make backend/ importable.
_BACKEND_DIR = pathlib.Path(__file__).resolve().parent.parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

import psycopg2  # noqa: E402

import config  # noqa: E402
from db.connection import close_pool, get_conn  # noqa: E402

logger = logging.getLogger("migrations")

SCHEMA_FILE = _BACKEND_DIR / "db" / "schema.sql"

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"--[^\n]*")
_CREATE_TABLE = re.compile(r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?([A-Za-z_][A-Za-z0-9_]*)", re.I)


def load_statements(path: pathlib.Path = SCHEMA_FILE) -> list[str]:
    """Executable statements of a schema file, comments removed, in file order."""
    sql = path.read_text(encoding="utf-8")
    sql = _LINE_COMMENT.sub("", _BLOCK_COMMENT.sub("", sql))
    return [s.strip() for s in sql.split(";") if s.strip()]


def declared_tables(statements: list[str]) -> list[str]:
    matches = (_CREATE_TABLE.match(s) for s in statements)
    return [m.group(1) for m in matches if m]


def apply(statements: list[str]) -> None:
    with get_conn() as conn:
        with conn.cursor() as cur:
            for i, stmt in enumerate(statements, 1):
                logger.info("[%03d] %s", i, " ".join(stmt.split())[:72])
                cur.execute(stmt)


def missing_tables(tables: list[str]) -> list[str]:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_name = ANY(%s)",
                (tables,),
            )
            present = {row[0] for row in cur.fetchall()}
    return [t for t in tables if t not in present]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply the outing planner schema.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="list statements without executing them")
    mode.add_argument("--verify", action="store_true", help="only check that the tables exist")
    args = parser.parse_args(argv)

    statements = load_statements()
    tables = declared_tables(statements)
    logger.info("schema %s: %d statements, tables %s", SCHEMA_FILE.name, len(statements), ", ".join(tables))

    if args.dry_run:
        for i, stmt in enumerate(statements, 1):
            print(f"-- [{i:03d}]\n{stmt};\n")
        return 0

    logger.info("target %s @ %s:%s", config.POSTGRES_DB, config.POSTGRES_HOST, config.POSTGRES_PORT)
    try:
        if not args.verify:
            apply(statements)
        missing = missing_tables(tables)
    except psycopg2.Error as exc:
        logger.error("migration failed: %s", exc.pgerror or exc)
        return 1
    finally:
        close_pool()

    if missing:
        logger.error("missing tables after migration: %s", ", ".join(missing))
        return 1
    logger.info("schema up to date")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format="%(levelname)-7s %(message)s")
    sys.exit(main())
