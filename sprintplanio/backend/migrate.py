"""Apply SQL schema for local PostgreSQL setup."""

from __future__ import annotations

import logging
from pathlib import Path

from sprintplanio.backend.config import load_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_schema(database_url: str) -> None:
    import psycopg

    schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("schema applied from %s", SCHEMA_PATH.name)


def main() -> None:
    settings = load_settings()
    if not settings.database_url:
        raise RuntimeError("SPRINTPLANIO_DATABASE_URL is required for migration")
    logging.basicConfig(level=settings.log_level)
    apply_schema(settings.database_url)


if __name__ == "__main__":
    main()
