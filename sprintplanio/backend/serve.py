"""Command line entry point running the API with uvicorn."""

from __future__ import annotations

import argparse
import logging

from sprintplanio.backend.config import load_settings
from sprintplanio.backend.migrate import apply_schema


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Sprint Planio server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--migrate", action="store_true", help="apply the database schema before starting")
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.migrate:
        settings = load_settings()
        if not settings.database_url:
            raise SystemExit("--migrate needs SPRINTPLANIO_DATABASE_URL")
        apply_schema(settings.database_url)

    import uvicorn

    uvicorn.run(
        "sprintplanio.backend.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
