"""Runtime entrypoint for the booking HTTP API."""
import argparse
import asyncio
import logging
import os
from contextlib import suppress

import uvicorn

from booking.app.core.db import dispose_engine, init_db
from booking.app.core.logger import configure_logging

logger = logging.getLogger(__name__)


async def _init_db() -> None:
    await init_db(force=False)
    await dispose_engine()
    logger.info("Database schema is up to date")


def _issue_token(actor_id: str | None, role: str) -> str:
    from booking.api.app import issue_token
    from booking.app.domain.actors import Actor, Role

    return issue_token(Actor(id=actor_id, role=Role(role)))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="booking-api")
    sub = parser.add_subparsers(dest="cmd")

    serve = sub.add_parser("serve")
    serve.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))

    sub.add_parser("init-db")

    tok = sub.add_parser("issue-token")
    tok.add_argument("--id", dest="actor_id", default=None)
    tok.add_argument("--role", choices=["admin", "client"], default="client")

    args = parser.parse_args(argv)
    configure_logging()

    if args.cmd == "init-db":
        asyncio.run(_init_db())
        return 0
    if args.cmd == "issue-token":
        print(_issue_token(args.actor_id, args.role))
        return 0

    host = getattr(args, "host", os.getenv("API_HOST", "0.0.0.0"))
    port = getattr(args, "port", int(os.getenv("API_PORT", "8000")))
    logger.info("Starting booking API on %s:%s", host, port)
    # log_config=None keeps the rich handlers installed above
    uvicorn.run("booking.api.app:app", host=host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    with suppress(KeyboardInterrupt):
        raise SystemExit(main())
