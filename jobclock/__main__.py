from __future__ import annotations

import argparse
import os

import uvicorn

from jobclock.api.app import create_app
from jobclock.core.config import get_settings
from jobclock.core.logging import configure_logging
from jobclock.db.init_db import initialize_database
from jobclock.db.models import UserRole
from jobclock.db.session import get_session_factory, reset_engine
from jobclock.users.service import UserService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="jobclock", description="Job time tracking service")
    parser.add_argument("--state-root", default=None, help="Override JOBCLOCK_STATE_ROOT")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API (default)")
    serve.add_argument("--host", default=None, help="Bind address")
    serve.add_argument("--port", type=int, default=None, help="Bind port")

    subparsers.add_parser("init-db", help="Create tables and apply migrations, then exit")

    set_role = subparsers.add_parser("set-role", help="Create or update a user with the given role")
    set_role.add_argument("external_id", help="Subject id issued by the identity provider")
    set_role.add_argument("role", choices=[role.value for role in UserRole])
    set_role.add_argument("--email", default=None)
    set_role.add_argument("--name", default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.state_root:
        os.environ["JOBCLOCK_STATE_ROOT"] = args.state_root
        get_settings.cache_clear()
        reset_engine()

    settings = get_settings()
    logger = configure_logging(settings.log_level)

    if args.command == "init-db":
        initialize_database()
        logger.info("Database ready at %s", settings.effective_database_url)
        return

    if args.command == "set-role":
        initialize_database()
        users = UserService(settings, get_session_factory())
        user = users.ensure_user(args.external_id, email=args.email, name=args.name, role=UserRole(args.role))
        logger.info("User %s (id %s) now has role %s", user.external_id, user.id, user.role.value)
        return

    uvicorn.run(
        create_app(),
        host=getattr(args, "host", None) or settings.api_host,
        port=getattr(args, "port", None) or settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
