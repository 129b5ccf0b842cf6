"""
Operator commands.

    galatix init-db
    galatix create-admin --email you@example.org --password ... [--role view]
    galatix serve [--host 0.0.0.0] [--port 8000]

All of them read DATABASE_URL and friends from the environment.
"""
import argparse
import asyncio
import sys

import uvicorn

from .config import Settings
from .errors import GalaError
from .infra.sql import make_async_engine
from .model.db import create_schema
from .schemas import UserCreate
from .users import create_user


async def _init_db(settings: Settings) -> None:
    engine, _, _ = make_async_engine(settings.database_url, settings.db_pool)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
    finally:
        await engine.dispose()
    print('✅ schema ready')


async def _create_admin(settings: Settings, body: UserCreate) -> None:
    engine, SessionAsync, _ = make_async_engine(
        settings.database_url, settings.db_pool
    )
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with SessionAsync() as db:
            user = await create_user(db, body)
    finally:
        await engine.dispose()
    print(f"✅ {user['role']} user {user['email']} created")


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        prog="galatix", description="Gala ticketing back office"
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="create tables and counters")

    ca = sub.add_parser("create-admin", help="add an admin user")
    ca.add_argument("--email", required=True)
    ca.add_argument("--password", required=True)
    ca.add_argument("--role", choices=("edit", "view"), default="edit")

    sv = sub.add_parser("serve", help="run the API with uvicorn")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8000)
    sv.add_argument("--reload", action="store_true")

    args = ap.parse_args(argv)

    if args.cmd == "serve":
        uvicorn.run(
            "galatix.server:create_app", factory=True,
            host=args.host, port=args.port, reload=args.reload,
        )
        return 0

    try:
        settings = Settings.from_env()
    except RuntimeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        if args.cmd == "init-db":
            asyncio.run(_init_db(settings))
        elif args.cmd == "create-admin":
            asyncio.run(_create_admin(settings, UserCreate(
                email=args.email, password=args.password, role=args.role,
            )))
    except GalaError as e:
        print(f"error: {e.detail}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
