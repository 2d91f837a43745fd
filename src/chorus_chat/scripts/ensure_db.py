"""Utility script to manage the configured message database."""
from __future__ import annotations

import argparse
import sys

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from chorus_chat.core.settings import settings
from chorus_chat.db.session import _engine_kwargs, create_tables, drop_tables


def main() -> None:
    parser = argparse.ArgumentParser(description="Ensure or reset the configured database")
    parser.add_argument(
        "--drop-tables",
        action="store_true",
        help="Drop all tables before recreating them.",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Override database URL (defaults to effective settings URL)",
    )
    args = parser.parse_args()

    url = args.url or settings.effective_database_url
    engine = create_engine(url, **_engine_kwargs(url))
    try:
        if args.drop_tables:
            drop_tables(engine)
            print("[ensure_db] dropped all tables")
        create_tables(engine)
        print(f"[ensure_db] tables ready at {engine.url.render_as_string(hide_password=True)}")
    except SQLAlchemyError as exc:
        print(f"[ensure_db] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
