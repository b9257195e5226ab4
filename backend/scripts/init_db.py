"""
Create the entitlement tables in an empty database.

Usage:
    python backend/scripts/init_db.py [--database-url URL]

DATABASE_URL is used when no URL is given.
"""

import argparse
import logging
import sys

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from edpsych.app import configure_logging
from edpsych.config.settings import Settings, normalize_database_url
from edpsych.database.session import create_db_engine, init_database

logger = logging.getLogger("edpsych.scripts.init_db")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create entitlement tables")
    parser.add_argument("--database-url", help="overrides DATABASE_URL")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    database_url = normalize_database_url(args.database_url) or settings.database_url
    if not database_url:
        logger.error("No database URL: pass --database-url or set DATABASE_URL")
        return 2

    engine = create_db_engine(database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        tables = init_database(engine)
    except SQLAlchemyError:
        logger.exception("Database initialisation failed")
        return 1
    finally:
        engine.dispose()

    logger.info("Database ready: %s", ", ".join(tables))
    return 0


if __name__ == "__main__":
    sys.exit(main())
