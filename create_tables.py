"""
create_tables.py
Run once against a fresh database to create the users, subscriptions and
audit_logs tables. Existing tables are left untouched.

    python create_tables.py
"""

from sqlalchemy import inspect

import models
from db import engine
from config import get_logger

logger = get_logger(__name__)


def create_tables():
    existing = set(inspect(engine).get_table_names())
    missing = [name for name in models.Base.metadata.tables if name not in existing]

    if not missing:
        logger.info("All tables already exist, nothing to do")
        return []

    logger.info(f"Creating tables: {', '.join(missing)}")
    models.Base.metadata.create_all(bind=engine)
    return missing


if __name__ == "__main__":
    create_tables()
