"""
db.py
Database engine and session factory. DATABASE_URL wins; otherwise the URL is
assembled from the POSTGRES_* variables, and a local SQLite file is used when
no Postgres host is configured.
"""

import os
from pathlib import Path
from urllib.parse import quote

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from config import get_logger

logger = get_logger(__name__)

SQLITE_FALLBACK_URL = "sqlite:///./ideaspark.db"


def resolve_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    load_dotenv(dotenv_path=Path(".") / ".env", override=True)
    host = os.getenv("POSTGRES_HOST")
    if not host:
        logger.warning("No database configured, using local SQLite file")
        return SQLITE_FALLBACK_URL

    user = os.getenv("POSTGRES_USER", "")
    password = quote(os.getenv("POSTGRES_PASSWORD", ""))
    name = os.getenv("POSTGRES_DB", "")
    return f"postgresql://{user}:{password}@{host}/{name}"


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


SQLALCHEMY_DATABASE_URL = resolve_database_url()
engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Request-scoped session, closed when the request finishes"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
