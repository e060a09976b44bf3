# database.py
from databases import Database
from sqlalchemy import create_engine

from order_service import config
from order_service.models import metadata


def sync_url(database_url: str) -> str:
    """The sync engine only needs the driver suffix stripped."""
    return database_url.replace("+asyncpg", "").replace("+aiosqlite", "")


def make_database(database_url: str = None) -> Database:
    # async database client
    return Database(database_url or config.DATABASE_URL)


def create_tables(database_url: str = None):
    # SQLAlchemy sync engine for metadata.create_all()
    engine = create_engine(sync_url(database_url or config.DATABASE_URL))
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
