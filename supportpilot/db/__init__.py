"""
Async database engine.
Embedding columns use `pgvector.sqlalchemy.Vector`, which converts lists to and
from the vector text format, so no driver-level codec is registered.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


def create_db_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)
