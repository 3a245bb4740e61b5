"""
Persistence for detection results.

PersistenceStore is the narrow interface the pipeline and alert evaluator use;
SqlAlchemyStore implements it on SQLAlchemy (Postgres via DATABASE_URL, else SQLite).
"""

from backend_dustwatch.database.store import (
    PersistenceStore,
    RecordFilter,
    SqlAlchemyStore,
    get_database_url,
)

__all__ = ["PersistenceStore", "RecordFilter", "SqlAlchemyStore", "get_database_url"]
