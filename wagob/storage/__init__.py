"""wagob storage.

SQLite is the canonical store; every mutation is one write transaction.
"""

from .schema import SCHEMA_VERSION, init_db
from .sqlite import SQLiteStateStore

__all__ = ["SCHEMA_VERSION", "SQLiteStateStore", "init_db"]
