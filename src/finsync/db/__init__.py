"""
db - SQLite connection, schema and initialization.
"""

from finsync.db.connection import create_connection, execute_in_transaction
from finsync.db.migrations import initialize_store

__all__ = [
    "create_connection",
    "execute_in_transaction",
    "initialize_store",
]
