"""
connection.py - SQLite database connection management.

Handles connection creation, PRAGMA configuration and the transaction
helper every local write goes through.

All connections use WAL mode for concurrent read/write.
"""

import logging
import sqlite3
from contextlib import AbstractContextManager
from typing import Any, Callable, TypeVar

from finsync.config import SQLITE_PRAGMAS
from finsync.errors import DatabaseError, TransactionFailure

logger = logging.getLogger("finsync.db")

T = TypeVar("T")


def create_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a new SQLite connection with proper configuration.

    Rows are returned as sqlite3.Row so callers can address columns by
    name.

    Raises:
        DatabaseError: If connection fails
    """
    try:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
    except sqlite3.Error as e:
        raise DatabaseError(
            f"Failed to connect to database: {e}",
            operation="connect",
        ) from e

    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn)
    return conn


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    for pragma, value in SQLITE_PRAGMAS.items():
        try:
            conn.execute(f"PRAGMA {pragma} = {value}")
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to set PRAGMA {pragma}: {e}",
                operation="pragma",
                sql=f"PRAGMA {pragma} = {value}",
            ) from e


def execute_in_transaction(
    conn: sqlite3.Connection,
    operation: Callable[[sqlite3.Connection], T],
    lock: AbstractContextManager | None = None,
    name: str = "transaction",
) -> T:
    """
    Execute an operation within an IMMEDIATE transaction.

    Ensures atomicity: all changes commit or all rollback. The optional
    lock serializes threads sharing one connection.

    Raises:
        TransactionFailure: If SQLite refuses any statement or the commit
    """
    if lock is None:
        return _run(conn, operation, name)
    with lock:
        return _run(conn, operation, name)


def _run(conn: sqlite3.Connection, operation: Callable[[sqlite3.Connection], Any], name: str) -> Any:
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise TransactionFailure(f"Could not begin {name}: {e}", operation=name) from e

    try:
        result = operation(conn)
        conn.execute("COMMIT")
        return result
    except sqlite3.Error as e:
        _rollback(conn, name)
        raise TransactionFailure(f"{name} rolled back: {e}", operation=name) from e
    except BaseException:
        _rollback(conn, name)
        raise


def _rollback(conn: sqlite3.Connection, name: str) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        logger.error(f"Rollback of {name} failed: {e}")
