"""
config.py - Configuration for finsync.

Module-level constants are immutable. Tunables that callers may want to
override live on SyncConfig, which can also be read from FINSYNC_*
environment variables.
"""

import os
from dataclasses import dataclass, fields
from typing import Final

# Schema version for local tables
SCHEMA_VERSION: Final[int] = 1

# SQLite PRAGMA settings for the local store
SQLITE_PRAGMAS: Final[dict[str, str]] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "foreign_keys": "ON",
    "busy_timeout": "5000",
}

# Syncable entity tables in foreign-key dependency order (parents first).
# Pull applies tables in this order so children never arrive before parents.
SYNC_TABLE_ORDER: Final[tuple[str, ...]] = (
    "savings_goals",
    "habit_goals",
    "budgets",
    "expenses",
    "savings_contributions",
    "habit_tracking",
)

SYNC_TABLES: Final[frozenset[str]] = frozenset(SYNC_TABLE_ORDER)

# Child table -> (foreign key column, parent table)
PARENT_REFERENCES: Final[dict[str, tuple[str, str]]] = {
    "savings_contributions": ("goal_id", "savings_goals"),
    "habit_tracking": ("habit_goal_id", "habit_goals"),
}

# Metadata keys used in the sync_state table
STATE_KEY_SCHEMA_VERSION: Final[str] = "schema_version"
STATE_KEY_CURSOR_PREFIX: Final[str] = "last_sync_at:"

# Notification defaults (mirrors the app's first-run preferences)
DEFAULT_MONTHLY_CHECKIN_CRON: Final[str] = "0 9 2 * *"
DEFAULT_PROGRESS_UPDATES_CRON: Final[str] = "0 10 * * 1"
DEFAULT_WHY_REMINDERS_CRON: Final[str] = "0 19 * * 1"
DEFAULT_QUIET_HOURS_START: Final[str] = "22:00"
DEFAULT_QUIET_HOURS_END: Final[str] = "08:00"
DEFAULT_TIMEZONE: Final[str] = "UTC"

# Bounded searches in the scheduler
CRON_SEARCH_YEARS: Final[int] = 8
MAX_QUIET_HOUR_ADJUSTMENTS: Final[int] = 8

ENV_PREFIX: Final[str] = "FINSYNC_"


@dataclass
class SyncConfig:
    """Tunables for the sync engine and background loops."""
    batch_size: int = 50
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    stall_attempts: int = 8
    interval_seconds: float = 60.0
    notification_check_seconds: float = 60.0
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("backoff delays must satisfy 0 <= base <= max")

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before an entry with `attempts` failures is eligible again."""
        if attempts <= 0:
            return 0.0
        # Cap the exponent before multiplying so large counts cannot overflow
        exponent = min(attempts, 62)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "SyncConfig":
        """Build a config, overriding defaults with FINSYNC_<FIELD> variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            caster = int if f.type in (int, "int") else float
            values[f.name] = caster(raw)
        return cls(**values)
