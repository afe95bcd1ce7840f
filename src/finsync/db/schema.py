"""
schema.py - Local table schema definitions.

Entity tables carry the shared sync columns (created_at, updated_at,
deleted_at, synced_at as Unix microseconds). Child tables reference their
parent with ON DELETE CASCADE so a purged goal takes its dependent rows
with it; the sync engine never re-implements that ownership.
"""

from typing import Final

_SYNC_COLUMNS: Final[str] = """
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted_at INTEGER,
    synced_at INTEGER
"""

SAVINGS_GOALS_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS savings_goals (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    name TEXT NOT NULL,
    target_amount REAL NOT NULL,
    target_date TEXT NOT NULL,
    monthly_contribution REAL NOT NULL,
    why_statement TEXT,
    privacy_level TEXT NOT NULL DEFAULT 'private',
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_savings_goals_updated ON savings_goals(updated_at);
"""

HABIT_GOALS_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS habit_goals (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    name TEXT NOT NULL,
    category_id TEXT NOT NULL,
    rule_type TEXT NOT NULL CHECK(rule_type IN ('max_amount', 'max_percentage', 'reduce_by')),
    rule_value REAL NOT NULL,
    duration_months INTEGER,
    start_date TEXT NOT NULL,
    privacy_level TEXT NOT NULL DEFAULT 'private',
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_habit_goals_updated ON habit_goals(updated_at);
"""

BUDGETS_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS budgets (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    month TEXT NOT NULL,
    total_amount REAL NOT NULL,
    spending_limit REAL,
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_budgets_updated ON budgets(updated_at);
"""

EXPENSES_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS expenses (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    amount REAL NOT NULL,
    category_id TEXT,
    note TEXT,
    date TEXT NOT NULL,
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_expenses_date ON expenses(date);
CREATE INDEX IF NOT EXISTS idx_expenses_updated ON expenses(updated_at);
"""

SAVINGS_CONTRIBUTIONS_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS savings_contributions (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    goal_id TEXT NOT NULL REFERENCES savings_goals(id) ON DELETE CASCADE,
    month TEXT NOT NULL,
    amount REAL NOT NULL,
    is_full_amount INTEGER,
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_savings_contributions_goal ON savings_contributions(goal_id);
CREATE INDEX IF NOT EXISTS idx_savings_contributions_updated ON savings_contributions(updated_at);
"""

HABIT_TRACKING_SCHEMA: Final[str] = f"""
CREATE TABLE IF NOT EXISTS habit_tracking (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    habit_goal_id TEXT NOT NULL REFERENCES habit_goals(id) ON DELETE CASCADE,
    month TEXT NOT NULL,
    spent_amount REAL NOT NULL,
    target_amount REAL NOT NULL,
    is_compliant INTEGER,
    {_SYNC_COLUMNS}
) STRICT;
CREATE INDEX IF NOT EXISTS idx_habit_tracking_goal ON habit_tracking(habit_goal_id);
CREATE INDEX IF NOT EXISTS idx_habit_tracking_updated ON habit_tracking(updated_at);
"""

# sync_queue - local only, one row per record with unsynced changes
SYNC_QUEUE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL CHECK(operation IN ('CREATE', 'UPDATE', 'DELETE')),
    payload BLOB NOT NULL,
    payload_version INTEGER NOT NULL,
    user_id TEXT,
    created_at INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_at INTEGER,
    error_message TEXT,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'failed')),
    UNIQUE(table_name, record_id)
) STRICT;
CREATE INDEX IF NOT EXISTS idx_sync_queue_pending ON sync_queue(status, created_at);
"""

# sync_state - key/value metadata (schema version, pull watermarks)
SYNC_STATE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
) STRICT;
"""

NOTIFICATION_PREFERENCES_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS notification_preferences (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    user_id TEXT,
    notifications_enabled INTEGER NOT NULL DEFAULT 1,
    monthly_checkin_enabled INTEGER NOT NULL DEFAULT 1,
    monthly_checkin_cron TEXT NOT NULL DEFAULT '0 9 2 * *',
    progress_updates_enabled INTEGER NOT NULL DEFAULT 1,
    progress_updates_cron TEXT NOT NULL DEFAULT '0 10 * * 1',
    why_reminders_enabled INTEGER NOT NULL DEFAULT 1,
    why_reminders_cron TEXT NOT NULL DEFAULT '0 19 * * 1',
    quiet_hours_enabled INTEGER NOT NULL DEFAULT 0,
    quiet_hours_start TEXT NOT NULL DEFAULT '22:00',
    quiet_hours_end TEXT NOT NULL DEFAULT '08:00',
    timezone TEXT NOT NULL DEFAULT 'UTC',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
) STRICT;
"""

SCHEDULED_NOTIFICATIONS_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS scheduled_notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    notification_type TEXT NOT NULL,
    goal_id TEXT REFERENCES savings_goals(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    scheduled_at INTEGER NOT NULL,
    cron_expression TEXT,
    sent_at INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted_at INTEGER
) STRICT;
CREATE INDEX IF NOT EXISTS idx_scheduled_notifications_due
ON scheduled_notifications(scheduled_at) WHERE sent_at IS NULL AND deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_scheduled_notifications_type
ON scheduled_notifications(notification_type, scheduled_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_scheduled_notifications_unsent
ON scheduled_notifications(notification_type, COALESCE(goal_id, ''), scheduled_at)
WHERE sent_at IS NULL AND deleted_at IS NULL;
"""

# Entity tables in creation order (parents before children)
ENTITY_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    SAVINGS_GOALS_SCHEMA,
    HABIT_GOALS_SCHEMA,
    BUDGETS_SCHEMA,
    EXPENSES_SCHEMA,
    SAVINGS_CONTRIBUTIONS_SCHEMA,
    HABIT_TRACKING_SCHEMA,
)

ALL_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = ENTITY_SCHEMA_STATEMENTS + (
    SYNC_QUEUE_SCHEMA,
    SYNC_STATE_SCHEMA,
    NOTIFICATION_PREFERENCES_SCHEMA,
    SCHEDULED_NOTIFICATIONS_SCHEMA,
)
