"""Schema for the task config singleton and the audit history."""

STORE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS consistency_task_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    enabled INTEGER NOT NULL,
    interval_hours INTEGER NOT NULL,
    auto_fix INTEGER NOT NULL,
    threshold_usd TEXT NOT NULL,
    threshold_rate TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS consistency_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    operation_type TEXT NOT NULL,
    operator TEXT NOT NULL,
    keys_checked INTEGER NOT NULL DEFAULT 0,
    inconsistencies_found INTEGER NOT NULL DEFAULT 0,
    items_fixed INTEGER NOT NULL DEFAULT 0,
    total_difference TEXT NOT NULL DEFAULT '0',
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_history_ts
    ON consistency_history(timestamp_ms);

CREATE INDEX IF NOT EXISTS idx_history_type_ts
    ON consistency_history(operation_type, timestamp_ms);
"""
