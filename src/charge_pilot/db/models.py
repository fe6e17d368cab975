"""SQL table definitions for the automation document store."""

SCHEMA_VERSION = 1

TABLES = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id      INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL
    )
    """,

    # ── Rules ───────────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS automation_rules (
        user_id     TEXT NOT NULL,
        rule_id     TEXT NOT NULL,
        priority    INTEGER NOT NULL,
        enabled     INTEGER NOT NULL DEFAULT 1,
        rule_json   TEXT NOT NULL,
        updated_at  TEXT NOT NULL,
        PRIMARY KEY (user_id, rule_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rules_priority ON automation_rules(user_id, priority)",

    # ── State ───────────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS automation_state (
        user_id     TEXT PRIMARY KEY,
        phase       TEXT NOT NULL,
        state_json  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,

    # ── Cycle audit ─────────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS cycle_audit (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        cycle_id            TEXT NOT NULL,
        user_id             TEXT NOT NULL,
        recorded_at         TEXT NOT NULL,
        transition          TEXT NOT NULL,
        outcome             TEXT NOT NULL,
        selected_rule_id    TEXT,
        entry_json          TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_user ON cycle_audit(user_id, recorded_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_recorded ON cycle_audit(recorded_at)",
]
