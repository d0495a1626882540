"""
Migration helper for SQLite databases created before recurrence modes and calendar sync.
Run:  python migrate.py [path/to/schedule.db]

What it does (idempotent):
- Add recurrence_mode, series_start, recurrence_exhausted, expanded_through to scheduled_item
- Backfill series_start from start_at for recurring definitions
- Add source, external_id, external_updated_at, last_updated_at to scheduled_item
- Backfill last_updated_at from created_at
- Create the (parent_id, start_at) and (user_id, external_id) unique indexes
"""
import sqlite3
import sys
from pathlib import Path

DB_PATH = Path("instance") / "schedule.db"


def column_exists(cursor, table, column):
    cursor.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())


def add_column(cursor, table, column, col_type):
    if column_exists(cursor, table, column):
        print(f"[skip] {column} already exists on {table}")
        return
    cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
    print(f"[add] {column} added to {table}")


def add_recurrence_columns(cur):
    add_column(cur, "scheduled_item", "recurrence_mode", "VARCHAR(10)")
    add_column(cur, "scheduled_item", "series_start", "DATETIME")
    add_column(cur, "scheduled_item", "recurrence_exhausted", "BOOLEAN DEFAULT 0")
    add_column(cur, "scheduled_item", "expanded_through", "DATETIME")
    cur.execute(
        "UPDATE scheduled_item SET recurrence_mode='clone' "
        "WHERE is_recurring=1 AND parent_id IS NULL AND recurrence_mode IS NULL"
    )
    cur.execute(
        "UPDATE scheduled_item SET series_start=start_at "
        "WHERE is_recurring=1 AND parent_id IS NULL AND series_start IS NULL"
    )
    print("[update] backfilled recurrence_mode and series_start for recurring items")


def add_sync_columns(cur):
    add_column(cur, "scheduled_item", "source", "VARCHAR(10) DEFAULT 'local'")
    add_column(cur, "scheduled_item", "external_id", "VARCHAR(255)")
    add_column(cur, "scheduled_item", "external_updated_at", "DATETIME")
    add_column(cur, "scheduled_item", "last_updated_at", "DATETIME")
    cur.execute("UPDATE scheduled_item SET source='local' WHERE source IS NULL")
    cur.execute("UPDATE scheduled_item SET last_updated_at=created_at WHERE last_updated_at IS NULL")
    print("[update] backfilled source and last_updated_at")


def add_unique_indexes(cur):
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_occurrence_instant ON scheduled_item (parent_id, start_at)"
    )
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_user_external_id ON scheduled_item (user_id, external_id)"
    )
    print("[add] unique indexes ensured")


def main(db_path=DB_PATH):
    conn = sqlite3.connect(db_path)
    cur = conn.cursor()
    try:
        add_recurrence_columns(cur)
        add_sync_columns(cur)
        add_unique_indexes(cur)
        conn.commit()
        print("Migration complete.")
    finally:
        conn.close()


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else DB_PATH)
