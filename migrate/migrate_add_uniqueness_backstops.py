"""
Migration script adding the database-level uniqueness backstops to databases
created before they were declared on the models:

  - one submission ledger per (form, respondent)
  - one answer per (response group, question)
  - one response group per ledger

Run this after pulling the new code: python migrate/migrate_add_uniqueness_backstops.py
The script refuses to run while duplicate rows exist; resolve them first.
"""
import sqlite3
import os
import sys

DB_PATH = os.path.abspath(os.environ.get("FORMS_DB", "forms.db"))

BACKSTOPS = [
    ("uq_ledger_form_respondent", "submission_ledgers", ("form_id", "respondent_id")),
    ("uq_answer_group_question", "answers", ("response_group_id", "question_id")),
    ("uq_response_group_ledger", "response_groups", ("ledger_id",)),
]

def _table_exists(cursor, table):
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
    return cursor.fetchone() is not None

def _duplicates(cursor, table, columns):
    cols = ", ".join(columns)
    cursor.execute(f"SELECT {cols}, COUNT(*) FROM {table} GROUP BY {cols} HAVING COUNT(*) > 1")
    return cursor.fetchall()

def migrate(db_path=DB_PATH):
    print(f"Migrating database: {db_path}")

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()
    try:
        for name, table, columns in BACKSTOPS:
            if not _table_exists(cursor, table):
                print(f"- {table} does not exist yet, skipping {name}")
                continue
            dupes = _duplicates(cursor, table, columns)
            if dupes:
                print(f"✗ {table} has {len(dupes)} duplicate {columns} groups, e.g. {dupes[0]}")
                return False
            cursor.execute(f"CREATE UNIQUE INDEX IF NOT EXISTS {name} ON {table} ({', '.join(columns)})")
            print(f"✓ {name} on {table}{columns}")
        conn.commit()
    finally:
        conn.close()

    print("✓ Migration completed successfully!")
    return True

if __name__ == "__main__":
    sys.exit(0 if migrate() else 1)
