"""Print every table with its columns, then job counts per status."""

import sqlite3

from checkout.config import Settings

settings = Settings.from_env()
db_path = settings.database_url.replace("sqlite+aiosqlite:///", "", 1)

conn = sqlite3.connect(db_path)
cursor = conn.cursor()

print(f"Tables in {db_path}:")
cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;")
tables = [row[0] for row in cursor.fetchall()]

for table in tables:
    print(f"\n=== {table} ===")
    cursor.execute(f"PRAGMA table_info({table});")
    for col in cursor.fetchall():
        print(f"{col[1]} ({col[2]})")

if "notification_jobs" in tables:
    print("\n=== notification jobs by status ===")
    cursor.execute("SELECT status, COUNT(*) FROM notification_jobs GROUP BY status;")
    for status, count in cursor.fetchall():
        print(f"{status}: {count}")

if "payments" in tables:
    print("\n=== payments by status ===")
    cursor.execute("SELECT status, COUNT(*) FROM payments GROUP BY status;")
    for status, count in cursor.fetchall():
        print(f"{status}: {count}")

conn.close()
