#!/usr/bin/env python3
import argparse
import importlib.util
import os
import sys
from typing import List

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
MIGRATIONS_DIR = os.path.join(ROOT_DIR, "gocd-api", "migrations")

sys.path.insert(0, os.path.join(ROOT_DIR, "gocd-api"))

from storage import Storage  # noqa: E402


def discover_migrations(migrations_dir: str = MIGRATIONS_DIR) -> List[dict]:
    migrations = []
    if not os.path.isdir(migrations_dir):
        return migrations
    for filename in sorted(os.listdir(migrations_dir)):
        if not filename.endswith(".py"):
            continue
        if filename.startswith("_"):
            continue
        path = os.path.join(migrations_dir, filename)
        module_name = f"gocd_migration_{os.path.splitext(filename)[0]}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if not spec or not spec.loader:
            continue
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        migration_id = getattr(module, "MIGRATION_ID", None)
        run_fn = getattr(module, "run", None)
        if not migration_id or not callable(run_fn):
            continue
        migrations.append({"id": migration_id, "run": run_fn, "path": path})
    return migrations


def apply_pending(storage, migrations: List[dict]) -> int:
    applied = storage.list_applied_migrations()
    ran = 0
    for migration in migrations:
        migration_id = migration["id"]
        if migration_id in applied:
            continue
        print(f"Running migration {migration_id}...")
        migration["run"](storage)
        storage.record_migration(migration_id)
        ran += 1
    return ran


def main() -> int:
    parser = argparse.ArgumentParser(description="Run GoCD API config store migrations")
    parser.add_argument("--db", default=os.getenv("GOCD_DB_PATH", "./data/gocd.db"), help="sqlite database path")
    args = parser.parse_args()

    migrations = discover_migrations()
    if not migrations:
        print("No migrations found.")
        return 0

    ran = apply_pending(Storage(args.db), migrations)
    if ran == 0:
        print("No pending migrations.")
    else:
        print(f"Applied {ran} migration(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
