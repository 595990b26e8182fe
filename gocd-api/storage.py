import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from config import SETTINGS
from models import Agent, MaintenanceModeInfo, ServerBackup


KINDS = (
    "pipeline",
    "pipeline_group",
    "environment",
    "auth_config",
    "secret_config",
    "package_repository",
    "package",
    "scm",
)

BACKUP_CONFIG_SETTING = "backup_config"
MAINTENANCE_MODE_SETTING = "maintenance_mode"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _entity_key(entity_id: str) -> str:
    return (entity_id or "").lower()


class Storage:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        directory = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(directory, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS config_entities (
                kind TEXT NOT NULL,
                entity_key TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (kind, entity_key)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agents (
                uuid TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS backups (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                started_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notification_filters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                payload TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS server_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                migration_id TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

    def list_entities(self, kind: str) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM config_entities WHERE kind = ? ORDER BY rowid", (kind,))
        rows = cur.fetchall()
        conn.close()
        return [json.loads(row["payload"]) for row in rows]

    def get_entity(self, kind: str, entity_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT payload FROM config_entities WHERE kind = ? AND entity_key = ?",
            (kind, _entity_key(entity_id)),
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return json.loads(row["payload"])

    def insert_entity(self, kind: str, entity_id: str, payload: dict) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT OR IGNORE INTO config_entities (kind, entity_key, entity_id, payload, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (kind, _entity_key(entity_id), entity_id, json.dumps(payload), utc_now()),
        )
        inserted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return inserted

    def update_entity(self, kind: str, entity_id: str, payload: dict) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "UPDATE config_entities SET payload = ?, updated_at = ? WHERE kind = ? AND entity_key = ?",
            (json.dumps(payload), utc_now(), kind, _entity_key(entity_id)),
        )
        conn.commit()
        conn.close()

    def delete_entity(self, kind: str, entity_id: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM config_entities WHERE kind = ? AND entity_key = ?",
            (kind, _entity_key(entity_id)),
        )
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    def get_server_setting(self, key: str) -> Optional[str]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT value FROM server_settings WHERE key = ?", (key,))
        row = cur.fetchone()
        conn.close()
        return row["value"] if row else None

    def set_server_setting(self, key: str, value: str) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO server_settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, utc_now()),
        )
        conn.commit()
        conn.close()

    def delete_server_setting(self, key: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("DELETE FROM server_settings WHERE key = ?", (key,))
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    def get_backup_config(self) -> Optional[dict]:
        raw = self.get_server_setting(BACKUP_CONFIG_SETTING)
        return json.loads(raw) if raw else None

    def save_backup_config(self, payload: dict) -> None:
        self.set_server_setting(BACKUP_CONFIG_SETTING, json.dumps(payload))

    def delete_backup_config(self) -> bool:
        return self.delete_server_setting(BACKUP_CONFIG_SETTING)

    def get_maintenance_mode(self) -> MaintenanceModeInfo:
        raw = self.get_server_setting(MAINTENANCE_MODE_SETTING)
        if not raw:
            return MaintenanceModeInfo()
        return MaintenanceModeInfo(**json.loads(raw))

    def set_maintenance_mode(self, info: MaintenanceModeInfo) -> None:
        self.set_server_setting(MAINTENANCE_MODE_SETTING, json.dumps(info.model_dump()))

    def list_agents(self) -> List[Agent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM agents ORDER BY rowid")
        rows = cur.fetchall()
        conn.close()
        return [Agent(**json.loads(row["payload"])) for row in rows]

    def get_agent(self, uuid: str) -> Optional[Agent]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM agents WHERE uuid = ?", (uuid,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return Agent(**json.loads(row["payload"]))

    def upsert_agent(self, agent: Agent) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO agents (uuid, payload, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(uuid) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
            """,
            (agent.uuid, json.dumps(agent.model_dump(mode="json")), utc_now()),
        )
        conn.commit()
        conn.close()

    def delete_agent(self, uuid: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("DELETE FROM agents WHERE uuid = ?", (uuid,))
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    def insert_backup(self, backup: ServerBackup) -> bool:
        """Insert a backup row. An in progress backup is only inserted while no
        other backup is in progress."""
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO backups (id, status, payload, started_at)
            SELECT ?, ?, ?, ?
            WHERE ? != 'IN_PROGRESS' OR NOT EXISTS (SELECT 1 FROM backups WHERE status = 'IN_PROGRESS')
            """,
            (
                backup.id,
                backup.status.value,
                json.dumps(backup.model_dump(mode="json")),
                backup.time,
                backup.status.value,
            ),
        )
        inserted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return inserted

    def update_backup(self, backup: ServerBackup) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "UPDATE backups SET status = ?, payload = ? WHERE id = ?",
            (backup.status.value, json.dumps(backup.model_dump(mode="json")), backup.id),
        )
        conn.commit()
        conn.close()

    def get_backup(self, backup_id: str) -> Optional[ServerBackup]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM backups WHERE id = ?", (backup_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return ServerBackup(**json.loads(row["payload"]))

    def list_running_backups(self) -> List[ServerBackup]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM backups WHERE status = ? ORDER BY started_at", ("IN_PROGRESS",))
        rows = cur.fetchall()
        conn.close()
        return [ServerBackup(**json.loads(row["payload"])) for row in rows]

    def get_running_backup(self) -> Optional[ServerBackup]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT payload FROM backups WHERE status = ? ORDER BY started_at DESC LIMIT 1",
            ("IN_PROGRESS",),
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return ServerBackup(**json.loads(row["payload"]))

    def list_notification_filters(self, username: str) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT id, payload FROM notification_filters WHERE username = ? ORDER BY id",
            (username,),
        )
        rows = cur.fetchall()
        conn.close()
        filters = []
        for row in rows:
            payload = json.loads(row["payload"])
            payload["id"] = row["id"]
            filters.append(payload)
        return filters

    def get_notification_filter(self, username: str, filter_id: int) -> Optional[dict]:
        for item in self.list_notification_filters(username):
            if item["id"] == filter_id:
                return item
        return None

    def insert_notification_filter(self, username: str, payload: dict) -> int:
        stored = {key: value for key, value in payload.items() if key != "id"}
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO notification_filters (username, payload) VALUES (?, ?)",
            (username, json.dumps(stored)),
        )
        filter_id = cur.lastrowid
        conn.commit()
        conn.close()
        return filter_id

    def update_notification_filter(self, username: str, filter_id: int, payload: dict) -> bool:
        stored = {key: value for key, value in payload.items() if key != "id"}
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "UPDATE notification_filters SET payload = ? WHERE id = ? AND username = ?",
            (json.dumps(stored), filter_id, username),
        )
        updated = cur.rowcount > 0
        conn.commit()
        conn.close()
        return updated

    def delete_notification_filter(self, username: str, filter_id: int) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM notification_filters WHERE id = ? AND username = ?",
            (filter_id, username),
        )
        deleted = cur.rowcount > 0
        conn.commit()
        conn.close()
        return deleted

    def list_applied_migrations(self) -> set:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT migration_id FROM schema_migrations")
        rows = cur.fetchall()
        conn.close()
        return {row["migration_id"] for row in rows}

    def record_migration(self, migration_id: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "INSERT OR IGNORE INTO schema_migrations (migration_id, applied_at) VALUES (?, ?)",
            (migration_id, utc_now()),
        )
        recorded = cur.rowcount > 0
        conn.commit()
        conn.close()
        return recorded

    def export_config(self) -> dict:
        exported = {kind: self.list_entities(kind) for kind in KINDS}
        exported["backup_config"] = self.get_backup_config()
        return exported

    def backup_database(self, destination: str) -> None:
        source = self._connect()
        target = sqlite3.connect(destination)
        try:
            source.backup(target)
        finally:
            target.close()
            source.close()


def build_storage():
    return Storage(SETTINGS.db_path)
