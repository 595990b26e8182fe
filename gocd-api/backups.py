"""
Server backups.

A backup writes a timestamped directory under the backup root holding an
export of the configuration and a copy of the database, then hands over to
the optional post backup script. Progress is persisted after every step so
``GET /api/backups/{id}`` can report it while the backup runs.
"""

import json
import logging
import os
import sqlite3
import subprocess
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from models import BackupConfig, BackupStatus, BackupStep, BackupStepState, BackupStepType, ServerBackup
from observability import log_event
from policy import PolicyError
from storage import utc_now
from validation import build_cron_trigger


logger = logging.getLogger("gocd.api")

CONFIG_EXPORT_FILE = "config.json"
DATABASE_COPY_FILE = "db.sqlite"
TIMER_USER = "timer"
INTERRUPTED_MESSAGE = "Backup was interrupted before it finished, check the server log for details."


class BackupStepFailed(Exception):
    pass


class BackupService:
    def __init__(self, storage, backup_dir: str, guardrails, script_timeout_seconds: int = 600) -> None:
        self.storage = storage
        self.backup_dir = backup_dir
        self.guardrails = guardrails
        self.script_timeout_seconds = script_timeout_seconds

    def backup_config(self) -> Optional[BackupConfig]:
        payload = self.storage.get_backup_config()
        return BackupConfig(**payload) if payload else None

    def start(self, username: str) -> ServerBackup:
        self.guardrails.require_no_running_backup()
        backup = ServerBackup(
            id=str(uuid.uuid4()),
            status=BackupStatus.IN_PROGRESS,
            message="Backup in progress",
            time=utc_now(),
            username=username,
            steps=[BackupStep(type=step_type) for step_type in BackupStepType],
        )
        if not self.storage.insert_backup(backup):
            # Another backup started between the check and the insert.
            self.guardrails.require_no_running_backup()
            raise PolicyError(409, "BACKUP_IN_PROGRESS", "Cannot start a backup while another backup is in progress.")
        log_event("backup.started", backup_id=backup.id, actor_id=username)
        return backup

    def run(self, backup_id: str) -> ServerBackup:
        backup = self.storage.get_backup(backup_id)
        if backup is None:
            raise KeyError(backup_id)
        config = self.backup_config()
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        destination = os.path.join(self.backup_dir, f"backup_{timestamp}")
        backup.path = destination

        try:
            self._step(backup, BackupStepType.CREATING_DIR, lambda: os.makedirs(destination, exist_ok=False))
            self._step(backup, BackupStepType.BACKUP_CONFIG, lambda: self._export_config(destination))
            self._step(
                backup,
                BackupStepType.BACKUP_DATABASE,
                lambda: self.storage.backup_database(os.path.join(destination, DATABASE_COPY_FILE)),
            )
        except BackupStepFailed as exc:
            backup.status = BackupStatus.ERROR
            backup.message = f"Backup failed: {exc}"
            self._run_post_backup_script(backup, config, succeeded=False)
            log_event("backup.failed", backup_id=backup.id, reason=str(exc))
        else:
            backup.status = BackupStatus.COMPLETED
            backup.message = f"Backup was generated successfully at {destination}."
            self._run_post_backup_script(backup, config, succeeded=True)
            log_event("backup.completed", backup_id=backup.id, status=backup.status.value)
        finally:
            if backup.status == BackupStatus.IN_PROGRESS:
                backup.status = BackupStatus.ERROR
                backup.message = INTERRUPTED_MESSAGE
                logger.error("backup.interrupted backup_id=%s", backup.id)
            self.storage.update_backup(backup)
        return backup

    def abandon_interrupted(self) -> int:
        """Fail backups a previous server process left in progress."""
        abandoned = self.storage.list_running_backups()
        for backup in abandoned:
            backup.status = BackupStatus.ERROR
            backup.message = INTERRUPTED_MESSAGE
            self.storage.update_backup(backup)
            log_event("backup.abandoned", backup_id=backup.id)
        return len(abandoned)

    def _step_of(self, backup: ServerBackup, step_type: BackupStepType) -> BackupStep:
        return next(step for step in backup.steps if step.type == step_type)

    def _step(self, backup: ServerBackup, step_type: BackupStepType, action: Callable[[], None]) -> None:
        step = self._step_of(backup, step_type)
        step.state = BackupStepState.RUNNING
        backup.progress_status = step_type
        self.storage.update_backup(backup)
        try:
            action()
        except (OSError, ValueError, subprocess.SubprocessError, sqlite3.Error) as exc:
            step.state = BackupStepState.FAILED
            step.message = str(exc)
            self.storage.update_backup(backup)
            raise BackupStepFailed(str(exc)) from exc
        step.state = BackupStepState.PASSED
        self.storage.update_backup(backup)

    def _export_config(self, destination: str) -> None:
        with open(os.path.join(destination, CONFIG_EXPORT_FILE), "w", encoding="utf-8") as handle:
            json.dump(self.storage.export_config(), handle, indent=2, sort_keys=True)

    def script_environment(self, backup: ServerBackup, succeeded: bool) -> dict:
        env = dict(os.environ)
        env.update(
            {
                "GOCD_BACKUP_TIMESTAMP": backup.time,
                "GOCD_BACKUP_BASE_DIR": self.backup_dir,
                "GOCD_BACKUP_STATUS": "success" if succeeded else "failure",
            }
        )
        if backup.path and succeeded:
            env["GOCD_BACKUP_PATH"] = backup.path
        if backup.username == TIMER_USER:
            env["GOCD_BACKUP_INITIATED_VIA_TIMER"] = "true"
        else:
            env["GOCD_BACKUP_INITIATED_BY_USER"] = backup.username
        return env

    def _run_post_backup_script(self, backup: ServerBackup, config: Optional[BackupConfig], succeeded: bool) -> None:
        if config is None or not config.post_backup_script:
            return
        script = config.post_backup_script

        def run_script() -> None:
            result = subprocess.run(
                script,
                shell=True,
                env=self.script_environment(backup, succeeded),
                capture_output=True,
                text=True,
                timeout=self.script_timeout_seconds,
            )
            if result.returncode != 0:
                logger.error(
                    "backup.post_script failed backup_id=%s exit_code=%s stderr=%s",
                    backup.id,
                    result.returncode,
                    (result.stderr or "").strip(),
                )
                raise ValueError("Post backup script exited with an error, check the server log for details.")

        try:
            self._step(backup, BackupStepType.POST_BACKUP_SCRIPT, run_script)
        except BackupStepFailed as exc:
            backup.status = BackupStatus.ERROR
            backup.message = str(exc)


class BackupScheduler:
    """Runs backups on the cron schedule of the backup config."""

    JOB_ID = "gocd-scheduled-backup"

    def __init__(self, backup_service: BackupService, scheduler=None) -> None:
        self.backup_service = backup_service
        self.scheduler = scheduler or BackgroundScheduler()

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        self.reschedule(self.backup_service.backup_config())
        logger.info("backup.scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reschedule(self, config: Optional[BackupConfig]) -> bool:
        if self.scheduler.get_job(self.JOB_ID):
            self.scheduler.remove_job(self.JOB_ID)
        if config is None or not config.schedule:
            logger.info("backup.scheduler cleared")
            return False
        try:
            trigger = build_cron_trigger(config.schedule)
        except ValueError as exc:
            logger.error("backup.scheduler invalid schedule=%s error=%s", config.schedule, exc)
            return False
        self.scheduler.add_job(
            func=self.run_scheduled_backup,
            trigger=trigger,
            id=self.JOB_ID,
            replace_existing=True,
        )
        logger.info("backup.scheduler scheduled schedule=%s", config.schedule)
        return True

    def run_scheduled_backup(self) -> Optional[ServerBackup]:
        try:
            backup = self.backup_service.start(TIMER_USER)
        except PolicyError as exc:
            logger.warning("backup.scheduled skipped reason=%s", exc.message)
            return None
        return self.backup_service.run(backup.id)
