import logging
from typing import Any, Callable, Optional

from fastapi import BackgroundTasks, Depends, Header, Request

from api_versions import ApiVersion, accepts, json_body, render, render_message
from backups import BackupScheduler, BackupService
from models import BackupConfig, Role
from observability import log_config_change
from policy import PolicyError, not_found
from representers import backup_config_from_json, backup_config_to_json, backup_to_json
from validation import validate_tree


logger = logging.getLogger("gocd.api")

V1 = ApiVersion(1)
BACKUPS_V2 = ApiVersion(2)
RUNNING_BACKUP_ID = "running"
CONFIRM_HEADER_MESSAGE = "Missing required header 'X-GoCD-Confirm' with value 'true'"


def register_backup_routes(
    app,
    *,
    get_actor: Callable,
    request_id_provider: Callable[[], str],
    require_role: Callable,
    error_response: Callable,
    storage,
    backup_service: BackupService,
    backup_scheduler: Optional[BackupScheduler],
) -> None:
    def base_url(request: Request) -> str:
        return str(request.base_url)

    @app.get("/api/config/backup")
    def get_backup_config(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "view the backup config")
        if role_error:
            return role_error
        config = backup_service.backup_config() or BackupConfig()
        return render(backup_config_to_json(config, base_url(request)), version, request)

    @app.put("/api/config/backup")
    def save_backup_config(
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "update the backup config")
        if role_error:
            return role_error
        config = backup_config_from_json(payload)
        if not validate_tree(config):
            return error_response(
                422,
                "VALIDATION_FAILED",
                "Validations failed for backup config. Please correct and resubmit.",
                data=backup_config_to_json(config, base_url(request)),
            )
        storage.save_backup_config(config.model_dump(mode="json"))
        if backup_scheduler is not None:
            backup_scheduler.reschedule(config)
        log_config_change(actor, "update", "backup_config", "backup")
        return render(backup_config_to_json(config, base_url(request)), version, request)

    @app.delete("/api/config/backup")
    def delete_backup_config(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "delete the backup config")
        if role_error:
            return role_error
        storage.delete_backup_config()
        if backup_scheduler is not None:
            backup_scheduler.reschedule(None)
        log_config_change(actor, "delete", "backup_config", "backup")
        return render_message("Backup config was removed successfully.", version, request)

    @app.post("/api/backups")
    def create_backup(
        request: Request,
        background_tasks: BackgroundTasks,
        version: ApiVersion = Depends(accepts(BACKUPS_V2)),
        confirm: Optional[str] = Header(None, alias="X-GoCD-Confirm"),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "start a backup")
        if role_error:
            return role_error
        if (confirm or "").strip().lower() != "true":
            raise PolicyError(400, "BAD_REQUEST", CONFIRM_HEADER_MESSAGE)
        backup = backup_service.start(actor.actor_id)
        background_tasks.add_task(backup_service.run, backup.id)
        logger.info(
            "event=backup.scheduled request_id=%s actor_id=%s backup_id=%s",
            request_id_provider(),
            actor.actor_id,
            backup.id,
        )
        return render(
            backup_to_json(backup, base_url(request)),
            version,
            request,
            status_code=202,
            headers={"Location": f"/api/backups/{backup.id}", "Retry-After": "5"},
        )

    @app.get("/api/backups/{backup_id}")
    def show_backup(
        backup_id: str,
        request: Request,
        version: ApiVersion = Depends(accepts(BACKUPS_V2)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "view backups")
        if role_error:
            return role_error
        if backup_id == RUNNING_BACKUP_ID:
            backup = storage.get_running_backup()
        else:
            backup = storage.get_backup(backup_id)
        if backup is None:
            raise not_found()
        return render(backup_to_json(backup, base_url(request)), version, request)
