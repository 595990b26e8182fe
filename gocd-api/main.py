import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admin_config_routes import register_admin_config_routes
from agents import AgentService
from auth import get_actor
from backup_routes import register_backup_routes
from backups import BackupScheduler, BackupService
from cipher import build_cipher
from config import SETTINGS
from models import Actor, Role
from observability import get_request_id, request_id_ctx
from policy import UNAUTHORIZED_MESSAGE, Guardrails, PolicyError
from server_routes import register_server_routes
from services import ConfigService, VersionInfoService
from storage import build_storage


logger = logging.getLogger("gocd.api")

storage = build_storage()
cipher = build_cipher(storage, SETTINGS.cipher_key)
guardrails = Guardrails(storage)
config_service = ConfigService(storage, SETTINGS.plugins)
agent_service = AgentService(storage, config_service)
version_info_service = VersionInfoService(
    storage,
    SETTINGS.server_version,
    SETTINGS.update_server_url,
    SETTINGS.version_check_interval_minutes,
    update_server_public_key=SETTINGS.update_server_public_key,
)
backup_service = BackupService(
    storage,
    SETTINGS.backup_dir,
    guardrails,
    script_timeout_seconds=SETTINGS.post_backup_script_timeout_seconds,
)
backup_scheduler = BackupScheduler(backup_service)

logger.info(
    "config.server loaded version=%s security=%s plugins=%s",
    SETTINGS.server_version,
    "enabled" if SETTINGS.security_enabled else "disabled",
    len(SETTINGS.plugins),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    abandoned = backup_service.abandon_interrupted()
    if abandoned:
        logger.warning("backup.recovered interrupted=%s", abandoned)
    if SETTINGS.backup_scheduler_enabled:
        backup_scheduler.start()
    try:
        yield
    finally:
        backup_scheduler.shutdown()


app = FastAPI(title="GoCD API", version=SETTINGS.server_version, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, code: str, message: str, data: Optional[dict] = None) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "error_code": code,
        "message": message,
        "request_id": request_id,
    }
    if data is not None:
        payload["data"] = data
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError):
    return error_response(exc.status_code, exc.code, exc.message, data=exc.data)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    detail = exc.detail
    if not (isinstance(detail, dict) and "code" in detail):
        detail = {"code": "HTTP_ERROR", "message": str(detail)}
    response = error_response(exc.status_code, detail["code"], detail.get("message", ""), data=detail.get("data"))
    response.headers.update(exc.headers or {})
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "INVALID_REQUEST", "Invalid request")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def require_role(actor: Actor, allowed: set[Role], action: str):
    if actor.role in allowed:
        return None
    logger.info(
        "authz.denied request_id=%s actor_id=%s role=%s action=%s",
        get_request_id(),
        actor.actor_id,
        actor.role.value,
        action,
    )
    return error_response(403, "FORBIDDEN", UNAUTHORIZED_MESSAGE)


@app.get("/api/v1/health")
def health():
    return {"status": "ok"}


register_admin_config_routes(
    app,
    get_actor=get_actor,
    request_id_provider=get_request_id,
    require_role=require_role,
    error_response=error_response,
    config_service=config_service,
    cipher=cipher,
    guardrails=guardrails,
)

register_server_routes(
    app,
    get_actor=get_actor,
    request_id_provider=get_request_id,
    require_role=require_role,
    error_response=error_response,
    storage=storage,
    config_service=config_service,
    agent_service=agent_service,
    version_info_service=version_info_service,
    guardrails=guardrails,
)

register_backup_routes(
    app,
    get_actor=get_actor,
    request_id_provider=get_request_id,
    require_role=require_role,
    error_response=error_response,
    storage=storage,
    backup_service=backup_service,
    backup_scheduler=backup_scheduler,
)
