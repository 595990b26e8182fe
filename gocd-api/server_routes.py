import logging
from typing import Any, Callable, Optional

from fastapi import Depends, Header, Query, Request, Response

from agents import AgentService, status_text
from api_versions import ApiVersion, accepts, json_body, render, render_message
from models import AgentBuildState, MaintenanceModeInfo, NotificationFilter, Role
from observability import log_event
from policy import PolicyError, not_found
from representers import (
    agent_to_json,
    as_list,
    embedded,
    links,
    maintenance_mode_to_json,
    notification_filter_from_json,
    notification_filter_to_json,
    require_object,
    version_info_to_json,
)
from storage import utc_now
from validation import validate_tree


logger = logging.getLogger("gocd.api")

AGENTS_V4 = ApiVersion(4)
V1 = ApiVersion(1)


def _base_url(request: Request) -> str:
    return str(request.base_url)


def _operations(payload: dict, key: str) -> tuple[list[str], list[str]]:
    operations = require_object(payload.get("operations") or {}, "operations")
    section = require_object(operations.get(key) or {}, key)
    return [str(item) for item in as_list(section.get("add"))], [str(item) for item in as_list(section.get("remove"))]


def _uuids(payload: dict) -> list[str]:
    return [str(uuid) for uuid in as_list(payload.get("uuids"))]


def running_systems(agent_service: AgentService) -> dict:
    building = [
        {"uuid": agent.uuid, "hostname": agent.hostname, **(agent.build_details.model_dump() if agent.build_details else {})}
        for agent in agent_service.all_agents()
        if agent.build_state == AgentBuildState.BUILDING
    ]
    return {"has_running_systems": bool(building), "running_systems": {"building_jobs": building}}


def register_server_routes(
    app,
    *,
    get_actor: Callable,
    request_id_provider: Callable[[], str],
    require_role: Callable,
    error_response: Callable,
    storage,
    config_service,
    agent_service: AgentService,
    version_info_service,
    guardrails,
) -> None:
    @app.get("/api/agents")
    def list_agents(
        request: Request,
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        sort_by: Optional[str] = Query(None),
        sort_order: Optional[str] = Query(None),
        filter: Optional[str] = Query(None),
        authorization: Optional[str] = Header(None),
    ):
        get_actor(authorization)
        table = agent_service.table(sort_by=sort_by, sort_order=sort_order, filter_text=filter or "")
        base_url = _base_url(request)
        agents = []
        for agent in table.rows():
            rendered = agent_to_json(agent, base_url)
            rendered["status"] = status_text(agent)
            agents.append(rendered)
        return render(embedded(base_url, "/api/agents", "agents", "agents", agents), version, request)

    @app.get("/api/agents/{uuid}")
    def show_agent(
        uuid: str,
        request: Request,
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        authorization: Optional[str] = Header(None),
    ):
        get_actor(authorization)
        agent = agent_service.get(uuid)
        rendered = agent_to_json(agent, _base_url(request))
        rendered["status"] = status_text(agent)
        return render(rendered, version, request)

    @app.patch("/api/agents/{uuid}")
    def update_agent(
        uuid: str,
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "update agents")
        if role_error:
            return role_error
        guardrails.require_mutations_enabled()
        data = require_object(payload)
        agent = agent_service.update(
            actor,
            uuid,
            hostname=data.get("hostname"),
            resources=data.get("resources"),
            environments=data.get("environments"),
            agent_config_state=data.get("agent_config_state"),
        )
        rendered = agent_to_json(agent, _base_url(request))
        rendered["status"] = status_text(agent)
        return render(rendered, version, request)

    @app.patch("/api/agents")
    def bulk_update_agents(
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "update agents")
        if role_error:
            return role_error
        guardrails.require_mutations_enabled()
        data = require_object(payload)
        resources_to_add, resources_to_remove = _operations(data, "resources")
        environments_to_add, environments_to_remove = _operations(data, "environments")
        message = agent_service.bulk_update(
            actor,
            _uuids(data),
            resources_to_add,
            resources_to_remove,
            environments_to_add,
            environments_to_remove,
            agent_config_state=data.get("agent_config_state"),
        )
        return render_message(message, version, request)

    @app.delete("/api/agents/{uuid}")
    def delete_agent(
        uuid: str,
        request: Request,
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "delete agents")
        if role_error:
            return role_error
        guardrails.require_mutations_enabled()
        return render_message(agent_service.delete(actor, uuid), version, request)

    @app.delete("/api/agents")
    def bulk_delete_agents(
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(AGENTS_V4)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "delete agents")
        if role_error:
            return role_error
        guardrails.require_mutations_enabled()
        data = require_object(payload)
        return render_message(agent_service.bulk_delete(actor, _uuids(data)), version, request)

    def _set_maintenance_mode(actor, enabled: bool) -> Response:
        current = storage.get_maintenance_mode()
        if current.is_maintenance_mode == enabled:
            if enabled:
                message = "Failed to enable server maintenance mode. Server is already in maintenance mode."
            else:
                message = "Failed to disable server maintenance mode. Server is not in maintenance mode."
            raise PolicyError(409, "CONFLICT", message)
        storage.set_maintenance_mode(
            MaintenanceModeInfo(is_maintenance_mode=enabled, updated_by=actor.actor_id, updated_on=utc_now())
        )
        logger.info(
            "event=server.maintenance_mode.updated request_id=%s actor_id=%s enabled=%s",
            request_id_provider(),
            actor.actor_id,
            enabled,
        )
        return Response(status_code=204)

    @app.post("/api/admin/maintenance_mode/enable")
    def enable_maintenance_mode(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "enable maintenance mode")
        if role_error:
            return role_error
        return _set_maintenance_mode(actor, True)

    @app.post("/api/admin/maintenance_mode/disable")
    def disable_maintenance_mode(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "disable maintenance mode")
        if role_error:
            return role_error
        return _set_maintenance_mode(actor, False)

    @app.get("/api/admin/maintenance_mode/info")
    def maintenance_mode_info(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        get_actor(authorization)
        info = storage.get_maintenance_mode()
        attributes = running_systems(agent_service) if info.is_maintenance_mode else None
        return render(maintenance_mode_to_json(info, _base_url(request), attributes), version, request)

    @app.get("/api/version_infos/stale")
    def stale_version_info(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        get_actor(authorization)
        info = version_info_service.stale_info()
        payload = version_info_to_json(info, _base_url(request)) if info else {}
        return render(payload, version, request)

    @app.patch("/api/version_infos/go_server")
    def update_go_server_version_info(
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        data = require_object(payload)
        if version_info_service.verifies_signatures:
            message = version_info_service.verify_signed_message(data)
        else:
            # Without the update server key nothing vouches for the message.
            role_error = require_role(actor, {Role.ADMIN}, "report the latest server version")
            if role_error:
                return role_error
            message = data.get("message")
        info = version_info_service.update_latest(message)
        return render(version_info_to_json(info, _base_url(request)), version, request)

    @app.get("/api/version_infos/latest_version")
    def latest_version(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        get_actor(authorization)
        info = version_info_service.go_server()
        return render(
            {"_links": links(_base_url(request), "/api/version_infos/latest_version"), "latest_version": info.latest_version},
            version,
            request,
        )

    def _load_filter(username: str, filter_id: int) -> NotificationFilter:
        stored = storage.get_notification_filter(username, filter_id)
        if stored is None:
            raise not_found()
        return NotificationFilter(**stored)

    def _save_filter(username: str, notification_filter: NotificationFilter) -> Optional[Response]:
        if not validate_tree(notification_filter, config_service.context()):
            return error_response(
                422,
                "VALIDATION_FAILED",
                "Validation error while saving the notification filter.",
                data=notification_filter_to_json(notification_filter),
            )
        for existing in storage.list_notification_filters(username):
            if existing["id"] == notification_filter.id:
                continue
            if (
                existing["pipeline"].lower() == notification_filter.pipeline.lower()
                and existing["stage"].lower() == notification_filter.stage.lower()
                and existing["event"] == notification_filter.event
            ):
                raise PolicyError(
                    422,
                    "UNPROCESSABLE_ENTITY",
                    f"Duplicate notification filter found for: [pipeline={notification_filter.pipeline}, "
                    f"stage={notification_filter.stage}, event={notification_filter.event}]",
                )
        return None

    @app.get("/api/current_user/notification_filters")
    def list_notification_filters(
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        filters = [
            notification_filter_to_json(NotificationFilter(**item))
            for item in storage.list_notification_filters(actor.actor_id)
        ]
        return render(
            embedded(_base_url(request), "/api/current_user/notification_filters", "notification-filters", "filters", filters),
            version,
            request,
        )

    @app.post("/api/current_user/notification_filters")
    def create_notification_filter(
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        notification_filter = notification_filter_from_json(payload)
        notification_filter.id = None
        failure = _save_filter(actor.actor_id, notification_filter)
        if failure:
            return failure
        notification_filter.id = storage.insert_notification_filter(
            actor.actor_id, notification_filter.model_dump(mode="json")
        )
        log_event("user.notification_filter.created", actor_id=actor.actor_id, filter_id=notification_filter.id)
        return render(notification_filter_to_json(notification_filter), version, request)

    @app.patch("/api/current_user/notification_filters/{filter_id}")
    def update_notification_filter(
        filter_id: int,
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        existing = _load_filter(actor.actor_id, filter_id)
        notification_filter = notification_filter_from_json(payload, existing)
        notification_filter.id = filter_id
        failure = _save_filter(actor.actor_id, notification_filter)
        if failure:
            return failure
        storage.update_notification_filter(actor.actor_id, filter_id, notification_filter.model_dump(mode="json"))
        log_event("user.notification_filter.updated", actor_id=actor.actor_id, filter_id=filter_id)
        return render(notification_filter_to_json(notification_filter), version, request)

    @app.delete("/api/current_user/notification_filters/{filter_id}")
    def delete_notification_filter(
        filter_id: int,
        request: Request,
        version: ApiVersion = Depends(accepts(V1)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        _load_filter(actor.actor_id, filter_id)
        storage.delete_notification_filter(actor.actor_id, filter_id)
        log_event(
            "user.notification_filter.deleted",
            actor_id=actor.actor_id,
            filter_id=filter_id,
        )
        return render_message("Notification filter is successfully deleted!", version, request)
