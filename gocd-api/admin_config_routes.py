"""
CRUD routes for configuration entities under ``/api/admin``.

Every entity gets the same five routes (index, show, create, update,
destroy); what differs per entity is captured by a ``ConfigResource``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Depends, Header, Request

from api_versions import ApiVersion, accepts, json_body, render, render_message
from models import Actor, Role
from pipeline_representers import pipeline_from_json, pipeline_to_json
from representers import (
    auth_config_from_json,
    auth_config_to_json,
    embedded,
    environment_from_json,
    environment_to_json,
    environment_variable_from_json,
    as_list,
    package_from_json,
    package_repository_from_json,
    package_repository_to_json,
    package_to_json,
    pipeline_group_from_json,
    pipeline_group_to_json,
    require_object,
    scm_from_json,
    scm_to_json,
    secret_config_from_json,
    secret_config_to_json,
)
from services import ENTITY_KINDS, ConfigValidationError, administers_group, etag_for


logger = logging.getLogger("gocd.api")

PIPELINES_V1 = ApiVersion(1, deprecated_in="19.1.0", removal_in="19.4.0", successor=2, api_name="Pipeline Config")
PIPELINES_V2 = ApiVersion(2)
ENVIRONMENTS_V2 = ApiVersion(2)
V1 = ApiVersion(1)


@dataclass
class ConfigResource:
    kind: str
    path: str
    collection: str
    doc_anchor: str
    versions: tuple
    to_json: Callable[[Any, Request, ApiVersion], dict]
    from_json: Callable[[Any, ApiVersion], Any]


def _base_url(request: Request) -> str:
    return str(request.base_url)


def register_admin_config_routes(
    app,
    *,
    get_actor: Callable,
    request_id_provider: Callable[[], str],
    require_role: Callable,
    error_response: Callable,
    config_service,
    cipher,
    guardrails,
) -> None:
    def visible(actor: Actor, kind: str, entity) -> bool:
        if actor.role == Role.ADMIN:
            return True
        if kind == "pipeline_group":
            return administers_group(actor, entity)
        if kind == "pipeline":
            return administers_group(actor, config_service.find("pipeline_group", entity.group))
        return False

    def require_access(actor: Actor, kind: str, action: str):
        if kind in ("pipeline", "pipeline_group"):
            return require_role(actor, {Role.ADMIN, Role.GROUP_ADMIN}, action)
        return require_role(actor, {Role.ADMIN}, action)

    def with_repository_name(package):
        repository = config_service.find("package_repository", package.package_repo.id)
        if repository is not None:
            package.package_repo.name = repository.name
        return package

    resources = [
        ConfigResource(
            kind="pipeline",
            path="/api/admin/pipelines",
            collection="pipelines",
            doc_anchor="pipeline-config",
            versions=(PIPELINES_V1, PIPELINES_V2),
            to_json=lambda entity, request, version: pipeline_to_json(entity, version.number, _base_url(request)),
            from_json=lambda payload, version: pipeline_from_json(payload, version.number, cipher),
        ),
        ConfigResource(
            kind="pipeline_group",
            path="/api/admin/pipeline_groups",
            collection="groups",
            doc_anchor="pipeline-group-config",
            versions=(V1,),
            to_json=lambda entity, request, version: pipeline_group_to_json(
                entity, config_service.group_pipelines(entity.name), _base_url(request)
            ),
            from_json=lambda payload, version: pipeline_group_from_json(payload),
        ),
        ConfigResource(
            kind="environment",
            path="/api/admin/environments",
            collection="environments",
            doc_anchor="environment-config",
            versions=(ENVIRONMENTS_V2,),
            to_json=lambda entity, request, version: environment_to_json(entity, _base_url(request)),
            from_json=lambda payload, version: environment_from_json(payload, cipher),
        ),
        ConfigResource(
            kind="auth_config",
            path="/api/admin/security/auth_configs",
            collection="auth_configs",
            doc_anchor="authorization-configuration",
            versions=(V1,),
            to_json=lambda entity, request, version: auth_config_to_json(entity, _base_url(request)),
            from_json=lambda payload, version: auth_config_from_json(payload, cipher),
        ),
        ConfigResource(
            kind="secret_config",
            path="/api/admin/secret_configs",
            collection="secret_configs",
            doc_anchor="secret-configs",
            versions=(V1,),
            to_json=lambda entity, request, version: secret_config_to_json(entity, _base_url(request)),
            from_json=lambda payload, version: secret_config_from_json(payload, cipher),
        ),
        ConfigResource(
            kind="package_repository",
            path="/api/admin/repositories",
            collection="package_repositories",
            doc_anchor="package-repositories",
            versions=(V1,),
            to_json=lambda entity, request, version: package_repository_to_json(
                entity,
                [p for p in config_service.entities("package") if p.package_repo.id == entity.repo_id],
                _base_url(request),
            ),
            from_json=lambda payload, version: package_repository_from_json(payload, cipher),
        ),
        ConfigResource(
            kind="package",
            path="/api/admin/packages",
            collection="packages",
            doc_anchor="packages",
            versions=(V1,),
            to_json=lambda entity, request, version: package_to_json(entity, _base_url(request)),
            from_json=lambda payload, version: with_repository_name(package_from_json(payload, cipher)),
        ),
        ConfigResource(
            kind="scm",
            path="/api/admin/scms",
            collection="scms",
            doc_anchor="scms",
            versions=(V1,),
            to_json=lambda entity, request, version: scm_to_json(entity, _base_url(request)),
            from_json=lambda payload, version: scm_from_json(payload, cipher),
        ),
    ]

    def validation_failed(resource: ConfigResource, exc: ConfigValidationError, request: Request, version: ApiVersion):
        logger.info(
            "config.validation_failed request_id=%s kind=%s entity_id=%s",
            request_id_provider(),
            resource.kind,
            exc.spec.entity_id(exc.entity),
        )
        return error_response(
            422,
            exc.code,
            exc.message,
            data=resource.to_json(exc.entity, request, version),
        )

    def register(resource: ConfigResource) -> None:
        spec = ENTITY_KINDS[resource.kind]
        item_path = f"{resource.path}/{{entity_id}}"

        @app.get(resource.path, name=f"{resource.kind}_index")
        def index(
            request: Request,
            version: ApiVersion = Depends(accepts(*resource.versions)),
            authorization: Optional[str] = Header(None),
        ):
            actor = get_actor(authorization)
            role_error = require_access(actor, resource.kind, f"list {spec.display}s")
            if role_error:
                return role_error
            items = [
                resource.to_json(entity, request, version)
                for entity in config_service.entities(resource.kind)
                if visible(actor, resource.kind, entity)
            ]
            return render(
                embedded(_base_url(request), resource.path, resource.doc_anchor, resource.collection, items),
                version,
                request,
            )

        @app.get(item_path, name=f"{resource.kind}_show")
        def show(
            entity_id: str,
            request: Request,
            version: ApiVersion = Depends(accepts(*resource.versions)),
            authorization: Optional[str] = Header(None),
        ):
            actor = get_actor(authorization)
            role_error = require_access(actor, resource.kind, f"view {spec.display}s")
            if role_error:
                return role_error
            entity = config_service.load(resource.kind, entity_id)
            config_service.authorize(actor, resource.kind, entity)
            return render(resource.to_json(entity, request, version), version, request, etag=etag_for(entity))

        @app.post(resource.path, name=f"{resource.kind}_create")
        def create(
            request: Request,
            payload: Any = Depends(json_body),
            version: ApiVersion = Depends(accepts(*resource.versions)),
            authorization: Optional[str] = Header(None),
        ):
            actor = get_actor(authorization)
            role_error = require_access(actor, resource.kind, f"create {spec.display}s")
            if role_error:
                return role_error
            guardrails.require_mutations_enabled()
            entity = resource.from_json(payload, version)
            if resource.kind == "pipeline":
                config_service.authorize(actor, resource.kind, entity)
            elif resource.kind == "pipeline_group":
                require_admin = require_role(actor, {Role.ADMIN}, "create pipeline groups")
                if require_admin:
                    return require_admin
            try:
                created = config_service.create(actor, resource.kind, entity)
            except ConfigValidationError as exc:
                return validation_failed(resource, exc, request, version)
            return render(resource.to_json(created, request, version), version, request, etag=etag_for(created))

        @app.put(item_path, name=f"{resource.kind}_update")
        def update(
            entity_id: str,
            request: Request,
            payload: Any = Depends(json_body),
            version: ApiVersion = Depends(accepts(*resource.versions)),
            if_match: Optional[str] = Header(None, alias="If-Match"),
            authorization: Optional[str] = Header(None),
        ):
            actor = get_actor(authorization)
            role_error = require_access(actor, resource.kind, f"update {spec.display}s")
            if role_error:
                return role_error
            guardrails.require_mutations_enabled()
            existing = config_service.load(resource.kind, entity_id)
            config_service.authorize(actor, resource.kind, existing)
            entity = resource.from_json(payload, version)
            if resource.kind == "pipeline" and entity.group:
                config_service.authorize(actor, resource.kind, entity)
            try:
                updated = config_service.update(actor, resource.kind, entity_id, entity, if_match)
            except ConfigValidationError as exc:
                return validation_failed(resource, exc, request, version)
            return render(resource.to_json(updated, request, version), version, request, etag=etag_for(updated))

        @app.delete(item_path, name=f"{resource.kind}_destroy")
        def destroy(
            entity_id: str,
            request: Request,
            version: ApiVersion = Depends(accepts(*resource.versions)),
            authorization: Optional[str] = Header(None),
        ):
            actor = get_actor(authorization)
            role_error = require_access(actor, resource.kind, f"delete {spec.display}s")
            if role_error:
                return role_error
            if resource.kind == "pipeline_group":
                require_admin = require_role(actor, {Role.ADMIN}, "delete pipeline groups")
                if require_admin:
                    return require_admin
            guardrails.require_mutations_enabled()
            existing = config_service.load(resource.kind, entity_id)
            config_service.authorize(actor, resource.kind, existing)
            message = config_service.delete(actor, resource.kind, entity_id)
            return render_message(message, version, request)

    for resource in resources:
        register(resource)

    environments = next(resource for resource in resources if resource.kind == "environment")

    @app.patch("/api/admin/environments/{environment_name}")
    def patch_environment(
        environment_name: str,
        request: Request,
        payload: Any = Depends(json_body),
        version: ApiVersion = Depends(accepts(ENVIRONMENTS_V2)),
        authorization: Optional[str] = Header(None),
    ):
        actor = get_actor(authorization)
        role_error = require_role(actor, {Role.ADMIN}, "update environments")
        if role_error:
            return role_error
        guardrails.require_mutations_enabled()
        data = require_object(payload)
        pipelines = require_object(data.get("pipelines") or {}, "pipelines")
        agents = require_object(data.get("agents") or {}, "agents")
        variables = require_object(data.get("environment_variables") or {}, "environment_variables")
        try:
            environment = config_service.patch_environment(
                actor,
                environment_name,
                pipelines_to_add=[str(name) for name in as_list(pipelines.get("add"))],
                pipelines_to_remove=[str(name) for name in as_list(pipelines.get("remove"))],
                agents_to_add=[str(uuid) for uuid in as_list(agents.get("add"))],
                agents_to_remove=[str(uuid) for uuid in as_list(agents.get("remove"))],
                variables_to_add=[environment_variable_from_json(item, cipher) for item in as_list(variables.get("add"))],
                variables_to_remove=[str(name) for name in as_list(variables.get("remove"))],
            )
        except ConfigValidationError as exc:
            return validation_failed(environments, exc, request, version)
        return render(
            environments.to_json(environment, request, version),
            version,
            request,
            etag=etag_for(environment),
        )
