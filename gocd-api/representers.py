"""
JSON mapping for configuration entities.

``*_to_json`` turns a domain object into the payload served by the API and
``*_from_json`` builds a domain object back from a request body. Errors
collected during validation are rendered under ``"errors"`` next to the
offending fields, and only when there are some. Secure values never leave
the server in clear text.
"""

from typing import Any, Callable, Optional, Type

from pydantic import BaseModel, ValidationError

from cipher import GoCipher
from config import SETTINGS
from models import (
    Agent,
    AuthConfig,
    BackupConfig,
    ConfigNode,
    ConfigurationProperty,
    EnvironmentConfig,
    EnvironmentVariable,
    MaintenanceModeInfo,
    NotificationFilter,
    PackageDefinition,
    PackageRepository,
    PackageRepositoryRef,
    PermissionEntry,
    PipelineGroup,
    PluginMetadata,
    Rule,
    Scm,
    SecretConfig,
    ServerBackup,
    VersionInfo,
)
from policy import PolicyError


class UnprocessableEntity(PolicyError):
    def __init__(self, message: str) -> None:
        super().__init__(422, "UNPROCESSABLE_ENTITY", message)


def build_model(model_cls: Type[BaseModel], **fields: Any):
    """Instantiate a model from request data, reporting bad values as 422."""
    try:
        return model_cls(**fields)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error.get("loc", ()))
        raise UnprocessableEntity(f"Invalid value for '{location}': {error.get('msg')}") from exc


def require_object(payload: Any, what: str = "request body") -> dict:
    if not isinstance(payload, dict):
        raise UnprocessableEntity(f"Expected the {what} to be a JSON object.")
    return payload


def links(base_url: str, path: str, doc_anchor: Optional[str] = None, find: Optional[str] = None) -> dict:
    base = base_url.rstrip("/")
    rendered = {"self": {"href": f"{base}{path}"}}
    if doc_anchor:
        rendered["doc"] = {"href": f"{SETTINGS.api_docs_url.rstrip('/')}/#{doc_anchor}"}
    if find:
        rendered["find"] = {"href": f"{base}{find}"}
    return rendered


def with_errors(payload: dict, node: ConfigNode) -> dict:
    errors = node.errors()
    if not errors.is_empty():
        payload["errors"] = errors.to_dict()
    return payload


def embedded(base_url: str, path: str, doc_anchor: str, key: str, items: list) -> dict:
    return {"_links": links(base_url, path, doc_anchor), "_embedded": {key: items}}


def as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return value
    raise UnprocessableEntity("Expected a list or a comma separated string.")


def secure_value(payload: dict, cipher: GoCipher, value_key: str, encrypted_key: str, secure: bool) -> tuple:
    value = payload.get(value_key)
    encrypted = payload.get(encrypted_key)
    if value is not None and encrypted is not None:
        raise UnprocessableEntity(f"You may only specify `{value_key}` or `{encrypted_key}`, not both!")
    if encrypted is not None:
        if not cipher.is_encrypted_with_this_key(encrypted):
            raise UnprocessableEntity(f"Encrypted value for `{encrypted_key}` is invalid.")
        return None, encrypted
    if secure and value is not None:
        return None, cipher.encrypt(str(value))
    return value, None


def environment_variable_to_json(variable: EnvironmentVariable) -> dict:
    payload: dict = {"secure": variable.secure, "name": variable.name}
    if variable.secure:
        payload["encrypted_value"] = variable.encrypted_value
    else:
        payload["value"] = variable.value
    return with_errors(payload, variable)


def environment_variable_from_json(payload: Any, cipher: GoCipher) -> EnvironmentVariable:
    data = require_object(payload, "environment variable")
    secure = bool(data.get("secure", False)) or data.get("encrypted_value") is not None
    value, encrypted = secure_value(data, cipher, "value", "encrypted_value", secure)
    return build_model(
        EnvironmentVariable,
        name=data.get("name") or "",
        value=value,
        encrypted_value=encrypted,
        secure=secure,
    )


def environment_variables_to_json(variables: list[EnvironmentVariable]) -> list[dict]:
    return [environment_variable_to_json(variable) for variable in variables]


def environment_variables_from_json(payload: Any, cipher: GoCipher) -> list[EnvironmentVariable]:
    return [environment_variable_from_json(item, cipher) for item in as_list(payload)]


def property_to_json(prop: ConfigurationProperty) -> dict:
    payload: dict = {"key": prop.key}
    if prop.is_secure:
        payload["encrypted_value"] = prop.encrypted_value
    else:
        payload["value"] = prop.value
    return with_errors(payload, prop)


def property_from_json(payload: Any, cipher: GoCipher) -> ConfigurationProperty:
    data = require_object(payload, "configuration property")
    value, encrypted = secure_value(data, cipher, "value", "encrypted_value", bool(data.get("secure", False)))
    return build_model(ConfigurationProperty, key=data.get("key") or "", value=value, encrypted_value=encrypted)


def properties_to_json(properties: list[ConfigurationProperty]) -> list[dict]:
    return [property_to_json(prop) for prop in properties]


def properties_from_json(payload: Any, cipher: GoCipher) -> list[ConfigurationProperty]:
    return [property_from_json(item, cipher) for item in as_list(payload)]


def pipeline_group_to_json(group: PipelineGroup, pipelines: list[str], base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/pipeline_groups/{group.name}", "pipeline-group-config", "/api/admin/pipeline_groups/:group_name"),
        "name": group.name,
        "authorization": [
            with_errors(
                {"name": entry.name, "type": entry.type, "view": entry.view, "operate": entry.operate, "admin": entry.admin},
                entry,
            )
            for entry in group.authorization
        ],
        "pipelines": [{"name": name} for name in pipelines],
    }
    return with_errors(payload, group)


def pipeline_group_from_json(payload: Any) -> PipelineGroup:
    data = require_object(payload)
    entries = []
    for item in as_list(data.get("authorization")):
        entry = require_object(item, "authorization entry")
        entries.append(
            build_model(
                PermissionEntry,
                name=entry.get("name") or "",
                type=entry.get("type") or "user",
                view=bool(entry.get("view", False)),
                operate=bool(entry.get("operate", False)),
                admin=bool(entry.get("admin", False)),
            )
        )
    return build_model(PipelineGroup, name=data.get("name") or "", authorization=entries)


def environment_to_json(environment: EnvironmentConfig, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/environments/{environment.name}", "environment-config", "/api/admin/environments/:environment_name"),
        "name": environment.name,
        "pipelines": [{"name": name} for name in environment.pipelines],
        "agents": [{"uuid": uuid} for uuid in environment.agents],
        "environment_variables": environment_variables_to_json(environment.environment_variables),
    }
    return with_errors(payload, environment)


def _names(items: list, key: str) -> list[str]:
    names: list[str] = []
    for item in items:
        name = item.get(key) if isinstance(item, dict) else item
        if isinstance(name, str) and name and name not in names:
            names.append(name)
    return names


def environment_from_json(payload: Any, cipher: GoCipher) -> EnvironmentConfig:
    data = require_object(payload)
    return build_model(
        EnvironmentConfig,
        name=data.get("name") or "",
        pipelines=_names(as_list(data.get("pipelines")), "name"),
        agents=_names(as_list(data.get("agents")), "uuid"),
        environment_variables=environment_variables_from_json(data.get("environment_variables"), cipher),
    )


def auth_config_to_json(auth_config: AuthConfig, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/security/auth_configs/{auth_config.id}", "authorization-configuration", "/api/admin/security/auth_configs/:auth_config_id"),
        "id": auth_config.id,
        "plugin_id": auth_config.plugin_id,
        "allow_only_known_users_to_login": auth_config.allow_only_known_users_to_login,
        "properties": properties_to_json(auth_config.properties),
    }
    return with_errors(payload, auth_config)


def auth_config_from_json(payload: Any, cipher: GoCipher) -> AuthConfig:
    data = require_object(payload)
    return build_model(
        AuthConfig,
        id=data.get("id") or "",
        plugin_id=data.get("plugin_id") or "",
        allow_only_known_users_to_login=bool(data.get("allow_only_known_users_to_login", False)),
        properties=properties_from_json(data.get("properties"), cipher),
    )


def rule_to_json(rule: Rule) -> dict:
    return with_errors(
        {"directive": rule.directive, "action": rule.action, "type": rule.type, "resource": rule.resource},
        rule,
    )


def secret_config_to_json(secret_config: SecretConfig, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/secret_configs/{secret_config.id}", "secret-configs", "/api/admin/secret_configs/:config_id"),
        "id": secret_config.id,
        "plugin_id": secret_config.plugin_id,
        "description": secret_config.description,
        "properties": properties_to_json(secret_config.properties),
        "rules": [rule_to_json(rule) for rule in secret_config.rules],
    }
    return with_errors(payload, secret_config)


def secret_config_from_json(payload: Any, cipher: GoCipher) -> SecretConfig:
    data = require_object(payload)
    rules = []
    for item in as_list(data.get("rules")):
        rule = require_object(item, "rule")
        rules.append(
            build_model(
                Rule,
                directive=rule.get("directive") or "",
                action=rule.get("action") or "",
                type=rule.get("type") or "",
                resource=rule.get("resource") or "",
            )
        )
    return build_model(
        SecretConfig,
        id=data.get("id") or "",
        plugin_id=data.get("plugin_id") or "",
        description=data.get("description"),
        properties=properties_from_json(data.get("properties"), cipher),
        rules=rules,
    )


def _plugin_metadata_to_json(metadata: PluginMetadata) -> dict:
    return with_errors({"id": metadata.id, "version": metadata.version}, metadata)


def _plugin_metadata_from_json(payload: Any) -> PluginMetadata:
    if payload is None:
        return PluginMetadata()
    data = require_object(payload, "plugin_metadata")
    return build_model(PluginMetadata, id=data.get("id") or "", version=data.get("version"))


def package_repository_to_json(repository: PackageRepository, packages: list[PackageDefinition], base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/repositories/{repository.repo_id}", "package-repositories", "/api/admin/repositories/:repo_id"),
        "repo_id": repository.repo_id,
        "name": repository.name,
        "plugin_metadata": _plugin_metadata_to_json(repository.plugin_metadata),
        "configuration": properties_to_json(repository.configuration),
        "_embedded": {
            "packages": [
                {
                    "_links": links(base_url, f"/api/admin/packages/{package.id}", "packages", "/api/admin/packages/:package_id"),
                    "name": package.name,
                    "id": package.id,
                }
                for package in packages
            ]
        },
    }
    return with_errors(payload, repository)


def package_repository_from_json(payload: Any, cipher: GoCipher) -> PackageRepository:
    data = require_object(payload)
    return build_model(
        PackageRepository,
        repo_id=data.get("repo_id") or "",
        name=data.get("name") or "",
        plugin_metadata=_plugin_metadata_from_json(data.get("plugin_metadata")),
        configuration=properties_from_json(data.get("configuration"), cipher),
    )


def package_to_json(package: PackageDefinition, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/packages/{package.id}", "packages", "/api/admin/packages/:package_id"),
        "name": package.name,
        "id": package.id,
        "auto_update": package.auto_update,
        "package_repo": {
            "_links": links(base_url, f"/api/admin/repositories/{package.package_repo.id}", "package-repositories", "/api/admin/repositories/:repo_id"),
            "id": package.package_repo.id,
            "name": package.package_repo.name,
        },
        "configuration": properties_to_json(package.configuration),
    }
    return with_errors(payload, package)


def package_from_json(payload: Any, cipher: GoCipher) -> PackageDefinition:
    data = require_object(payload)
    repo = data.get("package_repo") or {}
    repo = require_object(repo, "package_repo")
    return build_model(
        PackageDefinition,
        id=data.get("id") or "",
        name=data.get("name") or "",
        auto_update=bool(data.get("auto_update", True)),
        package_repo=PackageRepositoryRef(id=repo.get("id") or "", name=repo.get("name")),
        configuration=properties_from_json(data.get("configuration"), cipher),
    )


def scm_to_json(scm: Scm, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/admin/scms/{scm.id}", "scms", "/api/admin/scms/:scm_id"),
        "id": scm.id,
        "name": scm.name,
        "auto_update": scm.auto_update,
        "plugin_metadata": _plugin_metadata_to_json(scm.plugin_metadata),
        "configuration": properties_to_json(scm.configuration),
    }
    return with_errors(payload, scm)


def scm_from_json(payload: Any, cipher: GoCipher) -> Scm:
    data = require_object(payload)
    return build_model(
        Scm,
        id=data.get("id") or "",
        name=data.get("name") or "",
        auto_update=bool(data.get("auto_update", True)),
        plugin_metadata=_plugin_metadata_from_json(data.get("plugin_metadata")),
        configuration=properties_from_json(data.get("configuration"), cipher),
    )


def backup_config_to_json(backup_config: BackupConfig, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, "/api/config/backup", "backup-config"),
        "email_on_success": backup_config.email_on_success,
        "email_on_failure": backup_config.email_on_failure,
    }
    if backup_config.schedule:
        payload["schedule"] = backup_config.schedule
    if backup_config.post_backup_script:
        payload["post_backup_script"] = backup_config.post_backup_script
    return with_errors(payload, backup_config)


def backup_config_from_json(payload: Any) -> BackupConfig:
    data = require_object(payload)
    return build_model(
        BackupConfig,
        schedule=data.get("schedule") or None,
        post_backup_script=data.get("post_backup_script") or None,
        email_on_success=bool(data.get("email_on_success", False)),
        email_on_failure=bool(data.get("email_on_failure", False)),
    )


def backup_to_json(backup: ServerBackup, base_url: str) -> dict:
    return {
        "_links": links(base_url, f"/api/backups/{backup.id}", "backups"),
        "id": backup.id,
        "time": backup.time,
        "path": backup.path,
        "status": backup.status.value,
        "message": backup.message,
        "progress_status": backup.progress_status.value if backup.progress_status else None,
        "user": {"name": backup.username},
        "steps": [
            {"type": step.type.value, "state": step.state.value, "message": step.message}
            for step in backup.steps
        ],
    }


def maintenance_mode_to_json(info: MaintenanceModeInfo, base_url: str, metadata: Optional[dict] = None) -> dict:
    payload = {
        "_links": links(base_url, "/api/admin/maintenance_mode/info", "maintenance-mode-info"),
        "is_maintenance_mode": info.is_maintenance_mode,
        "metadata": {"updated_by": info.updated_by, "updated_on": info.updated_on},
    }
    if info.is_maintenance_mode and metadata is not None:
        payload["attributes"] = metadata
    return payload


def version_info_to_json(info: VersionInfo, base_url: str) -> dict:
    return {
        "_links": links(base_url, "/api/version_infos/go_server", "version-info"),
        "component_name": info.component_name,
        "update_server_url": info.update_server_url,
        "installed_version": info.installed_version,
        "latest_version": info.latest_version,
    }


def notification_filter_to_json(notification_filter: NotificationFilter) -> dict:
    payload = {
        "id": notification_filter.id,
        "pipeline": notification_filter.pipeline,
        "stage": notification_filter.stage,
        "event": notification_filter.event,
        "match_commits": notification_filter.match_commits,
    }
    return with_errors(payload, notification_filter)


def notification_filter_from_json(payload: Any, existing: Optional[NotificationFilter] = None) -> NotificationFilter:
    data = require_object(payload)
    base = existing.model_dump() if existing else {}
    for key in ("pipeline", "stage", "event", "match_commits"):
        if key in data and data[key] is not None:
            base[key] = data[key]
    return build_model(NotificationFilter, **base)


def free_space_json(free_space: Optional[int]) -> Any:
    return "unknown" if free_space is None else free_space


def agent_to_json(agent: Agent, base_url: str) -> dict:
    payload = {
        "_links": links(base_url, f"/api/agents/{agent.uuid}", "agents", "/api/agents/:uuid"),
        "uuid": agent.uuid,
        "hostname": agent.hostname,
        "ip_address": agent.ip_address,
        "sandbox": agent.sandbox,
        "operating_system": agent.operating_system,
        "free_space": free_space_json(agent.free_space),
        "agent_config_state": agent.agent_config_state.value,
        "agent_state": agent.agent_state.value,
        "resources": list(agent.resources),
        "environments": [{"name": name, "origin": {"type": "gocd"}} for name in agent.environments],
        "build_state": agent.build_state.value,
    }
    if agent.build_details is not None:
        payload["build_details"] = agent.build_details.model_dump()
    return payload


def render_list(items: list, render: Callable[[Any], dict]) -> list[dict]:
    return [render(item) for item in items]
