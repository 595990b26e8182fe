import base64
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Type

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from pydantic import BaseModel

from models import (
    Actor,
    AuthConfig,
    DependencyMaterialConfig,
    EnvironmentConfig,
    EnvironmentVariable,
    PackageDefinition,
    PackageMaterialConfig,
    PackageRepository,
    PipelineConfig,
    PipelineGroup,
    PluggableScmMaterialConfig,
    Role,
    Scm,
    SecretConfig,
    VersionInfo,
)
from observability import log_config_change
from policy import PolicyError, UNAUTHORIZED_MESSAGE, not_found
from redaction import has_masked_password, mask_url_credentials
from storage import utc_now
from validation import ValidationContext, validate_tree, walk_nodes


logger = logging.getLogger("gocd.api")


@dataclass(frozen=True)
class EntityKind:
    kind: str
    label: str
    display: str
    model: Type[BaseModel]
    id_field: str
    generates_id: bool = False

    def entity_id(self, entity) -> str:
        return getattr(entity, self.id_field)


ENTITY_KINDS = {
    "pipeline": EntityKind("pipeline", "Pipeline", "pipeline", PipelineConfig, "name"),
    "pipeline_group": EntityKind("pipeline_group", "Pipeline group", "pipeline group", PipelineGroup, "name"),
    "environment": EntityKind("environment", "Environment", "environment", EnvironmentConfig, "name"),
    "auth_config": EntityKind("auth_config", "Security auth config", "security auth config", AuthConfig, "id"),
    "secret_config": EntityKind("secret_config", "Secret config", "secret config", SecretConfig, "id"),
    "package_repository": EntityKind(
        "package_repository", "Package repository", "package repository", PackageRepository, "repo_id", True
    ),
    "package": EntityKind("package", "Package definition", "package definition", PackageDefinition, "id", True),
    "scm": EntityKind("scm", "SCM", "scm", Scm, "id", True),
}


def etag_for(entity: BaseModel) -> str:
    canonical = json.dumps(entity.model_dump(mode="json"), sort_keys=True)
    return f'"{hashlib.md5(canonical.encode("utf-8")).hexdigest()}"'


class ConfigValidationError(PolicyError):
    """Raised when an entity fails validation; ``entity`` carries the errors."""

    def __init__(self, spec: EntityKind, entity) -> None:
        messages = []
        for node_errors in _all_error_messages(entity):
            messages.extend(node_errors)
        super().__init__(
            422,
            "VALIDATION_FAILED",
            f"Validations failed for {spec.display} '{spec.entity_id(entity)}'. "
            f"Error(s): [{', '.join(messages)}]. Please correct and resubmit.",
        )
        self.spec = spec
        self.entity = entity


def _all_error_messages(entity):
    for node in walk_nodes(entity):
        errors = node.errors()
        if not errors.is_empty():
            yield [message for messages in errors.to_dict().values() for message in messages]


def unprocessable(message: str) -> PolicyError:
    return PolicyError(422, "UNPROCESSABLE_ENTITY", message)


def already_exists(spec: EntityKind) -> PolicyError:
    return unprocessable(f"Failed to add {spec.display}. Another {spec.display} with the same name already exists.")


def restore_masked_urls(pipeline: PipelineConfig, previous: Optional[PipelineConfig]) -> None:
    """Put back the stored url of every material sent with its password masked.

    Responses mask url passwords, so a client editing what it fetched sends
    the mask back. A masked url with no stored counterpart is refused.
    """
    stored = [material for material in (previous.materials if previous else []) if getattr(material, "url", None)]
    for material in pipeline.materials:
        url = getattr(material, "url", None)
        if not url or not has_masked_password(url):
            continue
        original = next(
            (
                candidate.url
                for candidate in stored
                if candidate.type == material.type and mask_url_credentials(candidate.url) == url
            ),
            None,
        )
        if original is None:
            raise unprocessable(
                f"The password in material url '{url}' is masked. Send the complete url to change the password."
            )
        material.url = original


def forbidden() -> PolicyError:
    return PolicyError(403, "FORBIDDEN", UNAUTHORIZED_MESSAGE)


def administers_group(actor: Actor, group: Optional[PipelineGroup]) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role != Role.GROUP_ADMIN or group is None:
        return False
    roles = {role.lower() for role in actor.roles}
    for entry in group.authorization:
        if not entry.admin:
            continue
        if entry.type == "user" and entry.name.lower() == actor.actor_id.lower():
            return True
        if entry.type == "role" and entry.name.lower() in roles:
            return True
    return False


class ConfigService:
    """Create, update and delete configuration entities.

    Every save is validated against the configuration as it would look after
    the save. Deletes are refused while other entities refer to the target.
    """

    def __init__(self, storage, plugins=()) -> None:
        self.storage = storage
        self.plugins = list(plugins)

    def entities(self, kind: str) -> list:
        spec = ENTITY_KINDS[kind]
        return [spec.model(**payload) for payload in self.storage.list_entities(kind)]

    def find(self, kind: str, entity_id: str):
        payload = self.storage.get_entity(kind, entity_id)
        if payload is None:
            return None
        return ENTITY_KINDS[kind].model(**payload)

    def load(self, kind: str, entity_id: str):
        entity = self.find(kind, entity_id)
        if entity is None:
            raise not_found()
        return entity

    def context(self, replacing=None, kind: Optional[str] = None) -> ValidationContext:
        def current(entity_kind: str) -> list:
            items = self.entities(entity_kind)
            if kind != entity_kind or replacing is None:
                return items
            spec = ENTITY_KINDS[entity_kind]
            key = spec.entity_id(replacing).lower()
            kept = [item for item in items if spec.entity_id(item).lower() != key]
            return kept + [replacing]

        return ValidationContext(
            pipelines=current("pipeline"),
            pipeline_groups=current("pipeline_group"),
            environments=current("environment"),
            package_repositories=current("package_repository"),
            packages=current("package"),
            scms=current("scm"),
            agent_uuids=[agent.uuid for agent in self.storage.list_agents()],
            plugins=self.plugins,
        )

    def validate(self, kind: str, entity) -> None:
        spec = ENTITY_KINDS[kind]
        if not validate_tree(entity, self.context(entity, kind)):
            raise ConfigValidationError(spec, entity)

    def group_pipelines(self, group_name: str) -> list[str]:
        key = group_name.lower()
        return [pipeline.name for pipeline in self.entities("pipeline") if pipeline.group.lower() == key]

    def authorize(self, actor: Actor, kind: str, entity=None) -> None:
        """Admins manage everything; group admins manage their groups and the
        pipelines in them."""
        if actor.role == Role.ADMIN:
            return
        if kind == "pipeline_group" and entity is not None:
            if administers_group(actor, self.find("pipeline_group", entity.name)):
                return
        if kind == "pipeline" and entity is not None:
            if administers_group(actor, self.find("pipeline_group", entity.group)):
                return
        raise forbidden()

    def create(self, actor: Actor, kind: str, entity):
        spec = ENTITY_KINDS[kind]
        if spec.generates_id and not (spec.entity_id(entity) or "").strip():
            setattr(entity, spec.id_field, str(uuid.uuid4()))
        entity_id = spec.entity_id(entity)
        if entity_id and self.storage.get_entity(kind, entity_id) is not None:
            raise already_exists(spec)
        if kind == "pipeline":
            restore_masked_urls(entity, None)
        self.validate(kind, entity)
        if kind == "pipeline":
            self._ensure_group(actor, entity.group)
        # A concurrent create of the same id can win between the check and the insert.
        if not self.storage.insert_entity(kind, entity_id, entity.model_dump(mode="json")):
            raise already_exists(spec)
        log_config_change(actor, "create", kind, entity_id)
        return entity

    def update(self, actor: Actor, kind: str, entity_id: str, entity, if_match: Optional[str]):
        spec = ENTITY_KINDS[kind]
        existing = self.load(kind, entity_id)
        current = etag_for(existing)
        if not if_match or if_match.strip() != current:
            log_config_change(actor, "update", kind, entity_id, outcome="FAILED", reason="stale_etag")
            raise PolicyError(
                412,
                "STALE_ETAG",
                f"Someone has modified the configuration for {spec.label} '{entity_id}'. "
                "Please update your copy of the config with the changes.",
            )
        if spec.entity_id(entity).lower() != entity_id.lower():
            raise unprocessable(f"Renaming of {spec.display} IDs is not supported by this API.")
        if kind == "pipeline":
            if not entity.group:
                entity.group = existing.group
            restore_masked_urls(entity, existing)
        self.validate(kind, entity)
        if kind == "pipeline" and entity.group.lower() != existing.group.lower():
            self._ensure_group(actor, entity.group)
        self.storage.update_entity(kind, spec.entity_id(existing), entity.model_dump(mode="json"))
        log_config_change(actor, "update", kind, entity_id)
        return entity

    def delete(self, actor: Actor, kind: str, entity_id: str) -> str:
        spec = ENTITY_KINDS[kind]
        entity = self.load(kind, entity_id)
        blocker = self._delete_blocker(kind, entity)
        if blocker:
            log_config_change(actor, "delete", kind, entity_id, outcome="FAILED", reason=blocker)
            raise unprocessable(blocker)
        self.storage.delete_entity(kind, entity_id)
        log_config_change(actor, "delete", kind, entity_id)
        if kind == "environment":
            return f"Environment '{spec.entity_id(entity)}' was deleted successfully."
        return f"The {spec.display} '{spec.entity_id(entity)}' was deleted successfully."

    def _ensure_group(self, actor: Actor, group_name: str) -> None:
        if self.storage.get_entity("pipeline_group", group_name) is not None:
            return
        if actor.role != Role.ADMIN:
            raise forbidden()
        group = PipelineGroup(name=group_name)
        self.storage.insert_entity("pipeline_group", group_name, group.model_dump(mode="json"))
        log_config_change(actor, "create", "pipeline_group", group_name)

    def _delete_blocker(self, kind: str, entity) -> Optional[str]:
        checks: dict[str, Callable] = {
            "pipeline": self._pipeline_delete_blocker,
            "pipeline_group": self._group_delete_blocker,
            "package_repository": self._repository_delete_blocker,
            "package": self._package_delete_blocker,
            "scm": self._scm_delete_blocker,
        }
        check = checks.get(kind)
        return check(entity) if check else None

    def _pipeline_delete_blocker(self, pipeline: PipelineConfig) -> Optional[str]:
        key = pipeline.name.lower()
        for other in self.entities("pipeline"):
            if other.name.lower() == key:
                continue
            for material in other.materials:
                if isinstance(material, DependencyMaterialConfig) and material.pipeline.lower() == key:
                    return f"Cannot delete pipeline '{pipeline.name}' as pipeline '{other.name}' depends on it."
        for environment in self.entities("environment"):
            if any(name.lower() == key for name in environment.pipelines):
                return f"Cannot delete pipeline '{pipeline.name}' as it is present in environment '{environment.name}'."
        return None

    def _group_delete_blocker(self, group: PipelineGroup) -> Optional[str]:
        if self.group_pipelines(group.name):
            return f"Failed to delete group {group.name} because it was not empty."
        return None

    def _repository_delete_blocker(self, repository: PackageRepository) -> Optional[str]:
        packages = [package.name for package in self.entities("package") if package.package_repo.id == repository.repo_id]
        if packages:
            return (
                f"Cannot delete the package repository '{repository.repo_id}' as it is being referenced by "
                f"package(s): [{', '.join(packages)}]."
            )
        return None

    def _pipelines_using(self, material_cls, ref: str) -> list[str]:
        return [
            pipeline.name
            for pipeline in self.entities("pipeline")
            if any(isinstance(material, material_cls) and material.ref == ref for material in pipeline.materials)
        ]

    def _package_delete_blocker(self, package: PackageDefinition) -> Optional[str]:
        pipelines = self._pipelines_using(PackageMaterialConfig, package.id)
        if pipelines:
            return f"Cannot delete the package definition '{package.id}' as it is used by pipeline(s): '[{', '.join(pipelines)}]'"
        return None

    def _scm_delete_blocker(self, scm: Scm) -> Optional[str]:
        pipelines = self._pipelines_using(PluggableScmMaterialConfig, scm.id)
        if pipelines:
            return f"The scm '{scm.name}' is being referenced by pipeline(s): [{', '.join(pipelines)}]."
        return None

    def patch_environment(
        self,
        actor: Actor,
        name: str,
        pipelines_to_add: list[str],
        pipelines_to_remove: list[str],
        agents_to_add: list[str],
        agents_to_remove: list[str],
        variables_to_add: list[EnvironmentVariable],
        variables_to_remove: list[str],
    ) -> EnvironmentConfig:
        environment = self.load("environment", name)
        missing = [p for p in pipelines_to_add + pipelines_to_remove if self.find("pipeline", p) is None]
        if missing:
            raise PolicyError(400, "BAD_REQUEST", f"Pipelines(s) with name(s) [{', '.join(missing)}] not found.")

        def merged(current: list[str], add: list[str], remove: list[str]) -> list[str]:
            removed = {item.lower() for item in remove}
            result = [item for item in current if item.lower() not in removed]
            for item in add:
                if item.lower() not in {existing.lower() for existing in result}:
                    result.append(item)
            return result

        environment.pipelines = merged(environment.pipelines, pipelines_to_add, pipelines_to_remove)
        environment.agents = merged(environment.agents, agents_to_add, agents_to_remove)
        removed_vars = {var_name.lower() for var_name in variables_to_remove}
        added_vars = {variable.name.lower() for variable in variables_to_add}
        environment.environment_variables = [
            variable
            for variable in environment.environment_variables
            if variable.name.lower() not in removed_vars and variable.name.lower() not in added_vars
        ] + list(variables_to_add)

        self.validate("environment", environment)
        self.storage.update_entity("environment", environment.name, environment.model_dump(mode="json"))
        log_config_change(actor, "patch", "environment", environment.name)
        return environment


GO_SERVER_COMPONENT = "go_server"
VERSION_INFO_SETTING = "version_info:go_server"
INVALID_UPDATE_MESSAGE = "Unable to update the latest version, the update server message is invalid."


class VersionInfoService:
    """Tracks the installed server version and the latest one known to the
    update server."""

    def __init__(
        self,
        storage,
        installed_version: str,
        update_server_url: str,
        check_interval_minutes: int,
        update_server_public_key: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.installed_version = installed_version
        self.update_server_url = update_server_url
        self.check_interval_minutes = check_interval_minutes
        self.update_server_key = (
            serialization.load_pem_public_key(update_server_public_key.encode("utf-8"))
            if update_server_public_key
            else None
        )

    @property
    def verifies_signatures(self) -> bool:
        return self.update_server_key is not None

    def verify_signed_message(self, data: dict) -> str:
        """Check a message relayed from the update server and answer its text.

        The update server signs each message with a rotating signing key and
        signs that key with its own private key, whose public half is
        configured here. Both signatures are RSA PKCS#1 v1.5 over SHA-512.
        """
        names = ("message", "message_signature", "signing_public_key", "signing_public_key_signature")
        fields = [data.get(name) for name in names]
        if not all(isinstance(field, str) and field for field in fields):
            raise unprocessable(INVALID_UPDATE_MESSAGE)
        message, message_signature, signing_public_key, signing_public_key_signature = fields
        try:
            self.update_server_key.verify(
                base64.b64decode(signing_public_key_signature),
                signing_public_key.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA512(),
            )
            signing_key = serialization.load_pem_public_key(signing_public_key.encode("utf-8"))
            signing_key.verify(
                base64.b64decode(message_signature),
                message.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA512(),
            )
        except (InvalidSignature, UnsupportedAlgorithm, TypeError, ValueError) as exc:
            logger.warning(
                "version_info.signature_rejected component=%s error=%s", GO_SERVER_COMPONENT, type(exc).__name__
            )
            raise unprocessable(INVALID_UPDATE_MESSAGE) from exc
        return message

    def go_server(self) -> VersionInfo:
        raw = self.storage.get_server_setting(VERSION_INFO_SETTING)
        stored = json.loads(raw) if raw else {}
        return VersionInfo(
            component_name=GO_SERVER_COMPONENT,
            installed_version=self.installed_version,
            latest_version=stored.get("latest_version"),
            update_server_url=self._update_url(),
            latest_version_checked_at=stored.get("latest_version_checked_at"),
        )

    def _update_url(self) -> str:
        separator = "&" if "?" in self.update_server_url else "?"
        return f"{self.update_server_url}{separator}current_version={self.installed_version}"

    def stale_info(self, now=None) -> Optional[VersionInfo]:
        """Answer the version info when it is due for a refresh, else None."""
        info = self.go_server()
        if not info.latest_version_checked_at:
            return info
        checked_at = datetime.fromisoformat(info.latest_version_checked_at.replace("Z", "+00:00"))
        current = now or datetime.now(timezone.utc)
        if current - checked_at >= timedelta(minutes=self.check_interval_minutes):
            return info
        return None

    def update_latest(self, message: str) -> VersionInfo:
        try:
            parsed = json.loads(message or "")
        except (TypeError, ValueError):
            parsed = None
        latest = parsed.get("latest-version") if isinstance(parsed, dict) else None
        if not isinstance(latest, str) or not latest.strip():
            raise unprocessable(INVALID_UPDATE_MESSAGE)
        self.storage.set_server_setting(
            VERSION_INFO_SETTING,
            json.dumps({"latest_version": latest.strip(), "latest_version_checked_at": utc_now()}),
        )
        logger.info("version_info.updated component=%s latest_version=%s", GO_SERVER_COMPONENT, latest.strip())
        return self.go_server()
