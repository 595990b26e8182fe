"""
Validation of configuration entities.

Each validator attaches messages to the ``ConfigErrors`` of the node that is
at fault (a material, a job, a property...) rather than to the root, so the
representers can render the error map next to the offending field.
``validate_tree`` validates a root entity and answers whether the whole tree
came out clean.
"""

import re
from typing import Iterable, Optional

from apscheduler.triggers.cron import CronTrigger

from models import (
    ANY_PIPELINE,
    ANY_STAGE,
    SCM_MATERIAL_TYPES,
    AuthConfig,
    BackupConfig,
    ConfigNode,
    ConfigurationProperty,
    DependencyMaterialConfig,
    EnvironmentConfig,
    EnvironmentVariable,
    ExecTask,
    FetchTask,
    JobConfig,
    LockBehavior,
    NotificationEvent,
    NotificationFilter,
    P4MaterialConfig,
    PackageDefinition,
    PackageMaterialConfig,
    PackageRepository,
    PermissionType,
    PipelineConfig,
    PipelineGroup,
    PluggableScmMaterialConfig,
    PluginInfo,
    RuleDirective,
    Scm,
    SecretConfig,
    StageConfig,
    TfsMaterialConfig,
)


MAX_NAME_LENGTH = 255
NAME_PATTERN = re.compile(r"[a-zA-Z0-9_\-]{1}[a-zA-Z0-9_\-.]*")
JOB_NAME_PATTERN = re.compile(r"[a-zA-Z0-9_\-.]+")
RESOURCE_NAME_PATTERN = re.compile(r"[-\w\s|.]*")
JOB_NAME_MARKERS = ("runOnAll", "runInstance")

LABEL_TEMPLATE_FORMAT_MESSAGE = (
    "Label should be composed of alphanumeric text, it can contain the build number as ${COUNT}, "
    "can contain a material revision as ${<material-name>} of ${<material-name>[:<number>]}, "
    "or use params as #{<param-name>}."
)
LABEL_TEMPLATE_ERROR_MESSAGE = "Invalid label '{}'. " + LABEL_TEMPLATE_FORMAT_MESSAGE
BLANK_LABEL_TEMPLATE_ERROR_MESSAGE = "Label cannot be blank. " + LABEL_TEMPLATE_FORMAT_MESSAGE
LABEL_TEMPLATE_TOKEN_PATTERN = re.compile(r"(?P<group_name>[^\[]*)(\[:(?P<truncation_length>\d+)\])?")
_LABEL_TOKENS = re.compile(r"\$\{(.*?)\}")
LABEL_COUNT = "COUNT"
LABEL_ENV_PREFIX = "env:"

VALID_RUN_IF = ("passed", "failed", "any")
VALID_APPROVAL_TYPES = ("success", "manual")
VALID_ARTIFACT_TYPES = ("build", "test")
VALID_RULE_ACTIONS = ("refer",)
VALID_RULE_TYPES = ("pipeline_group", "environment", "*")

MULTIPLE_MATERIALS_MESSAGE = (
    "You have defined multiple materials called '{}'. Material names are case-insensitive and must be unique. "
    "Note that for dependency materials the default materialName is the name of the upstream pipeline. "
    "You can override this by setting the materialName explicitly for the upstream pipeline."
)


class NameTypeValidator:
    @staticmethod
    def is_valid(name: Optional[str]) -> bool:
        if not name or len(name) > MAX_NAME_LENGTH:
            return False
        return NAME_PATTERN.fullmatch(name) is not None

    @staticmethod
    def error_message(kind: str, name: Optional[str]) -> str:
        return (
            f"Invalid {kind} name '{name}'. This must be alphanumeric and can contain underscores, hyphens and "
            "periods (however, it cannot start with a period). The maximum allowed length is 255 characters."
        )


def build_cron_trigger(spec: str, timezone=None) -> CronTrigger:
    """Build an apscheduler trigger from a Quartz style cron expression.

    Quartz expressions have seconds first and an optional trailing year, use
    ``?`` for "no specific value" and number days of week from 1 (Sunday).
    Raises ``ValueError`` for anything apscheduler does not accept.
    """
    fields = (spec or "").split()
    if len(fields) not in (6, 7):
        raise ValueError(f"expected 6 or 7 fields but found {len(fields)}")
    fields = ["*" if field == "?" else field for field in fields]
    second, minute, hour, day, month, day_of_week = fields[:6]
    year = fields[6] if len(fields) == 7 else None
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_quartz_day_of_week(day_of_week),
        year=year,
        timezone=timezone,
    )


_QUARTZ_DAYS = {"1": "sun", "2": "mon", "3": "tue", "4": "wed", "5": "thu", "6": "fri", "7": "sat"}


def _quartz_day_of_week(value: str) -> str:
    def convert(part: str) -> str:
        base, _, step = part.partition("/")
        base = re.sub(r"\d+", lambda match: _QUARTZ_DAYS.get(match.group(0), match.group(0)), base)
        return f"{base}/{step}" if step else base

    return ",".join(convert(part) for part in value.lower().split(","))


class ValidationContext:
    """Read-only view over the current configuration for cross-entity checks.

    Services build one per request from the store, with the entity being
    saved already swapped in, so that a validator sees the configuration as
    it would look after the save.
    """

    def __init__(
        self,
        pipelines: Iterable[PipelineConfig] = (),
        pipeline_groups: Iterable[PipelineGroup] = (),
        environments: Iterable[EnvironmentConfig] = (),
        package_repositories: Iterable[PackageRepository] = (),
        packages: Iterable[PackageDefinition] = (),
        scms: Iterable[Scm] = (),
        agent_uuids: Iterable[str] = (),
        plugins: Iterable[PluginInfo] = (),
    ) -> None:
        self.pipelines = list(pipelines)
        self.pipeline_groups = list(pipeline_groups)
        self.environments = list(environments)
        self.package_repositories = list(package_repositories)
        self.packages = list(packages)
        self.scms = list(scms)
        self.agent_uuids = {uuid for uuid in agent_uuids}
        self.plugins = list(plugins)

    def find_pipeline(self, name: Optional[str]) -> Optional[PipelineConfig]:
        key = (name or "").lower()
        return next((p for p in self.pipelines if p.name.lower() == key), None)

    def find_package(self, package_id: Optional[str]) -> Optional[PackageDefinition]:
        return next((p for p in self.packages if p.id == package_id), None)

    def find_package_repository(self, repo_id: Optional[str]) -> Optional[PackageRepository]:
        return next((r for r in self.package_repositories if r.repo_id == repo_id), None)

    def find_scm(self, scm_id: Optional[str]) -> Optional[Scm]:
        return next((s for s in self.scms if s.id == scm_id), None)

    def has_agent(self, uuid: str) -> bool:
        return uuid in self.agent_uuids

    def is_plugin_known(self, plugin_id: str, extension: str) -> bool:
        # An empty registry means plugin ids are not checked.
        if not self.plugins:
            return True
        return any(p.id == plugin_id and p.extension == extension for p in self.plugins)


def walk_nodes(node) -> Iterable[ConfigNode]:
    if isinstance(node, ConfigNode):
        yield node
        for name in type(node).model_fields:
            yield from walk_nodes(getattr(node, name))
    elif isinstance(node, (list, tuple)):
        for item in node:
            yield from walk_nodes(item)


def has_errors(entity: ConfigNode) -> bool:
    return any(not node.errors().is_empty() for node in walk_nodes(entity))


def clear_errors(entity: ConfigNode) -> None:
    for node in walk_nodes(entity):
        node.errors().clear()


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _check_name(node: ConfigNode, field: str, kind: str, value: Optional[str]) -> None:
    if not NameTypeValidator.is_valid(value):
        node.add_error(field, NameTypeValidator.error_message(kind, value))


def validate_environment_variables(variables: list[EnvironmentVariable], scope: str, owner: str) -> None:
    seen: dict[str, EnvironmentVariable] = {}
    for variable in variables:
        if _is_blank(variable.name):
            variable.add_error("name", f"Environment Variable cannot have an empty name for {scope} '{owner}'.")
            continue
        key = variable.name.lower()
        if key in seen:
            message = f"Environment Variable name '{variable.name}' is not unique for {scope} '{owner}'."
            variable.add_error("name", message)
            seen[key].add_error("name", message)
        else:
            seen[key] = variable


def validate_properties(properties: list[ConfigurationProperty], kind: str, owner: str) -> None:
    seen: dict[str, ConfigurationProperty] = {}
    for prop in properties:
        if _is_blank(prop.key):
            prop.add_error("key", "Key cannot be blank.")
            continue
        key = prop.key.lower()
        if key in seen:
            message = f"Duplicate key '{prop.key}' found for {kind} '{owner}'"
            prop.add_error("key", message)
            seen[key].add_error("key", message)
        else:
            seen[key] = prop


def _check_plugin(node: ConfigNode, field: str, plugin_id: Optional[str], extension: str, context: ValidationContext) -> None:
    if _is_blank(plugin_id):
        node.add_error(field, "Plugin id cannot be blank.")
    elif not context.is_plugin_known(plugin_id, extension):
        node.add_error(field, f"Plugin with id `{plugin_id}` is not found.")


def is_valid_destination(destination: str) -> bool:
    """A destination must stay inside the agent's working folder."""
    normalized = destination.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[a-zA-Z]:", normalized):
        return False
    depth = 0
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            depth -= 1
            if depth < 0:
                return False
        else:
            depth += 1
    return True


def material_name(material) -> Optional[str]:
    if isinstance(material, DependencyMaterialConfig):
        return material.name or material.pipeline or None
    return getattr(material, "name", None) or None


def validate_material(material, pipeline: PipelineConfig, context: ValidationContext) -> None:
    name = getattr(material, "name", None)
    if name is not None and (
        len(name) > MAX_NAME_LENGTH or NAME_PATTERN.fullmatch(name) is None
    ):
        material.add_error(
            "name",
            f"Invalid material name '{name}'. This must be alphanumeric and can contain underscores and periods "
            "(however, it cannot start with a period). The maximum allowed length is 255 characters.",
        )

    destination = getattr(material, "destination", None)
    if destination and not is_valid_destination(destination):
        material.add_error(
            "destination",
            f"Dest folder '{destination}' is not valid. It must be a sub-directory of the working folder.",
        )

    if material.type in ("git", "svn", "hg", "tfs") and _is_blank(material.url):
        material.add_error("url", "URL cannot be blank")

    if isinstance(material, P4MaterialConfig):
        if _is_blank(material.port):
            material.add_error("port", "P4 port cannot be empty.")
        if _is_blank(material.view):
            material.add_error("view", "P4 view cannot be empty.")

    if isinstance(material, TfsMaterialConfig):
        if _is_blank(material.username):
            material.add_error("username", "Username cannot be blank")
        if _is_blank(material.project_path):
            material.add_error("project_path", "Project Path cannot be blank")

    if isinstance(material, DependencyMaterialConfig):
        _validate_dependency_material(material, pipeline, context)

    if isinstance(material, PackageMaterialConfig):
        if _is_blank(material.ref) or context.find_package(material.ref) is None:
            material.add_error("ref", "Please select a repository and package")

    if isinstance(material, PluggableScmMaterialConfig):
        if _is_blank(material.ref):
            material.add_error("ref", "Please select a SCM")
        elif context.find_scm(material.ref) is None:
            material.add_error("ref", f"Could not find SCM for given scm-id: [{material.ref}].")


def _validate_dependency_material(material: DependencyMaterialConfig, pipeline: PipelineConfig, context: ValidationContext) -> None:
    if _is_blank(material.pipeline):
        material.add_error("pipeline", "Pipeline name cannot be blank")
        return
    if material.pipeline.lower() == (pipeline.name or "").lower():
        material.add_error("pipeline", f"Pipeline '{pipeline.name}' cannot depend on itself.")
        return
    upstream = context.find_pipeline(material.pipeline)
    if upstream is None:
        material.add_error(
            "pipeline",
            f"Pipeline with name '{material.pipeline}' does not exist, it is defined as a dependency for "
            f"pipeline '{pipeline.name}'",
        )
        return
    if _is_blank(material.stage):
        material.add_error("stage", "Stage name cannot be blank")
        return
    if not any(stage.name.lower() == material.stage.lower() for stage in upstream.stages):
        material.add_error(
            "stage",
            f"Stage with name '{material.stage}' does not exist on pipeline '{material.pipeline}', it is being "
            f"referred to from pipeline '{pipeline.name}'",
        )


def validate_materials(pipeline: PipelineConfig, context: ValidationContext) -> None:
    if not pipeline.materials:
        pipeline.add_error("materials", "A pipeline must have at least one material")
        return

    names: dict[str, object] = {}
    for material in pipeline.materials:
        validate_material(material, pipeline, context)
        name = material_name(material)
        if not name:
            continue
        key = name.lower()
        if key in names:
            message = MULTIPLE_MATERIALS_MESSAGE.format(name)
            material.add_error("name", message)
            names[key].add_error("name", message)
        else:
            names[key] = material

    scm_materials = [m for m in pipeline.materials if m.type in SCM_MATERIAL_TYPES]
    if len(scm_materials) > 1:
        destinations: dict[str, object] = {}
        for material in scm_materials:
            if _is_blank(material.destination):
                material.add_error(
                    "destination",
                    "Destination directory is required when specifying multiple scm materials",
                )
                continue
            key = material.destination.strip("/\\")
            if key in destinations:
                message = "The destination directory must be unique across materials."
                material.add_error("destination", message)
                destinations[key].add_error("destination", message)
            else:
                destinations[key] = material


def validate_label_template(pipeline: PipelineConfig) -> None:
    template = pipeline.label_template
    if _is_blank(template):
        pipeline.add_error("label_template", BLANK_LABEL_TEMPLATE_ERROR_MESSAGE)
        return
    tokens = _LABEL_TOKENS.findall(template)
    if not tokens:
        pipeline.add_error("label_template", LABEL_TEMPLATE_ERROR_MESSAGE.format(template))
        return
    known_materials = {name.lower() for name in (material_name(m) for m in pipeline.materials) if name}
    for token in tokens:
        if not _label_token_is_valid(pipeline, token, known_materials):
            break


def _label_token_is_valid(pipeline: PipelineConfig, token: str, known_materials: set) -> bool:
    if _is_blank(token):
        pipeline.add_error("label_template", "Label template variable cannot be blank.")
        return False
    if token.lower() == LABEL_COUNT.lower():
        return True
    if token.lower() == LABEL_ENV_PREFIX:
        pipeline.add_error("label_template", "Missing environment variable name.")
        return False
    if token.lower().startswith(LABEL_ENV_PREFIX):
        return True
    match = LABEL_TEMPLATE_TOKEN_PATTERN.fullmatch(token)
    if match is None:
        pipeline.add_error("label_template", LABEL_TEMPLATE_ERROR_MESSAGE.format(pipeline.label_template))
        return False
    truncation = match.group("truncation_length")
    if truncation and truncation.startswith("0"):
        pipeline.add_error(
            "label_template",
            f"Length of zero not allowed on label {pipeline.label_template} defined on pipeline {pipeline.name}.",
        )
        return False
    material = match.group("group_name")
    if material.lower() not in known_materials:
        pipeline.add_error(
            "label_template",
            f"You have defined a label template in pipeline '{pipeline.name}' that refers to a material called "
            f"'{material}', but no material with this name is defined.",
        )
        return False
    return True


def validate_task(task, job: JobConfig) -> None:
    for run_if in task.run_if:
        if run_if not in VALID_RUN_IF:
            task.add_error("run_if", f"Invalid run_if value '{run_if}'. Valid values are passed, failed and any.")
    if isinstance(task, ExecTask) and _is_blank(task.command):
        task.add_error("command", "Command cannot be empty")
    if isinstance(task, FetchTask):
        if _is_blank(task.stage):
            task.add_error("stage", "Stage is a required field.")
        if _is_blank(task.job):
            task.add_error("job", "Job is a required field.")
        if _is_blank(task.source):
            task.add_error("source", "Should provide either srcdir or srcfile")


def _run_instance_count_error(value) -> Optional[str]:
    if value is None or (isinstance(value, str) and value.strip().lower() == "all"):
        return None
    try:
        count = int(str(value).strip())
    except ValueError:
        return (
            "'Run Instance Count' should be a valid positive integer as it represents number of instances Go "
            "needs to spawn during runtime."
        )
    if count < 0:
        return (
            "'Run Instance Count' cannot be a negative number as it represents number of instances Go needs to "
            "spawn during runtime."
        )
    return None


def validate_job(job: JobConfig, stage: StageConfig, pipeline: PipelineConfig) -> None:
    if _is_blank(job.name):
        job.add_error("name", "Name is a required field")
    else:
        if len(job.name) > MAX_NAME_LENGTH or JOB_NAME_PATTERN.fullmatch(job.name) is None:
            job.add_error(
                "name",
                f"Invalid job name '{job.name}'. This must be alphanumeric and may contain underscores and "
                "periods. The maximum allowed length is 255 characters.",
            )
        for marker in JOB_NAME_MARKERS:
            if f"-{marker}-" in job.name:
                job.add_error(
                    "name",
                    f"A job cannot have '{marker}' in it's name: {job.name} because it is a reserved keyword",
                )

    run_instance_error = _run_instance_count_error(job.run_instance_count)
    if run_instance_error:
        job.add_error("run_instance_count", run_instance_error)

    if job.timeout is not None and str(job.timeout).strip().lower() != "never":
        try:
            if float(str(job.timeout)) < 0:
                job.add_error("timeout", "Timeout cannot be a negative number as it represents number of minutes")
        except ValueError:
            job.add_error("timeout", "Timeout should be a valid number as it represents number of minutes")

    if job.resources and not _is_blank(job.elastic_profile_id):
        job.add_error("resources", "Job cannot have both `resource` and `elastic_profile_id`")
        job.add_error("elastic_profile_id", "Job cannot have both `resource` and `elastic_profile_id`")
    if job.elastic_profile_id is not None and _is_blank(job.elastic_profile_id):
        job.add_error("elastic_profile_id", "Must not be a blank string")
    for resource in job.resources:
        if not resource:
            job.add_error(
                "resources",
                f'Empty resource name in job "{job.name}" of stage "{stage.name}" of pipeline "{pipeline.name}".',
            )
        elif RESOURCE_NAME_PATTERN.fullmatch(resource) is None:
            job.add_error("resources", f"Resource name '{resource}' is not valid. Valid names much match '^[-\\w\\s|.]*$'")

    if not job.tasks:
        job.add_error("tasks", f"Job '{job.name}' must have at least one task.")
    for task in job.tasks:
        validate_task(task, job)

    tab_names: set[str] = set()
    for tab in job.tabs:
        if _is_blank(tab.name):
            tab.add_error("name", "Tab name cannot be blank.")
        elif tab.name.lower() in tab_names:
            tab.add_error("name", f"Tab name '{tab.name}' is not unique.")
        else:
            tab_names.add(tab.name.lower())
        if _is_blank(tab.path):
            tab.add_error("path", "Tab path cannot be blank.")

    for artifact in job.artifacts:
        if artifact.type not in VALID_ARTIFACT_TYPES:
            artifact.add_error("type", f"Invalid artifact type '{artifact.type}'. It has to be one of 'build' or 'test'.")
        if _is_blank(artifact.source):
            artifact.add_error("source", f"Job '{job.name}' has an artifact with an empty source")

    validate_environment_variables(job.environment_variables, "job", job.name)


def validate_stage(stage: StageConfig, pipeline: PipelineConfig) -> None:
    _check_name(stage, "name", "stage", stage.name)
    if stage.approval.type not in VALID_APPROVAL_TYPES:
        stage.approval.add_error(
            "type",
            f"You have defined approval type as '{stage.approval.type}'. "
            "Approval can only be of the type 'manual' or 'success'.",
        )
    if not stage.jobs:
        stage.add_error("jobs", "A stage must have at least one job.")
    names: dict[str, JobConfig] = {}
    for job in stage.jobs:
        validate_job(job, stage, pipeline)
        if _is_blank(job.name):
            continue
        key = job.name.lower()
        if key in names:
            message = (
                f"You have defined multiple jobs called '{job.name}'. Job names are case-insensitive and must be "
                "unique."
            )
            job.add_error("name", message)
            names[key].add_error("name", message)
        else:
            names[key] = job
    validate_environment_variables(stage.environment_variables, "stage", stage.name)


def validate_pipeline(pipeline: PipelineConfig, context: ValidationContext) -> None:
    validate_label_template(pipeline)
    _check_name(pipeline, "name", "pipeline", pipeline.name)

    if _is_blank(pipeline.group):
        pipeline.add_error("group", "Pipeline group must be specified for creating a pipeline.")
    elif not NameTypeValidator.is_valid(pipeline.group):
        pipeline.add_error("group", NameTypeValidator.error_message("group", pipeline.group))

    valid_locks = [value.value for value in LockBehavior]
    if pipeline.lock_behavior is not None and pipeline.lock_behavior not in valid_locks:
        pipeline.add_error(
            "lock_behavior",
            f"Lock behavior has an invalid value ({pipeline.lock_behavior}). "
            f"Valid values are: [{', '.join(valid_locks)}]",
        )

    if pipeline.template:
        if not NameTypeValidator.is_valid(pipeline.template):
            pipeline.add_error("template", NameTypeValidator.error_message("template", pipeline.template))
        if pipeline.stages:
            pipeline.add_error(
                "stages",
                f"Cannot add stages to pipeline '{pipeline.name}' which already references template "
                f"'{pipeline.template}'",
            )
            pipeline.add_error(
                "template",
                f"Cannot set template '{pipeline.template}' on pipeline '{pipeline.name}' because it already has "
                "stages defined",
            )
    elif not pipeline.stages:
        pipeline.add_error(
            "pipeline",
            f"Pipeline '{pipeline.name}' does not have any stages configured. "
            "A pipeline must have at least one stage.",
        )

    stage_names: dict[str, StageConfig] = {}
    for stage in pipeline.stages:
        validate_stage(stage, pipeline)
        if _is_blank(stage.name):
            continue
        key = stage.name.lower()
        if key in stage_names:
            message = (
                f"You have defined multiple stages called '{stage.name}'. Stage names are case-insensitive and "
                "must be unique."
            )
            stage.add_error("name", message)
            stage_names[key].add_error("name", message)
        else:
            stage_names[key] = stage

    param_names: set[str] = set()
    for param in pipeline.parameters:
        if not NameTypeValidator.is_valid(param.name):
            param.add_error("name", NameTypeValidator.error_message("parameter", param.name))
        elif param.name.lower() in param_names:
            param.add_error("name", f"Param name '{param.name}' is not unique for pipeline '{pipeline.name}'.")
        else:
            param_names.add(param.name.lower())

    if pipeline.timer is not None:
        try:
            build_cron_trigger(pipeline.timer.spec)
        except ValueError as exc:
            pipeline.timer.add_error("spec", f"Invalid cron syntax: {exc}")

    if pipeline.tracking_tool is not None:
        if _is_blank(pipeline.tracking_tool.regex):
            pipeline.tracking_tool.add_error("regex", "Regex should be populated")
        if "${ID}" not in (pipeline.tracking_tool.url_pattern or ""):
            pipeline.tracking_tool.add_error(
                "url_pattern",
                "Link must be a URL containing '${ID}'. Go will replace the string '${ID}' with the first "
                "matched group from the regex at run-time.",
            )

    validate_materials(pipeline, context)
    validate_environment_variables(pipeline.environment_variables, "pipeline", pipeline.name)


def validate_pipeline_group(group: PipelineGroup, context: ValidationContext) -> None:
    _check_name(group, "name", "group", group.name)
    seen: set[tuple[str, str]] = set()
    valid_types = [value.value for value in PermissionType]
    for entry in group.authorization:
        if _is_blank(entry.name):
            entry.add_error("name", "Name must be present")
        if entry.type not in valid_types:
            entry.add_error("type", "Type must be one of 'user' or 'role'.")
        if not (entry.view or entry.operate or entry.admin):
            entry.add_error("permissions", f"At least one of view, operate or admin must be set for '{entry.name}'.")
        key = ((entry.name or "").lower(), entry.type)
        if entry.name and key in seen:
            entry.add_error("name", "Name is a duplicate")
        seen.add(key)


def validate_environment(environment: EnvironmentConfig, context: ValidationContext) -> None:
    _check_name(environment, "name", "environment", environment.name)
    for pipeline_name in environment.pipelines:
        if context.find_pipeline(pipeline_name) is None:
            environment.add_error(
                "pipelines",
                f"Environment '{environment.name}' refers to an unknown pipeline '{pipeline_name}'.",
            )
            continue
        for other in context.environments:
            if other.name.lower() == environment.name.lower():
                continue
            if any(p.lower() == pipeline_name.lower() for p in other.pipelines):
                environment.add_error(
                    "pipelines",
                    f"Pipeline '{pipeline_name}' is already associated with environment '{other.name}'.",
                )
    for uuid in environment.agents:
        if not context.has_agent(uuid):
            environment.add_error("agents", f"Environment '{environment.name}' has an invalid agent uuid '{uuid}'")
    validate_environment_variables(environment.environment_variables, "environment", environment.name)


def validate_auth_config(auth_config: AuthConfig, context: ValidationContext) -> None:
    _check_name(auth_config, "id", "id", auth_config.id)
    _check_plugin(auth_config, "plugin_id", auth_config.plugin_id, "authorization", context)
    validate_properties(auth_config.properties, "Auth config", auth_config.id)


def validate_secret_config(secret_config: SecretConfig, context: ValidationContext) -> None:
    _check_name(secret_config, "id", "id", secret_config.id)
    _check_plugin(secret_config, "plugin_id", secret_config.plugin_id, "secrets", context)
    validate_properties(secret_config.properties, "Secret config", secret_config.id)
    directives = [value.value for value in RuleDirective]
    for rule in secret_config.rules:
        if rule.directive not in directives:
            rule.add_error("directive", "Invalid directive, must be either 'allow' or 'deny'.")
        if rule.action not in VALID_RULE_ACTIONS:
            rule.add_error("action", f"Invalid action, must be one of [{', '.join(VALID_RULE_ACTIONS)}].")
        if rule.type not in VALID_RULE_TYPES:
            rule.add_error("type", f"Invalid type, must be one of [{', '.join(VALID_RULE_TYPES)}].")
        if _is_blank(rule.resource):
            rule.add_error("resource", "Resource cannot be blank.")


def validate_package_repository(repository: PackageRepository, context: ValidationContext) -> None:
    _check_name(repository, "repo_id", "id", repository.repo_id)
    if _is_blank(repository.name):
        repository.add_error("name", "Please provide name")
    elif not NameTypeValidator.is_valid(repository.name):
        repository.add_error("name", NameTypeValidator.error_message("PackageRepository", repository.name))
    else:
        for other in context.package_repositories:
            if other.repo_id != repository.repo_id and other.name.lower() == repository.name.lower():
                repository.add_error(
                    "name",
                    f"You have defined multiple repositories called '{repository.name}'. Repository names are "
                    "case-insensitive and must be unique.",
                )
                break
    _check_plugin(repository.plugin_metadata, "id", repository.plugin_metadata.id, "package-repository", context)
    validate_properties(repository.configuration, "Repository", repository.name)


def validate_package(package: PackageDefinition, context: ValidationContext) -> None:
    _check_name(package, "id", "id", package.id)
    if _is_blank(package.name):
        package.add_error("name", "Package name is mandatory")
    elif not NameTypeValidator.is_valid(package.name):
        package.add_error("name", NameTypeValidator.error_message("Package", package.name))
    repository = context.find_package_repository(package.package_repo.id)
    if repository is None:
        package.add_error("package_repo", f"Could not find package repository with id '{package.package_repo.id}'.")
    elif package.name:
        for other in context.packages:
            if other.id == package.id or other.package_repo.id != repository.repo_id:
                continue
            if other.name.lower() == package.name.lower():
                package.add_error(
                    "name",
                    f"You have defined multiple packages called '{package.name}'. Package names are "
                    "case-insensitive and must be unique within a repository.",
                )
                break
    validate_properties(package.configuration, "Package", package.name)


def validate_scm(scm: Scm, context: ValidationContext) -> None:
    _check_name(scm, "id", "id", scm.id)
    if _is_blank(scm.name):
        scm.add_error("name", "Please provide name")
    elif not NameTypeValidator.is_valid(scm.name):
        scm.add_error("name", NameTypeValidator.error_message("SCM", scm.name))
    else:
        for other in context.scms:
            if other.id != scm.id and other.name.lower() == scm.name.lower():
                scm.add_error(
                    "name",
                    f"You have defined multiple SCMs called '{scm.name}'. SCM names are case-insensitive and must "
                    "be unique.",
                )
                break
    _check_plugin(scm.plugin_metadata, "id", scm.plugin_metadata.id, "scm", context)
    validate_properties(scm.configuration, "SCM", scm.name)


def validate_backup_config(backup_config: BackupConfig, context: ValidationContext) -> None:
    if backup_config.schedule is None or not backup_config.schedule.strip():
        return
    try:
        build_cron_trigger(backup_config.schedule)
    except ValueError as exc:
        backup_config.add_error("schedule", f"Invalid cron syntax for backup configuration: {exc}")


def validate_notification_filter(notification_filter: NotificationFilter, context: ValidationContext) -> None:
    events = [value.value for value in NotificationEvent]
    if notification_filter.event not in events:
        notification_filter.add_error(
            "event",
            f"Invalid event '{notification_filter.event}'. It has to be one of [{', '.join(events)}].",
        )
    if notification_filter.pipeline == ANY_PIPELINE:
        if notification_filter.stage != ANY_STAGE:
            notification_filter.add_error("stage", f"Stage must be '{ANY_STAGE}' when pipeline is '{ANY_PIPELINE}'.")
        return
    pipeline = context.find_pipeline(notification_filter.pipeline)
    if pipeline is None:
        notification_filter.add_error("pipeline", f"Pipeline with name '{notification_filter.pipeline}' was not found!")
        return
    if notification_filter.stage == ANY_STAGE:
        return
    if not any(stage.name.lower() == notification_filter.stage.lower() for stage in pipeline.stages):
        notification_filter.add_error(
            "stage",
            f"Stage with name '{notification_filter.stage}' was not found in pipeline '{pipeline.name}'!",
        )


_VALIDATORS = {
    PipelineConfig: validate_pipeline,
    PipelineGroup: validate_pipeline_group,
    EnvironmentConfig: validate_environment,
    AuthConfig: validate_auth_config,
    SecretConfig: validate_secret_config,
    PackageRepository: validate_package_repository,
    PackageDefinition: validate_package,
    Scm: validate_scm,
    BackupConfig: validate_backup_config,
    NotificationFilter: validate_notification_filter,
}


def validate_tree(entity: ConfigNode, context: Optional[ValidationContext] = None) -> bool:
    validator = _VALIDATORS.get(type(entity))
    if validator is None:
        raise TypeError(f"No validator registered for {type(entity).__name__}")
    clear_errors(entity)
    validator(entity, context or ValidationContext())
    return not has_errors(entity)
