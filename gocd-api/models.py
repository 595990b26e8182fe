from collections import OrderedDict
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr


class Role(str, Enum):
    ADMIN = "ADMIN"
    GROUP_ADMIN = "GROUP_ADMIN"
    USER = "USER"


class Actor(BaseModel):
    actor_id: str
    role: Role
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class PluginInfo(BaseModel):
    id: str
    extension: str
    version: Optional[str] = None


class ConfigErrors:
    """Field name to error messages, in the order they were added."""

    def __init__(self) -> None:
        self._errors: "OrderedDict[str, list[str]]" = OrderedDict()

    def add(self, field: str, message: str) -> None:
        messages = self._errors.setdefault(field, [])
        if message not in messages:
            messages.append(message)

    def on(self, field: str) -> list[str]:
        return list(self._errors.get(field, []))

    def first_on(self, field: str) -> Optional[str]:
        messages = self._errors.get(field)
        return messages[0] if messages else None

    def is_empty(self) -> bool:
        return not self._errors

    def clear(self) -> None:
        self._errors.clear()

    def to_dict(self) -> dict:
        return {field: list(messages) for field, messages in self._errors.items()}

    def __bool__(self) -> bool:
        return not self.is_empty()


class ConfigNode(BaseModel):
    _errors: ConfigErrors = PrivateAttr(default_factory=ConfigErrors)

    def errors(self) -> ConfigErrors:
        return self._errors

    def add_error(self, field: str, message: str) -> None:
        self._errors.add(field, message)


class EnvironmentVariable(ConfigNode):
    name: str = ""
    value: Optional[str] = None
    encrypted_value: Optional[str] = None
    secure: bool = False


class ConfigurationProperty(ConfigNode):
    key: str = ""
    value: Optional[str] = None
    encrypted_value: Optional[str] = None

    @property
    def is_secure(self) -> bool:
        return self.encrypted_value is not None


class MaterialType(str, Enum):
    GIT = "git"
    SVN = "svn"
    HG = "hg"
    P4 = "p4"
    TFS = "tfs"
    DEPENDENCY = "dependency"
    PACKAGE = "package"
    PLUGIN = "plugin"


class ScmMaterialFields(ConfigNode):
    name: Optional[str] = None
    auto_update: bool = True
    destination: Optional[str] = None
    filter: Optional[List[str]] = None


class GitMaterialConfig(ScmMaterialFields):
    type: Literal["git"] = "git"
    url: str = ""
    branch: str = "master"
    submodule_folder: Optional[str] = None
    shallow_clone: bool = False


class SvnMaterialConfig(ScmMaterialFields):
    type: Literal["svn"] = "svn"
    url: str = ""
    username: Optional[str] = None
    encrypted_password: Optional[str] = None
    check_externals: bool = False


class HgMaterialConfig(ScmMaterialFields):
    type: Literal["hg"] = "hg"
    url: str = ""


class P4MaterialConfig(ScmMaterialFields):
    type: Literal["p4"] = "p4"
    port: str = ""
    username: Optional[str] = None
    encrypted_password: Optional[str] = None
    use_tickets: bool = False
    view: str = ""


class TfsMaterialConfig(ScmMaterialFields):
    type: Literal["tfs"] = "tfs"
    url: str = ""
    domain: Optional[str] = None
    username: str = ""
    encrypted_password: Optional[str] = None
    project_path: str = ""


class DependencyMaterialConfig(ConfigNode):
    type: Literal["dependency"] = "dependency"
    name: Optional[str] = None
    auto_update: bool = True
    pipeline: str = ""
    stage: str = ""


class PackageMaterialConfig(ConfigNode):
    type: Literal["package"] = "package"
    ref: str = ""


class PluggableScmMaterialConfig(ConfigNode):
    type: Literal["plugin"] = "plugin"
    ref: str = ""
    destination: Optional[str] = None
    filter: Optional[List[str]] = None


MaterialConfig = Annotated[
    Union[
        GitMaterialConfig,
        SvnMaterialConfig,
        HgMaterialConfig,
        P4MaterialConfig,
        TfsMaterialConfig,
        DependencyMaterialConfig,
        PackageMaterialConfig,
        PluggableScmMaterialConfig,
    ],
    Field(discriminator="type"),
]

SCM_MATERIAL_TYPES = {"git", "svn", "hg", "p4", "tfs", "plugin"}


class TaskType(str, Enum):
    EXEC = "exec"
    ANT = "ant"
    NANT = "nant"
    RAKE = "rake"
    FETCH = "fetch"


class TaskFields(ConfigNode):
    run_if: List[str] = Field(default_factory=lambda: ["passed"])


class ExecTask(TaskFields):
    type: Literal["exec"] = "exec"
    command: str = ""
    arguments: List[str] = Field(default_factory=list)
    working_directory: Optional[str] = None


class AntTask(TaskFields):
    type: Literal["ant"] = "ant"
    build_file: Optional[str] = None
    target: Optional[str] = None
    working_directory: Optional[str] = None


class NantTask(TaskFields):
    type: Literal["nant"] = "nant"
    build_file: Optional[str] = None
    target: Optional[str] = None
    working_directory: Optional[str] = None
    nant_path: Optional[str] = None


class RakeTask(TaskFields):
    type: Literal["rake"] = "rake"
    build_file: Optional[str] = None
    target: Optional[str] = None
    working_directory: Optional[str] = None


class FetchTask(TaskFields):
    type: Literal["fetch"] = "fetch"
    pipeline: Optional[str] = None
    stage: str = ""
    job: str = ""
    source: str = ""
    is_source_a_file: bool = False
    destination: Optional[str] = None


TaskConfig = Annotated[
    Union[ExecTask, AntTask, NantTask, RakeTask, FetchTask],
    Field(discriminator="type"),
]


class Tab(ConfigNode):
    name: str = ""
    path: str = ""


class ArtifactConfig(ConfigNode):
    type: str = "build"
    source: str = ""
    destination: Optional[str] = None


class JobConfig(ConfigNode):
    name: str = ""
    run_instance_count: Optional[Union[int, str]] = None
    timeout: Optional[Union[int, str]] = None
    elastic_profile_id: Optional[str] = None
    resources: List[str] = Field(default_factory=list)
    environment_variables: List[EnvironmentVariable] = Field(default_factory=list)
    tasks: List[TaskConfig] = Field(default_factory=list)
    tabs: List[Tab] = Field(default_factory=list)
    artifacts: List[ArtifactConfig] = Field(default_factory=list)


class ApprovalAuthorization(BaseModel):
    users: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


class Approval(ConfigNode):
    type: str = "success"
    authorization: ApprovalAuthorization = Field(default_factory=ApprovalAuthorization)


class StageConfig(ConfigNode):
    name: str = ""
    fetch_materials: bool = True
    clean_working_directory: bool = False
    never_cleanup_artifacts: bool = False
    approval: Approval = Field(default_factory=Approval)
    environment_variables: List[EnvironmentVariable] = Field(default_factory=list)
    jobs: List[JobConfig] = Field(default_factory=list)


class Param(ConfigNode):
    name: str = ""
    value: Optional[str] = None


class TimerConfig(ConfigNode):
    spec: str = ""
    only_on_changes: bool = False


class TrackingTool(ConfigNode):
    regex: str = ""
    url_pattern: str = ""


class LockBehavior(str, Enum):
    LOCK_ON_FAILURE = "lockOnFailure"
    UNLOCK_WHEN_FINISHED = "unlockWhenFinished"
    NONE = "none"


class PipelineConfig(ConfigNode):
    name: str = ""
    group: str = ""
    label_template: str = "${COUNT}"
    lock_behavior: str = LockBehavior.NONE.value
    template: Optional[str] = None
    parameters: List[Param] = Field(default_factory=list)
    environment_variables: List[EnvironmentVariable] = Field(default_factory=list)
    materials: List[MaterialConfig] = Field(default_factory=list)
    stages: List[StageConfig] = Field(default_factory=list)
    timer: Optional[TimerConfig] = None
    tracking_tool: Optional[TrackingTool] = None


class PermissionType(str, Enum):
    USER = "user"
    ROLE = "role"


class PermissionEntry(ConfigNode):
    name: str = ""
    type: str = PermissionType.USER.value
    view: bool = False
    operate: bool = False
    admin: bool = False


class PipelineGroup(ConfigNode):
    name: str = ""
    authorization: List[PermissionEntry] = Field(default_factory=list)


class EnvironmentConfig(ConfigNode):
    name: str = ""
    pipelines: List[str] = Field(default_factory=list)
    agents: List[str] = Field(default_factory=list)
    environment_variables: List[EnvironmentVariable] = Field(default_factory=list)


class AuthConfig(ConfigNode):
    id: str = ""
    plugin_id: str = ""
    allow_only_known_users_to_login: bool = False
    properties: List[ConfigurationProperty] = Field(default_factory=list)


class RuleDirective(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Rule(ConfigNode):
    directive: str = ""
    action: str = "refer"
    type: str = ""
    resource: str = ""


class SecretConfig(ConfigNode):
    id: str = ""
    plugin_id: str = ""
    description: Optional[str] = None
    properties: List[ConfigurationProperty] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)


class PluginMetadata(ConfigNode):
    id: str = ""
    version: Optional[str] = None


class PackageRepository(ConfigNode):
    repo_id: str = ""
    name: str = ""
    plugin_metadata: PluginMetadata = Field(default_factory=PluginMetadata)
    configuration: List[ConfigurationProperty] = Field(default_factory=list)


class PackageRepositoryRef(BaseModel):
    id: str = ""
    name: Optional[str] = None


class PackageDefinition(ConfigNode):
    id: str = ""
    name: str = ""
    auto_update: bool = True
    package_repo: PackageRepositoryRef = Field(default_factory=PackageRepositoryRef)
    configuration: List[ConfigurationProperty] = Field(default_factory=list)


class Scm(ConfigNode):
    id: str = ""
    name: str = ""
    auto_update: bool = True
    plugin_metadata: PluginMetadata = Field(default_factory=PluginMetadata)
    configuration: List[ConfigurationProperty] = Field(default_factory=list)


class BackupConfig(ConfigNode):
    schedule: Optional[str] = None
    post_backup_script: Optional[str] = None
    email_on_success: bool = False
    email_on_failure: bool = False


class BackupStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class BackupStepType(str, Enum):
    CREATING_DIR = "CREATING_DIR"
    BACKUP_CONFIG = "BACKUP_CONFIG"
    BACKUP_DATABASE = "BACKUP_DATABASE"
    POST_BACKUP_SCRIPT = "POST_BACKUP_SCRIPT"


class BackupStepState(str, Enum):
    NOT_RUN = "NOT_RUN"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"


class BackupStep(BaseModel):
    type: BackupStepType
    state: BackupStepState = BackupStepState.NOT_RUN
    message: Optional[str] = None


class ServerBackup(BaseModel):
    id: str
    status: BackupStatus = BackupStatus.IN_PROGRESS
    message: str = ""
    time: str
    username: str
    path: Optional[str] = None
    progress_status: Optional[BackupStepType] = None
    steps: List[BackupStep] = Field(default_factory=list)


class MaintenanceModeInfo(BaseModel):
    is_maintenance_mode: bool = False
    updated_by: Optional[str] = None
    updated_on: Optional[str] = None


class VersionInfo(BaseModel):
    component_name: str
    installed_version: str
    latest_version: Optional[str] = None
    update_server_url: str
    latest_version_checked_at: Optional[str] = None


class NotificationEvent(str, Enum):
    ALL = "All"
    PASSES = "Passes"
    FAILS = "Fails"
    BREAKS = "Breaks"
    FIXED = "Fixed"
    CANCELLED = "Cancelled"


ANY_PIPELINE = "[Any Pipeline]"
ANY_STAGE = "[Any Stage]"


class NotificationFilter(ConfigNode):
    id: Optional[int] = None
    pipeline: str = ANY_PIPELINE
    stage: str = ANY_STAGE
    event: str = NotificationEvent.ALL.value
    match_commits: bool = False


class AgentConfigState(str, Enum):
    PENDING = "Pending"
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class AgentRuntimeState(str, Enum):
    IDLE = "Idle"
    BUILDING = "Building"
    LOST_CONTACT = "LostContact"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


class AgentBuildState(str, Enum):
    IDLE = "Idle"
    BUILDING = "Building"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class BuildDetails(BaseModel):
    pipeline_name: Optional[str] = None
    stage_name: Optional[str] = None
    job_name: Optional[str] = None


class Agent(BaseModel):
    uuid: str
    hostname: str = ""
    ip_address: str = ""
    sandbox: str = ""
    operating_system: str = ""
    free_space: Optional[int] = None
    agent_config_state: AgentConfigState = AgentConfigState.PENDING
    agent_state: AgentRuntimeState = AgentRuntimeState.UNKNOWN
    build_state: AgentBuildState = AgentBuildState.UNKNOWN
    resources: List[str] = Field(default_factory=list)
    environments: List[str] = Field(default_factory=list)
    build_details: Optional[BuildDetails] = None


class TriState(str, Enum):
    UNCHECKED = "unchecked"
    INDETERMINATE = "indeterminate"
    CHECKED = "checked"
