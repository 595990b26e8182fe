"""
Pipeline config payloads, including the nested stages, jobs and tasks.

Two versions are served. v1 exposes locking as a boolean
``enable_pipeline_locking``; v2 replaces it with ``lock_behavior``.
"""

from typing import Any, Optional

from cipher import GoCipher
from material_representers import materials_from_json, materials_to_json
from models import (
    AntTask,
    Approval,
    ApprovalAuthorization,
    ArtifactConfig,
    ExecTask,
    FetchTask,
    JobConfig,
    LockBehavior,
    NantTask,
    Param,
    PipelineConfig,
    RakeTask,
    StageConfig,
    Tab,
    TaskType,
    TimerConfig,
    TrackingTool,
)
from representers import (
    UnprocessableEntity,
    as_list,
    build_model,
    environment_variables_from_json,
    environment_variables_to_json,
    links,
    require_object,
    with_errors,
)


TASK_CLASSES = {
    TaskType.EXEC.value: ExecTask,
    TaskType.ANT.value: AntTask,
    TaskType.NANT.value: NantTask,
    TaskType.RAKE.value: RakeTask,
    TaskType.FETCH.value: FetchTask,
}


def task_to_json(task) -> dict:
    attributes = task.model_dump(exclude={"type"})
    return with_errors({"type": task.type, "attributes": attributes}, task)


def task_from_json(payload: Any):
    data = require_object(payload, "task")
    task_type = data.get("type")
    task_cls = TASK_CLASSES.get(task_type) if isinstance(task_type, str) else None
    if task_cls is None:
        raise UnprocessableEntity(f"Invalid task type '{task_type}'. It has to be one of '{', '.join(TASK_CLASSES)}'.")
    attributes = require_object(data.get("attributes") or {}, "task attributes")
    fields = {key: value for key, value in attributes.items() if key in task_cls.model_fields and key != "type"}
    if "run_if" in fields:
        fields["run_if"] = as_list(fields["run_if"]) or ["passed"]
    if isinstance(fields.get("arguments"), str):
        fields["arguments"] = fields["arguments"].split()
    return build_model(task_cls, **{key: value for key, value in fields.items() if value is not None})


def job_to_json(job: JobConfig) -> dict:
    payload = {
        "name": job.name,
        "run_instance_count": job.run_instance_count,
        "timeout": job.timeout,
        "elastic_profile_id": job.elastic_profile_id,
        "environment_variables": environment_variables_to_json(job.environment_variables),
        "resources": list(job.resources),
        "tasks": [task_to_json(task) for task in job.tasks],
        "tabs": [with_errors({"name": tab.name, "path": tab.path}, tab) for tab in job.tabs],
        "artifacts": [
            with_errors({"type": artifact.type, "source": artifact.source, "destination": artifact.destination}, artifact)
            for artifact in job.artifacts
        ],
    }
    return with_errors(payload, job)


def job_from_json(payload: Any, cipher: GoCipher) -> JobConfig:
    data = require_object(payload, "job")
    tabs = [
        build_model(Tab, name=item.get("name") or "", path=item.get("path") or "")
        for item in (require_object(raw, "tab") for raw in as_list(data.get("tabs")))
    ]
    artifacts = [
        build_model(
            ArtifactConfig,
            type=item.get("type") or "build",
            source=item.get("source") or "",
            destination=item.get("destination"),
        )
        for item in (require_object(raw, "artifact") for raw in as_list(data.get("artifacts")))
    ]
    return build_model(
        JobConfig,
        name=data.get("name") or "",
        run_instance_count=data.get("run_instance_count"),
        timeout=data.get("timeout"),
        elastic_profile_id=data.get("elastic_profile_id"),
        resources=[str(resource) for resource in as_list(data.get("resources"))],
        environment_variables=environment_variables_from_json(data.get("environment_variables"), cipher),
        tasks=[task_from_json(item) for item in as_list(data.get("tasks"))],
        tabs=tabs,
        artifacts=artifacts,
    )


def stage_to_json(stage: StageConfig) -> dict:
    payload = {
        "name": stage.name,
        "fetch_materials": stage.fetch_materials,
        "clean_working_directory": stage.clean_working_directory,
        "never_cleanup_artifacts": stage.never_cleanup_artifacts,
        "approval": with_errors(
            {
                "type": stage.approval.type,
                "authorization": {
                    "roles": list(stage.approval.authorization.roles),
                    "users": list(stage.approval.authorization.users),
                },
            },
            stage.approval,
        ),
        "environment_variables": environment_variables_to_json(stage.environment_variables),
        "jobs": [job_to_json(job) for job in stage.jobs],
    }
    return with_errors(payload, stage)


def _approval_from_json(payload: Any) -> Approval:
    if payload is None:
        return Approval()
    data = require_object(payload, "approval")
    authorization = require_object(data.get("authorization") or {}, "approval authorization")
    return build_model(
        Approval,
        type=data.get("type") or "success",
        authorization=ApprovalAuthorization(
            users=[str(user) for user in as_list(authorization.get("users"))],
            roles=[str(role) for role in as_list(authorization.get("roles"))],
        ),
    )


def stage_from_json(payload: Any, cipher: GoCipher) -> StageConfig:
    data = require_object(payload, "stage")
    return build_model(
        StageConfig,
        name=data.get("name") or "",
        fetch_materials=bool(data.get("fetch_materials", True)),
        clean_working_directory=bool(data.get("clean_working_directory", False)),
        never_cleanup_artifacts=bool(data.get("never_cleanup_artifacts", False)),
        approval=_approval_from_json(data.get("approval")),
        environment_variables=environment_variables_from_json(data.get("environment_variables"), cipher),
        jobs=[job_from_json(item, cipher) for item in as_list(data.get("jobs"))],
    )


def _timer_to_json(timer: Optional[TimerConfig]) -> Optional[dict]:
    if timer is None:
        return None
    return with_errors({"spec": timer.spec, "only_on_changes": timer.only_on_changes}, timer)


def _tracking_tool_to_json(tracking_tool: Optional[TrackingTool]) -> Optional[dict]:
    if tracking_tool is None:
        return None
    return with_errors(
        {"type": "generic", "attributes": {"url_pattern": tracking_tool.url_pattern, "regex": tracking_tool.regex}},
        tracking_tool,
    )


def lock_behavior_from_locking_flag(enabled: Any) -> str:
    return LockBehavior.LOCK_ON_FAILURE.value if enabled else LockBehavior.NONE.value


def pipeline_to_json(pipeline: PipelineConfig, version: int, base_url: str) -> dict:
    payload = {
        "_links": links(
            base_url,
            f"/api/admin/pipelines/{pipeline.name}",
            "pipeline-config",
            "/api/admin/pipelines/:pipeline_name",
        ),
        "label_template": pipeline.label_template,
    }
    if version >= 2:
        payload["lock_behavior"] = pipeline.lock_behavior
    else:
        payload["enable_pipeline_locking"] = pipeline.lock_behavior != LockBehavior.NONE.value
    payload.update(
        {
            "name": pipeline.name,
            "group": pipeline.group,
            "template": pipeline.template,
            "parameters": [with_errors({"name": p.name, "value": p.value}, p) for p in pipeline.parameters],
            "environment_variables": environment_variables_to_json(pipeline.environment_variables),
            "materials": materials_to_json(pipeline.materials),
            "stages": None if pipeline.template else [stage_to_json(stage) for stage in pipeline.stages],
            "tracking_tool": _tracking_tool_to_json(pipeline.tracking_tool),
            "timer": _timer_to_json(pipeline.timer),
        }
    )
    return with_errors(payload, pipeline)


def _unwrap(payload: Any) -> tuple[dict, Optional[str]]:
    data = require_object(payload)
    if isinstance(data.get("pipeline"), dict):
        return data["pipeline"], data.get("group")
    return data, data.get("group")


def pipeline_from_json(payload: Any, version: int, cipher: GoCipher) -> PipelineConfig:
    """Build a pipeline from a request body.

    The body is either the pipeline itself or ``{"group": ..., "pipeline": {...}}``.
    """
    data, group = _unwrap(payload)
    if version >= 2:
        lock_behavior = data.get("lock_behavior") or LockBehavior.NONE.value
    else:
        lock_behavior = lock_behavior_from_locking_flag(data.get("enable_pipeline_locking"))

    timer = None
    if data.get("timer") is not None:
        timer_data = require_object(data["timer"], "timer")
        timer = build_model(
            TimerConfig,
            spec=timer_data.get("spec") or "",
            only_on_changes=bool(timer_data.get("only_on_changes", False)),
        )

    tracking_tool = None
    if data.get("tracking_tool") is not None:
        tool_data = require_object(data["tracking_tool"], "tracking_tool")
        attributes = require_object(tool_data.get("attributes") or {}, "tracking_tool attributes")
        tracking_tool = build_model(
            TrackingTool,
            regex=attributes.get("regex") or "",
            url_pattern=attributes.get("url_pattern") or "",
        )

    parameters = [
        build_model(Param, name=item.get("name") or "", value=item.get("value"))
        for item in (require_object(raw, "parameter") for raw in as_list(data.get("parameters")))
    ]

    return build_model(
        PipelineConfig,
        name=data.get("name") or "",
        group=group or "",
        label_template=data.get("label_template") if data.get("label_template") is not None else "${COUNT}",
        lock_behavior=lock_behavior,
        template=data.get("template") or None,
        parameters=parameters,
        environment_variables=environment_variables_from_json(data.get("environment_variables"), cipher),
        materials=materials_from_json(data.get("materials"), cipher),
        stages=[stage_from_json(item, cipher) for item in as_list(data.get("stages"))],
        timer=timer,
        tracking_tool=tracking_tool,
    )
