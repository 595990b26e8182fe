from datetime import datetime, timezone

import pytest

from models import (
    DependencyMaterialConfig,
    ExecTask,
    GitMaterialConfig,
    HgMaterialConfig,
    JobConfig,
    PipelineConfig,
    StageConfig,
    TimerConfig,
)
from validation import (
    BLANK_LABEL_TEMPLATE_ERROR_MESSAGE,
    LABEL_TEMPLATE_ERROR_MESSAGE,
    NameTypeValidator,
    ValidationContext,
    build_cron_trigger,
    is_valid_destination,
    validate_tree,
)


def _job(name: str = "unit", **fields) -> JobConfig:
    fields.setdefault("tasks", [ExecTask(command="make")])
    return JobConfig(name=name, **fields)


def _pipeline(name: str = "up42", **fields) -> PipelineConfig:
    fields.setdefault("group", "first")
    fields.setdefault("materials", [GitMaterialConfig(url="https://github.com/gocd/gocd", name="repo")])
    fields.setdefault("stages", [StageConfig(name="build", jobs=[_job()])])
    return PipelineConfig(name=name, **fields)


@pytest.mark.parametrize(
    "name,valid",
    [
        ("up42", True),
        ("up.42_-x", True),
        (".hidden", False),
        ("has space", False),
        ("", False),
        (None, False),
        ("a" * 255, True),
        ("a" * 256, False),
    ],
)
def test_name_type_validator(name, valid):
    assert NameTypeValidator.is_valid(name) is valid


@pytest.mark.parametrize(
    "template",
    ["${COUNT}", "foo-${COUNT}-${repo[:7]}", "${REPO}", "${env:BUILD_ID}-${count}"],
)
def test_valid_label_templates(template):
    pipeline = _pipeline(label_template=template)
    assert validate_tree(pipeline)


@pytest.mark.parametrize(
    "template,message",
    [
        ("", BLANK_LABEL_TEMPLATE_ERROR_MESSAGE),
        ("static", LABEL_TEMPLATE_ERROR_MESSAGE.format("static")),
        ("${}", "Label template variable cannot be blank."),
        ("${env:}", "Missing environment variable name."),
        ("${repo[:0]}", "Length of zero not allowed on label ${repo[:0]} defined on pipeline up42."),
        (
            "${svn}",
            "You have defined a label template in pipeline 'up42' that refers to a material called 'svn', "
            "but no material with this name is defined.",
        ),
    ],
)
def test_invalid_label_templates(template, message):
    pipeline = _pipeline(label_template=template)
    assert not validate_tree(pipeline)
    assert pipeline.errors().on("label_template") == [message]


@pytest.mark.parametrize(
    "destination,valid",
    [
        ("src/app", True),
        ("a/../b", True),
        ("./nested/dir", True),
        ("../outside", False),
        ("a/../../b", False),
        ("/absolute", False),
        ("C:/windows", False),
        ("..\\windows", False),
    ],
)
def test_destination_must_stay_inside_the_working_folder(destination, valid):
    assert is_valid_destination(destination) is valid


def test_multiple_scm_materials_need_distinct_destinations():
    first = GitMaterialConfig(url="https://example.com/a.git", name="a", destination="code")
    second = HgMaterialConfig(url="https://example.com/b", name="b", destination="code/")
    third = GitMaterialConfig(url="https://example.com/c.git", name="c")
    pipeline = _pipeline(materials=[first, second, third], label_template="${COUNT}")

    assert not validate_tree(pipeline)
    assert first.errors().on("destination") == ["The destination directory must be unique across materials."]
    assert second.errors().on("destination") == ["The destination directory must be unique across materials."]
    assert third.errors().on("destination") == [
        "Destination directory is required when specifying multiple scm materials"
    ]


def test_material_names_are_unique_case_insensitively():
    first = GitMaterialConfig(url="https://example.com/a.git", name="code", destination="a")
    second = GitMaterialConfig(url="https://example.com/b.git", name="CODE", destination="b")
    pipeline = _pipeline(materials=[first, second])

    assert not validate_tree(pipeline)
    assert second.errors().first_on("name").startswith("You have defined multiple materials called 'CODE'.")
    assert first.errors().first_on("name") == second.errors().first_on("name")


def test_dependency_material_checks_upstream_pipeline_and_stage():
    upstream = _pipeline(name="upstream")
    context = ValidationContext(pipelines=[upstream])
    self_reference = _pipeline(materials=[DependencyMaterialConfig(pipeline="up42", stage="build")])
    missing_stage = _pipeline(materials=[DependencyMaterialConfig(pipeline="upstream", stage="deploy")])
    fine = _pipeline(materials=[DependencyMaterialConfig(pipeline="Upstream", stage="BUILD")])

    assert not validate_tree(self_reference, context)
    assert self_reference.materials[0].errors().on("pipeline") == ["Pipeline 'up42' cannot depend on itself."]
    assert not validate_tree(missing_stage, context)
    assert missing_stage.materials[0].errors().on("stage") == [
        "Stage with name 'deploy' does not exist on pipeline 'upstream', it is being referred to from pipeline 'up42'"
    ]
    assert validate_tree(fine, context)


def test_job_rules():
    job = _job(
        "build-runOnAll-1",
        run_instance_count=-1,
        timeout="soon",
        resources=["linux"],
        elastic_profile_id="docker",
    )
    pipeline = _pipeline(stages=[StageConfig(name="build", jobs=[job])])

    assert not validate_tree(pipeline)
    errors = job.errors()
    assert errors.on("name") == [
        "A job cannot have 'runOnAll' in it's name: build-runOnAll-1 because it is a reserved keyword"
    ]
    assert errors.first_on("run_instance_count").startswith("'Run Instance Count' cannot be a negative number")
    assert errors.on("timeout") == ["Timeout should be a valid number as it represents number of minutes"]
    assert errors.on("resources") == ["Job cannot have both `resource` and `elastic_profile_id`"]
    assert errors.on("elastic_profile_id") == ["Job cannot have both `resource` and `elastic_profile_id`"]


def test_job_accepts_all_instances_and_never_timeout():
    job = _job(run_instance_count="all", timeout="never")
    assert validate_tree(_pipeline(stages=[StageConfig(name="build", jobs=[job])]))


def test_job_names_are_unique_within_a_stage():
    stage = StageConfig(name="build", jobs=[_job("unit"), _job("UNIT")])
    pipeline = _pipeline(stages=[stage])

    assert not validate_tree(pipeline)
    assert stage.jobs[0].errors().on("name") == [
        "You have defined multiple jobs called 'UNIT'. Job names are case-insensitive and must be unique."
    ]


def test_exec_task_needs_a_command_and_known_run_if():
    job = _job(tasks=[ExecTask(command="", run_if=["sometimes"])])
    validate_tree(_pipeline(stages=[StageConfig(name="build", jobs=[job])]))

    task = job.tasks[0]
    assert task.errors().on("command") == ["Command cannot be empty"]
    assert task.errors().on("run_if") == ["Invalid run_if value 'sometimes'. Valid values are passed, failed and any."]


def test_template_and_stages_are_exclusive():
    pipeline = _pipeline(template="java-build")

    assert not validate_tree(pipeline)
    assert pipeline.errors().on("stages") == [
        "Cannot add stages to pipeline 'up42' which already references template 'java-build'"
    ]


def test_pipeline_without_stages_or_template_is_invalid():
    pipeline = _pipeline(stages=[])

    assert not validate_tree(pipeline)
    assert pipeline.errors().on("pipeline") == [
        "Pipeline 'up42' does not have any stages configured. A pipeline must have at least one stage."
    ]


def test_timer_spec_uses_quartz_cron():
    assert validate_tree(_pipeline(timer=TimerConfig(spec="0 15 10 ? * 2-6")))

    broken = _pipeline(timer=TimerConfig(spec="0 15 10"))
    assert not validate_tree(broken)
    assert broken.timer.errors().on("spec") == ["Invalid cron syntax: expected 6 or 7 fields but found 3"]


def test_quartz_days_of_week_start_on_sunday():
    trigger = build_cron_trigger("0 30 9 ? * 2", timezone="UTC")
    new_year = datetime(2019, 1, 1, tzinfo=timezone.utc)

    next_fire = trigger.get_next_fire_time(None, new_year)

    assert next_fire == datetime(2019, 1, 7, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("spec", ["* * *", "0 0 25 * * ?", ""])
def test_invalid_cron_expressions(spec):
    with pytest.raises(ValueError):
        build_cron_trigger(spec)


def test_validation_clears_errors_from_a_previous_run():
    pipeline = _pipeline(label_template="static")
    assert not validate_tree(pipeline)

    pipeline.label_template = "${COUNT}"
    assert validate_tree(pipeline)
    assert pipeline.errors().is_empty()
