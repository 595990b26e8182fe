MIGRATION_ID = "201901150900_backfill_pipeline_lock_behavior"

LOCK_ON_FAILURE = "lockOnFailure"
NONE = "none"
KNOWN_BEHAVIORS = {LOCK_ON_FAILURE, "unlockWhenFinished", NONE}


def run(storage) -> None:
    for pipeline in storage.list_entities("pipeline"):
        name = pipeline.get("name")
        if not name:
            continue
        changed = False
        if "enable_pipeline_locking" in pipeline:
            locking = pipeline.pop("enable_pipeline_locking")
            if "lock_behavior" not in pipeline:
                pipeline["lock_behavior"] = LOCK_ON_FAILURE if locking else NONE
            changed = True
        if pipeline.get("lock_behavior") not in KNOWN_BEHAVIORS:
            pipeline["lock_behavior"] = NONE
            changed = True
        if changed:
            storage.update_entity("pipeline", name, pipeline)
