MIGRATION_ID = "20190101_seed_default_group"

DEFAULT_GROUP = "defaultGroup"


def run(storage) -> None:
    if storage.list_entities("pipeline_group"):
        return
    storage.insert_entity("pipeline_group", DEFAULT_GROUP, {"name": DEFAULT_GROUP, "authorization": []})
