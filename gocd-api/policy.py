from typing import Optional


NOT_FOUND_MESSAGE = (
    "Either the resource you requested was not found, or you are not authorized to perform this action."
)
UNAUTHORIZED_MESSAGE = "You are not authorized to perform this action."
MAINTENANCE_MODE_MESSAGE = "GoCD server is under maintenance mode, change requests are not allowed."
STALE_ETAG_MESSAGE = (
    "Someone has modified the configuration for {kind} '{entity_id}'. "
    "Please update your copy of the config with the changes."
)


class PolicyError(Exception):
    def __init__(self, status_code: int, code: str, message: str, data: Optional[dict] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.data = data


def not_found() -> PolicyError:
    return PolicyError(404, "NOT_FOUND", NOT_FOUND_MESSAGE)


def stale_etag(kind: str, entity_id: str) -> PolicyError:
    return PolicyError(412, "STALE_ETAG", STALE_ETAG_MESSAGE.format(kind=kind, entity_id=entity_id))


class Guardrails:
    def __init__(self, storage) -> None:
        self.storage = storage

    def require_mutations_enabled(self) -> None:
        info = self.storage.get_maintenance_mode()
        if info.is_maintenance_mode:
            raise PolicyError(503, "MAINTENANCE_MODE", MAINTENANCE_MODE_MESSAGE)

    def require_no_running_backup(self) -> None:
        running = self.storage.get_running_backup()
        if running:
            raise PolicyError(
                409,
                "BACKUP_IN_PROGRESS",
                f"Cannot start a backup while backup '{running.id}' is in progress.",
            )

    def require_matching_etag(self, kind: str, entity_id: str, if_match: Optional[str], current_etag: str) -> None:
        if not if_match or if_match.strip() != current_etag:
            raise stale_etag(kind, entity_id)
