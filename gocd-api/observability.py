import contextvars
import logging
from typing import Any, Optional

from redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("gocd.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def _render(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (list, tuple, set)):
        return ",".join(redact_text(str(item)) for item in value)
    return value


def log_event(event: str, **fields: Any) -> None:
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = _render(value)
    parts = [f"{key}={payload[key]}" for key in sorted(payload.keys())]
    _logger.info(" ".join(parts))


def log_config_change(actor, action: str, kind: str, entity_id: str, outcome: str = "SUCCESS", reason: Optional[str] = None) -> None:
    log_event(
        f"config.{kind}.{action}",
        actor_id=getattr(actor, "actor_id", None),
        actor_role=getattr(getattr(actor, "role", None), "value", None),
        entity_id=entity_id,
        outcome=outcome,
        reason=reason,
    )
