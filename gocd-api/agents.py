"""
Agent listing helpers and agent operations.

The environments an agent belongs to are owned by the environment configs;
``AgentService`` fills them in whenever agents are read and rewrites the
environment configs when an agent is moved between environments.
"""

import logging
from typing import Iterable, List, Optional

from models import Actor, Agent, AgentBuildState, AgentConfigState, EnvironmentConfig, TriState
from observability import log_event
from policy import PolicyError, not_found
from validation import RESOURCE_NAME_PATTERN


logger = logging.getLogger("gocd.api")

SORTABLE_COLUMNS = (
    "hostname",
    "sandbox",
    "operating_system",
    "ip_address",
    "status",
    "free_space",
    "resources",
    "environments",
)
ASC = "asc"
DESC = "desc"

AGENT_CONFIG_STATE_MESSAGE = (
    "Your request could not be processed. The value of `agent_config_state` can be one of `Enabled`, "
    "`Disabled` or null."
)
_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def status_text(agent: Agent) -> str:
    if agent.agent_config_state == AgentConfigState.PENDING:
        return "Pending"
    if agent.agent_config_state == AgentConfigState.DISABLED:
        if agent.build_state == AgentBuildState.BUILDING:
            return "Disabled (Building)"
        if agent.build_state == AgentBuildState.CANCELLED:
            return "Disabled (Cancelled)"
        return "Disabled"
    if agent.build_state == AgentBuildState.CANCELLED:
        return "Building (Cancelled)"
    return agent.agent_state.value


def readable_free_space(free_space: Optional[int]) -> str:
    if free_space is None:
        return "Unknown"
    size = float(free_space)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    text = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[unit]}"


def _text_key(value: str) -> tuple:
    return (0, value.lower())


def _list_key(values: list[str]) -> tuple:
    # Agents without any value go last.
    if not values:
        return (1, "")
    return (0, ", ".join(values).lower())


def sort_key(column: str, agent: Agent) -> tuple:
    if column == "status":
        return _text_key(status_text(agent))
    if column == "free_space":
        return (1, 0) if agent.free_space is None else (0, agent.free_space)
    if column in ("resources", "environments"):
        return _list_key(getattr(agent, column))
    return _text_key(getattr(agent, column) or "")


def matches_filter(agent: Agent, text: str) -> bool:
    needle = (text or "").strip().lower()
    if not needle:
        return True
    haystack = [
        agent.hostname,
        agent.sandbox,
        agent.operating_system,
        agent.ip_address,
        str(agent.free_space) if agent.free_space is not None else "unknown",
        *agent.resources,
        *agent.environments,
    ]
    return any(needle in (value or "").lower() for value in haystack)


class AgentsTable:
    """Sort, filter and selection state of an agents listing.

    Nothing is sorted until a column is first picked. Picking a new column
    sorts ascending, picking the current column again flips the order.
    """

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self.agents: list[Agent] = []
        self.sort_column: Optional[str] = None
        self.sort_order = ASC
        self.filter_text = ""
        self.selection: dict[str, bool] = {}
        self.initialize_with(agents)

    def initialize_with(self, agents: Iterable[Agent]) -> None:
        self.agents = list(agents)
        self.selection = {agent.uuid: self.selection.get(agent.uuid, False) for agent in self.agents}

    def toggle_sort(self, column: str) -> None:
        if column not in SORTABLE_COLUMNS:
            raise ValueError(f"Column '{column}' is not sortable")
        if column == self.sort_column:
            self.sort_order = DESC if self.sort_order == ASC else ASC
        else:
            self.sort_column = column
            self.sort_order = ASC

    def sort_by(self, column: str, order: str = ASC) -> None:
        if column not in SORTABLE_COLUMNS:
            raise ValueError(f"Column '{column}' is not sortable")
        self.sort_column = column
        self.sort_order = DESC if (order or "").lower() == DESC else ASC

    def filtered(self) -> list[Agent]:
        return [agent for agent in self.agents if matches_filter(agent, self.filter_text)]

    def rows(self) -> list[Agent]:
        rows = self.filtered()
        if self.sort_column is None:
            return rows
        rows = sorted(rows, key=lambda agent: sort_key(self.sort_column, agent))
        if self.sort_order == DESC:
            rows.reverse()
        return rows

    def toggle(self, uuid: str) -> None:
        if uuid in self.selection:
            self.selection[uuid] = not self.selection[uuid]

    def select_all(self, checked: bool) -> None:
        for agent in self.filtered():
            self.selection[agent.uuid] = checked

    def selected_uuids(self) -> list[str]:
        return [agent.uuid for agent in self.agents if self.selection.get(agent.uuid)]

    def selection_state(self) -> TriState:
        visible = self.filtered()
        selected = sum(1 for agent in visible if self.selection.get(agent.uuid))
        if not visible or selected == 0:
            return TriState.UNCHECKED
        if selected == len(visible):
            return TriState.CHECKED
        return TriState.INDETERMINATE


def parse_config_state(value) -> Optional[AgentConfigState]:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "enabled":
            return AgentConfigState.ENABLED
        if lowered == "disabled":
            return AgentConfigState.DISABLED
    raise PolicyError(400, "BAD_REQUEST", AGENT_CONFIG_STATE_MESSAGE)


def parse_resources(value) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise PolicyError(422, "UNPROCESSABLE_ENTITY", "Resources must be a list or a comma separated string.")
    resources = []
    for item in (entry.strip() for entry in items):
        if not item or item in resources:
            continue
        if RESOURCE_NAME_PATTERN.fullmatch(item) is None:
            raise PolicyError(
                422,
                "UNPROCESSABLE_ENTITY",
                f"Resource name '{item}' is not valid. Valid names much match '^[-\\w\\s|.]*$'",
            )
        resources.append(item)
    return resources


def _merge(current: list[str], add: Iterable[str], remove: Iterable[str]) -> list[str]:
    removed = {item.lower() for item in remove}
    result = [item for item in current if item.lower() not in removed]
    for item in add:
        if item.lower() not in {existing.lower() for existing in result}:
            result.append(item)
    return result


class AgentService:
    def __init__(self, storage, config_service) -> None:
        self.storage = storage
        self.config_service = config_service

    def _environments(self) -> list[EnvironmentConfig]:
        return self.config_service.entities("environment")

    def _with_environments(self, agent: Agent, environments: list[EnvironmentConfig]) -> Agent:
        agent.environments = [env.name for env in environments if agent.uuid in env.agents]
        return agent

    def all_agents(self) -> List[Agent]:
        environments = self._environments()
        return [self._with_environments(agent, environments) for agent in self.storage.list_agents()]

    def table(self, sort_by: Optional[str] = None, sort_order: Optional[str] = None, filter_text: str = "") -> AgentsTable:
        table = AgentsTable(self.all_agents())
        table.filter_text = filter_text or ""
        if sort_by:
            try:
                table.sort_by(sort_by, sort_order or ASC)
            except ValueError as exc:
                raise PolicyError(400, "BAD_REQUEST", str(exc)) from exc
        return table

    def get(self, uuid: str) -> Agent:
        agent = self.storage.get_agent(uuid)
        if agent is None:
            raise not_found()
        return self._with_environments(agent, self._environments())

    def _require_known(self, uuids: list[str]) -> list[Agent]:
        """Select the requested agents the way the agents page does, failing on
        uuids nobody knows."""
        table = AgentsTable(self.storage.list_agents())
        missing = [uuid for uuid in uuids if uuid not in table.selection]
        if missing:
            raise PolicyError(400, "BAD_REQUEST", f"Agents with uuids '{', '.join(missing)}' were not found!")
        for uuid in dict.fromkeys(uuids):
            table.toggle(uuid)
        selected = set(table.selected_uuids())
        return [agent for agent in table.agents if agent.uuid in selected]

    def _move_to_environments(self, actor: Actor, uuids: list[str], add: list[str], remove: list[str]) -> None:
        known = {env.name.lower(): env for env in self._environments()}
        unknown = [name for name in add if name.lower() not in known]
        if unknown:
            raise PolicyError(422, "UNPROCESSABLE_ENTITY", f"Environment(s) [{', '.join(unknown)}] not found.")
        to_add = {name.lower() for name in add}
        to_remove = {name.lower() for name in remove}
        for key, environment in known.items():
            if key in to_add:
                agents = _merge(environment.agents, uuids, [])
            elif key in to_remove:
                agents = _merge(environment.agents, [], uuids)
            else:
                continue
            if agents != environment.agents:
                environment.agents = agents
                self.storage.update_entity("environment", environment.name, environment.model_dump(mode="json"))
                log_event("agent.environments.updated", actor_id=actor.actor_id, environment=environment.name, agents=uuids)

    def update(
        self,
        actor: Actor,
        uuid: str,
        hostname: Optional[str] = None,
        resources=None,
        environments=None,
        agent_config_state=None,
    ) -> Agent:
        agent = self.storage.get_agent(uuid)
        if agent is None:
            raise not_found()
        config_state = parse_config_state(agent_config_state)
        parsed_resources = parse_resources(resources)
        if hostname is not None:
            if not isinstance(hostname, str):
                raise PolicyError(422, "UNPROCESSABLE_ENTITY", "Hostname must be a string.")
            if not hostname.strip():
                raise PolicyError(422, "UNPROCESSABLE_ENTITY", "Hostname cannot be blank.")
            agent.hostname = hostname.strip()
        if parsed_resources is not None:
            agent.resources = parsed_resources
        if config_state is not None:
            agent.agent_config_state = config_state
        if environments is not None:
            wanted = parse_resources(environments) or []
            current = [env.name for env in self._environments() if uuid in env.agents]
            removed = [name for name in current if name.lower() not in {w.lower() for w in wanted}]
            self._move_to_environments(actor, [uuid], wanted, removed)
        self.storage.upsert_agent(agent)
        log_event("agent.updated", actor_id=actor.actor_id, uuid=uuid)
        return self.get(uuid)

    def bulk_update(
        self,
        actor: Actor,
        uuids: list[str],
        resources_to_add: list[str],
        resources_to_remove: list[str],
        environments_to_add: list[str],
        environments_to_remove: list[str],
        agent_config_state=None,
    ) -> str:
        if not uuids:
            raise PolicyError(400, "BAD_REQUEST", "Agent uuids must be provided.")
        config_state = parse_config_state(agent_config_state)
        agents = self._require_known(uuids)
        add = parse_resources(resources_to_add) or []
        remove = parse_resources(resources_to_remove) or []
        for agent in agents:
            agent.resources = _merge(agent.resources, add, remove)
            if config_state is not None:
                agent.agent_config_state = config_state
        self._move_to_environments(actor, uuids, environments_to_add, environments_to_remove)
        for agent in agents:
            self.storage.upsert_agent(agent)
        log_event("agent.bulk_updated", actor_id=actor.actor_id, agents=uuids)
        return f"Updated agent(s) with uuid(s): [{', '.join(uuids)}]."

    def _remove_from_environments(self, uuids: list[str]) -> None:
        for environment in self._environments():
            remaining = [uuid for uuid in environment.agents if uuid not in uuids]
            if remaining != environment.agents:
                environment.agents = remaining
                self.storage.update_entity("environment", environment.name, environment.model_dump(mode="json"))

    def delete(self, actor: Actor, uuid: str) -> str:
        agent = self.storage.get_agent(uuid)
        if agent is None:
            raise not_found()
        if agent.agent_config_state != AgentConfigState.DISABLED:
            raise PolicyError(406, "NOT_ACCEPTABLE", f"Failed to delete agent {uuid} as it is not disabled.")
        self._remove_from_environments([uuid])
        self.storage.delete_agent(uuid)
        log_event("agent.deleted", actor_id=actor.actor_id, uuid=uuid)
        return "Deleted 1 agent(s)."

    def bulk_delete(self, actor: Actor, uuids: list[str]) -> str:
        agents = self._require_known(uuids)
        if any(agent.agent_config_state != AgentConfigState.DISABLED for agent in agents):
            raise PolicyError(
                406,
                "NOT_ACCEPTABLE",
                "Could not delete any agents, as one or more agents might not be disabled or are still building.",
            )
        self._remove_from_environments(uuids)
        for agent in agents:
            self.storage.delete_agent(agent.uuid)
        log_event("agent.bulk_deleted", actor_id=actor.actor_id, agents=uuids)
        return f"Deleted {len(agents)} agent(s)."
