from pathlib import Path

import pytest

from auth_utils import USER_ROLES
from test_helpers import api_client, api_headers, load_main, pipeline_payload, seed_agent

pytestmark = pytest.mark.anyio

AGENTS = "/api/agents"


def _seed_fleet(main) -> None:
    seed_agent(
        main,
        "agent-1",
        hostname="build-02",
        ip_address="10.0.0.2",
        operating_system="Linux",
        agent_config_state="Enabled",
        agent_state="Idle",
        build_state="Idle",
        free_space=2048,
    )
    seed_agent(
        main,
        "agent-2",
        hostname="build-01",
        ip_address="10.0.0.1",
        operating_system="Windows",
        agent_config_state="Disabled",
        agent_state="Idle",
        build_state="Idle",
    )


async def test_list_agents_sorted_and_filtered(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        ordered = await client.get(AGENTS, params={"sort_by": "hostname"}, headers=api_headers(4, roles=USER_ROLES))
        reversed_ = await client.get(
            AGENTS, params={"sort_by": "hostname", "sort_order": "desc"}, headers=api_headers(4)
        )
        filtered = await client.get(AGENTS, params={"filter": "windows"}, headers=api_headers(4))
        bad_column = await client.get(AGENTS, params={"sort_by": "uuid"}, headers=api_headers(4))

    assert ordered.status_code == 200
    agents = ordered.json()["_embedded"]["agents"]
    assert [agent["hostname"] for agent in agents] == ["build-01", "build-02"]
    assert agents[0]["status"] == "Disabled"
    assert agents[0]["free_space"] == "unknown"
    assert agents[1]["free_space"] == 2048
    assert [agent["uuid"] for agent in reversed_.json()["_embedded"]["agents"]] == ["agent-1", "agent-2"]
    assert [agent["uuid"] for agent in filtered.json()["_embedded"]["agents"]] == ["agent-2"]
    assert bad_column.status_code == 400
    assert bad_column.json()["message"] == "Column 'uuid' is not sortable"


async def test_show_unknown_agent_is_not_found(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    async with api_client(main) as client:
        response = await client.get(f"{AGENTS}/ghost", headers=api_headers(4))

    assert response.status_code == 404


async def test_update_agent_attributes_and_environments(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        await client.post("/api/admin/pipelines", headers=api_headers(2), json=pipeline_payload())
        await client.post(
            "/api/admin/environments",
            headers=api_headers(2),
            json={"name": "prod", "pipelines": [], "agents": [], "environment_variables": []},
        )
        response = await client.patch(
            f"{AGENTS}/agent-1",
            headers=api_headers(4),
            json={
                "hostname": "renamed",
                "resources": "linux, docker, linux",
                "environments": ["prod"],
                "agent_config_state": "disabled",
            },
        )
        environment = await client.get("/api/admin/environments/prod", headers=api_headers(2))

    assert response.status_code == 200
    body = response.json()
    assert body["hostname"] == "renamed"
    assert body["resources"] == ["linux", "docker"]
    assert body["agent_config_state"] == "Disabled"
    assert body["environments"] == [{"name": "prod", "origin": {"type": "gocd"}}]
    assert environment.json()["agents"] == [{"uuid": "agent-1"}]


async def test_update_agent_rejects_unknown_config_state(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        response = await client.patch(
            f"{AGENTS}/agent-1", headers=api_headers(4), json={"agent_config_state": "Paused"}
        )

    assert response.status_code == 400
    assert response.json()["message"].startswith("Your request could not be processed.")


async def test_update_agent_rejects_a_hostname_that_is_not_text(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        response = await client.patch(f"{AGENTS}/agent-1", headers=api_headers(4), json={"hostname": 5})

    assert response.status_code == 422
    assert response.json()["message"] == "Hostname must be a string."
    assert main.storage.get_agent("agent-1").hostname == "build-02"


async def test_updating_agents_requires_admin(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        response = await client.patch(
            f"{AGENTS}/agent-1", headers=api_headers(4, roles=USER_ROLES), json={"hostname": "x"}
        )

    assert response.status_code == 403
    assert main.storage.get_agent("agent-1").hostname == "build-02"


async def test_only_disabled_agents_can_be_deleted(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        enabled = await client.delete(f"{AGENTS}/agent-1", headers=api_headers(4))
        disabled = await client.delete(f"{AGENTS}/agent-2", headers=api_headers(4))

    assert enabled.status_code == 406
    assert enabled.json()["message"] == "Failed to delete agent agent-1 as it is not disabled."
    assert disabled.status_code == 200
    assert disabled.json() == {"message": "Deleted 1 agent(s)."}
    assert main.storage.get_agent("agent-2") is None


async def test_bulk_update_applies_operations_to_every_agent(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    seed_agent(main, "agent-3", hostname="build-03", resources=["old"])
    payload = {
        "uuids": ["agent-1", "agent-3"],
        "operations": {"resources": {"add": ["java"], "remove": ["old"]}},
        "agent_config_state": "Enabled",
    }
    async with api_client(main) as client:
        response = await client.patch(AGENTS, headers=api_headers(4), json=payload)
        unknown = await client.patch(AGENTS, headers=api_headers(4), json={"uuids": ["agent-1", "ghost"]})

    assert response.status_code == 200
    assert response.json()["message"] == "Updated agent(s) with uuid(s): [agent-1, agent-3]."
    third = main.storage.get_agent("agent-3")
    assert third.resources == ["java"]
    assert third.agent_config_state.value == "Enabled"
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "Agents with uuids 'ghost' were not found!"


async def test_bulk_delete_is_all_or_nothing(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    seed_agent(main, "agent-3", agent_config_state="Disabled")
    async with api_client(main) as client:
        refused = await client.request(
            "DELETE", AGENTS, headers=api_headers(4), json={"uuids": ["agent-1", "agent-2"]}
        )
        deleted = await client.request(
            "DELETE", AGENTS, headers=api_headers(4), json={"uuids": ["agent-2", "agent-3"]}
        )

    assert refused.status_code == 406
    assert main.storage.get_agent("agent-1") is not None
    assert deleted.json()["message"] == "Deleted 2 agent(s)."
    assert [agent.uuid for agent in main.storage.list_agents()] == ["agent-1"]


async def test_repeated_uuids_in_a_bulk_delete_count_once(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    _seed_fleet(main)
    async with api_client(main) as client:
        deleted = await client.request(
            "DELETE", AGENTS, headers=api_headers(4), json={"uuids": ["agent-2", "agent-2"]}
        )

    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Deleted 1 agent(s)."
    assert [agent.uuid for agent in main.storage.list_agents()] == ["agent-1"]
