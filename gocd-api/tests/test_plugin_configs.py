from pathlib import Path

import pytest

from test_helpers import api_client, api_headers, load_main, pipeline_payload

pytestmark = pytest.mark.anyio


def _repository() -> dict:
    return {
        "repo_id": "repo-1",
        "name": "debs",
        "plugin_metadata": {"id": "deb", "version": "1"},
        "configuration": [{"key": "REPO_URL", "value": "http://mirror.example/debian"}],
    }


def _package() -> dict:
    return {
        "id": "pkg-1",
        "name": "nginx",
        "auto_update": False,
        "package_repo": {"id": "repo-1"},
        "configuration": [{"key": "PACKAGE_NAME", "value": "nginx"}],
    }


def _scm() -> dict:
    return {
        "id": "scm-1",
        "name": "pull-requests",
        "plugin_metadata": {"id": "github.pr", "version": "1"},
        "configuration": [{"key": "url", "value": "https://github.com/gocd/gocd"}],
    }


async def test_auth_config_encrypts_secure_properties(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    payload = {
        "id": "ldap",
        "plugin_id": "cd.go.authorization.ldap",
        "properties": [
            {"key": "Url", "value": "ldap://ldap.example.com"},
            {"key": "Password", "value": "bind-secret", "secure": True},
        ],
    }
    async with api_client(main) as client:
        created = await client.post("/api/admin/security/auth_configs", headers=api_headers(1), json=payload)
        shown = await client.get("/api/admin/security/auth_configs/ldap", headers=api_headers(1))

    assert created.status_code == 200
    url, password = created.json()["properties"]
    assert url == {"key": "Url", "value": "ldap://ldap.example.com"}
    assert "value" not in password
    assert main.cipher.decrypt(password["encrypted_value"]) == "bind-secret"
    assert "bind-secret" not in shown.text
    assert shown.headers["etag"] == created.headers["etag"]


async def test_auth_config_with_unknown_plugin_or_duplicate_keys_is_invalid(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    payload = {
        "id": "ldap",
        "plugin_id": "cd.go.authorization.unknown",
        "properties": [{"key": "Url", "value": "a"}, {"key": "url", "value": "b"}],
    }
    async with api_client(main) as client:
        response = await client.post("/api/admin/security/auth_configs", headers=api_headers(1), json=payload)

    assert response.status_code == 422
    data = response.json()["data"]
    assert data["errors"]["plugin_id"] == ["Plugin with id `cd.go.authorization.unknown` is not found."]
    assert data["properties"][0]["errors"]["key"] == ["Duplicate key 'url' found for Auth config 'ldap'"]
    assert response.json()["message"].startswith("Validations failed for security auth config 'ldap'.")


async def test_secret_config_rules_are_validated(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    payload = {
        "id": "file-secrets",
        "plugin_id": "cd.go.secrets.file-based-plugin",
        "description": "secrets on disk",
        "properties": [{"key": "SecretsFilePath", "value": "/etc/gocd/secrets.db"}],
        "rules": [
            {"directive": "allow", "action": "refer", "type": "pipeline_group", "resource": "first"},
            {"directive": "permit", "action": "view", "type": "agent", "resource": ""},
        ],
    }
    async with api_client(main) as client:
        response = await client.post("/api/admin/secret_configs", headers=api_headers(1), json=payload)

    assert response.status_code == 422
    allowed, invalid = response.json()["data"]["rules"]
    assert "errors" not in allowed
    assert invalid["errors"] == {
        "directive": ["Invalid directive, must be either 'allow' or 'deny'."],
        "action": ["Invalid action, must be one of [refer]."],
        "type": ["Invalid type, must be one of [pipeline_group, environment, *]."],
        "resource": ["Resource cannot be blank."],
    }


async def test_secret_config_crud(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    payload = {
        "id": "file-secrets",
        "plugin_id": "cd.go.secrets.file-based-plugin",
        "rules": [{"directive": "deny", "action": "refer", "type": "*", "resource": "*"}],
    }
    async with api_client(main) as client:
        created = await client.post("/api/admin/secret_configs", headers=api_headers(1), json=payload)
        listing = await client.get("/api/admin/secret_configs", headers=api_headers(1))
        deleted = await client.delete("/api/admin/secret_configs/file-secrets", headers=api_headers(1))

    assert created.status_code == 200
    assert created.json()["rules"] == [{"directive": "deny", "action": "refer", "type": "*", "resource": "*"}]
    assert [item["id"] for item in listing.json()["_embedded"]["secret_configs"]] == ["file-secrets"]
    assert deleted.json()["message"] == "The secret config 'file-secrets' was deleted successfully."


async def test_repository_embeds_its_packages_and_cannot_be_deleted_while_used(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    async with api_client(main) as client:
        await client.post("/api/admin/repositories", headers=api_headers(1), json=_repository())
        package = await client.post("/api/admin/packages", headers=api_headers(1), json=_package())
        repository = await client.get("/api/admin/repositories/repo-1", headers=api_headers(1))
        blocked = await client.delete("/api/admin/repositories/repo-1", headers=api_headers(1))

    assert package.status_code == 200
    assert package.json()["package_repo"]["name"] == "debs"
    assert package.json()["auto_update"] is False
    embedded = repository.json()["_embedded"]["packages"]
    assert [(item["id"], item["name"]) for item in embedded] == [("pkg-1", "nginx")]
    assert blocked.status_code == 422
    assert blocked.json()["message"] == (
        "Cannot delete the package repository 'repo-1' as it is being referenced by package(s): [nginx]."
    )


async def test_package_needs_an_existing_repository(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    async with api_client(main) as client:
        response = await client.post("/api/admin/packages", headers=api_headers(1), json=_package())

    assert response.status_code == 422
    assert response.json()["data"]["errors"]["package_repo"] == ["Could not find package repository with id 'repo-1'."]


async def test_package_used_by_a_pipeline_cannot_be_deleted(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    material = {"type": "package", "attributes": {"ref": "pkg-1"}}
    async with api_client(main) as client:
        await client.post("/api/admin/repositories", headers=api_headers(1), json=_repository())
        await client.post("/api/admin/packages", headers=api_headers(1), json=_package())
        pipeline = await client.post(
            "/api/admin/pipelines",
            headers=api_headers(2),
            json=pipeline_payload(name="uses-pkg", materials=[material]),
        )
        blocked = await client.delete("/api/admin/packages/pkg-1", headers=api_headers(1))

    assert pipeline.status_code == 200
    assert blocked.status_code == 422
    assert blocked.json()["message"] == (
        "Cannot delete the package definition 'pkg-1' as it is used by pipeline(s): '[uses-pkg]'"
    )


async def test_duplicate_repository_names_are_rejected(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    second = {**_repository(), "repo_id": "repo-2", "name": "DEBS"}
    async with api_client(main) as client:
        await client.post("/api/admin/repositories", headers=api_headers(1), json=_repository())
        response = await client.post("/api/admin/repositories", headers=api_headers(1), json=second)

    assert response.status_code == 422
    assert response.json()["data"]["errors"]["name"] == [
        "You have defined multiple repositories called 'DEBS'. Repository names are case-insensitive and must be unique."
    ]


async def test_scm_used_by_a_pipeline_cannot_be_deleted(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    material = {"type": "plugin", "attributes": {"ref": "scm-1"}}
    async with api_client(main) as client:
        created = await client.post("/api/admin/scms", headers=api_headers(1), json=_scm())
        await client.post(
            "/api/admin/pipelines",
            headers=api_headers(2),
            json=pipeline_payload(name="uses-scm", materials=[material]),
        )
        blocked = await client.delete("/api/admin/scms/scm-1", headers=api_headers(1))

    assert created.status_code == 200
    assert created.json()["_links"]["self"]["href"] == "http://testserver/api/admin/scms/scm-1"
    assert blocked.status_code == 422
    assert blocked.json()["message"] == "The scm 'pull-requests' is being referenced by pipeline(s): [uses-scm]."


async def test_plugin_configs_are_admin_only(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    async with api_client(main) as client:
        response = await client.get("/api/admin/scms", headers=api_headers(1, roles=["gocd-group-admins"]))

    assert response.status_code == 403


async def test_scms_without_an_id_get_a_generated_one(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    first = {key: value for key, value in _scm().items() if key != "id"}
    second = {**first, "id": "  ", "name": "forks"}
    async with api_client(main) as client:
        created = await client.post("/api/admin/scms", headers=api_headers(1), json=first)
        again = await client.post("/api/admin/scms", headers=api_headers(1), json=second)
        shown = await client.get(f"/api/admin/scms/{created.json()['id']}", headers=api_headers(1))

    assert created.status_code == 200
    assert again.status_code == 200
    assert created.json()["id"]
    assert created.json()["id"] != again.json()["id"]
    assert shown.status_code == 200
    assert shown.json()["name"] == "pull-requests"


async def test_plugin_config_ids_must_be_valid_names(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    async with api_client(main) as client:
        repository = await client.post(
            "/api/admin/repositories", headers=api_headers(1), json={**_repository(), "repo_id": ".hidden"}
        )
        scm = await client.post("/api/admin/scms", headers=api_headers(1), json={**_scm(), "id": "has space"})

    assert repository.status_code == 422
    assert "repo_id" in repository.json()["data"]["errors"]
    assert scm.status_code == 422
    assert "id" in scm.json()["data"]["errors"]
    assert main.config_service.entities("scm") == []


async def test_create_loses_to_a_concurrent_create_of_the_same_id(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)
    stored = main.storage.get_entity
    async with api_client(main) as client:
        created = await client.post("/api/admin/scms", headers=api_headers(1), json=_scm())
        # The duplicate check misses the row, as it would when both requests race.
        monkeypatch.setattr(
            main.storage,
            "get_entity",
            lambda kind, entity_id: None if kind == "scm" else stored(kind, entity_id),
        )
        duplicate = await client.post("/api/admin/scms", headers=api_headers(1), json=_scm())

    assert created.status_code == 200
    assert duplicate.status_code == 422
    assert duplicate.json()["message"] == "Failed to add scm. Another scm with the same name already exists."
    assert main.storage.insert_entity("scm", "scm-2", {"id": "scm-2"}) is True
    assert main.storage.insert_entity("scm", "scm-2", {"id": "scm-2"}) is False
