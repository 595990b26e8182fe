import importlib
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Iterable, Optional

import httpx

from auth_utils import ADMIN_ROLES, auth_header, configure_auth_env, mock_jwks


GOCD_API_DIR = Path(__file__).resolve().parents[1]
SERVICE_MODULES = sorted(path.stem for path in GOCD_API_DIR.glob("*.py"))

PLUGINS = [
    {"id": "cd.go.authorization.ldap", "extension": "authorization"},
    {"id": "cd.go.secrets.file-based-plugin", "extension": "secrets"},
    {"id": "deb", "extension": "package-repository"},
    {"id": "github.pr", "extension": "scm"},
]


def accept(version: int) -> dict:
    return {"Accept": f"application/vnd.go.cd.v{version}+json"}


def api_headers(version: int, roles: Iterable[str] = ADMIN_ROLES, subject: str = "user-1", **extra: str) -> dict:
    headers = {**accept(version), **auth_header(roles, subject=subject)}
    headers.update(extra)
    return headers


def load_main(tmp_path: Path, monkeypatch, **env: str):
    if str(GOCD_API_DIR) not in sys.path:
        sys.path.insert(0, str(GOCD_API_DIR))
    monkeypatch.setenv("GOCD_DB_PATH", str(tmp_path / "gocd-test.db"))
    monkeypatch.setenv("GOCD_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("GOCD_PLUGINS", json.dumps(PLUGINS))
    monkeypatch.setenv("GOCD_BACKUP_SCHEDULER_ENABLED", "0")
    configure_auth_env()
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    for module in SERVICE_MODULES:
        if module in sys.modules:
            del sys.modules[module]

    main = importlib.import_module("main")
    mock_jwks(monkeypatch)
    return main


@asynccontextmanager
async def api_client(main):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=main.app),
        base_url="http://testserver",
    ) as client:
        yield client


def git_material(url: str = "https://github.com/gocd/gocd", name: Optional[str] = None, **attributes) -> dict:
    return {"type": "git", "attributes": {"url": url, "name": name, "branch": "master", **attributes}}


def exec_job(name: str = "unit", command: str = "make") -> dict:
    return {"name": name, "tasks": [{"type": "exec", "attributes": {"command": command, "arguments": ["test"]}}]}


def stage(name: str = "build", jobs: Optional[list] = None) -> dict:
    return {"name": name, "jobs": jobs or [exec_job()]}


def pipeline_payload(name: str = "up42", group: str = "first", **overrides) -> dict:
    pipeline = {
        "name": name,
        "group": group,
        "label_template": "${COUNT}",
        "lock_behavior": "none",
        "materials": [git_material()],
        "stages": [stage()],
    }
    pipeline.update(overrides)
    return pipeline


def seed_agent(main, uuid: str, **fields):
    agent = importlib.import_module("models").Agent(uuid=uuid, **fields)
    main.storage.upsert_agent(agent)
    return agent
