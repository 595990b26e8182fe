import json
from pathlib import Path

from config import Settings
from test_helpers import load_main


def test_defaults(monkeypatch):
    for key in ("GOCD_SECURITY_ENABLED", "GOCD_PLUGINS", "GOCD_ADMIN_ROLES", "GOCD_SSM_PREFIX"):
        monkeypatch.delenv(key, raising=False)

    settings = Settings()

    assert settings.security_enabled is True
    assert settings.plugins == []
    assert settings.admin_roles == ["gocd-admins"]
    assert settings.version_check_interval_minutes == 30
    assert settings.post_backup_script_timeout_seconds == 600


def test_plugins_are_parsed_and_bad_entries_skipped(monkeypatch):
    plugins = [
        {"id": "cd.go.authorization.ldap", "extension": "authorization", "version": "2.0"},
        {"id": "missing-extension"},
        "not-an-object",
    ]
    monkeypatch.setenv("GOCD_PLUGINS", json.dumps(plugins))

    settings = Settings()

    assert [(plugin.id, plugin.extension) for plugin in settings.plugins] == [
        ("cd.go.authorization.ldap", "authorization")
    ]


def test_unparseable_plugins_mean_no_plugins(monkeypatch):
    monkeypatch.setenv("GOCD_PLUGINS", "{not json")
    assert Settings().plugins == []


def test_booleans_lists_and_numbers(monkeypatch):
    monkeypatch.setenv("GOCD_SECURITY_ENABLED", "off")
    monkeypatch.setenv("GOCD_BACKUP_SCHEDULER_ENABLED", "yes")
    monkeypatch.setenv("GOCD_GROUP_ADMIN_ROLES", " team-leads , ,release-managers")
    monkeypatch.setenv("GOCD_VERSION_CHECK_INTERVAL_MINUTES", "not-a-number")
    monkeypatch.setenv("GOCD_CORS_ORIGINS", "https://gocd.example, ")

    settings = Settings()

    assert settings.security_enabled is False
    assert settings.backup_scheduler_enabled is True
    assert settings.group_admin_roles == ["team-leads", "release-managers"]
    assert settings.version_check_interval_minutes == 30
    assert settings.cors_origins == ["https://gocd.example"]


def test_storage_opens_the_configured_database(tmp_path: Path, monkeypatch):
    main = load_main(tmp_path, monkeypatch)

    assert main.SETTINGS.db_path == str(tmp_path / "gocd-test.db")
    assert main.storage.db_path == main.SETTINGS.db_path
