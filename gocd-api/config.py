import os
import json
from typing import Callable, Optional

from models import PluginInfo


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("GOCD_SSM_PREFIX", "")
        self.db_path = os.getenv("GOCD_DB_PATH", "./data/gocd.db")
        self.backup_dir = os.getenv("GOCD_BACKUP_DIR", "./data/backups")
        self.backup_scheduler_enabled = self._as_bool(os.getenv("GOCD_BACKUP_SCHEDULER_ENABLED", "0"))
        self.post_backup_script_timeout_seconds = self._get(
            "backup/script_timeout_seconds",
            "GOCD_POST_BACKUP_SCRIPT_TIMEOUT_SECONDS",
            600,
            int,
        )

        self.security_enabled = self._as_bool(self._get("security_enabled", "GOCD_SECURITY_ENABLED", "1", str))
        self.cipher_key = self._resolve_secret(self._get("cipher/key", "GOCD_CIPHER_KEY", "", str))

        self.oidc_issuer = self._get("oidc/issuer", "GOCD_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "GOCD_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "GOCD_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "GOCD_OIDC_ROLES_CLAIM",
            "https://gocd.example/claims/roles",
            str,
        )
        self.admin_roles = self._as_list(self._get("roles/admin", "GOCD_ADMIN_ROLES", "gocd-admins", str))
        self.group_admin_roles = self._as_list(
            self._get("roles/group_admin", "GOCD_GROUP_ADMIN_ROLES", "gocd-group-admins", str)
        )
        self.user_roles = self._as_list(self._get("roles/user", "GOCD_USER_ROLES", "gocd-users", str))

        plugins = self._get("plugins", "GOCD_PLUGINS", "", str)
        self.plugins = self._parse_plugins(plugins)

        self.server_version = os.getenv("GOCD_SERVER_VERSION", "19.1.0")
        self.update_server_url = self._get(
            "update_server_url",
            "GOCD_UPDATE_SERVER_URL",
            "https://update.gocd.org/channels/supported/latest.json",
            str,
        )
        self.version_check_interval_minutes = self._get(
            "version_check_interval_minutes",
            "GOCD_VERSION_CHECK_INTERVAL_MINUTES",
            30,
            int,
        )
        self.update_server_public_key = self._get(
            "update_server_public_key",
            "GOCD_UPDATE_SERVER_PUBLIC_KEY",
            "",
            str,
        )
        self.api_docs_url = os.getenv("GOCD_API_DOCS_URL", "https://api.gocd.org")
        cors = os.getenv("GOCD_CORS_ORIGINS", "http://127.0.0.1:8153,http://localhost:8153")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _as_list(self, value: Optional[str]) -> list[str]:
        return [item.strip() for item in str(value or "").split(",") if item.strip()]

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            import boto3
            from botocore.exceptions import ClientError
        except ImportError:
            return None
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except ClientError:
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            import boto3
        except ImportError:
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except Exception:
            return value

    def _parse_plugins(self, value: Optional[str]) -> list[PluginInfo]:
        raw = str(value or "").strip()
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = []
        if not isinstance(parsed, list):
            return []
        plugins: list[PluginInfo] = []
        for item in parsed:
            if isinstance(item, dict):
                try:
                    plugins.append(PluginInfo(**item))
                except ValueError:
                    continue
        return plugins


SETTINGS = Settings()
