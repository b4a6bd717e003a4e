from __future__ import annotations

import socket
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HOST_PLACEHOLDER = "{host}"


class ConfigurationError(Exception):
    """Raised when the volume backup configuration is invalid."""


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Snapshot store ----------------------------------------------------------


class AwsCredentials(FrozenModel):
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: str = "us-east-1"


class StoreTimeouts(FrozenModel):
    """Wall-clock budgets, in seconds, for each store operation."""

    default: float = Field(default=300, gt=0)
    backup: float = Field(default=4 * 3600, gt=0)
    forget: float = Field(default=1800, gt=0)
    prune: float = Field(default=2 * 3600, gt=0)


class StoreSettings(FrozenModel):
    binary: str = "restic"
    repository: str
    password: Optional[str] = Field(default=None, description="Explicit password string (discouraged).")
    password_env: Optional[str] = Field(default=None, description="Environment variable containing the password.")
    password_file: Optional[Path] = None
    aws: AwsCredentials = AwsCredentials()
    lock_timeout: int = Field(default=30, ge=0)
    cache_dir: Optional[Path] = None
    limit_upload: Optional[int] = Field(default=None, gt=0, description="Upload limit in KiB/s.")
    one_file_system: bool = False
    gogc: Optional[int] = 20
    timeouts: StoreTimeouts = StoreTimeouts()

    @model_validator(mode="after")
    def _require_single_password_source(self) -> "StoreSettings":
        sources = [value for value in (self.password, self.password_env, self.password_file) if value]
        if len(sources) != 1:
            raise ValueError("Exactly one of password, password_env or password_file must be provided.")
        return self


# --- Retention ---------------------------------------------------------------


class RetentionScope(str, Enum):
    PROJECT = "project"
    PROJECT_HOST = "project_host"


class PruneMode(str, Enum):
    SPLIT = "split"
    COMBINED = "combined"


class RetentionPolicy(FrozenModel):
    keep_daily: int = Field(default=7, ge=0)
    keep_weekly: int = Field(default=4, ge=0)
    keep_monthly: int = Field(default=12, ge=0)
    scope: RetentionScope = RetentionScope.PROJECT_HOST
    prune: PruneMode = PruneMode.SPLIT

    @model_validator(mode="after")
    def _keep_something(self) -> "RetentionPolicy":
        if not (self.keep_daily or self.keep_weekly or self.keep_monthly):
            raise ValueError("Retention policy must keep at least one snapshot.")
        return self


# --- Projects ----------------------------------------------------------------


class ProjectConfig(FrozenModel):
    name: str
    volumes: Tuple[str, ...] = ()

    @field_validator("volumes")
    def _reject_blank_volumes(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:  # noqa: N805
        for volume in value:
            if not volume or "/" in volume or volume in (".", ".."):
                raise ValueError(f"Invalid volume name '{volume}'.")
        return value


class LoggingConfig(FrozenModel):
    level: str = "INFO"

    @field_validator("level")
    def _upper(cls, value: str) -> str:  # noqa: N805
        return value.upper()


class BackupConfig(FrozenModel):
    host: str = Field(default_factory=socket.gethostname)
    restic: StoreSettings
    retention: RetentionPolicy = RetentionPolicy()
    volume_base_path: Path
    volume_data_subpath: str = "_data"
    healthchecks_url: Optional[str] = None
    settle_seconds: float = Field(default=2, ge=0)
    lock_dir: Path = Path("/tmp")
    projects: List[ProjectConfig]
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        projects = data.get("projects")
        if isinstance(projects, dict):
            data = dict(data)
            data["projects"] = [_project_entry(name, value) for name, value in projects.items()]
        return _substitute_host(data)

    @field_validator("volume_base_path", "lock_dir")
    def _expand_path(cls, value: Path) -> Path:  # noqa: N805
        return value.expanduser()

    @field_validator("healthchecks_url")
    def _validate_healthchecks_url(cls, value: Optional[str]) -> Optional[str]:  # noqa: N805
        if value is None:
            return None
        value = value.strip().rstrip("/")
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("healthchecks_url must start with http:// or https://")
        return value

    @field_validator("projects")
    def _require_projects(cls, value: List[ProjectConfig]) -> List[ProjectConfig]:  # noqa: N805
        if not value:
            raise ValueError("At least one project must be configured.")
        names = [project.name for project in value]
        if len(set(names)) != len(names):
            raise ValueError("Project names must be unique.")
        return value

    def project(self, name: str) -> ProjectConfig:
        for project in self.projects:
            if project.name == name:
                return project
        raise ConfigurationError(f"Unknown project '{name}'.")


def _substitute_host(data: Dict[str, Any]) -> Dict[str, Any]:
    restic = data.get("restic")
    if not isinstance(restic, dict):
        return data
    repository = restic.get("repository")
    if not isinstance(repository, str) or HOST_PLACEHOLDER not in repository:
        return data
    host = data.get("host") or socket.gethostname()
    data = dict(data, host=host)
    data["restic"] = dict(restic, repository=repository.replace(HOST_PLACEHOLDER, str(host)))
    return data


def _project_entry(name: Any, value: Any) -> Dict[str, Any]:
    if value is None:
        return {"name": str(name)}
    if isinstance(value, (list, tuple)):
        return {"name": str(name), "volumes": list(value)}
    if isinstance(value, dict):
        return {"name": str(name), "volumes": list(value.get("volumes") or [])}
    raise ValueError(f"Project '{name}' must map to a volume list or a mapping with 'volumes'.")


def load_config(path: Path) -> BackupConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc

    try:
        return BackupConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc
