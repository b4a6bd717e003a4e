from __future__ import annotations

from pathlib import Path

import pytest

from volume_backup.config import ConfigurationError, PruneMode, RetentionScope, load_config


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(body, encoding="utf-8")
    return path


BASE = """
host: node-a
volume_base_path: /srv/volumes
restic:
  repository: s3:https://s3.example.com/bucket/{host}
  password: secret
projects:
  app:
    volumes: [app_db, app_files]
  other: [other_data]
  empty: {volumes: []}
"""


def test_load_config_parses_projects_in_order(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, BASE))

    assert [project.name for project in config.projects] == ["app", "other", "empty"]
    assert config.project("app").volumes == ("app_db", "app_files")
    assert config.project("other").volumes == ("other_data",)
    assert config.project("empty").volumes == ()


def test_load_config_substitutes_host_into_repository(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, BASE))

    assert config.host == "node-a"
    assert config.restic.repository == "s3:https://s3.example.com/bucket/node-a"


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, BASE))

    assert (config.retention.keep_daily, config.retention.keep_weekly, config.retention.keep_monthly) == (7, 4, 12)
    assert config.retention.scope == RetentionScope.PROJECT_HOST
    assert config.retention.prune == PruneMode.SPLIT
    assert config.restic.aws.region == "us-east-1"
    assert config.restic.gogc == 20
    assert config.healthchecks_url is None
    assert config.volume_data_subpath == "_data"


def test_healthchecks_url_trailing_slash_is_stripped(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, BASE + "healthchecks_url: https://hc.example.com/ping/abc/\n"))

    assert config.healthchecks_url == "https://hc.example.com/ping/abc"


def test_healthchecks_url_requires_http_scheme(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="http"):
        load_config(_write(tmp_path, BASE + "healthchecks_url: hc.example.com/ping/abc\n"))


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "absent.yml")


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, "projects: [unterminated\n"))


def test_empty_projects_mapping_is_rejected(tmp_path: Path) -> None:
    body = BASE.split("projects:")[0] + "projects: {}\n"
    with pytest.raises(ConfigurationError, match="project"):
        load_config(_write(tmp_path, body))


def test_password_sources_are_exclusive(tmp_path: Path) -> None:
    body = BASE.replace("  password: secret\n", "  password: secret\n  password_env: RESTIC_PASSWORD\n")
    with pytest.raises(ConfigurationError, match="Exactly one"):
        load_config(_write(tmp_path, body))


def test_retention_must_keep_something(tmp_path: Path) -> None:
    body = BASE + "retention: {keep_daily: 0, keep_weekly: 0, keep_monthly: 0}\n"
    with pytest.raises(ConfigurationError, match="keep at least one"):
        load_config(_write(tmp_path, body))


def test_volume_names_cannot_escape_base_path(tmp_path: Path) -> None:
    body = BASE.replace("[other_data]", "[../etc]")
    with pytest.raises(ConfigurationError, match="Invalid volume name"):
        load_config(_write(tmp_path, body))


def test_unknown_project_lookup_raises(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path, BASE))

    with pytest.raises(ConfigurationError, match="Unknown project"):
        config.project("missing")
