from __future__ import annotations

from pathlib import Path

from volume_backup.config import ProjectConfig
from volume_backup.volumes import FilesystemVolumeResolver


def test_resolve_drops_missing_volumes(tmp_path: Path) -> None:
    (tmp_path / "v1" / "_data").mkdir(parents=True)
    resolver = FilesystemVolumeResolver(base_path=tmp_path)

    resolved = resolver.resolve(ProjectConfig(name="app", volumes=("v1", "v2")))

    assert resolved.paths == [tmp_path / "v1" / "_data"]
    assert resolved.missing == [tmp_path / "v2" / "_data"]
    assert not resolved.empty


def test_volume_without_data_subdirectory_is_missing(tmp_path: Path) -> None:
    (tmp_path / "v1").mkdir()
    resolver = FilesystemVolumeResolver(base_path=tmp_path)

    assert resolver.resolve(ProjectConfig(name="app", volumes=("v1",))).empty


def test_empty_subpath_uses_volume_directory(tmp_path: Path) -> None:
    (tmp_path / "v1").mkdir()
    resolver = FilesystemVolumeResolver(base_path=tmp_path, data_subpath="")

    assert resolver.resolve(ProjectConfig(name="app", volumes=("v1",))).paths == [tmp_path / "v1"]
