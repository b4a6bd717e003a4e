from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .config import BackupConfig, ProjectConfig

LOG = logging.getLogger(__name__)


@dataclass
class ResolvedVolumes:
    paths: List[Path] = field(default_factory=list)
    missing: List[Path] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.paths


@dataclass
class FilesystemVolumeResolver:
    """Maps volume names to data directories under a host-mounted base path."""

    base_path: Path
    data_subpath: str = "_data"

    def volume_path(self, volume: str) -> Path:
        path = self.base_path / volume
        if self.data_subpath:
            path = path / self.data_subpath
        return path

    def resolve(self, project: ProjectConfig) -> ResolvedVolumes:
        resolved = ResolvedVolumes()
        for volume in project.volumes:
            path = self.volume_path(volume)
            if path.is_dir():
                LOG.info("[%s] found volume path %s", project.name, path)
                resolved.paths.append(path)
            else:
                LOG.warning("[%s] missing volume path %s; skipping volume", project.name, path)
                resolved.missing.append(path)
        return resolved


def build_volume_resolver(config: BackupConfig) -> FilesystemVolumeResolver:
    return FilesystemVolumeResolver(base_path=config.volume_base_path, data_subpath=config.volume_data_subpath)
