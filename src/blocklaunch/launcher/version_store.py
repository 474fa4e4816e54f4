from __future__ import annotations

import json
import logging
import shutil
from typing import Any, Mapping

from blocklaunch.common.config import AppPaths
from blocklaunch.common.types import VersionDescriptor
from blocklaunch.launcher.manifest_service import parse_descriptor


log = logging.getLogger(__name__)


class VersionStore:
    """The ``versions/`` part of the local artifact tree."""

    def __init__(self, paths: AppPaths):
        self.paths = paths

    def is_installed(self, version_id: str) -> bool:
        return self.paths.client_jar(version_id).is_file() and self.paths.descriptor_file(version_id).is_file()

    def installed_versions(self) -> list[str]:
        if not self.paths.versions_dir.exists():
            return []
        ids = [p.name for p in self.paths.versions_dir.iterdir() if p.is_dir() and self.is_installed(p.name)]
        return sorted(ids, reverse=True)

    def save_descriptor(self, version_id: str, document: Mapping[str, Any]) -> None:
        path = self.paths.descriptor_file(version_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(dict(document), fh, indent=2)
        tmp.replace(path)
        log.info("Saved descriptor for %s to %s", version_id, path)

    def load_descriptor(self, version_id: str) -> VersionDescriptor:
        path = self.paths.descriptor_file(version_id)
        with path.open("r", encoding="utf-8-sig") as fh:
            return parse_descriptor(json.load(fh))

    def delete_version(self, version_id: str) -> bool:
        version_dir = self.paths.version_dir(version_id)
        if not self.is_installed(version_id):
            log.warning("Version %s is not installed, nothing to delete", version_id)
            return False
        shutil.rmtree(version_dir)
        log.info("Deleted version %s", version_id)
        return True
