from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from blocklaunch.common.types import PlayerIdentity, RuntimeSettings


SETTINGS_FILE_NAME = "settings.v1.json"


@dataclass
class LauncherSettings:
    username: str = "Player"
    max_memory_mb: int = 2048
    java_path: str = ""
    fullscreen: bool = False
    last_version: str = ""

    def runtime_settings(self, identity: PlayerIdentity | None = None) -> RuntimeSettings:
        return RuntimeSettings(
            identity=identity or PlayerIdentity.offline(self.username),
            max_heap_mb=self.max_memory_mb,
            java_path=self.java_path,
            fullscreen=self.fullscreen,
        )


def _settings_file(state_dir: Path) -> Path:
    return state_dir / SETTINGS_FILE_NAME


def load_settings(state_dir: Path) -> LauncherSettings:
    path = _settings_file(state_dir)
    if not path.exists():
        return LauncherSettings()

    with path.open("r", encoding="utf-8-sig") as fh:
        raw: dict[str, Any] = json.load(fh)

    defaults = LauncherSettings()
    return LauncherSettings(
        username=str(raw.get("username") or defaults.username),
        max_memory_mb=int(raw.get("max_memory_mb", defaults.max_memory_mb)),
        java_path=str(raw.get("java_path") or ""),
        fullscreen=bool(raw.get("fullscreen", False)),
        last_version=str(raw.get("last_version") or ""),
    )


def save_settings(state_dir: Path, settings: LauncherSettings) -> None:
    path = _settings_file(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(asdict(settings), fh, indent=2, sort_keys=True)
    tmp.replace(path)
