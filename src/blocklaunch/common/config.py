from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
DEFAULT_RESOURCES_URL = "https://resources.download.minecraft.net"

# Hosts that serve the version index, descriptors, client jars, libraries and asset objects.
TRUSTED_HOSTS: tuple[str, ...] = (
    "piston-meta.mojang.com",
    "piston-data.mojang.com",
    "launchermeta.mojang.com",
    "launcher.mojang.com",
    "libraries.minecraft.net",
    "resources.download.minecraft.net",
)


@dataclass(frozen=True)
class AppPaths:
    game_root: Path
    versions_dir: Path
    libraries_dir: Path
    assets_dir: Path
    asset_indexes_dir: Path
    asset_objects_dir: Path
    cache_dir: Path
    logs_dir: Path
    state_dir: Path

    @classmethod
    def under(cls, game_root: Path) -> "AppPaths":
        game_root = Path(game_root)
        return cls(
            game_root=game_root,
            versions_dir=game_root / "versions",
            libraries_dir=game_root / "libraries",
            assets_dir=game_root / "assets",
            asset_indexes_dir=game_root / "assets" / "indexes",
            asset_objects_dir=game_root / "assets" / "objects",
            cache_dir=game_root / "cache",
            logs_dir=game_root / "logs",
            state_dir=game_root / "state",
        )

    @classmethod
    def default(cls) -> "AppPaths":
        override_root = os.environ.get("BLOCKLAUNCH_HOME", "").strip()
        if override_root:
            return cls.under(Path(override_root))
        return cls.under(Path.home() / ".blocklaunch")

    def version_dir(self, version_id: str) -> Path:
        return self.versions_dir / version_id

    def client_jar(self, version_id: str) -> Path:
        return self.version_dir(version_id) / f"{version_id}.jar"

    def descriptor_file(self, version_id: str) -> Path:
        return self.version_dir(version_id) / f"{version_id}.json"

    def natives_dir(self, version_id: str) -> Path:
        return self.version_dir(version_id) / "natives"

    def library_path(self, relative_path: str) -> Path:
        return self.libraries_dir / Path(*relative_path.split("/"))

    def asset_object_path(self, object_hash: str) -> Path:
        return self.asset_objects_dir / object_hash[:2] / object_hash

    def ensure_layout(self) -> None:
        for path in (
            self.game_root,
            self.versions_dir,
            self.libraries_dir,
            self.assets_dir,
            self.asset_indexes_dir,
            self.asset_objects_dir,
            self.cache_dir,
            self.logs_dir,
            self.state_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RuntimeConfig:
    manifest_url: str = DEFAULT_MANIFEST_URL
    resources_url: str = DEFAULT_RESOURCES_URL
    download_chunk_size: int = 64 * 1024
    connect_timeout_seconds: int = 15
    read_timeout_seconds: int = 20
    max_retries: int = 3
    download_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    max_concurrent_downloads: int = 8
    index_ttl_seconds: int = 10 * 60
    descriptor_ttl_seconds: int = 24 * 60 * 60
    trusted_hosts: tuple[str, ...] = TRUSTED_HOSTS
    allow_insecure_http: bool = False

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        extra_hosts = tuple(
            h.strip() for h in os.environ.get("BLOCKLAUNCH_TRUSTED_HOSTS", "").split(",") if h.strip()
        )
        return cls(
            manifest_url=os.environ.get("BLOCKLAUNCH_MANIFEST_URL", DEFAULT_MANIFEST_URL),
            resources_url=os.environ.get("BLOCKLAUNCH_RESOURCES_URL", DEFAULT_RESOURCES_URL).rstrip("/"),
            download_chunk_size=int(os.environ.get("BLOCKLAUNCH_DOWNLOAD_CHUNK", str(64 * 1024))),
            connect_timeout_seconds=int(os.environ.get("BLOCKLAUNCH_CONNECT_TIMEOUT", "15")),
            read_timeout_seconds=int(os.environ.get("BLOCKLAUNCH_READ_TIMEOUT", "20")),
            max_retries=int(os.environ.get("BLOCKLAUNCH_MAX_RETRIES", "3")),
            download_attempts=max(1, int(os.environ.get("BLOCKLAUNCH_DOWNLOAD_ATTEMPTS", "3"))),
            retry_backoff_seconds=float(os.environ.get("BLOCKLAUNCH_RETRY_BACKOFF", "0.5")),
            max_concurrent_downloads=max(1, int(os.environ.get("BLOCKLAUNCH_MAX_DOWNLOADS", "8"))),
            index_ttl_seconds=int(os.environ.get("BLOCKLAUNCH_INDEX_TTL", str(10 * 60))),
            descriptor_ttl_seconds=int(os.environ.get("BLOCKLAUNCH_DESCRIPTOR_TTL", str(24 * 60 * 60))),
            trusted_hosts=TRUSTED_HOSTS + extra_hosts,
            allow_insecure_http=os.environ.get("BLOCKLAUNCH_ALLOW_HTTP", "") == "1",
        )
