from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


RELEASE = "release"
SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class VersionRef:
    id: str
    kind: str
    url: str
    release_time: str = ""
    time: str = ""
    sha1: str | None = None


@dataclass(frozen=True)
class VersionIndex:
    latest_release: str | None
    latest_snapshot: str | None
    versions: tuple[VersionRef, ...]

    def find(self, version_id: str) -> VersionRef | None:
        for ref in self.versions:
            if ref.id == version_id:
                return ref
        return None

    def of_kind(self, kind: str) -> tuple[VersionRef, ...]:
        return tuple(ref for ref in self.versions if ref.kind == kind)

    def releases(self) -> tuple[VersionRef, ...]:
        return self.of_kind(RELEASE)

    def snapshots(self) -> tuple[VersionRef, ...]:
        return self.of_kind(SNAPSHOT)

    def latest(self, kind: str = RELEASE) -> VersionRef | None:
        version_id = self.latest_snapshot if kind == SNAPSHOT else self.latest_release
        if not version_id:
            return None
        return self.find(version_id)


@dataclass(frozen=True)
class DownloadSpec:
    url: str
    path: str
    sha1: str | None = None
    size: int = 0


@dataclass(frozen=True)
class Rule:
    action: str
    os_name: str | None = None


@dataclass(frozen=True)
class LibraryEntry:
    name: str
    artifact: DownloadSpec | None = None
    natives: Mapping[str, DownloadSpec] = field(default_factory=dict)
    rules: tuple[Rule, ...] = ()
    extract_exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class AssetIndexRef:
    id: str
    url: str
    sha1: str | None = None
    size: int = 0
    total_size: int = 0


@dataclass(frozen=True)
class AssetObject:
    name: str
    hash: str
    size: int = 0


@dataclass(frozen=True)
class AssetIndex:
    id: str
    objects: tuple[AssetObject, ...]


@dataclass(frozen=True)
class VersionDescriptor:
    id: str
    main_class: str | None
    client: DownloadSpec
    libraries: tuple[LibraryEntry, ...] = ()
    asset_index: AssetIndexRef | None = None
    minimum_launcher_version: int = 0
    kind: str = RELEASE
    release_time: str = ""
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


class AcquisitionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (AcquisitionState.SUCCEEDED, AcquisitionState.FAILED)


@dataclass(frozen=True)
class PlayerIdentity:
    name: str
    uuid: str
    access_token: str = "0"
    user_type: str = "offline"

    @classmethod
    def offline(cls, name: str) -> "PlayerIdentity":
        # Name-based (version 3) UUID over "OfflinePlayer:<lowercase name>".
        digest_input = ("OfflinePlayer:" + name.lower()).encode("utf-8")
        offline_uuid = uuid.UUID(bytes=hashlib.md5(digest_input).digest(), version=3)
        return cls(name=name, uuid=str(offline_uuid))


@dataclass(frozen=True)
class RuntimeSettings:
    identity: PlayerIdentity
    max_heap_mb: int = 2048
    java_path: str = ""
    fullscreen: bool = False


@dataclass(frozen=True)
class LaunchSpec:
    version_id: str
    command: tuple[str, ...]
    working_dir: str
    classpath: tuple[str, ...]
    natives_dir: str
