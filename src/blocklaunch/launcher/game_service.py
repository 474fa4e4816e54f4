from __future__ import annotations

import logging
from concurrent.futures import Future

import requests

from blocklaunch.common.cache import ContentCache
from blocklaunch.common.config import AppPaths, RuntimeConfig
from blocklaunch.common.errors import LaunchError
from blocklaunch.common.telemetry import Telemetry
from blocklaunch.common.types import RuntimeSettings, VersionRef
from blocklaunch.launcher.acquisition import AcquisitionHandle, AcquisitionOrchestrator
from blocklaunch.launcher.artifact_fetcher import ArtifactFetcher
from blocklaunch.launcher.invocation import InvocationBuilder
from blocklaunch.launcher.manifest_service import ManifestService
from blocklaunch.launcher.process_service import ProcessHandle, ProcessSupervisor
from blocklaunch.launcher.rules import current_platform
from blocklaunch.launcher.version_store import VersionStore


log = logging.getLogger(__name__)


class GameService:
    """Install, list, launch and remove game versions under one game root."""

    def __init__(
        self,
        paths: AppPaths,
        runtime: RuntimeConfig,
        session: requests.Session | None = None,
        platform_name: str | None = None,
        supervisor: ProcessSupervisor | None = None,
    ):
        self.paths = paths
        self.runtime = runtime
        self.platform_name = platform_name or current_platform()
        self.telemetry = Telemetry()
        self.cache = ContentCache(paths.cache_dir)
        self.manifest = ManifestService(paths, runtime, cache=self.cache, telemetry=self.telemetry, session=session)
        self.fetcher = ArtifactFetcher(runtime, session=session)
        self.store = VersionStore(paths)
        self.orchestrator = AcquisitionOrchestrator(
            paths,
            runtime,
            self.manifest,
            fetcher=self.fetcher,
            version_store=self.store,
            telemetry=self.telemetry,
            platform_name=self.platform_name,
        )
        self.builder = InvocationBuilder(paths, platform_name=self.platform_name)
        self.supervisor = supervisor if supervisor is not None else ProcessSupervisor()

    def list_versions(self, include_snapshots: bool = False) -> list[VersionRef]:
        index = self.manifest.fetch_index()
        if include_snapshots:
            return list(index.versions)
        return list(index.releases())

    def installed_versions(self) -> list[str]:
        return self.store.installed_versions()

    def is_installed(self, version_id: str) -> bool:
        return self.store.is_installed(version_id)

    def install(self, version_id: str) -> AcquisitionHandle:
        return self.orchestrator.acquire(version_id)

    def launch(self, version_id: str, settings: RuntimeSettings) -> ProcessHandle:
        if not self.store.is_installed(version_id):
            raise LaunchError(f"Version {version_id} is not installed")
        descriptor = self.store.load_descriptor(version_id)
        with self.telemetry.span(f"launch:{version_id}"):
            spec = self.builder.build(descriptor, settings)
            return self.supervisor.launch(spec)

    def delete(self, version_id: str) -> bool:
        if self.orchestrator.active(version_id) is not None:
            raise LaunchError(f"Version {version_id} is being installed and cannot be deleted")
        return self.store.delete_version(version_id)

    def is_up_to_date(self, version_id: str) -> bool:
        """True when ``version_id`` is the latest release or the latest snapshot."""
        return self.manifest.is_latest(version_id)

    def refresh_versions(self, include_snapshots: bool = False) -> list[VersionRef]:
        self.manifest.refresh_index()
        return self.list_versions(include_snapshots=include_snapshots)

    def prefetch_latest(self) -> dict[str, Future]:
        """Warm the descriptor cache for the latest release and snapshot."""
        index = self.manifest.fetch_index()
        wanted = [v for v in (index.latest_release, index.latest_snapshot) if v]
        return self.manifest.prefetch(wanted)

    def cleanup_cache(self, include_descriptors: bool = False) -> int:
        removed = self.manifest.clear_descriptor_cache() if include_descriptors else 0
        return removed + self.cache.cleanup_expired()
