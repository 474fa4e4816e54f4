from __future__ import annotations

import json
import logging
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from blocklaunch.common.config import AppPaths, RuntimeConfig
from blocklaunch.common.errors import AcquisitionFailed, Cancelled, LauncherError, ManifestDataError
from blocklaunch.common.telemetry import Telemetry
from blocklaunch.common.types import (
    AcquisitionState,
    AssetIndex,
    DownloadSpec,
    VersionDescriptor,
)
from blocklaunch.launcher.artifact_fetcher import ArtifactFetcher, FailureReason, FetchOutcome
from blocklaunch.launcher.manifest_service import ManifestService, parse_asset_index
from blocklaunch.launcher.natives import extract_natives
from blocklaunch.launcher.rules import applies, current_platform, native_artifact
from blocklaunch.launcher.version_store import VersionStore


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadJob:
    name: str
    spec: DownloadSpec
    destination: Path
    natives_target: Path | None = None
    extract_exclude: tuple[str, ...] = ()

    @property
    def weight(self) -> int:
        return self.spec.size if self.spec.size > 0 else 1


@dataclass(frozen=True)
class ArtifactFailure:
    name: str
    destination: Path
    reason: FailureReason
    detail: str = ""


def plan_downloads(
    descriptor: VersionDescriptor,
    paths: AppPaths,
    platform_name: str,
    asset_index: AssetIndex | None = None,
    resources_url: str = "",
) -> list[DownloadJob]:
    """Every library, native and asset object download the descriptor needs on ``platform_name``.

    Jobs are keyed by destination, so entries that share a file are fetched once.
    """
    jobs: dict[Path, DownloadJob] = {}

    def add(job: DownloadJob) -> None:
        if job.destination in jobs:
            log.debug("%s shares %s with %s", job.name, job.destination, jobs[job.destination].name)
            return
        jobs[job.destination] = job

    for library in descriptor.libraries:
        if not applies(library, platform_name):
            log.debug("Library %s excluded on %s", library.name, platform_name)
            continue
        if library.artifact is not None:
            add(DownloadJob(library.name, library.artifact, paths.library_path(library.artifact.path)))
        native = native_artifact(library, platform_name)
        if native is not None:
            add(
                DownloadJob(
                    f"{library.name} (natives-{platform_name})",
                    native,
                    paths.library_path(native.path),
                    natives_target=paths.natives_dir(descriptor.id),
                    extract_exclude=library.extract_exclude,
                )
            )

    if asset_index is not None:
        base = resources_url.rstrip("/")
        for obj in asset_index.objects:
            prefix = obj.hash[:2]
            spec = DownloadSpec(url=f"{base}/{prefix}/{obj.hash}", path=f"{prefix}/{obj.hash}", sha1=obj.hash, size=obj.size)
            add(DownloadJob(obj.name, spec, paths.asset_object_path(obj.hash)))

    return list(jobs.values())


class AcquisitionHandle:
    """Observable, cancellable view of one in-flight acquisition."""

    def __init__(self, version_id: str):
        self.version_id = version_id
        self.descriptor: VersionDescriptor | None = None
        self._lock = threading.Lock()
        # Serializes listener calls so every listener sees a non-decreasing sequence.
        self._emit_lock = threading.Lock()
        self._state = AcquisitionState.PENDING
        self._progress = 0.0
        self._failures: tuple[ArtifactFailure, ...] = ()
        self._error: LauncherError | None = None
        self._done = threading.Event()
        self._cancel = threading.Event()
        self._progress_listeners: list[Callable[[float], None]] = []
        self._done_listeners: list[Callable[["AcquisitionHandle"], None]] = []

    @property
    def state(self) -> AcquisitionState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def failures(self) -> tuple[ArtifactFailure, ...]:
        with self._lock:
            return self._failures

    @property
    def error(self) -> LauncherError | None:
        with self._lock:
            return self._error

    @property
    def succeeded(self) -> bool:
        return self.state is AcquisitionState.SUCCEEDED

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the acquisition is terminal; returns False on timeout."""
        return self._done.wait(timeout)

    def result(self, timeout: float | None = None) -> bool:
        if not self.wait(timeout):
            raise TimeoutError(f"Acquisition of {self.version_id} still running")
        return self.succeeded

    def cancel(self) -> bool:
        if self.state.terminal:
            return False
        log.info("Cancellation requested for %s", self.version_id)
        self._cancel.set()
        return True

    def add_progress_listener(self, callback: Callable[[float], None]) -> None:
        with self._lock:
            self._progress_listeners.append(callback)

    def add_done_listener(self, callback: Callable[["AcquisitionHandle"], None]) -> None:
        with self._lock:
            if not self._done.is_set():
                self._done_listeners.append(callback)
                return
        self._call(callback, self)

    @staticmethod
    def _call(callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            log.exception("Acquisition listener failed.")

    def _mark_running(self) -> None:
        with self._lock:
            self._state = AcquisitionState.RUNNING

    def _report_progress(self, fraction: float) -> None:
        with self._emit_lock:
            with self._lock:
                fraction = max(self._progress, min(1.0, fraction))
                if fraction == self._progress:
                    return
                self._progress = fraction
                listeners = list(self._progress_listeners)
            for callback in listeners:
                self._call(callback, fraction)

    def _finish(self, success: bool, failures: tuple[ArtifactFailure, ...], error: LauncherError | None) -> None:
        with self._lock:
            self._state = AcquisitionState.SUCCEEDED if success else AcquisitionState.FAILED
            self._failures = failures
            self._error = error
            if success:
                self._progress = 1.0
            self._done.set()

    def _notify_done(self) -> None:
        with self._lock:
            listeners, self._done_listeners = self._done_listeners, []
            progress_listeners = list(self._progress_listeners) if self._state is AcquisitionState.SUCCEEDED else []
        with self._emit_lock:
            for callback in progress_listeners:
                self._call(callback, 1.0)
        for callback in listeners:
            self._call(callback, self)


class _ProgressTracker:
    """Weighted progress over a job set that becomes final once every job is registered."""

    def __init__(self, handle: AcquisitionHandle):
        self._handle = handle
        self._lock = threading.Lock()
        self._weights: dict[str, int] = {}
        self._credit: dict[str, int] = {}
        self._total = 0
        self._credited = 0
        self._final = False

    def register(self, key: str, weight: int) -> None:
        with self._lock:
            if key in self._weights:
                return
            self._weights[key] = weight
            self._credit[key] = 0
            self._total += weight

    def finalize(self) -> None:
        with self._lock:
            self._final = True
        self._publish()

    def advance(self, key: str, amount: int) -> None:
        self._set_credit(key, lambda current, weight: min(weight, current + amount))

    def complete(self, key: str) -> None:
        self._set_credit(key, lambda current, weight: weight)

    def _set_credit(self, key: str, update: Callable[[int, int], int]) -> None:
        with self._lock:
            if key not in self._weights:
                return
            current = self._credit[key]
            new = update(current, self._weights[key])
            self._credit[key] = new
            self._credited += new - current
        self._publish()

    def _publish(self) -> None:
        with self._lock:
            if not self._final:
                return
            fraction = self._credited / self._total if self._total else 0.0
        # 1.0 is published by the handle itself, once the acquisition is terminal.
        self._handle._report_progress(min(fraction, 0.999))


class AcquisitionOrchestrator:
    """Drives acquisitions: one background task per version id, fan-out on a bounded pool."""

    def __init__(
        self,
        paths: AppPaths,
        runtime: RuntimeConfig,
        manifest: ManifestService,
        fetcher: ArtifactFetcher | None = None,
        version_store: VersionStore | None = None,
        telemetry: Telemetry | None = None,
        platform_name: str | None = None,
    ):
        self.paths = paths
        self.runtime = runtime
        self.manifest = manifest
        self.fetcher = fetcher if fetcher is not None else ArtifactFetcher(runtime)
        self.version_store = version_store if version_store is not None else VersionStore(paths)
        self.telemetry = telemetry if telemetry is not None else manifest.telemetry
        self.platform_name = platform_name or current_platform()
        self._tasks: dict[str, AcquisitionHandle] = {}
        self._lock = threading.Lock()

    def acquire(self, version_id: str) -> AcquisitionHandle:
        with self._lock:
            handle = self._tasks.get(version_id)
            if handle is not None:
                log.info("Acquisition of %s already in flight, returning existing handle", version_id)
                return handle
            handle = AcquisitionHandle(version_id)
            self._tasks[version_id] = handle

        thread = threading.Thread(
            target=self._run,
            args=(handle,),
            daemon=True,
            name=f"blocklaunch-acquire-{version_id}",
        )
        thread.start()
        return handle

    def active(self, version_id: str) -> AcquisitionHandle | None:
        with self._lock:
            return self._tasks.get(version_id)

    def _run(self, handle: AcquisitionHandle) -> None:
        handle._mark_running()
        success = False
        failures: list[ArtifactFailure] = []
        error: LauncherError | None = None
        try:
            with self.telemetry.span(f"acquire:{handle.version_id}", slow_after=60.0):
                self._acquire(handle, failures)
            success = True
        except LauncherError as exc:
            error = exc
            log.error("Acquisition of %s failed: %s", handle.version_id, exc)
        except Exception as exc:
            log.exception("Acquisition of %s crashed", handle.version_id)
            error = LauncherError(f"Unexpected error acquiring {handle.version_id}: {exc}")
        finally:
            self.telemetry.increment("acquisition_succeeded" if success else "acquisition_failed")
            with self._lock:
                if self._tasks.get(handle.version_id) is handle:
                    del self._tasks[handle.version_id]
                handle._finish(success, tuple(failures), error)
            handle._notify_done()

    def _acquire(self, handle: AcquisitionHandle, failures: list[ArtifactFailure]) -> None:
        version_id = handle.version_id
        cancel = handle._cancel
        tracker = _ProgressTracker(handle)

        log.info("Acquiring version %s for %s", version_id, self.platform_name)
        descriptor = self.manifest.resolve(version_id)
        handle.descriptor = descriptor
        self._raise_if_cancelled(handle)

        primary = DownloadJob(f"{version_id}.jar", descriptor.client, self.paths.client_jar(version_id))
        tracker.register(str(primary.destination), primary.weight)
        outcome = self._run_job(primary, cancel, tracker)
        self._raise_if_cancelled(handle)
        if not outcome.ok:
            failures.append(self._failure(primary, outcome))
            raise AcquisitionFailed(version_id, failures) from outcome.as_error(primary.name)

        asset_index = None
        if descriptor.asset_index is not None:
            ref = descriptor.asset_index
            index_job = DownloadJob(
                f"asset index {ref.id}",
                DownloadSpec(url=ref.url, path=f"{ref.id}.json", sha1=ref.sha1, size=ref.size),
                self.paths.asset_indexes_dir / f"{ref.id}.json",
            )
            tracker.register(str(index_job.destination), index_job.weight)
            outcome = self._run_job(index_job, cancel, tracker)
            self._raise_if_cancelled(handle)
            if not outcome.ok:
                failures.append(self._failure(index_job, outcome))
                raise AcquisitionFailed(version_id, failures) from outcome.as_error(index_job.name)
            try:
                with index_job.destination.open("r", encoding="utf-8") as fh:
                    asset_index = parse_asset_index(json.load(fh), ref.id)
            except ValueError as exc:
                raise ManifestDataError(f"Asset index {ref.id} is not valid JSON") from exc

        jobs = plan_downloads(descriptor, self.paths, self.platform_name, asset_index, self.runtime.resources_url)
        for job in jobs:
            tracker.register(str(job.destination), job.weight)
        tracker.finalize()
        log.info("Fetching %d library and asset files for %s", len(jobs), version_id)

        if jobs:
            with ThreadPoolExecutor(
                max_workers=self.runtime.max_concurrent_downloads,
                thread_name_prefix=f"blocklaunch-fetch-{version_id}",
            ) as pool:
                futures = {pool.submit(self._run_job, job, cancel, tracker): job for job in jobs}
                for future in as_completed(futures):
                    job = futures[future]
                    outcome = future.result()
                    if not outcome.ok:
                        failures.append(self._failure(job, outcome))

        self._raise_if_cancelled(handle)
        if failures:
            for failure in failures:
                log.error("  %s -> %s: %s %s", failure.name, failure.destination, failure.reason.value, failure.detail)
            raise AcquisitionFailed(version_id, failures)

        self.version_store.save_descriptor(version_id, descriptor.raw)
        log.info("Version %s acquired (%d files checked)", version_id, len(jobs) + 1)

    @staticmethod
    def _raise_if_cancelled(handle: AcquisitionHandle) -> None:
        if handle.cancel_requested:
            raise Cancelled(f"Acquisition of {handle.version_id} was cancelled")

    @staticmethod
    def _failure(job: DownloadJob, outcome: FetchOutcome) -> ArtifactFailure:
        return ArtifactFailure(
            name=job.name,
            destination=job.destination,
            reason=outcome.reason or FailureReason.TRANSPORT_ERROR,
            detail=outcome.detail,
        )

    def _run_job(self, job: DownloadJob, cancel: threading.Event, tracker: _ProgressTracker) -> FetchOutcome:
        key = str(job.destination)
        attempt = 0
        while True:
            attempt += 1
            if cancel.is_set():
                outcome = FetchOutcome.failed(job.destination, FailureReason.CANCELLED, "not started")
                break
            outcome = self.fetcher.fetch(
                job.spec,
                job.destination,
                cancel_event=cancel,
                progress=lambda n: tracker.advance(key, n),
            )
            if outcome.reason is not FailureReason.TRANSPORT_ERROR or attempt >= self.runtime.download_attempts:
                break
            delay = self.runtime.retry_backoff_seconds * (2 ** (attempt - 1))
            log.warning(
                "Attempt %d/%d for %s failed (%s); retrying in %.1fs",
                attempt,
                self.runtime.download_attempts,
                job.name,
                outcome.detail,
                delay,
            )
            if cancel.wait(delay):
                outcome = FetchOutcome.failed(job.destination, FailureReason.CANCELLED, "cancelled during backoff")
                break

        if outcome.ok and job.natives_target is not None:
            try:
                extract_natives(job.destination, job.natives_target, job.extract_exclude)
            except (OSError, ValueError, zipfile.BadZipFile) as exc:
                log.error("Could not extract natives from %s: %s", job.destination, exc)
                outcome = FetchOutcome.failed(job.destination, FailureReason.EXTRACTION_ERROR, str(exc))

        tracker.complete(key)
        return outcome
