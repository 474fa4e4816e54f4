from __future__ import annotations

import hashlib
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

import requests

from blocklaunch.common.config import RuntimeConfig
from blocklaunch.common.errors import Cancelled, ChecksumMismatch, LauncherError, ManifestDataError, NetworkError
from blocklaunch.common.hashing import checksums_match, sha1_file
from blocklaunch.common.http import build_session
from blocklaunch.common.manifest_security import validate_trusted_url
from blocklaunch.common.types import DownloadSpec


log = logging.getLogger(__name__)


class FetchStatus(str, Enum):
    VERIFIED = "verified"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailureReason(str, Enum):
    CHECKSUM_MISMATCH = "checksum_mismatch"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"
    IO_ERROR = "io_error"
    EXTRACTION_ERROR = "extraction_error"
    UNTRUSTED_SOURCE = "untrusted_source"


@dataclass(frozen=True)
class FetchOutcome:
    status: FetchStatus
    destination: Path
    reason: FailureReason | None = None
    detail: str = ""
    expected_sha1: str | None = None
    observed_sha1: str | None = None
    bytes_written: int = 0

    @property
    def ok(self) -> bool:
        return self.status is not FetchStatus.FAILED

    @classmethod
    def failed(cls, destination: Path, reason: FailureReason, detail: str, **extra) -> "FetchOutcome":
        return cls(status=FetchStatus.FAILED, destination=destination, reason=reason, detail=detail, **extra)

    def as_error(self, name: str) -> LauncherError:
        if self.reason is FailureReason.CHECKSUM_MISMATCH:
            return ChecksumMismatch(name, self.expected_sha1, self.observed_sha1)
        if self.reason is FailureReason.TRANSPORT_ERROR:
            return NetworkError(f"{name}: {self.detail}")
        if self.reason is FailureReason.CANCELLED:
            return Cancelled(f"{name}: {self.detail}")
        if self.reason is FailureReason.UNTRUSTED_SOURCE:
            return ManifestDataError(f"{name}: {self.detail}")
        return LauncherError(f"{name}: {self.detail}")


def is_present_and_valid(spec: DownloadSpec, destination: Path, chunk_size: int = 1024 * 1024) -> bool:
    if not destination.is_file():
        return False
    if spec.sha1:
        return checksums_match(spec.sha1, sha1_file(destination, chunk_size=chunk_size))
    if spec.size > 0:
        return destination.stat().st_size == spec.size
    return False


class ArtifactFetcher:
    """Downloads one artifact at a time into its final path, verified.

    Data is streamed to a sibling ``.part`` file and renamed over the
    destination only after the sha1 (and declared size) match, so a partial or
    corrupt file is never observable at the final path. Failures are returned,
    not retried; retry policy belongs to the caller.
    """

    def __init__(self, runtime: RuntimeConfig, session: requests.Session | None = None):
        self.runtime = runtime
        self.session = session if session is not None else build_session(0)

    def fetch(
        self,
        spec: DownloadSpec,
        destination: Path,
        cancel_event: threading.Event | None = None,
        progress: Callable[[int], None] | None = None,
    ) -> FetchOutcome:
        destination = Path(destination)
        chunk_size = self.runtime.download_chunk_size
        try:
            if is_present_and_valid(spec, destination, chunk_size=chunk_size):
                log.debug("Already present and verified, skipping: %s", destination)
                return FetchOutcome(status=FetchStatus.SKIPPED, destination=destination, expected_sha1=spec.sha1)
        except OSError as exc:
            log.warning("Could not verify existing %s, downloading again: %s", destination, exc)

        if cancel_event is not None and cancel_event.is_set():
            return FetchOutcome.failed(destination, FailureReason.CANCELLED, "cancelled before download")

        try:
            validate_trusted_url(spec.url, self.runtime.trusted_hosts, allow_http=self.runtime.allow_insecure_http)
        except ManifestDataError as exc:
            log.error("Refusing to download %s: %s", destination.name, exc)
            return FetchOutcome.failed(destination, FailureReason.UNTRUSTED_SOURCE, str(exc))

        tmp = destination.with_name(f"{destination.name}.{uuid.uuid4().hex[:8]}.part")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            return self._stream(spec, destination, tmp, cancel_event, progress)
        except OSError as exc:
            log.error("Local write failed for %s: %s", destination, exc)
            return FetchOutcome.failed(destination, FailureReason.IO_ERROR, str(exc))
        finally:
            tmp.unlink(missing_ok=True)

    def _stream(
        self,
        spec: DownloadSpec,
        destination: Path,
        tmp: Path,
        cancel_event: threading.Event | None,
        progress: Callable[[int], None] | None,
    ) -> FetchOutcome:
        log.info("Downloading %s -> %s", spec.url, destination)
        digest = hashlib.sha1()
        bytes_done = 0
        try:
            with self.session.get(
                spec.url,
                stream=True,
                timeout=(self.runtime.connect_timeout_seconds, self.runtime.read_timeout_seconds),
            ) as resp:
                resp.raise_for_status()
                with tmp.open("wb") as fh:
                    for chunk in resp.iter_content(chunk_size=self.runtime.download_chunk_size):
                        if cancel_event is not None and cancel_event.is_set():
                            log.info("Download of %s cancelled", spec.url)
                            return FetchOutcome.failed(destination, FailureReason.CANCELLED, "cancelled mid-transfer")
                        if not chunk:
                            continue
                        fh.write(chunk)
                        digest.update(chunk)
                        bytes_done += len(chunk)
                        if progress is not None:
                            progress(len(chunk))
        except requests.RequestException as exc:
            log.warning("Transport error for %s: %s", spec.url, exc)
            return FetchOutcome.failed(destination, FailureReason.TRANSPORT_ERROR, str(exc), bytes_written=bytes_done)

        observed = digest.hexdigest()
        if spec.sha1 and not checksums_match(spec.sha1, observed):
            log.error("Checksum mismatch for %s: expected %s, got %s", spec.url, spec.sha1, observed)
            return FetchOutcome.failed(
                destination,
                FailureReason.CHECKSUM_MISMATCH,
                f"expected {spec.sha1}, got {observed}",
                expected_sha1=spec.sha1,
                observed_sha1=observed,
                bytes_written=bytes_done,
            )
        if spec.size > 0 and bytes_done != spec.size:
            log.error("Size mismatch for %s: expected %d bytes, got %d", spec.url, spec.size, bytes_done)
            return FetchOutcome.failed(
                destination,
                FailureReason.CHECKSUM_MISMATCH,
                f"expected {spec.size} bytes, got {bytes_done}",
                expected_sha1=spec.sha1,
                observed_sha1=observed,
                bytes_written=bytes_done,
            )

        os.replace(tmp, destination)
        return FetchOutcome(
            status=FetchStatus.VERIFIED,
            destination=destination,
            expected_sha1=spec.sha1,
            observed_sha1=observed,
            bytes_written=bytes_done,
        )
