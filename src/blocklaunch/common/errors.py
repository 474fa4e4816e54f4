from __future__ import annotations

from enum import Enum
from typing import Any, Sequence


class LauncherError(Exception):
    """Base class for every error raised by blocklaunch services."""


class NetworkError(LauncherError):
    """Transient transport failure: connection error, timeout or non-2xx status.

    ``stale`` holds an expired cached copy of the requested document when one
    exists. It is never used automatically; callers decide whether to fall back.
    """

    def __init__(self, message: str, url: str | None = None, stale: Any = None):
        super().__init__(message)
        self.url = url
        self.stale = stale


class ChecksumMismatch(LauncherError):
    def __init__(self, name: str, expected: str | None, observed: str | None):
        super().__init__(f"Checksum mismatch for {name}: expected {expected}, got {observed}")
        self.name = name
        self.expected = expected
        self.observed = observed


class ManifestDataError(LauncherError):
    """The remote document is malformed or violates a trust policy."""


class MissingDescriptorField(ManifestDataError):
    def __init__(self, field: str, document: str):
        super().__init__(f"{document} is missing required field {field!r}")
        self.field = field
        self.document = document


class UnknownVersionError(LauncherError):
    def __init__(self, version_id: str):
        super().__init__(f"Version {version_id!r} is not listed in the version index")
        self.version_id = version_id


class Cancelled(LauncherError):
    pass


class BuildErrorReason(str, Enum):
    MISSING_MAIN_CLASS = "missing_main_class"
    MISSING_CLIENT_JAR = "missing_client_jar"
    UNRESOLVED_LIBRARY = "unresolved_library"


class BuildError(LauncherError):
    def __init__(self, reason: BuildErrorReason, detail: str = ""):
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class LaunchError(LauncherError):
    pass


class AcquisitionFailed(LauncherError):
    def __init__(self, version_id: str, failures: Sequence[Any] = ()):
        names = ", ".join(str(getattr(f, "name", f)) for f in failures) or "see log"
        super().__init__(f"Acquisition of {version_id} failed: {names}")
        self.version_id = version_id
        self.failures = tuple(failures)
