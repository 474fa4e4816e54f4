from __future__ import annotations

from pathlib import PurePosixPath
from typing import Iterable
from urllib.parse import urlparse

from blocklaunch.common.errors import ManifestDataError


def _normalize_host(host: str) -> str:
    return str(host or "").strip().lower().rstrip(".")


def _is_allowed_host(host: str, allowed_hosts: Iterable[str]) -> bool:
    normalized = _normalize_host(host)
    if not normalized:
        return False
    allowed = {_normalize_host(v) for v in allowed_hosts}
    if normalized in allowed:
        return True
    return any(normalized.endswith("." + entry) for entry in allowed)


def validate_trusted_url(url: str, allowed_hosts: Iterable[str], allow_http: bool = False) -> None:
    parsed = urlparse(str(url))
    scheme = (parsed.scheme or "").lower()
    if scheme != "https" and not (allow_http and scheme == "http"):
        raise ManifestDataError(f"Untrusted URL scheme: {url}")
    host = parsed.hostname or ""
    if not _is_allowed_host(host, allowed_hosts):
        raise ManifestDataError(f"Untrusted download host: {host or '<none>'}")


def validate_relative_path(value: str) -> PurePosixPath:
    # Descriptor paths and archive members are always posix-style.
    normalized = str(value or "").replace("\\", "/").strip()
    if not normalized:
        raise ValueError("Empty relative path.")

    path = PurePosixPath(normalized)
    parts = path.parts
    if not parts:
        raise ValueError("Relative path has no parts.")
    if path.is_absolute():
        raise ValueError(f"Path is absolute: {value}")
    if any(part in {"..", ""} for part in parts):
        raise ValueError(f"Path contains traversal segment: {value}")
    if ":" in parts[0]:
        raise ValueError(f"Path contains drive designator: {value}")
    return path
