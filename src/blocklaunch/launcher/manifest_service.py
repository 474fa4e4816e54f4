from __future__ import annotations

import functools
import hashlib
import json
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable, TypeVar

import requests

from blocklaunch.common.cache import ContentCache
from blocklaunch.common.config import AppPaths, RuntimeConfig
from blocklaunch.common.errors import (
    ChecksumMismatch,
    ManifestDataError,
    MissingDescriptorField,
    NetworkError,
    UnknownVersionError,
)
from blocklaunch.common.hashing import checksums_match
from blocklaunch.common.http import build_session
from blocklaunch.common.manifest_security import validate_relative_path, validate_trusted_url
from blocklaunch.common.telemetry import Telemetry
from blocklaunch.common.types import (
    RELEASE,
    SNAPSHOT,
    AssetIndex,
    AssetIndexRef,
    AssetObject,
    DownloadSpec,
    LibraryEntry,
    Rule,
    VersionDescriptor,
    VersionIndex,
    VersionRef,
)
from blocklaunch.launcher.rules import ALLOW, DISALLOW, resolve_classifier_key


log = logging.getLogger(__name__)

T = TypeVar("T")

_SHA1_RE = re.compile(r"^[0-9a-fA-F]{40}$")


def cache_file_name(url: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9.-]", "_", url)[:80]
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}.json"


def library_path_from_name(name: str) -> str:
    """Maven coordinate ``group:artifact:version[:classifier]`` to its repository path."""
    parts = name.split(":")
    if len(parts) < 3 or not all(parts[:3]):
        raise ManifestDataError(f"Library name is not a maven coordinate: {name!r}")
    group, artifact, version = parts[:3]
    classifier = f"-{parts[3]}" if len(parts) > 3 and parts[3] else ""
    return "/".join([*group.split("."), artifact, version, f"{artifact}-{version}{classifier}.jar"])


def _require(data: dict, key: str, document: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise MissingDescriptorField(key, document)
    return value


def _as_dict(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestDataError(f"{what} must be an object")
    return value


def _checked_path(value: str, what: str) -> str:
    try:
        return str(validate_relative_path(value))
    except ValueError as exc:
        raise ManifestDataError(f"{what}: {exc}") from exc


def _sha1_or_none(value: Any, what: str) -> str | None:
    if value is None or value == "":
        return None
    text = str(value).strip()
    if not _SHA1_RE.match(text):
        raise ManifestDataError(f"{what} has a malformed sha1: {text!r}")
    return text.lower()


def _as_int(value: Any, what: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ManifestDataError(f"{what} must be a number, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ManifestDataError(f"{what} must be a number, got {value!r}") from exc
    if number < 0:
        raise ManifestDataError(f"{what} must not be negative, got {number}")
    return number


def _version_id(value: Any) -> str:
    # Ids name directories under versions/.
    text = str(value).strip()
    if text in {".", ".."} or "/" in text or "\\" in text:
        raise ManifestDataError(f"Version id is not usable as a directory name: {text!r}")
    return text


def parse_index(data: Any) -> VersionIndex:
    if not isinstance(data, dict):
        raise ManifestDataError("Version index must be a JSON object")
    raw_versions = data.get("versions")
    if not isinstance(raw_versions, list):
        raise MissingDescriptorField("versions", "version index")

    refs: list[VersionRef] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw_versions):
        item = _as_dict(item, f"versions[{idx}]")
        version_id = _version_id(_require(item, "id", f"versions[{idx}]"))
        if version_id in seen:
            raise ManifestDataError(f"Version index lists {version_id!r} more than once")
        seen.add(version_id)
        refs.append(
            VersionRef(
                id=version_id,
                kind=str(item.get("type") or RELEASE),
                url=str(_require(item, "url", f"versions[{idx}]")).strip(),
                release_time=str(item.get("releaseTime") or ""),
                time=str(item.get("time") or ""),
                sha1=_sha1_or_none(item.get("sha1"), f"versions[{idx}]"),
            )
        )

    latest = _as_dict(data.get("latest"), "latest")
    return VersionIndex(
        latest_release=latest.get(RELEASE) or None,
        latest_snapshot=latest.get(SNAPSHOT) or None,
        versions=tuple(refs),
    )


def _parse_download(raw: Any, document: str, default_path: str | None = None) -> DownloadSpec:
    raw = _as_dict(raw, document)
    url = str(_require(raw, "url", document)).strip()
    path = raw.get("path") or default_path
    if not path:
        raise MissingDescriptorField("path", document)
    return DownloadSpec(
        url=url,
        path=_checked_path(str(path), document),
        sha1=_sha1_or_none(raw.get("sha1"), document),
        size=_as_int(raw.get("size"), f"{document}.size"),
    )


def _parse_rules(raw_rules: Any, document: str) -> tuple[Rule, ...]:
    if raw_rules is None:
        return ()
    if not isinstance(raw_rules, list):
        raise ManifestDataError(f"{document}.rules must be a list")
    rules: list[Rule] = []
    for idx, raw in enumerate(raw_rules):
        raw = _as_dict(raw, f"{document}.rules[{idx}]")
        action = str(_require(raw, "action", f"{document}.rules[{idx}]"))
        if action not in (ALLOW, DISALLOW):
            raise ManifestDataError(f"{document}.rules[{idx}] has unknown action {action!r}")
        os_name = _as_dict(raw.get("os"), f"{document}.rules[{idx}].os").get("name")
        rules.append(Rule(action=action, os_name=str(os_name) if os_name else None))
    return tuple(rules)


def _parse_library(raw: Any, idx: int, arch_bits: str | None) -> LibraryEntry:
    document = f"libraries[{idx}]"
    raw = _as_dict(raw, document)
    name = str(_require(raw, "name", document)).strip()
    downloads = _as_dict(raw.get("downloads"), f"{document}.downloads")

    artifact = None
    if downloads.get("artifact") is not None:
        artifact = _parse_download(
            downloads["artifact"],
            f"{document}.downloads.artifact",
            default_path=library_path_from_name(name),
        )

    natives: dict[str, DownloadSpec] = {}
    classifiers = _as_dict(downloads.get("classifiers"), f"{document}.downloads.classifiers")
    for platform_name, classifier in _as_dict(raw.get("natives"), f"{document}.natives").items():
        key = resolve_classifier_key(str(classifier), arch_bits)
        if key not in classifiers:
            log.debug("Library %s has no %s classifier download for %s", name, key, platform_name)
            continue
        natives[str(platform_name)] = _parse_download(
            classifiers[key],
            f"{document}.downloads.classifiers.{key}",
            default_path=library_path_from_name(f"{name}:{key}"),
        )

    exclude = _as_dict(raw.get("extract"), f"{document}.extract").get("exclude") or []
    return LibraryEntry(
        name=name,
        artifact=artifact,
        natives=natives,
        rules=_parse_rules(raw.get("rules"), document),
        extract_exclude=tuple(str(v) for v in exclude),
    )


def _check_download_urls(descriptor: VersionDescriptor, trusted_hosts: Iterable[str], allow_http: bool) -> None:
    urls = [("downloads.client", descriptor.client.url)]
    for library in descriptor.libraries:
        if library.artifact is not None:
            urls.append((library.name, library.artifact.url))
        urls.extend((f"{library.name} natives-{key}", spec.url) for key, spec in library.natives.items())
    if descriptor.asset_index is not None:
        urls.append(("assetIndex", descriptor.asset_index.url))
    for what, url in urls:
        try:
            validate_trusted_url(url, trusted_hosts, allow_http=allow_http)
        except ManifestDataError as exc:
            raise ManifestDataError(f"version descriptor {descriptor.id} {what}: {exc}") from exc


def parse_descriptor(
    data: Any,
    arch_bits: str | None = None,
    trusted_hosts: Iterable[str] | None = None,
    allow_http: bool = False,
) -> VersionDescriptor:
    """Parse a version descriptor document.

    With ``trusted_hosts`` every download URL it names (client, libraries,
    native classifiers, asset index) must pass the host policy, so a bad
    descriptor is rejected before anything is downloaded.
    """
    if not isinstance(data, dict):
        raise ManifestDataError("Version descriptor must be a JSON object")
    version_id = _version_id(_require(data, "id", "version descriptor"))
    document = f"version descriptor {version_id}"
    main_class = str(_require(data, "mainClass", document))

    downloads = _as_dict(data.get("downloads"), f"{document} downloads")
    if downloads.get("client") is None:
        raise MissingDescriptorField("downloads.client", document)
    client = _parse_download(downloads["client"], f"{document} downloads.client", default_path=f"{version_id}.jar")
    if client.sha1 is None:
        raise MissingDescriptorField("downloads.client.sha1", document)

    raw_libraries = data.get("libraries") or []
    if not isinstance(raw_libraries, list):
        raise ManifestDataError(f"{document} libraries must be a list")
    libraries = tuple(_parse_library(raw, idx, arch_bits) for idx, raw in enumerate(raw_libraries))

    asset_index = None
    raw_index = data.get("assetIndex")
    if raw_index is not None:
        raw_index = _as_dict(raw_index, f"{document} assetIndex")
        asset_index = AssetIndexRef(
            id=_checked_path(str(_require(raw_index, "id", f"{document} assetIndex")), "assetIndex.id"),
            url=str(_require(raw_index, "url", f"{document} assetIndex")).strip(),
            sha1=_sha1_or_none(raw_index.get("sha1"), f"{document} assetIndex"),
            size=_as_int(raw_index.get("size"), f"{document} assetIndex.size"),
            total_size=_as_int(raw_index.get("totalSize"), f"{document} assetIndex.totalSize"),
        )

    descriptor = VersionDescriptor(
        id=version_id,
        main_class=main_class,
        client=client,
        libraries=libraries,
        asset_index=asset_index,
        minimum_launcher_version=_as_int(data.get("minimumLauncherVersion"), f"{document} minimumLauncherVersion"),
        kind=str(data.get("type") or RELEASE),
        release_time=str(data.get("releaseTime") or ""),
        raw=data,
    )
    if trusted_hosts is not None:
        _check_download_urls(descriptor, trusted_hosts, allow_http)
    return descriptor


def parse_asset_index(data: Any, index_id: str) -> AssetIndex:
    if not isinstance(data, dict):
        raise ManifestDataError(f"Asset index {index_id} must be a JSON object")
    objects: list[AssetObject] = []
    for name, raw in _as_dict(data.get("objects"), f"asset index {index_id} objects").items():
        raw = _as_dict(raw, f"asset {name}")
        object_hash = _sha1_or_none(raw.get("hash"), f"asset {name}")
        if object_hash is None:
            raise MissingDescriptorField("hash", f"asset {name}")
        size = _as_int(raw.get("size"), f"asset {name} size")
        objects.append(AssetObject(name=str(name), hash=object_hash, size=size))
    return AssetIndex(id=index_id, objects=tuple(objects))


class ManifestService:
    def __init__(
        self,
        paths: AppPaths,
        runtime: RuntimeConfig,
        cache: ContentCache | None = None,
        telemetry: Telemetry | None = None,
        session: requests.Session | None = None,
    ):
        self.paths = paths
        self.runtime = runtime
        self.cache = cache if cache is not None else ContentCache(paths.cache_dir)
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.session = session if session is not None else build_session(runtime.max_retries)
        self._lock = threading.Lock()
        self._descriptor_urls: set[str] = set()

    def fetch_index(self) -> VersionIndex:
        with self.telemetry.span("fetch_index", slow_after=2.0):
            return self._fetch_document(self.runtime.manifest_url, self.runtime.index_ttl_seconds, parse_index)

    def fetch_descriptor(self, ref: VersionRef) -> VersionDescriptor:
        parse = functools.partial(
            parse_descriptor,
            trusted_hosts=self.runtime.trusted_hosts,
            allow_http=self.runtime.allow_insecure_http,
        )
        with self._lock:
            self._descriptor_urls.add(ref.url)
        with self.telemetry.span(f"fetch_descriptor:{ref.id}", slow_after=3.0):
            descriptor = self._fetch_document(
                ref.url, self.runtime.descriptor_ttl_seconds, parse, expected_sha1=ref.sha1
            )
        if descriptor.id != ref.id:
            raise ManifestDataError(f"Descriptor at {ref.url} describes {descriptor.id!r}, expected {ref.id!r}")
        return descriptor

    def resolve(self, version_id: str) -> VersionDescriptor:
        ref = self.fetch_index().find(version_id)
        if ref is None:
            raise UnknownVersionError(version_id)
        return self.fetch_descriptor(ref)

    def latest_release(self) -> VersionRef | None:
        return self.fetch_index().latest(RELEASE)

    def latest_snapshot(self) -> VersionRef | None:
        return self.fetch_index().latest(SNAPSHOT)

    def is_latest(self, version_id: str) -> bool:
        index = self.fetch_index()
        return version_id in (index.latest_release, index.latest_snapshot)

    def refresh_index(self) -> VersionIndex:
        """Drop both cached copies of the version index and fetch it again."""
        url = self.runtime.manifest_url
        self.cache.remove(url)
        self.cache.remove_from_disk(cache_file_name(url))
        log.info("Version index cache dropped, refetching %s", url)
        return self.fetch_index()

    def clear_descriptor_cache(self) -> int:
        """Forget every cached version descriptor, in memory and on disk.

        Covers descriptors fetched by this service and any listed in the cached
        version index, so entries left by an earlier run are removed too.
        """
        with self._lock:
            urls = set(self._descriptor_urls)
            self._descriptor_urls.clear()
        index = self.cache.get(self.runtime.manifest_url)
        if index is None:
            index = self._stale_copy(cache_file_name(self.runtime.manifest_url), parse_index)
        if index is not None:
            urls.update(ref.url for ref in index.versions)

        removed = 0
        for url in urls:
            self.cache.remove(url)
            path = self.cache.cache_dir / cache_file_name(url)
            if path.exists():
                self.cache.remove_from_disk(path.name)
                removed += 1
        log.info("Cleared %d cached version descriptors", removed)
        return removed

    def prefetch(self, version_ids: Iterable[str]) -> dict[str, Future]:
        """Warm the descriptor cache in the background.

        Returns one future per requested id; each resolves to the parsed
        descriptor or carries the error that fetching it raised.
        """
        ids = list(dict.fromkeys(version_ids))
        if not ids:
            return {}
        executor = ThreadPoolExecutor(
            max_workers=min(len(ids), self.runtime.max_concurrent_downloads),
            thread_name_prefix="blocklaunch-prefetch",
        )
        try:
            futures = {version_id: executor.submit(self.resolve, version_id) for version_id in ids}
        finally:
            executor.shutdown(wait=False)
        for version_id, future in futures.items():
            future.add_done_callback(functools.partial(self._log_prefetch, version_id))
        return futures

    @staticmethod
    def _log_prefetch(version_id: str, future: Future) -> None:
        error = future.exception()
        if error is None:
            log.debug("Prefetched descriptor %s", version_id)
        else:
            log.warning("Prefetch of %s failed: %s", version_id, error)

    def _fetch_document(
        self,
        url: str,
        ttl_seconds: int,
        parse: Callable[[Any], T],
        expected_sha1: str | None = None,
    ) -> T:
        cached = self.cache.get(url)
        if cached is not None:
            log.debug("Memory cache hit for %s", url)
            return cached

        disk_name = cache_file_name(url)
        on_disk = self.cache.load_from_disk(disk_name, ttl_seconds)
        if on_disk is not None:
            try:
                _verify_body(url, on_disk, expected_sha1)
                document = parse(json.loads(on_disk))
            except (ValueError, ManifestDataError, ChecksumMismatch):
                log.warning("Discarding unreadable disk cache entry for %s", url)
                self.cache.remove_from_disk(disk_name)
            else:
                log.debug("Disk cache hit for %s", url)
                self.cache.put(url, document, ttl_seconds)
                return document

        try:
            body = self._get(url)
        except NetworkError as exc:
            stale = self._stale_copy(disk_name, parse, expected_sha1)
            raise NetworkError(str(exc), url=url, stale=stale) from exc

        _verify_body(url, body, expected_sha1)
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ManifestDataError(f"Response from {url} is not valid JSON") from exc
        document = parse(data)
        self.cache.put(url, document, ttl_seconds)
        self.cache.save_to_disk(disk_name, body)
        return document

    def _stale_copy(self, disk_name: str, parse: Callable[[Any], T], expected_sha1: str | None = None) -> T | None:
        body = self.cache.load_from_disk(disk_name, None)
        if body is None:
            return None
        try:
            _verify_body(disk_name, body, expected_sha1)
            return parse(json.loads(body))
        except (ValueError, ManifestDataError, ChecksumMismatch):
            return None

    def _get(self, url: str) -> bytes:
        validate_trusted_url(url, self.runtime.trusted_hosts, allow_http=self.runtime.allow_insecure_http)
        log.info("Fetching %s", url)
        try:
            resp = self.session.get(
                url,
                timeout=(self.runtime.connect_timeout_seconds, self.runtime.read_timeout_seconds),
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            log.error("Request for %s failed: %s", url, exc)
            raise NetworkError(f"Request for {url} failed: {exc}", url=url) from exc
        validate_trusted_url(str(resp.url), self.runtime.trusted_hosts, allow_http=self.runtime.allow_insecure_http)
        return resp.content


def _verify_body(url: str, body: bytes, expected_sha1: str | None) -> None:
    if not expected_sha1:
        return
    observed = hashlib.sha1(body).hexdigest()
    if not checksums_match(expected_sha1, observed):
        log.error("Document %s does not match its listed sha1", url)
        raise ChecksumMismatch(url, expected_sha1, observed)
