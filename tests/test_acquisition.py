from __future__ import annotations

import io
import json
import tempfile
import threading
import unittest
import zipfile
from unittest import mock
from pathlib import Path

import requests

from blocklaunch.common.cache import ContentCache
from blocklaunch.common.errors import (
    AcquisitionFailed,
    Cancelled,
    ManifestDataError,
    MissingDescriptorField,
    NetworkError,
    UnknownVersionError,
)
from blocklaunch.common.telemetry import Telemetry
from blocklaunch.common.types import AcquisitionState, PlayerIdentity, RuntimeSettings
from blocklaunch.launcher.acquisition import AcquisitionOrchestrator, plan_downloads
from blocklaunch.launcher.artifact_fetcher import ArtifactFetcher, FailureReason
from blocklaunch.launcher.invocation import InvocationBuilder
from blocklaunch.launcher.manifest_service import ManifestService, parse_descriptor
from blocklaunch.launcher.rules import LINUX, WINDOWS

from fakes import (
    LIBS,
    META,
    FakeSession,
    build_paths,
    descriptor_doc,
    fast_runtime,
    library_doc,
    serve_version,
    sha1_of,
)


CLIENT = b"client jar bytes " * 8


def _lib_url(doc: dict) -> str:
    return doc["downloads"]["artifact"]["url"]


def _lib_path(doc: dict) -> str:
    return doc["downloads"]["artifact"]["path"]


def _natives_zip() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")
        zf.writestr("liblwjgl.so", b"\x7fELF native")
    return buf.getvalue()


class AcquisitionTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.paths = build_paths(Path(self._td.name))
        self.runtime = fast_runtime()
        self.session = FakeSession()
        self.telemetry = Telemetry()

    def tearDown(self) -> None:
        self._td.cleanup()

    def _orchestrator(self, platform_name: str = LINUX) -> AcquisitionOrchestrator:
        manifest = ManifestService(
            self.paths,
            self.runtime,
            cache=ContentCache(self.paths.cache_dir),
            telemetry=self.telemetry,
            session=self.session,
        )
        return AcquisitionOrchestrator(
            self.paths,
            self.runtime,
            manifest,
            fetcher=ArtifactFetcher(self.runtime, session=self.session),
            telemetry=self.telemetry,
            platform_name=platform_name,
        )

    def _serve_libraries(self, *entries: tuple[dict, bytes]) -> None:
        for doc, body in entries:
            self.session.routes[_lib_url(doc)] = body

    def _library_calls(self) -> list[str]:
        return [url for url in self.session.calls if url.startswith(LIBS)]

    def test_disallowed_library_is_not_fetched(self) -> None:
        common = library_doc("com.example:common:1.0", b"common library")
        mac_only = library_doc("com.example:macos:1.0", b"mac library", rules=[{"action": "allow", "os": {"name": "osx"}}])
        descriptor = descriptor_doc("1.0", CLIENT, [common, mac_only])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((common, b"common library"), (mac_only, b"mac library"))

        handle = self._orchestrator().acquire("1.0")
        self.assertTrue(handle.result(timeout=10))

        self.assertEqual(self.paths.client_jar("1.0").read_bytes(), CLIENT)
        self.assertEqual(self.paths.library_path(_lib_path(common)).read_bytes(), b"common library")
        self.assertFalse(self.paths.library_path(_lib_path(mac_only)).exists())
        self.assertEqual(self._library_calls(), [_lib_url(common)])

    def test_disallow_rule_for_current_platform_keeps_library_off_classpath(self) -> None:
        common = library_doc("com.example:common:1.0", b"common library")
        not_linux = library_doc(
            "com.example:notlinux:1.0",
            b"excluded library",
            rules=[{"action": "allow"}, {"action": "disallow", "os": {"name": "linux"}}],
        )
        descriptor = descriptor_doc("1.0", CLIENT, [common, not_linux])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((common, b"common library"), (not_linux, b"excluded library"))

        handle = self._orchestrator(platform_name=LINUX).acquire("1.0")
        self.assertTrue(handle.result(timeout=10))

        excluded = self.paths.library_path(_lib_path(not_linux))
        self.assertFalse(excluded.exists())
        self.assertEqual(self.session.count(_lib_url(not_linux)), 0)

        spec = InvocationBuilder(self.paths, platform_name=LINUX).build(
            handle.descriptor, RuntimeSettings(identity=PlayerIdentity.offline("Steve"))
        )
        self.assertEqual(
            list(spec.classpath),
            [str(self.paths.client_jar("1.0")), str(self.paths.library_path(_lib_path(common)))],
        )
        self.assertNotIn(str(excluded), spec.classpath)

    def test_descriptor_missing_required_field_fails_before_downloads(self) -> None:
        for field in ("mainClass", "sha1"):
            with self.subTest(field=field):
                self.session = FakeSession()
                lib = library_doc("com.example:lib:1.0", b"lib")
                descriptor = descriptor_doc("1.0", CLIENT, [lib])
                if field == "mainClass":
                    del descriptor["mainClass"]
                else:
                    del descriptor["downloads"]["client"]["sha1"]
                serve_version(self.session, self.runtime, descriptor, CLIENT)
                self._serve_libraries((lib, b"lib"))

                handle = self._orchestrator().acquire("1.0")
                self.assertFalse(handle.result(timeout=10))

                self.assertIsInstance(handle.error, MissingDescriptorField)
                self.assertEqual(self.session.count(descriptor["downloads"]["client"]["url"]), 0)
                self.assertEqual(self._library_calls(), [])
                self.assertFalse(self.paths.client_jar("1.0").exists())

    def test_untrusted_library_url_fails_before_any_download(self) -> None:
        evil = library_doc("com.example:evil:1.0", b"evil")
        evil["downloads"]["artifact"]["url"] = "https://evil.example/evil.jar"
        descriptor = descriptor_doc("1.0", CLIENT, [evil])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self.session.routes["https://evil.example/evil.jar"] = b"evil"

        handle = self._orchestrator().acquire("1.0")
        self.assertFalse(handle.result(timeout=10))

        self.assertIsInstance(handle.error, ManifestDataError)
        self.assertEqual(self.session.count("https://evil.example/evil.jar"), 0)
        self.assertEqual(self.session.count(descriptor["downloads"]["client"]["url"]), 0)
        self.assertFalse(self.paths.client_jar("1.0").exists())

    def test_primary_failure_stops_before_libraries(self) -> None:
        lib = library_doc("com.example:lib:1.0", b"lib")
        descriptor = descriptor_doc("1.0", CLIENT, [lib])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self.session.routes.pop(descriptor["downloads"]["client"]["url"])
        self._serve_libraries((lib, b"lib"))

        handle = self._orchestrator().acquire("1.0")
        self.assertFalse(handle.result(timeout=10))

        self.assertEqual(handle.state, AcquisitionState.FAILED)
        self.assertTrue(handle.state.terminal)
        self.assertIsInstance(handle.error, AcquisitionFailed)
        self.assertEqual(handle.failures[0].reason, FailureReason.TRANSPORT_ERROR)
        self.assertIsInstance(handle.error.__cause__, NetworkError)
        self.assertEqual(self._library_calls(), [])
        self.assertFalse(self.paths.descriptor_file("1.0").exists())

    def test_one_corrupt_library_keeps_verified_siblings(self) -> None:
        libs = [library_doc(f"com.example:lib{i}:1.0", f"library {i}".encode()) for i in range(3)]
        descriptor = descriptor_doc("1.0", CLIENT, libs)
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((libs[0], b"library 0"), (libs[1], b"tampered!"), (libs[2], b"library 2"))

        handle = self._orchestrator().acquire("1.0")
        self.assertFalse(handle.result(timeout=10))

        self.assertEqual(len(handle.failures), 1)
        self.assertEqual(handle.failures[0].reason, FailureReason.CHECKSUM_MISMATCH)
        self.assertTrue(self.paths.library_path(_lib_path(libs[0])).exists())
        self.assertFalse(self.paths.library_path(_lib_path(libs[1])).exists())
        self.assertTrue(self.paths.library_path(_lib_path(libs[2])).exists())
        # Integrity failures are not retried.
        self.assertEqual(self.session.count(_lib_url(libs[1])), 1)
        self.assertFalse(self.paths.descriptor_file("1.0").exists())

    def test_transport_errors_are_retried(self) -> None:
        lib = library_doc("com.example:flaky:1.0", b"flaky library")
        descriptor = descriptor_doc("1.0", CLIENT, [lib])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self.session.routes[_lib_url(lib)] = [requests.ConnectionError("reset"), (502, b""), b"flaky library"]

        handle = self._orchestrator().acquire("1.0")
        self.assertTrue(handle.result(timeout=10))
        self.assertEqual(self.session.count(_lib_url(lib)), 3)

    def test_concurrent_requests_share_one_task(self) -> None:
        descriptor = descriptor_doc("1.0", CLIENT)
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        gate = self.session.block(descriptor["downloads"]["client"]["url"])

        orchestrator = self._orchestrator()
        first = orchestrator.acquire("1.0")
        second = orchestrator.acquire("1.0")
        self.assertIs(first, second)
        self.assertIs(orchestrator.active("1.0"), first)

        gate.set()
        self.assertTrue(first.result(timeout=10))
        self.assertIsNone(orchestrator.active("1.0"))
        self.assertEqual(self.session.count(descriptor["downloads"]["client"]["url"]), 1)

        again = orchestrator.acquire("1.0")
        self.assertIsNot(again, first)
        self.assertTrue(again.result(timeout=10))

    def test_progress_is_monotone_and_ends_at_one(self) -> None:
        libs = [library_doc(f"com.example:lib{i}:1.0", b"x" * (10 + i * 7)) for i in range(4)]
        descriptor = descriptor_doc("1.0", CLIENT, libs)
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries(*[(doc, b"x" * (10 + i * 7)) for i, doc in enumerate(libs)])

        gate = self.session.block(descriptor["downloads"]["client"]["url"])

        seen: list[float] = []
        finished = threading.Event()
        handle = self._orchestrator().acquire("1.0")
        handle.add_progress_listener(seen.append)
        handle.add_done_listener(lambda _: finished.set())
        gate.set()
        self.assertTrue(finished.wait(10))

        self.assertTrue(handle.succeeded)
        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], 1.0)
        self.assertEqual(seen.count(1.0), 1)
        self.assertEqual(handle.progress, 1.0)

    def test_cancel_ends_in_failed_state(self) -> None:
        lib = library_doc("com.example:lib:1.0", b"lib")
        descriptor = descriptor_doc("1.0", CLIENT, [lib])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((lib, b"lib"))
        gate = self.session.block(descriptor["downloads"]["client"]["url"])

        handle = self._orchestrator().acquire("1.0")
        self.assertTrue(handle.cancel())
        gate.set()
        self.assertFalse(handle.result(timeout=10))

        self.assertIsInstance(handle.error, Cancelled)
        self.assertFalse(self.paths.client_jar("1.0").exists())
        self.assertEqual(self._library_calls(), [])
        self.assertFalse(handle.cancel())

    def test_unknown_version_fails_the_task(self) -> None:
        serve_version(self.session, self.runtime, descriptor_doc("1.0", CLIENT), CLIENT)
        handle = self._orchestrator().acquire("9.9")
        self.assertFalse(handle.result(timeout=10))
        self.assertIsInstance(handle.error, UnknownVersionError)
        self.assertEqual(self.telemetry.counter("acquisition_failed"), 1)

    def test_success_persists_descriptor_and_skips_on_rerun(self) -> None:
        lib = library_doc("com.example:lib:1.0", b"lib")
        descriptor = descriptor_doc("1.0", CLIENT, [lib])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((lib, b"lib"))

        orchestrator = self._orchestrator()
        self.assertTrue(orchestrator.acquire("1.0").result(timeout=10))
        with self.paths.descriptor_file("1.0").open("r", encoding="utf-8") as fh:
            self.assertEqual(json.load(fh)["mainClass"], descriptor["mainClass"])

        before = len(self.session.calls)
        self.assertTrue(orchestrator.acquire("1.0").result(timeout=10))
        artifact_calls = [u for u in self.session.calls[before:] if not u.startswith(META)]
        self.assertEqual(artifact_calls, [])

    def test_natives_are_extracted_without_excluded_entries(self) -> None:
        natives = _natives_zip()
        lib = library_doc("org.lwjgl:lwjgl:3.3.1", b"lwjgl")
        native_path = "org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.jar"
        lib["natives"] = {"linux": "natives-linux"}
        lib["downloads"]["classifiers"] = {
            "natives-linux": {
                "url": f"{LIBS}/{native_path}",
                "path": native_path,
                "sha1": sha1_of(natives),
                "size": len(natives),
            }
        }
        lib["extract"] = {"exclude": ["META-INF/"]}
        descriptor = descriptor_doc("1.0", CLIENT, [lib])
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self._serve_libraries((lib, b"lwjgl"))
        self.session.routes[f"{LIBS}/{native_path}"] = natives

        self.assertTrue(self._orchestrator().acquire("1.0").result(timeout=10))
        natives_dir = self.paths.natives_dir("1.0")
        self.assertEqual((natives_dir / "liblwjgl.so").read_bytes(), b"\x7fELF native")
        self.assertFalse((natives_dir / "META-INF").exists())

    def test_asset_objects_are_fetched_from_the_index(self) -> None:
        icon = b"png bytes"
        sound = b"ogg bytes"
        asset_index = json.dumps(
            {
                "objects": {
                    "icons/icon.png": {"hash": sha1_of(icon), "size": len(icon)},
                    "sounds/click.ogg": {"hash": sha1_of(sound), "size": len(sound)},
                }
            }
        ).encode()
        descriptor = descriptor_doc(
            "1.0",
            CLIENT,
            assetIndex={
                "id": "5",
                "url": f"{META}/v1/packages/assets/5.json",
                "sha1": sha1_of(asset_index),
                "size": len(asset_index),
                "totalSize": len(icon) + len(sound),
            },
        )
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self.session.routes[f"{META}/v1/packages/assets/5.json"] = asset_index
        base = self.runtime.resources_url
        self.session.routes[f"{base}/{sha1_of(icon)[:2]}/{sha1_of(icon)}"] = icon
        self.session.routes[f"{base}/{sha1_of(sound)[:2]}/{sha1_of(sound)}"] = sound

        self.assertTrue(self._orchestrator().acquire("1.0").result(timeout=10))
        self.assertTrue((self.paths.asset_indexes_dir / "5.json").exists())
        self.assertEqual(self.paths.asset_object_path(sha1_of(icon)).read_bytes(), icon)
        self.assertEqual(self.paths.asset_object_path(sha1_of(sound)).read_bytes(), sound)


    def test_untrusted_asset_mirror_is_not_retried(self) -> None:
        icon = b"png bytes"
        asset_index = json.dumps({"objects": {"icons/icon.png": {"hash": sha1_of(icon), "size": len(icon)}}}).encode()
        descriptor = descriptor_doc(
            "1.0",
            CLIENT,
            assetIndex={"id": "5", "url": f"{META}/v1/packages/assets/5.json", "sha1": sha1_of(asset_index)},
        )
        self.runtime = fast_runtime(resources_url="https://mirror.example.org/objects")
        serve_version(self.session, self.runtime, descriptor, CLIENT)
        self.session.routes[f"{META}/v1/packages/assets/5.json"] = asset_index

        orchestrator = self._orchestrator()
        with mock.patch.object(orchestrator.fetcher, "fetch", wraps=orchestrator.fetcher.fetch) as fetch:
            handle = orchestrator.acquire("1.0")
            self.assertFalse(handle.result(timeout=10))

        mirror_calls = [c for c in fetch.call_args_list if "mirror.example.org" in c.args[0].url]
        self.assertEqual(len(mirror_calls), 1)
        self.assertEqual([f.reason for f in handle.failures], [FailureReason.UNTRUSTED_SOURCE])
        self.assertFalse(self.paths.asset_object_path(sha1_of(icon)).exists())


class PlanTests(unittest.TestCase):
    def test_shared_destinations_are_planned_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            paths = build_paths(Path(td))
            lib = library_doc("com.example:shared:1.0", b"shared")
            descriptor = parse_descriptor(descriptor_doc("1.0", CLIENT, [lib, dict(lib)]))
            jobs = plan_downloads(descriptor, paths, LINUX)
            self.assertEqual(len(jobs), 1)

    def test_plan_respects_platform(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            paths = build_paths(Path(td))
            win = library_doc("com.example:win:1.0", b"w", rules=[{"action": "allow", "os": {"name": "windows"}}])
            descriptor = parse_descriptor(descriptor_doc("1.0", CLIENT, [win]))
            self.assertEqual(len(plan_downloads(descriptor, paths, WINDOWS)), 1)
            self.assertEqual(plan_downloads(descriptor, paths, LINUX), [])


if __name__ == "__main__":
    unittest.main()
