from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from blocklaunch.common.config import TRUSTED_HOSTS, AppPaths, RuntimeConfig
from blocklaunch.common.settings import LauncherSettings, load_settings, save_settings


class SettingsTests(unittest.TestCase):
    def test_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            save_settings(
                root,
                LauncherSettings(username="Alex", max_memory_mb=4096, java_path="/usr/bin/java", fullscreen=True, last_version="1.20.4"),
            )
            loaded = load_settings(root)
            self.assertEqual(loaded.username, "Alex")
            self.assertEqual(loaded.max_memory_mb, 4096)
            self.assertEqual(loaded.java_path, "/usr/bin/java")
            self.assertTrue(loaded.fullscreen)
            self.assertEqual(loaded.last_version, "1.20.4")

    def test_defaults_when_missing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loaded = load_settings(Path(td))
            self.assertEqual(loaded.max_memory_mb, 2048)
            self.assertEqual(loaded.java_path, "")
            self.assertFalse(loaded.fullscreen)

    def test_runtime_settings_use_offline_identity(self) -> None:
        runtime = LauncherSettings(username="Alex", max_memory_mb=1024).runtime_settings()
        self.assertEqual(runtime.identity.name, "Alex")
        self.assertEqual(runtime.identity.user_type, "offline")
        self.assertEqual(runtime.max_heap_mb, 1024)


class ConfigTests(unittest.TestCase):
    def test_paths_layout(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with patch.dict(os.environ, {"BLOCKLAUNCH_HOME": td}):
                paths = AppPaths.default()
            self.assertEqual(paths.game_root, Path(td))
            self.assertEqual(paths.client_jar("1.0"), Path(td) / "versions" / "1.0" / "1.0.jar")
            self.assertEqual(paths.asset_object_path("ab" + "0" * 38), Path(td) / "assets" / "objects" / "ab" / ("ab" + "0" * 38))
            paths.ensure_layout()
            self.assertTrue(paths.asset_indexes_dir.is_dir())

    def test_runtime_from_env(self) -> None:
        env = {
            "BLOCKLAUNCH_MAX_DOWNLOADS": "3",
            "BLOCKLAUNCH_TRUSTED_HOSTS": "mirror.example.org",
            "BLOCKLAUNCH_RESOURCES_URL": "https://mirror.example.org/objects/",
        }
        with patch.dict(os.environ, env):
            cfg = RuntimeConfig.from_env()
        self.assertEqual(cfg.max_concurrent_downloads, 3)
        self.assertEqual(cfg.trusted_hosts, TRUSTED_HOSTS + ("mirror.example.org",))
        self.assertEqual(cfg.resources_url, "https://mirror.example.org/objects")
        self.assertFalse(cfg.allow_insecure_http)


if __name__ == "__main__":
    unittest.main()
