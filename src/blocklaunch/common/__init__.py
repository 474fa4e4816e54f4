from blocklaunch.common.config import AppPaths, RuntimeConfig
from blocklaunch.common.settings import LauncherSettings, load_settings, save_settings

__all__ = [
    "AppPaths",
    "RuntimeConfig",
    "LauncherSettings",
    "load_settings",
    "save_settings",
]
