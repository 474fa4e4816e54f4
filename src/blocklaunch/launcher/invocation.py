from __future__ import annotations

import logging
import os

from blocklaunch.common.config import AppPaths
from blocklaunch.common.errors import BuildError, BuildErrorReason
from blocklaunch.common.types import LaunchSpec, RuntimeSettings, VersionDescriptor
from blocklaunch.launcher.rules import applies, current_platform


log = logging.getLogger(__name__)

DEFAULT_JAVA = "java"

# G1 tuning used for every launch.
TUNING_FLAGS: tuple[str, ...] = (
    "-XX:+UnlockExperimentalVMOptions",
    "-XX:+UseG1GC",
    "-XX:G1NewSizePercent=20",
    "-XX:G1ReservePercent=20",
    "-XX:MaxGCPauseMillis=50",
    "-XX:G1HeapRegionSize=32M",
)


class InvocationBuilder:
    def __init__(self, paths: AppPaths, platform_name: str | None = None, path_separator: str = os.pathsep):
        self.paths = paths
        self.platform_name = platform_name or current_platform()
        self.path_separator = path_separator

    def classpath(self, descriptor: VersionDescriptor) -> list[str]:
        """Client jar first, then every applicable library jar in declaration order.

        Each entry must exist on disk even when acquisition reported success.
        """
        client_jar = self.paths.client_jar(descriptor.id)
        if not client_jar.is_file():
            raise BuildError(BuildErrorReason.MISSING_CLIENT_JAR, str(client_jar))
        entries = [str(client_jar)]
        for library in descriptor.libraries:
            if library.artifact is None or not applies(library, self.platform_name):
                continue
            path = self.paths.library_path(library.artifact.path)
            if not path.is_file():
                raise BuildError(BuildErrorReason.UNRESOLVED_LIBRARY, f"{library.name} ({path})")
            entries.append(str(path))
        return entries

    def build(self, descriptor: VersionDescriptor, settings: RuntimeSettings) -> LaunchSpec:
        if not descriptor.main_class:
            raise BuildError(BuildErrorReason.MISSING_MAIN_CLASS, descriptor.id)

        classpath = self.classpath(descriptor)
        natives_dir = str(self.paths.natives_dir(descriptor.id))
        game_root = str(self.paths.game_root)
        identity = settings.identity

        command = [
            settings.java_path or DEFAULT_JAVA,
            f"-Xmx{settings.max_heap_mb}M",
            *TUNING_FLAGS,
            f"-Djava.library.path={natives_dir}",
            "-cp",
            self.path_separator.join(classpath),
            descriptor.main_class,
            "--username",
            identity.name,
            "--version",
            descriptor.id,
            "--gameDir",
            game_root,
            "--assetsDir",
            str(self.paths.assets_dir),
            "--uuid",
            identity.uuid,
            "--accessToken",
            identity.access_token,
            "--userType",
            identity.user_type,
        ]
        if settings.fullscreen:
            command.append("--fullscreen")

        log.debug("Built launch command for %s with %d classpath entries", descriptor.id, len(classpath))
        return LaunchSpec(
            version_id=descriptor.id,
            command=tuple(command),
            working_dir=game_root,
            classpath=tuple(classpath),
            natives_dir=natives_dir,
        )
