from __future__ import annotations

import argparse
import logging

from blocklaunch import __version__ as BLOCKLAUNCH_VERSION
from blocklaunch.common.config import AppPaths, RuntimeConfig
from blocklaunch.common.errors import LauncherError
from blocklaunch.common.logging_utils import configure_logging
from blocklaunch.common.settings import LauncherSettings, load_settings, save_settings
from blocklaunch.launcher.acquisition import AcquisitionHandle
from blocklaunch.launcher.game_service import GameService


log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blocklaunch", description=f"blocklaunch {BLOCKLAUNCH_VERSION}")
    parser.add_argument("--log-level", default="INFO", help="Log level.")
    sub = parser.add_subparsers(dest="command", required=True)

    versions = sub.add_parser("versions", help="List versions offered by the version index.")
    versions.add_argument("--snapshots", action="store_true", help="Include snapshots.")
    versions.add_argument("--refresh", action="store_true", help="Ignore cached copies of the version index.")
    versions.add_argument(
        "--prefetch", action="store_true", help="Also cache the latest release and snapshot descriptors."
    )

    sub.add_parser("installed", help="List installed versions, newest first.")

    install = sub.add_parser("install", help="Download and verify a version.")
    install.add_argument("version_id")

    launch = sub.add_parser("launch", help="Start an installed version.")
    launch.add_argument("version_id")
    launch.add_argument("--username", help="Offline player name.")
    launch.add_argument("--memory", type=int, help="Maximum heap in MB.")
    launch.add_argument("--java", help="Path to the java executable.")
    launch.add_argument("--fullscreen", action="store_true", default=None, help="Start in fullscreen.")
    launch.add_argument("--wait", action="store_true", help="Block until the game exits.")

    delete = sub.add_parser("delete", help="Remove an installed version.")
    delete.add_argument("version_id")

    clean = sub.add_parser("cache-clean", help="Remove expired cache entries.")
    clean.add_argument("--descriptors", action="store_true", help="Also drop every cached version descriptor.")
    return parser


def _apply_overrides(settings: LauncherSettings, args: argparse.Namespace) -> LauncherSettings:
    if args.username:
        settings.username = args.username
    if args.memory:
        settings.max_memory_mb = args.memory
    if args.java:
        settings.java_path = args.java
    if args.fullscreen is not None:
        settings.fullscreen = args.fullscreen
    settings.last_version = args.version_id
    return settings


def _print_progress(handle: AcquisitionHandle) -> None:
    last_step = -1

    def on_progress(fraction: float) -> None:
        nonlocal last_step
        step = int(fraction * 20)
        if step != last_step:
            last_step = step
            print(f"{handle.version_id}: {fraction * 100:5.1f}%", flush=True)

    handle.add_progress_listener(on_progress)


def _cmd_versions(service: GameService, args: argparse.Namespace) -> int:
    if args.refresh:
        refs = service.refresh_versions(include_snapshots=args.snapshots)
    else:
        refs = service.list_versions(include_snapshots=args.snapshots)
    for ref in refs:
        print(f"{ref.id}\t{ref.kind}\t{ref.release_time}")
    if not args.prefetch:
        return 0

    failed = 0
    for version_id, future in service.prefetch_latest().items():
        try:
            future.result()
        except LauncherError as exc:
            failed += 1
            log.error("Could not prefetch %s: %s", version_id, exc)
    return 1 if failed else 0


def _cmd_installed(service: GameService, args: argparse.Namespace) -> int:
    for version_id in service.installed_versions():
        print(version_id)
    return 0


def _cmd_install(service: GameService, args: argparse.Namespace) -> int:
    handle = service.install(args.version_id)
    _print_progress(handle)
    try:
        handle.wait()
    except KeyboardInterrupt:
        handle.cancel()
        handle.wait()

    if handle.succeeded:
        log.info("Installed %s", args.version_id)
        return 0
    for failure in handle.failures:
        print(f"failed: {failure.name} ({failure.reason.value}) {failure.detail}")
    log.error("Install of %s failed: %s", args.version_id, handle.error)
    return 1


def _cmd_launch(service: GameService, args: argparse.Namespace) -> int:
    settings = _apply_overrides(load_settings(service.paths.state_dir), args)
    save_settings(service.paths.state_dir, settings)
    process = service.launch(args.version_id, settings.runtime_settings())
    print(f"Started {args.version_id} (pid {process.pid})")
    if not args.wait:
        return 0
    code = process.wait()
    log.info("%s exited with code %s", args.version_id, code)
    return 0 if code == 0 else 1


def _cmd_delete(service: GameService, args: argparse.Namespace) -> int:
    if service.delete(args.version_id):
        print(f"Deleted {args.version_id}")
        return 0
    print(f"{args.version_id} is not installed")
    return 1


def _cmd_cache_clean(service: GameService, args: argparse.Namespace) -> int:
    removed = service.cleanup_cache(include_descriptors=args.descriptors)
    print(f"Removed {removed} cache entries")
    return 0


COMMANDS = {
    "versions": _cmd_versions,
    "installed": _cmd_installed,
    "install": _cmd_install,
    "launch": _cmd_launch,
    "delete": _cmd_delete,
    "cache-clean": _cmd_cache_clean,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    paths = AppPaths.default()
    paths.ensure_layout()
    configure_logging(paths.logs_dir, level=args.log_level)

    service = GameService(paths, RuntimeConfig.from_env())
    try:
        return COMMANDS[args.command](service, args)
    except LauncherError as exc:
        log.exception("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
