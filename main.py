#!/usr/bin/env python3
"""GitHub Release Mod Manager - Entry Point"""

import argparse
import asyncio
import faulthandler
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

from filters import GameVersionMinor, GameVersionStrict, LoaderPrefer, filter_to_dict
from github_client import ReleaseFetcher
from manifest_schema import AppConfig, Profile
from mod_errors import ModManagerError
from mod_manager import (
    DEFAULT_PARALLEL_TASKS,
    BatchReport,
    ModManager,
    OperationResult,
    read_identifiers,
)
from profile_store import app_dir, default_config_path, load_config, save_config
from version_groups import VersionGroupResolver, http_tag_source

APP_LOGGER = "ghrmodmanager"


def setup_logging(verbosity: int = 0) -> tuple[logging.Logger, Path]:
    log_dir = app_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ghr-mod-manager.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s"))

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    console.setLevel(
        logging.WARNING if verbosity <= 0 else logging.INFO if verbosity == 1 else logging.DEBUG
    )

    # Engine modules log under their own module names
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    root.addHandler(console)
    return logging.getLogger(APP_LOGGER), log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # Interpreter-level crashes bypass logging entirely
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="GitHub Release Mod Manager")
    parser.add_argument("--config", type=Path, help="config file (default: $GHR_MODS_CONFIG)")
    parser.add_argument("--github-token", default=os.environ.get("GITHUB_TOKEN"))
    parser.add_argument("--parallel-tasks", type=int, default=DEFAULT_PARALLEL_TASKS)
    parser.add_argument("--profile", help="profile name (default: the active profile)")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("profile", help="create a profile and make it active")
    p.add_argument("name")
    p.add_argument("game_root", type=Path)
    p.add_argument("game_version")
    p.add_argument("--strict", action="store_true", help="match the game version exactly")
    p.add_argument("--loader", help="preferred loader keyword in asset names")
    p.add_argument(
        "--conflict-policy", choices=["fail", "overwrite", "keep_existing"], default="fail"
    )

    p = sub.add_parser("add", help="track GitHub repositories (owner/repo)")
    p.add_argument("identifiers", nargs="+")
    p.add_argument("--tag", help="pin to this release tag (single identifier only)")
    p.add_argument("--force", action="store_true", help="skip the compatibility check")

    p = sub.add_parser("add-from", help="track every repository listed in a file")
    p.add_argument("file", type=Path)
    p.add_argument("--force", action="store_true", help="skip the compatibility check")

    p = sub.add_parser("remove", help="stop tracking a mod")
    p.add_argument("name")
    p.add_argument("--keep-files", action="store_true")

    for name in ("enable", "disable"):
        p = sub.add_parser(name, help=f"{name} an installed mod")
        p.add_argument("name")

    p = sub.add_parser("select", help="show the asset that would be installed")
    p.add_argument("identifier")

    p = sub.add_parser("install", help="install a mod from a local archive")
    p.add_argument("name")
    p.add_argument("archive", type=Path)
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("upgrade", help="install the newest matching release of every mod")
    p.add_argument("--force", action="store_true")
    p.add_argument("--local", action="store_true", help="reinstall from stored archives only")

    sub.add_parser("list", help="list tracked mods")
    return parser.parse_args(argv)


# ── Command handling ──────────────────────────────────────────────────


def _find_profile(config: AppConfig, name: str | None) -> Profile | None:
    if name is None:
        return config.active()
    for profile in config.profiles:
        if profile.name == name:
            return profile
    return None


def _print_result(result: OperationResult) -> int:
    print(result.message)
    for w in result.warnings:
        print(f"  warning: {w}")
    return 0 if result.ok else 1


def _print_report(report: BatchReport) -> int:
    for name, result in report.results.items():
        status = "ok" if result.ok else "FAILED"
        print(f"{name}: {status} - {result.message}")
        for w in result.warnings:
            print(f"  warning: {w}")
    if report.global_error is not None:
        print(f"Aborted: {report.global_error}")
        if report.skipped:
            print(f"  not processed: {', '.join(report.skipped)}")
    return 0 if report.ok else 1


def create_profile(config: AppConfig, args) -> Profile:
    versions = (args.game_version,)
    if args.strict:
        filters = [filter_to_dict(GameVersionStrict(versions))]
    else:
        filters = [filter_to_dict(GameVersionMinor(versions))]
    if args.loader:
        filters.append(filter_to_dict(LoaderPrefer(args.loader)))
    profile = Profile(
        name=args.name,
        game_root=args.game_root.expanduser().resolve(),
        game_version=args.game_version,
        filters=filters,
        conflict_policy=args.conflict_policy,
    )
    config.profiles = [p for p in config.profiles if p.name != profile.name]
    config.profiles.append(profile)
    config.active_profile = len(config.profiles) - 1
    return profile


async def run_command(args, config: AppConfig, config_path: Path, logger: logging.Logger) -> int:
    if args.command == "profile":
        profile = create_profile(config, args)
        save_config(config, config_path)
        print(f"Profile {profile.name!r} created for {profile.game_root}")
        return 0

    profile = _find_profile(config, args.profile)
    if profile is None:
        print("No profile configured. Create one with: profile <name> <game_root> <game_version>")
        return 2

    if args.command == "list":
        for mod in profile.mods:
            state = "enabled" if mod.enabled else "disabled"
            version = mod.installed_version_tag or "not installed"
            print(f"{mod.name:<30} {str(mod.identifier):<40} {version:<16} {state}")
        return 0

    manager = ModManager(
        profile,
        fetcher=ReleaseFetcher(args.github_token),
        resolver=VersionGroupResolver(http_tag_source()),
        log_callback=logger.info,
        save_callback=lambda _p: save_config(config, config_path),
        parallel_tasks=args.parallel_tasks,
    )

    if args.command == "add":
        if len(args.identifiers) == 1:
            return _print_result(
                await manager.add(args.identifiers[0], args.tag, force=args.force)
            )
        if args.tag:
            print("--tag can only be used with a single identifier")
            return 2
        return _print_report(await manager.add_many(args.identifiers, force=args.force))
    if args.command == "add-from":
        try:
            identifiers = read_identifiers(args.file)
        except ValueError as e:
            print(f"Error: {e}")
            return 2
        logger.info("Adding %d mod(s) from %s", len(identifiers), args.file)
        return _print_report(await manager.add_many(identifiers, force=args.force))
    if args.command == "remove":
        return _print_result(manager.remove(args.name, keep_files=args.keep_files))
    if args.command == "enable":
        return _print_result(manager.enable(args.name))
    if args.command == "disable":
        return _print_result(manager.disable(args.name))
    if args.command == "select":
        return _print_result(await manager.select(args.identifier))
    if args.command == "install":
        return _print_result(
            await manager.install_from_archive(args.name, args.archive, force=args.force)
        )
    if args.command == "upgrade":
        if args.local:
            return _print_report(await manager.install_local(force=args.force))
        return _print_report(await manager.upgrade(force=args.force))
    raise AssertionError(f"unhandled command {args.command!r}")


def main(argv=None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.verbose)
    install_crash_handler(logger, log_dir)
    logger.info("Starting GitHub Release Mod Manager (%s)", args.command)

    config_path = args.config or default_config_path()
    try:
        config = load_config(config_path)
        return asyncio.run(run_command(args, config, config_path, logger))
    except ModManagerError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
