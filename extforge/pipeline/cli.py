"""Command-line interface for extforge.

This module provides commands to build, publish and verify extension
archives and to list the versions known to the registry.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from extforge.core.config_manager import DEFAULT_CONFIG_FILE, ConfigManager
from extforge.core.logging_manager import LoggingManager
from extforge.pipeline.context import BuildContext
from extforge.pipeline.orchestrator import BuildMode, BuildOrchestrator, BuildResult
from extforge.pipeline.reporting import LoggingReporter, RecordingReporter
from extforge.pipeline.signing import SignatureVerifier
from extforge.utils.exceptions import ExtforgeError


def _load(args: argparse.Namespace) -> Tuple[ConfigManager, BuildOrchestrator]:
    """Load configuration, set up logging and create the orchestrator."""
    project = Path(args.project)
    config_path = Path(args.config) if args.config else project / DEFAULT_CONFIG_FILE
    overrides = {'project.root': str(project)}
    if getattr(args, 'log_level', None):
        overrides['logging.level'] = args.log_level
        overrides['logging.console.level'] = args.log_level

    config = ConfigManager(config_path=config_path, overrides=overrides)
    config.initialize()
    LoggingManager(config).initialize()

    context = BuildContext.from_config(config, project_root=project)
    reporter = RecordingReporter(forward=LoggingReporter())
    return config, BuildOrchestrator(context, reporter=reporter)


def _print_result(result: BuildResult) -> None:
    print(f"{result.status.value}: {result.name or '?'} {result.version or ''}".rstrip())
    if result.manifest_rewritten:
        print(f"  Manifest version set to {result.version}")
    if result.dist_path is not None:
        print(f"  Archive: {result.dist_path}")
    if result.failure is not None:
        print(result.failure.to_json(), file=sys.stderr)
    if result.published is not None:
        print("Publish:")
        _print_result(result.published)


def _confirmation(args: argparse.Namespace) -> Optional[Callable[[BuildResult], bool]]:
    if args.yes:
        return lambda result: True
    if not sys.stdin.isatty():
        return None

    def ask(result: BuildResult) -> bool:
        answer = input(f"Upload {result.name} {result.version} to the registry? [y/N] ")
        return answer.strip().lower() in ('y', 'yes')

    return ask


def build_command(args: argparse.Namespace) -> int:
    """Handle the build command.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        _, orchestrator = _load(args)
        try:
            mode = BuildMode.FAST if args.fast else BuildMode.MANUAL
            result = orchestrator.build(
                mode=mode,
                force_increment=args.force_increment,
                confirm_upload=_confirmation(args) if mode is BuildMode.MANUAL else None,
            )
        finally:
            orchestrator.context.close()
    except ExtforgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_result(result)
    if result.published is not None and not result.published.succeeded:
        return 1
    return 0 if result.succeeded else 1


def publish_command(args: argparse.Namespace) -> int:
    """Handle the publish command."""
    try:
        _, orchestrator = _load(args)
        try:
            result = orchestrator.publish(args.archive, activate=not args.no_activate)
        finally:
            orchestrator.context.close()
    except ExtforgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_result(result)
    return 0 if result.succeeded else 1


def verify_command(args: argparse.Namespace) -> int:
    """Handle the verify command."""
    archive = Path(args.archive)
    try:
        verifier = SignatureVerifier.from_file(args.certificate)
        verifier.verify_archive(archive.read_bytes())
    except OSError as e:
        print(f"Cannot read archive {archive}: {e}", file=sys.stderr)
        return 1
    except ExtforgeError as e:
        print(f"Signature is NOT valid: {e}", file=sys.stderr)
        return 1

    print(f"Signature is valid: {archive}")
    return 0


def versions_command(args: argparse.Namespace) -> int:
    """Handle the versions command."""
    try:
        _, orchestrator = _load(args)
        try:
            versions = orchestrator.remote_versions()
        finally:
            orchestrator.context.close()
    except ExtforgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not versions:
        print("No versions in the registry")
    for version in versions:
        print(version)
    return 0


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = argparse.ArgumentParser(
        description="Build, sign and publish extensions",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    project_options = argparse.ArgumentParser(add_help=False)
    project_options.add_argument("--project", default=".", help="Extension project directory")
    project_options.add_argument("--config", help=f"Configuration file (default: <project>/{DEFAULT_CONFIG_FILE})")
    project_options.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    build_parser = subparsers.add_parser("build", parents=[project_options], help="Build the extension")
    build_parser.add_argument("--fast", action="store_true", help="Bump the version, upload and activate")
    build_parser.add_argument("--force-increment", action="store_true", help="Always bump the version")
    build_parser.add_argument("--yes", "-y", action="store_true", help="Upload a validated build without asking")

    publish_parser = subparsers.add_parser("publish", parents=[project_options], help="Upload a built archive")
    publish_parser.add_argument("archive", help="Archive in the dist directory")
    publish_parser.add_argument("--no-activate", action="store_true", help="Upload without activating")

    verify_parser = subparsers.add_parser("verify", help="Verify an archive's signature")
    verify_parser.add_argument("archive", help="Outer archive")
    verify_parser.add_argument("--certificate", required=True, help="Trusted CA or developer certificate")

    subparsers.add_parser("versions", parents=[project_options], help="List versions in the registry")

    args = parser.parse_args(args)

    if args.command == "build":
        return build_command(args)
    elif args.command == "publish":
        return publish_command(args)
    elif args.command == "verify":
        return verify_command(args)
    elif args.command == "versions":
        return versions_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
