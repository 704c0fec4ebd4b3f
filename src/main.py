"""
Command-line interface for resolving Terraform references statically.

Resolves variables, locals, module outputs and data attributes to the values
the configuration tree assigns them, without running Terraform.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from src.core.config import ResolverSettings, discover_settings, load_settings
from src.core.exceptions import ConfigurationError, FileAccessError
from src.core.file_accessor import LocalFileAccessor
from src.core.registry import WorkspaceRegistry
from src.plugins.terraform.literals import pretty_print
from src.plugins.terraform.resolver import TerraformReferenceResolver
from src.plugins.terraform.scanner import ReferenceScanner

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_CONFIGURATION = 2
EXIT_FILE_ERROR = 3


def configure_logging(debug: bool = False, verbose: bool = False) -> None:
    """Configure application logging.

    Args:
        debug: Enable debug-level logging if True.
        verbose: Enable informational logging from the engine if True.
    """
    if debug:
        level = logging.DEBUG
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbose:
        level = logging.INFO
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        format_str = "%(levelname)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        stream=sys.stderr,
        force=True,  # Override existing configuration
    )

    if not verbose and not debug:
        # Quiet mode: only warnings and errors from the engine
        logging.getLogger().setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with its three subcommands."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Workspace root bounding the search (default: current directory)",
    )
    common.add_argument(
        "--config",
        type=Path,
        help="Settings file (default: .tfresolver.yaml/.yml/.json in the workspace)",
    )
    common.add_argument(
        "--debug", action="store_true", help="Enable debug logging for detailed output"
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging from the resolution engine",
    )

    parser = argparse.ArgumentParser(
        prog="tfresolve",
        description="Resolve Terraform references to their values by static analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Value of a variable as seen from an environment directory
  tfresolve resolve var.region --from environments/prod

  # Every environment that assigns a value
  tfresolve contexts var.instance_type --from .

  # Annotate every reference in a file
  tfresolve scan main.tf --json

Exit codes:
  0 value found, 1 not found, 2 settings error, 3 unreadable file
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser(
        "resolve", parents=[common], help="Resolve one reference"
    )
    resolve_parser.add_argument("reference", help="e.g. var.region, local.tags.Name")
    resolve_parser.add_argument(
        "--from", dest="from_dir", type=Path, default=Path("."), help="Starting directory"
    )
    resolve_parser.add_argument(
        "--plain",
        action="store_true",
        help="Directory-order search only (do not follow module call sites)",
    )
    resolve_parser.add_argument("--json", action="store_true", help="Emit JSON")

    contexts_parser = subparsers.add_parser(
        "contexts", parents=[common], help="Resolve a reference in every environment"
    )
    contexts_parser.add_argument("reference")
    contexts_parser.add_argument(
        "--from", dest="from_dir", type=Path, default=Path("."), help="Document directory"
    )
    contexts_parser.add_argument("--json", action="store_true", help="Emit JSON")

    scan_parser = subparsers.add_parser(
        "scan", parents=[common], help="Annotate every reference in a file"
    )
    scan_parser.add_argument("file", type=Path)
    scan_parser.add_argument("--json", action="store_true", help="Emit JSON")

    return parser


def load_resolver_settings(workspace: Path, config: Path | None) -> ResolverSettings:
    if config is not None:
        return load_settings(config)
    return discover_settings(workspace)


def _relative_to_cwd(path: Path) -> Path:
    return path if path.is_absolute() else Path.cwd() / path


async def run_resolve(resolver: TerraformReferenceResolver, args: argparse.Namespace) -> int:
    directory = _relative_to_cwd(args.from_dir)
    if args.plain:
        value = await resolver.resolve(args.reference, directory)
    else:
        value = await resolver.resolve_with_module_inputs(args.reference, directory)

    if args.json:
        print(
            json.dumps(
                {"reference": args.reference, "directory": str(directory), "value": value},
                indent=2,
            )
        )
    elif value is not None:
        print(pretty_print(value))
    else:
        print(f"{args.reference}: not found", file=sys.stderr)

    return EXIT_OK if value is not None else EXIT_NOT_FOUND


async def run_contexts(resolver: TerraformReferenceResolver, args: argparse.Namespace) -> int:
    directory = _relative_to_cwd(args.from_dir)
    values = await resolver.resolve_in_multiple_contexts(
        args.reference, resolver.candidate_directories(directory)
    )

    if args.json:
        print(json.dumps([v.model_dump(mode="json") for v in values], indent=2))
    else:
        for item in values:
            print(f"{item.context}: {item.value}")
        if not values:
            print(f"{args.reference}: not found in any context", file=sys.stderr)

    return EXIT_OK if values else EXIT_NOT_FOUND


async def run_scan(resolver: TerraformReferenceResolver, args: argparse.Namespace) -> int:
    document = _relative_to_cwd(args.file).resolve()
    text = await LocalFileAccessor(encoding=resolver.settings.encoding).read_text(document)
    annotations = await ReferenceScanner(resolver).scan(text, document)

    if args.json:
        print(json.dumps([a.model_dump(mode="json") for a in annotations], indent=2))
    else:
        for annotation in annotations:
            location = f"{annotation.line + 1}:{annotation.column + 1}"
            if not annotation.resolved:
                print(f"{location} {annotation.reference} -> (unresolved)")
                continue
            rendered = "; ".join(
                f"{v.value} ({', '.join(v.contexts)})" for v in annotation.values
            )
            print(f"{location} {annotation.reference} -> {rendered}")

    return EXIT_OK


_COMMANDS = {
    "resolve": run_resolve,
    "contexts": run_contexts,
    "scan": run_scan,
}


async def run_command(args: argparse.Namespace, settings: ResolverSettings) -> int:
    """Open the workspace, run one subcommand and tear everything down."""
    registry = WorkspaceRegistry(settings)
    try:
        resolver = registry.open(args.workspace)
        return await _COMMANDS[args.command](resolver, args)
    finally:
        await registry.dispose()


def main(argv: list[str] | None = None) -> int:
    """Entry point of the ``tfresolve`` command.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.debug, args.verbose)
    logger = logging.getLogger(__name__)

    workspace = _relative_to_cwd(args.workspace).resolve()
    args.workspace = workspace

    try:
        settings = load_resolver_settings(workspace, args.config)
    except ConfigurationError as e:
        logger.error(f"Settings error: {e}")
        logger.error(f"Suggestion: {e.get_recovery_hint()}")
        return EXIT_CONFIGURATION

    try:
        return asyncio.run(run_command(args, settings))
    except FileAccessError as e:
        logger.error(f"File error: {e}")
        return EXIT_FILE_ERROR


if __name__ == "__main__":
    sys.exit(main())
