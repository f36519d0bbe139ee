"""design-foundry CLI.

Commands:
    parse: Parse one parameter's text and print the resulting values.
    expand: Expand named parameters into design points.
    run: Diagnose a designer across a parameter space, using the cache.
    cache stats: Show entry counts and sizes for a cache directory.
    cache verify: Check every cache entry on disk.

Exit codes: 0 success, 1 user error, 2 usage error, 3 cache integrity fault.
"""

from __future__ import annotations

import argparse
import importlib
import inspect
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from design_foundry import __version__
from design_foundry.api import DiagnosisService, prepare_design_space
from design_foundry.diagnosis import DiagnosisResult, FilesystemDiagnosisCache
from design_foundry.errors import CacheIntegrityError, DesignFoundryError
from design_foundry.params import KindHint, ParsedValue, format_parsed_value, parse_sequence
from design_foundry.settings import ExplorerSettings, load_settings
from design_foundry.substrate import canonical_json_dumps, to_jsonable

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_USAGE = 2
EXIT_INTEGRITY = 3


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="design-foundry",
        description="Explore research design diagnoses across parameter spaces",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument("--settings", type=Path, default=None, help="YAML or JSON settings file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Parse one parameter's text")
    parse_cmd.add_argument("text", help="Parameter text, e.g. '10, 20, ..., 50'")
    parse_cmd.add_argument("--kind", choices=[hint.value for hint in KindHint], default=KindHint.AUTO.value)
    parse_cmd.add_argument("--json", action="store_true", help="Emit canonical JSON")

    expand_cmd = subparsers.add_parser("expand", help="Expand parameters into design points")
    _add_space_arguments(expand_cmd)
    expand_cmd.add_argument("--json", action="store_true", help="Emit canonical JSON")

    run_cmd = subparsers.add_parser("run", help="Diagnose a designer across a parameter space")
    run_cmd.add_argument("designer", help="Designer as module:attribute")
    _add_space_arguments(run_cmd)
    run_cmd.add_argument("--sims", type=int, required=True, help="Simulations per design point")
    run_cmd.add_argument("--bootstrap", type=int, default=0, help="Bootstrap resamples per design point")
    run_cmd.add_argument("--cache-version", default=None)
    run_cmd.add_argument("--cache-dir", type=Path, default=None)
    run_cmd.add_argument("--pool", choices=("serial", "thread", "process"), default=None)
    run_cmd.add_argument("--workers", type=int, default=None)
    run_cmd.add_argument("--json", action="store_true", help="Emit canonical JSON")

    cache_cmd = subparsers.add_parser("cache", help="Inspect a cache directory")
    cache_sub = cache_cmd.add_subparsers(dest="cache_command", required=True)
    for name, help_text in (("stats", "Show cache statistics"), ("verify", "Verify every cache entry")):
        sub = cache_sub.add_parser(name, help=help_text)
        sub.add_argument("--cache-dir", type=Path, default=None)
        sub.add_argument("--json", action="store_true", help="Emit canonical JSON")

    return parser


def _add_space_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--param",
        action="append",
        default=[],
        metavar="NAME=TEXT",
        help="Parameter assignment (repeatable, order is significant)",
    )
    parser.add_argument("--mode", choices=("product", "zip"), default="product")
    parser.add_argument("--max-points", type=int, default=None)


def parse_param_assignments(assignments: Sequence[str]) -> dict[str, str]:
    """Split NAME=TEXT assignments, preserving order.

    Raises:
        ValueError: If an assignment has no '=' or repeats a name.
    """
    params: dict[str, str] = {}
    for assignment in assignments:
        name, sep, text = assignment.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Invalid parameter assignment (expected NAME=TEXT): {assignment!r}")
        if name in params:
            raise ValueError(f"Parameter given more than once: {name}")
        params[name] = text
    return params


def load_designer(reference: str) -> Any:
    """Import ``module:attribute``; classes are instantiated without arguments.

    Raises:
        ValueError: If the reference is malformed or cannot be resolved.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Designer must be given as module:attribute, got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import designer module {module_name!r}: {e}") from e

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ValueError(f"Designer {reference!r} not found") from e
    return target() if inspect.isclass(target) else target


def _write(text: str) -> None:
    sys.stdout.write(text + "\n")


def _resolve_settings(args: argparse.Namespace) -> ExplorerSettings:
    settings = load_settings(args.settings)
    overrides: dict[str, Any] = {}
    if getattr(args, "max_points", None) is not None:
        overrides["max_design_points"] = args.max_points
    if getattr(args, "cache_dir", None) is not None:
        overrides["cache_dir"] = args.cache_dir
    if getattr(args, "pool", None) is not None:
        overrides["pool"] = args.pool
    if getattr(args, "workers", None) is not None:
        overrides["max_workers"] = args.workers
    if getattr(args, "cache_version", None) is not None:
        overrides["default_cache_version"] = args.cache_version
    if not overrides:
        return settings
    return ExplorerSettings.model_validate({**settings.model_dump(), **overrides})


# =============================================================================
# Commands
# =============================================================================


def _cmd_parse(args: argparse.Namespace) -> int:
    value = parse_sequence(args.text, KindHint(args.kind))
    if args.json:
        _write(canonical_json_dumps(_parsed_payload(value)))
        return EXIT_OK
    _write(f"Kind: {value.kind.value}")
    _write(f"Count: {len(value)}")
    _write(f"Values: {format_parsed_value(value)}")
    return EXIT_OK


def _parsed_payload(value: ParsedValue) -> dict[str, Any]:
    return {
        "kind": value.kind.value,
        "count": len(value),
        "values": to_jsonable(value.items),
        "canonical": format_parsed_value(value),
    }


def _cmd_expand(args: argparse.Namespace) -> int:
    settings = _resolve_settings(args)
    points = prepare_design_space(parse_param_assignments(args.param), settings=settings, mode=args.mode)
    if args.json:
        payload = [{"index": p.index, "parameters": [[n, to_jsonable(v)] for n, v in p.assignments]} for p in points]
        _write(canonical_json_dumps(payload))
        return EXIT_OK
    _write(f"{len(points)} design points")
    for point in points:
        _write(f"  [{point.index}] {point.label}")
    return EXIT_OK


def _cmd_run(args: argparse.Namespace) -> int:
    settings = _resolve_settings(args)
    designer = load_designer(args.designer)
    service = DiagnosisService.from_settings(settings)
    config = service.config(args.sims, args.bootstrap)
    result = service.run(designer, parse_param_assignments(args.param), config, mode=args.mode)

    if args.json:
        _write(canonical_json_dumps(result.to_dict()))
    else:
        _write(_format_run_report(result))
    return EXIT_OK if result.n_completed > 0 else EXIT_USER_ERROR


def _format_run_report(result: DiagnosisResult) -> str:
    source = "cache" if result.from_cache else f"computed in {result.total_time_sec:.2f}s"
    key = result.cache_key.short_key if result.cache_key else "-"
    lines = [
        f"Cache key: {key} ({source})",
        f"Points: {len(result.points)} ({result.n_completed} completed, {result.n_failed} failed)",
    ]
    if result.store_error:
        lines.append(f"Warning: result not cached: {result.store_error}")
    for row in result.diagnosands_table():
        lines.append("  " + ", ".join(f"{column}={_format_cell(value)}" for column, value in row.items()))
    for point in result.failures():
        lines.append(f"  [{point.index}] FAILED during {point.stage}: {point.error}")
    return "\n".join(lines)


def _format_cell(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4g}"
    return str(value)


def _cmd_cache(args: argparse.Namespace) -> int:
    settings = _resolve_settings(args)
    cache = FilesystemDiagnosisCache(settings.cache_dir)

    if args.cache_command == "stats":
        stats = cache.stats()
        if args.json:
            _write(canonical_json_dumps({"cache_dir": str(settings.cache_dir), **stats.to_dict()}))
        else:
            _write(f"Cache: {settings.cache_dir}")
            _write(f"Entries: {stats.entries}")
            _write(f"Size: {stats.total_size_bytes} bytes")
        return EXIT_OK

    results = cache.verify_integrity()
    invalid = sorted(digest for digest, ok in results.items() if not ok)
    if args.json:
        _write(canonical_json_dumps({"checked": len(results), "invalid": invalid}))
    else:
        _write(f"Checked {len(results)} entries, {len(invalid)} invalid")
        for digest in invalid:
            _write(f"  invalid: {digest}")
    return EXIT_USER_ERROR if invalid else EXIT_OK


_COMMANDS = {
    "parse": _cmd_parse,
    "expand": _cmd_expand,
    "run": _cmd_run,
    "cache": _cmd_cache,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    command = _COMMANDS.get(args.command)
    if command is None:
        parser.error(f"Unknown command: {args.command}")
        return EXIT_USAGE

    try:
        return command(args)
    except CacheIntegrityError as e:
        logger.critical("Cache integrity fault: %s", e)
        return EXIT_INTEGRITY
    except (DesignFoundryError, ValueError) as e:
        logger.error("Error: %s", e)
        return EXIT_USER_ERROR


if __name__ == "__main__":
    sys.exit(main())
