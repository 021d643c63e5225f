from __future__ import annotations

import argparse
import os
import sys

from . import settings
from .logging_config import setup_logging
from .model import ARTIFACT_NAMES, DESCRIPTIONS, KINDS, shape_of
from .supervisor import supervise


def _apply_overrides(values: dict[str, str], overrides: list[str]) -> None:
    for item in overrides:
        if "=" not in item:
            raise ValueError(f"Invalid setting (expected KEY=VALUE): {item}")
        key, value = item.split("=", 1)
        values[key] = value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="profwrap",
        description="Run a program and collect profiles of the run into an output directory.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run a program under profiling supervision.")
    run.add_argument("--output-dir", default=None, help=f"Artifact directory (overrides {settings.OUTPUT_DIR_KEY}).")
    run.add_argument(
        "--enable",
        action="append",
        default=[],
        choices=list(KINDS),
        help="Enable a collector (repeatable). Adds to the PPROF_ENABLE_* environment toggles.",
    )
    run.add_argument("--cpu-duration", default=None, help=f"CPU sampling cut-off in seconds (overrides {settings.CPU_DURATION_KEY}).")
    run.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE", help="Extra setting (repeatable).")
    run.add_argument("--log-level", default="INFO", help="Logging level for wrapper diagnostics (default: INFO).")
    run.add_argument("command", nargs=argparse.REMAINDER, help="Program and arguments. Use `--` before the program.")

    sub.add_parser("kinds", help="List collector kinds and their artifact names.")

    return parser


def _run(ns: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    command = list(ns.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("Missing program. Provide it after `--`.")

    values = dict(os.environ)
    try:
        _apply_overrides(values, ns.overrides)
    except ValueError as e:
        parser.error(str(e))
    if ns.output_dir is not None:
        values[settings.OUTPUT_DIR_KEY] = ns.output_dir
    for kind in ns.enable:
        values[settings.ENABLE_KEYS[kind]] = "true"
    if ns.cpu_duration is not None:
        values[settings.CPU_DURATION_KEY] = ns.cpu_duration

    plan = settings.resolve_or_disable(values)
    outcome = supervise(plan, command)
    if outcome.spawn_error is not None:
        print(f"profwrap: {outcome.spawn_error}", file=sys.stderr)
    for failure in outcome.failures:
        print(f"profwrap: {failure.kind} {failure.operation} failed: {failure.error}", file=sys.stderr)
    return outcome.exit_code


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint. Returns process exit code."""
    parser = build_parser()
    ns = parser.parse_args(argv)

    if ns.cmd == "run":
        try:
            setup_logging(ns.log_level)
        except ValueError as e:
            parser.error(str(e))
        return _run(ns, parser)
    if ns.cmd == "kinds":
        for kind in KINDS:
            print(f"{kind:<10} {shape_of(kind):<11} {ARTIFACT_NAMES[kind]:<19} {DESCRIPTIONS[kind]}")
        return 0

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
