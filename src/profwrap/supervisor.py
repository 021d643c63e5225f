"""
Run one program under profiling supervision.

`supervise()` sequences a single run:

1. resolve the executable (a missing program never arms any collector)
2. arm collectors and apply process-wide sampling rates
3. start continuous collectors, then spawn the child with inherited stdio
4. wait for the child to terminate
5. stop continuous collectors (reverse start order), then take snapshots in
   canonical order
6. write `profwrap-manifest.json` / `PROFWRAP.md` and report the child's exit status

Collector failures end up in `RunOutcome.results`; they never change the exit
code, which is always the child's own when the child ran.

A program that cannot be started reports `SPAWN_FAILURE_EXIT_CODE` (127, the
shell's "command not found"). A child may exit with 127 itself, so callers that
need to tell the two apart check `RunOutcome.spawn_error`, not the exit code.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from . import artifacts, runtime
from .errors import SpawnError
from .model import CollectionPlan, RunOutcome
from .session import CollectorSet

logger = logging.getLogger(__name__)

SPAWN_FAILURE_EXIT_CODE = 127


def resolve_executable(
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Return the path to execute for `command[0]`, or raise SpawnError.

    A program given as a relative path is looked up from `cwd`, where the child
    will run; a bare name is searched on PATH.
    """
    if not command:
        raise SpawnError("No program given")
    program = command[0]
    if cwd is not None and os.sep in program and not os.path.isabs(program):
        program = str(Path(cwd) / program)
    search_path = (env if env is not None else os.environ).get("PATH")
    found = shutil.which(program, path=search_path)
    if found is None:
        raise SpawnError(f"Program not found or not executable: {command[0]}")
    return found


def exit_code_from_returncode(returncode: int) -> tuple[int, int | None]:
    """Map a Popen return code to (exit code, terminating signal)."""
    if returncode < 0:
        sig = -returncode
        return 128 + sig, sig
    return returncode, None


def _wait(proc: subprocess.Popen[bytes]) -> int:
    while True:
        try:
            with runtime.blocking("child process"):
                return proc.wait()
        except KeyboardInterrupt:
            # A terminal SIGINT reaches the child too; let it finish on its own terms.
            logger.warning("Interrupted; waiting for pid %d to exit", proc.pid)


def supervise(
    plan: CollectionPlan,
    command: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RunOutcome:
    """Run `command` to completion while collecting the profiles named in `plan`."""
    argv = [str(a) for a in command]
    started_at = artifacts.utc_now_iso()

    try:
        executable = resolve_executable(argv, cwd=cwd, env=env)
    except SpawnError as e:
        logger.error("%s", e)
        return RunOutcome(
            command=argv,
            started_at=started_at,
            finished_at=artifacts.utc_now_iso(),
            exit_code=SPAWN_FAILURE_EXIT_CODE,
            spawn_error=str(e),
        )

    collectors = CollectorSet(plan)
    collectors.arm()
    collectors.start_continuous()

    try:
        proc = subprocess.Popen(argv, executable=executable, cwd=cwd, env=None if env is None else dict(env))
    except OSError as e:
        logger.error("Failed to start %s: %s", argv[0], e)
        collectors.stop_continuous()
        outcome = RunOutcome(
            command=argv,
            started_at=started_at,
            finished_at=artifacts.utc_now_iso(),
            exit_code=SPAWN_FAILURE_EXIT_CODE,
            spawn_error=str(e),
            results=list(collectors.results),
        )
        artifacts.write_run_report(plan, outcome)
        return outcome

    returncode = _wait(proc)
    exit_code, sig = exit_code_from_returncode(returncode)
    if sig is not None:
        logger.info("Program terminated by signal %d", sig)
    elif returncode != 0:
        logger.info("Program exited with code %d", returncode)

    collectors.drain()

    outcome = RunOutcome(
        command=argv,
        started_at=started_at,
        finished_at=artifacts.utc_now_iso(),
        exit_code=exit_code,
        returncode=returncode,
        signal=sig,
        results=list(collectors.results),
    )
    manifest = artifacts.write_run_report(plan, outcome)
    if manifest is not None:
        logger.info("Profiles written to %s", plan.output_dir)
    return outcome
