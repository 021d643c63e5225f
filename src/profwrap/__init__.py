"""
Profiling wrapper for arbitrary programs.

This package launches a target program, collects interpreter-level profiles
around the run (CPU samples, heap and allocation snapshots, blocking and
lock-contention profiles, live thread stacks), and writes each one as a named
artifact into an output directory once the program exits.

Entry points: `profwrap.supervisor.supervise` for a child process,
`profwrap.session.CollectionSession` for in-process code, and
`python -m profwrap run -- PROGRAM [ARGS...]` on the command line.
"""

from __future__ import annotations
