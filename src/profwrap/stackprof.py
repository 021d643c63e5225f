"""
Stack-sample accumulation and `pstats` encoding.

CPU, blocking and lock-contention collectors all produce weighted stack samples.
They are written in the marshal layout that `cProfile` uses for `-o` output, so
`pstats.Stats(path)`, snakeviz and similar tools read them unchanged.
"""

from __future__ import annotations

import marshal
from types import FrameType
from typing import IO, Any

FuncKey = tuple[str, int, str]
Stack = tuple[FuncKey, ...]

DEFAULT_MAX_DEPTH = 128


def func_key(frame: FrameType) -> FuncKey:
    code = frame.f_code
    return (code.co_filename, code.co_firstlineno, code.co_name)


def pseudo_func(name: str) -> FuncKey:
    """Key for a frame with no Python code, in cProfile's built-in style."""
    return ("~", 0, f"<{name}>")


def frame_stack(frame: FrameType | None, *, max_depth: int = DEFAULT_MAX_DEPTH) -> Stack:
    """Return the stack ending at `frame`, root first."""
    out: list[FuncKey] = []
    while frame is not None and len(out) < max_depth:
        out.append(func_key(frame))
        frame = frame.f_back
    out.reverse()
    return tuple(out)


class StackProfile:
    """Weighted stack samples: stack -> (sample count, seconds)."""

    def __init__(self) -> None:
        self._samples: dict[Stack, tuple[int, float]] = {}

    def add(self, stack: Stack, *, count: int = 1, seconds: float = 0.0) -> None:
        if not stack:
            return
        c, s = self._samples.get(stack, (0, 0.0))
        self._samples[stack] = (c + count, s + seconds)

    def copy(self) -> "StackProfile":
        other = StackProfile()
        other._samples = dict(self._samples)
        return other

    @property
    def sample_count(self) -> int:
        return sum(c for c, _ in self._samples.values())

    @property
    def total_seconds(self) -> float:
        return sum(s for _, s in self._samples.values())

    def __len__(self) -> int:
        return len(self._samples)

    def to_pstats(self) -> dict[FuncKey, tuple[int, int, float, float, dict[FuncKey, tuple[int, int, float, float]]]]:
        """Fold samples into `{func: (cc, nc, tt, ct, callers)}`.

        Each sample counts once per distinct function on its stack for the
        cumulative figures, so recursion does not inflate `ct`. Own time goes
        to the leaf only.
        """
        acc: dict[FuncKey, list[Any]] = {}
        for stack, (count, seconds) in self._samples.items():
            seen: set[FuncKey] = set()
            leaf_index = len(stack) - 1
            for i, func in enumerate(stack):
                entry = acc.setdefault(func, [0, 0, 0.0, 0.0, {}])
                if func not in seen:
                    seen.add(func)
                    entry[0] += count
                    entry[1] += count
                    entry[3] += seconds
                own = seconds if i == leaf_index else 0.0
                entry[2] += own
                if i > 0:
                    caller = stack[i - 1]
                    cc, nc, tt, ct = entry[4].get(caller, (0, 0, 0.0, 0.0))
                    entry[4][caller] = (cc + count, nc + count, tt + own, ct + seconds)
        return {func: (e[0], e[1], e[2], e[3], e[4]) for func, e in acc.items()}

    def dump(self, fp: IO[bytes]) -> None:
        marshal.dump(self.to_pstats(), fp)
