"""Parsing of the binder driver's per-process debug state."""

import logging
import re
from collections.abc import Callable, Iterable, Iterator, Sequence
from pathlib import Path

from pylshal.models import PidInfo
from pylshal.procinfo import KeyedMemo

logger = logging.getLogger(__name__)

HWBINDER_CONTEXT = "hwbinder"

BINDER_DEBUG_PATHS = (
    Path("/d/binder/proc"),
    Path("/sys/kernel/debug/binder/proc"),
)

_CONTEXT_LINE = re.compile(r"^context (\w+)$")
_REFERENCE_PREFIX = re.compile(r"^\s*node \d+:\s+u([0-9a-f]+)\s+c([0-9a-f]+)\s+")
_THREAD_PREFIX = re.compile(r"^\s*thread \d+:\s+l\s+(\d)(\d)")
_PROC_MARKER = " proc "

# First digit of a thread line.
_THREAD_WAITING = "1"  # blocked in the driver, i.e. idle
# Second digit of a thread line.
_THREAD_CALLED_IN = "0"  # called into binder from outside the pool


def read_binder_debug(
    pid: int,
    roots: Sequence[Path] = BINDER_DEBUG_PATHS,
) -> list[str] | None:
    """Read the debug text for ``pid``; None if no root has a readable file."""
    for root in roots:
        try:
            return (root / str(pid)).read_text(errors="replace").splitlines()
        except OSError:
            continue
    return None


def scan_binder_context(lines: Iterable[str], context: str) -> Iterator[str]:
    """Yield the lines that belong to ``context``; context markers are dropped."""
    in_context = False
    for line in lines:
        match = _CONTEXT_LINE.search(line)
        if match:
            in_context = match.group(1) == context
            continue
        if in_context:
            yield line


def _add_references(line: str, ptr: int, info: PidInfo) -> None:
    pos = line.rfind(_PROC_MARKER)
    if pos < 0:
        return
    for pid_str in line[pos + len(_PROC_MARKER):].split():
        try:
            pid = int(pid_str)
        except ValueError:
            logger.warning("Could not parse number %s", pid_str)
            return
        info.ref_pids.setdefault(ptr, []).append(pid)


def scan_pid_info(lines: Iterable[str], context: str = HWBINDER_CONTEXT) -> PidInfo:
    """
    Build a PidInfo from a process's binder debug text.

    Node lines map the object pointer (the ``c`` field) to the pids listed
    after ``proc``. Thread lines count pool threads; waiting threads are idle.
    Every other line is ignored.
    """
    info = PidInfo()
    for line in scan_binder_context(lines, context):
        match = _REFERENCE_PREFIX.search(line)
        if match:
            _add_references(line, int(match.group(2), 16), info)
            continue

        match = _THREAD_PREFIX.search(line)
        if match:
            if match.group(2) == _THREAD_CALLED_IN:
                continue
            if match.group(1) != _THREAD_WAITING:
                info.thread_usage += 1
            info.thread_count += 1
    return info


class PidInfoCache:
    """PidInfo per server pid, read at most once per fetch cycle."""

    def __init__(
        self,
        source: Callable[[int], Iterable[str] | None] = read_binder_debug,
        context: str = HWBINDER_CONTEXT,
    ) -> None:
        self._source = source
        self._context = context
        self._memo: KeyedMemo[int, PidInfo | None] = KeyedMemo(self._load)

    def _load(self, pid: int) -> PidInfo | None:
        lines = self._source(pid)
        if lines is None:
            return None
        return scan_pid_info(lines, self._context)

    def get(self, pid: int) -> PidInfo | None:
        """The PidInfo for ``pid``, or None when its debug state is unreadable."""
        return self._memo.get(pid)
