"""Per-process lookups (cmdline, partition) and their per-cycle caches."""

import os
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

import psutil

from pylshal.models import NO_PID, Partition

K = TypeVar("K")
V = TypeVar("V")

_PARTITION_PREFIXES = (
    ("/system/", Partition.SYSTEM),
    ("/vendor/", Partition.VENDOR),
    ("/odm/", Partition.ODM),
)


def read_cmdline(pid: int) -> str:
    """Return the command line of ``pid``, or "" if it cannot be read."""
    if pid == NO_PID:
        return ""
    try:
        return " ".join(psutil.Process(pid).cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return ""


def partition_from_path(path: str) -> Partition:
    for prefix, partition in _PARTITION_PREFIXES:
        if path.startswith(prefix):
            return partition
    return Partition.UNKNOWN


def read_partition(pid: int) -> Partition:
    """
    Guess the partition a process was started from.

    Uses the executable location first, then the first word of the cmdline.
    """
    if pid == NO_PID:
        return Partition.UNKNOWN
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            partition = partition_from_path(proc.exe())
            if partition is not Partition.UNKNOWN:
                return partition
            cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return Partition.UNKNOWN
    return partition_from_path(cmdline[0]) if cmdline else Partition.UNKNOWN


def parse_partition(text: str) -> Partition:
    """Parse 'system', 'vendor' or 'odm'; anything else is UNKNOWN."""
    try:
        partition = Partition(text.strip().lower())
    except ValueError:
        return Partition.UNKNOWN
    return partition


class KeyedMemo(Generic[K, V]):
    """
    Compute-once cache keyed by K.

    Lookups of the same key are serialized so a racing second caller sees the
    first caller's value instead of computing again. Different keys never
    block each other.
    """

    def __init__(self, compute: Callable[[K], V]) -> None:
        self._compute = compute
        self._values: dict[K, V] = {}
        self._locks: dict[K, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: K) -> V:
        with self._guard:
            if key in self._values:
                return self._values[key]
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            with self._guard:
                if key in self._values:
                    return self._values[key]
            value = self._compute(key)
            with self._guard:
                self._values[key] = value
                self._locks.pop(key, None)
            return value

    def __contains__(self, key: K) -> bool:
        with self._guard:
            return key in self._values

    def __len__(self) -> int:
        with self._guard:
            return len(self._values)


class CmdlineCache:
    """
    Cached cmdlines for the duration of one fetch cycle.

    An empty cmdline is cached too; it means the process has probably died
    and it is not asked for again in this cycle.
    """

    def __init__(
        self,
        lookup: Callable[[int], str] = read_cmdline,
        self_pid: int | None = None,
    ) -> None:
        self._memo: KeyedMemo[int, str] = KeyedMemo(lookup)
        self.self_pid = os.getpid() if self_pid is None else self_pid

    def get(self, pid: int) -> str:
        return self._memo.get(pid)

    def remove_dead_processes(self, pids: list[int]) -> None:
        """Drop our own pid and pids without a cmdline, in place."""
        pids[:] = [
            pid for pid in pids if pid != self.self_pid and self.get(pid)
        ]


class PartitionCache:
    """Cached process partitions for the duration of one fetch cycle."""

    def __init__(self, lookup: Callable[[int], Partition] = read_partition) -> None:
        self._memo: KeyedMemo[int, Partition] = KeyedMemo(lookup)

    def get(self, pid: int) -> Partition:
        return self._memo.get(pid)
