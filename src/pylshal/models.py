"""Data models for pylshal."""

import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum, Flag, auto

NO_PID = -1
NO_PTR = 0


class Status(Flag):
    """Accumulated outcome of a fetch cycle or manifest build."""

    OK = 0
    NO_BINDERIZED_MANAGER = auto()
    NO_PASSTHROUGH_MANAGER = auto()
    DUMP_BINDERIZED_ERROR = auto()
    DUMP_PASSTHROUGH_ERROR = auto()
    DUMP_ALL_LIBS_ERROR = auto()
    TRANSACTION_ERROR = auto()
    TIMEOUT = auto()
    NO_INTERFACE = auto()
    BAD_IMPL = auto()
    IO_ERROR = auto()
    UNRESOLVED_PARTITION = auto()
    INVALID_INSTANCE = auto()
    MISSING_BITNESS = auto()
    INSERT_CONFLICT = auto()


class Transport(Enum):
    """How an instance is reached."""

    HWBINDER = "hwbinder"
    PASSTHROUGH = "passthrough"


class Arch(Flag):
    """Bitness of an implementation. UNKNOWN is the identity for ``|``."""

    UNKNOWN = 0
    BIT32 = auto()
    BIT64 = auto()

    def __str__(self) -> str:
        return {
            Arch.UNKNOWN: "",
            Arch.BIT32: "32",
            Arch.BIT64: "64",
            Arch.BIT32 | Arch.BIT64: "32+64",
        }[self]


class Partition(Enum):
    """Placement category an instance is declared under."""

    UNKNOWN = "unknown"
    SYSTEM = "system"
    VENDOR = "vendor"
    ODM = "odm"


class HalType(Enum):
    """The three tables a fetch cycle can fill."""

    BINDERIZED_SERVICES = "binderized"
    PASSTHROUGH_CLIENTS = "passthrough_clients"
    PASSTHROUGH_LIBRARIES = "passthrough_libs"


class SortKey(Enum):
    """Sort keys for tables."""

    INTERFACE = "interface"
    PID = "pid"


@dataclass(slots=True)
class TableEntry:
    """One discovered interface instance."""

    interface_name: str
    transport: Transport
    server_pid: int = NO_PID
    server_object_address: int = NO_PTR
    arch: Arch = Arch.UNKNOWN
    client_pids: list[int] = field(default_factory=list)
    thread_usage: int = 0
    thread_count: int = 0
    hash: str = ""
    partition: Partition = Partition.UNKNOWN
    server_cmdline: str = ""
    client_cmdlines: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def thread_usage_text(self) -> str:
        """Threads in use over threads available, blank when unknown."""
        if self.thread_count == 0:
            return ""
        return f"{self.thread_usage}/{self.thread_count}"


@dataclass(slots=True)
class PidInfo:
    """What the binder debug state says about one process."""

    ref_pids: dict[int, list[int]] = field(default_factory=dict)
    thread_usage: int = 0  # threads in use
    thread_count: int = 0  # threads total


def _sort_by_interface(entry: TableEntry) -> str:
    return entry.interface_name


def _sort_by_pid(entry: TableEntry) -> int:
    return entry.server_pid


_SORT_KEYS = {
    SortKey.INTERFACE: _sort_by_interface,
    SortKey.PID: _sort_by_pid,
}


def sort_entries(entries: Iterable[TableEntry], key: SortKey) -> list[TableEntry]:
    """Stable sort by interface name or server pid."""
    return sorted(entries, key=_SORT_KEYS[key])


class Table:
    """Ordered entries of one HalType, in discovery order unless sorted."""

    def __init__(self, description: str = "") -> None:
        self.description = description
        self._entries: list[TableEntry] = []

    def add(self, entry: TableEntry) -> None:
        self._entries.append(entry)

    def sort(self, key: SortKey) -> None:
        """Stable sort in place."""
        self._entries.sort(key=_SORT_KEYS[key])

    def __iter__(self) -> Iterator[TableEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> TableEntry:
        return self._entries[index]


@dataclass(slots=True)
class HalSnapshot:
    """Result of one fetch cycle."""

    services: Table
    passthrough_clients: Table
    libraries: Table
    status: Status = Status.OK
    timestamp: float = field(default_factory=time.time)

    def table(self, hal_type: HalType) -> Table:
        return {
            HalType.BINDERIZED_SERVICES: self.services,
            HalType.PASSTHROUGH_CLIENTS: self.passthrough_clients,
            HalType.PASSTHROUGH_LIBRARIES: self.libraries,
        }[hal_type]

    def entries(self) -> Iterator[TableEntry]:
        """All entries across the three tables."""
        for hal_type in HalType:
            yield from self.table(hal_type)
