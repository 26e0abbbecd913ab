"""In-memory stand-ins for the service managers and process lookups."""

import threading
from collections.abc import Sequence

from pylshal.binder import PidInfoCache
from pylshal.ipc import DebugInfo, InstanceDebugInfo, TransportError
from pylshal.lister import CycleContext
from pylshal.models import NO_PID, NO_PTR, Arch, Partition
from pylshal.procinfo import CmdlineCache, PartitionCache

SELF_PID = 4242

BINDER_TEXT = """\
binder proc state:
proc 100
context hwbinder
  thread 100: l 12 need_return 0 tr 0
  thread 101: l 11 need_return 0 tr 0
  thread 102: l 02 need_return 0 tr 0
  thread 103: l 20 need_return 0 tr 0
  node 7: u0000007a00 c0000007b00 pri 0:139 hs 1 hw 1 ls 0 lw 0 is 3 iw 3 tr 1 proc 200 300 4242
  ref 12: desc 0 node 1 s 1 w 1 d 0000000000000000
context binder
  thread 104: l 02 need_return 0 tr 0
  node 9: u0000007c00 c0000007d00 pri 0:139 hs 1 hw 1 ls 0 lw 0 is 1 iw 1 tr 1 proc 500
"""


class FakeService:
    """A HAL service answering from canned data."""

    def __init__(
        self,
        fq_name: str,
        pid: int = NO_PID,
        ptr: int = NO_PTR,
        arch: Arch = Arch.BIT64,
        chain: Sequence[str] | None = None,
        hashes: Sequence[bytes] | None = None,
        hang: threading.Event | None = None,
        fail_debug_info: bool = False,
    ) -> None:
        self._debug_info = DebugInfo(pid=pid, ptr=ptr, arch=arch)
        self._chain = list(chain) if chain is not None else [
            fq_name,
            "android.hidl.base@1.0::IBase",
        ]
        self._hashes = list(hashes) if hashes is not None else [
            bytes([1]) * 32,
            bytes([2]) * 32,
        ]
        self._hang = hang
        self._fail_debug_info = fail_debug_info

    def get_debug_info(self) -> DebugInfo:
        if self._hang is not None:
            self._hang.wait()
        if self._fail_debug_info:
            raise TransportError("DEAD_OBJECT")
        return self._debug_info

    def interface_chain(self) -> list[str]:
        return self._chain

    def get_hash_chain(self) -> list[bytes]:
        return self._hashes


class FakeManager:
    """A service manager holding services and a debug dump."""

    def __init__(
        self,
        services: dict[str, FakeService | None] | None = None,
        dump: Sequence[InstanceDebugInfo] = (),
        fail_list: bool = False,
    ) -> None:
        self._services = services or {}
        self._dump = list(dump)
        self._fail_list = fail_list

    def list(self) -> list[str]:
        if self._fail_list:
            raise TransportError("hwservicemanager died")
        return list(self._services)

    def get(self, fq_name: str, instance: str) -> FakeService | None:
        return self._services[f"{fq_name}/{instance}"]

    def debug_dump(self) -> Sequence[InstanceDebugInfo]:
        return self._dump


class CountingSource:
    """Binder debug source that counts reads per pid."""

    def __init__(self, texts: dict[int, str]) -> None:
        self._texts = texts
        self.reads: dict[int, int] = {}
        self._lock = threading.Lock()

    def __call__(self, pid: int) -> list[str] | None:
        with self._lock:
            self.reads[pid] = self.reads.get(pid, 0) + 1
        text = self._texts.get(pid)
        return None if text is None else text.splitlines()


def make_context(
    cmdlines: dict[int, str] | None = None,
    partitions: dict[int, Partition] | None = None,
    binder_texts: dict[int, str] | None = None,
    source: CountingSource | None = None,
) -> CycleContext:
    """Build a CycleContext that never touches the real system."""
    cmdlines = cmdlines or {}
    partitions = partitions or {}
    source = source or CountingSource(binder_texts or {})
    return CycleContext(
        cmdlines=CmdlineCache(lambda pid: cmdlines.get(pid, ""), self_pid=SELF_PID),
        partitions=PartitionCache(lambda pid: partitions.get(pid, Partition.UNKNOWN)),
        pid_infos=PidInfoCache(source),
    )


def fake_managers() -> tuple[FakeManager, FakeManager]:
    """Managers factory loadable as ``fakes:fake_managers``."""
    light = "android.hardware.light@2.0::ILight"
    return FakeManager({f"{light}/default": FakeService(light)}), FakeManager()


NOT_CALLABLE = "not a managers factory"
