"""Fetching and correlating HAL instances from the service managers."""

import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from pylshal.binder import BINDER_DEBUG_PATHS, PidInfoCache, read_binder_debug
from pylshal.fqname import parse_package_and_version
from pylshal.ipc import (
    IPC_CALL_WAIT,
    LIBRARY_DUMP_WAIT,
    CallResult,
    HalService,
    InstanceDebugInfo,
    ServiceManager,
    timeout_ipc,
)
from pylshal.models import (
    NO_PID,
    NO_PTR,
    Arch,
    HalSnapshot,
    HalType,
    Partition,
    SortKey,
    Status,
    Table,
    TableEntry,
    Transport,
)
from pylshal.partition import resolve_partition
from pylshal.procinfo import CmdlineCache, PartitionCache, read_cmdline, read_partition

logger = logging.getLogger(__name__)

SERVICES_DESCRIPTION = (
    "All binderized services (registered services through hwservicemanager)"
)
PASSTHROUGH_CLIENTS_DESCRIPTION = (
    "All interfaces that getService() has ever return as a passthrough interface;\n"
    "PIDs / processes shown below might be inaccurate because the process\n"
    "might have relinquished the interface or might have died.\n"
    "The Server / Server CMD column can be ignored.\n"
    "The Clients / Clients CMD column shows all process that have ever dlopen'ed \n"
    "the library and successfully fetched the passthrough implementation."
)
LIBRARIES_DESCRIPTION = (
    "All available passthrough implementations (all -impl.so files).\n"
    "These may return subclasses through their respective HIDL_FETCH_I* functions."
)

_HAL_TYPE_NAMES = {
    "binderized": HalType.BINDERIZED_SERVICES,
    "b": HalType.BINDERIZED_SERVICES,
    "passthrough_clients": HalType.PASSTHROUGH_CLIENTS,
    "c": HalType.PASSTHROUGH_CLIENTS,
    "passthrough_libs": HalType.PASSTHROUGH_LIBRARIES,
    "l": HalType.PASSTHROUGH_LIBRARIES,
}


def parse_hal_types(text: str) -> tuple[HalType, ...]:
    """
    Parse a comma-separated list such as ``"b,passthrough_libs"``.

    Duplicates are dropped, order is kept. Raises ValueError on an unknown
    name or when nothing is selected.
    """
    types: list[HalType] = []
    for name in text.split(","):
        if not name:
            continue
        if name not in _HAL_TYPE_NAMES:
            raise ValueError(f"Unrecognized HAL type: {name}")
        if _HAL_TYPE_NAMES[name] not in types:
            types.append(_HAL_TYPE_NAMES[name])
    if not types:
        raise ValueError("No HAL type selected")
    return tuple(types)


@dataclass(slots=True)
class ListOptions:
    """What to fetch and how."""

    types: tuple[HalType, ...] = tuple(HalType)
    sort_key: SortKey | None = None
    ipc_timeout: float = IPC_CALL_WAIT
    library_timeout: float = LIBRARY_DUMP_WAIT
    max_workers: int = 1
    binder_debug_paths: tuple[Path, ...] = BINDER_DEBUG_PATHS


@dataclass(slots=True)
class CycleContext:
    """Caches that live for exactly one fetch cycle."""

    cmdlines: CmdlineCache = field(default_factory=CmdlineCache)
    partitions: PartitionCache = field(default_factory=PartitionCache)
    pid_infos: PidInfoCache = field(default_factory=PidInfoCache)


class HalLister:
    """
    Lists HALs known to the binderized and passthrough service managers.

    Each call to ``run()`` is an independent snapshot: the caches are rebuilt
    through ``context_factory`` at the start of every cycle.
    """

    def __init__(
        self,
        service_manager: ServiceManager | None,
        passthrough_manager: ServiceManager | None,
        options: ListOptions | None = None,
        context_factory: Callable[[], CycleContext] | None = None,
    ) -> None:
        self._service_manager = service_manager
        self._passthrough_manager = passthrough_manager
        self.options = options or ListOptions()
        self._context_factory = context_factory or self._default_context
        self.context = self._context_factory()
        self._new_tables()

    def _default_context(self) -> CycleContext:
        def source(pid: int) -> Iterable[str] | None:
            return read_binder_debug(pid, self.options.binder_debug_paths)

        return CycleContext(
            cmdlines=CmdlineCache(read_cmdline),
            partitions=PartitionCache(read_partition),
            pid_infos=PidInfoCache(source),
        )

    def _new_tables(self) -> None:
        self.services = Table()
        self.passthrough_clients = Table()
        self.libraries = Table()
        self._tables = {
            HalType.BINDERIZED_SERVICES: self.services,
            HalType.PASSTHROUGH_CLIENTS: self.passthrough_clients,
            HalType.PASSTHROUGH_LIBRARIES: self.libraries,
        }

    def should_report(self, hal_type: HalType) -> bool:
        return hal_type in self.options.types

    def selected_tables(self) -> list[Table]:
        return [self._tables[t] for t in self.options.types]

    def run(self) -> HalSnapshot:
        """Run one full cycle: fetch, then postprocess."""
        self.context = self._context_factory()
        self._new_tables()
        status = self.fetch()
        self.postprocess()
        return HalSnapshot(
            services=self.services,
            passthrough_clients=self.passthrough_clients,
            libraries=self.libraries,
            status=status,
        )

    def fetch(self) -> Status:
        status = Status.OK
        if self._service_manager is None:
            logger.error("Failed to get defaultServiceManager()!")
            status |= Status.NO_BINDERIZED_MANAGER
        else:
            status |= self.fetch_binderized(self._service_manager)
            # Passthrough pids are registered to the binderized manager as well.
            status |= self.fetch_passthrough(self._service_manager)

        if self._passthrough_manager is None:
            logger.error("Failed to get getPassthroughServiceManager()!")
            status |= Status.NO_PASSTHROUGH_MANAGER
        else:
            status |= self.fetch_all_libraries(self._passthrough_manager)
        return status

    def fetch_all_libraries(self, manager: ServiceManager) -> Status:
        if not self.should_report(HalType.PASSTHROUGH_LIBRARIES):
            return Status.OK

        ret = timeout_ipc(manager.debug_dump, timeout=self.options.library_timeout)
        if not ret.is_ok:
            logger.error(
                "Failed to call list on getPassthroughServiceManager(): %s",
                ret.description,
            )
            return Status.DUMP_ALL_LIBS_ERROR | self._call_status(ret)

        entries: dict[str, TableEntry] = {}
        for info in ret.value:
            name = _instance_name(info)
            entry = entries.setdefault(
                name,
                TableEntry(
                    interface_name=name,
                    transport=Transport.PASSTHROUGH,
                    client_pids=list(info.client_pids),
                ),
            )
            entry.arch |= info.arch
        for entry in entries.values():
            self.libraries.add(entry)
        return Status.OK

    def fetch_passthrough(self, manager: ServiceManager) -> Status:
        if not self.should_report(HalType.PASSTHROUGH_CLIENTS):
            return Status.OK

        ret = timeout_ipc(manager.debug_dump, timeout=self.options.ipc_timeout)
        if not ret.is_ok:
            logger.error(
                "Failed to call debugDump on defaultServiceManager(): %s",
                ret.description,
            )
            return Status.DUMP_PASSTHROUGH_ERROR | self._call_status(ret)

        for info in ret.value:
            if not info.client_pids:
                continue
            self.passthrough_clients.add(
                TableEntry(
                    interface_name=_instance_name(info),
                    transport=Transport.PASSTHROUGH,
                    server_pid=info.client_pids[0] if len(info.client_pids) == 1 else NO_PID,
                    client_pids=list(info.client_pids),
                    arch=info.arch,
                )
            )
        return Status.OK

    def fetch_binderized(self, manager: ServiceManager) -> Status:
        if not self.should_report(HalType.BINDERIZED_SERVICES):
            return Status.OK

        list_ret = timeout_ipc(manager.list, timeout=self.options.ipc_timeout)
        if not list_ret.is_ok:
            logger.error(
                "Failed to list services for %s: %s",
                Transport.HWBINDER.value,
                list_ret.description,
            )
            return Status.DUMP_BINDERIZED_ERROR | self._call_status(list_ret)

        # Last write wins for duplicate names; order is first discovery.
        entries: dict[str, TableEntry] = {}
        for fq_instance_name in list_ret.value:
            entries[fq_instance_name] = TableEntry(
                interface_name=fq_instance_name,
                transport=Transport.HWBINDER,
            )

        status = Status.OK
        if self.options.max_workers > 1 and len(entries) > 1:
            with ThreadPoolExecutor(
                max_workers=self.options.max_workers,
                thread_name_prefix="HalLister",
            ) as pool:
                futures = [
                    pool.submit(self.fetch_binderized_entry, manager, entry)
                    for entry in entries.values()
                ]
                for future in futures:
                    status |= future.result()
        else:
            for entry in entries.values():
                status |= self.fetch_binderized_entry(manager, entry)

        for entry in entries.values():
            self.services.add(entry)
        return status

    def fetch_binderized_entry(self, manager: ServiceManager, entry: TableEntry) -> Status:
        """Fill one binderized entry. Failures are attached to the entry."""
        status = Status.OK

        def handle_error(additional: Status, message: str) -> None:
            nonlocal status
            logger.warning('Skipping "%s": %s', entry.interface_name, message)
            entry.warnings.append(message)
            status |= Status.DUMP_BINDERIZED_ERROR | additional

        service_name, _, instance_name = entry.interface_name.partition("/")
        timeout = self.options.ipc_timeout

        get_ret = timeout_ipc(manager.get, service_name, instance_name, timeout=timeout)
        if not get_ret.is_ok:
            handle_error(
                self._call_status(get_ret),
                "cannot be fetched from service manager: " + get_ret.description,
            )
            return status
        service: HalService | None = get_ret.value
        if service is None:
            handle_error(Status.NO_INTERFACE, "cannot be fetched from service manager (null)")
            return status

        debug_ret = timeout_ipc(service.get_debug_info, timeout=timeout)
        if not debug_ret.is_ok:
            handle_error(
                self._call_status(debug_ret),
                "debugging information cannot be retrieved: " + debug_ret.description,
            )
        else:
            debug_info = debug_ret.value
            entry.server_pid = debug_info.pid
            entry.server_object_address = debug_info.ptr
            entry.arch = debug_info.arch
            if debug_info.pid != NO_PID:
                pid_info = self.context.pid_infos.get(debug_info.pid)
                if pid_info is None:
                    handle_error(
                        Status.IO_ERROR,
                        f"no information for PID {debug_info.pid}, are you root?",
                    )
                else:
                    if debug_info.ptr != NO_PTR:
                        entry.client_pids = list(pid_info.ref_pids.get(debug_info.ptr, []))
                    entry.thread_usage = pid_info.thread_usage
                    entry.thread_count = pid_info.thread_count

        chain_ret = timeout_ipc(service.interface_chain, timeout=timeout)
        if not chain_ret.is_ok:
            handle_error(
                self._call_status(chain_ret),
                "interfaceChain fails: " + chain_ret.description,
            )
            return status
        try:
            hash_index = list(chain_ret.value).index(service_name)
        except ValueError:
            handle_error(Status.BAD_IMPL, "Interface name does not exist in interfaceChain.")
            return status

        hash_ret = timeout_ipc(service.get_hash_chain, timeout=timeout)
        if not hash_ret.is_ok:
            handle_error(
                self._call_status(hash_ret),
                "getHashChain failed: " + hash_ret.description,
            )
            return status
        hash_chain = hash_ret.value
        if hash_index >= len(hash_chain):
            handle_error(
                Status.BAD_IMPL,
                f"interfaceChain indicates position {hash_index} "
                f"but getHashChain returns {len(hash_chain)} hashes",
            )
            return status
        entry.hash = bytes(hash_chain[hash_index]).hex()
        return status

    @staticmethod
    def _call_status(ret: CallResult) -> Status:
        if ret.timed_out:
            return Status.TRANSACTION_ERROR | Status.TIMEOUT
        return Status.TRANSACTION_ERROR

    def postprocess(self) -> None:
        """Attach cmdlines and partitions, then share bitness across tables."""
        cmdlines = self.context.cmdlines
        partitions = self.context.partitions
        for table in self.selected_tables():
            if self.options.sort_key is not None:
                table.sort(self.options.sort_key)
            for entry in table:
                entry.server_cmdline = cmdlines.get(entry.server_pid)
                cmdlines.remove_dead_processes(entry.client_pids)
                entry.client_cmdlines = [cmdlines.get(pid) for pid in entry.client_pids]
                entry.partition = self._entry_partition(
                    partitions.get(entry.server_pid), entry.interface_name
                )

        propagate_arch(self.libraries, self.passthrough_clients)

        self.services.description = SERVICES_DESCRIPTION
        self.passthrough_clients.description = PASSTHROUGH_CLIENTS_DESCRIPTION
        self.libraries.description = LIBRARIES_DESCRIPTION

    @staticmethod
    def _entry_partition(process: Partition, interface_name: str) -> Partition:
        try:
            package, _, _ = parse_package_and_version(interface_name)
        except ValueError:
            return process
        return resolve_partition(process, package)


def propagate_arch(libraries: Iterable[TableEntry], clients: Sequence[TableEntry]) -> None:
    """
    Give passthrough clients without bitness the bitness of their library.

    Names that cannot be parsed on either side are skipped.
    """
    for library in libraries:
        try:
            library_package = parse_package_and_version(library.interface_name)
        except ValueError:
            continue
        for client in clients:
            if client.arch is not Arch.UNKNOWN:
                continue
            try:
                client_package = parse_package_and_version(client.interface_name)
            except ValueError:
                continue
            if client_package == library_package:
                client.arch = library.arch


def _instance_name(info: InstanceDebugInfo) -> str:
    return f"{info.interface_name}/{info.instance_name}"
