"""Skeleton HAL manifest synthesis from a correlated snapshot."""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from pylshal.fqname import FqInstance, parse_package_and_version
from pylshal.models import Arch, HalSnapshot, Partition, Status, TableEntry, Transport
from pylshal.partition import resolve_partition

logger = logging.getLogger(__name__)

BASE_PACKAGE = "android.hidl.base"

INIT_VINTF_NOTES = (
    "    1. If a HAL is supported in both hwbinder and passthrough transport,\n"
    "       only hwbinder is shown.\n"
    "    2. It is likely that HALs in passthrough transport does not have\n"
    "       <interface> declared; users will have to write them by hand.\n"
    "    3. A HAL with lower minor version can be overridden by a HAL with\n"
    "       higher minor version if they have the same name and major version.\n"
    "    4. This output is intended for launch devices.\n"
    "       Upgrading devices should not use this tool to generate device\n"
    "       manifest and replace the existing manifest directly, but should\n"
    "       edit the existing manifest manually.\n"
    "       Specifically, devices which launched at Android O-MR1 or earlier\n"
    "       should not use the 'fqname' format for required HAL entries and\n"
    "       should instead use the legacy package, name, instance-name format\n"
    "       until they are updated.\n"
)


class ManifestConflict(Exception):
    """An instance cannot be declared next to what the manifest already has."""


@dataclass(slots=True)
class ManifestHal:
    """All instances of one package served with one transport and bitness."""

    package: str
    transport: Transport
    arch: Arch
    instances: set[FqInstance] = field(default_factory=set)

    def majors(self) -> set[int]:
        return {fq.major for fq in self.instances}


class HalManifest:
    """Declared HAL instances of one partition."""

    def __init__(self, partition: Partition) -> None:
        self.partition = partition
        self._hals: list[ManifestHal] = []

    @property
    def schema_type(self) -> str:
        return "framework" if self.partition is Partition.SYSTEM else "device"

    @property
    def hals(self) -> list[ManifestHal]:
        return list(self._hals)

    def insert_instance(self, fq: FqInstance, transport: Transport, arch: Arch) -> None:
        """
        Declare ``fq``; raises ManifestConflict if its package and major version
        are already declared with a different transport or bitness.
        """
        if not fq.interface or not fq.instance:
            raise ManifestConflict("Should specify interface and instance")
        target = None
        for hal in self._hals:
            if hal.package != fq.package:
                continue
            if hal.transport is transport and hal.arch == arch:
                target = hal
            elif fq.major in hal.majors():
                raise ManifestConflict(
                    f"{fq.package_and_version} is already declared with transport "
                    f"{hal.transport.value}"
                    + (f" arch {hal.arch}" if hal.arch is not Arch.UNKNOWN else "")
                )
        if target is None:
            target = ManifestHal(package=fq.package, transport=transport, arch=arch)
            self._hals.append(target)
        target.instances.add(fq)

    def has_instance_of_version(self, package: str, major: int, minor: int) -> bool:
        return any(
            fq.version == (major, minor)
            for hal in self._hals
            if hal.package == package
            for fq in hal.instances
        )

    def to_element(self) -> ET.Element:
        root = ET.Element("manifest", version="1.0", type=self.schema_type)
        for hal in sorted(self._hals, key=lambda h: (h.package, h.transport.value)):
            hal_element = ET.SubElement(root, "hal", format="hidl")
            ET.SubElement(hal_element, "name").text = hal.package
            transport = ET.SubElement(hal_element, "transport")
            transport.text = hal.transport.value
            if hal.arch is not Arch.UNKNOWN:
                transport.set("arch", str(hal.arch))
            for fq in sorted(hal.instances, key=str):
                fqname = ET.SubElement(hal_element, "fqname")
                fqname.text = f"@{fq.major}.{fq.minor}::{fq.interface}/{fq.instance}"
        return root


@dataclass(slots=True)
class ManifestError:
    interface_name: str
    reason: str
    status: Status


@dataclass(slots=True)
class ManifestResult:
    """A manifest together with everything that could not go into it."""

    partition: Partition
    manifest: HalManifest
    errors: list[ManifestError] = field(default_factory=list)
    passthrough: list[str] = field(default_factory=list)

    @property
    def status(self) -> Status:
        status = Status.OK
        for error in self.errors:
            status |= error.status
        return status

    def to_xml(self) -> str:
        """Manifest XML preceded by a comment with notes and leftovers."""
        comment = (
            "<!-- \n"
            f"    This is a skeleton {self.manifest.schema_type} manifest. Notes: \n"
            + INIT_VINTF_NOTES
        )
        if self.errors:
            comment += "\n    The following HALs are not added; see warnings.\n"
            comment += "".join(f"        {e.interface_name}\n" for e in self.errors)
        if self.passthrough:
            comment += (
                "\n    The following HALs are passthrough and no interface or instance \n"
                "    names can be inferred.\n"
            )
            comment += "".join(f"        {name}\n" for name in self.passthrough)
        comment += "-->\n"

        root = self.manifest.to_element()
        ET.indent(root, space="    ")
        return comment + ET.tostring(root, encoding="unicode") + "\n"


def _add_entry_with_instance(
    entry: TableEntry, manifest: HalManifest, result: ManifestResult
) -> None:
    def fail(status: Status, reason: str) -> None:
        logger.warning("%s", reason)
        result.errors.append(ManifestError(entry.interface_name, reason, status))

    try:
        fq = FqInstance.parse(entry.interface_name)
    except ValueError:
        fail(Status.INVALID_INSTANCE, f"'{entry.interface_name}' is not a valid FqInstance.")
        return

    if fq.in_package(BASE_PACKAGE):
        return

    partition = resolve_partition(entry.partition, fq.package)
    if partition is Partition.UNKNOWN:
        fail(
            Status.UNRESOLVED_PARTITION,
            f"Cannot guess the partition of FqInstance {fq}",
        )
        return
    if partition is not manifest.partition:
        return

    if entry.transport is Transport.HWBINDER:
        arch = Arch.UNKNOWN
    else:
        if entry.arch is Arch.UNKNOWN:
            fail(Status.MISSING_BITNESS, f"'{entry.interface_name}' doesn't have bitness info.")
            return
        arch = entry.arch

    try:
        manifest.insert_instance(fq, entry.transport, arch)
    except ManifestConflict as e:
        fail(Status.INSERT_CONFLICT, f"Cannot insert '{fq}': {e}")


def _has_instance(entry: TableEntry, manifest: HalManifest) -> bool:
    try:
        package, major, minor = parse_package_and_version(entry.interface_name)
    except ValueError:
        logger.warning("Cannot parse version for entry '%s'", entry.interface_name)
        return False
    return manifest.has_instance_of_version(package, major, minor)


def build_manifest(snapshot: HalSnapshot, partition: Partition) -> ManifestResult:
    """
    Build a skeleton manifest of ``partition`` from a postprocessed snapshot.

    Never fails as a whole: entries that cannot be declared end up in
    ``errors``, libraries with no declared instance in ``passthrough``.
    """
    manifest = HalManifest(partition)
    result = ManifestResult(partition=partition, manifest=manifest)

    for entry in snapshot.services:
        _add_entry_with_instance(entry, manifest, result)
    for entry in snapshot.passthrough_clients:
        _add_entry_with_instance(entry, manifest, result)

    for entry in snapshot.libraries:
        if not _has_instance(entry, manifest):
            result.passthrough.append(entry.interface_name)
    return result
