"""Partition guessing for HAL instances."""

from pylshal.fqname import in_package
from pylshal.models import Partition

_VENDOR_PACKAGES = ("vendor", "com")
_SYSTEM_PACKAGES = ("android.frameworks", "android.system", "android.hidl")
_HARDWARE_PACKAGE = "android.hardware"


def resolve_partition(process: Partition, package: str) -> Partition:
    """
    Give a sensible partition when the runtime alone cannot tell.

    ``process`` is the partition inferred from the serving process's
    executable location or cmdline. Package rules are checked in order.
    """
    if any(in_package(package, p) for p in _VENDOR_PACKAGES):
        return Partition.VENDOR

    if any(in_package(package, p) for p in _SYSTEM_PACKAGES):
        return Partition.SYSTEM

    # Some android.hardware HALs are served from system.
    if in_package(package, _HARDWARE_PACKAGE):
        if process is not Partition.UNKNOWN:
            return process
        return Partition.VENDOR

    return process
