"""Parsing of fully-qualified HIDL instance names.

A fully-qualified instance looks like ``android.hardware.light@2.0::ILight/default``.
The interface and instance parts are optional; ``android.hardware.light@2.0`` is a
valid package-and-version on its own.
"""

import re
from dataclasses import dataclass

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"

_FQ_INSTANCE = re.compile(
    rf"^(?P<package>{_IDENT}(?:\.{_IDENT})*)"
    r"@(?P<major>\d+)\.(?P<minor>\d+)"
    rf"(?:::(?P<interface>{_IDENT}))?"
    r"(?:/(?P<instance>[^/]+))?$"
)


def in_package(package: str, prefix: str) -> bool:
    """Whether ``package`` is ``prefix`` or one of its sub-packages."""
    return package == prefix or package.startswith(prefix + ".")


@dataclass(slots=True, frozen=True)
class FqInstance:
    """A parsed ``package@major.minor[::Interface][/instance]`` name."""

    package: str
    major: int
    minor: int
    interface: str = ""
    instance: str = ""

    @classmethod
    def parse(cls, text: str) -> "FqInstance":
        """Parse ``text``; raises ValueError when it is not a valid name."""
        match = _FQ_INSTANCE.match(text)
        if match is None:
            raise ValueError(f"'{text}' is not a valid FqInstance")
        return cls(
            package=match["package"],
            major=int(match["major"]),
            minor=int(match["minor"]),
            interface=match["interface"] or "",
            instance=match["instance"] or "",
        )

    @property
    def version(self) -> tuple[int, int]:
        return (self.major, self.minor)

    @property
    def package_and_version(self) -> str:
        return f"{self.package}@{self.major}.{self.minor}"

    def in_package(self, prefix: str) -> bool:
        return in_package(self.package, prefix)

    def __str__(self) -> str:
        text = self.package_and_version
        if self.interface:
            text += f"::{self.interface}"
        if self.instance:
            text += f"/{self.instance}"
        return text


def parse_package_and_version(name: str) -> tuple[str, int, int]:
    """
    Return ``(package, major, minor)`` for the leading package of ``name``.

    Anything from the first ``::`` or ``/`` onwards is ignored. Raises
    ValueError when the remainder is not ``package@major.minor``.
    """
    head = name.split("::", 1)[0].split("/", 1)[0]
    fq = FqInstance.parse(head)
    return (fq.package, fq.major, fq.minor)
