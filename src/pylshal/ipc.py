"""Bounded-time remote calls and the registry interfaces they are made against."""

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

from pylshal.models import NO_PID, NO_PTR, Arch

IPC_CALL_WAIT = 0.5  # seconds
LIBRARY_DUMP_WAIT = 2.0  # seconds
MAX_ABANDONED_CALLS = 8

T = TypeVar("T")


class TransportError(Exception):
    """Raised by a registry client when the underlying channel fails."""


@dataclass(slots=True, frozen=True)
class DebugInfo:
    """What a service reports about itself."""

    pid: int = NO_PID
    ptr: int = NO_PTR
    arch: Arch = Arch.UNKNOWN


@dataclass(slots=True, frozen=True)
class InstanceDebugInfo:
    """One record of a manager's debug dump."""

    interface_name: str
    instance_name: str
    client_pids: Sequence[int] = field(default_factory=tuple)
    arch: Arch = Arch.UNKNOWN


class HalService(Protocol):
    def get_debug_info(self) -> DebugInfo: ...

    def interface_chain(self) -> Sequence[str]: ...

    def get_hash_chain(self) -> Sequence[bytes]: ...


class ServiceManager(Protocol):
    def list(self) -> Sequence[str]: ...

    def get(self, fq_name: str, instance: str) -> HalService | None: ...

    def debug_dump(self) -> Sequence[InstanceDebugInfo]: ...


class CallStatus(Enum):
    OK = "ok"
    TRANSPORT_ERROR = "transport error"
    TIMEOUT = "timeout"


@dataclass(slots=True, frozen=True)
class CallResult(Generic[T]):
    """Outcome of a bounded call: a value, a transport error, or a timeout."""

    status: CallStatus
    value: T | None = None
    description: str = ""

    @property
    def is_ok(self) -> bool:
        return self.status is CallStatus.OK

    @property
    def timed_out(self) -> bool:
        return self.status is CallStatus.TIMEOUT


# Calls that missed their deadline and are still running, keyed by thread.
_abandoned: dict[threading.Thread, tuple[Callable[..., Any], tuple[Any, ...]]] = {}
_abandoned_lock = threading.Lock()


def abandoned_calls() -> int:
    """Number of timed-out calls whose threads have not returned yet."""
    with _abandoned_lock:
        return len(_abandoned)


def timeout_ipc(
    fn: Callable[..., T],
    *args: Any,
    timeout: float = IPC_CALL_WAIT,
) -> CallResult[T]:
    """
    Invoke ``fn(*args)`` and wait at most ``timeout`` seconds for it.

    The call runs on a daemon thread so that a hung remote end never keeps
    the interpreter alive. A call still running at the deadline is abandoned,
    not interrupted. Exceptions raised by ``fn`` become TRANSPORT_ERROR results.

    A call identical to one that was abandoned and is still running is not
    made again, and no new call is started while MAX_ABANDONED_CALLS are
    outstanding. Both cases are reported as a TIMEOUT without waiting.
    """
    key = (fn, args)
    with _abandoned_lock:
        if key in _abandoned.values():
            return CallResult(
                CallStatus.TIMEOUT,
                description="previous call still outstanding",
            )
        if len(_abandoned) >= MAX_ABANDONED_CALLS:
            return CallResult(
                CallStatus.TIMEOUT,
                description=f"{len(_abandoned)} calls still outstanding",
            )

    outcome: dict[str, Any] = {}
    done = threading.Event()

    def run() -> None:
        try:
            outcome["value"] = fn(*args)
        except Exception as e:
            outcome["error"] = e
        finally:
            with _abandoned_lock:
                done.set()
                _abandoned.pop(threading.current_thread(), None)

    thread = threading.Thread(
        target=run,
        daemon=True,
        name=f"ipc-{getattr(fn, '__name__', 'call')}",
    )
    thread.start()

    if not done.wait(timeout=timeout):
        with _abandoned_lock:
            abandoned = not done.is_set()
            if abandoned:
                _abandoned[thread] = key
        if abandoned:
            return CallResult(
                CallStatus.TIMEOUT,
                description=f"timeout after {timeout:g}s",
            )
    if "error" in outcome:
        error = outcome["error"]
        return CallResult(
            CallStatus.TRANSPORT_ERROR,
            description=str(error) or type(error).__name__,
        )
    return CallResult(CallStatus.OK, value=outcome["value"])
