"""Background HAL listing for pylshal."""

import logging
import threading
from collections.abc import Callable
from queue import Queue

from pylshal.lister import HalLister
from pylshal.models import HalSnapshot

logger = logging.getLogger(__name__)


class HalMonitor:
    """
    Runs a fetch cycle on a daemon thread every ``poll_rate`` seconds.

    Each cycle gets a fresh HalLister from ``lister_factory`` so that no
    cached state leaks between snapshots. Snapshots are pushed onto a
    thread-safe Queue.
    """

    def __init__(
        self,
        update_queue: Queue[HalSnapshot],
        lister_factory: Callable[[], HalLister],
        poll_rate: float = 2.0,
    ) -> None:
        """
        Initialize the HalMonitor.

        Args:
            update_queue: Thread-safe queue to push snapshots to.
            lister_factory: Builds the lister used for one cycle.
            poll_rate: Seconds between cycles. Default 2.0s.
        """
        self._queue = update_queue
        self._lister_factory = lister_factory
        self._poll_rate = poll_rate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._latest: HalSnapshot | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def latest(self) -> HalSnapshot | None:
        """The most recent snapshot, if any cycle has finished."""
        return self._latest

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="HalMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def collect_snapshot(self) -> HalSnapshot:
        """Run one cycle synchronously."""
        snapshot = self._lister_factory().run()
        self._latest = snapshot
        return snapshot

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self._queue.put(self.collect_snapshot())
            except Exception:
                # Keep the loop running; the next cycle starts from scratch.
                logger.exception("HAL listing cycle failed")

            self._stop_event.wait(timeout=self._poll_rate)
