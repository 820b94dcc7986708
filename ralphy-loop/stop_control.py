"""Two-stage emergency stop driven by SIGINT.

The first signal requests a graceful stop: the current issue finishes and no
new one starts.  The second signal terminates the process immediately with a
non-zero exit code.  The signal handler only writes flags; loops read them at
their own checkpoints.
"""

import logging
import os
import signal
from collections.abc import Callable

log = logging.getLogger(__name__)


class StopController:
    def __init__(self, exit_func: Callable[[int], None] = os._exit) -> None:
        self._exit = exit_func
        self._stop_requested = False
        self._force_stop_requested = False
        self._currently_processing = False
        self._previous_handler = None

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def is_stop_requested(self) -> bool:
        return self._stop_requested

    def is_force_stop_requested(self) -> bool:
        return self._force_stop_requested

    @property
    def currently_processing(self) -> bool:
        return self._currently_processing

    def begin_processing(self) -> None:
        self._currently_processing = True

    def end_processing(self) -> None:
        self._currently_processing = False

    def request_stop(self) -> None:
        """Escalate one stage: running -> stop requested -> force stopped."""
        if self._stop_requested:
            self._force_stop_requested = True
            log.warning("Force stop requested. Exiting immediately...")
            self._exit(1)
            return

        self._stop_requested = True
        if self._currently_processing:
            log.warning("Graceful stop requested. Will stop after current issue completes.")
            log.warning("Press Ctrl+C again to force exit immediately.")
        else:
            log.warning("Stop requested. Shutting down...")

    def reset(self) -> None:
        self._stop_requested = False
        self._force_stop_requested = False
        self._currently_processing = False

    # ------------------------------------------------------------------
    # Signal wiring
    # ------------------------------------------------------------------

    def handle_signal(self, signum, frame) -> None:
        self.request_stop()

    def install(self, signum: int = signal.SIGINT) -> None:
        self._previous_handler = signal.signal(signum, self.handle_signal)

    def uninstall(self, signum: int = signal.SIGINT) -> None:
        if self._previous_handler is not None:
            signal.signal(signum, self._previous_handler)
            self._previous_handler = None
