"""Process-wide exit and signal cleanup shared by all managers."""

import atexit
import logging
import signal
import sys
import threading
from typing import Protocol

logger = logging.getLogger(__name__)


class Shutdownable(Protocol):
    def shutdown(self) -> None: ...


def cleanup_signals() -> list[signal.Signals]:
    """Signals that trigger cleanup on this platform."""
    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGBREAK"):
        signals.append(signal.SIGBREAK)
    return signals


class ProcessCleanupRegistry:
    """Reference-counted installer of exit/signal hooks.

    The hooks are installed when the first manager registers and removed
    when the last one unregisters, however many managers live in the
    process.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._managers: dict[int, Shutdownable] = {}
        self._previous_handlers: dict[signal.Signals, object] = {}
        self._atexit_installed = False

    @property
    def count(self) -> int:
        return len(self._managers)

    @property
    def installed(self) -> bool:
        return self._atexit_installed

    def register(self, manager: Shutdownable) -> int:
        """Add a manager; installs the hooks on the first one.

        Returns:
            Number of registered managers after the call
        """
        with self._lock:
            if id(manager) in self._managers:
                return len(self._managers)
            self._managers[id(manager)] = manager
            if len(self._managers) == 1:
                self._install()
            return len(self._managers)

    def unregister(self, manager: Shutdownable) -> int:
        """Remove a manager; removes the hooks after the last one.

        Unregistering a manager that is not registered changes nothing.

        Returns:
            Number of registered managers after the call
        """
        with self._lock:
            if self._managers.pop(id(manager), None) is None:
                return len(self._managers)
            if not self._managers:
                self._uninstall()
            return len(self._managers)

    def _install(self) -> None:
        atexit.register(self._run_cleanup)
        self._atexit_installed = True

        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, skipping signal handlers")
            return
        for sig in cleanup_signals():
            self._previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle_signal)
        logger.debug("Installed process cleanup handlers")

    def _uninstall(self) -> None:
        atexit.unregister(self._run_cleanup)
        self._atexit_installed = False

        if self._previous_handlers and (
            threading.current_thread() is threading.main_thread()
        ):
            for sig, previous in self._previous_handlers.items():
                signal.signal(sig, previous)
            self._previous_handlers.clear()
        logger.debug("Removed process cleanup handlers")

    def _run_cleanup(self) -> None:
        for manager in list(self._managers.values()):
            try:
                manager.shutdown()
            except Exception as e:
                logger.error(f"Error during process cleanup: {e}")

    def _handle_signal(self, signum: int, frame) -> None:
        previous = self._previous_handlers.get(signal.Signals(signum))
        logger.info(f"Received {signal.Signals(signum).name}, cleaning up")
        self._run_cleanup()
        if callable(previous):
            previous(signum, frame)
            return
        sys.exit(0)


process_cleanup = ProcessCleanupRegistry()
