"""Child process handles used by the scheduler.

The scheduler only needs four verbs: :func:`start` a command, :meth:`probe`
it without blocking, :meth:`terminate` it and :meth:`wait` for it.
"""

# Builtin dependencies
from __future__ import annotations
import logging
import signal
import subprocess
from typing import Sequence

logger = logging.getLogger(__name__)


class ProcessHandle:
    """Thin wrapper over :class:`subprocess.Popen`."""

    def __init__(self, popen: subprocess.Popen):
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        return self._popen.returncode

    def probe(self) -> bool:
        """Non-blocking liveness check. Reaps the child if it has exited."""
        return self._popen.poll() is None

    def terminate(self):
        """Send SIGTERM unless the child is already reaped."""
        if self._popen.returncode is None:
            try:
                self._popen.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass

    def kill(self):
        if self._popen.returncode is None:
            try:
                self._popen.kill()
            except ProcessLookupError:
                pass

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the child exits, returning its exit code.

        Returns None if `timeout` expires first.
        """
        try:
            return self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def stop(self, grace: float) -> int:
        """Wait up to `grace` seconds, then SIGTERM, then SIGKILL, and reap."""
        code = self.wait(grace)
        if code is None:
            logger.debug("pid %d ignored its exit flag, terminating", self.pid)
            self.terminate()
            code = self.wait(grace)
        if code is None:
            logger.warning("pid %d ignored SIGTERM, killing", self.pid)
            self.kill()
            code = self._popen.wait()
        return code


def start(argv: Sequence[str]) -> ProcessHandle:
    """Spawn `argv` as a child process.

    Raises:
      OSError: If the executable cannot be started.
    """
    popen = subprocess.Popen(list(argv), stdin=subprocess.DEVNULL)
    logger.debug("started pid %d: %s", popen.pid, " ".join(argv))
    return ProcessHandle(popen)
