"""
Subprocess helpers for external programs (dump tools, cipher programs).

Every external call is blocking from the caller's point of view. The runner
waits for the exit status, raises CommandError on failure and registers each
running process with an optional CancellationToken so a cancelled archive
can terminate whatever it is waiting on.
"""

import logging
import os
import subprocess
import tempfile
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, BinaryIO


logger = logging.getLogger(__name__)

# Amount of stderr kept in error messages
STDERR_TAIL = 2000


class CommandError(Exception):
    """Raised when an external program cannot be started or exits non-zero."""

    def __init__(self, program: str, returncode: Optional[int], stderr: str = '', message: str = None):
        self.program = program
        self.returncode = returncode
        self.stderr = stderr
        if message is None:
            message = f"{program} exited with status {returncode}"
            if stderr:
                message = f"{message}: {stderr.strip()[-STDERR_TAIL:]}"
        super().__init__(message)


class BackupCancelled(Exception):
    """Raised at a checkpoint once cancellation has been requested."""
    pass


class CancellationToken:
    """
    Shared cancellation flag.

    Processes started through a ProcessRunner holding this token are
    terminated as soon as cancel() is called.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._processes = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Request cancellation and terminate every tracked process."""
        self._event.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            _terminate(process)

    def check(self):
        """Raise BackupCancelled if cancellation was requested."""
        if self._event.is_set():
            raise BackupCancelled("Cancelled")

    def track(self, process: subprocess.Popen):
        with self._lock:
            self._processes.add(process)
        # cancel() may have run before the process was registered
        if self._event.is_set():
            _terminate(process)

    def untrack(self, process: subprocess.Popen):
        with self._lock:
            self._processes.discard(process)


def _terminate(process: subprocess.Popen, grace: float = 5.0):
    if process.poll() is not None:
        return
    try:
        process.terminate()
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        process.kill()
    except OSError as e:
        logger.warning(f"Failed to terminate process {process.pid}: {e}")


class ProcessRunner:
    """
    Runs external programs with an optional timeout and cancellation token.
    """

    def __init__(self, timeout: Optional[float] = None, cancellation: Optional[CancellationToken] = None):
        """
        Args:
            timeout: Seconds to wait for a program to exit (None waits forever)
            cancellation: Token used to terminate running programs
        """
        self.timeout = timeout
        self.cancellation = cancellation

    def _environment(self, env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not env:
            return None
        merged = dict(os.environ)
        merged.update(env)
        return merged

    def _spawn(self, args: List[str], env: Optional[Dict[str, str]], **kwargs) -> subprocess.Popen:
        if self.cancellation:
            self.cancellation.check()
        logger.debug(f"Running: {args[0]} ({len(args) - 1} arguments)")
        try:
            process = subprocess.Popen(args, env=self._environment(env), **kwargs)
        except FileNotFoundError:
            raise CommandError(args[0], None, message=f"Program not found: {args[0]}")
        except OSError as e:
            raise CommandError(args[0], None, message=f"Failed to start {args[0]}: {e}")

        if self.cancellation:
            self.cancellation.track(process)
        return process

    def _release(self, process: subprocess.Popen):
        if self.cancellation:
            self.cancellation.untrack(process)
            self.cancellation.check()

    def run(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        """
        Run a program to completion and return its standard output.

        Raises:
            CommandError: If the program is missing, times out or exits non-zero
            BackupCancelled: If the run was cancelled while waiting
        """
        process = self._spawn(args, env, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            stdout, stderr = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise CommandError(args[0], None, message=f"{args[0]} timed out after {self.timeout}s")
        finally:
            self._release(process)

        if process.returncode != 0:
            raise CommandError(args[0], process.returncode, stderr.decode(errors='replace'))

        return stdout.decode(errors='replace')

    @contextmanager
    def stream(self, args: List[str], env: Optional[Dict[str, str]] = None) -> Iterator[BinaryIO]:
        """
        Run a program and yield its standard output as a binary stream.

        The exit status is checked when the block exits normally; if the block
        raises, the program is terminated and the error propagates. The
        timeout covers the whole run, reading included: a program still
        running when it expires is terminated, which ends the stream.

        Raises:
            CommandError: If the program is missing, times out or exits non-zero
        """
        # stderr goes to a temp file so a chatty program cannot fill the pipe
        with tempfile.TemporaryFile() as stderr_file:
            process = self._spawn(args, env, stdout=subprocess.PIPE, stderr=stderr_file)
            timed_out = threading.Event()
            watchdog = None
            if self.timeout is not None:
                def expire():
                    if process.poll() is None:
                        timed_out.set()
                        _terminate(process)

                watchdog = threading.Timer(self.timeout, expire)
                watchdog.daemon = True
                watchdog.start()

            try:
                try:
                    yield process.stdout
                except BaseException:
                    _terminate(process)
                    raise

                # Drain whatever the consumer left unread before waiting
                while process.stdout.read(64 * 1024):
                    pass
                process.wait()
            finally:
                if watchdog is not None:
                    watchdog.cancel()
                process.stdout.close()
                self._release(process)

            if timed_out.is_set():
                raise CommandError(args[0], None, message=f"{args[0]} timed out after {self.timeout}s")

            if process.returncode != 0:
                stderr_file.seek(0)
                stderr = stderr_file.read().decode(errors='replace')
                raise CommandError(args[0], process.returncode, stderr)
