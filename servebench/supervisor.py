"""Lifecycle of the long-running model server subprocess."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterator, Mapping, Optional, Protocol, Sequence

from .errors import LaunchError, RunInterrupted, StartupError

LOG = logging.getLogger(__name__)

LOG_TAIL_LINES = 20
DEFAULT_GRACE_S = 1.0
DEFAULT_TERMINATE_TIMEOUT_S = 10.0


@dataclass
class ManagedProcess:
    popen: subprocess.Popen
    command: list[str]
    log_path: Path
    started_monotonic: float
    started_utc: str
    returncode: Optional[int] = None
    _log_handle: Optional[IO[bytes]] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.popen.pid

    def poll(self) -> Optional[int]:
        if self.returncode is None:
            self.returncode = self.popen.poll()
        return self.returncode

    def is_running(self) -> bool:
        return self.poll() is None

    def close_log(self) -> None:
        if self._log_handle is not None and not self._log_handle.closed:
            self._log_handle.close()
        self._log_handle = None


class Stoppable(Protocol):
    def stop(self) -> None: ...


def tail_log(path: Optional[Path], lines: int = LOG_TAIL_LINES) -> str:
    if path is None or not Path(path).exists():
        return ""
    with Path(path).open("r", encoding="utf-8", errors="replace") as fp:
        return "".join(deque(fp, maxlen=lines))


def launch(
    executable: str | os.PathLike,
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    *,
    log_path: Path,
) -> ManagedProcess:
    exe = Path(executable)
    if not exe.exists():
        raise LaunchError(f"Server binary not found: {exe}")
    if not exe.is_file():
        raise LaunchError(f"Server binary is not a regular file: {exe}")
    if not os.access(exe, os.X_OK):
        raise LaunchError(f"Server binary is not executable: {exe}")

    child_env = os.environ.copy()
    child_env.update({k: str(v) for k, v in (env or {}).items()})
    command = [str(exe), *[str(a) for a in args]]
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_handle = log_path.open("ab")
    try:
        popen = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            env=child_env,
            start_new_session=True,
        )
    except OSError as exc:
        log_handle.close()
        raise LaunchError(f"Failed to spawn {command[0]}: {exc}") from exc

    process = ManagedProcess(
        popen=popen,
        command=command,
        log_path=log_path,
        started_monotonic=time.monotonic(),
        started_utc=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        _log_handle=log_handle,
    )
    if process.poll() is not None:
        process.close_log()
        raise LaunchError(
            f"Server exited immediately with code {process.returncode}",
            log_tail=tail_log(log_path),
        )
    LOG.info("Launched pid=%s: %s", process.pid, " ".join(command))
    return process


def ensure_alive(process: ManagedProcess, grace_s: float = DEFAULT_GRACE_S) -> bool:
    """Give the server a short grace period, then fail if it already died."""
    if grace_s > 0:
        time.sleep(grace_s)
    if process.is_running():
        return True
    process.close_log()
    raise StartupError(
        f"Server pid={process.pid} exited during startup with code {process.returncode}",
        returncode=process.returncode,
        log_tail=tail_log(process.log_path),
    )


def terminate(process: Optional[ManagedProcess], timeout_s: float = DEFAULT_TERMINATE_TIMEOUT_S) -> None:
    if process is None:
        return
    if process.poll() is not None:
        process.close_log()
        return
    LOG.info("Terminating server pid=%s", process.pid)
    try:
        process.popen.send_signal(signal.SIGTERM)
        process.returncode = process.popen.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        LOG.warning("Server pid=%s ignored SIGTERM for %.1fs; killing", process.pid, timeout_s)
        process.popen.kill()
        process.returncode = process.popen.wait()
    except ProcessLookupError:
        process.returncode = process.popen.wait()
    finally:
        process.close_log()
    LOG.info("Server pid=%s exited with code %s", process.pid, process.returncode)


@contextmanager
def handle_termination_signals(signals: Sequence[int] = (signal.SIGTERM, signal.SIGHUP)) -> Iterator[None]:
    """Turn termination signals into ``RunInterrupted`` so cleanup code runs."""

    def _raise(signum, _frame):
        raise RunInterrupted(signum)

    previous = {}
    for signum in signals:
        previous[signum] = signal.signal(signum, _raise)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@contextmanager
def deferred_signals(
    signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP),
) -> Iterator[list[int]]:
    """Hold termination signals for the duration of the block and list the ones received."""
    received: list[int] = []
    if threading.current_thread() is not threading.main_thread():
        yield received
        return

    def _record(signum, _frame):
        received.append(signum)

    previous = {}
    for signum in signals:
        previous[signum] = signal.signal(signum, _record)
    try:
        yield received
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class RunContext:
    """Owns the server process and the sampler for one run.

    Leaving the ``with`` block by any path stops the sampler first and then
    terminates the server.
    """

    def __init__(self, terminate_timeout_s: float = DEFAULT_TERMINATE_TIMEOUT_S) -> None:
        self.terminate_timeout_s = terminate_timeout_s
        self.process: Optional[ManagedProcess] = None
        self.sampler: Optional[Stoppable] = None

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        pending = self.close()
        if pending and exc_type is None:
            raise RunInterrupted(pending[0])

    def start_process(
        self,
        executable: str | os.PathLike,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        *,
        log_path: Path,
    ) -> ManagedProcess:
        if self.process is not None and self.process.is_running():
            raise LaunchError(f"A server is already running in this run (pid={self.process.pid})")
        self.process = launch(executable, args, env, log_path=log_path)
        return self.process

    def attach_sampler(self, handle: Stoppable) -> None:
        self.sampler = handle

    def close(self) -> list[int]:
        """Tear down with signals held; returns the signals that arrived meanwhile."""
        with deferred_signals() as received:
            try:
                if self.sampler is not None:
                    self.sampler.stop()
            finally:
                terminate(self.process, self.terminate_timeout_s)
        if received:
            LOG.warning("Signal %s arrived during teardown; held until the server was stopped", received[0])
        return received
