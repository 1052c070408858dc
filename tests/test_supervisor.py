import os
import signal
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from servebench import supervisor
from servebench.errors import LaunchError, RunInterrupted, StartupError
from servebench.telemetry import MetricSample, Sampler


def _write_script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(0o755)
    return path


SLEEPER = "import time\nprint('serving', flush=True)\ntime.sleep(60)\n"
CRASHER = "import sys, time\ntime.sleep(0.2)\nprint('fatal: address already in use')\nsys.exit(3)\n"
STUBBORN = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ignoring', flush=True)\n"
    "time.sleep(60)\n"
)


def _wait_for_log(path: Path, needle: str, timeout_s: float = 10.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if path.exists() and needle in path.read_text(encoding="utf-8", errors="replace"):
            return
        time.sleep(0.05)
    raise AssertionError(f"{needle!r} never appeared in {path}")


class _CountingStop:
    def __init__(self) -> None:
        self.calls = 0

    def stop(self) -> None:
        self.calls += 1


class TestLaunch(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.log_path = self.tmp / "service.log"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_binary_raises_launch_error(self) -> None:
        with self.assertRaises(LaunchError) as ctx:
            supervisor.launch(self.tmp / "nope", ["serve"], log_path=self.log_path)
        self.assertEqual(ctx.exception.phase, "launch")
        self.assertIn("not found", str(ctx.exception))

    def test_non_executable_binary_raises_launch_error(self) -> None:
        path = self.tmp / "server"
        path.write_text("#!/bin/sh\n", encoding="utf-8")
        path.chmod(0o644)
        with self.assertRaises(LaunchError) as ctx:
            supervisor.launch(path, ["serve"], log_path=self.log_path)
        self.assertIn("not executable", str(ctx.exception))

    def test_directory_is_not_a_binary(self) -> None:
        with self.assertRaises(LaunchError):
            supervisor.launch(self.tmp, ["serve"], log_path=self.log_path)

    def test_process_dying_during_grace_raises_startup_error_with_log_tail(self) -> None:
        script = _write_script(self.tmp, "crasher", CRASHER)
        process = supervisor.launch(script, ["serve"], log_path=self.log_path)
        try:
            with self.assertRaises(StartupError) as ctx:
                supervisor.ensure_alive(process, grace_s=1.5)
            self.assertEqual(ctx.exception.returncode, 3)
            self.assertIn("address already in use", ctx.exception.log_tail)
            self.assertIn("address already in use", ctx.exception.describe())
        finally:
            supervisor.terminate(process)

    def test_live_process_passes_grace_and_terminates(self) -> None:
        script = _write_script(self.tmp, "sleeper", SLEEPER)
        process = supervisor.launch(script, ["serve"], {"EXTRA": "1"}, log_path=self.log_path)
        self.assertTrue(supervisor.ensure_alive(process, grace_s=0.2))
        supervisor.terminate(process, timeout_s=5.0)
        self.assertFalse(process.is_running())
        self.assertEqual(process.returncode, -signal.SIGTERM)

    def test_terminate_is_idempotent_and_accepts_none(self) -> None:
        supervisor.terminate(None)
        script = _write_script(self.tmp, "sleeper", SLEEPER)
        process = supervisor.launch(script, [], log_path=self.log_path)
        supervisor.terminate(process, timeout_s=5.0)
        first = process.returncode
        supervisor.terminate(process, timeout_s=5.0)
        self.assertEqual(process.returncode, first)

    def test_terminate_kills_process_ignoring_sigterm(self) -> None:
        script = _write_script(self.tmp, "stubborn", STUBBORN)
        process = supervisor.launch(script, [], log_path=self.log_path)
        _wait_for_log(self.log_path, "ignoring")
        supervisor.terminate(process, timeout_s=0.5)
        self.assertEqual(process.returncode, -signal.SIGKILL)

    def test_tail_log_returns_last_lines(self) -> None:
        self.log_path.write_text("".join(f"line {i}\n" for i in range(50)), encoding="utf-8")
        tail = supervisor.tail_log(self.log_path, lines=3)
        self.assertEqual(tail, "line 47\nline 48\nline 49\n")
        self.assertEqual(supervisor.tail_log(self.tmp / "missing.log"), "")


class TestRunContext(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.script = _write_script(self.tmp, "sleeper", SLEEPER)
        self.log_path = self.tmp / "service.log"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_error_inside_run_stops_sampler_then_terminates_process(self) -> None:
        stopper = _CountingStop()
        with self.assertRaises(RuntimeError):
            with supervisor.RunContext(terminate_timeout_s=5.0) as ctx:
                process = ctx.start_process(self.script, ["serve"], log_path=self.log_path)
                ctx.attach_sampler(stopper)
                raise RuntimeError("pull failed")
        self.assertEqual(stopper.calls, 1)
        self.assertFalse(process.is_running())

    def test_interrupt_mid_run_leaves_no_process_or_sampler(self) -> None:
        sampler = Sampler(collector=lambda ts: MetricSample(timestamp=ts, cpu_pct=1.0, mem_used_mb=2.0))
        with self.assertRaises(KeyboardInterrupt):
            with supervisor.RunContext(terminate_timeout_s=5.0) as ctx:
                process = ctx.start_process(self.script, ["serve"], log_path=self.log_path)
                handle = sampler.start(0.05)
                ctx.attach_sampler(handle)
                time.sleep(0.2)
                raise KeyboardInterrupt()
        self.assertFalse(process.is_running())
        self.assertTrue(handle.stopped)
        count = len(handle.series)
        time.sleep(0.2)
        self.assertEqual(len(handle.series), count)

    def test_sigterm_becomes_run_interrupted_and_triggers_teardown(self) -> None:
        previous = signal.getsignal(signal.SIGTERM)
        with self.assertRaises(RunInterrupted) as ctx_err:
            with supervisor.handle_termination_signals():
                with supervisor.RunContext(terminate_timeout_s=5.0) as ctx:
                    process = ctx.start_process(self.script, ["serve"], log_path=self.log_path)
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(5)
        self.assertEqual(ctx_err.exception.signum, signal.SIGTERM)
        self.assertFalse(process.is_running())
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous)

    def test_signal_during_teardown_is_held_until_server_is_killed(self) -> None:
        stubborn = _write_script(self.tmp, "stubborn", STUBBORN)
        timer = threading.Timer(0.3, os.kill, args=(os.getpid(), signal.SIGTERM))
        with self.assertRaises(RunInterrupted) as ctx_err:
            with supervisor.handle_termination_signals():
                with supervisor.RunContext(terminate_timeout_s=1.0) as ctx:
                    process = ctx.start_process(stubborn, ["serve"], log_path=self.log_path)
                    _wait_for_log(self.log_path, "ignoring")
                    timer.start()
        timer.join()
        self.assertEqual(ctx_err.exception.signum, signal.SIGTERM)
        self.assertEqual(process.returncode, -signal.SIGKILL)

    def test_second_live_process_is_rejected(self) -> None:
        with supervisor.RunContext(terminate_timeout_s=5.0) as ctx:
            ctx.start_process(self.script, ["serve"], log_path=self.log_path)
            with self.assertRaises(LaunchError):
                ctx.start_process(self.script, ["serve"], log_path=self.log_path)

    def test_close_without_process_is_noop(self) -> None:
        with supervisor.RunContext() as ctx:
            self.assertIsNone(ctx.process)


if __name__ == "__main__":
    unittest.main()
