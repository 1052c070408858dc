"""Failure taxonomy for a benchmark run."""

from __future__ import annotations

from typing import Optional


class BenchError(Exception):
    """A failure that aborts the run after teardown."""

    default_phase = "run"

    def __init__(self, message: str, *, phase: Optional[str] = None, log_tail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.log_tail = log_tail

    def describe(self) -> str:
        lines = [f"[{self.phase}] {self.message}"]
        if self.log_tail:
            lines.append("--- last log lines ---")
            lines.append(self.log_tail.rstrip("\n"))
        return "\n".join(lines)


class ConfigError(BenchError):
    default_phase = "config"


class SetupError(BenchError):
    default_phase = "setup"


class LaunchError(BenchError):
    default_phase = "launch"


class StartupError(BenchError):
    default_phase = "startup"

    def __init__(self, message: str, *, returncode: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode


class ReadinessTimeout(BenchError, TimeoutError):
    default_phase = "readiness"

    def __init__(self, message: str, *, elapsed_s: float, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.elapsed_s = elapsed_s


class InferenceError(BenchError):
    default_phase = "inference"

    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = "", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.output = output


class TelemetryUnavailable(Exception):
    """GPU telemetry could not be read; callers substitute zero values."""


class RunInterrupted(KeyboardInterrupt):
    """Raised in the main thread when a termination signal arrives."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"interrupted by signal {signum}")
        self.signum = signum
