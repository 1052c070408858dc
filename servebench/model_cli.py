"""Short-lived `pull` / `run` invocations of the model server binary."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

from .errors import InferenceError
from .supervisor import tail_log

LOG = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
OUTPUT_TAIL_CHARS = 4000


@dataclass(frozen=True)
class InferenceCall:
    model: str
    prompt: str
    response: str
    elapsed_s: float
    started_utc: str
    finished_utc: str
    returncode: int


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text or "")


def _child_env(env: Optional[Mapping[str, str]]) -> dict[str, str]:
    merged = os.environ.copy()
    merged.update({k: str(v) for k, v in (env or {}).items()})
    return merged


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def pull_model(
    binary: str | os.PathLike,
    model: str,
    *,
    env: Optional[Mapping[str, str]] = None,
    log_path: Path,
    timeout_s: Optional[float] = None,
) -> None:
    cmd = [str(binary), "pull", model]
    LOG.info("Pulling model %s", model)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("ab") as log_fp:
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_fp,
                stderr=subprocess.STDOUT,
                env=_child_env(env),
                timeout=timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise InferenceError(
                f"Model pull for {model} exceeded {timeout_s:.0f}s",
                phase="pull",
                log_tail=tail_log(log_path),
            ) from exc
        except OSError as exc:
            raise InferenceError(f"Failed to spawn model pull: {exc}", phase="pull") from exc
    if completed.returncode != 0:
        raise InferenceError(
            f"Model pull for {model} exited with {completed.returncode}",
            phase="pull",
            returncode=completed.returncode,
            log_tail=tail_log(log_path),
        )
    LOG.info("Model %s ready", model)


def run_inference(
    binary: str | os.PathLike,
    model: str,
    prompt: str,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> InferenceCall:
    """Run one prompt to completion; the duration is whatever it takes."""
    cmd = [str(binary), "run", model, prompt]
    started_utc = now_utc_iso()
    start = time.perf_counter()
    try:
        completed = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
            env=_child_env(env),
            check=False,
        )
    except OSError as exc:
        raise InferenceError(f"Failed to spawn inference: {exc}") from exc
    elapsed_s = time.perf_counter() - start
    finished_utc = now_utc_iso()
    stdout = strip_ansi(completed.stdout)
    if completed.returncode != 0:
        output = (stdout + strip_ansi(completed.stderr))[-OUTPUT_TAIL_CHARS:]
        raise InferenceError(
            f"Inference with {model} exited with {completed.returncode} after {elapsed_s:.3f}s",
            returncode=completed.returncode,
            output=output,
            log_tail=output,
        )
    LOG.info("Inference finished in %.3fs (%s chars)", elapsed_s, len(stdout))
    return InferenceCall(
        model=model,
        prompt=prompt,
        response=stdout.strip(),
        elapsed_s=elapsed_s,
        started_utc=started_utc,
        finished_utc=finished_utc,
        returncode=completed.returncode,
    )
