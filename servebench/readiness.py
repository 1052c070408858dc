"""Health polling with a hard deadline."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

from .errors import ReadinessTimeout

LOG = logging.getLogger(__name__)

Probe = Callable[[], bool]


def http_probe(url: str, timeout_s: float = 2.0) -> Probe:
    """Any HTTP response counts as reachable, whatever its status."""

    def _probe() -> bool:
        try:
            httpx.get(url, timeout=timeout_s, trust_env=False)
        except httpx.TransportError as exc:
            LOG.debug("Probe %s unreachable: %s", url, exc)
            return False
        return True

    return _probe


def wait_ready(
    check_fn: Probe,
    timeout_s: float,
    poll_interval_s: float,
    *,
    log_tail: Optional[Callable[[], str]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    if poll_interval_s <= 0:
        raise ValueError(f"poll_interval_s must be > 0, got {poll_interval_s}")
    start = clock()
    deadline = start + max(0.0, float(timeout_s))
    attempt = 0
    last_error: Optional[str] = None
    while True:
        attempt += 1
        try:
            ready = bool(check_fn())
        except Exception as exc:  # noqa: BLE001
            ready = False
            last_error = str(exc)
        now = clock()
        if ready:
            elapsed = now - start
            LOG.info("Server ready after %.2fs (attempt=%s)", elapsed, attempt)
            return elapsed
        if now >= deadline:
            break
        remaining = deadline - now
        LOG.debug("Not ready yet (attempt=%s, remaining=%.1fs)", attempt, remaining)
        sleep(min(poll_interval_s, remaining))

    elapsed = clock() - start
    detail = f" Last probe error: {last_error}" if last_error else ""
    raise ReadinessTimeout(
        f"Server not ready after {elapsed:.1f}s (timeout {timeout_s:.1f}s, {attempt} probes).{detail}",
        elapsed_s=elapsed,
        log_tail=log_tail() if log_tail is not None else "",
    )
