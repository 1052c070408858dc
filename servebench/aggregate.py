"""Reduce a sampled metric series into summary statistics."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .telemetry import MetricSample

NUMERIC_FIELDS: tuple[str, ...] = ("cpu_pct", "mem_used_mb", "gpu_util_pct", "gpu_mem_mb")
NO_DATA = "no_data"


@dataclass(frozen=True)
class Summary:
    elapsed_s: float
    sample_count: int
    prompt: str = ""
    response: str = ""
    model: str = ""
    means: Optional[dict[str, float]] = None
    peaks: Optional[dict[str, float]] = None
    gpu_available: bool = False
    window_s: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "ok" if self.has_data else NO_DATA,
            "model": self.model,
            "prompt": self.prompt,
            "response": self.response,
            "response_chars": len(self.response),
            "elapsed_s": round(self.elapsed_s, 3),
            "sample_count": self.sample_count,
            "sample_window_s": round(self.window_s, 3),
            "gpu_available": self.gpu_available,
        }
        for name in NUMERIC_FIELDS:
            payload[f"{name}_mean"] = self.means.get(name) if self.means else None
            payload[f"{name}_peak"] = self.peaks.get(name) if self.peaks else None
        return payload


def mean(values: list[float]) -> Optional[float]:
    if not values:
        return None
    return math.fsum(values) / len(values)


def summarize(
    series: Iterable[MetricSample],
    elapsed_s: float,
    *,
    prompt: str = "",
    response: str = "",
    model: str = "",
) -> Summary:
    samples = list(series)
    if not samples:
        return Summary(elapsed_s=float(elapsed_s), sample_count=0, prompt=prompt, response=response, model=model)

    means: dict[str, float] = {}
    peaks: dict[str, float] = {}
    for name in NUMERIC_FIELDS:
        values = [float(getattr(sample, name)) for sample in samples]
        means[name] = mean(values)
        peaks[name] = max(values)
    timestamps = [sample.timestamp for sample in samples]
    return Summary(
        elapsed_s=float(elapsed_s),
        sample_count=len(samples),
        prompt=prompt,
        response=response,
        model=model,
        means=means,
        peaks=peaks,
        gpu_available=any(sample.gpu_available for sample in samples),
        window_s=max(timestamps) - min(timestamps),
    )
