"""Host/GPU metric sampling on a background thread while the inference call runs."""

from __future__ import annotations

import csv
import logging
import subprocess
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterator, Optional

import psutil

from .errors import TelemetryUnavailable

LOG = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DEFAULT_GPU_TIMEOUT_S = 2.0
GPU_QUERY = [
    "nvidia-smi",
    "--query-gpu=utilization.gpu,memory.used",
    "--format=csv,noheader,nounits",
]
SAMPLE_FIELDS: tuple[str, ...] = ("timestamp", "cpu_pct", "mem_used_mb", "gpu_util_pct", "gpu_mem_mb", "gpu_available")


@dataclass(frozen=True)
class GpuReading:
    util_pct: float = 0.0
    mem_mb: float = 0.0
    available: bool = False


@dataclass(frozen=True)
class MetricSample:
    timestamp: float
    cpu_pct: float
    mem_used_mb: float
    gpu_util_pct: float = 0.0
    gpu_mem_mb: float = 0.0
    gpu_available: bool = False

    def as_row(self) -> dict[str, object]:
        return asdict(self)


class MetricSeries:
    """Append-only, timestamp-ordered samples; one writer, read after sealing."""

    def __init__(self) -> None:
        self._samples: list[MetricSample] = []
        self._lock = threading.Lock()
        self._sealed = False

    def append(self, sample: MetricSample) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError("MetricSeries is sealed; sampling already stopped")
            if self._samples and sample.timestamp < self._samples[-1].timestamp:
                raise ValueError(
                    f"Sample timestamp {sample.timestamp} precedes last sample {self._samples[-1].timestamp}"
                )
            self._samples.append(sample)

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def samples(self) -> tuple[MetricSample, ...]:
        with self._lock:
            return tuple(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(self.samples())

    def to_rows(self) -> list[dict[str, object]]:
        return [sample.as_row() for sample in self.samples()]

    def write_csv(self, path) -> None:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=list(SAMPLE_FIELDS))
            writer.writeheader()
            for row in self.to_rows():
                writer.writerow(row)


def parse_gpu_query(text: str) -> GpuReading:
    utils: list[float] = []
    mem_total = 0.0
    for row in csv.reader(text.splitlines()):
        if len(row) < 2:
            continue
        util, mem_used = (item.strip() for item in row[:2])
        try:
            utils.append(float(util))
            mem_total += float(mem_used)
        except ValueError:
            continue
    if not utils:
        raise TelemetryUnavailable(f"Unparseable nvidia-smi output: {text.strip()[:200]!r}")
    return GpuReading(util_pct=sum(utils) / len(utils), mem_mb=mem_total, available=True)


def query_gpu(timeout_s: float = DEFAULT_GPU_TIMEOUT_S) -> GpuReading:
    try:
        completed = subprocess.run(GPU_QUERY, capture_output=True, text=True, timeout=timeout_s, check=False)
    except FileNotFoundError as exc:
        raise TelemetryUnavailable("nvidia-smi not installed") from exc
    except subprocess.TimeoutExpired as exc:
        raise TelemetryUnavailable(f"nvidia-smi did not answer within {timeout_s:.1f}s") from exc
    except OSError as exc:
        raise TelemetryUnavailable(f"nvidia-smi failed: {exc}") from exc
    if completed.returncode != 0:
        raise TelemetryUnavailable(
            f"nvidia-smi exited with {completed.returncode}: {completed.stderr.strip() or completed.stdout.strip()}"
        )
    return parse_gpu_query(completed.stdout)


class GpuReader:
    """Best-effort GPU reads that degrade to zeros instead of failing."""

    def __init__(self, timeout_s: float = DEFAULT_GPU_TIMEOUT_S, query: Callable[[float], GpuReading] = query_gpu) -> None:
        self.timeout_s = timeout_s
        self._query = query
        self._warned = False

    def read(self) -> GpuReading:
        try:
            return self._query(self.timeout_s)
        except TelemetryUnavailable as exc:
            if not self._warned:
                LOG.warning("GPU telemetry unavailable, recording zeros: %s", exc)
                self._warned = True
            else:
                LOG.debug("GPU telemetry unavailable: %s", exc)
            return GpuReading()


class HostCollector:
    """Reads host-wide CPU and memory counters plus the GPU."""

    def __init__(self, gpu_timeout_s: float = DEFAULT_GPU_TIMEOUT_S, gpu_reader: Optional[GpuReader] = None) -> None:
        self.gpu = gpu_reader or GpuReader(gpu_timeout_s)
        # psutil reports 0.0 on the first non-blocking call; prime it.
        psutil.cpu_percent(interval=None)

    def __call__(self, timestamp: float) -> MetricSample:
        cpu = psutil.cpu_percent(interval=None)
        mem = psutil.virtual_memory()
        gpu = self.gpu.read()
        return MetricSample(
            timestamp=timestamp,
            cpu_pct=float(cpu),
            mem_used_mb=round(mem.used / BYTES_PER_MB, 3),
            gpu_util_pct=gpu.util_pct,
            gpu_mem_mb=gpu.mem_mb,
            gpu_available=gpu.available,
        )


Collector = Callable[[float], MetricSample]


class SamplerHandle:
    def __init__(self, series: MetricSeries, thread: threading.Thread, stop_event: threading.Event) -> None:
        self.series = series
        self._thread = thread
        self._stop_event = stop_event
        self._stop_lock = threading.Lock()
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> MetricSeries:
        """Halt sampling; once this returns the series can no longer grow."""
        with self._stop_lock:
            if self._stopped:
                return self.series
            self._stop_event.set()
            self._thread.join()
            self.series.seal()
            self._stopped = True
        LOG.info("Sampler stopped with %s samples", len(self.series))
        return self.series


class Sampler:
    def __init__(self, collector: Optional[Collector] = None, gpu_timeout_s: float = DEFAULT_GPU_TIMEOUT_S) -> None:
        self._collector = collector
        self.gpu_timeout_s = gpu_timeout_s

    def start(self, interval_s: float, series: Optional[MetricSeries] = None) -> SamplerHandle:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        collector = self._collector or HostCollector(self.gpu_timeout_s)
        series = series if series is not None else MetricSeries()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=_sample_loop,
            args=(collector, series, interval_s, stop_event),
            name="servebench-sampler",
            daemon=True,
        )
        thread.start()
        LOG.info("Sampler started (interval=%.3fs)", interval_s)
        return SamplerHandle(series, thread, stop_event)

    @staticmethod
    def stop(handle: SamplerHandle) -> MetricSeries:
        return handle.stop()


def _sample_loop(collector: Collector, series: MetricSeries, interval_s: float, stop_event: threading.Event) -> None:
    # Wall-clock timestamps anchored to the monotonic clock never go backwards.
    origin_wall = time.time()
    origin_mono = time.monotonic()
    tick = 0
    while not stop_event.is_set():
        now_mono = time.monotonic()
        try:
            sample = collector(origin_wall + (now_mono - origin_mono))
            series.append(sample)
        except Exception:  # noqa: BLE001
            LOG.exception("Metric sample failed; continuing")
        tick += 1
        next_tick = origin_mono + tick * interval_s
        now_mono = time.monotonic()
        if next_tick <= now_mono:
            # Collection overran one or more ticks; skip to the next future one.
            tick = int((now_mono - origin_mono) // interval_s) + 1
            next_tick = origin_mono + tick * interval_s
        stop_event.wait(next_tick - now_mono)
