"""Run artifacts written next to the logs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .model_cli import InferenceCall
from .telemetry import MetricSeries


def write_samples_csv(path: Path, series: MetricSeries) -> None:
    series.write_csv(path)


def write_summary_json(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def write_dialogue(path: Path, call: InferenceCall) -> None:
    lines = [
        "=== Test start ===",
        f"Started (UTC): {call.started_utc}",
        f"Model: {call.model}",
        f"Prompt: {call.prompt}",
        "",
        "--- Model output ---",
        call.response,
        "",
        "--- Result ---",
        f"Finished (UTC): {call.finished_utc}",
        f"Elapsed: {call.elapsed_s:.3f}s",
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _fmt(value: Any, digits: int = 2) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def render_report_markdown(payload: dict[str, Any]) -> str:
    summary = payload.get("summary", {})
    hardware = payload.get("hardware", {})
    lines = [
        f"# Benchmark Report: {payload.get('run_id')}",
        "",
        "## Run",
        f"- Created (UTC): `{payload.get('created_utc')}`",
        f"- Model: `{summary.get('model')}`",
        f"- Prompt: {summary.get('prompt')}",
        f"- Elapsed (s): `{_fmt(summary.get('elapsed_s'), 3)}`",
        f"- Ready after (s): `{_fmt(payload.get('ready_after_s'), 2)}`",
        "",
        "## System Metrics",
    ]
    if summary.get("status") != "ok":
        lines.append("- No samples recorded during the inference window.")
    else:
        lines.extend(
            [
                f"- Samples: `{summary.get('sample_count')}` over `{_fmt(summary.get('sample_window_s'), 3)}s`",
                f"- CPU % mean/peak: `{_fmt(summary.get('cpu_pct_mean'))}` / `{_fmt(summary.get('cpu_pct_peak'))}`",
                f"- Memory MB mean/peak: `{_fmt(summary.get('mem_used_mb_mean'))}` / `{_fmt(summary.get('mem_used_mb_peak'))}`",
            ]
        )
        if summary.get("gpu_available"):
            lines.extend(
                [
                    f"- GPU % mean/peak: `{_fmt(summary.get('gpu_util_pct_mean'))}` / `{_fmt(summary.get('gpu_util_pct_peak'))}`",
                    f"- GPU memory MB mean/peak: `{_fmt(summary.get('gpu_mem_mb_mean'))}` / `{_fmt(summary.get('gpu_mem_mb_peak'))}`",
                ]
            )
        else:
            lines.append("- GPU telemetry unavailable; GPU fields recorded as zero.")

    lines.extend(["", "## Hardware"])
    for key in ("hostname", "cpu_model", "physical_cores", "logical_cores", "memory_total_gib", "disk_total_gib", "os"):
        lines.append(f"- {key}: `{hardware.get(key)}`")
    return "\n".join(lines).strip() + "\n"
