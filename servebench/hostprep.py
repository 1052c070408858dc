"""Host preparation: package install, binary download, hardware fingerprint."""

from __future__ import annotations

import logging
import os
import platform
import shutil
import socket
import stat
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Sequence

import httpx
import psutil

from .errors import SetupError

LOG = logging.getLogger(__name__)

BYTES_PER_GIB = 1024**3


def install_packages(packages: Sequence[str], timeout_s: float, *, log_path: Optional[Path] = None) -> bool:
    """apt-get install under one shared deadline. Returns False when skipped."""
    if not packages:
        LOG.info("No host packages requested; skipping install")
        return False
    if shutil.which("apt-get") is None:
        raise SetupError("apt-get not available; cannot install host packages")
    deadline = time.monotonic() + float(timeout_s)
    commands = [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "--no-install-recommends", *packages],
    ]
    env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
    for cmd in commands:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SetupError(f"Host package install exceeded {timeout_s:.0f}s before `{' '.join(cmd)}`")
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, timeout=remaining, env=env, check=False)
        except subprocess.TimeoutExpired as exc:
            raise SetupError(f"`{' '.join(cmd)}` exceeded {timeout_s:.0f}s") from exc
        if log_path is not None:
            with log_path.open("a", encoding="utf-8") as fp:
                fp.write(completed.stdout)
                fp.write(completed.stderr)
        if completed.returncode != 0:
            raise SetupError(
                f"`{' '.join(cmd)}` exited with {completed.returncode}",
                log_tail="\n".join((completed.stderr or completed.stdout).splitlines()[-20:]),
            )
    LOG.info("Installed host packages: %s", ", ".join(packages))
    return True


def is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def download_binary(url: str, dest: Path, timeout_s: float) -> Path:
    if is_executable(dest):
        LOG.info("Server binary already present: %s", dest)
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    LOG.info("Downloading %s -> %s", url, dest)
    deadline = time.monotonic() + float(timeout_s)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as out:
            with httpx.stream("GET", url, follow_redirects=True, timeout=httpx.Timeout(timeout_s)) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_bytes():
                    if time.monotonic() > deadline:
                        raise SetupError(f"Download of {url} exceeded {timeout_s:.0f}s")
                    out.write(chunk)
        tmp_path.chmod(tmp_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        tmp_path.replace(dest)
    except httpx.HTTPStatusError as exc:
        raise SetupError(f"Download of {url} failed with HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise SetupError(f"Download of {url} failed: {exc}") from exc
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    if not is_executable(dest):
        raise SetupError(f"Downloaded binary is not executable: {dest}")
    LOG.info("Downloaded %.1f MiB", dest.stat().st_size / (1024 * 1024))
    return dest


def _cpu_model() -> Optional[str]:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.exists():
        for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    return platform.processor() or None


def _os_description() -> str:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return platform.platform()
    return release.get("PRETTY_NAME") or platform.platform()


def collect_hardware_spec(root: str = "/") -> dict[str, Any]:
    vm = psutil.virtual_memory()
    try:
        disk_total = shutil.disk_usage(root).total
    except OSError:
        disk_total = None
    return {
        "hostname": socket.gethostname(),
        "cpu_model": _cpu_model(),
        "physical_cores": psutil.cpu_count(logical=False),
        "logical_cores": psutil.cpu_count(logical=True),
        "memory_total_gib": round(vm.total / BYTES_PER_GIB, 2),
        "disk_total_gib": round(disk_total / BYTES_PER_GIB, 2) if disk_total is not None else None,
        "os": _os_description(),
        "kernel": platform.release(),
        "python_version": platform.python_version(),
    }
