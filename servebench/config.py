"""Run configuration: YAML defaults merged with explicit CLI flags."""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError:  # pragma: no cover
    yaml = None

from .errors import ConfigError

DEFAULT_MODEL = "mistral:7b"
DEFAULT_PROMPT = "請用繁體中文回答：如何優化生產線效率？"
DEFAULT_BINARY_URL = "https://github.com/ollama/ollama/releases/download/v0.1.33/ollama-linux-amd64"


@dataclass
class BenchConfig:
    model: str = DEFAULT_MODEL
    prompt: str = DEFAULT_PROMPT
    host: str = "127.0.0.1"
    port: int = 11434
    health_path: str = "/"
    binary_path: Optional[str] = None
    binary_url: str = DEFAULT_BINARY_URL
    download: bool = True
    download_timeout_s: float = 600.0
    packages: list[str] = field(default_factory=list)
    install_timeout_s: float = 900.0
    models_dir: Optional[str] = None
    models_env_var: str = "OLLAMA_MODELS"
    server_env: dict[str, str] = field(default_factory=dict)
    skip_pull: bool = False
    pull_timeout_s: Optional[float] = None
    ready_timeout_s: float = 60.0
    ready_poll_s: float = 2.0
    startup_grace_s: float = 1.0
    sample_interval_s: float = 1.0
    gpu_timeout_s: float = 2.0
    terminate_timeout_s: float = 10.0
    results_root: str = "results"
    run_id: Optional[str] = None
    log_level: str = "INFO"
    report_filename: str = "report.md"

    @property
    def health_url(self) -> str:
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"http://{self.host}:{self.port}{path}"

    def resolve_binary(self, run_dir: Path) -> Path:
        return Path(self.binary_path) if self.binary_path else run_dir / "ollama"

    def resolve_models_dir(self, run_dir: Path) -> Path:
        return Path(self.models_dir) if self.models_dir else run_dir / "models"

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


_POSITIVE_FIELDS = (
    "download_timeout_s",
    "install_timeout_s",
    "ready_timeout_s",
    "ready_poll_s",
    "sample_interval_s",
    "gpu_timeout_s",
    "terminate_timeout_s",
)
_FLOAT_FIELDS = _POSITIVE_FIELDS + ("startup_grace_s", "pull_timeout_s")
_BOOL_FIELDS = ("download", "skip_pull")
_OPTIONAL_FIELDS = ("binary_path", "models_dir", "pull_timeout_s", "run_id")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_config(path: Optional[str]) -> dict[str, Any]:
    if not path:
        return {}
    if yaml is None:
        raise ImportError("pyyaml is required to load config files")
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(f"Config not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {cfg_path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError("Config root must be a mapping")
    return dict(data)


def apply_config(config: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> BenchConfig:
    """File values first, then every override that is not None."""
    merged = dict(config)
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
    merged = {k: v for k, v in merged.items() if v is not None or k in _OPTIONAL_FIELDS}
    known = {f.name for f in dataclasses.fields(BenchConfig)}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {unknown}")

    for name in _FLOAT_FIELDS:
        if merged.get(name) is not None:
            try:
                merged[name] = float(merged[name])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"{name}: expected a number, got {merged[name]!r}") from exc
            if not math.isfinite(merged[name]):
                raise ConfigError(f"{name} must be a finite number, got {merged[name]}")
    for name in _POSITIVE_FIELDS:
        if name in merged and merged[name] <= 0:
            raise ConfigError(f"{name} must be > 0, got {merged[name]}")
    if merged.get("startup_grace_s", 0.0) < 0:
        raise ConfigError("startup_grace_s must be >= 0")
    for name in _BOOL_FIELDS:
        if name in merged and not isinstance(merged[name], bool):
            raise ConfigError(f"{name}: expected true/false, got {merged[name]!r}")
    if "port" in merged:
        try:
            merged["port"] = int(merged["port"])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"port: expected an integer, got {merged['port']!r}") from exc
        if not 0 < merged["port"] < 65536:
            raise ConfigError(f"port out of range: {merged['port']}")
    if "packages" in merged:
        if isinstance(merged["packages"], str) or not isinstance(merged["packages"], (list, tuple)):
            raise ConfigError("packages must be a list of package names")
        merged["packages"] = [str(p) for p in merged["packages"]]
    if "server_env" in merged:
        if not isinstance(merged["server_env"], Mapping):
            raise ConfigError("server_env must be a mapping")
        merged["server_env"] = {str(k): str(v) for k, v in merged["server_env"].items()}
    if "log_level" in merged:
        merged["log_level"] = str(merged["log_level"]).upper()
        if merged["log_level"] not in _LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {_LOG_LEVELS}")
    if not str(merged.get("model", DEFAULT_MODEL)).strip():
        raise ConfigError("model must not be empty")
    return BenchConfig(**merged)
