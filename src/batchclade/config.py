from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .system_info import available_processors


BACKENDS = ("auto", "local", "docker", "singularity")
DEFAULT_THREADS_PER_WORKER = 4

# One worker beyond the processor budget is always admitted. This is the
# scheduling policy, not a rounding artefact: floor(P/T) workers saturate the
# budget and the extra slot keeps the machine busy while a worker tears down.
OVERSUBSCRIPTION_SLOTS = 1


def compute_max_workers(processors: int, threads_per_worker: int) -> int:
    """Concurrent worker slots K = floor(P / T) + 1, never less than 1."""
    if int(threads_per_worker) <= 0:
        raise ConfigurationError(
            f"threads_per_worker must be > 0, got {threads_per_worker}"
        )
    k = int(processors) // int(threads_per_worker) + OVERSUBSCRIPTION_SLOTS
    return max(1, k)


def _as_path(value: Any) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value))


@dataclass(frozen=True)
class BatchConfig:
    input_dir: Path
    dataset_dir: Path
    output_dir: Path
    work_dir: Path | None = None
    processors: int = field(default_factory=available_processors)
    threads_per_worker: int = DEFAULT_THREADS_PER_WORKER
    binary: str | None = None
    backend: str = "auto"
    timeout_sec: int | None = None
    output_basename: str = "nextclade"
    upload_dest: str | None = None

    def __post_init__(self) -> None:
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "input_dir", Path(self.input_dir))
        object.__setattr__(self, "dataset_dir", Path(self.dataset_dir))
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        work = self.output_dir / "work" if self.work_dir is None else Path(self.work_dir)
        object.__setattr__(self, "work_dir", work)
        object.__setattr__(self, "backend", str(self.backend).strip().lower())

        if int(self.processors) <= 0:
            raise ConfigurationError(f"processors must be > 0, got {self.processors}")
        if int(self.threads_per_worker) <= 0:
            raise ConfigurationError(
                f"threads_per_worker must be > 0, got {self.threads_per_worker}"
            )
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"Unsupported backend '{self.backend}'. Choose one of: {', '.join(BACKENDS)}"
            )
        if self.timeout_sec is not None and int(self.timeout_sec) <= 0:
            raise ConfigurationError(f"timeout_sec must be > 0, got {self.timeout_sec}")
        if not str(self.output_basename).strip() or "/" in str(self.output_basename):
            raise ConfigurationError(f"Invalid output_basename: {self.output_basename!r}")

    @property
    def max_workers(self) -> int:
        return compute_max_workers(self.processors, self.threads_per_worker)

    def check_paths(self) -> None:
        if not self.input_dir.is_dir():
            raise ConfigurationError(f"input_dir not found: {self.input_dir}")
        if not self.dataset_dir.is_dir():
            raise ConfigurationError(f"dataset_dir not found: {self.dataset_dir}")

    def with_overrides(self, **overrides: Any) -> "BatchConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        if (
            "output_dir" in values
            and "work_dir" not in values
            and self.work_dir == self.output_dir / "work"
        ):
            values["work_dir"] = Path(values["output_dir"]) / "work"
        return replace(self, **values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_dir": str(self.input_dir),
            "dataset_dir": str(self.dataset_dir),
            "output_dir": str(self.output_dir),
            "work_dir": str(self.work_dir),
            "processors": int(self.processors),
            "threads_per_worker": int(self.threads_per_worker),
            "max_workers": self.max_workers,
            "binary": self.binary,
            "backend": self.backend,
            "timeout_sec": self.timeout_sec,
            "output_basename": self.output_basename,
            "upload_dest": self.upload_dest,
        }


def _require_keys(payload: dict[str, Any], keys: list[str], label: str) -> None:
    missing = [k for k in keys if k not in payload]
    if missing:
        raise ConfigurationError(f"{label} missing required keys: {', '.join(missing)}")


def config_from_dict(payload: dict[str, Any]) -> BatchConfig:
    if not isinstance(payload, dict):
        raise ConfigurationError("batch config must be a JSON object.")
    _require_keys(payload, ["input_dir", "dataset_dir", "output_dir"], "batch config")
    known = {f.name for f in fields(BatchConfig)}
    unknown = sorted(set(payload) - known - {"schema_version", "max_workers"})
    if unknown:
        raise ConfigurationError(f"batch config has unknown keys: {', '.join(unknown)}")

    kwargs: dict[str, Any] = {
        "input_dir": Path(str(payload["input_dir"])),
        "dataset_dir": Path(str(payload["dataset_dir"])),
        "output_dir": Path(str(payload["output_dir"])),
        "work_dir": _as_path(payload.get("work_dir")),
    }
    try:
        if payload.get("processors") is not None:
            kwargs["processors"] = int(payload["processors"])
        if payload.get("threads_per_worker") is not None:
            kwargs["threads_per_worker"] = int(payload["threads_per_worker"])
        if payload.get("timeout_sec") is not None:
            kwargs["timeout_sec"] = int(payload["timeout_sec"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"batch config has a non-integer budget: {exc}") from exc
    for key in ("binary", "backend", "output_basename", "upload_dest"):
        if payload.get(key) is not None:
            kwargs[key] = str(payload[key])
    return BatchConfig(**kwargs)


def load_config(path: str | Path) -> BatchConfig:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {p}")
    with p.open("r", encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Config file is not valid JSON: {p}: {exc}") from exc
    return config_from_dict(payload)
