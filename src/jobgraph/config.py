# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ValidationError
from .model import format_value

ENV_PREFIX = "JOBGRAPH_"

_NUMERIC_FIELDS = {
    "max_workers": int,
    "default_timeout_minutes": float,
    "cancel_grace_seconds": float,
    "poll_interval": float,
}


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineConfig:
    """
    Process-wide engine settings.

    Immutable and passed explicitly to the loader and the scheduler, so two
    runs never share mutable configuration.
    """
    max_workers: int = field(default_factory=_default_workers)
    default_timeout_minutes: float = 360.0
    cancel_grace_seconds: float = 5.0
    poll_interval: float = 0.05
    inherit_env: bool = True
    shell: str | None = None
    workdir: str = "."
    env: Mapping[str, str] = field(default_factory=dict)
    actions: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        return cls().with_env_overrides(environ)

    def with_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        environ = os.environ if environ is None else environ
        updates: Dict[str, Any] = {}
        try:
            if f"{ENV_PREFIX}MAX_WORKERS" in environ:
                updates["max_workers"] = int(environ[f"{ENV_PREFIX}MAX_WORKERS"])
            if f"{ENV_PREFIX}DEFAULT_TIMEOUT_MINUTES" in environ:
                updates["default_timeout_minutes"] = float(environ[f"{ENV_PREFIX}DEFAULT_TIMEOUT_MINUTES"])
            if f"{ENV_PREFIX}CANCEL_GRACE_SECONDS" in environ:
                updates["cancel_grace_seconds"] = float(environ[f"{ENV_PREFIX}CANCEL_GRACE_SECONDS"])
        except ValueError as e:
            raise ValidationError(f"invalid {ENV_PREFIX}* environment value: {e}", location="environment")
        if f"{ENV_PREFIX}INHERIT_ENV" in environ:
            updates["inherit_env"] = environ[f"{ENV_PREFIX}INHERIT_ENV"].lower() not in ("0", "false", "no")
        if f"{ENV_PREFIX}SHELL" in environ:
            updates["shell"] = environ[f"{ENV_PREFIX}SHELL"] or None
        if f"{ENV_PREFIX}WORKDIR" in environ:
            updates["workdir"] = environ[f"{ENV_PREFIX}WORKDIR"]
        return replace(self, **updates).checked()

    def checked(self) -> "EngineConfig":
        if self.max_workers < 1:
            raise ValidationError("max_workers must be >= 1", location="config")
        if self.default_timeout_minutes <= 0:
            raise ValidationError("default_timeout_minutes must be > 0", location="config")
        if self.cancel_grace_seconds < 0:
            raise ValidationError("cancel_grace_seconds must be >= 0", location="config")
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval must be > 0", location="config")
        return self


def load_config(
    path: str | Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """
    Build an EngineConfig from an optional YAML file, then apply
    JOBGRAPH_* environment overrides. Environment wins over the file.
    """
    config = EngineConfig()
    if path is not None:
        cfg_path = Path(path).expanduser()
        if not cfg_path.exists():
            raise ValidationError(f"config file not found: {cfg_path}", location="config")
        with cfg_path.open("r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValidationError(f"invalid YAML: {e}", location=str(cfg_path))
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError(
                f"config root must be a mapping, got {type(data).__name__}", location=str(cfg_path)
            )
        known = {f.name for f in fields(EngineConfig)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError("unknown config keys", location=str(cfg_path), problems=unknown)
        for key in ("env", "actions"):
            if key in data:
                if not isinstance(data[key], dict):
                    raise ValidationError(f"`{key}` must be a mapping", location=str(cfg_path))
                data[key] = {str(k): format_value(v) for k, v in data[key].items()}
        for key, cast in _NUMERIC_FIELDS.items():
            if key in data:
                try:
                    data[key] = cast(data[key])
                except (TypeError, ValueError):
                    raise ValidationError(f"`{key}` must be a number", location=str(cfg_path))
        try:
            config = replace(config, **data)
        except TypeError as e:
            raise ValidationError(str(e), location=str(cfg_path))
    return config.with_env_overrides(environ)
