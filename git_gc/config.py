"""Settings for a git gc run, optionally loaded from a YAML file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

from git_gc.scheduler import CancelPolicy


class ConfigError(ValueError):
    """Raised for an unreadable config file or an invalid setting."""


def default_parallel() -> int:
    return os.cpu_count() or 1


@dataclass
class Settings:
    root: str | None = None  # None means the home directory
    parallel: int = field(default_factory=default_parallel)
    gc_args: list[str] = field(default_factory=list)
    git: str = "git"
    cancel_policy: CancelPolicy = CancelPolicy.ABANDON
    metadata_dir: str = ".git"
    hidden_prefix: str = "."

    def __post_init__(self) -> None:
        if isinstance(self.parallel, bool) or not isinstance(self.parallel, int):
            raise ConfigError(f"parallel must be an integer, got {self.parallel!r}")
        if self.parallel < 1:
            raise ConfigError(f"parallel must be >= 1, got {self.parallel}")
        if not isinstance(self.gc_args, list) or not all(isinstance(a, str) for a in self.gc_args):
            raise ConfigError(f"gc_args must be a list of strings, got {self.gc_args!r}")
        try:
            self.cancel_policy = CancelPolicy(self.cancel_policy)
        except ValueError:
            choices = ", ".join(p.value for p in CancelPolicy)
            raise ConfigError(
                f"cancel_policy must be one of {choices}, got {self.cancel_policy!r}"
            ) from None
        for name in ("git", "metadata_dir", "hidden_prefix"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigError(f"{name} must be a non-empty string, got {value!r}")
        if self.root is not None and not isinstance(self.root, str):
            raise ConfigError(f"root must be a string, got {self.root!r}")

    def override(self, **values) -> Settings:
        """Return a copy with every non-None value in *values* applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def load_config(path: str | Path) -> Settings:
    """Read settings from a YAML mapping.

    Keys match the :class:`Settings` fields. Unknown keys are rejected so a
    typo does not silently fall back to a default.
    """
    path = Path(path).expanduser()
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e.strerror}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(map(str, unknown))}")

    return Settings(**data)
