"""Matcher configuration: defaults, JSON file, ``.env`` and environment overrides.

Precedence, lowest to highest: dataclass defaults, the JSON config file,
a ``.env`` file, the process environment. The scoring backend is chosen here
and only here.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import orjson

BACKENDS: tuple[str, ...] = ("inline", "process")

ENV_BACKEND = "DOCMATCH_BACKEND"
ENV_BATCH_SIZE = "DOCMATCH_BATCH_SIZE"
ENV_WORKERS = "DOCMATCH_WORKERS"
ENV_STORE = "DOCMATCH_STORE"


@dataclass(frozen=True, slots=True)
class MatcherConfig:
    batch_size: int = 100
    backend: str = "inline"
    workers: int | None = None
    pattern_threshold: float = 0.7
    pattern_confidence: float = 0.30
    min_series_items: int = 2
    search_limit: int = 20
    min_search_score: float = 0.05
    store_path: str | None = None

    def validate(self) -> MatcherConfig:
        """Return self, or raise ValueError naming the first bad field."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        for name in ("pattern_threshold", "pattern_confidence", "min_search_score"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.min_series_items < 1:
            raise ValueError(f"min_series_items must be >= 1, got {self.min_series_items}")
        if self.search_limit < 1:
            raise ValueError(f"search_limit must be >= 1, got {self.search_limit}")
        return self

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_INT_FIELDS = {"batch_size", "workers", "min_series_items", "search_limit"}
_FLOAT_FIELDS = {"pattern_threshold", "pattern_confidence", "min_search_score"}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in _INT_FIELDS:
            if isinstance(value, bool):
                raise ValueError
            return int(value)
        if name in _FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for {name}: {value!r}") from exc
    return str(value)


def read_dotenv(path: Path) -> dict[str, str]:
    """Parse ``KEY=value`` lines from a ``.env`` file; missing file gives {}."""
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key:
            values[key] = value.strip().strip("'\"")
    return values


def load_config(
    path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
    dotenv: Path | str | None = None,
) -> MatcherConfig:
    """Build a validated ``MatcherConfig``.

    Args:
        path: Optional JSON object file. Unknown keys and ``_``-prefixed
            keys (comments) are ignored.
        env: Environment mapping; defaults to ``os.environ``.
        dotenv: Optional ``.env`` file; the real environment wins over it.

    Raises:
        ValueError: non-object JSON payload or an invalid setting.
        FileNotFoundError: *path* given but missing.
    """
    known = {f.name for f in fields(MatcherConfig)}
    overrides: dict[str, Any] = {}

    if path is not None:
        data = orjson.loads(Path(path).read_bytes())
        if not isinstance(data, dict):
            raise ValueError(f"config file must hold a JSON object: {path}")
        for key, value in data.items():
            if key.startswith("_") or key not in known:
                continue
            overrides[key] = _coerce(key, value)

    merged_env: dict[str, str] = {}
    if dotenv is not None:
        merged_env.update(read_dotenv(Path(dotenv)))
    merged_env.update(os.environ if env is None else env)

    for var, name in (
        (ENV_BACKEND, "backend"),
        (ENV_BATCH_SIZE, "batch_size"),
        (ENV_WORKERS, "workers"),
        (ENV_STORE, "store_path"),
    ):
        raw = merged_env.get(var, "").strip()
        if raw:
            overrides[name] = _coerce(name, raw)

    return replace(MatcherConfig(), **overrides).validate()
