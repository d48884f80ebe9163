"""
Marathon Memory Configuration

Configuration dataclasses for the storage backend, memory store, knowledge
graph and auto-saver. Includes load_config() for reading a JSON config
file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

BackendName = Literal["sqlite", "filetree"]

VALID_BACKENDS: set = {"sqlite", "filetree"}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (isinstance(value, bool) or not isinstance(value, typ)):
        expected = getattr(typ, "__name__", "number")
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


_NUMBER = (int, float)


@dataclass
class StoreConfig:
    """Storage backend configuration."""
    backend: str = "sqlite"
    root: str = ".marathon"
    db_name: str = "memory.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 30000

    @property
    def db_path(self) -> str:
        if self.root == ":memory:":
            return ":memory:"
        return os.path.join(self.root, self.db_name)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.backend not in VALID_BACKENDS:
            errors.append(
                f"store.backend: {self.backend!r} not in {sorted(VALID_BACKENDS)}"
            )
        if not self.root:
            errors.append("store.root: must not be empty")
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class MemorySection:
    """Key/value memory defaults."""
    list_limit: int = 50
    search_limit: int = 20
    cleanup_on_open: bool = True

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "memory.list_limit", self.list_limit, 1, 10000, int)
        _check_range(errors, "memory.search_limit", self.search_limit, 1, 10000, int)
        return errors


@dataclass
class GraphSection:
    """Knowledge graph defaults."""
    search_limit: int = 20
    read_limit: int = 100
    path_max_depth: int = 5

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "graph.search_limit", self.search_limit, 1, 10000, int)
        _check_range(errors, "graph.read_limit", self.read_limit, 1, 100000, int)
        _check_range(errors, "graph.path_max_depth", self.path_max_depth, 1, 50, int)
        return errors


@dataclass
class AutoSaveSection:
    """Recurring checkpoint interval."""
    interval_minutes: float = 2.0

    @property
    def interval_seconds(self) -> float:
        return float(self.interval_minutes) * 60.0

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_range(errors, "autosave.interval_minutes",
                     self.interval_minutes, 0.01, 1440, _NUMBER)
        return errors


@dataclass
class MarathonConfig:
    """Top-level marathon-memory configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    memory: MemorySection = field(default_factory=MemorySection)
    graph: GraphSection = field(default_factory=GraphSection)
    autosave: AutoSaveSection = field(default_factory=AutoSaveSection)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MarathonConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "memory" in d:
            kwargs["memory"] = MemorySection(**d["memory"])
        if "graph" in d:
            kwargs["graph"] = GraphSection(**d["graph"])
        if "autosave" in d:
            kwargs["autosave"] = AutoSaveSection(**d["autosave"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.memory.validate())
        errors.extend(self.graph.validate())
        errors.extend(self.autosave.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MarathonConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MarathonConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MarathonConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MarathonConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = MarathonConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
