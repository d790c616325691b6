"""Runtime configuration.

This module owns all environment variable and config file parsing.
Other modules consume a typed, validated config object instead of raw
strings.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from donation_thermometer.errors import ConfigError
from donation_thermometer.reconcile import POLICIES

DEFAULT_GOAL_AMOUNT = 1_000_000.0
DEFAULT_REFRESH_INTERVAL_MS = 2_000
DEFAULT_REQUEST_TIMEOUT_MS = 3_000
DEFAULT_BACKOFF_THRESHOLD = 3
DEFAULT_MAX_BACKOFF_MS = 30_000

ENV_PREFIX = "THERMO_"
COLUMN_FALLBACKS: tuple[str, ...] = ("strict", "positional")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ThermometerConfig:
    """Validated runtime configuration.

    Attributes:
        source_url: Published CSV endpoint. May be empty for offline parsing.
        goal_amount: Fundraising goal the percentage is measured against.
        refresh_interval_ms: Delay between the end of one fetch and the next.
        request_timeout_ms: Cap on a single network call.
        max_consecutive_failures_before_backoff: Retries at the base interval
            before the delay starts doubling.
        max_backoff_ms: Upper bound on the retry delay.
        reconciliation_policy: ``monotonic`` or ``replace-always``.
        column_fallback: ``strict`` or ``positional`` header fallback.
        positive_amounts_only: Exclude amounts ``<= 0`` from the total.
        cache_path: Optional JSON file holding the last accepted snapshot.
    """

    source_url: str = ""
    goal_amount: float = DEFAULT_GOAL_AMOUNT
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    max_consecutive_failures_before_backoff: int = DEFAULT_BACKOFF_THRESHOLD
    max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS
    reconciliation_policy: str = "monotonic"
    column_fallback: str = "strict"
    positive_amounts_only: bool = False
    cache_path: Path | None = None

    def __post_init__(self) -> None:
        if self.source_url:
            parsed = urlparse(self.source_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigError(f"source_url must be an http(s) URL, got {self.source_url!r}")
        if self.goal_amount <= 0:
            raise ConfigError("goal_amount must be > 0")
        if self.refresh_interval_ms <= 0:
            raise ConfigError("refresh_interval_ms must be > 0")
        if self.request_timeout_ms <= 0:
            raise ConfigError("request_timeout_ms must be > 0")
        if self.max_consecutive_failures_before_backoff < 0:
            raise ConfigError("max_consecutive_failures_before_backoff must be >= 0")
        if self.max_backoff_ms < self.refresh_interval_ms:
            raise ConfigError("max_backoff_ms must be >= refresh_interval_ms")
        if self.reconciliation_policy not in POLICIES:
            raise ConfigError(
                f"Invalid reconciliation_policy: {self.reconciliation_policy!r}. "
                "Use monotonic/replace-always."
            )
        if self.column_fallback not in COLUMN_FALLBACKS:
            raise ConfigError(
                f"Invalid column_fallback: {self.column_fallback!r}. Use strict/positional."
            )

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> ThermometerConfig:
        """Build a config from raw string values keyed by field name."""
        return cls(**_coerce_values(values))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ThermometerConfig:
        """Build config from ``THERMO_*`` environment variables.

        Raises:
            ConfigError: If environment values are invalid.
        """
        env = os.environ if environ is None else environ
        values = {
            f.name: env[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if ENV_PREFIX + f.name.upper() in env
        }
        return cls.from_mapping(values)

    def with_overrides(self, **overrides: Any) -> ThermometerConfig:
        """Return a copy with every non-``None`` override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return replace(self, **changes)

    def with_file(self, path: Path) -> ThermometerConfig:
        """Return a copy updated from a ``key=value`` config file."""
        return self.with_overrides(**_coerce_values(load_config_file(path)))


def load_config_file(path: Path) -> dict[str, str]:
    """Parse ``key=value`` lines; blank lines and ``#`` comments are ignored."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path} (expected lines like goal_amount=50000)")
    if path.is_dir():
        raise ConfigError(f"Config path is a directory, not a file: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc

    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            raise ConfigError(f"Invalid config line: {stripped!r}  (expected key=value)")
        key, value = stripped.split("=", 1)
        key = key.strip().lower().replace("-", "_")
        if not key:
            raise ConfigError(f"Invalid config line: {stripped!r}  (empty key)")
        values[key] = value.strip()
    return values


def _parse_bool(raw: str, name: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _coerce_values(values: Mapping[str, str]) -> dict[str, Any]:
    types = {f.name: f.type for f in fields(ThermometerConfig)}
    unknown = sorted(set(values) - set(types))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    coerced: dict[str, Any] = {}
    for name, raw in values.items():
        kind = types[name]
        try:
            if kind == "int":
                coerced[name] = int(raw)
            elif kind == "float":
                coerced[name] = float(raw)
            elif kind == "bool":
                coerced[name] = _parse_bool(raw, name)
            elif kind == "Path | None":
                coerced[name] = Path(raw).expanduser() if raw else None
            else:
                coerced[name] = raw
        except ValueError as exc:
            raise ConfigError(f"{name} has an invalid value {raw!r}: {exc}") from exc
    return coerced
