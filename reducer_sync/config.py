"""
Engine configuration.

Configuration can be provided directly, via environment variables, or
from the ``sync:`` section of a YAML settings file:

```yaml
sync:
  cache_dir: ~/.reducer_sync/cache
  cache_max_age: 604800      # seconds; omit to keep cached values forever
  catch_up: true
  baseline_timeout: 30
  emit_timeout: 10
  poll_interval: 1.0
  retry:
    max_retries: 3
    backoff_base: 0.5
```

Environment Variables:
    REDUCER_SYNC_CACHE_DIR: Local cache directory
    REDUCER_SYNC_CACHE_MAX_AGE: Max age of cached values in seconds
    REDUCER_SYNC_CATCH_UP: "0"/"false" disables event log catch-up
    REDUCER_SYNC_BASELINE_TIMEOUT: Seconds to wait for initial values
    REDUCER_SYNC_EMIT_TIMEOUT: Seconds to wait for an action's resolution
    REDUCER_SYNC_POLL_INTERVAL: Seconds between polls for polling backends
    REDUCER_SYNC_MAX_RETRIES: Retries for transient backend failures
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ValidationError
from .resilience import RetryConfig

DEFAULT_CACHE_DIR = Path.home() / ".reducer_sync" / "cache"

# Retry settings that can be expressed in plain YAML
_RETRY_KEYS = ("max_retries", "backoff_base", "backoff_max", "backoff_multiplier")


@dataclass
class SyncConfig:
    """Configuration for a sync context.

    Attributes:
        cache_dir: Directory holding the local value cache
        cache_max_age: Cached values older than this (seconds) are ignored
        catch_up: Apply events appended since the baseline's timestamp
        baseline_timeout: Max seconds to await a channel's initial value
        emit_timeout: Max seconds to await an emitted action's resolution
        poll_interval: Seconds between polls for subscriptions on polling backends
        retry: Backoff policy for transient backend failures
    """

    cache_dir: Path = DEFAULT_CACHE_DIR
    cache_max_age: float | None = None
    catch_up: bool = True
    baseline_timeout: float | None = None
    emit_timeout: float | None = None
    poll_interval: float = 1.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir).expanduser()
        for name in ("cache_max_age", "baseline_timeout", "emit_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValidationError(name, "must be positive", str(value))
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval", "must be positive", str(self.poll_interval))

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from REDUCER_SYNC_* environment variables."""
        kwargs: dict[str, Any] = {}

        cache_dir = os.environ.get("REDUCER_SYNC_CACHE_DIR")
        if cache_dir:
            kwargs["cache_dir"] = Path(cache_dir)

        for env_name, key in (
            ("REDUCER_SYNC_CACHE_MAX_AGE", "cache_max_age"),
            ("REDUCER_SYNC_BASELINE_TIMEOUT", "baseline_timeout"),
            ("REDUCER_SYNC_EMIT_TIMEOUT", "emit_timeout"),
            ("REDUCER_SYNC_POLL_INTERVAL", "poll_interval"),
        ):
            raw = os.environ.get(env_name)
            if raw:
                kwargs[key] = _parse_float(key, raw)

        catch_up = os.environ.get("REDUCER_SYNC_CATCH_UP")
        if catch_up:
            kwargs["catch_up"] = catch_up.strip().lower() not in ("0", "false", "no", "off")

        max_retries = os.environ.get("REDUCER_SYNC_MAX_RETRIES")
        if max_retries:
            try:
                kwargs["retry"] = RetryConfig(max_retries=int(max_retries))
            except ValueError:
                raise ValidationError("max_retries", "must be an integer", max_retries) from None

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> SyncConfig:
        """Create config from the ``sync:`` section of a YAML file.

        A missing file or section yields the defaults.
        """
        path = Path(path).expanduser()
        if not path.exists():
            return cls()

        try:
            content = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError("config", f"invalid YAML in {path}: {e}") from e

        return cls.from_dict(content.get("sync") or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from a plain mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k != "retry"}

        retry_data = data.get("retry")
        if retry_data:
            kwargs["retry"] = RetryConfig(
                **{k: v for k, v in retry_data.items() if k in _RETRY_KEYS}
            )

        return cls(**kwargs)


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(name, "must be a number", raw) from None
