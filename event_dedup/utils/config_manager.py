from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from event_dedup.models.config import DedupConfig

_ENV_KEYS = (
    "DEDUP_OVERALL_THRESHOLD",
    "DEDUP_TITLE_FLOOR",
    "DEDUP_TIME_FLOOR",
    "DEDUP_LOCATION_FLOOR",
    "DEDUP_CLUSTER_THRESHOLD",
    "DEDUP_CACHE_TTL_SECONDS",
    "DEDUP_CACHE_MAX_ENTRIES",
    "DEDUP_BATCH_SIZE",
    "DEDUP_MAX_CONCURRENCY",
    "DEDUP_MAX_ATTEMPTS",
    "DEDUP_CLUSTERING_ENABLED",
    "DEDUP_LOG_LEVEL",
    "DEDUP_HISTORY_DB",
)

# env key -> (nested config path, parser)
_NUMERIC_OVERRIDES = {
    "DEDUP_OVERALL_THRESHOLD": (("similarity", "thresholds", "overall"), float),
    "DEDUP_TITLE_FLOOR": (("similarity", "thresholds", "title"), float),
    "DEDUP_TIME_FLOOR": (("similarity", "thresholds", "time"), float),
    "DEDUP_LOCATION_FLOOR": (("similarity", "thresholds", "location"), float),
    "DEDUP_CLUSTER_THRESHOLD": (("cluster", "similarity_threshold"), float),
    "DEDUP_CACHE_TTL_SECONDS": (("cache", "ttl_seconds"), float),
    "DEDUP_CACHE_MAX_ENTRIES": (("cache", "max_entries"), int),
    "DEDUP_BATCH_SIZE": (("processing", "batch_size"), int),
    "DEDUP_MAX_CONCURRENCY": (("processing", "max_concurrency"), int),
    "DEDUP_MAX_ATTEMPTS": (("processing", "max_attempts"), int),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigManager:
    """Utility class for loading deduplication settings from the environment."""

    def __init__(self, env_path: str | os.PathLike[str] = ".env") -> None:
        self.env_path = Path(env_path)
        self._config: Dict[str, Optional[str]] = {}

    def load(self) -> Dict[str, Optional[str]]:
        """Load environment configuration from the provided .env file."""

        load_dotenv(dotenv_path=self.env_path, override=False)
        self._config = {key: os.getenv(key) for key in _ENV_KEYS}
        self._config["DEDUP_LOG_LEVEL"] = self._config["DEDUP_LOG_LEVEL"] or "INFO"
        self._config["DEDUP_HISTORY_DB"] = self._config["DEDUP_HISTORY_DB"] or ":memory:"
        return self._config.copy()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Retrieve a configuration value with an optional default."""

        if not self._config:
            self.load()
        value = self._config.get(key)
        return default if value is None else value

    def build_dedup_config(self) -> DedupConfig:
        """
        Layer DEDUP_* overrides on top of the default DedupConfig.

        Raises:
            ValueError: when a variable cannot be parsed or the resulting
                configuration is rejected by validation.
        """

        if not self._config:
            self.load()

        data: Dict[str, Any] = DedupConfig().model_dump()
        for key, (path, parser) in _NUMERIC_OVERRIDES.items():
            raw = self._config.get(key)
            if raw is None or not raw.strip():
                continue
            try:
                value = parser(raw.strip())
            except ValueError as exc:
                raise ValueError(f"{key} must be a number, got {raw!r}") from exc
            target = data
            for part in path[:-1]:
                target = target[part]
            target[path[-1]] = value

        clustering = self._config.get("DEDUP_CLUSTERING_ENABLED")
        if clustering is not None and clustering.strip():
            data["cluster"]["enabled"] = _parse_bool("DEDUP_CLUSTERING_ENABLED", clustering)

        return DedupConfig.model_validate(data)


def _parse_bool(key: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")
