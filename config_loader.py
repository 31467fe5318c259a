#!/usr/bin/env python3
"""
Artwork Curation Pipeline - Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Provides type-safe access to configuration values.
"""

import os
import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from access_token import AuthFailurePolicy
from candidate_sources import ContentRating, RANKING_PAGE_CAP
from extension_resolver import DEFAULT_EXTENSIONS
from filters import AspectRatioMode, FilterCriteria

logger = logging.getLogger("artwork_curator")


@dataclass
class SourceConfig:
    """Catalog source configuration."""
    mode: str = "daily"
    user_id: str = ""
    artist_id: str = ""
    tag: str = ""
    page_cap: int = RANKING_PAGE_CAP
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    timeout_sec: float = 30.0
    debug_dump: bool = False
    network_bypass: bool = False


@dataclass
class StorageConfig:
    """Where artworks and bookkeeping files live."""
    download_dir: Path = Path("./artwork")
    manifests_dir: Path = Path("./manifests")
    gallery_file: str = "gallery.json"
    dedup_index_path: Path = Path("./manifests/dedup_index.json.gz")
    lock_file: Path = Path("./pipeline_state/.curator.lock")
    auto_crop: bool = False


@dataclass
class RetryConfig:
    """Run-level retry configuration."""
    max_attempts: int = 3
    delay_increment_sec: float = 300.0


@dataclass
class AuthConfig:
    """OAuth configuration for the authenticated feeds."""
    token_cache_path: Path = Path("./pipeline_state/token.json")
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    failure_policy: AuthFailurePolicy = AuthFailurePolicy.CHANGE_TO_RANKING


@dataclass
class RunConfig:
    """Per-run settings."""
    count: int = 2
    clear_existing: bool = False
    show_progress: bool = True
    download_timeout_sec: float = 120.0


RATING_NAMES = {
    "safe": ContentRating.SAFE,
    "suggestive": ContentRating.SUGGESTIVE,
    "explicit": ContentRating.EXPLICIT,
}


class ConfigLoader:
    """
    Load configuration from YAML with environment variable overrides.

    Environment variables use the format: CURATOR_<SECTION>_<KEY>
    Examples:
        CURATOR_SOURCE_MODE=weekly
        CURATOR_FILTERS_MIN_VIEWS=4
        CURATOR_RUN_COUNT=5
    """

    ENV_PREFIX = "CURATOR_"

    def __init__(self, config_path: Path = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to config.yaml file. Defaults to ./config.yaml
        """
        self.config_path = config_path or Path("./config.yaml")
        self.raw_config: dict = {}
        self._load()

    def _load(self) -> None:
        """Load configuration from YAML file."""
        if self.config_path.exists():
            with open(self.config_path) as f:
                self.raw_config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {self.config_path}")
        else:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            self.raw_config = {}

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Expand environment variable references in values
        self.raw_config = self._expand_env_vars()

    def _apply_env_overrides(self) -> None:
        """Override configuration values from CURATOR_* environment variables."""
        for key, value in os.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue

            # Parse key: CURATOR_SECTION_KEY -> section.key
            parts = key[len(self.ENV_PREFIX):].lower().split("_")

            if len(parts) >= 2:
                section = parts[0]
                config_key = "_".join(parts[1:])

                typed_value = self._parse_value(value)

                if section not in self.raw_config:
                    self.raw_config[section] = {}

                if isinstance(self.raw_config[section], dict):
                    self.raw_config[section][config_key] = typed_value
                    logger.debug(f"Config override: {section}.{config_key} = {typed_value}")

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate Python type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        # Comma separated lists, e.g. CURATOR_FILTERS_ALLOWED_RATINGS=safe,suggestive
        if "," in value:
            return [item.strip() for item in value.split(",") if item.strip()]

        return value

    def _expand_env_vars(self, obj: Any = None) -> Any:
        """Expand ${VAR} references in configuration values."""
        if obj is None:
            obj = self.raw_config

        if isinstance(obj, str):
            pattern = r'\$\{([^}]+)\}'
            for var_name in re.findall(pattern, obj):
                obj = obj.replace(f"${{{var_name}}}", os.environ.get(var_name, ""))
            return obj
        elif isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        return obj

    def get(self, path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Examples:
            config.get('source.mode')        # 'daily'
            config.get('filters.min_views')  # 0
        """
        value = self.raw_config

        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def _section(self, name: str) -> dict:
        section = self.raw_config.get(name) or {}
        return section if isinstance(section, dict) else {}

    def get_filter_criteria(self) -> FilterCriteria:
        """Get filter configuration as FilterCriteria."""
        filters = self._section("filters")

        rating_names = filters.get("allowed_ratings", ["safe"])
        if isinstance(rating_names, str):
            rating_names = [rating_names]
        ratings = set()
        for name in rating_names:
            rating = RATING_NAMES.get(str(name).lower())
            if rating is None:
                raise ValueError(f"Unknown content rating in config: {name}")
            ratings.add(rating)

        return FilterCriteria(
            allow_manga=bool(filters.get("allow_manga", False)),
            allowed_ratings=frozenset(ratings),
            allow_restricted=bool(filters.get("allow_restricted", False)),
            aspect_ratio_mode=AspectRatioMode(str(filters.get("aspect_ratio", "any")).lower()),
            min_views=int(filters.get("min_views", 0)),
            min_width=int(filters.get("min_width", 0)),
            min_height=int(filters.get("min_height", 0)),
            max_file_size_mb=int(filters.get("max_file_size_mb", 0)),
        )

    def get_source_config(self) -> SourceConfig:
        """Get catalog source configuration as dataclass."""
        source = self._section("source")
        extensions = source.get("extensions", list(DEFAULT_EXTENSIONS))
        if isinstance(extensions, str):
            extensions = [extensions]

        return SourceConfig(
            mode=str(source.get("mode", "daily")),
            user_id=str(source.get("user_id", "")),
            artist_id=str(source.get("artist_id", "")),
            tag=str(source.get("tag", "")),
            page_cap=int(source.get("page_cap", RANKING_PAGE_CAP)),
            extensions=tuple(e if e.startswith(".") else f".{e}" for e in extensions),
            timeout_sec=float(source.get("timeout_sec", 30.0)),
            debug_dump=bool(source.get("debug_dump", False)),
            network_bypass=bool(source.get("network_bypass", False)),
        )

    def get_storage_config(self) -> StorageConfig:
        """Get storage configuration as dataclass."""
        storage = self._section("storage")
        manifests_dir = Path(storage.get("manifests_dir", "./manifests"))

        return StorageConfig(
            download_dir=Path(storage.get("download_dir", "./artwork")),
            manifests_dir=manifests_dir,
            gallery_file=storage.get("gallery_file", "gallery.json"),
            dedup_index_path=Path(storage.get("dedup_index_path", manifests_dir / "dedup_index.json.gz")),
            lock_file=Path(storage.get("lock_file", "./pipeline_state/.curator.lock")),
            auto_crop=bool(storage.get("auto_crop", False)),
        )

    def get_retry_config(self) -> RetryConfig:
        """Get retry configuration as dataclass."""
        retry = self._section("retry")

        return RetryConfig(
            max_attempts=int(retry.get("max_attempts", 3)),
            delay_increment_sec=float(retry.get("delay_increment_sec", 300.0)),
        )

    def get_auth_config(self) -> AuthConfig:
        """Get OAuth configuration as dataclass."""
        auth = self._section("auth")

        return AuthConfig(
            token_cache_path=Path(auth.get("token_cache_path", "./pipeline_state/token.json")),
            client_id=str(auth.get("client_id", "")),
            client_secret=str(auth.get("client_secret", "")),
            refresh_token=str(auth.get("refresh_token", "")),
            failure_policy=AuthFailurePolicy(auth.get("failure_policy", "change_to_ranking")),
        )

    def get_run_config(self) -> RunConfig:
        """Get per-run settings as dataclass."""
        run = self._section("run")

        return RunConfig(
            count=int(run.get("count", 2)),
            clear_existing=bool(run.get("clear_existing", False)),
            show_progress=bool(run.get("show_progress", True)),
            download_timeout_sec=float(run.get("download_timeout_sec", 120.0)),
        )


def load_config(config_path: Path = None) -> ConfigLoader:
    """Load configuration from file."""
    return ConfigLoader(config_path)
