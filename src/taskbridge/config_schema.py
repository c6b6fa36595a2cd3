"""Unified configuration schema for taskbridge.

Defines Pydantic models for the YAML config structure with dedicated
sections for the backing store, the hosted task service, sync behaviour
and logging.

Usage:
    from taskbridge.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .core.client import DEFAULT_API_URL
from .sync.models import ConflictStrategy

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_TAGS = ["synced-to-things", "synced-from-things"]


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Backing store settings.

    Attributes:
        path: JSON store file.  ``None`` keeps state in memory only.
    """

    path: str | None = Field(default=None, description="JSON store file")

    model_config = {"frozen": True}


class TodoistConfig(BaseModel):
    """Hosted task service connection settings.

    All fields are optional to support zero-config: env vars can supply
    them at runtime instead.
    """

    api_token: str | None = Field(default=None, description="API token")
    api_url: str = Field(default=DEFAULT_API_URL, description="REST base URL")
    max_parallel_requests: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum concurrent API requests (1-100)",
    )

    model_config = {"frozen": True}


class SyncSettings(BaseModel):
    """Sync behaviour and filtering consumed by the orchestrator.

    Attributes:
        conflict_strategy: Default resolution strategy.
        auto_resolve_conflicts: Apply resolutions automatically; when
            off, every conflict is stored for manual handling.
        enabled_projects: Only sync these projects (``None`` = all).
        excluded_projects: Never sync these projects.
        enabled_tags: Only sync tasks carrying one of these tags
            (``None`` = all).
        excluded_tags: Tags stripped before syncing.
        lock_timeout: Seconds before a held sync lock is stale.
        idempotency_ttl: Seconds a cached request result is kept.
    """

    conflict_strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS
    auto_resolve_conflicts: bool = True
    enabled_projects: list[str] | None = None
    excluded_projects: list[str] = Field(default_factory=list)
    enabled_tags: list[str] | None = None
    excluded_tags: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_TAGS)
    )
    lock_timeout: float = Field(default=30.0, gt=0)
    idempotency_ttl: int = Field(default=86400, ge=1)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    todoist: TodoistConfig = Field(default_factory=TodoistConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
