"""Lifespan management for bridge startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from .config import load_config
from .config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from .config_schema import UnifiedConfig, build_config
from .core.async_utils import init_semaphore
from .core.client import TodoistAdapter, TodoistClient
from .exceptions import ConfigError
from .logger import setup_logging
from .storage.kv import JsonFileKVStore, KVStore, MemoryKVStore
from .sync.adapters import TaskAdapter
from .sync.engine import SyncOrchestrator

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback."""
    print(msg, file=sys.stderr, flush=True)


def yaml_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the YAML sections into ``load_config()`` fallbacks.

    ``None`` values are dropped so they never mask a built-in default.
    """
    values: dict[str, Any] = {
        "store_path": unified.store.path,
        "api_token": unified.todoist.api_token,
        "api_url": unified.todoist.api_url,
        "max_parallel_requests": unified.todoist.max_parallel_requests,
    }
    values.update(unified.sync.model_dump(mode="json"))
    return {k: v for k, v in values.items() if v is not None}


@asynccontextmanager
async def bridge_lifespan(
    system_a: TaskAdapter,
    config_overrides: dict[str, Any] | None = None,
    system_b: TaskAdapter | None = None,
    log_mode: str | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage bridge startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): explicit > env vars > .env > YAML > defaults
    - Open the backing store (JSON file, or in-memory when no path is set)
    - Create the hosted-service adapter unless one is supplied

    Args:
        system_a: Adapter for the desktop task application.
        config_overrides: Optional dict with explicit values (store_path,
            api_token, api_url, conflict_strategy, debug).
        system_b: Adapter for the hosted service; built from the API token
            when omitted.
        log_mode: "cli" or "service" to configure logging from the
            `logging` config section; `None` leaves logging untouched.

    Yields:
        Dict with 'orchestrator' and 'config' keys.

    Raises:
        RuntimeError: If configuration is invalid.
    """
    logger.info("Task bridge starting...")

    # Load configuration with unified precedence:
    # explicit args > env vars (.env loaded first) > YAML config > defaults
    try:
        # 1. Load .env early (before YAML, so ${VAR} interpolation can use .env values)
        load_dotenv()

        # 2. Load YAML config if present, flatten sections as fallbacks
        fallbacks: dict[str, Any] | None = None
        unified = UnifiedConfig()
        config_files = discover_config_files()
        sources = []

        if config_files:
            unified = build_config(load_hierarchical_config())
            fallbacks = yaml_fallbacks(unified)
            sources.append(f"config file: {config_files[0]}")

        # 3. Single call to load_config with all sources merged
        overrides = config_overrides or {}
        config = load_config(
            store_path=overrides.get("store_path"),
            api_token=overrides.get("api_token"),
            api_url=overrides.get("api_url"),
            conflict_strategy=overrides.get("conflict_strategy"),
            debug=overrides.get("debug", False),
            yaml_fallbacks=fallbacks,
        )
        if system_b is None and not config.api_token:
            raise ConfigError(
                "API token not found. Set TODOIST_API_TOKEN environment variable "
                "or add 'todoist.api_token' to config.yml."
            )

        if overrides:
            sources.append("explicit arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        if log_mode is not None:
            setup_logging(
                mode=log_mode,
                debug=config.debug,
                log_file=unified.logging.file,
                level=unified.logging.level,
            )
        logger.info("Configuration loaded from: %s", source_desc)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        raise RuntimeError(f"Configuration error: {e}") from e

    kv: KVStore
    if config.store_path:
        kv = JsonFileKVStore(config.store_path)
        logger.info("Backing store: %s", config.store_path)
    else:
        kv = MemoryKVStore()
        logger.warning("No store path configured; sync state is kept in memory")

    if system_b is None:
        system_b = TodoistAdapter(TodoistClient(config.api_token, config.api_url))
    init_semaphore(config.max_parallel_requests)

    orchestrator = SyncOrchestrator(
        system_a, system_b, kv, settings=config.sync_settings()
    )
    logger.info("Task bridge ready")

    yield {"orchestrator": orchestrator, "config": config}

    logger.info("Task bridge shutting down")
