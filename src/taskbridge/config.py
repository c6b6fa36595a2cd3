"""Runtime configuration for the task bridge.

Reads store, destination and sync settings from explicit arguments,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    Explicit args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TASKBRIDGE_STORE_PATH: JSON store file (optional, default: in-memory)
    TODOIST_API_TOKEN: Hosted service API token
    TODOIST_API_URL: Hosted service REST base URL (optional)
    TASKBRIDGE_CONFLICT_STRATEGY: Default conflict strategy (optional, default: newest_wins)
    TASKBRIDGE_AUTO_RESOLVE: Apply conflict resolutions automatically (optional, default: true)
    TASKBRIDGE_LOCK_TIMEOUT: Seconds before a held lock is stale (optional, default: 30)
    TASKBRIDGE_IDEMPOTENCY_TTL: Seconds a request result is cached (optional, default: 86400)
    TASKBRIDGE_MAX_PARALLEL_REQUESTS: Max parallel API requests (optional, default: 5)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlparse

from .config_schema import DEFAULT_EXCLUDED_TAGS, SyncSettings
from .core.client import DEFAULT_API_URL
from .exceptions import ConfigError
from .sync.models import ConflictStrategy

logger = logging.getLogger(__name__)


@dataclass
class Config:
    store_path: str | None = None
    api_token: str | None = None
    api_url: str = DEFAULT_API_URL
    conflict_strategy: str = ConflictStrategy.NEWEST_WINS.value
    auto_resolve_conflicts: bool = True
    lock_timeout: float = 30.0
    idempotency_ttl: int = 86400
    max_parallel_requests: int = 5
    enabled_projects: list[str] | None = None
    excluded_projects: list[str] = field(default_factory=list)
    enabled_tags: list[str] | None = None
    excluded_tags: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_TAGS)
    )
    debug: bool = False

    def sync_settings(self) -> SyncSettings:
        """Build the ``SyncSettings`` consumed by the orchestrator."""
        return SyncSettings(
            conflict_strategy=self.conflict_strategy,
            auto_resolve_conflicts=self.auto_resolve_conflicts,
            enabled_projects=self.enabled_projects,
            excluded_projects=self.excluded_projects,
            enabled_tags=self.enabled_tags,
            excluded_tags=self.excluded_tags,
            lock_timeout=self.lock_timeout,
            idempotency_ttl=self.idempotency_ttl,
        )


def _overlap(enabled: list[str] | None, excluded: list[str]) -> list[str]:
    return sorted(set(enabled or []) & set(excluded))


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ConfigError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ConfigError: If the strategy is unknown, the API URL is malformed,
            a project or tag is both enabled and excluded, or a numeric
            value is out of range.
    """
    try:
        config.conflict_strategy = ConflictStrategy(config.conflict_strategy).value
    except ValueError:
        valid = ", ".join(s.value for s in ConflictStrategy)
        raise ConfigError(
            f"Invalid conflict strategy '{config.conflict_strategy}': "
            f"must be one of {valid}"
        ) from None

    config.api_url = config.api_url.strip()
    if not config.api_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )
    if not urlparse(config.api_url).hostname:
        raise ConfigError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )
    config.api_url = config.api_url.removesuffix("/")

    projects = _overlap(config.enabled_projects, config.excluded_projects)
    if projects:
        raise ConfigError(
            f"Projects cannot be both enabled and excluded: {', '.join(projects)}"
        )
    tags = _overlap(config.enabled_tags, config.excluded_tags)
    if tags:
        raise ConfigError(
            f"Tags cannot be both enabled and excluded: {', '.join(tags)}"
        )

    if config.lock_timeout <= 0:
        raise ConfigError(
            f"Invalid lock timeout '{config.lock_timeout}': must be positive"
        )
    if config.idempotency_ttl < 1:
        raise ConfigError(
            f"Invalid idempotency TTL '{config.idempotency_ttl}': must be at least 1"
        )
    if not (1 <= config.max_parallel_requests <= 100):
        raise ConfigError(
            f"Invalid max parallel requests '{config.max_parallel_requests}': "
            "must be a number between 1 and 100"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(key: str, cast: Callable[[str], Any]) -> Any:
    """Return a number from env var, or None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"Invalid {key} '{raw}': must be a number") from None


def load_config(
    store_path: str | None = None,
    api_token: str | None = None,
    api_url: str | None = None,
    conflict_strategy: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        explicit arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        store_path: Override JSON store path.
        api_token: Override hosted service API token.
        api_url: Override hosted service REST base URL.
        conflict_strategy: Override default conflict strategy.
        debug: Enable debug logging.
        yaml_fallbacks: Flat dict of values from the YAML config file
            (``store_path``, ``api_token``, ``api_url``,
            ``max_parallel_requests`` and the ``sync`` section keys).
            Used as fallback when explicit arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ConfigError: If a value is invalid after checking all sources.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: explicit > env > YAML > default ---

    final_store = store_path or os.getenv("TASKBRIDGE_STORE_PATH") or fb.get("store_path")
    final_token = api_token or os.getenv("TODOIST_API_TOKEN") or fb.get("api_token")
    final_url = (
        api_url or os.getenv("TODOIST_API_URL") or fb.get("api_url") or DEFAULT_API_URL
    )
    final_strategy = (
        conflict_strategy
        or os.getenv("TASKBRIDGE_CONFLICT_STRATEGY")
        or fb.get("conflict_strategy")
        or ConflictStrategy.NEWEST_WINS.value
    )
    if isinstance(final_strategy, ConflictStrategy):
        final_strategy = final_strategy.value

    # --- Boolean fields: env > YAML > default (debug: explicit first) ---

    env_auto = _get_bool_env("TASKBRIDGE_AUTO_RESOLVE")
    if env_auto is not None:
        final_auto = env_auto
    else:
        final_auto = bool(fb.get("auto_resolve_conflicts", True))

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("TASKBRIDGE_DEBUG")
        final_debug = env_debug if env_debug is not None else bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    final_lock_timeout = _get_number_env("TASKBRIDGE_LOCK_TIMEOUT", float)
    if final_lock_timeout is None:
        final_lock_timeout = float(fb.get("lock_timeout", 30.0))

    final_ttl = _get_number_env("TASKBRIDGE_IDEMPOTENCY_TTL", int)
    if final_ttl is None:
        final_ttl = int(fb.get("idempotency_ttl", 86400))

    final_max_parallel = _get_number_env("TASKBRIDGE_MAX_PARALLEL_REQUESTS", int)
    if final_max_parallel is None:
        final_max_parallel = int(fb.get("max_parallel_requests", 5))

    # --- Filters: YAML only ---

    config = Config(
        store_path=final_store.strip() if final_store else None,
        api_token=final_token.strip() if final_token else None,
        api_url=final_url,
        conflict_strategy=final_strategy,
        auto_resolve_conflicts=final_auto,
        lock_timeout=final_lock_timeout,
        idempotency_ttl=final_ttl,
        max_parallel_requests=final_max_parallel,
        enabled_projects=fb.get("enabled_projects"),
        excluded_projects=list(fb.get("excluded_projects") or []),
        enabled_tags=fb.get("enabled_tags"),
        excluded_tags=list(
            fb["excluded_tags"]
            if fb.get("excluded_tags") is not None
            else DEFAULT_EXCLUDED_TAGS
        ),
        debug=final_debug,
    )

    validate_config(config)

    return config
