"""
YAML config discovery and merging.

A global file (``~/.config/taskbridge/config.yml``) usually carries the
Todoist token and the store path; a project file (``.taskbridge/config.yml``)
narrows the ``sync`` filters.  Files are merged section by section, so a
project file that sets one ``sync`` key keeps the rest of the global
``sync`` section.

Strings may reference the environment as ``${VAR}`` or ``${VAR:-default}``,
and any value may be pulled from another file with ``!include``.

Usage:
    from taskbridge.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TASKBRIDGE_CONFIG"
PROJECT_DIR = ".taskbridge"

# ---------------------------------------------------------------------------
# ${VAR} substitution
# ---------------------------------------------------------------------------

_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references in *value*.

    An unset or empty variable expands to its default, or to ``""`` when
    there is none.  An unterminated ``${`` is left as written.
    """

    def _expand(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        return os.environ.get(name) or (default or "")

    return _ENV_REF.sub(_expand, value)


def _interpolate_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {key: _interpolate_recursive(val) for key, val in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class _IncludeLoader(yaml.SafeLoader):
    """SafeLoader with ``!include``; ``yaml.SafeLoader`` itself is untouched."""

    include_chain: tuple[Path, ...] = ()


def _construct_include(loader: _IncludeLoader, node: yaml.ScalarNode) -> Any:
    parent = Path(loader.name).resolve()
    target = Path(loader.construct_scalar(node)).expanduser()
    if not target.is_absolute():
        target = parent.parent / target
    target = target.resolve()

    if target in loader.include_chain:
        chain = " -> ".join(str(p) for p in (*loader.include_chain, target))
        raise ValueError(f"Circular include detected: {chain}")
    if not target.is_file():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {parent})"
        )
    return _load_yaml_with_includes(target, _chain=(*loader.include_chain, target))


_IncludeLoader.add_constructor("!include", _construct_include)


def _load_yaml_with_includes(
    path: Path, *, _chain: tuple[Path, ...] | None = None
) -> Any:
    """Parse one YAML file, following ``!include`` references."""
    path = Path(path).resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = _IncludeLoader(fh)
        loader.include_chain = _chain if _chain is not None else (path,)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first.

    1. ``$TASKBRIDGE_CONFIG``
    2. ``./.taskbridge/config.yml``
    3. ``./.taskbridge/config.yaml``
    4. ``~/.config/taskbridge/config.yml``
    """
    candidates: list[Path] = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / PROJECT_DIR
    candidates += [
        project / "config.yml",
        project / "config.yaml",
        Path.home() / ".config" / "taskbridge" / "config.yml",
    ]
    return [path for path in candidates if path.exists()]


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay *override* on *base*.

    Mapping sections (``todoist``, ``store``, ``sync``, ``logging``) merge
    key by key.  Any other value, lists included, is replaced whole.
    """
    merged = dict(base)
    for section, value in override.items():
        current = merged.get(section)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[section] = {**current, **value}
        else:
            merged[section] = value
    return merged


def load_hierarchical_config() -> dict[str, Any]:
    """Merge every discovered config file and expand env references.

    Returns ``{}`` when no file exists.  Parse errors propagate so a broken
    file stops startup instead of silently falling back to defaults.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except (yaml.YAMLError, OSError, ValueError):
            logger.error("Failed to load config file %s", path)
            raise

        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Config file %s has a %s at the top level, skipping",
                path,
                type(data).__name__,
            )
            continue
        merged = merge_sections(merged, data)

    return _interpolate_recursive(merged)
