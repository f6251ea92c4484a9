"""YAML configuration loading.

Every ``from_yaml()`` factory in the package goes through
[load_yaml()][nostrsync.core.yaml.load_yaml], which uses ``yaml.safe_load``
so configuration files can never instantiate arbitrary Python objects.

See Also:
    [LocalCacheStore.from_yaml()][nostrsync.core.store.LocalCacheStore.from_yaml]
    [BaseService.from_yaml()][nostrsync.core.base_service.BaseService.from_yaml]
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


def load_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML mapping from *config_path*.

    Args:
        config_path: File to read.

    Returns:
        The parsed mapping; ``{}`` for an empty file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the YAML is invalid or the top level is not
            a mapping.

    Note:
        Only syntax and top-level shape are checked here. Field validation
        is left to the Pydantic model the caller builds from the result.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with path.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {config_path} must be a mapping")
    return data
