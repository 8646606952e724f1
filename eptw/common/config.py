"""YAML configuration files for the EPTW core.

Values may reference the environment as ``${NAME}`` or ``${NAME:-default}``.
A reference to an unset variable without a default is left as written.
Typed parsing lives with the component that owns the file.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Union

import yaml

ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML mapping and expand environment references in its strings.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
        TypeError: If the document root is not a mapping
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with path.open("r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}

    if not isinstance(document, dict):
        raise TypeError(f"Configuration root must be a mapping, got {type(document).__name__}")
    return expand_env(document)


def _substitute(match: "re.Match") -> str:
    name, default = match.group(1), match.group(2)
    if name in os.environ:
        return os.environ[name]
    return default if default is not None else match.group(0)


def expand_env(value: Any) -> Any:
    """Expand ``${NAME}`` references in every string nested in ``value``."""
    if isinstance(value, str):
        return ENV_REFERENCE.sub(_substitute, value)
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    return value
