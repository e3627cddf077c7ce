"""Environment variable helpers for configuration loading.

YAML settings may reference ``${VAR}``, ``${VAR:-fallback}`` or ``$VAR``;
.env files are loaded with python-dotenv so such references can resolve
from them.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_settings", "load_env_file"]

_REFERENCE = re.compile(
    r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load a .env file into ``os.environ``.

    With no ``path`` python-dotenv looks in the working directory and its
    parents. Returns True when a file was loaded.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Substitute environment references in ``value``.

    An unset variable without a fallback stays as written, or raises
    KeyError when ``strict`` is set.
    """

    def substitute(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        if name in os.environ:
            return os.environ[name]
        if match.group("fallback") is not None:
            return match.group("fallback")
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return match.group(0)

    return _REFERENCE.sub(substitute, value)


def _expand(value: Any, strict: bool) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, Mapping):
        return {key: _expand(item, strict) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_expand(item, strict) for item in value]
    return value


def expand_settings(settings: Mapping[str, Any], *, strict: bool = False) -> Dict[str, Any]:
    """Expand references in every string nested anywhere in ``settings``."""
    return _expand(settings, strict)
