"""Environment helpers for the liquidator (loads .env + typed accessors).

Secrets and endpoints live in the environment; tuning lives in liquidator.yaml.
Blank values count as unset everywhere.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv


# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _raw(name: str) -> str:
    return str(os.getenv(name) or "").strip()


def env_present(name: str) -> bool:
    return _raw(name) != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = _raw(name)
    return value if value else default


def env_int(name: str, default: int) -> int:
    value = _raw(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = _raw(name).lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def env_json(name: str, default: Any) -> Any:
    value = _raw(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def env_int_list(name: str) -> Optional[List[int]]:
    """Parse ``1,2,3`` or ``[1, 2, 3]`` (e.g. the encryption seed).

    None when the variable is unset or any element is not an integer.
    """
    value = _raw(name)
    if not value:
        return None
    if value.startswith("["):
        parts = env_json(name, None)
        if not isinstance(parts, list):
            return None
    else:
        parts = [p.strip() for p in value.split(",") if p.strip()]
    try:
        return [int(p) for p in parts] or None
    except (TypeError, ValueError):
        return None


_DEFAULT_ROOT = Path(__file__).resolve().parent
_ROOT_PATH = Path(env_str("LIQUIDATOR_ROOT", str(_DEFAULT_ROOT)) or str(_DEFAULT_ROOT)).expanduser()
if not _ROOT_PATH.is_absolute():
    _ROOT_PATH = (_DEFAULT_ROOT / _ROOT_PATH).resolve()

LIQUIDATOR_ROOT = str(_ROOT_PATH)
LIQUIDATOR_RUNTIME_DIR = env_str("LIQUIDATOR_RUNTIME_DIR", str(_ROOT_PATH / "state"))
LIQUIDATOR_CONFIG_FILE = env_str("LIQUIDATOR_CONFIG_FILE", str(_ROOT_PATH / "liquidator.yaml"))


def resolve_path(raw: Optional[str], default: str) -> str:
    """Resolve a configured path relative to LIQUIDATOR_ROOT."""
    value = str(raw or "").strip() or default
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = Path(LIQUIDATOR_ROOT) / path
    return str(path)
