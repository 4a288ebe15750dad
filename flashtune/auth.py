"""
FlashTune - API Key Auth

Requests identify themselves with an ``X-API-Key`` header.  Valid keys come
from a YAML token file::

    version: 1
    token_list:
      - name: phone
        token: "s3cret"
        enabled: true

In ``yaml-with-legacy-fallback`` mode the single ``API_KEY`` environment
variable is accepted as well.  When neither a token file nor a legacy key is
configured, authentication is disabled (a warning is logged at startup).

Usage:
    - Call ``load_token_config()`` once during startup.
    - ``auth_required(request)`` tells the middleware whether to reject.
"""

from pathlib import Path
from typing import Any, Dict, List

import yaml
from fastapi import Request
from loguru import logger

from flashtune import config
from flashtune.exceptions import TokenConfigError

AUTH_MODES = ("yaml-only", "yaml-with-legacy-fallback")

# ---------------------------------------------------------------------------
# Loaded state
# ---------------------------------------------------------------------------
_state: Dict[str, Any] = {
    "mode": "yaml-with-legacy-fallback",
    "loaded": False,
    "tokens": set(),
}


def reset_token_state() -> None:
    """Forget any loaded tokens (used by tests and before reloading)."""
    _state["mode"] = "yaml-with-legacy-fallback"
    _state["loaded"] = False
    _state["tokens"] = set()


def normalize_auth_mode(value: str | None) -> str:
    if not value or not value.strip():
        return "yaml-only"
    value = value.strip()
    if value not in AUTH_MODES:
        raise TokenConfigError(
            f'TOKEN_AUTH_MODE must be either "yaml-only" or '
            f'"yaml-with-legacy-fallback" (received "{value}")'
        )
    return value


# ---------------------------------------------------------------------------
# Token file parsing
# ---------------------------------------------------------------------------
def _string_field(entry: Dict[str, Any], field: str, index: int) -> str:
    value = entry.get(field)
    if not isinstance(value, str) or not value.strip():
        raise TokenConfigError(
            f"token_list[{index}].{field} is required and must be a non-empty string"
        )
    return value.strip()


def validate_token_config(raw: Any) -> List[Dict[str, Any]]:
    """Validate a parsed token file and return its entries."""
    if not isinstance(raw, dict):
        raise TokenConfigError("config root must be a YAML mapping")
    if raw.get("version") != 1:
        raise TokenConfigError("version must be 1")

    token_list = raw.get("token_list")
    if not isinstance(token_list, list) or not token_list:
        raise TokenConfigError("token_list must be a non-empty list")

    seen: set[str] = set()
    entries = []
    for index, item in enumerate(token_list):
        if not isinstance(item, dict):
            raise TokenConfigError(f"token_list[{index}] must be a mapping")
        name = _string_field(item, "name", index)
        token = _string_field(item, "token", index)
        enabled = item.get("enabled")
        if not isinstance(enabled, bool):
            raise TokenConfigError(
                f"token_list[{index}].enabled is required and must be a boolean"
            )
        if token in seen:
            raise TokenConfigError(
                f"token_list contains duplicate token value at index {index}"
            )
        seen.add(token)
        entries.append({"name": name, "token": token, "enabled": enabled})
    return entries


def load_token_config(
    path: Path | None = None, mode: str | None = None
) -> List[Dict[str, Any]]:
    """
    Load the token file into module state.

    A missing file is not an error (no tokens).  A file that exists but is
    invalid raises ``TokenConfigError`` so the service refuses to start with
    a broken auth setup.
    """
    path = Path(path or config.TOKEN_CONFIG_PATH)
    reset_token_state()
    _state["mode"] = normalize_auth_mode(mode if mode is not None else config.TOKEN_AUTH_MODE)

    if not path.exists():
        logger.info("ℹ️  No token config at {}", path)
        return []

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        entries = validate_token_config(raw)
    except (OSError, yaml.YAMLError, TokenConfigError) as e:
        raise TokenConfigError(f"Auth token config error at {path}: {e}") from e

    _state["tokens"] = {e["token"] for e in entries if e["enabled"]}
    _state["loaded"] = True
    logger.info(
        "🔑 Loaded {} token(s) from {} ({} enabled)",
        len(entries),
        path,
        len(_state["tokens"]),
    )
    return entries


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------
def _legacy_key() -> str:
    if _state["mode"] != "yaml-with-legacy-fallback":
        return ""
    return config.API_KEY


def is_auth_enabled() -> bool:
    return bool(_state["loaded"] or _legacy_key())


def get_auth_readiness() -> Dict[str, Any]:
    return {
        "auth_config_loaded": _state["loaded"],
        "auth_mode": _state["mode"],
        "auth_enabled": is_auth_enabled(),
    }


def is_api_key_authorized(api_key: str | None) -> bool:
    if not api_key:
        return False
    if api_key in _state["tokens"]:
        return True
    legacy = _legacy_key()
    return bool(legacy) and api_key == legacy


PUBLIC_PATHS = {
    "/health",
    "/api/health",
}


def _is_public(path: str) -> bool:
    """Return True if the path does not require an API key."""
    return path in PUBLIC_PATHS or path in ("/favicon.ico", "/robots.txt")


def auth_required(request: Request) -> bool:
    """
    Return True if this request must be rejected with 401.

    Auth is disabled entirely when no tokens and no legacy key are configured.
    """
    if not is_auth_enabled():
        return False
    if _is_public(request.url.path):
        return False
    return not is_api_key_authorized(request.headers.get(config.API_KEY_HEADER))
