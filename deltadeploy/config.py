"""Client configuration: API URL, delta defaults, work directory for delta archives."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cloudbees.com"

# Closed set of archive kinds the deploy call accepts
ARCHIVE_KINDS = ("war", "ear", "jar", "zip")
# EAR containers are not diffed: the remote cannot merge a partial ear
DEFAULT_DELTA_ARCHIVE_KINDS = ("war", "jar", "zip")


def _config_dir() -> Path:
    """Platform-specific config directory (no admin). DELTADEPLOY_CONFIG_DIR overrides."""
    override = os.environ.get("DELTADEPLOY_CONFIG_DIR", "").strip()
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "DeltaDeploy"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "deltadeploy"
    return Path.home() / ".config" / "deltadeploy"


def get_config_path() -> Path:
    """Path to config.json (directory is created if missing)."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"


def get_log_path() -> Path:
    return get_config_path().parent / "deltadeploy.log"


def _load() -> Dict[str, Any]:
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Ignoring unreadable config %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _save(key: str, value: Any) -> None:
    """Persist one key; others are preserved."""
    data = _load()
    data[key] = value
    get_config_path().write_text(json.dumps(data, indent=2), encoding="utf-8")


def get_api_url() -> str:
    """
    Return the API base URL. Prefer env DELTADEPLOY_API_URL if set, else the
    configured api_url, else the default endpoint.
    """
    override = os.environ.get("DELTADEPLOY_API_URL", "").strip()
    if override:
        log.debug("Using API URL from DELTADEPLOY_API_URL: %s", override.rstrip("/"))
        return override.rstrip("/")
    url = (_load().get("api_url") or "").strip()
    return (url or DEFAULT_API_URL).rstrip("/")


def set_api_url(url: str) -> None:
    _save("api_url", (url or "").strip())


def get_delta_enabled() -> bool:
    """Whether deployments upload delta archives by default. Default is True."""
    value = _load().get("delta_enabled", True)
    return value if isinstance(value, bool) else True


def set_delta_enabled(enabled: bool) -> None:
    _save("delta_enabled", bool(enabled))


def get_delta_archive_kinds() -> List[str]:
    """Archive kinds for which delta diffing is attempted."""
    kinds = _load().get("delta_archive_kinds")
    if not isinstance(kinds, list):
        return list(DEFAULT_DELTA_ARCHIVE_KINDS)
    return [k for k in (str(k).lower() for k in kinds) if k in ARCHIVE_KINDS]


def set_delta_archive_kinds(kinds: List[str]) -> None:
    """Persist the delta-capable archive kinds. Unknown kinds raise ValueError."""
    normalized = [k.strip().lower() for k in kinds if k.strip()]
    unknown = [k for k in normalized if k not in ARCHIVE_KINDS]
    if unknown:
        raise ValueError(f"Unknown archive kind(s): {', '.join(unknown)}")
    _save("delta_archive_kinds", normalized)


def get_work_dir() -> Optional[Path]:
    """Directory for delta archives, or None to write them next to the source archive."""
    raw = _load().get("work_dir")
    return Path(raw) if raw else None


def set_work_dir(folder: Optional[Path]) -> None:
    _save("work_dir", str(Path(folder).resolve()) if folder else None)
