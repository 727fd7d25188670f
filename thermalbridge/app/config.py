from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple
import os
import json
import pathlib
import logging

logger = logging.getLogger(__name__)

APP_DIR = "thermalbridge"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _parse_env_line(line: str) -> Optional[Tuple[str, str]]:
    """KEY=VALUE or export KEY=VALUE; blank lines and # comments yield None."""
    stripped = line.strip()
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()
    if not stripped or stripped.startswith("#"):
        return None
    key, sep, value = stripped.partition("=")
    if not sep or not key.strip():
        return None
    return key.strip(), _unquote(value.strip())


def read_env_file(path: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            parsed = _parse_env_line(line)
            if parsed is not None:
                pairs[parsed[0]] = parsed[1]
    return pairs


def _env_file_candidates() -> List[str]:
    project_root = pathlib.Path(__file__).resolve().parents[2]
    cwd = pathlib.Path.cwd()
    candidates = [os.getenv("TB_ENV_PATH", "").strip()]
    for base in (project_root, cwd):
        candidates.append(str(base / ".env"))
        candidates.append(str(base / ".env.local"))
    if os.name == "nt":
        for var in ("ProgramData", "APPDATA"):
            root = os.getenv(var, "")
            if root:
                candidates.append(os.path.join(root, APP_DIR, "env"))
    else:
        candidates.append(f"/etc/{APP_DIR}/env")
    return [c for c in candidates if c]


def load_env_from_files(override: bool = False) -> None:
    """Copy values from the first-found .env style files into os.environ.

    Variables that are already set win unless ``override`` is true.
    """
    for path in _env_file_candidates():
        if not os.path.isfile(path):
            continue
        try:
            pairs = read_env_file(path)
        except OSError as e:
            logger.debug(f"Skipping env file {path}: {e}")
            continue
        applied = [k for k, v in pairs.items() if override or not os.getenv(k)]
        for key in applied:
            os.environ[key] = pairs[key]
        if applied:
            logger.info(f"Loaded {len(applied)} setting(s) from {path}")


def _readable(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path) and os.access(path, os.R_OK)


def get_config_path() -> str:
    """TB_CONFIG_PATH, else the per-user file, else the system-wide one."""
    explicit = os.getenv("TB_CONFIG_PATH", "").strip()
    if explicit:
        return os.path.expanduser(explicit)
    config_home = os.getenv("XDG_CONFIG_HOME", "").strip() or "~/.config"
    user_cfg = os.path.join(os.path.expanduser(config_home), APP_DIR, "config.json")
    if os.name == "nt":
        program_data = os.getenv("ProgramData")
        sys_cfg = os.path.join(program_data, APP_DIR, "config.json") if program_data else None
    else:
        sys_cfg = f"/etc/{APP_DIR}/config.json"
    for candidate in (user_cfg, sys_cfg):
        if _readable(candidate):
            return candidate
    return user_cfg


def _read_json_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(k, str)}


def parse_usb_id(value: Any) -> Optional[int]:
    """Accepts ints, decimal strings and 0x-prefixed hex strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    v = value.strip().lower()
    try:
        if v.startswith("0x"):
            return int(v, 16)
        return int(v)
    except ValueError:
        return None


@dataclass
class BridgeSettings:
    vendor_id: Optional[int] = None
    product_id: int = 0
    max_attempts: int = 3
    retry_base_delay_ms: int = 500
    permission_timeout: float = 30.0
    hotplug_interval: float = 2.0
    host: str = "127.0.0.1"
    port: int = 54874
    api_token: str = ""
    log_level: str = "INFO"

    @property
    def retry_base_delay(self) -> float:
        return self.retry_base_delay_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["api_token"] = "***" if self.api_token else ""
        return data


# config file key -> (env var, field, parser)
_SETTINGS_KEYS = (
    ("TB_USB_VID", "vendor_id", parse_usb_id),
    ("TB_USB_PID", "product_id", parse_usb_id),
    ("TB_MAX_ATTEMPTS", "max_attempts", int),
    ("TB_RETRY_BASE_DELAY_MS", "retry_base_delay_ms", int),
    ("TB_PERMISSION_TIMEOUT", "permission_timeout", float),
    ("TB_HOTPLUG_INTERVAL", "hotplug_interval", float),
    ("TB_HOST", "host", str),
    ("TB_PORT", "port", int),
    ("TB_API_TOKEN", "api_token", str),
    ("TB_LOG_LEVEL", "log_level", str),
)


def load_settings(path: Optional[str] = None) -> BridgeSettings:
    """Build settings from defaults, then the JSON file, then the environment."""
    load_env_from_files(override=False)
    file_cfg = _read_json_file(path or get_config_path())

    settings = BridgeSettings()
    for key, field_name, parse in _SETTINGS_KEYS:
        for source, raw in (("file", file_cfg.get(key)), ("env", os.getenv(key))):
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                continue
            try:
                value = parse(raw.strip() if isinstance(raw, str) else raw)
            except (TypeError, ValueError):
                logger.warning(f"Invalid {key} in {source}: {raw!r}; keeping {getattr(settings, field_name)!r}")
                continue
            if value is None:
                logger.warning(f"Invalid {key} in {source}: {raw!r}")
                continue
            setattr(settings, field_name, value)

    if settings.max_attempts < 1:
        logger.warning(f"TB_MAX_ATTEMPTS must be positive, got {settings.max_attempts}; using 1")
        settings.max_attempts = 1
    if settings.retry_base_delay_ms < 0:
        settings.retry_base_delay_ms = 0
    settings.log_level = settings.log_level.upper()
    return settings
