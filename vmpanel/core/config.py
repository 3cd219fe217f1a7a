import os
import yaml
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Tuple

# --- Base app settings ---
CONFIG_FILE = os.getenv("CONFIG_FILE", "config.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
APP_NAME = os.getenv("APP_NAME", "VM Panel API")
APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
SESSION_SECRET = os.getenv("SESSION_SECRET", "change-me")

# Initialize logger early (before setup_logging is called)
logger = logging.getLogger(APP_NAME)
if not logger.handlers:
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s: %(message)s")


def load_yaml_config() -> dict:
    """Load global YAML configuration (app + vm host settings)."""
    try:
        with open(CONFIG_FILE, "r") as f:
            data = yaml.safe_load(f) or {}
            logger.info("Loaded configuration from %s", CONFIG_FILE)
            return data
    except FileNotFoundError:
        logger.warning("Configuration file not found: %s", CONFIG_FILE)
        return {}
    except yaml.YAMLError as e:
        logger.error("Error parsing YAML config (%s): %s", CONFIG_FILE, e)
        return {}


# --- Load YAML and derive app settings ---
CONFIG_YAML = load_yaml_config()

# --- Extract CORS settings ---
CORS_CONFIG = CONFIG_YAML.get("cors", {})
CORS_ORIGINS = CORS_CONFIG.get("allow_origins", [])
CORS_ALLOW_CREDENTIALS = CORS_CONFIG.get("allow_credentials", True)
CORS_ALLOW_METHODS = CORS_CONFIG.get("allow_methods", ["*"])
CORS_ALLOW_HEADERS = CORS_CONFIG.get("allow_headers", ["*"])

# --- VM host settings (paths, port ranges, timings) ---
VM_CONFIG: Dict[str, Any] = CONFIG_YAML.get("vms", {}) or {}


@dataclass(frozen=True)
class VMSettings:
    """Host paths and tunables used by the VM lifecycle code."""

    vm_dir: str = "/opt/serveros/vms"
    iso_dir: str = "/opt/serveros/storage/isos"
    log_dir: str = "/opt/serveros/logs/vms"
    backup_dir: str = "/opt/serveros/vms/backups"
    template_dir: str = "/opt/serveros/vms/templates"
    qmp_dir: str = "/opt/serveros/run/qmp"
    run_dir: str = "/opt/serveros/run/vms"
    ovmf_code: str = "/usr/share/OVMF/OVMF_CODE.fd"
    ovmf_vars: str = "/usr/share/OVMF/OVMF_VARS.fd"
    ovmf_secure_code: str = "/usr/share/OVMF/OVMF_CODE.secboot.fd"
    ovmf_secure_vars: str = "/usr/share/OVMF/OVMF_VARS.ms.fd"
    qemu_binary: str = "qemu-system-x86_64"
    qemu_img_binary: str = "qemu-img"
    hugepages_path: str = "/dev/hugepages"
    console_host: str = "localhost"
    spice_port_range: Tuple[int, int] = (5900, 5949)
    vnc_port_range: Tuple[int, int] = (5950, 6049)
    stop_grace_seconds: float = 2.0
    restart_delay_seconds: float = 2.0
    console_read_timeout: float = 30.0
    pidfile_wait_seconds: float = 5.0
    user_forward_port: int = 2222
    tap_name_length: int = 10


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "t", "yes", "y", "on"}
    if isinstance(default, tuple):
        if isinstance(value, str):
            value = value.replace("-", ",").split(",")
        start, end = (int(part) for part in list(value)[:2])
        return (start, end)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, int):
        return int(value)
    return str(value)


def build_vm_settings(overrides: Dict[str, Any] | None = None) -> VMSettings:
    """Merge defaults, the ``vms:`` YAML section, env vars and explicit overrides."""

    defaults = VMSettings()
    overrides = overrides or {}
    values: Dict[str, Any] = {}
    for name in defaults.__dataclass_fields__:
        default = getattr(defaults, name)
        raw = VM_CONFIG.get(name)
        env_value = os.getenv(f"VMPANEL_{name.upper()}")
        if env_value is not None:
            raw = env_value
        if name in overrides:
            raw = overrides[name]
        if raw is None:
            continue
        try:
            values[name] = _coerce(raw, default)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid value for vms.%s: %r", name, raw)
    return VMSettings(**values)


@lru_cache
def get_vm_settings() -> VMSettings:
    """Return cached VM host settings for reuse across the app."""

    return build_vm_settings()


# Confirm loaded config summary
logger.debug(
    "CORS_ORIGINS=%s, allow_credentials=%s, allow_methods=%s",
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
)
