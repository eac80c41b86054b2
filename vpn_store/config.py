"""Configuration loader for the VPN store bot.

Process settings (paths, polling, logging) come from environment variables
or a ``.env`` file. The store itself is configured through a JSON document
(``.vars.json``) that can be written through the setup page; until that
document exists and validates, the application runs in setup mode.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

REQUIRED_KEYS = ("BOT_TOKEN", "USER_ID", "GROUP_ID", "DATA_QRIS", "MERCHANT_ID", "SERVER_KEY")
DEFAULT_PORT = 50123
DEFAULT_MIN_DEPOSIT = 10000

CONFIG_EXAMPLE: Dict[str, Any] = {
    "BOT_TOKEN": "123456789:ABCdefGHIjklMNOpqrSTUvwxYZ",
    "USER_ID": [123456789],
    "GROUP_ID": "-1001234567890",
    "NAMA_STORE": "VPN STORE",
    "PORT": DEFAULT_PORT,
    "DATA_QRIS": "00020101021126670016COM.NOBUBANK.WWW...",
    "MERCHANT_ID": "YOUR_MERCHANT_ID",
    "SERVER_KEY": "YOUR_SERVER_KEY",
    "ADMIN_USERNAME": "admin",
    "PAKASIR_PROJECT": "",
    "PAKASIR_API_KEY": "",
    "MIN_DEPOSIT": DEFAULT_MIN_DEPOSIT,
}


@dataclass
class Settings:
    """Configuration values required by the application."""

    bot_token: str = ""
    admin_ids: List[int] = field(default_factory=list)
    group_id: str = ""
    store_name: str = "VPN STORE"
    port: int = DEFAULT_PORT
    data_qris: str = ""
    merchant_id: str = ""
    server_key: str = ""
    admin_username: str = ""
    pakasir_project: str = ""
    pakasir_api_key: str = ""
    min_deposit: int = DEFAULT_MIN_DEPOSIT
    database_path: str = "./data/botvpn.db"
    backup_dir: str = "./data/backups"
    upload_dir: str = "./data/uploaded_restore"
    vars_path: str = ".vars.json"
    poll_interval: float = 1.0
    provision_script_dir: str = "/usr/local/sbin/vpn-store"
    provision_timeout: float = 45.0
    workers: int = 8
    log_level: str = "INFO"
    setup_mode: bool = False


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_config(data: Any) -> Tuple[bool, List[str]]:
    """Check a configuration document.

    Parameters
    ----------
    data : dict
        Parsed JSON document

    Returns
    -------
    tuple
        (is_valid, list of error messages)
    """
    if not isinstance(data, dict):
        return False, ["Configuration must be a JSON object"]

    errors: List[str] = []
    for key in REQUIRED_KEYS:
        value = data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"{key} is required")

    user_id = data.get("USER_ID")
    if user_id is not None:
        if isinstance(user_id, list):
            if not user_id or not all(_is_int(item) for item in user_id):
                errors.append("USER_ID must be a number or a non-empty array of numbers")
        elif not _is_int(user_id):
            errors.append("USER_ID must be a number or a non-empty array of numbers")

    port = data.get("PORT")
    if port is not None and (not _is_int(port) or not 1 <= port <= 65535):
        errors.append("PORT must be a number between 1 and 65535")

    min_deposit = data.get("MIN_DEPOSIT")
    if min_deposit is not None and (not _is_int(min_deposit) or min_deposit <= 0):
        errors.append("MIN_DEPOSIT must be a positive number")

    return not errors, errors


def read_config(path: str) -> Optional[Dict[str, Any]]:
    """Return the parsed configuration document or ``None`` if it is absent or unreadable."""

    config_path = Path(path)
    if not config_path.exists():
        return None
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def write_config(path: str, data: Dict[str, Any]) -> None:
    """Persist the configuration document as pretty printed JSON."""

    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)


def admin_ids_from(value: Any) -> List[int]:
    """Normalise ``USER_ID`` which may be a single id or a list of ids."""

    if isinstance(value, list):
        return [int(item) for item in value]
    if value is None or value == "":
        return []
    return [int(value)]


def _float_env(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a whole number") from exc
    if value < 1:
        raise RuntimeError(f"{name} must be at least 1")
    return value


def load_settings() -> Settings:
    """Load settings from the environment and the store configuration document.

    The ``.env`` file next to the project root (or the file named by
    ``DOTENV_PATH``) is loaded first. Environment variables take precedence
    over ``.env`` values.

    Returns
    -------
    Settings
        The populated configuration dataclass. ``setup_mode`` is set when the
        configuration document is missing or invalid.
    """
    dotenv_path = os.environ.get("DOTENV_PATH")
    env_path = Path(dotenv_path) if dotenv_path else Path(__file__).parent.parent / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)

    settings = Settings(
        database_path=os.environ.get("DB_PATH", "./data/botvpn.db"),
        backup_dir=os.environ.get("BACKUP_DIR", "./data/backups"),
        upload_dir=os.environ.get("UPLOAD_RESTORE_DIR", "./data/uploaded_restore"),
        vars_path=os.environ.get("VARS_PATH", ".vars.json"),
        poll_interval=_float_env("POLL_INTERVAL", "1.0"),
        provision_script_dir=os.environ.get("PROVISION_SCRIPT_DIR", "/usr/local/sbin/vpn-store"),
        provision_timeout=_float_env("PROVISION_TIMEOUT", "45"),
        workers=_int_env("WORKERS", "8"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )

    data = read_config(settings.vars_path)
    valid, _ = validate_config(data) if data is not None else (False, [])
    if not valid:
        settings.setup_mode = True
        settings.bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        return settings

    apply_config(settings, data)
    token_override = os.environ.get("TELEGRAM_BOT_TOKEN")
    if token_override:
        settings.bot_token = token_override
    return settings


def apply_config(settings: Settings, data: Dict[str, Any]) -> Settings:
    """Copy values from a validated configuration document onto ``settings``."""

    settings.bot_token = str(data["BOT_TOKEN"])
    settings.admin_ids = admin_ids_from(data["USER_ID"])
    settings.group_id = str(data["GROUP_ID"])
    settings.data_qris = str(data["DATA_QRIS"])
    settings.merchant_id = str(data["MERCHANT_ID"])
    settings.server_key = str(data["SERVER_KEY"])
    settings.store_name = data.get("NAMA_STORE") or settings.store_name
    settings.port = int(data.get("PORT") or DEFAULT_PORT)
    settings.admin_username = data.get("ADMIN_USERNAME") or ""
    settings.pakasir_project = data.get("PAKASIR_PROJECT") or data.get("PAKASIR_SLUG") or ""
    settings.pakasir_api_key = data.get("PAKASIR_API_KEY") or ""
    settings.min_deposit = int(data.get("MIN_DEPOSIT") or DEFAULT_MIN_DEPOSIT)
    settings.setup_mode = False
    return settings
