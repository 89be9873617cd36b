"""
Configuration for the mail driver layer.

Settings are read from config.ini, with values from the environment (and a
.env file next to the project) taking precedence.
"""

import configparser
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.ini"
ENV_PATH = PROJECT_ROOT / ".env"


@dataclass
class OAuthClientSettings:
    """OAuth client registration for one provider."""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""


@dataclass
class DriverSettings:
    """All settings the drivers and token suppliers need."""
    google: OAuthClientSettings
    microsoft: OAuthClientSettings
    microsoft_tenant: str = "common"
    request_timeout: float = 30.0
    token_refresh_skew: int = 60
    db_path: str = "mail_connections.db"
    log_level: str = "INFO"


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Load configuration from file."""
    if config_path is None:
        config_path = str(CONFIG_PATH)
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
    return cfg


def _get(cfg: configparser.ConfigParser, section: str, key: str, env: str, fallback: str = "") -> str:
    value = os.environ.get(env)
    if value:
        return value
    return cfg.get(section, key, fallback=fallback)


def load_settings(config_path: Optional[str] = None) -> DriverSettings:
    """
    Build DriverSettings from config.ini and the environment.

    Args:
        config_path: Path to an ini file (default: config.ini at the project root)

    Returns:
        DriverSettings instance
    """
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH, override=False)

    cfg = load_config(config_path)

    google = OAuthClientSettings(
        client_id=_get(cfg, 'google', 'client_id', 'GOOGLE_CLIENT_ID'),
        client_secret=_get(cfg, 'google', 'client_secret', 'GOOGLE_CLIENT_SECRET'),
        redirect_uri=_get(cfg, 'google', 'redirect_uri', 'GOOGLE_REDIRECT_URI'),
    )
    microsoft = OAuthClientSettings(
        client_id=_get(cfg, 'microsoft', 'client_id', 'MICROSOFT_CLIENT_ID'),
        client_secret=_get(cfg, 'microsoft', 'client_secret', 'MICROSOFT_CLIENT_SECRET'),
        redirect_uri=_get(cfg, 'microsoft', 'redirect_uri', 'MICROSOFT_REDIRECT_URI'),
    )

    settings = DriverSettings(
        google=google,
        microsoft=microsoft,
        microsoft_tenant=_get(cfg, 'microsoft', 'tenant', 'MICROSOFT_TENANT', 'common'),
        request_timeout=float(_get(cfg, 'driver', 'request_timeout', 'MAIL_DRIVER_REQUEST_TIMEOUT', '30')),
        token_refresh_skew=int(_get(cfg, 'driver', 'token_refresh_skew', 'MAIL_DRIVER_TOKEN_REFRESH_SKEW', '60')),
        db_path=_get(cfg, 'storage', 'db_path', 'MAIL_DRIVER_DB_PATH', 'mail_connections.db'),
        log_level=_get(cfg, 'logging', 'level', 'MAIL_DRIVER_LOG_LEVEL', 'INFO').upper(),
    )

    if not google.client_id:
        logger.warning("Google OAuth client_id is not configured")
    if not microsoft.client_id:
        logger.warning("Microsoft OAuth client_id is not configured")

    return settings


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the way the service entry points expect."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
