"""
Provider-agnostic mail driver layer.
Supports Gmail and Microsoft 365 / Outlook behind one canonical API.
"""

from .config import DriverSettings, OAuthClientSettings, configure_logging, load_settings
from .errors import DriverError, ErrorKind, MailDriverError, UnsupportedProviderError, classify_error
from .providers import SUPPORTED_PROVIDERS, create_driver
from .providers.base import DriverConfig, MailDriver, OutgoingMessage, ParsedMessage, ThreadList
from .storage import ConnectionRecord, ConnectionStore, SQLiteConnectionStore

__all__ = [
    'ConnectionRecord',
    'ConnectionStore',
    'DriverConfig',
    'DriverError',
    'DriverSettings',
    'ErrorKind',
    'MailDriver',
    'MailDriverError',
    'OAuthClientSettings',
    'OutgoingMessage',
    'ParsedMessage',
    'SQLiteConnectionStore',
    'SUPPORTED_PROVIDERS',
    'ThreadList',
    'UnsupportedProviderError',
    'classify_error',
    'configure_logging',
    'create_driver',
    'load_settings',
]
