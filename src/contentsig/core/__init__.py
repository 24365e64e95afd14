"""Core module.

Shared components used across the signer:
- Configuration management
- Cached settings access
"""

from contentsig.core.config import (
    CONTENT_SIGNATURE_PKI_TYPE,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    S3Settings,
    Settings,
    SignerSettings,
)
from contentsig.core.settings import (
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "CONTENT_SIGNATURE_PKI_TYPE",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "S3Settings",
    "Settings",
    "SignerSettings",
    "clear_settings_cache",
    "get_settings",
]
