"""Runtime configuration and logging setup for storefront."""

import locale
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

# Local data directory within the storefront project
# Can be overridden via STOREFRONT_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DATA_DIR = Path(os.environ.get("STOREFRONT_DATA_DIR", _default_data_dir))
DATABASE_FILE = "storefront.db"

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Process-wide settings, read once by the composition root."""

    database_url: str
    base_url: str = "http://localhost:3000"
    webhook_secret: str = "whsec_local_development"
    currency: str = "jpy"
    log_level: str = "INFO"
    collation_locale: str = ""  # "" uses the environment's LC_COLLATE / LANG
    payment_gateway: str = "local"  # "local" | "stripe"
    stripe_secret_key: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from STOREFRONT_* environment variables."""
        default_url = f"sqlite:///{DATA_DIR / DATABASE_FILE}"
        return cls(
            database_url=os.environ.get("STOREFRONT_DATABASE_URL", default_url),
            base_url=os.environ.get("STOREFRONT_BASE_URL", "http://localhost:3000").rstrip("/"),
            webhook_secret=os.environ.get("STOREFRONT_WEBHOOK_SECRET", "whsec_local_development"),
            currency=os.environ.get("STOREFRONT_CURRENCY", "jpy"),
            log_level=os.environ.get("STOREFRONT_LOG_LEVEL", "INFO").upper(),
            collation_locale=os.environ.get("STOREFRONT_COLLATION_LOCALE", ""),
            payment_gateway=os.environ.get("STOREFRONT_PAYMENT_GATEWAY", "local").lower(),
            stripe_secret_key=os.environ.get("STOREFRONT_STRIPE_SECRET_KEY", ""),
        )


def setup_locale(name: str = "") -> str:
    """
    Set LC_COLLATE for locale-aware title sorting.

    Falls back to the C locale, with a warning, when the requested locale is
    not installed.

    Returns:
        The collation locale in effect.
    """
    try:
        return locale.setlocale(locale.LC_COLLATE, name)
    except locale.Error:
        logger.warning("Collation locale %r is not available; using C", name or "<environment>")
        return locale.setlocale(locale.LC_COLLATE, "C")


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the storefront logger. Safe to call more than once."""
    log = logging.getLogger("storefront")
    log.setLevel(level)
    if not log.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)
    return log
