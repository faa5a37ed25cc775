"""
Secret lookup helpers.

Secrets come from the environment only. Several names may map to the same
secret (providers renamed their variables over time); the first non-empty
one wins. Validation is lazy: callers ask for a secret when they need it and
raise ConfigurationError if it is absent.
"""
import os
from typing import Optional

from daybot.exceptions import ConfigurationError


def get_secret(*names: str) -> Optional[str]:
    """Return the first non-empty environment value among ``names``."""
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def require_secret(*names: str) -> str:
    """Like get_secret, but raise ConfigurationError when nothing is set."""
    value = get_secret(*names)
    if value is None:
        raise ConfigurationError(f"Missing required secret (any of: {', '.join(names)})")
    return value


def get_database_url() -> str:
    """
    Resolve the ledger database URL.

    Only PostgreSQL (production) and SQLite (local runs, tests) are accepted.
    """
    url = require_secret("DATABASE_URL")
    if not url.startswith(("postgresql", "sqlite")):
        raise ConfigurationError(
            f"Unsupported DATABASE_URL scheme: {url.split(':', 1)[0]}. Use postgresql:// or sqlite://"
        )
    return url
