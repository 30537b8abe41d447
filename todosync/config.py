"""Client configuration: data directory and backend credentials.

Credentials are read from ``<home>/credentials.json`` first, then from the
TODOSYNC_BACKEND_URL / TODOSYNC_AUTH_TOKEN environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def get_todosync_home() -> Path:
    """Data directory (TODOSYNC_HOME, default ``~/.todosync``)."""
    return Path(os.environ.get("TODOSYNC_HOME") or Path.home() / ".todosync")


def validate_backend_url(url: Optional[str]) -> Optional[str]:
    """Return ``url`` if it is safe to send credentials to, else None.

    Only https is accepted, except plain http to localhost.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.hostname:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http" and parsed.hostname not in LOCAL_HOSTS:
        logger.warning("Refusing plaintext HTTP backend_url for a non-local host.")
        return None
    return url.rstrip("/")


@dataclass
class Credentials:
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None
    user_email: Optional[str] = None


def credentials_path(home: Optional[Path] = None) -> Path:
    return (home or get_todosync_home()) / "credentials.json"


def load_credentials(home: Optional[Path] = None) -> Credentials:
    """Load credentials from file, falling back to environment variables."""
    creds = Credentials()
    path = credentials_path(home)
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            creds.backend_url = data.get("backend_url")
            creds.auth_token = data.get("auth_token") or data.get("token")
            creds.user_email = data.get("user_email")
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    creds.backend_url = creds.backend_url or os.environ.get("TODOSYNC_BACKEND_URL")
    creds.auth_token = creds.auth_token or os.environ.get("TODOSYNC_AUTH_TOKEN")
    creds.backend_url = validate_backend_url(creds.backend_url)
    return creds


def save_credentials(creds: Credentials, home: Optional[Path] = None) -> Path:
    """Write credentials.json with owner-only permissions."""
    path = credentials_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(
            {
                "backend_url": creds.backend_url,
                "auth_token": creds.auth_token,
                "user_email": creds.user_email,
            },
            f,
            indent=2,
        )
    path.chmod(0o600)
    return path
