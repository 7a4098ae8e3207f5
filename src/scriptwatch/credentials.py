"""Access token resolution for the Apps Script and Logging APIs.

The token file is an authorized-user JSON (``client_id``,
``client_secret``, ``refresh_token``, ``token``) as written by
``google-auth-oauthlib`` flows. Obtaining it is out of band; see
``scriptwatch wait-auth`` for waiting on an external flow to produce it.
"""

from __future__ import annotations

from pathlib import Path

from google.auth.exceptions import RefreshError
from google.auth.transport import requests as google_requests
from google.oauth2.credentials import Credentials
from loguru import logger

from scriptwatch.config import Settings

SCOPES = [
    "https://www.googleapis.com/auth/script.projects",
    "https://www.googleapis.com/auth/logging.read",
]


class CredentialsError(Exception):
    """Raised when no usable access token can be produced."""


def load_credentials(token_path: str | Path) -> Credentials:
    """Load authorized-user credentials, refreshing and persisting if stale."""
    path = Path(token_path)
    if not path.exists():
        raise CredentialsError(
            f"Token file not found: {path}. Complete the OAuth flow first."
        )

    try:
        credentials = Credentials.from_authorized_user_file(str(path), SCOPES)
    except ValueError as e:
        raise CredentialsError(f"Invalid token file {path}: {e}") from e

    if credentials.valid:
        return credentials

    if not credentials.refresh_token:
        raise CredentialsError(f"Token in {path} expired and has no refresh token")

    try:
        credentials.refresh(google_requests.Request())
    except RefreshError as e:
        raise CredentialsError(f"OAuth credentials expired or revoked: {e}") from e

    path.write_text(credentials.to_json())
    logger.info("Refreshed access token", extra={"token_path": str(path)})
    return credentials


def load_access_token(settings: Settings) -> str:
    """Resolve a bearer token: explicit setting first, then the token file."""
    if settings.access_token:
        return settings.access_token
    credentials = load_credentials(settings.token_path)
    if not credentials.token:
        raise CredentialsError("Token file produced no access token")
    token: str = credentials.token
    return token
