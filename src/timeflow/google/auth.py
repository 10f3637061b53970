"""
Per-owner Google credentials, read from authorized-user token files.

Token acquisition (the OAuth consent flow) belongs to the web app; it drops
one ``{owner_id}.json`` authorized-user file per owner into the token
directory. Here we only load it and let google-auth refresh the access
token when it has expired.
"""
import logging
from pathlib import Path
from typing import Sequence

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from timeflow.sync.errors import AdapterUnavailable

logger = logging.getLogger(__name__)

SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks",
)


class NoCredentialsError(AdapterUnavailable):
    """Raised when no token file exists for the owner."""


class CredentialsExpiredError(AdapterUnavailable):
    """Raised when the stored refresh token is rejected by Google."""


class GoogleAuth:
    """
    Usage:
        auth = GoogleAuth(settings.google_token_dir)
        creds = auth.load("user-123")  # google.oauth2.credentials.Credentials
    """

    def __init__(self, token_dir: Path, scopes: Sequence[str] = SCOPES):
        self._token_dir = Path(token_dir)
        self._scopes = list(scopes)

    def token_path(self, owner_id: str) -> Path:
        return self._token_dir / f"{owner_id}.json"

    def has_token(self, owner_id: str) -> bool:
        return self.token_path(owner_id).exists()

    def load(self, owner_id: str) -> Credentials:
        """
        Load and, if needed, refresh the owner's credentials.

        Raises:
            NoCredentialsError: no token file for this owner.
            CredentialsExpiredError: refresh failed; the user must reconnect.
        """
        path = self.token_path(owner_id)
        if not path.exists():
            raise NoCredentialsError(
                f"No Google token for owner {owner_id} at {path}. "
                "Reconnect the Google integration."
            )
        creds = Credentials.from_authorized_user_file(str(path), self._scopes)
        if not creds.valid and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise CredentialsExpiredError(
                    f"Google token for owner {owner_id} was rejected; reconnect required."
                ) from exc
            path.write_text(creds.to_json())
            logger.info("Refreshed Google access token for owner %s", owner_id)
        return creds
