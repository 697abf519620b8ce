import json
import logging
import os
from typing import Optional


logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_PATH = os.path.join("data", "spotify_credentials.json")

# Single-session: at most one record lives in the file, under this key.
REFRESH_TOKEN_KEY = "spotify_refresh_token"


class CredentialStore:
    """Persists the refresh token across restarts.

    ``load()`` never raises: a missing, unreadable or malformed file simply
    means "no stored credential".
    """

    def __init__(self, *, path: str = DEFAULT_CREDENTIAL_PATH):
        self.path = path

    def ensure_dir(self) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def load(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return None

        if not isinstance(data, dict):
            return None

        token = data.get(REFRESH_TOKEN_KEY)
        if not isinstance(token, str) or not token.strip():
            return None
        return token

    def save(self, refresh_token: str) -> bool:
        """Persist the refresh token. Returns False if the write failed."""
        try:
            self.ensure_dir()
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump({REFRESH_TOKEN_KEY: refresh_token}, f, indent=2)
            return True
        except OSError as e:
            logger.error("Could not save Spotify credential to %s: %s", self.path, e)
            return False

    def clear(self) -> bool:
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
            return True
        except OSError as e:
            logger.error("Could not remove Spotify credential %s: %s", self.path, e)
            return False
