"""Exception hierarchy for the Spotify auth + API core.

Every failure the core can produce is one of these. Callers (the playback
manager, the menus) catch them and decide what the user sees.
"""

from typing import Optional


class SpotifyError(Exception):
    """Base class for all Spotify core errors."""


# -----------------
# Authentication
# -----------------


class AuthError(SpotifyError):
    """Authorization flow / token endpoint failure."""


class FlowCancelled(AuthError):
    """The user dismissed the authorization surface (or it timed out)."""


class MissingCode(AuthError):
    """The redirect came back without a ``code`` query parameter."""


class RefreshUnavailable(AuthError):
    """There is no refresh token to refresh with."""


# -----------------
# API access
# -----------------


class ApiError(SpotifyError):
    """A request to a Spotify endpoint failed."""


class NotAuthenticated(ApiError):
    """No access token is available."""


class InvalidURL(ApiError):
    """An endpoint path could not be turned into a request URL."""


class TransportError(ApiError):
    """Network-level failure (DNS, connect, timeout, reset...)."""


class BadResponse(ApiError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = int(status_code)
        self.body = body
        super().__init__(f"Spotify returned HTTP {self.status_code}")


class NoData(ApiError):
    """A 2xx response had an empty body where one was required."""


class DecodeError(ApiError):
    """A response body did not decode into the expected shape."""
