import logging
import urllib.parse
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .errors import BadResponse, DecodeError, InvalidURL, NoData, NotAuthenticated, TransportError
from .models import PlaybackSnapshot
from .token_manager import DEFAULT_HTTP_TIMEOUT, Session

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com"


class PlayerAction(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    NEXT = "next"
    PREVIOUS = "previous"

    @property
    def method(self) -> str:
        # Spotify uses PUT for play/pause and POST for skips.
        return "POST" if self in (PlayerAction.NEXT, PlayerAction.PREVIOUS) else "PUT"

    @property
    def path(self) -> str:
        return f"/v1/me/player/{self.value}"


class SpotifyClient:
    """Thin async Spotify Web API client.

    Reads the bearer token from the shared Session on every call; never
    refreshes or retries on its own. A 401 surfaces as ``BadResponse(401)`` and
    the caller decides whether to refresh and try again.
    """

    def __init__(
        self,
        session: Session,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = SPOTIFY_API_BASE_URL,
    ):
        self.session = session
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    # -----------------
    # HTTP helpers
    # -----------------

    def _build_url(self, path: str) -> str:
        parts = urllib.parse.urlsplit(str(path or ""))
        if parts.scheme or parts.netloc or not str(path).startswith("/"):
            raise InvalidURL(f"Endpoint must be an absolute path, got {path!r}")
        return f"{self.base_url}{path}"

    async def _send(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = self.session.access_token
        if not token:
            raise NotAuthenticated("No Spotify access token. Log in first.")

        url = self._build_url(path)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(
                    method.upper(),
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
        except httpx.InvalidURL as e:
            raise InvalidURL(f"Could not build request for {path}: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Spotify API request {method.upper()} {path} failed: {e}") from e

        if not resp.is_success:
            logger.debug("Spotify API %s %s -> HTTP %s", method.upper(), path, resp.status_code)
            raise BadResponse(resp.status_code, resp.text)
        return resp

    async def request_json(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make a request and return the decoded JSON body."""
        resp = await self._send(method, path, params)

        if not resp.content or not resp.content.strip():
            raise NoData(f"Spotify API {method.upper()} {path} returned an empty body (HTTP {resp.status_code})")

        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"Spotify API response was not JSON (HTTP {resp.status_code}): {resp.text[:200]}") from e

    async def call(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None) -> None:
        """Make a request whose body, if any, is irrelevant."""
        await self._send(method, path, params)
        logger.debug("Spotify API %s %s ok", method.upper(), path)

    # -----------------
    # Player
    # -----------------

    async def get_current_playback(self) -> PlaybackSnapshot:
        payload = await self.request_json("GET", "/v1/me/player/currently-playing")
        return PlaybackSnapshot.from_dict(payload)

    async def perform_player_action(self, action: PlayerAction) -> None:
        action = PlayerAction(action)
        await self.call(action.method, action.path)

    # -----------------
    # Saved tracks
    # -----------------

    async def is_track_saved(self, track_id: str) -> bool:
        payload = await self.request_json("GET", "/v1/me/tracks/contains", params={"ids": track_id})
        if not isinstance(payload, list) or not all(isinstance(v, bool) for v in payload):
            raise DecodeError(f"Expected a list of booleans, got {payload!r}")
        # One id queried -> at most one answer; an empty list means "not saved".
        return payload[0] if payload else False

    async def add_favorite(self, track_id: str) -> None:
        await self.call("PUT", "/v1/me/tracks", params={"ids": track_id})

    async def remove_favorite(self, track_id: str) -> None:
        await self.call("DELETE", "/v1/me/tracks", params={"ids": track_id})

    # -----------------
    # Artwork
    # -----------------

    async def fetch_album_art(self, url: Optional[str]) -> Optional[bytes]:
        """Best-effort artwork download. Any failure yields None."""
        if not url or urllib.parse.urlsplit(url).scheme not in ("http", "https"):
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("Album art fetch failed for %s: %s", url, e)
            return None

        if not resp.is_success or not resp.content:
            logger.debug("Album art fetch for %s returned HTTP %s", url, resp.status_code)
            return None
        return resp.content
