import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .auth import SPOTIFY_ACCOUNTS_BASE_URL, SPOTIFY_SCOPES, AuthorizationFlow, build_authorize_url
from .credential_store import DEFAULT_CREDENTIAL_PATH, CredentialStore
from .errors import (
    AuthError,
    BadResponse,
    DecodeError,
    FlowCancelled,
    RefreshUnavailable,
    SpotifyError,
    TransportError,
)

logger = logging.getLogger(__name__)

SPOTIFY_TOKEN_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/api/token"
DEFAULT_HTTP_TIMEOUT = 10.0


def _mask(token: Optional[str]) -> str:
    if not token:
        return "<none>"
    return f"{token[:4]}..."


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass
class Session:
    """In-memory OAuth session. Only TokenManager mutates it."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    authenticated: bool = False


@dataclass(frozen=True)
class TokenInfo:
    """Decoded token endpoint response."""

    access_token: str
    token_type: str
    expires_at: float
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @staticmethod
    def from_spotify_token_response(payload: Any, *, now: Optional[float] = None) -> "TokenInfo":
        """Convert Spotify token response JSON into TokenInfo.

        Spotify returns:
        - access_token
        - token_type
        - expires_in (seconds)
        - refresh_token (optional; usually absent on refresh)
        - scope (space-delimited string)

        Raises DecodeError if the payload is not a usable token response.
        """

        if not isinstance(payload, dict):
            raise DecodeError(f"Spotify token response was not an object: {payload!r}")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise DecodeError("Spotify token response has no access_token")

        try:
            expires_in = float(payload.get("expires_in", 0))
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Spotify token response has invalid expires_in: {payload.get('expires_in')!r}") from e

        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None

        scope = payload.get("scope")
        now_ts = float(time.time() if now is None else now)

        return TokenInfo(
            access_token=access_token,
            token_type=str(payload.get("token_type") or "Bearer"),
            expires_at=now_ts + expires_in,
            refresh_token=refresh_token,
            scope=scope if isinstance(scope, str) else None,
        )


class TokenManager:
    """OAuth2 Authorization Code client (confidential client, HTTP Basic auth).

    States::

        UNAUTHENTICATED --start_authentication()--> AUTHORIZING
        AUTHORIZING     --exchange_code()---------> AUTHENTICATED | UNAUTHENTICATED
        any             --refresh()---------------> (REFRESHING) -> AUTHENTICATED | UNAUTHENTICATED
        any             --log_out()---------------> UNAUTHENTICATED

    Exchange and refresh are serialized through one lock so two refreshes
    never race on the stored refresh token.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        store: Optional[CredentialStore] = None,
        session: Optional[Session] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.store = store or CredentialStore()
        self.timeout = timeout
        self.expires_at: Optional[float] = None

        self._session = session or Session()
        self._state = AuthState.AUTHENTICATED if self._session.authenticated else AuthState.UNAUTHENTICATED
        self._transport = transport
        self._lock = asyncio.Lock()
        # Bumped by log_out(); a token request that started before a logout
        # must not publish its result.
        self._logout_generation = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs: Any) -> "TokenManager":
        config = config or {}
        store = CredentialStore(path=str(config.get("credential_store_path") or DEFAULT_CREDENTIAL_PATH))
        return cls(
            str(config.get("spotify_client_id", "")).strip(),
            str(config.get("spotify_client_secret", "")).strip(),
            str(config.get("spotify_redirect_uri", "")).strip(),
            store=store,
            timeout=float(config.get("http_timeout", DEFAULT_HTTP_TIMEOUT)),
            **kwargs,
        )

    # -----------------
    # Read-only views
    # -----------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token

    @property
    def is_authenticated(self) -> bool:
        return self._state == AuthState.AUTHENTICATED

    def _set_state(self, state: AuthState) -> None:
        if state != self._state:
            logger.debug("Auth state %s -> %s", self._state.value, state.value)
        self._state = state
        self._session.authenticated = state == AuthState.AUTHENTICATED

    # -----------------
    # Authorization
    # -----------------

    def start_authentication(self) -> str:
        """Move to AUTHORIZING and return the URL the user must visit."""
        url = build_authorize_url(self.client_id, self.redirect_uri, SPOTIFY_SCOPES)
        self._set_state(AuthState.AUTHORIZING)
        return url

    async def login(self, flow: AuthorizationFlow) -> TokenInfo:
        """Run the interactive flow end to end and exchange the returned code."""
        previous = self._state
        url = self.start_authentication()
        try:
            code = await flow.authorize(url)
        except AuthError as e:
            logger.warning("Spotify authorization did not complete: %s", e)
            self._set_state(previous if previous != AuthState.AUTHORIZING else AuthState.UNAUTHENTICATED)
            raise
        return await self.exchange_code(code)

    async def exchange_code(self, code: str) -> TokenInfo:
        async with self._lock:
            generation = self._logout_generation
            try:
                token = await self._post_token(
                    {
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    }
                )
            except SpotifyError as e:
                logger.error("Spotify code exchange failed: %s", e)
                self._set_state(AuthState.UNAUTHENTICATED)
                raise

            if generation != self._logout_generation:
                raise FlowCancelled("Logged out while the Spotify code exchange was in flight.")
            if token.refresh_token is None:
                logger.warning("Spotify code exchange returned no refresh token; session will not survive a restart.")
            self._apply(token)
            logger.info("Spotify authentication successful.")
            return token

    # -----------------
    # Refresh
    # -----------------

    async def refresh(self) -> TokenInfo:
        """Trade the refresh token for a new access token.

        Any failure clears the refresh token (memory and store) so an invalid
        token is never retried on every launch.
        """
        async with self._lock:
            refresh_token = self._session.refresh_token or self.store.load()
            if not refresh_token:
                raise RefreshUnavailable("No Spotify refresh token available.")

            generation = self._logout_generation
            previous = self._state
            self._session.refresh_token = refresh_token
            self._set_state(AuthState.REFRESHING)
            logger.debug("Refreshing Spotify access token with %s", _mask(refresh_token))

            try:
                token = await self._post_token({"grant_type": "refresh_token", "refresh_token": refresh_token})
            except SpotifyError as e:
                if generation != self._logout_generation:
                    raise RefreshUnavailable("Logged out while the Spotify token refresh was in flight.") from e
                logger.warning("Spotify token refresh failed, dropping stored credential: %s", e)
                self._drop_credentials()
                raise
            except asyncio.CancelledError:
                # REFRESHING never outlives the request; the credential is still good.
                if generation == self._logout_generation:
                    self._set_state(previous)
                raise

            if generation != self._logout_generation:
                raise RefreshUnavailable("Logged out while the Spotify token refresh was in flight.")
            self._apply(token)
            return token

    async def restore_session(self) -> bool:
        """Silent re-authentication at startup from a stored refresh token."""
        if not self._session.refresh_token and self.store.load() is None:
            logger.info("No stored Spotify refresh token; login required.")
            return False

        try:
            await self.refresh()
        except SpotifyError as e:
            logger.warning("Could not restore Spotify session: %s", e)
            return False
        return True

    def log_out(self) -> None:
        """Drop the session immediately.

        An exchange or refresh still in flight finishes without publishing
        its tokens.
        """
        self._logout_generation += 1
        self._drop_credentials()
        logger.info("Logged out of Spotify.")

    # -----------------
    # Internals
    # -----------------

    def _apply(self, token: TokenInfo) -> None:
        self._session.access_token = token.access_token
        if token.refresh_token:
            self._session.refresh_token = token.refresh_token
            self.store.save(token.refresh_token)
        self.expires_at = token.expires_at
        self._set_state(AuthState.AUTHENTICATED)

    def _drop_credentials(self) -> None:
        self._session.access_token = None
        self._session.refresh_token = None
        self.expires_at = None
        self.store.clear()
        self._set_state(AuthState.UNAUTHENTICATED)

    async def _post_token(self, form: Dict[str, Any]) -> TokenInfo:
        data = {k: str(v) for k, v in form.items() if v is not None}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                resp = await client.post(
                    SPOTIFY_TOKEN_URL,
                    data=data,
                    auth=httpx.BasicAuth(self.client_id, self.client_secret),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise TransportError(f"Spotify token request failed: {e}") from e

        if not resp.is_success:
            raise BadResponse(resp.status_code, resp.text)

        try:
            payload = resp.json()
        except ValueError as e:
            raise DecodeError(f"Spotify token response was not JSON: {resp.text}") from e

        return TokenInfo.from_spotify_token_response(payload)
