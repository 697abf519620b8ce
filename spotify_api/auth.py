import abc
import asyncio
import logging
import time
import urllib.parse
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Iterable, Optional

import questionary

from .errors import FlowCancelled, MissingCode

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8888/callback"

# Fixed: read/modify playback, read/modify saved tracks.
SPOTIFY_SCOPES = (
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-library-read",
    "user-library-modify",
)

_CALLBACK_PAGE = (
    "<html><body style='font-family:sans-serif;text-align:center;margin-top:4em'>"
    "<h2>{title}</h2><p>You can close this tab and return to the terminal.</p>"
    "</body></html>"
)


def check_spotify_credentials(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate Spotify OAuth config fields and return a structured status dict."""

    config = config or {}
    client_id = str(config.get("spotify_client_id", "")).strip()
    client_secret = str(config.get("spotify_client_secret", "")).strip()
    redirect_uri = str(config.get("spotify_redirect_uri", "")).strip()

    missing = []
    if not client_id:
        missing.append("spotify_client_id (or SPOTIFY_CLIENT_ID)")
    if not client_secret:
        missing.append("spotify_client_secret (or SPOTIFY_CLIENT_SECRET)")
    if not redirect_uri:
        missing.append("spotify_redirect_uri (or SPOTIFY_REDIRECT_URI)")

    status = {
        "ok": not missing,
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scopes": list(SPOTIFY_SCOPES),
        "missing": missing,
    }
    if missing:
        status["message"] = "Missing Spotify settings: " + ", ".join(missing)
    else:
        status["message"] = "Spotify credentials look OK."
    return status


def spotify_app_setup_instructions(*, redirect_uri: str = DEFAULT_REDIRECT_URI) -> str:
    """Return user-facing setup instructions for creating a Spotify Developer app."""

    redirect_uri = str(redirect_uri or "").strip() or DEFAULT_REDIRECT_URI
    return (
        "Spotify app setup:\n"
        "1) Go to https://developer.spotify.com/dashboard\n"
        "2) Create an app (or select an existing app)\n"
        f"3) Add this Redirect URI in the app settings: {redirect_uri}\n"
        "4) Copy the Client ID and Client Secret into config.json as spotify_client_id /\n"
        "   spotify_client_secret, or export SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET\n\n"
        "Notes:\n"
        "- This project uses the Authorization Code flow with a client secret.\n"
        "- Redirect URI must match *exactly* what you configure in the Spotify dashboard.\n"
    )


def build_authorize_url(client_id: str, redirect_uri: str, scopes: Iterable[str] = SPOTIFY_SCOPES) -> str:
    if not redirect_uri:
        raise ValueError("Missing spotify_redirect_uri")

    scope_str = " ".join(str(s).strip() for s in scopes if str(s).strip())
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scope_str,
    }
    return f"{SPOTIFY_ACCOUNTS_BASE_URL}/authorize?{urllib.parse.urlencode(params)}"


def extract_code_from_redirect_url(redirect_url: str) -> Dict[str, str]:
    """Parse a redirect URL and return {"code": ..., "state": ...} (missing keys omitted)."""

    parsed = urllib.parse.urlparse(str(redirect_url or "").strip())
    qs = urllib.parse.parse_qs(parsed.query)
    out: Dict[str, str] = {}
    if qs.get("code"):
        out["code"] = str(qs["code"][0])
    if qs.get("state"):
        out["state"] = str(qs["state"][0])
    if qs.get("error"):
        out["error"] = str(qs["error"][0])
    return out


def _targets_callback(url: str, redirect_uri: str) -> bool:
    got = urllib.parse.urlparse(url)
    want = urllib.parse.urlparse(redirect_uri)
    return (
        got.scheme.lower() == want.scheme.lower()
        and got.netloc.lower() == want.netloc.lower()
        and (got.path or "/") == (want.path or "/")
    )


def code_from_redirect(redirect_url: str, redirect_uri: Optional[str] = None) -> str:
    """Return the authorization code carried by a redirect URL.

    Raises FlowCancelled when the user denied access, MissingCode when the URL
    is not our callback or carries no code.
    """

    redirect_url = str(redirect_url or "").strip()
    if redirect_uri and not _targets_callback(redirect_url, redirect_uri):
        raise MissingCode(f"Redirect does not target {redirect_uri}: {redirect_url}")

    parsed = extract_code_from_redirect_url(redirect_url)
    if parsed.get("error") == "access_denied":
        raise FlowCancelled("Spotify authorization was denied by the user.")
    if not parsed.get("code"):
        detail = f" (error={parsed['error']})" if parsed.get("error") else ""
        raise MissingCode(f"Redirect URL has no authorization code{detail}")
    return parsed["code"]


def _open_browser(url: str) -> None:
    try:
        if not webbrowser.open(url):
            logger.info("Could not open a browser automatically.")
    except webbrowser.Error as e:
        logger.info("Could not open a browser automatically: %s", e)


class AuthorizationFlow(abc.ABC):
    """Interactive consent round trip: authorize URL in, authorization code out."""

    @abc.abstractmethod
    async def authorize(self, url: str) -> str:
        """Return the authorization code, or raise FlowCancelled / MissingCode."""


class _CallbackHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        self.server.callback_path = self.path
        has_code = "code=" in urllib.parse.urlparse(self.path).query
        title = "Spotify login complete" if has_code else "Spotify login failed"
        body = _CALLBACK_PAGE.format(title=title).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)


class LoopbackAuthorizationFlow(AuthorizationFlow):
    """Opens the browser and catches the redirect on a one-shot local listener.

    The redirect URI must point at this machine (e.g. http://127.0.0.1:8888/callback).
    """

    def __init__(self, redirect_uri: str = DEFAULT_REDIRECT_URI, *, timeout: float = 180.0, open_browser: bool = True):
        self.redirect_uri = redirect_uri
        self.timeout = float(timeout)
        self.open_browser = open_browser

    def _serve_until_callback(self, server: HTTPServer) -> Optional[str]:
        expected_path = urllib.parse.urlparse(self.redirect_uri).path or "/"
        deadline = time.monotonic() + self.timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            server.timeout = remaining
            server.callback_path = None
            server.handle_request()
            path = server.callback_path
            # Browsers may ask for /favicon.ico first; keep listening.
            if path and urllib.parse.urlparse(path).path == expected_path:
                return path

    async def authorize(self, url: str) -> str:
        target = urllib.parse.urlparse(self.redirect_uri)
        host = target.hostname or "127.0.0.1"
        port = target.port or 80

        try:
            server = HTTPServer((host, port), _CallbackHandler)
        except OSError as e:
            raise FlowCancelled(f"Could not listen for the Spotify callback on {host}:{port}: {e}") from e

        try:
            logger.info("Authorize URL:\n%s", url)
            if self.open_browser:
                _open_browser(url)
            loop = asyncio.get_running_loop()
            path = await loop.run_in_executor(None, self._serve_until_callback, server)
        finally:
            server.server_close()

        if path is None:
            raise FlowCancelled("Timed out waiting for the Spotify authorization redirect.")
        return code_from_redirect(f"{target.scheme}://{target.netloc}{path}", self.redirect_uri)


class PasteAuthorizationFlow(AuthorizationFlow):
    """Opens the browser; the user pastes the redirect URL back into the terminal."""

    def __init__(self, redirect_uri: str = DEFAULT_REDIRECT_URI, *, open_browser: bool = True):
        self.redirect_uri = redirect_uri
        self.open_browser = open_browser

    async def authorize(self, url: str) -> str:
        logger.info("Authorize URL:\n%s", url)
        if self.open_browser:
            _open_browser(url)

        pasted = await questionary.text(
            "Paste the full redirect URL (preferred) OR just the code=... value:"
        ).ask_async()
        pasted = (pasted or "").strip()
        if not pasted:
            raise FlowCancelled("No redirect URL / code provided.")

        if "://" in pasted:
            return code_from_redirect(pasted, self.redirect_uri)
        # Assume the user pasted the raw code.
        return pasted
