"""Spotify auth + Web API core (Authorization Code flow).

Future integration points:
- menus/player_menu.py (terminal widget)
- managers/playback_manager.py (display state + UX rules)
"""

from .auth import LoopbackAuthorizationFlow, PasteAuthorizationFlow
from .client import PlayerAction, SpotifyClient
from .credential_store import CredentialStore
from .models import Album, Artist, ImageObject, PlaybackSnapshot, Track
from .token_manager import AuthState, Session, TokenInfo, TokenManager

__all__ = [
    "Album",
    "Artist",
    "AuthState",
    "CredentialStore",
    "ImageObject",
    "LoopbackAuthorizationFlow",
    "PasteAuthorizationFlow",
    "PlaybackSnapshot",
    "PlayerAction",
    "Session",
    "SpotifyClient",
    "TokenInfo",
    "TokenManager",
    "Track",
]
