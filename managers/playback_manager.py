import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from spotify_api.client import PlayerAction, SpotifyClient
from spotify_api.errors import BadResponse, NotAuthenticated, SpotifyError
from spotify_api.models import Track
from spotify_api.token_manager import TokenManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SETTLE_DELAY = 0.3

# Spotify answers 403 on currently-playing when no device is active.
NO_ACTIVE_DEVICE_STATUS = 403


@dataclass
class NowPlaying:
    """What the widget currently shows."""

    track: Optional[Track] = None
    is_playing: bool = False
    is_favorite: bool = False
    album_art: Optional[bytes] = None


class PlaybackManager:
    """Presentation model between the API client and whatever renders it.

    Applies the display rules: a 403 ("no active device") keeps the current
    track on screen, other polling failures clear it, and the favorite flag
    only changes after the server confirmed the change.
    """

    def __init__(
        self,
        client: SpotifyClient,
        token_manager: TokenManager,
        *,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.token_manager = token_manager
        self.settle_delay = float(settle_delay)
        self.state = NowPlaying()
        self._sleep = sleep

    @property
    def is_authenticated(self) -> bool:
        return self.token_manager.is_authenticated

    async def _with_reauth(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run OPERATION; on a 401 refresh once and run it again."""
        try:
            return await operation()
        except BadResponse as e:
            if e.status_code != 401:
                raise

        logger.info("Spotify access token rejected; refreshing.")
        try:
            await self.token_manager.refresh()
        except SpotifyError as e:
            raise NotAuthenticated(f"Session expired and could not be refreshed: {e}") from e
        return await operation()

    def _clear_track(self) -> None:
        self.state.track = None
        self.state.album_art = None
        self.state.is_playing = False
        self.state.is_favorite = False

    # -----------------
    # Polling
    # -----------------

    async def poll(self) -> NowPlaying:
        try:
            snapshot = await self._with_reauth(self.client.get_current_playback)
        except BadResponse as e:
            if e.status_code == NO_ACTIVE_DEVICE_STATUS:
                logger.info("Playback not active on any device (403).")
                return self.state
            logger.debug("Error fetching track: %s", e)
            self._clear_track()
            return self.state
        except NotAuthenticated as e:
            logger.info("Not authenticated with Spotify: %s", e)
            self._clear_track()
            return self.state
        except SpotifyError as e:
            logger.debug("Error fetching track: %s", e)
            self._clear_track()
            return self.state

        item = snapshot.item
        current_id = self.state.track.id if self.state.track else None
        if current_id != (item.id if item else None):
            self.state.track = item
            self.state.is_favorite = False
            self.state.album_art = None
            if item is not None:
                self.state.album_art = await self.client.fetch_album_art(item.album.artwork_url)

        self.state.is_playing = snapshot.is_playing

        # Always re-check; the track may have been saved from another device.
        if item is not None:
            await self.check_favorite(item.id)
        return self.state

    async def check_favorite(self, track_id: str) -> bool:
        try:
            saved = await self._with_reauth(lambda: self.client.is_track_saved(track_id))
        except SpotifyError as e:
            logger.debug("Could not check favorite status: %s", e)
            return self.state.is_favorite

        # Ignore answers for a track that is no longer displayed.
        if self.state.track is not None and self.state.track.id == track_id:
            self.state.is_favorite = saved
        return saved

    # -----------------
    # Controls
    # -----------------

    async def toggle_favorite(self) -> bool:
        track = self.state.track
        if track is None:
            return False

        was_favorite = self.state.is_favorite
        operation = self.client.remove_favorite if was_favorite else self.client.add_favorite
        try:
            await self._with_reauth(lambda: operation(track.id))
        except SpotifyError as e:
            logger.warning("Could not update favorites for %s: %s", track.name, e)
            return False

        if self.state.track is not None and self.state.track.id == track.id:
            self.state.is_favorite = not was_favorite
        return True

    async def perform(self, action: PlayerAction) -> bool:
        """Send a player command, then re-fetch once the remote state settles."""
        try:
            await self._with_reauth(lambda: self.client.perform_player_action(action))
        except BadResponse as e:
            if e.status_code in (NO_ACTIVE_DEVICE_STATUS, 404):
                logger.warning("No active Spotify device to control.")
            else:
                logger.warning("Player action '%s' failed: %s", PlayerAction(action).value, e)
            return False
        except SpotifyError as e:
            logger.warning("Player action '%s' failed: %s", PlayerAction(action).value, e)
            return False

        # The confirmatory fetch may still be stale; the next poll corrects it.
        await self._sleep(self.settle_delay)
        await self.poll()
        return True

    async def play_pause(self) -> bool:
        return await self.perform(PlayerAction.PAUSE if self.state.is_playing else PlayerAction.PLAY)
