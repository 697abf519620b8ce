import asyncio

import questionary

from managers.playback_manager import NowPlaying, PlaybackManager
from spotify_api.auth import (
    LoopbackAuthorizationFlow,
    PasteAuthorizationFlow,
    check_spotify_credentials,
    spotify_app_setup_instructions,
)
from spotify_api.client import PlayerAction, SpotifyClient
from spotify_api.errors import SpotifyError
from spotify_api.token_manager import TokenManager
from utils.logger import log_error, log_info, log_success, log_warning


def format_now_playing(state: NowPlaying) -> str:
    """One-line rendering of the widget state."""
    track = state.track
    if track is None:
        return "Nothing Playing"

    status = "▶" if state.is_playing else "⏸"
    favorite = "♥" if state.is_favorite else "♡"
    line = f"{status}  {track.name} · {track.artist_names}  {favorite}"
    if state.album_art is None:
        line += "  [no artwork]"
    return line


def _spotify_setup_help(config: dict) -> None:
    creds = check_spotify_credentials(config)
    log_info("\n" + "=" * 72)
    log_info("SPOTIFY SETUP")
    log_info("=" * 72)
    log_info(spotify_app_setup_instructions(redirect_uri=creds.get("redirect_uri")))
    log_info(f"- spotify_client_id: {'SET' if creds.get('client_id') else 'NOT SET'}")
    log_info(f"- spotify_redirect_uri: {creds.get('redirect_uri') or ''}")
    log_info(f"- scopes: {', '.join(creds.get('scopes') or [])}")
    if creds.get("ok"):
        log_info(creds.get("message"))
    else:
        log_warning(creds.get("message"))
    log_info("=" * 72 + "\n")


def _authorization_flow(config: dict):
    redirect_uri = config.get("spotify_redirect_uri")
    if config.get("spotify_auth_flow") == "paste":
        return PasteAuthorizationFlow(redirect_uri)
    return LoopbackAuthorizationFlow(redirect_uri, timeout=float(config.get("auth_timeout", 180)))


async def _login(config: dict, token_manager: TokenManager) -> bool:
    creds = check_spotify_credentials(config)
    if not creds.get("ok"):
        log_warning(creds.get("message"))
        _spotify_setup_help(config)
        return False

    log_info("A browser window will open so you can approve access to your Spotify account.")
    try:
        await token_manager.login(_authorization_flow(config))
    except SpotifyError as e:
        log_error(f"Spotify login failed: {e}")
        return False

    log_success("Logged in to Spotify.")
    return True


async def _watch(manager: PlaybackManager, interval: float) -> None:
    """Poll on a fixed interval until the user presses Enter."""

    async def _loop():
        last = None
        while True:
            await manager.poll()
            line = format_now_playing(manager.state)
            if line != last:
                log_info(line)
                last = line
            if not manager.is_authenticated:
                log_warning("Spotify session ended. Log in again.")
                return
            await asyncio.sleep(interval)

    log_info("Watching playback (press Enter to stop)...")
    task = asyncio.create_task(_loop())
    stop = asyncio.get_running_loop().run_in_executor(None, input)
    done, _ = await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
    if task not in done:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    else:
        log_info("Press Enter to return to the menu.")
        await stop


async def _run_action(manager: PlaybackManager, choice: str) -> None:
    if choice == "Play / Pause":
        ok = await manager.play_pause()
    elif choice == "Next track":
        ok = await manager.perform(PlayerAction.NEXT)
    elif choice == "Previous track":
        ok = await manager.perform(PlayerAction.PREVIOUS)
    else:
        if manager.state.track is None:
            log_warning("Nothing is playing.")
            return
        ok = await manager.toggle_favorite()
        if ok:
            verb = "Added to" if manager.state.is_favorite else "Removed from"
            log_success(f"{verb} Liked Songs: {manager.state.track.name}")

    if ok:
        log_info(format_now_playing(manager.state))


async def player_menu(config: dict) -> None:
    """Interactive now-playing widget for the terminal."""

    token_manager = TokenManager.from_config(config)
    client = SpotifyClient(token_manager.session, timeout=float(config.get("http_timeout", 10.0)))
    manager = PlaybackManager(client, token_manager, settle_delay=float(config.get("action_settle_delay", 0.3)))

    if await token_manager.restore_session():
        log_success("Restored Spotify session.")

    while True:
        if not token_manager.is_authenticated:
            choice = await questionary.select(
                "🎧 Spotify Floater — Please log in to continue.",
                choices=["Login with Spotify", "Spotify credential setup help", "Exit"],
            ).ask_async()

            if choice == "Login with Spotify":
                if await _login(config, token_manager):
                    await manager.poll()
                    log_info(format_now_playing(manager.state))
            elif choice == "Spotify credential setup help":
                _spotify_setup_help(config)
            else:
                break
            continue

        choice = await questionary.select(
            f"🎧 {format_now_playing(manager.state)}",
            choices=[
                "Refresh now playing",
                "Watch (live updates)",
                "Play / Pause",
                "Next track",
                "Previous track",
                "Toggle favorite",
                "Log out",
                "Exit",
            ],
        ).ask_async()

        if choice == "Refresh now playing":
            await manager.poll()
            log_info(format_now_playing(manager.state))

        elif choice == "Watch (live updates)":
            await _watch(manager, float(config.get("poll_interval", 3)))

        elif choice in ("Play / Pause", "Next track", "Previous track", "Toggle favorite"):
            await _run_action(manager, choice)

        elif choice == "Log out":
            token_manager.log_out()
            manager.state = NowPlaying()
            log_success("Logged out and cleared the stored Spotify credential.")

        else:
            break
