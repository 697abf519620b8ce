# Managers module exports
from managers.playback_manager import NowPlaying, PlaybackManager

__all__ = [
    # Playback manager
    "NowPlaying",
    "PlaybackManager",
]
