"""Wire-format records decoded from Spotify Web API responses."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import DecodeError


def _require(payload: Any, key: str, kind: type, what: str) -> Any:
    if not isinstance(payload, dict):
        raise DecodeError(f"{what}: expected an object, got {type(payload).__name__}")
    value = payload.get(key)
    # bool is a subclass of int; keep them apart.
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise DecodeError(f"{what}: field '{key}' must be {kind.__name__}, got {value!r}")
    return value


def _optional_int(payload: Dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


@dataclass(frozen=True)
class ImageObject:
    url: str
    height: Optional[int] = None
    width: Optional[int] = None

    @staticmethod
    def from_dict(payload: Any) -> "ImageObject":
        url = _require(payload, "url", str, "image")
        return ImageObject(url=url, height=_optional_int(payload, "height"), width=_optional_int(payload, "width"))

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "height": self.height, "width": self.width}


@dataclass(frozen=True)
class Artist:
    name: str

    @staticmethod
    def from_dict(payload: Any) -> "Artist":
        return Artist(name=_require(payload, "name", str, "artist"))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class Album:
    """Album artwork holder.

    Spotify orders ``images`` by decreasing resolution; the first one is what
    the widget shows.
    """

    images: Tuple[ImageObject, ...] = ()

    @staticmethod
    def from_dict(payload: Any) -> "Album":
        images = _require(payload, "images", list, "album")
        return Album(images=tuple(ImageObject.from_dict(i) for i in images))

    @property
    def artwork_url(self) -> Optional[str]:
        return self.images[0].url if self.images else None

    def to_dict(self) -> Dict[str, Any]:
        return {"images": [i.to_dict() for i in self.images]}


@dataclass(frozen=True)
class Track:
    id: str
    name: str
    album: Album
    artists: Tuple[Artist, ...] = ()

    @staticmethod
    def from_dict(payload: Any) -> "Track":
        artists: List[Any] = _require(payload, "artists", list, "track")
        return Track(
            id=_require(payload, "id", str, "track"),
            name=_require(payload, "name", str, "track"),
            album=Album.from_dict(_require(payload, "album", dict, "track")),
            artists=tuple(Artist.from_dict(a) for a in artists),
        )

    @property
    def artist_names(self) -> str:
        return ", ".join(a.name for a in self.artists)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "album": self.album.to_dict(),
            "artists": [a.to_dict() for a in self.artists],
        }


@dataclass(frozen=True)
class PlaybackSnapshot:
    """Body of ``GET /v1/me/player/currently-playing``.

    ``item`` is None when nothing is playing; that is a valid state, not an error.
    """

    item: Optional[Track]
    is_playing: bool

    @staticmethod
    def from_dict(payload: Any) -> "PlaybackSnapshot":
        is_playing = _require(payload, "is_playing", bool, "playback")
        raw_item = payload.get("item")
        return PlaybackSnapshot(
            item=Track.from_dict(raw_item) if raw_item is not None else None,
            is_playing=is_playing,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item": self.item.to_dict() if self.item is not None else None,
            "is_playing": self.is_playing,
        }
