"""Data models for the tracker."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

MOVIE = "movie"
TV = "tv"
MEDIA_KINDS = (MOVIE, TV)

WATCHING = "watching"
COMPLETED = "completed"
PLANNED = "planned"
LIST_NAMES = (WATCHING, COMPLETED, PLANNED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_kind(kind: str) -> str:
    if kind not in MEDIA_KINDS:
        raise ValueError(f"Unknown media kind: {kind!r}")
    return kind


@dataclass(frozen=True)
class MediaRef:
    """Identity of a movie or TV show."""

    id: int
    kind: str

    def __post_init__(self) -> None:
        check_kind(self.kind)


@dataclass
class WatchlistEntry:
    """A title on one of the user's lists, with denormalized display fields."""

    id: int
    kind: str
    title: str
    poster_path: Optional[str] = None
    release_date: Optional[str] = None
    vote_average: Optional[float] = None
    genres: list = field(default_factory=list)
    overview: Optional[str] = None
    runtime: Optional[int] = None  # minutes, movies only
    rating: Optional[float] = None  # Scale 0-10
    added_at: Optional[str] = None

    # TV progress
    current_season: Optional[int] = None
    current_episode: Optional[int] = None
    total_seasons: Optional[int] = None
    total_episodes_in_current_season: Optional[int] = None
    total_episodes: Optional[int] = None
    final_season_episodes: Optional[int] = None

    @property
    def ref(self) -> MediaRef:
        return MediaRef(self.id, self.kind)

    @property
    def is_tv(self) -> bool:
        return self.kind == TV

    def to_dict(self) -> dict:
        """Convert to the persisted document shape."""
        data = {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "poster_path": self.poster_path,
            "release_date": self.release_date,
            "vote_average": self.vote_average,
            "genres": list(self.genres),
            "overview": self.overview,
            "rating": self.rating,
            "added_at": self.added_at,
        }
        if self.is_tv:
            data.update(
                {
                    "currentSeason": self.current_season,
                    "currentEpisode": self.current_episode,
                    "totalSeasons": self.total_seasons,
                    "totalEpisodesInCurrentSeason": self.total_episodes_in_current_season,
                    "totalEpisodes": self.total_episodes,
                    "finalSeasonEpisodes": self.final_season_episodes,
                }
            )
        else:
            data["runtime"] = self.runtime
        return data

    @classmethod
    def from_dict(cls, data: dict, kind: str) -> "WatchlistEntry":
        """Build an entry from a persisted document item."""
        return cls(
            id=int(data["id"]),
            kind=check_kind(data.get("kind") or kind),
            title=data.get("title") or data.get("name") or "",
            poster_path=data.get("poster_path"),
            release_date=data.get("release_date") or data.get("first_air_date"),
            vote_average=data.get("vote_average"),
            genres=list(data.get("genres") or []),
            overview=data.get("overview"),
            runtime=data.get("runtime"),
            rating=data.get("rating"),
            added_at=data.get("added_at") or data.get("added_date"),
            current_season=data.get("currentSeason"),
            current_episode=data.get("currentEpisode"),
            total_seasons=data.get("totalSeasons"),
            total_episodes_in_current_season=data.get("totalEpisodesInCurrentSeason"),
            total_episodes=data.get("totalEpisodes"),
            final_season_episodes=data.get("finalSeasonEpisodes"),
        )


@dataclass
class WatchlistDocument:
    """One user's lists for one media kind."""

    user_id: str
    kind: str
    watching: list[WatchlistEntry] = field(default_factory=list)
    completed: list[WatchlistEntry] = field(default_factory=list)
    planned: list[WatchlistEntry] = field(default_factory=list)
    version: int = 0

    def get_list(self, list_name: str) -> list[WatchlistEntry]:
        if list_name not in LIST_NAMES:
            raise ValueError(f"Unknown list: {list_name!r}")
        return getattr(self, list_name)

    def set_list(self, list_name: str, entries: list[WatchlistEntry]) -> None:
        if list_name not in LIST_NAMES:
            raise ValueError(f"Unknown list: {list_name!r}")
        setattr(self, list_name, entries)

    def locate(self, media_id: int) -> Optional[str]:
        """Return the name of the list holding media_id, if any."""
        for list_name in LIST_NAMES:
            if any(e.id == media_id for e in self.get_list(list_name)):
                return list_name
        return None

    def find(self, media_id: int, list_name: str) -> Optional[WatchlistEntry]:
        for entry in self.get_list(list_name):
            if entry.id == media_id:
                return entry
        return None

    def ids(self, list_name: str) -> list[int]:
        return [e.id for e in self.get_list(list_name)]

    def copy(self) -> "WatchlistDocument":
        return copy.deepcopy(self)

    def lists_to_dict(self) -> dict:
        return {name: [e.to_dict() for e in self.get_list(name)] for name in LIST_NAMES}

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "kind": self.kind, **self.lists_to_dict()}

    @classmethod
    def empty(cls, user_id: str, kind: str) -> "WatchlistDocument":
        return cls(user_id=user_id, kind=check_kind(kind))


@dataclass
class ActivityRecord:
    """Append-only log line describing a watchlist change."""

    user_id: str
    media: MediaRef
    title: str
    poster_path: Optional[str]
    action: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "media_id": self.media.id,
            "kind": self.media.kind,
            "title": self.title,
            "poster_path": self.poster_path,
            "action": self.action,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FriendRequest:
    """A pending, accepted or declined friend request."""

    id: int
    sender_id: str
    receiver_id: str
    status: str = "pending"
    created_at: Optional[datetime] = None
    sender_username: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sender_username": self.sender_username,
        }


@dataclass
class StepResult:
    """Outcome of an episode step."""

    new_season: int
    new_episode: int
    completed: bool = False


@dataclass
class ResultItem:
    """A search, discover or trending hit tagged with its media kind."""

    id: int
    kind: str
    title: str
    poster_path: Optional[str] = None
    release_date: Optional[str] = None
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    genre_ids: list[int] = field(default_factory=list)
    overview: Optional[str] = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.id, self.kind)

    @classmethod
    def from_tmdb(cls, raw: dict, kind: str) -> "ResultItem":
        """Build a result from a TMDB list item; kind comes from the query that produced it."""
        check_kind(kind)
        if kind == MOVIE:
            title = raw.get("title") or raw.get("original_title") or ""
            release_date = raw.get("release_date")
        else:
            title = raw.get("name") or raw.get("original_name") or ""
            release_date = raw.get("first_air_date")
        return cls(
            id=int(raw["id"]),
            kind=kind,
            title=title,
            poster_path=raw.get("poster_path"),
            release_date=release_date or None,
            vote_average=round(float(raw.get("vote_average") or 0) * 10) / 10,
            vote_count=int(raw.get("vote_count") or 0),
            popularity=float(raw.get("popularity") or 0),
            genre_ids=list(raw.get("genre_ids") or []),
            overview=raw.get("overview"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "poster_path": self.poster_path,
            "release_date": self.release_date,
            "vote_average": self.vote_average,
            "vote_count": self.vote_count,
            "popularity": self.popularity,
            "genre_ids": list(self.genre_ids),
            "overview": self.overview,
        }


@dataclass
class BrowseFilters:
    """Browse page filters."""

    content_type: str = "any"  # any, movie, tv
    genre: Optional[int] = None
    year: Optional[int] = None
    provider: Optional[int] = None
    sort: str = "popularity.desc"
    region: str = "US"

    def kinds(self) -> list[str]:
        if self.content_type == "any":
            return [MOVIE, TV]
        return [check_kind(self.content_type)]


@dataclass
class ResultList:
    """Merged, de-duplicated results of one browse query and its loaded pages."""

    items: list[ResultItem] = field(default_factory=list)
    page: int = 1
    total_pages: int = 0
    generation: int = 0
    query: Optional[str] = None
    filters: BrowseFilters = field(default_factory=BrowseFilters)
    seen: set = field(default_factory=set)

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "page": self.page,
            "total_pages": self.total_pages,
            "has_more": self.has_more,
        }
