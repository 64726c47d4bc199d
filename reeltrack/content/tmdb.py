"""TMDB API client for browsing and title details."""

import logging
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from reeltrack.errors import NotFoundError, QueryServiceError
from reeltrack.models import MOVIE, WatchlistEntry, check_kind, utcnow

logger = logging.getLogger(__name__)


class TMDBClient:
    """Client for The Movie Database API."""

    BASE_URL = "https://api.themoviedb.org/3"

    def __init__(self, api_key: str, timeout: float = 15, retries: int = 1):
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset(["GET"]),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

    def _get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """Make a GET request to TMDB API."""
        url = f"{self.BASE_URL}{endpoint}"
        request_params: dict[str, Any] = {"api_key": self.api_key}
        if params:
            request_params.update(params)

        try:
            response = self.session.get(url, params=request_params, timeout=self.timeout)
            if response.status_code == 404:
                raise NotFoundError(f"TMDB resource not found: {endpoint}")
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error(f"TMDB API error for {endpoint}: {e}")
            raise QueryServiceError(f"TMDB request failed for {endpoint}") from e
        except ValueError as e:
            logger.error(f"TMDB returned invalid JSON for {endpoint}: {e}")
            raise QueryServiceError(f"TMDB returned invalid JSON for {endpoint}") from e

    # ---- list endpoints ----

    def search(self, kind: str, query: str, page: int = 1) -> dict:
        """Search movies or shows by title."""
        check_kind(kind)
        return self._get(
            f"/search/{kind}",
            {"query": query, "page": page, "include_adult": "false"},
        )

    def discover(self, kind: str, params: Optional[dict] = None, page: int = 1) -> dict:
        """Discover movies or shows. params are passed through as TMDB filters."""
        check_kind(kind)
        request_params = {"page": page, "include_adult": "false"}
        if params:
            request_params.update(params)
        return self._get(f"/discover/{kind}", request_params)

    def trending(self, kind: str, page: int = 1, window: str = "week") -> dict:
        check_kind(kind)
        return self._get(f"/trending/{kind}/{window}", {"page": page})

    def similar(self, kind: str, media_id: int, page: int = 1) -> dict:
        check_kind(kind)
        return self._get(f"/{kind}/{media_id}/similar", {"page": page})

    # ---- title endpoints ----

    def get_details(self, kind: str, media_id: int) -> dict:
        """Get movie or show details."""
        check_kind(kind)
        return self._get(f"/{kind}/{media_id}")

    def get_credits(self, kind: str, media_id: int) -> dict:
        check_kind(kind)
        return self._get(f"/{kind}/{media_id}/credits")

    def get_watch_providers(self, kind: str, media_id: int, region: str = "US") -> dict:
        """Get streaming/rent/buy providers for one region."""
        check_kind(kind)
        data = self._get(f"/{kind}/{media_id}/watch/providers")
        return (data.get("results") or {}).get(region) or {}

    def get_season(self, tv_id: int, season: int) -> dict:
        return self._get(f"/tv/{tv_id}/season/{season}")

    def season_episode_count(self, tv_id: int, season: int) -> int:
        """Number of episodes in a season, at least 1."""
        data = self.get_season(tv_id, season)
        return len(data.get("episodes") or []) or 1

    def get_genres(self, kind: str) -> list[dict]:
        check_kind(kind)
        data = self._get(f"/genre/{kind}/list", {"language": "en-US"})
        return data.get("genres", [])


def entry_from_details(details: dict, kind: str) -> WatchlistEntry:
    """
    Build a watchlist entry payload from a TMDB details record.

    For shows the progress fields describe season 1; the last season's
    episode count is kept for the mark-as-finished shortcut.
    """
    check_kind(kind)
    entry = WatchlistEntry(
        id=int(details["id"]),
        kind=kind,
        title=(details.get("title") if kind == MOVIE else details.get("name")) or "",
        poster_path=details.get("poster_path"),
        release_date=details.get("release_date") if kind == MOVIE else details.get("first_air_date"),
        vote_average=details.get("vote_average"),
        genres=list(details.get("genres") or []),
        overview=details.get("overview"),
        added_at=utcnow().isoformat(),
    )

    if kind == MOVIE:
        entry.runtime = details.get("runtime")
        return entry

    seasons = {
        s.get("season_number"): s.get("episode_count") or 0
        for s in details.get("seasons") or []
    }
    total_seasons = details.get("number_of_seasons") or 1
    entry.total_seasons = total_seasons
    entry.total_episodes = details.get("number_of_episodes")
    entry.total_episodes_in_current_season = seasons.get(1) or 1
    entry.final_season_episodes = seasons.get(total_seasons) or 1
    return entry
