"""Merge parallel TMDB queries into one browse result list."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Optional

from reeltrack.errors import NotFoundError, QueryServiceError, ValidationError
from reeltrack.models import MOVIE, BrowseFilters, ResultItem, ResultList

logger = logging.getLogger(__name__)

TOP_RATED = "vote_average.desc"
TRENDING = "trending"
EPOCH = date(1970, 1, 1)
# TMDB rejects list pages above this
MAX_PAGES = 500


@dataclass
class SubQuery:
    """One remote list query."""

    endpoint: str  # search, discover, trending
    kind: str
    page: int
    params: dict = field(default_factory=dict)
    blend: bool = False  # extra first-page results, not part of the paged list


def parse_date(value: Optional[str]) -> date:
    """Parse a TMDB date string; missing or malformed dates sort as the epoch."""
    if not value:
        return EPOCH
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return EPOCH


def release_year(item: ResultItem) -> Optional[int]:
    rd = item.release_date or ""
    if len(rd) >= 4 and rd[:4].isdigit():
        return int(rd[:4])
    return None


def dedupe(items: list[ResultItem], seen: Optional[set] = None) -> list[ResultItem]:
    """Keep the first occurrence of each (id, kind), in encounter order. Updates seen."""
    seen = seen if seen is not None else set()
    unique = []
    for item in items:
        if item.key in seen:
            continue
        seen.add(item.key)
        unique.append(item)
    return unique


def post_filter(items: list[ResultItem], filters: BrowseFilters) -> list[ResultItem]:
    """Apply genre and year filters for endpoints that can't express them."""
    filtered = items
    if filters.genre is not None:
        filtered = [i for i in filtered if filters.genre in i.genre_ids]
    if filters.year is not None:
        filtered = [i for i in filtered if release_year(i) == filters.year]
    return filtered


def _check_content_type(filters: BrowseFilters) -> None:
    try:
        filters.kinds()
    except ValueError as e:
        raise ValidationError(str(e)) from e


def sort_results(items: list[ResultItem], sort: str) -> list[ResultItem]:
    if sort == TOP_RATED:
        return sorted(items, key=lambda i: i.vote_average, reverse=True)
    if sort == "release_date.desc":
        return sorted(items, key=lambda i: parse_date(i.release_date), reverse=True)
    if sort == "release_date.asc":
        return sorted(items, key=lambda i: parse_date(i.release_date))
    return items


class ContentAggregator:
    """
    Issues one query per content kind (plus blend queries for "top rated"),
    in parallel, and merges the responses.

    The most recent search/discover call owns the current result list;
    load_more extends it. A load_more that finishes after a newer
    search/discover started is discarded.
    """

    MAX_WORKERS = 4

    def __init__(
        self,
        client,
        min_vote_count: int = 100,
        top_rated_min_votes: int = 500,
    ):
        self.client = client
        self.min_vote_count = min_vote_count
        self.top_rated_min_votes = top_rated_min_votes
        self._lock = threading.Lock()
        self._generation = 0
        self.current: Optional[ResultList] = None

    # ---- query planning ----

    def _discover_params(self, kind: str, filters: BrowseFilters) -> dict:
        params: dict = {}
        if filters.genre is not None:
            params["with_genres"] = str(filters.genre)
        if filters.year is not None:
            if kind == MOVIE:
                params["year"] = filters.year
            else:
                params["first_air_date_year"] = filters.year
        if filters.provider is not None:
            params["with_watch_providers"] = str(filters.provider)
            params["watch_region"] = filters.region
        return params

    def plan(self, query: Optional[str], filters: BrowseFilters, page: int) -> list[SubQuery]:
        """Build the list of remote queries for a browse request."""
        queries = []
        for kind in filters.kinds():
            if query:
                queries.append(SubQuery("search", kind, page, {"query": query}))
            elif filters.sort == TRENDING:
                queries.append(SubQuery("trending", kind, page))
            elif filters.sort == TOP_RATED:
                params = self._discover_params(kind, filters)
                queries.append(
                    SubQuery(
                        "discover",
                        kind,
                        page,
                        {**params, "sort_by": TOP_RATED, "vote_count.gte": self.top_rated_min_votes},
                    )
                )
                # Blend in well-known titles on the first page only
                if page == 1:
                    queries.append(
                        SubQuery("discover", kind, 1, {**params, "sort_by": "popularity.desc"}, blend=True)
                    )
            else:
                params = self._discover_params(kind, filters)
                params["sort_by"] = filters.sort
                params["vote_count.gte"] = self.min_vote_count
                queries.append(SubQuery("discover", kind, page, params))
        return queries

    def _run(self, sub: SubQuery) -> dict:
        if sub.endpoint == "search":
            return self.client.search(sub.kind, sub.params["query"], page=sub.page)
        if sub.endpoint == "trending":
            return self.client.trending(sub.kind, page=sub.page)
        return self.client.discover(sub.kind, sub.params, page=sub.page)

    def fetch(self, queries: list[SubQuery]) -> tuple[list[ResultItem], int]:
        """
        Run queries in parallel. Returns merged items in issue order and the
        largest page count reported by the paged (non-blend) queries, capped
        at MAX_PAGES. Failed sub-queries are dropped; if all of them fail,
        QueryServiceError is raised.
        """
        if not queries:
            return [], 0

        def run(sub: SubQuery):
            try:
                return self._run(sub)
            except (QueryServiceError, NotFoundError) as e:
                logger.warning(f"Dropping {sub.endpoint}/{sub.kind} page {sub.page}: {e}")
                return None

        with ThreadPoolExecutor(max_workers=min(self.MAX_WORKERS, len(queries))) as pool:
            responses = list(pool.map(run, queries))

        if all(r is None for r in responses):
            raise QueryServiceError("All content queries failed")

        merged: list[ResultItem] = []
        total_pages = 0
        for sub, data in zip(queries, responses):
            if data is None:
                continue
            if not sub.blend:
                total_pages = max(total_pages, int(data.get("total_pages") or 1))
            for raw in data.get("results") or []:
                if raw.get("id") is None:
                    continue
                merged.append(ResultItem.from_tmdb(raw, sub.kind))
        return merged, min(total_pages or 1, MAX_PAGES)

    # ---- public operations ----

    def _collect(self, result: ResultList, page: int) -> tuple[list[ResultItem], int]:
        queries = self.plan(result.query, result.filters, page)
        items, total_pages = self.fetch(queries)

        needs_post_filter = any(q.endpoint != "discover" for q in queries)
        if needs_post_filter:
            items = post_filter(items, result.filters)

        return items, total_pages

    def _start(self, query: Optional[str], filters: BrowseFilters) -> ResultList:
        with self._lock:
            self._generation += 1
            generation = self._generation

        result = ResultList(generation=generation, query=query, filters=filters)
        items, total_pages = self._collect(result, 1)
        result.items = sort_results(dedupe(items, result.seen), filters.sort)
        result.total_pages = total_pages

        with self._lock:
            if generation == self._generation:
                self.current = result
        return result

    def search(self, query: str, content_type: str = "any", filters: Optional[BrowseFilters] = None) -> ResultList:
        """Search movies and/or shows by title."""
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is empty")
        filters = replace(filters or BrowseFilters(), content_type=content_type)
        _check_content_type(filters)
        logger.debug(f"Searching {content_type} for {query!r}")
        return self._start(query, filters)

    def discover(self, filters: Optional[BrowseFilters] = None) -> ResultList:
        """Browse movies and/or shows by filters."""
        filters = filters or BrowseFilters()
        _check_content_type(filters)
        return self._start(None, filters)

    def load_more(self) -> ResultList:
        """Fetch the next page of the current result list and append it."""
        with self._lock:
            result = self.current
        if result is None:
            raise ValidationError("Nothing to load more of")
        if not result.has_more:
            return result

        next_page = result.page + 1
        items, total_pages = self._collect(result, next_page)

        with self._lock:
            if result.generation != self._generation:
                logger.debug(f"Discarding stale page {next_page} of generation {result.generation}")
                return self.current
            new_items = sort_results(dedupe(items, result.seen), result.filters.sort)
            result.items.extend(new_items)
            result.page = next_page
            result.total_pages = max(result.total_pages, total_pages)
            return result

    def genres(self) -> list[dict]:
        """Movie and TV genres merged, unique by id."""
        by_id: dict = {}
        for kind in ("movie", "tv"):
            for genre in self.client.get_genres(kind):
                by_id.setdefault(genre["id"], genre)
        return list(by_id.values())

    def title_details(self, kind: str, media_id: int, region: str = "US") -> dict:
        """Details page bundle: details, cast, providers for region and similar titles."""
        details = self.client.get_details(kind, media_id)

        cast = []
        try:
            cast = (self.client.get_credits(kind, media_id).get("cast") or [])[:12]
        except (QueryServiceError, NotFoundError) as e:
            logger.warning(f"Credits failed for {kind} {media_id}: {e}")

        providers = {}
        try:
            providers = self.client.get_watch_providers(kind, media_id, region)
        except (QueryServiceError, NotFoundError) as e:
            logger.warning(f"Watch providers failed for {kind} {media_id}: {e}")

        similar = []
        try:
            data = self.client.similar(kind, media_id)
            similar = [ResultItem.from_tmdb(r, kind) for r in data.get("results") or []]
        except (QueryServiceError, NotFoundError) as e:
            logger.warning(f"Similar titles failed for {kind} {media_id}: {e}")

        return {
            "details": details,
            "cast": cast,
            "providers": providers,
            "similar": [s.to_dict() for s in similar],
        }
