"""Profile statistics computed from watchlist documents."""

from typing import Optional

from reeltrack.models import COMPLETED, LIST_NAMES, MOVIE, TV, WatchlistDocument

DEFAULT_MOVIE_RUNTIME = 120  # minutes
EPISODE_LENGTH = 45  # minutes


def movie_hours(document: WatchlistDocument) -> float:
    minutes = sum(e.runtime or DEFAULT_MOVIE_RUNTIME for e in document.get_list(COMPLETED))
    return minutes / 60


def tv_hours(document: WatchlistDocument) -> float:
    return sum(EPISODE_LENGTH * (e.total_episodes or 1) / 60 for e in document.get_list(COMPLETED))


def list_stats(document: Optional[WatchlistDocument], kind: str) -> dict:
    """Counts per list, total, and rounded hours watched for one media kind."""
    stats = {name: 0 for name in LIST_NAMES}
    stats.update({"total": 0, "hours_watched": 0.0})
    if document is None:
        return stats

    for name in LIST_NAMES:
        stats[name] = len(document.get_list(name))
    stats["total"] = sum(stats[name] for name in LIST_NAMES)
    hours = movie_hours(document) if kind == MOVIE else tv_hours(document)
    stats["hours_watched"] = round(hours, 1)
    return stats


def profile_stats(database, user_id: str) -> dict:
    """Stats for both media kinds of one user."""
    return {
        kind: list_stats(database.get_watchlist(user_id, kind), kind)
        for kind in (MOVIE, TV)
    }
