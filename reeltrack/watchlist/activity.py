"""Activity descriptions and feeds."""

from typing import Optional

from reeltrack.models import COMPLETED, MEDIA_KINDS, PLANNED, WATCHING, ActivityRecord

# (target list, is a fresh add) -> action text
ACTION_TEXT = {
    (WATCHING, True): "started watching",
    (WATCHING, False): "moved to watching",
    (COMPLETED, True): "completed",
    (COMPLETED, False): "marked as completed",
    (PLANNED, True): "added to plan to watch",
    (PLANNED, False): "moved to plan to watch",
}


def describe_move(target: str, previous: Optional[str]) -> str:
    """
    Action text for a move into target.

    Starting a planned title counts as starting it, not moving it.
    """
    fresh = previous is None or (target == WATCHING and previous == PLANNED)
    return ACTION_TEXT.get((target, fresh), "updated status")


def recent_activity(database, user_ids: list[str], limit: int = 10) -> list[ActivityRecord]:
    """Movie and TV activities of user_ids, newest first."""
    records: list[ActivityRecord] = []
    for kind in MEDIA_KINDS:
        records.extend(database.get_activities(user_ids, kind, limit=limit))
    records.sort(key=lambda r: r.timestamp, reverse=True)
    return records[:limit]
