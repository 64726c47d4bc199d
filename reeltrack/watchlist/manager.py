"""Watchlist state and episode progress for one user and one media kind."""

import logging
import math
from dataclasses import replace
from typing import Callable, Optional

from reeltrack.errors import NotFoundError, PersistenceError, StaleDocumentError, ValidationError
from reeltrack.models import (
    COMPLETED,
    LIST_NAMES,
    TV,
    WATCHING,
    ActivityRecord,
    StepResult,
    WatchlistDocument,
    WatchlistEntry,
    check_kind,
    utcnow,
)
from reeltrack.watchlist.activity import describe_move
from reeltrack.watchlist.locks import LockRegistry, default_registry

logger = logging.getLogger(__name__)


def parse_rating(rating) -> Optional[float]:
    """Accept a number or numeric string on the 0-10 scale. None clears the rating."""
    if rating is None:
        return None
    if isinstance(rating, bool):
        raise ValidationError("Rating must be a number between 0 and 10")
    if isinstance(rating, str):
        rating = rating.strip()
        if not rating:
            return None
    try:
        value = float(rating)
    except (TypeError, ValueError):
        raise ValidationError(f"Rating must be a number between 0 and 10, got {rating!r}")
    if math.isnan(value) or not 0 <= value <= 10:
        raise ValidationError(f"Rating must be between 0 and 10, got {rating!r}")
    return value


class WatchlistManager:
    """
    Keeps the "one title, at most one list" invariant across watching,
    completed and planned, and tracks season/episode progress of shows.

    The in-memory document is a cache of the stored one. Every mutation is
    applied to a copy under the document lock and only replaces the cache
    once the write has landed, so a failed write leaves it untouched.
    """

    def __init__(
        self,
        database,
        content,
        user_id: str,
        kind: str,
        locks: Optional[LockRegistry] = None,
    ):
        self.db = database
        self.content = content
        self.user_id = user_id
        self.kind = check_kind(kind)
        self.locks = locks or default_registry
        self._lock = self.locks.document_lock(user_id, kind)
        self._document: Optional[WatchlistDocument] = None

    # ---- reads ----

    def refresh(self) -> WatchlistDocument:
        """Reload the document from the database."""
        with self._lock:
            document = self.db.get_watchlist(self.user_id, self.kind)
            self._document = document or WatchlistDocument.empty(self.user_id, self.kind)
            return self._document

    @property
    def document(self) -> WatchlistDocument:
        with self._lock:
            if self._document is None:
                return self.refresh()
            return self._document

    def get_document(self) -> WatchlistDocument:
        """A copy of the current document."""
        return self.document.copy()

    def list_status(self, media_id: int) -> Optional[str]:
        """Name of the list holding media_id, or None."""
        return self.document.locate(media_id)

    # ---- write path ----

    def _commit(self, mutate: Callable[[WatchlistDocument], tuple]):
        """
        Run mutate(copy) -> (result, dirty) against the latest document and
        persist the copy if dirty. A lost compare-and-swap reloads and
        re-applies once.
        """
        with self._lock:
            for attempt in range(2):
                working = self.document.copy()
                result, dirty = mutate(working)
                if not dirty:
                    return result
                try:
                    working.version = self.db.save_watchlist(working)
                except StaleDocumentError:
                    if attempt == 0:
                        logger.warning(f"{self.kind} watchlist of {self.user_id} changed underneath us, retrying")
                        self.refresh()
                        continue
                    raise
                self._document = working
                return result

    def _record_activity(self, entry: WatchlistEntry, action: str) -> None:
        record = ActivityRecord(
            user_id=self.user_id,
            media=entry.ref,
            title=entry.title,
            poster_path=entry.poster_path,
            action=action,
        )
        try:
            self.db.add_activity(record)
        except PersistenceError as e:
            # The list change itself is saved; only the feed line is lost
            logger.error(f"Could not record activity '{action}' for {entry.title}: {e}")

    def _check_list(self, list_name: str) -> None:
        if list_name not in LIST_NAMES:
            raise ValidationError(f"Unknown list: {list_name!r}")

    # ---- operations ----

    def move_to_list(self, entry: WatchlistEntry, target: str) -> Optional[str]:
        """
        Put entry on target, taking it off whichever list held it.

        Returns the list it was on before, or None for a fresh add.
        """
        self._check_list(target)
        if entry.kind != self.kind:
            raise ValidationError(f"Cannot put a {entry.kind} on the {self.kind} watchlist")

        def mutate(doc: WatchlistDocument):
            previous = doc.locate(entry.id)
            existing = doc.find(entry.id, previous) if previous else None

            moved = replace(entry, genres=list(entry.genres))
            position = None
            if existing is not None:
                if moved.rating is None:
                    moved.rating = existing.rating
                moved.added_at = existing.added_at or moved.added_at
                if previous == target:
                    position = doc.ids(target).index(entry.id)
                doc.set_list(previous, [e for e in doc.get_list(previous) if e.id != entry.id])
            moved.added_at = moved.added_at or utcnow().isoformat()

            if moved.kind == TV:
                if target == COMPLETED:
                    final = moved.final_season_episodes or moved.total_episodes_in_current_season or 1
                    moved.current_season = moved.total_seasons or 1
                    moved.total_episodes_in_current_season = final
                    moved.current_episode = final
                elif existing is None:
                    moved.current_season = 1
                    moved.current_episode = 1
                else:
                    moved.current_season = existing.current_season or 1
                    moved.current_episode = existing.current_episode or 1
                    moved.total_episodes_in_current_season = (
                        existing.total_episodes_in_current_season or moved.total_episodes_in_current_season
                    )

            if position is None:
                doc.get_list(target).append(moved)
            else:
                # Re-adding to the same list keeps its place
                doc.get_list(target).insert(position, moved)
            return (previous, moved), True

        previous, moved = self._commit(mutate)
        logger.info(f"{self.user_id}: {moved.title} {previous or 'new'} -> {target}")
        self._record_activity(moved, describe_move(target, previous))
        return previous

    def remove_from_list(self, media_id: int, list_name: str) -> None:
        self._check_list(list_name)

        def mutate(doc: WatchlistDocument):
            if doc.find(media_id, list_name) is None:
                raise NotFoundError(f"{self.kind} {media_id} is not on {list_name}")
            doc.set_list(list_name, [e for e in doc.get_list(list_name) if e.id != media_id])
            return None, True

        self._commit(mutate)

    def update_rating(self, media_id: int, list_name: str, rating) -> None:
        self._check_list(list_name)
        value = parse_rating(rating)

        def mutate(doc: WatchlistDocument):
            entry = doc.find(media_id, list_name)
            if entry is None:
                raise NotFoundError(f"{self.kind} {media_id} is not on {list_name}")
            entry.rating = value
            return None, True

        self._commit(mutate)

    def step_episode(self, media_id: int, list_name: str, direction: int) -> StepResult:
        """
        Move a show one episode forward (+1) or back (-1).

        Passing the last episode of a season rolls into the next one; passing
        the last episode of the last season while watching moves the show to
        completed. Stepping back from S1E1 does nothing.
        """
        self._check_list(list_name)
        if self.kind != TV:
            raise ValidationError("Episode progress only applies to TV shows")
        if direction not in (1, -1):
            raise ValidationError(f"direction must be +1 or -1, got {direction!r}")

        def episode_count(season: int) -> int:
            return self.content.season_episode_count(media_id, season)

        def mutate(doc: WatchlistDocument):
            entry = doc.find(media_id, list_name)
            if entry is None:
                raise NotFoundError(f"{self.kind} {media_id} is not on {list_name}")

            season = entry.current_season or 1
            episode = entry.current_episode or 1
            total_seasons = entry.total_seasons or 1
            season_total = entry.total_episodes_in_current_season or episode_count(season)
            before = (season, episode, entry.total_episodes_in_current_season)

            if direction == 1:
                if episode < season_total:
                    episode += 1
                elif season < total_seasons:
                    season += 1
                    episode = 1
                    season_total = episode_count(season)
                elif list_name == WATCHING:
                    entry.current_season = total_seasons
                    entry.current_episode = season_total
                    entry.total_episodes_in_current_season = season_total
                    doc.watching = [e for e in doc.watching if e.id != media_id]
                    doc.completed.append(entry)
                    return (StepResult(total_seasons, season_total, completed=True), entry), True
            else:
                if episode > 1:
                    episode -= 1
                elif season > 1:
                    season -= 1
                    season_total = episode_count(season)
                    episode = season_total

            entry.current_season = season
            entry.current_episode = episode
            entry.total_episodes_in_current_season = season_total
            result = StepResult(season, episode, completed=list_name == COMPLETED)
            return (result, None), before != (season, episode, season_total)

        with self.locks.single_flight((self.user_id, self.kind, media_id)):
            result, finished = self._commit(mutate)

        if finished is not None:
            logger.info(f"{self.user_id}: finished {finished.title}")
            self._record_activity(finished, "completed")
        return result
