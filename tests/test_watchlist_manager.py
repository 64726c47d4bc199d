import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from reeltrack.errors import (
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
    StaleDocumentError,
    ValidationError,
)
from reeltrack.models import COMPLETED, LIST_NAMES, PLANNED, WATCHING, WatchlistEntry
from reeltrack.store.database import Database
from reeltrack.watchlist.locks import LockRegistry
from reeltrack.watchlist.manager import WatchlistManager, parse_rating


class _StubContent:
    """Episode counts per season, recording every lookup."""

    def __init__(self, seasons: dict[int, int] | None = None) -> None:
        self.seasons = seasons or {}
        self.calls: list[tuple[int, int]] = []

    def season_episode_count(self, tv_id: int, season: int) -> int:
        self.calls.append((tv_id, season))
        return self.seasons.get(season, 1)


def _matrix() -> WatchlistEntry:
    return WatchlistEntry(id=603, kind="movie", title="The Matrix", runtime=136)


def _show(total_seasons: int = 2, first_season: int = 3, final_season: int = 5) -> WatchlistEntry:
    return WatchlistEntry(
        id=1399,
        kind="tv",
        title="Game of Thrones",
        total_seasons=total_seasons,
        total_episodes_in_current_season=first_season,
        total_episodes=first_season + final_season,
        final_season_episodes=final_season,
    )


class _ManagerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = Database(Path(self._tmp.name) / "reeltrack.db")
        self.locks = LockRegistry()
        self.content = _StubContent({1: 3, 2: 5})

    def tearDown(self) -> None:
        self.db.engine.dispose()
        self._tmp.cleanup()

    def manager(self, kind: str = "movie", user_id: str = "u1", locks: LockRegistry | None = None) -> WatchlistManager:
        return WatchlistManager(self.db, self.content, user_id, kind, locks=locks or self.locks)

    def actions(self, kind: str, user_id: str = "u1") -> list[str]:
        return [a.action for a in self.db.get_activities([user_id], kind, limit=50)]


class TestMoveToList(_ManagerTestCase):
    def test_id_is_on_exactly_one_list_after_every_move(self) -> None:
        manager = self.manager()
        for target in [PLANNED, WATCHING, COMPLETED, WATCHING, PLANNED, PLANNED, COMPLETED]:
            manager.move_to_list(_matrix(), target)
            doc = self.db.get_watchlist("u1", "movie")
            holders = [name for name in LIST_NAMES if 603 in doc.ids(name)]
            self.assertEqual(holders, [target])
            self.assertEqual(sum(doc.ids(name).count(603) for name in LIST_NAMES), 1)

    def test_readding_to_same_list_is_idempotent(self) -> None:
        manager = self.manager()
        manager.move_to_list(WatchlistEntry(id=1, kind="movie", title="Alien"), WATCHING)
        self.assertIsNone(manager.move_to_list(_matrix(), WATCHING))
        manager.move_to_list(WatchlistEntry(id=2, kind="movie", title="Heat"), WATCHING)
        once = self.db.get_watchlist("u1", "movie").lists_to_dict()

        previous = manager.move_to_list(_matrix(), WATCHING)

        self.assertEqual(previous, WATCHING)
        self.assertEqual(self.db.get_watchlist("u1", "movie").lists_to_dict(), once)

    def test_scenario_planned_then_watching(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), PLANNED)
        doc = self.db.get_watchlist("u1", "movie")
        self.assertEqual(doc.ids(PLANNED), [603])
        self.assertEqual(doc.watching, [])
        self.assertEqual(doc.completed, [])
        before = self.actions("movie")

        previous = manager.move_to_list(_matrix(), WATCHING)

        doc = self.db.get_watchlist("u1", "movie")
        self.assertEqual(previous, PLANNED)
        self.assertEqual(doc.planned, [])
        self.assertEqual(doc.ids(WATCHING), [603])
        after = self.actions("movie")
        self.assertEqual(len(after), len(before) + 1)
        self.assertEqual(after[0], "started watching")

    def test_activity_text_follows_previous_list(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), COMPLETED)
        manager.move_to_list(_matrix(), PLANNED)
        manager.move_to_list(_matrix(), WATCHING)
        manager.move_to_list(_matrix(), COMPLETED)
        manager.move_to_list(_matrix(), WATCHING)
        self.assertEqual(
            self.actions("movie"),
            [
                "moved to watching",
                "marked as completed",
                "started watching",
                "moved to plan to watch",
                "completed",
            ],
        )

    def test_move_keeps_rating_and_added_at(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), COMPLETED)
        manager.update_rating(603, COMPLETED, 9)
        added_at = manager.document.find(603, COMPLETED).added_at

        manager.move_to_list(_matrix(), WATCHING)

        entry = self.db.get_watchlist("u1", "movie").find(603, WATCHING)
        self.assertEqual(entry.rating, 9)
        self.assertEqual(entry.added_at, added_at)

    def test_tv_fresh_add_starts_at_first_episode(self) -> None:
        manager = self.manager("tv")
        manager.move_to_list(_show(), PLANNED)
        entry = self.db.get_watchlist("u1", "tv").find(1399, PLANNED)
        self.assertEqual((entry.current_season, entry.current_episode), (1, 1))

    def test_tv_completed_jumps_to_final_episode(self) -> None:
        manager = self.manager("tv")
        manager.move_to_list(_show(), WATCHING)
        manager.move_to_list(_show(), COMPLETED)
        entry = self.db.get_watchlist("u1", "tv").find(1399, COMPLETED)
        self.assertEqual((entry.current_season, entry.current_episode), (2, 5))
        self.assertEqual(entry.total_episodes_in_current_season, 5)

    def test_tv_move_keeps_progress(self) -> None:
        manager = self.manager("tv")
        manager.move_to_list(_show(), WATCHING)
        manager.step_episode(1399, WATCHING, 1)
        manager.move_to_list(_show(), PLANNED)
        entry = self.db.get_watchlist("u1", "tv").find(1399, PLANNED)
        self.assertEqual((entry.current_season, entry.current_episode), (1, 2))

    def test_rejects_unknown_list_and_wrong_kind(self) -> None:
        manager = self.manager()
        with self.assertRaises(ValidationError):
            manager.move_to_list(_matrix(), "favourites")
        with self.assertRaises(ValidationError):
            manager.move_to_list(_show(), WATCHING)
        self.assertIsNone(self.db.get_watchlist("u1", "movie"))

    def test_failed_write_leaves_memory_untouched(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), PLANNED)
        before = manager.get_document()

        with mock.patch.object(self.db, "save_watchlist", side_effect=PersistenceError("disk full")):
            with self.assertRaises(PersistenceError):
                manager.move_to_list(_matrix(), WATCHING)

        self.assertEqual(manager.document, before)
        self.assertEqual(manager.list_status(603), PLANNED)
        self.assertEqual(self.actions("movie"), ["added to plan to watch"])

    def test_activity_failure_does_not_undo_move(self) -> None:
        manager = self.manager()
        with mock.patch.object(self.db, "add_activity", side_effect=PersistenceError("feed down")):
            manager.move_to_list(_matrix(), WATCHING)
        self.assertEqual(self.db.get_watchlist("u1", "movie").ids(WATCHING), [603])


class TestConcurrentWriters(_ManagerTestCase):
    def test_lost_compare_and_swap_is_reapplied(self) -> None:
        first = self.manager(locks=LockRegistry())
        second = self.manager(locks=LockRegistry())
        first.move_to_list(_matrix(), PLANNED)
        second.refresh()
        first.move_to_list(WatchlistEntry(id=1, kind="movie", title="Alien"), PLANNED)

        second.move_to_list(WatchlistEntry(id=2, kind="movie", title="Heat"), WATCHING)

        doc = self.db.get_watchlist("u1", "movie")
        self.assertEqual(doc.ids(PLANNED), [603, 1])
        self.assertEqual(doc.ids(WATCHING), [2])
        self.assertEqual(second.document.version, doc.version)

    def test_second_conflict_is_raised(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), PLANNED)
        with mock.patch.object(self.db, "save_watchlist", side_effect=StaleDocumentError("raced")):
            with self.assertRaises(StaleDocumentError):
                manager.move_to_list(_matrix(), WATCHING)
        self.assertEqual(manager.list_status(603), PLANNED)

    def test_parallel_moves_on_shared_registry_lose_nothing(self) -> None:
        managers = [self.manager() for _ in range(4)]
        errors = []

        def add(manager: WatchlistManager, start: int) -> None:
            try:
                for media_id in range(start, start + 5):
                    manager.move_to_list(WatchlistEntry(id=media_id, kind="movie", title=str(media_id)), PLANNED)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(m, i * 100)) for i, m in enumerate(managers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(self.db.get_watchlist("u1", "movie").planned), 20)


class TestRemoveAndRating(_ManagerTestCase):
    def test_remove_from_list(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), WATCHING)
        manager.remove_from_list(603, WATCHING)
        self.assertIsNone(self.db.get_watchlist("u1", "movie").locate(603))

    def test_remove_missing_raises_without_writing(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), WATCHING)
        version = self.db.get_watchlist("u1", "movie").version
        with self.assertRaises(NotFoundError):
            manager.remove_from_list(603, PLANNED)
        self.assertEqual(self.db.get_watchlist("u1", "movie").version, version)

    def test_rating_round_trip(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), COMPLETED)
        manager.move_to_list(WatchlistEntry(id=1, kind="movie", title="Alien"), COMPLETED)
        manager.move_to_list(WatchlistEntry(id=2, kind="movie", title="Heat"), WATCHING)

        manager.update_rating(603, COMPLETED, 7)

        doc = self.manager(locks=LockRegistry()).refresh()
        ratings = {e.id: e.rating for name in LIST_NAMES for e in doc.get_list(name)}
        self.assertEqual(ratings, {603: 7, 1: None, 2: None})

    def test_rating_on_wrong_list_is_not_found(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), COMPLETED)
        with self.assertRaises(NotFoundError):
            manager.update_rating(603, WATCHING, 7)

    def test_out_of_range_rating_is_rejected(self) -> None:
        manager = self.manager()
        manager.move_to_list(_matrix(), COMPLETED)
        for bad in (-1, 10.5, "eleven", float("nan"), True):
            with self.assertRaises(ValidationError):
                manager.update_rating(603, COMPLETED, bad)
        self.assertIsNone(self.db.get_watchlist("u1", "movie").find(603, COMPLETED).rating)

    def test_parse_rating(self) -> None:
        self.assertEqual(parse_rating("7.5"), 7.5)
        self.assertEqual(parse_rating(0), 0.0)
        self.assertEqual(parse_rating(10), 10.0)
        self.assertIsNone(parse_rating(None))
        self.assertIsNone(parse_rating("  "))


class TestStepEpisode(_ManagerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tv = self.manager("tv")

    def test_increment_within_season(self) -> None:
        self.tv.move_to_list(_show(), WATCHING)
        result = self.tv.step_episode(1399, WATCHING, 1)
        self.assertEqual((result.new_season, result.new_episode, result.completed), (1, 2, False))
        self.assertEqual(self.content.calls, [])

    def test_overflow_rolls_into_next_season(self) -> None:
        self.tv.move_to_list(_show(total_seasons=2, first_season=3), WATCHING)
        self.tv.step_episode(1399, WATCHING, 1)
        self.tv.step_episode(1399, WATCHING, 1)

        result = self.tv.step_episode(1399, WATCHING, 1)

        self.assertEqual((result.new_season, result.new_episode), (2, 1))
        self.assertIn((1399, 2), self.content.calls)
        entry = self.db.get_watchlist("u1", "tv").find(1399, WATCHING)
        self.assertEqual(entry.total_episodes_in_current_season, 5)

    def test_final_episode_moves_show_to_completed(self) -> None:
        self.tv.move_to_list(_show(total_seasons=1, first_season=2, final_season=2), WATCHING)
        self.tv.step_episode(1399, WATCHING, 1)

        result = self.tv.step_episode(1399, WATCHING, 1)

        self.assertTrue(result.completed)
        self.assertEqual((result.new_season, result.new_episode), (1, 2))
        doc = self.db.get_watchlist("u1", "tv")
        self.assertNotIn(1399, doc.ids(WATCHING))
        self.assertEqual(doc.ids(COMPLETED), [1399])
        self.assertEqual(self.actions("tv")[0], "completed")

    def test_final_episode_on_planned_list_stays_put(self) -> None:
        self.tv.move_to_list(_show(total_seasons=1, first_season=1, final_season=1), PLANNED)
        version = self.db.get_watchlist("u1", "tv").version

        result = self.tv.step_episode(1399, PLANNED, 1)

        self.assertEqual((result.new_season, result.new_episode, result.completed), (1, 1, False))
        self.assertEqual(self.db.get_watchlist("u1", "tv").version, version)

    def test_decrement_floor(self) -> None:
        self.tv.move_to_list(_show(), WATCHING)
        before = self.db.get_watchlist("u1", "tv")

        result = self.tv.step_episode(1399, WATCHING, -1)

        self.assertEqual((result.new_season, result.new_episode), (1, 1))
        after = self.db.get_watchlist("u1", "tv")
        self.assertEqual(after.version, before.version)
        self.assertEqual(after.lists_to_dict(), before.lists_to_dict())

    def test_decrement_into_previous_season(self) -> None:
        self.tv.move_to_list(_show(), WATCHING)
        for _ in range(3):
            self.tv.step_episode(1399, WATCHING, 1)
        self.content.calls.clear()

        result = self.tv.step_episode(1399, WATCHING, -1)

        self.assertEqual((result.new_season, result.new_episode), (1, 3))
        self.assertEqual(self.content.calls, [(1399, 1)])

    def test_concurrent_step_is_refused(self) -> None:
        self.tv.move_to_list(_show(), WATCHING)
        with self.locks.single_flight(("u1", "tv", 1399)):
            with self.assertRaises(OperationInProgressError):
                self.tv.step_episode(1399, WATCHING, 1)
        entry = self.db.get_watchlist("u1", "tv").find(1399, WATCHING)
        self.assertEqual(entry.current_episode, 1)

    def test_episode_count_failure_leaves_state_unchanged(self) -> None:
        from reeltrack.errors import QueryServiceError

        self.tv.move_to_list(_show(total_seasons=2, first_season=1), WATCHING)
        with mock.patch.object(self.content, "season_episode_count", side_effect=QueryServiceError("down")):
            with self.assertRaises(QueryServiceError):
                self.tv.step_episode(1399, WATCHING, 1)
        self.assertEqual(self.tv.document.find(1399, WATCHING).current_season, 1)

    def test_invalid_arguments(self) -> None:
        self.tv.move_to_list(_show(), WATCHING)
        with self.assertRaises(ValidationError):
            self.tv.step_episode(1399, WATCHING, 2)
        with self.assertRaises(NotFoundError):
            self.tv.step_episode(1399, PLANNED, 1)
        with self.assertRaises(ValidationError):
            self.manager("movie").step_episode(603, WATCHING, 1)


if __name__ == "__main__":
    unittest.main()
