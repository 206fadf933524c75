"""
Tests for SM-2 scheduling and the flashcard store.

Covers: interval progression, ease factor bounds, lapse reset,
due-card queries, review persistence and per-user stats.
"""

import os
import shutil
import sys
import tempfile
import unittest
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import config
from database_migrations import run_migrations
from spaced_repetition import (
    FlashcardNotFoundError, FlashcardStore, ReviewState,
    clamp_ease_factor, next_due_date, next_interval,
)


class TestNextInterval(unittest.TestCase):
    """Pure SM-2 step."""

    def test_first_perfect_review(self):
        """q=5 on a new card: 1 day, ease stays clamped at 2.5."""
        state = next_interval(5, 0, 2.5, 1)
        self.assertEqual(state, ReviewState(interval=1, repetitions=1, ease_factor=2.5))

    def test_second_review_is_six_days(self):
        state = next_interval(4, 1, 2.5, 1)
        self.assertEqual(state.interval, 6)
        self.assertEqual(state.repetitions, 2)

    def test_third_review_multiplies_by_ease(self):
        state = next_interval(4, 2, 2.5, 6)
        self.assertEqual(state.interval, 15)
        self.assertEqual(state.repetitions, 3)
        self.assertAlmostEqual(state.ease_factor, 2.5)

    def test_interval_rounds_half_up(self):
        # 15 * 2.5 = 37.5
        state = next_interval(5, 3, 2.5, 15)
        self.assertEqual(state.interval, 38)

    def test_quality_three_lowers_ease(self):
        state = next_interval(3, 2, 2.5, 6)
        self.assertAlmostEqual(state.ease_factor, 2.36)
        self.assertEqual(state.interval, round(6 * 2.36))

    def test_lapse_resets_card(self):
        for quality in (0, 1, 2):
            state = next_interval(quality, 4, 2.5, 40)
            self.assertEqual(state.interval, 1)
            self.assertEqual(state.repetitions, 0)
            self.assertLess(state.ease_factor, 2.5)

    def test_ease_factor_never_below_minimum(self):
        ease = 2.5
        for _ in range(10):
            ease = next_interval(0, 0, ease, 1).ease_factor
        self.assertAlmostEqual(ease, config.MIN_EASE_FACTOR)

    def test_ease_factor_bounds_for_every_quality(self):
        for quality in range(6):
            for ease in (1.3, 1.8, 2.5):
                state = next_interval(quality, 2, ease, 6)
                self.assertGreaterEqual(state.ease_factor, 1.3)
                self.assertLessEqual(state.ease_factor, 2.5)
                self.assertGreaterEqual(state.interval, 1)

    def test_intervals_grow_on_good_reviews(self):
        reps, ease, interval = 0, 2.5, 0
        seen = []
        for _ in range(6):
            state = next_interval(4, reps, ease, interval)
            reps, ease, interval = state.repetitions, state.ease_factor, state.interval
            seen.append(interval)
        self.assertEqual(seen[:3], [1, 6, 15])
        self.assertEqual(seen, sorted(seen))

    def test_invalid_quality_rejected(self):
        for bad in (-1, 6, 2.5, "4", None, True):
            with self.assertRaises(ValueError, msg=f"quality={bad!r} accepted"):
                next_interval(bad, 0, 2.5, 1)

    def test_clamp(self):
        self.assertEqual(clamp_ease_factor(3.0), 2.5)
        self.assertEqual(clamp_ease_factor(1.0), 1.3)
        self.assertEqual(clamp_ease_factor(2.0), 2.0)

    def test_next_due_date(self):
        self.assertEqual(next_due_date(6, today=date(2026, 1, 28)), date(2026, 2, 3))

    def test_next_due_date_keeps_time_of_day(self):
        now = datetime(2026, 1, 28, 9, 30, tzinfo=timezone.utc)
        self.assertEqual(next_due_date(1, now), datetime(2026, 1, 29, 9, 30, tzinfo=timezone.utc))


class TestFlashcardStore(unittest.TestCase):
    """Flashcard persistence and review flow against a temp database."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = Path(self.tmpdir) / "test.db"
        run_migrations(self.db_path)
        self.store = FlashcardStore(self.db_path)
        self.cards = self.store.create_flashcards(
            "user-1", "article-1",
            [{"front": "What is SM-2?", "back": "A spaced repetition algorithm"},
             {"front": "Who made SM-2?", "back": "Piotr Wozniak"}],
            category="learning",
        )
        self.now = datetime.now(timezone.utc) + timedelta(seconds=1)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_new_cards_are_due_with_default_state(self):
        self.assertEqual(len(self.cards), 2)
        card = self.cards[0]
        self.assertEqual(card.ease_factor, config.DEFAULT_EASE_FACTOR)
        self.assertEqual(card.repetitions, 0)
        self.assertEqual(card.interval_days, 0)
        self.assertEqual(card.category, "learning")

        due = self.store.get_due_flashcards("user-1", now=self.now)
        self.assertEqual([c.id for c in due], [c.id for c in self.cards])

    def test_review_reschedules_card(self):
        card_id = self.cards[0].id
        updated = self.store.record_review(card_id, "user-1", 4, now=self.now)

        self.assertEqual(updated.interval_days, 1)
        self.assertEqual(updated.repetitions, 1)
        self.assertEqual(updated.last_reviewed_at, self.now.isoformat())
        self.assertEqual(updated.due_at, (self.now + timedelta(days=1)).isoformat())

        due_now = self.store.get_due_flashcards("user-1", now=self.now)
        self.assertNotIn(card_id, [c.id for c in due_now])

        due_later = self.store.get_due_flashcards("user-1", now=self.now + timedelta(days=2))
        self.assertIn(card_id, [c.id for c in due_later])

    def test_review_sequence_follows_sm2(self):
        card_id = self.cards[0].id
        intervals = []
        for quality in (5, 5, 4, 1):
            card = self.store.record_review(card_id, "user-1", quality, now=self.now)
            intervals.append(card.interval_days)
        self.assertEqual(intervals, [1, 6, 15, 1])
        self.assertEqual(card.repetitions, 0)

    def test_invalid_quality_leaves_card_untouched(self):
        card_id = self.cards[0].id
        with self.assertRaises(ValueError):
            self.store.record_review(card_id, "user-1", 7, now=self.now)
        card = self.store.get_flashcard(card_id, "user-1")
        self.assertEqual(card.repetitions, 0)
        self.assertIsNone(card.last_reviewed_at)

    def test_other_users_cannot_see_card(self):
        with self.assertRaises(FlashcardNotFoundError):
            self.store.get_flashcard(self.cards[0].id, "user-2")
        with self.assertRaises(FlashcardNotFoundError):
            self.store.record_review(self.cards[0].id, "user-2", 5, now=self.now)
        self.assertEqual(self.store.get_due_flashcards("user-2", now=self.now), [])

    def test_unknown_card(self):
        with self.assertRaises(FlashcardNotFoundError):
            self.store.get_flashcard(9999, "user-1")

    def test_due_limit(self):
        due = self.store.get_due_flashcards("user-1", limit=1, now=self.now)
        self.assertEqual(len(due), 1)

    def test_stats(self):
        stats = self.store.get_flashcard_stats("user-1", now=self.now)
        self.assertEqual(stats, {"due": 2, "total": 2, "mastered": 0})

        card_id = self.cards[0].id
        for _ in range(config.MASTERED_REPETITIONS):
            self.store.record_review(card_id, "user-1", 5, now=self.now)

        stats = self.store.get_flashcard_stats("user-1", now=self.now)
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["due"], 1)
        self.assertEqual(stats["mastered"], 1)

    def test_stats_for_user_without_cards(self):
        self.assertEqual(
            self.store.get_flashcard_stats("nobody", now=self.now),
            {"due": 0, "total": 0, "mastered": 0},
        )

    def test_non_utc_now_compares_in_utc(self):
        """A `now` carrying another offset still finds cards due at that instant."""
        eastern = timezone(timedelta(hours=-5))
        now_eastern = self.now.astimezone(eastern)

        due = self.store.get_due_flashcards("user-1", now=now_eastern)
        self.assertEqual(len(due), 2)
        self.assertEqual(self.store.get_flashcard_stats("user-1", now=now_eastern)["due"], 2)

        updated = self.store.record_review(self.cards[0].id, "user-1", 4, now=now_eastern)
        self.assertEqual(updated.last_reviewed_at, self.now.isoformat())
        self.assertEqual(updated.due_at, (self.now + timedelta(days=1)).isoformat())

    def test_review_due_date_matches_schedule(self):
        updated = self.store.record_review(self.cards[0].id, "user-1", 5, now=self.now)
        self.assertEqual(
            updated.due_at, next_due_date(updated.interval_days, self.now).isoformat())


if __name__ == '__main__':
    unittest.main(verbosity=2)
