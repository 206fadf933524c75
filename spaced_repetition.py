"""
Spaced Repetition -- SM-2 (SuperMemo 2) scheduling for flashcards.

next_interval() is the pure scheduler; FlashcardStore persists cards and
applies it on each review.

Quality scale: 0 = complete blackout .. 5 = perfect response.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import config
from news_store import format_timestamp

logger = logging.getLogger(__name__)

PASSING_QUALITY = 3


class FlashcardNotFoundError(LookupError):
    """Raised when a flashcard does not exist or belongs to another user."""


@dataclass(frozen=True)
class ReviewState:
    """Scheduling state after a review."""
    interval: int
    repetitions: int
    ease_factor: float


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_ease_factor(ease_factor: float) -> float:
    return max(config.MIN_EASE_FACTOR, min(config.MAX_EASE_FACTOR, ease_factor))


def next_interval(quality: int, repetitions: int, ease_factor: float,
                  current_interval: int) -> ReviewState:
    """
    Apply one SM-2 step.

    quality < 3 resets the card (repetitions 0, review tomorrow). Otherwise
    the interval goes 1 day, 6 days, then previous interval x ease factor.
    The ease factor moves by 0.1 - (5 - q) * (0.08 + (5 - q) * 0.02) and is
    clamped to [1.3, 2.5]; the updated value is used for the interval.
    """
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValueError(f"quality must be an integer 0-5, got {quality!r}")
    if not 0 <= quality <= 5:
        raise ValueError(f"quality must be between 0 and 5, got {quality}")
    if repetitions < 0:
        raise ValueError(f"repetitions must be >= 0, got {repetitions}")

    miss = 5 - quality
    new_ease = clamp_ease_factor(ease_factor + (0.1 - miss * (0.08 + miss * 0.02)))

    if quality < PASSING_QUALITY:
        return ReviewState(interval=1, repetitions=0, ease_factor=new_ease)

    new_repetitions = repetitions + 1
    if new_repetitions == 1:
        interval = 1
    elif new_repetitions == 2:
        interval = 6
    else:
        interval = max(1, _round_half_up(current_interval * new_ease))

    return ReviewState(interval=interval, repetitions=new_repetitions, ease_factor=new_ease)


def next_due_date(interval: int, today=None):
    """
    Next review: today + interval days.

    Accepts a date or a datetime (the time of day is kept); defaults to now, UTC.
    """
    if today is None:
        today = datetime.now(timezone.utc)
    return today + timedelta(days=interval)


@dataclass
class Flashcard:
    id: int
    user_id: str
    front: str
    back: str
    ease_factor: float
    interval_days: int
    repetitions: int
    due_at: str
    content_id: Optional[str] = None
    content_type: Optional[str] = None
    category: Optional[str] = None
    locale: Optional[str] = None
    last_reviewed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Flashcard":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            front=row["front"],
            back=row["back"],
            ease_factor=row["ease_factor"],
            interval_days=row["interval_days"],
            repetitions=row["repetitions"],
            due_at=row["due_at"],
            content_id=row["content_id"],
            content_type=row["content_type"],
            category=row["category"],
            locale=row["locale"],
            last_reviewed_at=row["last_reviewed_at"],
        )

    def to_dict(self) -> Dict:
        return asdict(self)


class FlashcardStore:
    """Persists flashcards and their SM-2 state."""

    def __init__(self, db_path=None):
        self.db_path = db_path or config.DB_PATH

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def create_flashcards(self, user_id: str, content_id: Optional[str],
                          cards: Iterable[Dict], content_type: str = "article",
                          locale: str = "en", category: Optional[str] = None) -> List[Flashcard]:
        """
        Insert new cards ({front, back} dicts). New cards are due immediately
        with the default ease factor.
        """
        now = format_timestamp(datetime.now(timezone.utc))
        conn = self._connect()
        ids = []
        try:
            for card in cards:
                cur = conn.execute("""
                    INSERT INTO flashcards
                        (user_id, content_id, content_type, front, back, category,
                         locale, ease_factor, interval_days, repetitions, due_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                """, (
                    user_id, content_id, content_type, card["front"], card["back"],
                    category, locale, config.DEFAULT_EASE_FACTOR, now, now,
                ))
                ids.append(cur.lastrowid)
            conn.commit()
            rows = [
                conn.execute("SELECT * FROM flashcards WHERE id = ?", (i,)).fetchone()
                for i in ids
            ]
        finally:
            conn.close()

        logger.info(f"Created {len(ids)} flashcards for user {user_id}")
        return [Flashcard.from_row(r) for r in rows]

    def get_flashcard(self, flashcard_id: int, user_id: str) -> Flashcard:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM flashcards WHERE id = ? AND user_id = ?",
                (flashcard_id, user_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise FlashcardNotFoundError(f"Flashcard {flashcard_id} not found")
        return Flashcard.from_row(row)

    def get_due_flashcards(self, user_id: str, limit: int = 20,
                           now: Optional[datetime] = None) -> List[Flashcard]:
        """Cards due at or before now, oldest due first."""
        now = now or datetime.now(timezone.utc)
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM flashcards
                WHERE user_id = ? AND due_at <= ?
                ORDER BY due_at ASC, id ASC
                LIMIT ?
            """, (user_id, format_timestamp(now), limit)).fetchall()
        finally:
            conn.close()
        return [Flashcard.from_row(r) for r in rows]

    def record_review(self, flashcard_id: int, user_id: str, quality: int,
                      now: Optional[datetime] = None) -> Flashcard:
        """Apply an SM-2 review to a card and persist the new schedule."""
        now = now or datetime.now(timezone.utc)
        card = self.get_flashcard(flashcard_id, user_id)

        state = next_interval(
            quality, card.repetitions, card.ease_factor, card.interval_days,
        )
        due_at = next_due_date(state.interval, now)

        conn = self._connect()
        try:
            conn.execute("""
                UPDATE flashcards
                SET ease_factor = ?, interval_days = ?, repetitions = ?,
                    due_at = ?, last_reviewed_at = ?
                WHERE id = ? AND user_id = ?
            """, (
                state.ease_factor, state.interval, state.repetitions,
                format_timestamp(due_at), format_timestamp(now), flashcard_id, user_id,
            ))
            conn.commit()
        finally:
            conn.close()

        logger.debug(
            f"Flashcard {flashcard_id} reviewed (q={quality}): "
            f"interval {card.interval_days} -> {state.interval}, "
            f"ease {card.ease_factor:.2f} -> {state.ease_factor:.2f}"
        )
        return self.get_flashcard(flashcard_id, user_id)

    def get_flashcard_stats(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        """Due / total / mastered counts for a user."""
        now = now or datetime.now(timezone.utc)
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN due_at <= ? THEN 1 ELSE 0 END), 0) AS due,
                    COALESCE(SUM(CASE WHEN repetitions >= ? AND ease_factor >= ?
                                 THEN 1 ELSE 0 END), 0) AS mastered
                FROM flashcards
                WHERE user_id = ?
            """, (
                format_timestamp(now), config.MASTERED_REPETITIONS,
                config.MAX_EASE_FACTOR, user_id,
            )).fetchone()
        finally:
            conn.close()
        return {"due": row["due"], "total": row["total"], "mastered": row["mastered"]}
