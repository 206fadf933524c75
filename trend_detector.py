"""
Trend Detector -- finds bursty topics in recent news.

Compares keyword frequency in the current window (now - N hours .. now)
against the previous window of equal length (now - 2N .. now - N).
A keyword is trending when it grew by more than 50% or appeared more than
5 times in the current window.

Ranking: growth descending, then frequency descending, then topic name.

The optional LLM refinement step only re-labels topics; any failure falls
back to the unrefined list.
"""

import json
import logging
import math
import sqlite3
import string
from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import config
from database_migrations import record_system_log
from news_store import Article, ArticleStore

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset([
    'the', 'and', 'for', 'with', 'this', 'that', 'from', 'about',
    'into', 'through', 'during', 'before', 'after', 'above', 'below',
    'their', 'there', 'these', 'those', 'which', 'where', 'while',
    'would', 'could', 'should', 'being', 'other', 'under', 'until',
])

MIN_WORD_LENGTH = 4  # title words must be longer than this
GROWTH_THRESHOLD = 50.0
FREQUENCY_THRESHOLD = 5
MAX_RELATED_ARTICLES = 5
MAX_RELATED_KEYWORDS = 5

_PUNCTUATION = string.punctuation + "“”‘’«»¿¡…"


@dataclass
class TrendingTopic:
    """A keyword whose frequency is rising across the two windows."""
    topic: str
    frequency: int
    growth: float
    related_keywords: List[str] = field(default_factory=list)
    articles: List[Dict] = field(default_factory=list)
    category: Optional[str] = None
    relevance: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "TrendingTopic":
        return cls(
            topic=data["topic"],
            frequency=int(data["frequency"]),
            growth=float(data["growth"]),
            related_keywords=list(data.get("related_keywords") or []),
            articles=list(data.get("articles") or []),
            category=data.get("category"),
            relevance=data.get("relevance"),
        )


# ── Pure scoring ────────────────────────────────────────────────────────────

def article_keywords(article: Article) -> List[str]:
    """
    Candidate keywords for one article: every tag, plus lower-cased title
    words longer than MIN_WORD_LENGTH that are not stop words.
    Repeats are kept so occurrences are counted.
    """
    keywords = [tag.strip().lower() for tag in article.tags if tag and tag.strip()]
    for raw in (article.title_en or "").lower().split():
        word = raw.strip(_PUNCTUATION)
        if len(word) > MIN_WORD_LENGTH and word not in STOP_WORDS:
            keywords.append(word)
    return keywords


def extract_keywords(articles: Iterable[Article]) -> Counter:
    """Tally keyword occurrences over a set of articles."""
    counts = Counter()
    for article in articles:
        counts.update(article_keywords(article))
    return counts


def calculate_growth(current_count: int, previous_count: int) -> float:
    """Percentage change vs the previous window; 100 for brand-new keywords."""
    if previous_count > 0:
        return (current_count - previous_count) / previous_count * 100
    return 100.0


def is_trending(frequency: int, growth: float) -> bool:
    return growth > GROWTH_THRESHOLD or frequency > FREQUENCY_THRESHOLD


def _matches(article: Article, topic: str) -> bool:
    needle = topic.lower()
    if any(tag.strip().lower() == needle for tag in article.tags):
        return True
    return needle in (article.title_en or "").lower()


def related_articles(topic: str, articles: List[Article],
                     limit: int = MAX_RELATED_ARTICLES) -> List[Article]:
    return [a for a in articles if _matches(a, topic)][:limit]


def related_keywords(topic: str, articles: List[Article],
                     limit: int = MAX_RELATED_KEYWORDS) -> List[str]:
    """Tags that co-occur with the topic, in order of first appearance."""
    needle = topic.lower()
    related = []
    for article in articles:
        if not _matches(article, topic):
            continue
        for tag in article.tags:
            tag = tag.strip().lower()
            if tag and tag != needle and tag not in related:
                related.append(tag)
    return related[:limit]


def score_trending_topics(current_articles: List[Article],
                          previous_articles: List[Article]) -> List[TrendingTopic]:
    """
    Rank trending topics for two pre-partitioned windows.

    Pure function: no I/O, deterministic output order.
    """
    if not current_articles:
        return []

    current = extract_keywords(current_articles)
    previous = extract_keywords(previous_articles)

    # Newest first so related articles are the most recent ones
    ordered = sorted(current_articles, key=lambda a: (a.published_at, a.id), reverse=True)

    trends = []
    for topic, frequency in current.items():
        growth = calculate_growth(frequency, previous.get(topic, 0))
        if not is_trending(frequency, growth):
            continue

        trends.append(TrendingTopic(
            topic=topic,
            frequency=frequency,
            growth=growth,
            related_keywords=related_keywords(topic, ordered),
            articles=[
                {
                    "id": a.id,
                    "title": a.title_en,
                    "published_at": a.published_at.isoformat(),
                }
                for a in related_articles(topic, ordered)
            ],
        ))

    trends.sort(key=lambda t: (-t.growth, -t.frequency, t.topic))
    return trends


def partition_windows(articles: Iterable[Article], window_hours: int,
                      now: Optional[datetime] = None) -> Tuple[List[Article], List[Article]]:
    """
    Split a corpus into (current, previous) windows.

    current:  now - N <= published_at <= now
    previous: now - 2N <= published_at < now - N
    Articles outside both windows (or in the future) are dropped.
    """
    if window_hours <= 0:
        raise ValueError(f"window_hours must be positive, got {window_hours}")

    now = _as_utc(now)
    window = timedelta(hours=window_hours)
    cutoff = now - window
    prev_cutoff = cutoff - window

    current, previous = [], []
    for article in articles:
        ts = article.published_at
        if cutoff <= ts <= now:
            current.append(article)
        elif prev_cutoff <= ts < cutoff:
            previous.append(article)
    return current, previous


def detect_trending_topics(articles: Iterable[Article],
                           window_hours: int = config.TREND_WINDOW_HOURS,
                           now: Optional[datetime] = None) -> List[TrendingTopic]:
    """Partition an in-memory corpus and score it."""
    current, previous = partition_windows(articles, window_hours, now)
    return score_trending_topics(current, previous)


# ── Detector with persistence ────────────────────────────────────────────────

class TrendDetector:
    """
    Reads both windows from the article store, scores, optionally refines
    with the LLM, and caches the result for TREND_CACHE_TTL_HOURS.
    """

    def __init__(self, db_path=None, llm_client=None, article_store=None,
                 cache_ttl_hours: float = config.TREND_CACHE_TTL_HOURS,
                 refine_with_llm: bool = config.TREND_REFINE_WITH_LLM,
                 result_limit: int = config.TREND_RESULT_LIMIT):
        self.db_path = db_path or config.DB_PATH
        self.llm = llm_client
        self.articles = article_store or ArticleStore(self.db_path)
        self.cache_ttl = timedelta(hours=cache_ttl_hours)
        self.refine_with_llm = refine_with_llm
        self.result_limit = result_limit

    def detect_trends(self, window_hours: int = config.TREND_WINDOW_HOURS,
                      force_refresh: bool = False,
                      now: Optional[datetime] = None) -> List[TrendingTopic]:
        """
        Return trending topics for the window ending now.

        Returns the cached list if it has not expired, unless force_refresh.
        """
        if window_hours <= 0:
            raise ValueError(f"window_hours must be positive, got {window_hours}")
        now = _as_utc(now)

        if not force_refresh:
            cached = self._load_cache(window_hours, now)
            if cached is not None:
                logger.info(f"Using cached trending topics ({len(cached)} topics, {window_hours}h window)")
                return cached

        window = timedelta(hours=window_hours)
        cutoff = now - window
        current = self.articles.get_articles_between(cutoff, now, include_end=True)
        if not current:
            logger.info(f"No articles in the last {window_hours}h, no trends")
            self._save_cache(window_hours, [], now)
            return []

        previous = self.articles.get_articles_between(cutoff - window, cutoff)

        trends = score_trending_topics(current, previous)[:self.result_limit]
        logger.info(
            f"Trend detection: {len(current)} current / {len(previous)} previous articles "
            f"-> {len(trends)} trending topics"
        )

        if trends and self.refine_with_llm and self.llm is not None:
            trends = self.refine_with_llm_labels(trends)

        self._save_cache(window_hours, trends, now)
        record_system_log(
            "trend_detector", "detect_trends", "success",
            {
                "trends_count": len(trends),
                "top_topic": trends[0].topic if trends else None,
                "window_hours": window_hours,
                "articles_current": len(current),
                "articles_previous": len(previous),
            },
            db_path=self.db_path,
        )
        return trends

    def refine_with_llm_labels(self, trends: List[TrendingTopic]) -> List[TrendingTopic]:
        """
        Ask the LLM to re-label and categorize topics.

        Best-effort: any failure returns the input list unchanged.
        """
        if not trends or self.llm is None:
            return trends

        listing = "\n".join(
            f"{i + 1}. {t.topic} ({t.frequency} mentions, {round(t.growth)}% growth)"
            for i, t in enumerate(trends)
        )
        prompt = (
            "Analyze these trending AI topics and categorize them into broader themes:\n\n"
            f"{listing}\n\n"
            "Return a JSON array with one entry per topic, in the same order:\n"
            '[{"topic": "...", "category": "...", "relevance": 1-10}]'
        )

        try:
            result = self.llm.generate_json(
                prompt, expect=list, temperature=0.3, max_tokens=1000,
                context="trend_refinement",
            )
        except Exception as e:
            logger.warning(f"LLM refinement failed: {e}")
            return trends

        if not result.ok:
            logger.warning(f"LLM refinement unusable, keeping raw topics: {result.error}")
            return trends

        try:
            refined = []
            for i, trend in enumerate(trends):
                item = result.value[i] if i < len(result.value) else None
                refined.append(_merge_refinement(trend, item))
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning(f"LLM refinement malformed, keeping raw topics: {e}")
            return trends
        return refined

    # ── Cache ──

    def _load_cache(self, window_hours: int, now: datetime) -> Optional[List[TrendingTopic]]:
        """Load cached topics if not expired."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            row = conn.execute("""
                SELECT topics, expires_at
                FROM trending_topics_cache
                WHERE window_hours = ?
            """, (window_hours,)).fetchone()
        except sqlite3.OperationalError:
            return None
        finally:
            conn.close()

        if not row:
            return None

        try:
            expires_at = datetime.fromisoformat(row["expires_at"])
            if now >= expires_at:
                return None
            return [TrendingTopic.from_dict(t) for t in json.loads(row["topics"])]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable trend cache: {e}")
            return None

    def _save_cache(self, window_hours: int, trends: List[TrendingTopic],
                    now: datetime) -> None:
        """Save topics with an expiry timestamp."""
        conn = sqlite3.connect(str(self.db_path))
        payload = json.dumps([t.to_dict() for t in trends])

        try:
            conn.execute("""
                INSERT INTO trending_topics_cache
                    (window_hours, topics, computed_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(window_hours)
                DO UPDATE SET topics = excluded.topics,
                              computed_at = excluded.computed_at,
                              expires_at = excluded.expires_at
            """, (
                window_hours, payload,
                now.isoformat(), (now + self.cache_ttl).isoformat(),
            ))
            conn.commit()
        except sqlite3.Error as e:
            logger.warning(f"Failed to cache trending topics: {e}")
        finally:
            conn.close()


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _merge_refinement(trend: TrendingTopic, item) -> TrendingTopic:
    """Overlay one refined entry on a topic, ignoring malformed fields."""
    if not isinstance(item, dict):
        return trend

    updates = {}
    label = item.get("topic")
    if isinstance(label, str) and label.strip():
        updates["topic"] = label.strip()[:120]

    category = item.get("category")
    if isinstance(category, str) and category.strip():
        updates["category"] = category.strip()[:80]

    relevance = item.get("relevance")
    if (isinstance(relevance, (int, float)) and not isinstance(relevance, bool)
            and math.isfinite(relevance)):
        updates["relevance"] = max(1, min(10, int(relevance)))

    return replace(trend, **updates)
