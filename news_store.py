"""
News Store - read interface over ingested articles.

Articles are written by the external ingestion pipeline; the engine only
reads them (plus a JSON import used to seed a local database).
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import config

logger = logging.getLogger(__name__)


class ArticleNotFoundError(LookupError):
    """Raised when an article id does not exist."""


@dataclass
class Article:
    """Bilingual news article as stored by the ingestion pipeline."""
    id: str
    title_en: str
    published_at: datetime
    tags: List[str] = field(default_factory=list)
    title_es: Optional[str] = None
    content_en: Optional[str] = None
    content_es: Optional[str] = None
    summary_en: Optional[str] = None
    category: Optional[str] = None

    def title(self, locale: str = "en") -> str:
        if locale == "es" and self.title_es:
            return self.title_es
        return self.title_en

    def content(self, locale: str = "en") -> str:
        if locale == "es" and self.content_es:
            return self.content_es
        return self.content_en or self.summary_en or ""

    @classmethod
    def from_row(cls, row) -> "Article":
        try:
            tags = json.loads(row["tags"]) if row["tags"] else []
        except (json.JSONDecodeError, TypeError):
            tags = []
        return cls(
            id=row["id"],
            title_en=row["title_en"],
            title_es=row["title_es"],
            content_en=row["content_en"],
            content_es=row["content_es"],
            summary_en=row["summary_en"],
            tags=[str(t) for t in tags],
            category=row["category"],
            published_at=parse_timestamp(row["published_at"]),
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "Article":
        published = data.get("published_at")
        if not isinstance(published, datetime):
            published = parse_timestamp(published)
        return cls(
            id=str(data["id"]),
            title_en=data["title_en"],
            title_es=data.get("title_es"),
            content_en=data.get("content_en"),
            content_es=data.get("content_es"),
            summary_en=data.get("summary_en"),
            tags=list(data.get("tags") or []),
            category=data.get("category"),
            published_at=published,
        )


class ArticleStore:
    """SQLite-backed article repository."""

    def __init__(self, db_path=None):
        self.db_path = db_path or config.DB_PATH

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def insert_articles(self, articles: Iterable[Article]) -> int:
        """Insert articles, ignoring ids that already exist. Returns new row count."""
        conn = self._connect()
        now = datetime.now(timezone.utc).isoformat()
        inserted = 0
        try:
            for article in articles:
                cur = conn.execute("""
                    INSERT OR IGNORE INTO news_articles
                        (id, title_en, title_es, content_en, content_es, summary_en,
                         tags, category, published_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    article.id, article.title_en, article.title_es,
                    article.content_en, article.content_es, article.summary_en,
                    json.dumps(article.tags), article.category,
                    format_timestamp(article.published_at), now,
                ))
                inserted += cur.rowcount
            conn.commit()
        finally:
            conn.close()
        return inserted

    def import_json(self, path) -> int:
        """Load a JSON array of article dicts from disk into the store."""
        with open(Path(path), "r", encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{path}: expected a JSON array of articles")

        articles = []
        for i, record in enumerate(records):
            try:
                articles.append(Article.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping article #{i} in {path}: {e}")

        inserted = self.insert_articles(articles)
        logger.info(f"Imported {inserted} new articles from {path} ({len(articles)} read)")
        return inserted

    def get_article(self, article_id: str) -> Article:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM news_articles WHERE id = ?", (article_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise ArticleNotFoundError(f"Article {article_id} not found")
        return Article.from_row(row)

    def get_articles_between(self, start: datetime, end: datetime,
                             include_end: bool = False,
                             limit: int = config.TREND_ARTICLE_LIMIT) -> List[Article]:
        """
        Articles published in [start, end) (or [start, end] with include_end),
        newest first.
        """
        op = "<=" if include_end else "<"
        conn = self._connect()
        try:
            rows = conn.execute(f"""
                SELECT * FROM news_articles
                WHERE published_at >= ? AND published_at {op} ?
                ORDER BY published_at DESC
                LIMIT ?
            """, (format_timestamp(start), format_timestamp(end), limit)).fetchall()
        finally:
            conn.close()
        return [Article.from_row(r) for r in rows]

    def get_recent_article_ids(self, limit: int = 10) -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT id FROM news_articles
                ORDER BY created_at DESC, published_at DESC
                LIMIT ?
            """, (limit,)).fetchall()
        finally:
            conn.close()
        return [r["id"] for r in rows]

    def count(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM news_articles").fetchone()[0]
        finally:
            conn.close()


def format_timestamp(dt: datetime) -> str:
    """Normalize to a UTC ISO 8601 string so stored values sort lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_timestamp(ts_str: str) -> datetime:
    """Parse an ISO 8601 timestamp string to a UTC datetime."""
    if not ts_str:
        raise ValueError("missing timestamp")
    ts_str = str(ts_str).replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
