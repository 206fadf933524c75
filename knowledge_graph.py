"""
Knowledge Graph -- weighted entity/relation store built from news articles.

Entities are resolved by exact name. Relations are keyed by
(source_id, target_id, relation_type): the first sighting inserts the edge
at RELATION_INITIAL_WEIGHT, every later sighting adds RELATION_WEIGHT_STEP
up to RELATION_MAX_WEIGHT. After N identical ingestions the weight is
min(1.0, 0.7 + 0.1 * (N - 1)).

Both the entity insert and the weight increment are single SQL statements
(ON CONFLICT upserts), so concurrent ingestion cannot lose an increment.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import config

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("person", "organization", "model", "company", "paper", "concept")
RELATION_TYPES = ("launched", "acquired", "funded", "published", "collaborated", "competed")


@dataclass
class ExtractedEntity:
    name: str
    type: str
    description: Optional[str] = None
    aliases: List[str] = field(default_factory=list)


@dataclass
class ExtractedRelation:
    source: str    # entity name
    target: str    # entity name
    type: str
    evidence: str  # supporting quote from the article


@dataclass
class ExtractionResult:
    entities: List[ExtractedEntity] = field(default_factory=list)
    relations: List[ExtractedRelation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relations


class KnowledgeGraph:
    """SQLite-backed knowledge graph with idempotent upserts."""

    def __init__(self, db_path=None):
        self.db_path = db_path or config.DB_PATH

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    # ── Ingestion ──

    def save_extraction(self, extraction: ExtractionResult, article_id: str,
                        now: Optional[datetime] = None) -> Dict:
        """
        Merge one article's extraction into the graph.

        Relations whose endpoints were not resolved in this batch are
        skipped and logged.

        Returns counts: entities_created, relations_created,
        relations_updated, relations_skipped.
        """
        now_str = (now or datetime.now(timezone.utc)).isoformat()
        stats = {
            "entities_created": 0,
            "relations_created": 0,
            "relations_updated": 0,
            "relations_skipped": 0,
        }

        conn = self._connect()
        try:
            entity_ids = {}  # name -> id
            for entity in extraction.entities:
                entity_id, created = self._upsert_entity(conn, entity, article_id, now_str)
                entity_ids[entity.name] = entity_id
                if created:
                    stats["entities_created"] += 1

            for relation in extraction.relations:
                source_id = entity_ids.get(relation.source)
                target_id = entity_ids.get(relation.target)

                if source_id is None or target_id is None:
                    logger.warning(
                        f"Skipping relation: entity not found "
                        f"({relation.source} -> {relation.target})"
                    )
                    stats["relations_skipped"] += 1
                    continue

                if self._upsert_relation(conn, source_id, target_id, relation,
                                         article_id, now_str):
                    stats["relations_created"] += 1
                else:
                    stats["relations_updated"] += 1

                conn.execute("""
                    INSERT INTO citations (article_id, quote, source_url, published_at)
                    VALUES (?, ?, ?, ?)
                """, (article_id, relation.evidence, f"article:{article_id}", now_str))

            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return stats

    def _upsert_entity(self, conn, entity: ExtractedEntity, article_id: str,
                       now_str: str):
        """Insert the entity if its name is new. Returns (id, created)."""
        cur = conn.execute("""
            INSERT INTO entities (name, type, description, aliases, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO NOTHING
        """, (
            entity.name, entity.type, entity.description,
            json.dumps(entity.aliases or []),
            json.dumps({"source_article": article_id}),
            now_str,
        ))
        created = cur.rowcount > 0
        row = conn.execute(
            "SELECT id FROM entities WHERE name = ?", (entity.name,)
        ).fetchone()
        return row["id"], created

    def _upsert_relation(self, conn, source_id: int, target_id: int,
                         relation: ExtractedRelation, article_id: str,
                         now_str: str) -> bool:
        """Insert or strengthen an edge. Returns True if the edge is new."""
        existing = conn.execute("""
            SELECT 1 FROM entity_relations
            WHERE source_id = ? AND target_id = ? AND relation_type = ?
        """, (source_id, target_id, relation.type)).fetchone()

        evidence = {"articles": [article_id], "quotes": [relation.evidence]}
        conn.execute("""
            INSERT INTO entity_relations
                (source_id, target_id, relation_type, weight, evidence,
                 last_seen, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_id, target_id, relation_type)
            DO UPDATE SET
                weight = MIN(?, ROUND(entity_relations.weight + ?, 4)),
                last_seen = excluded.last_seen
        """, (
            source_id, target_id, relation.type,
            config.RELATION_INITIAL_WEIGHT, json.dumps(evidence),
            now_str, now_str,
            config.RELATION_MAX_WEIGHT, config.RELATION_WEIGHT_STEP,
        ))
        return existing is None

    def promote_trending_topics(self, trends, limit: int = 5,
                                min_frequency: int = config.TOPIC_ENTITY_MIN_FREQUENCY) -> int:
        """
        Create 'concept' entities for the strongest trending topics that
        are not in the graph yet (case-insensitive). Returns count created.
        """
        now = datetime.now(timezone.utc).isoformat()
        created = 0
        conn = self._connect()
        try:
            for trend in trends[:limit]:
                if trend.frequency < min_frequency:
                    continue
                exists = conn.execute(
                    "SELECT 1 FROM entities WHERE LOWER(name) = LOWER(?)",
                    (trend.topic,),
                ).fetchone()
                if exists:
                    continue
                conn.execute("""
                    INSERT INTO entities (name, type, description, aliases, metadata, created_at)
                    VALUES (?, 'concept', ?, '[]', ?, ?)
                """, (
                    trend.topic,
                    f"Trending topic detected with {trend.frequency} mentions",
                    json.dumps({
                        "trend_detected": now,
                        "growth": trend.growth,
                        "article_count": len(trend.articles),
                    }),
                    now,
                ))
                created += 1
            conn.commit()
        finally:
            conn.close()

        if created:
            logger.info(f"Promoted {created} trending topics to concept entities")
        return created

    # ── Reads ──

    def get_entity(self, entity_id: int) -> Optional[Dict]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
        finally:
            conn.close()
        return _entity_dict(row) if row else None

    def get_entity_by_name(self, name: str) -> Optional[Dict]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM entities WHERE name = ?", (name,)
            ).fetchone()
        finally:
            conn.close()
        return _entity_dict(row) if row else None

    def get_relations(self, entity_id: int) -> List[Dict]:
        """Edges touching an entity (either direction), strongest first."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT r.*, s.name AS source_name, t.name AS target_name
                FROM entity_relations r
                JOIN entities s ON s.id = r.source_id
                JOIN entities t ON t.id = r.target_id
                WHERE r.source_id = ? OR r.target_id = ?
                ORDER BY r.weight DESC, r.id ASC
            """, (entity_id, entity_id)).fetchall()
        finally:
            conn.close()

        relations = []
        for row in rows:
            try:
                evidence = json.loads(row["evidence"]) if row["evidence"] else {}
            except json.JSONDecodeError:
                evidence = {}
            relations.append({
                "id": row["id"],
                "source_id": row["source_id"],
                "source": row["source_name"],
                "target_id": row["target_id"],
                "target": row["target_name"],
                "relation_type": row["relation_type"],
                "weight": row["weight"],
                "evidence": evidence,
                "last_seen": row["last_seen"],
            })
        return relations

    def get_relation_weight(self, source: str, target: str,
                            relation_type: str) -> Optional[float]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT r.weight FROM entity_relations r
                JOIN entities s ON s.id = r.source_id
                JOIN entities t ON t.id = r.target_id
                WHERE s.name = ? AND t.name = ? AND r.relation_type = ?
            """, (source, target, relation_type)).fetchone()
        finally:
            conn.close()
        return row["weight"] if row else None

    def count_entities(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM entities").fetchone()[0]
        finally:
            conn.close()

    def count_relations(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM entity_relations").fetchone()[0]
        finally:
            conn.close()


def _entity_dict(row) -> Dict:
    def _load(value, default):
        try:
            return json.loads(value) if value else default
        except json.JSONDecodeError:
            return default

    return {
        "id": row["id"],
        "name": row["name"],
        "type": row["type"],
        "description": row["description"],
        "aliases": _load(row["aliases"], []),
        "metadata": _load(row["metadata"], {}),
        "created_at": row["created_at"],
    }
