"""
Entity Extractor - builds the knowledge graph from news articles.

Asks the LLM for AI-related entities (people, companies, models, papers,
concepts) and the relations between them, validates the reply, and merges
it into the KnowledgeGraph.

Extraction failures never abort a batch: the article yields an empty
result and processing moves on.
"""

import logging
from typing import Dict, List

import config
from database_migrations import record_system_log
from knowledge_graph import (
    ENTITY_TYPES, RELATION_TYPES,
    ExtractedEntity, ExtractedRelation, ExtractionResult, KnowledgeGraph,
)
from news_store import ArticleStore

logger = logging.getLogger(__name__)

MAX_ARTICLE_CHARS = 6000

EXTRACTION_PROMPT = """Extract AI-related entities and relationships from this news article.

Article:
{text}

Extract:
1. **Entities**: People, companies, AI models, research papers, concepts
2. **Relationships**: How entities are connected (launched, acquired, funded, published, collaborated, competed)

Respond with JSON:
{{
  "entities": [
    {{
      "name": "Entity name",
      "type": "person" | "organization" | "model" | "company" | "paper" | "concept",
      "description": "Brief description (optional)",
      "aliases": ["alternative names"] (optional)
    }}
  ],
  "relations": [
    {{
      "source": "Entity A name",
      "target": "Entity B name",
      "type": "launched" | "acquired" | "funded" | "published" | "collaborated" | "competed",
      "evidence": "Quote from article that supports this relationship"
    }}
  ]
}}

Only extract entities and relations that are clearly mentioned. Be precise."""


class EntityExtractor:
    """Extracts entities/relations with the LLM and saves them to the graph."""

    def __init__(self, llm_client, db_path=None, graph=None):
        self.db_path = db_path or config.DB_PATH
        self.llm = llm_client
        self.articles = ArticleStore(self.db_path)
        self.graph = graph or KnowledgeGraph(self.db_path)

    def extract_from_article(self, article_id: str) -> ExtractionResult:
        """
        Extract entities and relations from one article.

        Raises ArticleNotFoundError for an unknown id; any LLM or parse
        failure returns an empty ExtractionResult.
        """
        article = self.articles.get_article(article_id)
        body = article.content_en or article.summary_en or ""
        text = f"{article.title_en}\n\n{body}"[:MAX_ARTICLE_CHARS]

        result = self.llm.generate_json(
            EXTRACTION_PROMPT.format(text=text), expect=dict,
            temperature=0.3, max_tokens=4000, context="entity_extraction",
        )
        if not result.ok:
            logger.error(f"Failed to extract entities from {article_id}: {result.error}")
            return ExtractionResult()

        return parse_extraction(result.value)

    def process_article(self, article_id: str) -> Dict:
        extraction = self.extract_from_article(article_id)
        return self.graph.save_extraction(extraction, article_id)

    def process_recent_articles(self, limit: int = config.EXTRACTION_BATCH_LIMIT) -> Dict:
        """Extract and save the most recent articles, one at a time."""
        logger.info(f"Processing {limit} recent articles...")

        article_ids = self.articles.get_recent_article_ids(limit)
        totals = {
            "articles_processed": 0,
            "articles_failed": 0,
            "entities_created": 0,
            "relations_created": 0,
            "relations_updated": 0,
            "relations_skipped": 0,
        }

        if not article_ids:
            logger.info("No articles to process")
            return totals

        for article_id in article_ids:
            try:
                stats = self.process_article(article_id)
            except Exception as e:
                logger.error(f"  ✗ {article_id}: Failed ({e})")
                totals["articles_failed"] += 1
                continue

            totals["articles_processed"] += 1
            for key, value in stats.items():
                totals[key] += value
            logger.info(
                f"  ✓ {article_id}: {stats['entities_created']} entities, "
                f"{stats['relations_created']} relations"
            )

        logger.info(
            f"Total: {totals['entities_created']} entities, "
            f"{totals['relations_created']} relations created"
        )
        record_system_log(
            "entity_extractor", "process_recent_articles",
            "success" if not totals["articles_failed"] else "partial",
            totals, db_path=self.db_path,
        )
        return totals


def parse_extraction(data) -> ExtractionResult:
    """
    Validate a raw LLM extraction payload.

    Entities need a non-empty name and a known type; relations need known
    type and non-empty endpoints. Anything else is dropped.
    """
    if not isinstance(data, dict):
        return ExtractionResult()

    entities: List[ExtractedEntity] = []
    for item in _as_list(data.get("entities")):
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        etype = str(item.get("type") or "").strip().lower()
        if not name or etype not in ENTITY_TYPES:
            logger.debug(f"Dropping invalid entity: {item!r}")
            continue
        aliases = item.get("aliases") or []
        entities.append(ExtractedEntity(
            name=name,
            type=etype,
            description=(str(item["description"]).strip() or None) if item.get("description") else None,
            aliases=[str(a).strip() for a in aliases if str(a).strip()] if isinstance(aliases, list) else [],
        ))

    relations: List[ExtractedRelation] = []
    for item in _as_list(data.get("relations")):
        if not isinstance(item, dict):
            continue
        source = str(item.get("source") or "").strip()
        target = str(item.get("target") or "").strip()
        rtype = str(item.get("type") or "").strip().lower()
        if not source or not target or rtype not in RELATION_TYPES:
            logger.debug(f"Dropping invalid relation: {item!r}")
            continue
        relations.append(ExtractedRelation(
            source=source,
            target=target,
            type=rtype,
            evidence=str(item.get("evidence") or "").strip(),
        ))

    return ExtractionResult(entities=entities, relations=relations)


def _as_list(value) -> list:
    """The LLM may send any JSON type where a list is expected."""
    return value if isinstance(value, list) else []
