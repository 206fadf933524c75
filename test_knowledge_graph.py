"""
Tests for the knowledge graph upserts.

Relation weight after N identical ingestions must be
min(1.0, 0.7 + 0.1 * (N - 1)); entities are never duplicated.
"""

import os
import shutil
import sqlite3
import sys
import tempfile
import threading
import unittest
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from database_migrations import run_migrations
from knowledge_graph import (
    ExtractedEntity, ExtractedRelation, ExtractionResult, KnowledgeGraph,
)
from trend_detector import TrendingTopic


def _extraction():
    return ExtractionResult(
        entities=[
            ExtractedEntity(name="OpenAI", type="company", aliases=["Open AI"]),
            ExtractedEntity(name="GPT-5", type="model", description="Frontier model"),
        ],
        relations=[
            ExtractedRelation(source="OpenAI", target="GPT-5", type="launched",
                              evidence="OpenAI launched GPT-5 on Tuesday."),
        ],
    )


class TestKnowledgeGraphUpserts(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = Path(self.tmpdir) / "test.db"
        run_migrations(self.db_path)
        self.graph = KnowledgeGraph(self.db_path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_first_ingestion_creates_everything(self):
        stats = self.graph.save_extraction(_extraction(), "article-1")
        self.assertEqual(stats, {
            "entities_created": 2,
            "relations_created": 1,
            "relations_updated": 0,
            "relations_skipped": 0,
        })
        self.assertAlmostEqual(
            self.graph.get_relation_weight("OpenAI", "GPT-5", "launched"), 0.7)

        entity = self.graph.get_entity_by_name("OpenAI")
        self.assertEqual(entity["type"], "company")
        self.assertEqual(entity["aliases"], ["Open AI"])
        self.assertEqual(entity["metadata"], {"source_article": "article-1"})

    def test_weight_after_repeated_ingestion(self):
        for n in range(1, 7):
            self.graph.save_extraction(_extraction(), f"article-{n}")
            expected = min(1.0, 0.7 + 0.1 * (n - 1))
            self.assertAlmostEqual(
                self.graph.get_relation_weight("OpenAI", "GPT-5", "launched"),
                expected, places=6, msg=f"wrong weight after {n} ingestions",
            )

    def test_repeated_ingestion_does_not_duplicate(self):
        self.graph.save_extraction(_extraction(), "article-1")
        stats = self.graph.save_extraction(_extraction(), "article-2")
        self.assertEqual(stats["entities_created"], 0)
        self.assertEqual(stats["relations_created"], 0)
        self.assertEqual(stats["relations_updated"], 1)
        self.assertEqual(self.graph.count_entities(), 2)
        self.assertEqual(self.graph.count_relations(), 1)

    def test_existing_entity_keeps_first_description(self):
        self.graph.save_extraction(_extraction(), "article-1")
        again = ExtractionResult(entities=[
            ExtractedEntity(name="GPT-5", type="model", description="Something else"),
        ])
        self.graph.save_extraction(again, "article-2")
        self.assertEqual(self.graph.get_entity_by_name("GPT-5")["description"], "Frontier model")

    def test_evidence_kept_from_first_sighting(self):
        self.graph.save_extraction(_extraction(), "article-1")
        self.graph.save_extraction(_extraction(), "article-2")
        openai_id = self.graph.get_entity_by_name("OpenAI")["id"]
        relations = self.graph.get_relations(openai_id)
        self.assertEqual(len(relations), 1)
        self.assertEqual(relations[0]["evidence"]["articles"], ["article-1"])
        self.assertEqual(relations[0]["source"], "OpenAI")
        self.assertEqual(relations[0]["target"], "GPT-5")

    def test_relation_direction_and_type_are_distinct_edges(self):
        extraction = _extraction()
        extraction.relations.append(ExtractedRelation(
            source="GPT-5", target="OpenAI", type="launched", evidence="reverse"))
        extraction.relations.append(ExtractedRelation(
            source="OpenAI", target="GPT-5", type="published", evidence="other type"))
        stats = self.graph.save_extraction(extraction, "article-1")
        self.assertEqual(stats["relations_created"], 3)
        self.assertEqual(self.graph.count_relations(), 3)

    def test_relation_with_unknown_entity_skipped(self):
        extraction = _extraction()
        extraction.relations.append(ExtractedRelation(
            source="OpenAI", target="Anthropic", type="competed", evidence="..."))
        stats = self.graph.save_extraction(extraction, "article-1")
        self.assertEqual(stats["relations_skipped"], 1)
        self.assertEqual(stats["relations_created"], 1)
        self.assertIsNone(self.graph.get_entity_by_name("Anthropic"))

    def test_citation_per_processed_relation(self):
        extraction = _extraction()
        extraction.relations.append(ExtractedRelation(
            source="OpenAI", target="Nobody", type="funded", evidence="skipped"))
        self.graph.save_extraction(extraction, "article-1")

        conn = sqlite3.connect(str(self.db_path))
        rows = conn.execute("SELECT article_id, quote, source_url FROM citations").fetchall()
        conn.close()
        self.assertEqual(rows, [
            ("article-1", "OpenAI launched GPT-5 on Tuesday.", "article:article-1"),
        ])

    def test_empty_extraction(self):
        stats = self.graph.save_extraction(ExtractionResult(), "article-1")
        self.assertEqual(sum(stats.values()), 0)

    def test_concurrent_ingestion_loses_no_increment(self):
        self.graph.save_extraction(_extraction(), "article-0")
        errors = []

        def ingest(i):
            try:
                KnowledgeGraph(self.db_path).save_extraction(_extraction(), f"article-{i}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=ingest, args=(i,)) for i in range(1, 3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertAlmostEqual(
            self.graph.get_relation_weight("OpenAI", "GPT-5", "launched"), 0.9, places=6)


class TestPromoteTrendingTopics(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = Path(self.tmpdir) / "test.db"
        run_migrations(self.db_path)
        self.graph = KnowledgeGraph(self.db_path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_promotes_frequent_new_topics(self):
        self.graph.save_extraction(_extraction(), "article-1")
        trends = [
            TrendingTopic(topic="gpt-5", frequency=12, growth=300.0),  # exists as GPT-5
            TrendingTopic(topic="agents", frequency=7, growth=100.0),
            TrendingTopic(topic="robotics", frequency=1, growth=100.0),  # too rare
        ]
        created = self.graph.promote_trending_topics(trends)
        self.assertEqual(created, 1)

        entity = self.graph.get_entity_by_name("agents")
        self.assertEqual(entity["type"], "concept")
        self.assertEqual(entity["metadata"]["growth"], 100.0)
        self.assertIsNone(self.graph.get_entity_by_name("robotics"))

    def test_promotion_is_idempotent(self):
        trends = [TrendingTopic(topic="agents", frequency=7, growth=100.0)]
        self.assertEqual(self.graph.promote_trending_topics(trends), 1)
        self.assertEqual(self.graph.promote_trending_topics(trends), 0)
        self.assertEqual(self.graph.count_entities(), 1)

    def test_limit(self):
        trends = [TrendingTopic(topic=f"topic{i}", frequency=9, growth=100.0) for i in range(8)]
        self.assertEqual(self.graph.promote_trending_topics(trends, limit=3), 3)


if __name__ == '__main__':
    unittest.main(verbosity=2)
