"""
Database migrations for the News Intelligence Engine.

Creates the article, trend cache, flashcard, knowledge graph and bookkeeping
tables. Safe to run multiple times (idempotent).
"""

import sqlite3
import logging
import config

logger = logging.getLogger(__name__)


def run_migrations(db_path=None):
    """
    Create every table the engine uses.
    Safe to call multiple times - only creates tables if they don't exist.
    """
    db_path = db_path or config.DB_PATH
    conn = sqlite3.connect(str(db_path))

    logger.info("Running database migrations...")

    conn.executescript("""
        -- Articles written by the external ingestion process
        CREATE TABLE IF NOT EXISTS news_articles (
            id TEXT PRIMARY KEY,
            title_en TEXT NOT NULL,
            title_es TEXT,
            content_en TEXT,
            content_es TEXT,
            summary_en TEXT,
            tags TEXT DEFAULT '[]',     -- JSON array
            category TEXT,
            published_at TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        -- Computed trending topics, one row per window size
        CREATE TABLE IF NOT EXISTS trending_topics_cache (
            window_hours INTEGER PRIMARY KEY,
            topics TEXT NOT NULL,       -- JSON array of TrendingTopic dicts
            computed_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );

        -- SM-2 flashcards
        CREATE TABLE IF NOT EXISTS flashcards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            content_id TEXT,
            content_type TEXT DEFAULT 'article',  -- 'article', 'course', 'entity'
            front TEXT NOT NULL,
            back TEXT NOT NULL,
            category TEXT,
            locale TEXT DEFAULT 'en',
            ease_factor REAL NOT NULL DEFAULT 2.5,
            interval_days INTEGER NOT NULL DEFAULT 0,
            repetitions INTEGER NOT NULL DEFAULT 0,
            due_at TEXT NOT NULL,
            last_reviewed_at TEXT,
            created_at TEXT NOT NULL
        );

        -- Knowledge graph nodes
        CREATE TABLE IF NOT EXISTS entities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            type TEXT NOT NULL,
            description TEXT,
            aliases TEXT DEFAULT '[]',   -- JSON array
            metadata TEXT DEFAULT '{}',  -- JSON object
            created_at TEXT NOT NULL
        );

        -- Knowledge graph edges
        CREATE TABLE IF NOT EXISTS entity_relations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id INTEGER NOT NULL,
            target_id INTEGER NOT NULL,
            relation_type TEXT NOT NULL,
            weight REAL NOT NULL,
            evidence TEXT DEFAULT '{}',  -- {"articles": [...], "quotes": [...]}
            last_seen TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (source_id) REFERENCES entities(id) ON DELETE CASCADE,
            FOREIGN KEY (target_id) REFERENCES entities(id) ON DELETE CASCADE,
            UNIQUE(source_id, target_id, relation_type)
        );

        CREATE TABLE IF NOT EXISTS citations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            article_id TEXT NOT NULL,
            quote TEXT,
            source_url TEXT,
            published_at TEXT NOT NULL
        );

        -- LLM spend tracking
        CREATE TABLE IF NOT EXISTS token_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            model TEXT,
            prompt_tokens INTEGER,
            completion_tokens INTEGER,
            total_tokens INTEGER,
            estimated_cost_usd REAL,
            context TEXT
        );

        -- Agent run log
        CREATE TABLE IF NOT EXISTS ai_system_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            agent_type TEXT NOT NULL,
            operation TEXT NOT NULL,
            status TEXT NOT NULL,
            metadata TEXT DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        -- API credentials (admin-managed)
        CREATE TABLE IF NOT EXISTS api_credentials (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            service TEXT UNIQUE NOT NULL,  -- 'llm', 'openai'
            api_key TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        -- General app configuration (key-value store)
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_articles_published
            ON news_articles(published_at);
        CREATE INDEX IF NOT EXISTS idx_flashcards_user_due
            ON flashcards(user_id, due_at);
        CREATE INDEX IF NOT EXISTS idx_relations_source
            ON entity_relations(source_id);
        CREATE INDEX IF NOT EXISTS idx_relations_target
            ON entity_relations(target_id);
        CREATE INDEX IF NOT EXISTS idx_token_usage_timestamp
            ON token_usage(timestamp);
    """)

    conn.commit()
    conn.close()

    logger.info("Database migrations complete")


def seed_api_key(service: str, api_key: str, db_path=None):
    """Store (or replace) an API key in the api_credentials table."""
    from datetime import datetime, timezone

    db_path = db_path or config.DB_PATH
    now = datetime.now(timezone.utc).isoformat()
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("""
            INSERT INTO api_credentials (service, api_key, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(service) DO UPDATE SET api_key = excluded.api_key,
                                               updated_at = excluded.updated_at
        """, (service, api_key, now, now))
        conn.commit()
        logger.info(f"Stored API key for '{service}'")
    finally:
        conn.close()


def record_system_log(agent_type: str, operation: str, status: str,
                      metadata=None, db_path=None):
    """Append an agent run entry to ai_system_logs. Never raises."""
    import json
    from datetime import datetime, timezone

    db_path = db_path or config.DB_PATH
    try:
        conn = sqlite3.connect(str(db_path))
        conn.execute("""
            INSERT INTO ai_system_logs (agent_type, operation, status, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            agent_type, operation, status,
            json.dumps(metadata or {}),
            datetime.now(timezone.utc).isoformat(),
        ))
        conn.commit()
        conn.close()
    except sqlite3.Error as e:
        logger.warning(f"Failed to write system log for {agent_type}/{operation}: {e}")
