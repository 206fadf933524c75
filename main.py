"""
AI News Intelligence Engine — command line entry point.

Runs the content-intelligence jobs against the local database:
  migrate            Create / update the database schema
  set-api-key        Store an LLM API key in the database (used before .env)
  import-articles    Load a JSON array of articles into the store
  trends             Detect trending topics (cached for an hour)
  extract-entities   Build the knowledge graph from recent articles
  serve              Start the JSON API

Usage:
  python main.py migrate
  python main.py set-api-key llm sk-...
  python main.py import-articles articles.json
  python main.py trends --hours 24 --refresh
  python main.py extract-entities --limit 10
  python main.py serve --port 8000
"""

import argparse
import json
import logging
import sys

import config
from database_migrations import run_migrations, seed_api_key


def setup_logging():
    """Configure console logging with timestamps."""
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_args(argv=None):
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="AI News Intelligence Engine — trends, flashcards and knowledge graph"
    )
    parser.add_argument(
        "--db",
        default=None,
        help=f"SQLite database path (default: {config.DB_PATH})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("migrate", help="Create or update the database schema")

    key = sub.add_parser("set-api-key", help="Store an API key in the database")
    key.add_argument("service", choices=["llm", "openai"])
    key.add_argument("api_key")

    imp = sub.add_parser("import-articles", help="Import articles from a JSON file")
    imp.add_argument("path", help="JSON file containing an array of articles")

    trends = sub.add_parser("trends", help="Detect trending topics")
    trends.add_argument(
        "--hours", type=int, default=config.TREND_WINDOW_HOURS,
        help="Window length in hours (compared against the previous window)",
    )
    trends.add_argument(
        "--refresh", action="store_true",
        help="Ignore the cached result and recompute",
    )
    trends.add_argument(
        "--no-llm", action="store_true",
        help="Skip LLM refinement of topic labels",
    )
    trends.add_argument(
        "--promote", action="store_true",
        help="Add the strongest topics to the knowledge graph as concepts",
    )

    extract = sub.add_parser("extract-entities", help="Extract entities from recent articles")
    extract.add_argument(
        "--limit", type=int, default=config.EXTRACTION_BATCH_LIMIT,
        help="Number of recent articles to process",
    )

    serve = sub.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--host", default=config.API_HOST)
    serve.add_argument("--port", type=int, default=config.API_PORT)

    return parser.parse_args(argv)


def cmd_set_api_key(args, db_path):
    if not args.api_key.strip():
        raise ValueError("API key must not be empty")
    seed_api_key(args.service, args.api_key.strip(), db_path=db_path)
    print(f"Stored API key for '{args.service}'")
    return 0


def cmd_import_articles(args, db_path):
    from news_store import ArticleStore

    inserted = ArticleStore(db_path).import_json(args.path)
    print(f"Imported {inserted} new articles")
    return 0


def cmd_trends(args, db_path):
    from knowledge_graph import KnowledgeGraph
    from llm_client import LLMClient
    from trend_detector import TrendDetector

    llm = None if args.no_llm else LLMClient(db_path=db_path)
    detector = TrendDetector(db_path, llm_client=llm, refine_with_llm=not args.no_llm)
    topics = detector.detect_trends(window_hours=args.hours, force_refresh=args.refresh)

    if args.promote and topics:
        KnowledgeGraph(db_path).promote_trending_topics(topics)

    print(json.dumps([t.to_dict() for t in topics], indent=2, ensure_ascii=False))
    return 0


def cmd_extract_entities(args, db_path):
    from entity_extractor import EntityExtractor
    from llm_client import LLMClient

    extractor = EntityExtractor(LLMClient(db_path=db_path), db_path=db_path)
    totals = extractor.process_recent_articles(limit=args.limit)
    print(json.dumps(totals, indent=2))
    return 0 if not totals["articles_failed"] else 1


def cmd_serve(args, db_path):
    from api import create_app

    app = create_app(db_path=db_path)
    app.run(host=args.host, port=args.port)
    return 0


COMMANDS = {
    "set-api-key": cmd_set_api_key,
    "import-articles": cmd_import_articles,
    "trends": cmd_trends,
    "extract-entities": cmd_extract_entities,
    "serve": cmd_serve,
}


def main(argv=None):
    setup_logging()
    logger = logging.getLogger("engine")
    args = parse_args(argv)
    db_path = args.db or config.DB_PATH

    # Every command needs the schema; migrations are idempotent
    run_migrations(db_path)
    if args.command == "migrate":
        return 0

    try:
        return COMMANDS[args.command](args, db_path)
    except (ValueError, LookupError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
