"""
JSON API for trending topics, flashcards and the knowledge graph.

Authentication is handled upstream by the hosted auth provider; the
caller's id arrives in the X-User-Id header.

Error shape: {"error": "...", "fields": {...}} with 400 for validation,
401 missing user, 404 unknown record, 503 LLM unavailable, 500 otherwise.
"""

import logging

from flask import Flask, jsonify, request

import config
from flashcard_generator import (
    MAX_CARDS, MIN_CARDS, SUPPORTED_LOCALES,
    FlashcardGenerationError, FlashcardGenerator,
)
from knowledge_graph import KnowledgeGraph
from llm_client import LLMClient, LLMError
from news_store import ArticleNotFoundError
from spaced_repetition import FlashcardNotFoundError, FlashcardStore
from trend_detector import TrendDetector

logger = logging.getLogger(__name__)

MAX_WINDOW_HOURS = 24 * 30
MAX_DUE_LIMIT = 100


class ValidationError(ValueError):
    """Request payload failed validation; `fields` maps field -> message."""

    def __init__(self, fields):
        self.fields = fields
        super().__init__("; ".join(f"{k}: {v}" for k, v in fields.items()))


def _error(message, status, fields=None):
    body = {"error": message}
    if fields:
        body["fields"] = fields
    return jsonify(body), status


def _int_param(raw, name, default, minimum, maximum):
    """Parse an int query/body value within [minimum, maximum]."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ValidationError({name: "must be an integer"})
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError({name: "must be an integer"})
    if isinstance(raw, float) and raw != value:
        raise ValidationError({name: "must be an integer"})
    if not minimum <= value <= maximum:
        raise ValidationError({name: f"must be between {minimum} and {maximum}"})
    return value


def _current_user():
    return (request.headers.get("X-User-Id") or "").strip() or None


def create_app(db_path=None, llm_client=None) -> Flask:
    """Build the Flask app with its own db path and LLM client."""
    app = Flask(__name__)
    db_path = db_path or config.DB_PATH
    llm = llm_client or LLMClient(db_path=db_path)

    flashcards = FlashcardStore(db_path)
    graph = KnowledgeGraph(db_path)

    @app.route("/api/health")
    def api_health():
        return jsonify({"status": "ok"})

    @app.route("/api/trends")
    def api_trends():
        """Trending topics for the last `hours` (cached for an hour)."""
        try:
            hours = _int_param(request.args.get("hours"), "hours",
                               config.TREND_WINDOW_HOURS, 1, MAX_WINDOW_HOURS)
        except ValidationError as e:
            return _error("Invalid request", 400, e.fields)

        refresh = request.args.get("refresh", "").lower() in ("1", "true", "yes")

        try:
            detector = TrendDetector(db_path, llm_client=llm)
            topics = detector.detect_trends(window_hours=hours, force_refresh=refresh)
            return jsonify({
                "window_hours": hours,
                "count": len(topics),
                "topics": [t.to_dict() for t in topics],
            })
        except Exception as e:
            logger.error(f"Trend detection failed: {e}")
            return _error(f"Trend detection failed: {e}", 500)

    @app.route("/api/flashcards/due")
    def api_flashcards_due():
        user_id = _current_user()
        if not user_id:
            return _error("Authentication required", 401)
        try:
            limit = _int_param(request.args.get("limit"), "limit", 20, 1, MAX_DUE_LIMIT)
        except ValidationError as e:
            return _error("Invalid request", 400, e.fields)

        try:
            cards = flashcards.get_due_flashcards(user_id, limit=limit)
            return jsonify({"flashcards": [c.to_dict() for c in cards], "count": len(cards)})
        except Exception as e:
            logger.error(f"Loading due flashcards failed: {e}")
            return _error("Failed to load flashcards", 500)

    @app.route("/api/flashcards/stats")
    def api_flashcards_stats():
        user_id = _current_user()
        if not user_id:
            return _error("Authentication required", 401)
        try:
            return jsonify(flashcards.get_flashcard_stats(user_id))
        except Exception as e:
            logger.error(f"Flashcard stats failed: {e}")
            return _error("Failed to load flashcard stats", 500)

    @app.route("/api/flashcards/<int:flashcard_id>/review", methods=["POST"])
    def api_flashcard_review(flashcard_id):
        """Record a 0-5 recall rating and return the rescheduled card."""
        user_id = _current_user()
        if not user_id:
            return _error("Authentication required", 401)

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        if data.get("quality") in (None, ""):
            return _error("Invalid request", 400, {"quality": "is required"})
        try:
            quality = _int_param(data["quality"], "quality", None, 0, 5)
        except ValidationError as e:
            return _error("Invalid request", 400, e.fields)

        try:
            card = flashcards.record_review(flashcard_id, user_id, quality)
            return jsonify(card.to_dict())
        except FlashcardNotFoundError:
            return _error("Flashcard not found", 404)
        except Exception as e:
            logger.error(f"Recording review for flashcard {flashcard_id} failed: {e}")
            return _error("Failed to record review", 500)

    @app.route("/api/flashcards/generate", methods=["POST"])
    def api_flashcards_generate():
        """Generate study cards for an article with the LLM."""
        user_id = _current_user()
        if not user_id:
            return _error("Authentication required", 401)

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        fields = {}
        article_id = str(data.get("article_id") or "").strip()
        if not article_id:
            fields["article_id"] = "is required"
        locale = data.get("locale", "en")
        if locale not in SUPPORTED_LOCALES:
            fields["locale"] = f"must be one of {', '.join(SUPPORTED_LOCALES)}"
        try:
            count = _int_param(data.get("count"), "count", 10, MIN_CARDS, MAX_CARDS)
        except ValidationError as e:
            fields.update(e.fields)
        if fields:
            return _error("Invalid request", 400, fields)

        try:
            generator = FlashcardGenerator(llm, db_path=db_path)
            cards = generator.generate_for_article(article_id, user_id, locale=locale, count=count)
            return jsonify({"flashcards": [c.to_dict() for c in cards], "count": len(cards)}), 201
        except ArticleNotFoundError:
            return _error("Content not found", 404)
        except FlashcardGenerationError as e:
            logger.error(f"Flashcard generation failed: {e}")
            return _error("Failed to parse LLM response", 502)
        except LLMError as e:
            logger.error(f"LLM unavailable: {e}")
            return _error(str(e), 503)
        except Exception as e:
            logger.error(f"Flashcard generation failed: {e}")
            return _error("Failed to generate flashcards", 500)

    @app.route("/api/graph/entities/<int:entity_id>")
    def api_graph_entity(entity_id):
        """An entity with its weighted relations."""
        try:
            entity = graph.get_entity(entity_id)
            if entity is None:
                return _error("Entity not found", 404)
            entity["relations"] = graph.get_relations(entity_id)
            return jsonify(entity)
        except Exception as e:
            logger.error(f"Loading entity {entity_id} failed: {e}")
            return _error("Failed to load entity", 500)

    return app
