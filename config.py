"""
Global configuration for the AI News Intelligence Engine.

Holds environment-driven settings and defaults. Components take an explicit
db_path / client argument and only fall back to these values.

API keys can be stored in database (preferred) or .env (fallback).
"""

import logging
import os
import sqlite3
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

# ── Paths ──
PROJECT_ROOT = Path(__file__).parent
DATA_DIR = Path(os.getenv("NEWS_ENGINE_DATA_DIR", PROJECT_ROOT / "data"))
DB_PATH = DATA_DIR / "news_engine.db"

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)


def get_api_key(service: str, db_path=None) -> str:
    """
    Get API key from database first, fall back to environment variable.

    Args:
        service: 'llm' or 'openai'

    Returns:
        API key string or empty string if not found
    """
    db_path = Path(db_path or DB_PATH)
    if db_path.exists():
        try:
            conn = sqlite3.connect(str(db_path))
            row = conn.execute(
                "SELECT api_key FROM api_credentials WHERE service = ?",
                (service,)
            ).fetchone()
            conn.close()

            if row:
                logger.debug(f"Found API key for '{service}' in database")
                return row[0]
        except sqlite3.Error as e:
            logger.debug(f"Database lookup failed for '{service}': {e}")

    env_map = {
        'llm': ('LLM_API_KEY', 'OPENAI_API_KEY'),
        'openai': ('OPENAI_API_KEY',),
    }

    for env_var in env_map.get(service, ()):
        value = os.getenv(env_var, '')
        if value:
            return value

    return ''


# ── LLM (any OpenAI-compatible endpoint: OpenAI, Groq, OpenRouter) ──
LLM_BASE_URL = os.getenv("LLM_BASE_URL") or None
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2000"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ── Cost Control ──
MONTHLY_COST_LIMIT_USD = float(os.getenv("MONTHLY_COST_LIMIT_USD", "4.50"))
# GPT-4o-mini pricing (per 1K tokens)
COST_PER_1K_INPUT_TOKENS = 0.00015
COST_PER_1K_OUTPUT_TOKENS = 0.00060

# ── Trending Topics ──
TREND_WINDOW_HOURS = int(os.getenv("TREND_WINDOW_HOURS", "24"))
TREND_CACHE_TTL_HOURS = float(os.getenv("TREND_CACHE_TTL_HOURS", "1"))
TREND_ARTICLE_LIMIT = 200  # per window
TREND_RESULT_LIMIT = 10  # topics returned (and sent for refinement)
TREND_REFINE_WITH_LLM = os.getenv("TREND_REFINE_WITH_LLM", "1").lower() in ("1", "true", "yes")

# ── Knowledge Graph ──
RELATION_INITIAL_WEIGHT = 0.7
RELATION_WEIGHT_STEP = 0.1
RELATION_MAX_WEIGHT = 1.0
TOPIC_ENTITY_MIN_FREQUENCY = int(os.getenv("TOPIC_ENTITY_MIN_FREQUENCY", "3"))
EXTRACTION_BATCH_LIMIT = int(os.getenv("EXTRACTION_BATCH_LIMIT", "10"))

# ── Flashcards (SM-2) ──
DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 2.5
MASTERED_REPETITIONS = 5

# ── HTTP API ──
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))

# ── Logging ──
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
