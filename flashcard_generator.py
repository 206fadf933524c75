"""
Flashcard Generator - turns an article into study cards with the LLM.

Prompts are bilingual (en / es) and follow the article's locale. Cards are
stored through FlashcardStore, due immediately.
"""

import logging
from typing import Dict, List

import config
from llm_client import LLMError
from news_store import ArticleStore
from spaced_repetition import Flashcard, FlashcardStore

logger = logging.getLogger(__name__)

SUPPORTED_LOCALES = ("en", "es")
MIN_CARDS = 3
MAX_CARDS = 20
MAX_FRONT_CHARS = 100
MAX_BACK_CHARS = 300
MAX_CONTENT_CHARS = 3000

PROMPTS = {
    "en": (
        "Generate {count} flashcards for learning from this content. Each flashcard should have:\n"
        "- front: A concise question or concept (max 100 chars)\n"
        "- back: A clear, detailed answer (max 300 chars)\n\n"
        "Format as JSON array:\n"
        '[{{"front": "...", "back": "..."}}, ...]\n\n'
        "Content:\n{content}"
    ),
    "es": (
        "Genera {count} tarjetas de estudio para aprender de este contenido. Cada tarjeta debe tener:\n"
        "- front: Una pregunta o concepto conciso (máx 100 caracteres)\n"
        "- back: Una respuesta clara y detallada (máx 300 caracteres)\n\n"
        "Formato JSON array:\n"
        '[{{"front": "...", "back": "..."}}, ...]\n\n'
        "Contenido:\n{content}"
    ),
}


class FlashcardGenerationError(RuntimeError):
    """The LLM reply could not be turned into flashcards."""


class FlashcardGenerator:
    """Generates and stores flashcards for an article."""

    def __init__(self, llm_client, db_path=None):
        self.db_path = db_path or config.DB_PATH
        self.llm = llm_client
        self.articles = ArticleStore(self.db_path)
        self.store = FlashcardStore(self.db_path)

    def generate_for_article(self, article_id: str, user_id: str,
                             locale: str = "en", count: int = 10) -> List[Flashcard]:
        """
        Generate `count` cards for an article and save them for `user_id`.

        Raises ValueError for bad locale/count, ArticleNotFoundError for an
        unknown article, LLMError when the LLM is unavailable (no key, over
        budget), FlashcardGenerationError when the reply is unusable.
        """
        if locale not in SUPPORTED_LOCALES:
            raise ValueError(f"locale must be one of {SUPPORTED_LOCALES}, got {locale!r}")
        if not MIN_CARDS <= count <= MAX_CARDS:
            raise ValueError(f"count must be between {MIN_CARDS} and {MAX_CARDS}, got {count}")

        article = self.articles.get_article(article_id)
        content = f"{article.title(locale)}\n\n{article.content(locale)}"[:MAX_CONTENT_CHARS]

        prompt = PROMPTS[locale].format(count=count, content=content)
        result = self.llm.generate_json(
            prompt, expect=list, temperature=0.7, max_tokens=2000,
            context="flashcard_generation",
        )
        if not result.ok:
            if isinstance(result.exception, LLMError):
                raise result.exception
            raise FlashcardGenerationError(f"Failed to parse LLM response: {result.error}")

        cards = clean_cards(result.value)[:count]
        if not cards:
            raise FlashcardGenerationError("LLM returned no usable flashcards")

        logger.info(f"Generated {len(cards)} flashcards for article {article_id} ({locale})")
        return self.store.create_flashcards(
            user_id, article_id, cards,
            content_type="article", locale=locale, category=article.category,
        )


def clean_cards(items) -> List[Dict]:
    """Keep {front, back} entries with non-empty text, trimmed to length limits."""
    cards = []
    for item in items:
        if not isinstance(item, dict):
            continue
        front = str(item.get("front") or "").strip()
        back = str(item.get("back") or "").strip()
        if front and back:
            cards.append({"front": front[:MAX_FRONT_CHARS], "back": back[:MAX_BACK_CHARS]})
    return cards
