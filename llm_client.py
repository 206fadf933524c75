"""
LLM Client - thin wrapper around the OpenAI SDK.

Works with any OpenAI-compatible endpoint (OpenAI, Groq, OpenRouter) via
LLM_BASE_URL. Every call is checked against the monthly budget and its
token usage is recorded in SQLite.

Response parsing never raises: generate_json() returns a ParseResult.
"""

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from openai import OpenAI

import config

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """Base class for LLM client failures."""


class LLMConfigError(LLMError):
    """No API key configured."""


class BudgetExceededError(LLMError):
    """Monthly LLM spend is over MONTHLY_COST_LIMIT_USD."""


@dataclass
class ParseResult:
    """Outcome of parsing an LLM response: either a value or an error message."""
    ok: bool
    value: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None

    @classmethod
    def success(cls, value) -> "ParseResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, exception: Optional[BaseException] = None) -> "ParseResult":
        return cls(ok=False, error=error, exception=exception)


class LLMClient:
    """Chat-completion client with budget checks and usage logging."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 base_url: Optional[str] = None, db_path=None):
        self.db_path = db_path or config.DB_PATH
        self.api_key = api_key
        self.model = model or config.LLM_MODEL
        self.base_url = base_url or config.LLM_BASE_URL
        self.client = None  # created on first use

    def _get_client(self) -> OpenAI:
        """Lazy-initialize the OpenAI client."""
        if self.client is None:
            api_key = self.api_key or config.get_api_key('llm', db_path=self.db_path)
            if not api_key:
                raise LLMConfigError(
                    "LLM_API_KEY / OPENAI_API_KEY is not set. Add it to your .env file or database."
                )
            self.client = OpenAI(
                api_key=api_key,
                base_url=self.base_url,
                timeout=config.LLM_TIMEOUT_SECONDS,
            )
        return self.client

    def generate(self, prompt: str, system_prompt: Optional[str] = None,
                 temperature: Optional[float] = None, max_tokens: Optional[int] = None,
                 json_mode: bool = False, context: str = "generate") -> str:
        """
        Run a single chat completion and return the message text.

        Raises BudgetExceededError, LLMConfigError, or the SDK's own errors.
        """
        if not self._check_budget():
            raise BudgetExceededError(
                f"Monthly LLM budget (${config.MONTHLY_COST_LIMIT_USD:.2f}) exceeded"
            )

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": config.LLM_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or config.LLM_MAX_TOKENS,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = self._get_client().chat.completions.create(**kwargs)

        if response.usage is not None:
            self._log_usage(response.usage, context=context)

        return (response.choices[0].message.content or "").strip()

    def generate_json(self, prompt: str, expect: type = dict,
                      system_prompt: Optional[str] = None,
                      temperature: Optional[float] = None,
                      max_tokens: Optional[int] = None,
                      context: str = "generate_json") -> ParseResult:
        """
        Like generate(), but parses the reply as JSON of the expected type.

        Provider errors and malformed replies both come back as
        ParseResult.failure; nothing propagates to the caller.
        """
        try:
            text = self.generate(
                prompt, system_prompt=system_prompt, temperature=temperature,
                max_tokens=max_tokens, json_mode=expect is dict, context=context,
            )
        except Exception as e:
            logger.warning(f"LLM call failed ({context}): {e}")
            return ParseResult.failure(f"LLM call failed: {e}", exception=e)

        result = parse_json_response(text, expect=expect)
        if not result.ok:
            logger.warning(
                f"Failed to parse LLM response ({context}): {result.error}; "
                f"raw: {text[:200]!r}"
            )
        return result

    def _check_budget(self) -> bool:
        """Check if monthly LLM spend is under the configured limit."""
        now = datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0).isoformat()

        try:
            conn = sqlite3.connect(str(self.db_path))
            row = conn.execute("""
                SELECT COALESCE(SUM(estimated_cost_usd), 0) as total
                FROM token_usage
                WHERE timestamp >= ?
            """, (month_start,)).fetchone()
            conn.close()
        except sqlite3.OperationalError:
            # token_usage not migrated yet: nothing spent
            return True

        monthly_cost = row[0] if row else 0
        logger.debug(
            f"Monthly LLM spend: ${monthly_cost:.4f} / "
            f"${config.MONTHLY_COST_LIMIT_USD:.2f}"
        )
        return monthly_cost < config.MONTHLY_COST_LIMIT_USD

    def _log_usage(self, usage, context: str = "generate") -> None:
        """Record token usage and estimated cost in SQLite."""
        prompt_tokens = usage.prompt_tokens or 0
        completion_tokens = usage.completion_tokens or 0
        total_tokens = usage.total_tokens or (prompt_tokens + completion_tokens)

        estimated_cost = (
            (prompt_tokens / 1000) * config.COST_PER_1K_INPUT_TOKENS +
            (completion_tokens / 1000) * config.COST_PER_1K_OUTPUT_TOKENS
        )

        try:
            conn = sqlite3.connect(str(self.db_path))
            conn.execute("""
                INSERT INTO token_usage
                (timestamp, model, prompt_tokens, completion_tokens,
                 total_tokens, estimated_cost_usd, context)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                datetime.now(timezone.utc).isoformat(),
                self.model,
                prompt_tokens,
                completion_tokens,
                total_tokens,
                estimated_cost,
                context,
            ))
            conn.commit()
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to record token usage: {e}")

        logger.info(
            f"  Tokens used: {prompt_tokens} input + {completion_tokens} output "
            f"= {total_tokens} total (${estimated_cost:.4f})"
        )


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_response(text: Optional[str], expect: type = dict) -> ParseResult:
    """
    Extract a JSON value of type `expect` (dict or list) from LLM output.

    Tries the whole reply (minus markdown fences) first, then the first
    balanced {...} or [...] block embedded in surrounding prose.
    """
    if not text or not text.strip():
        return ParseResult.failure("empty response")

    cleaned = _FENCE_RE.sub("", text.strip()).strip()

    candidates = [cleaned]
    opener = "{" if expect is dict else "["
    block = _find_balanced_block(cleaned, opener)
    if block and block != cleaned:
        candidates.append(block)

    last_error = "no JSON found"
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = f"invalid JSON: {e}"
            continue
        # json_mode forces an object; accept {"items": [...]} style wrappers for lists
        if expect is list and isinstance(value, dict):
            lists = [v for v in value.values() if isinstance(v, list)]
            if len(lists) == 1:
                value = lists[0]
        if isinstance(value, expect):
            return ParseResult.success(value)
        last_error = f"expected {expect.__name__}, got {type(value).__name__}"

    return ParseResult.failure(last_error)


def _find_balanced_block(text: str, opener: str) -> Optional[str]:
    """Return the first balanced bracket block starting with `opener`, skipping strings."""
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find(opener, start + 1)
    return None
