"""
Message Analysis Engine — sentiment, categorization and reply suggestions.

Uses Claude or OpenAI when an API key is configured. Without one (or when
the model returns nothing) a keyword heuristic produces results of the
same shape so the pipeline stays usable in development and tests.
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Optional

from config.settings import LLMConfig, get_settings
from core.errors import TransientError

logger = structlog.get_logger()

POSITIVE_WORDS = {
    "love", "great", "thanks", "thank", "awesome", "excellent", "good", "happy",
    "amazing", "perfect", "wonderful", "glad", "appreciate", "nice", "fantastic",
}
NEGATIVE_WORDS = {
    "hate", "bad", "terrible", "awful", "angry", "disappointed", "broken", "worst",
    "problem", "issue", "refund", "complaint", "unhappy", "late", "poor", "wrong",
}
CATEGORY_KEYWORDS = {
    "support": {"help", "issue", "problem", "broken", "error", "bug", "fix"},
    "billing": {"invoice", "payment", "refund", "charge", "price", "bill", "paid"},
    "scheduling": {"meeting", "schedule", "tomorrow", "calendar", "call", "time"},
    "sales": {"buy", "purchase", "quote", "order", "demo", "pricing"},
    "feedback": {"love", "great", "thanks", "feedback", "review", "suggest"},
}
URGENT_WORDS = {"urgent", "asap", "immediately", "emergency", "now"}

_WORD_RE = re.compile(r"[a-z']+")


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


def _parse_json(result: str) -> dict[str, Any]:
    result = result.strip()
    if result.startswith("```"):
        result = result.split("```")[1].strip()
        if result.startswith("json"):
            result = result[4:].strip()
    return json.loads(result)


class AnalysisEngine:
    """AI analysis used by the background job handlers."""

    def __init__(self, llm_config: Optional[LLMConfig] = None, client: Any = None):
        self._llm = llm_config or get_settings().llm
        self._client = client
        self._provider = self._llm.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None and self._llm.api_key:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._llm.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._llm.api_key)
                logger.info("llm_client_initialized", provider=self._provider, model=self._llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, system: str, user: str, max_tokens: int = 500) -> str:
        """Unified LLM call; provider failures surface as TransientError."""
        client = await self._get_client()
        if not client:
            return ""
        messages = [{"role": "user", "content": user}]
        try:
            if self.is_openai:
                response = await client.chat.completions.create(
                    model=self._llm.model,
                    max_tokens=max_tokens,
                    temperature=self._llm.temperature,
                    messages=[{"role": "system", "content": system}] + messages,
                )
                return response.choices[0].message.content or ""
            response = await client.messages.create(
                model=self._llm.model,
                max_tokens=max_tokens,
                temperature=self._llm.temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text
        except Exception as e:
            logger.warning("llm_call_failed", provider=self._provider, error=str(e))
            raise TransientError(f"LLM call failed: {e}", code="llm_unavailable") from e

    async def _structured(self, system: str, user: str, max_tokens: int = 500) -> Optional[dict[str, Any]]:
        result = await self._call_llm(system, user, max_tokens)
        if not result:
            return None
        try:
            return _parse_json(result)
        except (ValueError, IndexError):
            logger.warning("llm_response_not_json", length=len(result))
            return None

    # ── Sentiment ─────────────────────────────────────────────

    async def analyze_sentiment(self, message_id: str, content: str, context: str = "") -> dict[str, Any]:
        system = (
            "Classify the sentiment of the message. Return ONLY a JSON object with keys "
            "positive, neutral, negative (floats summing to 1), overall "
            "(positive|neutral|negative) and confidence (0-1)."
        )
        user = f"Conversation context: {context}\n\nMessage: {content}" if context else content
        sentiment = await self._structured(system, user)
        if not sentiment or sentiment.get("overall") not in ("positive", "neutral", "negative"):
            sentiment = self._heuristic_sentiment(content)
        return {"message_id": message_id, "sentiment": sentiment}

    def _heuristic_sentiment(self, content: str) -> dict[str, Any]:
        words = _words(content)
        pos = sum(1 for w in words if w in POSITIVE_WORDS)
        neg = sum(1 for w in words if w in NEGATIVE_WORDS)
        if pos == neg:
            return {"positive": 0.1, "neutral": 0.8, "negative": 0.1, "overall": "neutral", "confidence": 0.5}
        total = pos + neg
        lean = max(pos, neg) / total
        strong = round(0.5 + 0.4 * lean, 2)
        weak = round((1 - strong) / 2, 2)
        rest = round(1 - strong - weak, 2)
        if pos > neg:
            return {"positive": strong, "neutral": rest, "negative": weak,
                    "overall": "positive", "confidence": round(0.5 + 0.1 * min(total, 4), 2)}
        return {"positive": weak, "neutral": rest, "negative": strong,
                "overall": "negative", "confidence": round(0.5 + 0.1 * min(total, 4), 2)}

    # ── Categorization ────────────────────────────────────────

    async def categorize_message(
        self, message_id: str, content: str, existing_categories: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        known = existing_categories or list(CATEGORY_KEYWORDS)
        system = (
            "Categorize the message. Return ONLY a JSON object with keys primary (string), "
            "secondary (list of strings), confidence (0-1) and urgency (low|medium|high). "
            f"Prefer these categories: {', '.join(known)}."
        )
        category = await self._structured(system, content)
        if not category or not category.get("primary"):
            category = self._heuristic_category(content, known)
        return {"message_id": message_id, "category": category}

    def _heuristic_category(self, content: str, known: list[str]) -> dict[str, Any]:
        words = set(_words(content))
        scores = {
            name: len(words & CATEGORY_KEYWORDS.get(name, {name}))
            for name in known
        }
        ranked = [name for name, score in sorted(scores.items(), key=lambda kv: -kv[1]) if score > 0]
        urgency = "high" if words & URGENT_WORDS else "medium" if "?" in content else "low"
        if not ranked:
            return {"primary": "general", "secondary": [], "confidence": 0.3, "urgency": urgency}
        return {"primary": ranked[0], "secondary": ranked[1:3], "confidence": 0.6, "urgency": urgency}

    # ── Suggestions ───────────────────────────────────────────

    async def generate_suggestions(
        self,
        message_id: str,
        content: str,
        conversation_id: str = "",
        history: Optional[list[dict[str, str]]] = None,
        tone: str = "professional",
    ) -> dict[str, Any]:
        system = (
            f"Suggest three short replies in a {tone} tone to the latest message. Return ONLY a "
            "JSON object with key suggestions: a list of objects with text, confidence (0-1), "
            "tone and length_category (short|medium|long)."
        )
        user = (
            f"Conversation history: {json.dumps(history or [])}\n\nLatest message: {content}"
        )
        data = await self._structured(system, user, max_tokens=600)
        suggestions = (data or {}).get("suggestions") or self._fallback_suggestions(content, tone)
        return {"message_id": message_id, "conversation_id": conversation_id, "suggestions": suggestions}

    def _fallback_suggestions(self, content: str, tone: str) -> list[dict[str, Any]]:
        overall = self._heuristic_sentiment(content)["overall"]
        if overall == "positive":
            texts = ["Thank you so much!", "Glad to hear that.", "That's great news, thanks for sharing."]
        elif overall == "negative":
            texts = ["I'm sorry to hear that.", "Let me look into this right away.",
                     "Thanks for flagging this, I'll get back to you shortly."]
        else:
            texts = ["Thanks for your message.", "Got it, I'll follow up soon.", "Could you share a few more details?"]
        return [
            {"text": t, "confidence": 0.4, "tone": tone,
             "length_category": "short" if len(t) < 30 else "medium"}
            for t in texts
        ]
