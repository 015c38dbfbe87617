"""Chat-completion client used for sentiment analysis and content generation."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from extraction_worker.core.errors import ErrorKind, StepError, kind_for_status_code

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60
MAX_REVIEWS_IN_PROMPT = 30
MAX_WEBSITE_CHARS = 6000

# USD per 1K tokens (prompt, completion); unknown models are costed at zero.
MODEL_PRICING = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
}

_ENTITY_LABELS = {
    "restaurant": "restaurant",
    "hotel": "hotel",
    "mall": "shopping mall",
    "attraction": "tourist attraction",
    "fitness": "fitness center",
    "school": "school",
}


class AIClientError(StepError):
    """Raised when the completion API fails or returns unusable content."""


class AIClient:
    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = "https://api.openai.com/v1/chat/completions",
        model: str = "gpt-4o-mini",
        session: Optional[requests.Session] = None,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.session = session or requests.Session()
        self.timeout = timeout

    def complete_json(self, system: str, user: str, *, max_tokens: int = 1500) -> Dict[str, Any]:
        """Run one chat completion and parse the reply as a JSON object.

        Returns the parsed object with the call's cost under ``_cost_usd``.
        """
        if not self.api_key:
            raise AIClientError(ErrorKind.FATAL, "AI_API_KEY is not configured")
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": max_tokens,
            "temperature": 0.3,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        response = self.session.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        if response.status_code >= 400:
            logger.error("AI completion failed: status=%s body=%s", response.status_code, response.text[:300])
            raise AIClientError(kind_for_status_code(response.status_code), f"AI API returned {response.status_code}")
        data = response.json()

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AIClientError(ErrorKind.TRANSIENT, "AI API response had no message content") from exc
        try:
            parsed = json.loads(content)
        except (TypeError, ValueError) as exc:
            raise AIClientError(ErrorKind.TRANSIENT, f"AI reply was not valid JSON: {str(content)[:120]}") from exc
        if not isinstance(parsed, dict):
            raise AIClientError(ErrorKind.TRANSIENT, "AI reply was not a JSON object")

        parsed["_cost_usd"] = self._cost(data.get("usage") or {})
        return parsed

    def _cost(self, usage: Dict[str, Any]) -> float:
        prompt_rate, completion_rate = MODEL_PRICING.get(self.model, (0.0, 0.0))
        prompt_tokens = usage.get("prompt_tokens") or 0
        completion_tokens = usage.get("completion_tokens") or 0
        return prompt_tokens / 1000 * prompt_rate + completion_tokens / 1000 * completion_rate

    def analyze_sentiment(self, entity_type: str, name: str, reviews: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        label = _ENTITY_LABELS.get(entity_type, entity_type)
        system = (
            f"You analyse customer reviews of a {label}. Reply with a JSON object with keys "
            '"summary" (2-3 sentences), "overall" (one of "positive", "mixed", "negative"), '
            '"positives" (list of strings), "negatives" (list of strings) and "modifiers", an object '
            "mapping aspect names to adjustments between -1.0 and 1.0. Only use facts present in the reviews."
        )
        user = f"Name: {name}\nReviews:\n{_format_reviews(reviews)}"
        return self.complete_json(system, user, max_tokens=800)

    def enhance_content(
        self,
        entity_type: str,
        name: str,
        facts: Dict[str, Any],
        website_text: Optional[str] = None,
        reviews: Sequence[Dict[str, Any]] = (),
    ) -> Dict[str, Any]:
        label = _ENTITY_LABELS.get(entity_type, entity_type)
        system = (
            f"You write directory listings for a {label}. Reply with a JSON object with keys "
            '"description" (2 paragraphs), "short_description" (max 160 chars), "meta_title", '
            '"meta_description", "faqs" (list of {"question", "answer"}), "suggested_categories" '
            '(list of category names) and "suggested_features" (list of strings). '
            "Never invent prices, phone numbers or opening hours."
        )
        parts: List[str] = [f"Name: {name}", f"Facts: {json.dumps(facts, default=str, ensure_ascii=False)}"]
        if website_text:
            parts.append(f"Website excerpt: {website_text[:MAX_WEBSITE_CHARS]}")
        if reviews:
            parts.append(f"Reviews:\n{_format_reviews(reviews)}")
        return self.complete_json(system, "\n\n".join(parts), max_tokens=2000)


def _format_reviews(reviews: Sequence[Dict[str, Any]]) -> str:
    lines = []
    for review in list(reviews)[:MAX_REVIEWS_IN_PROMPT]:
        text = (review.get("text") or "").replace("\n", " ").strip()
        if text:
            lines.append(f"- ({review.get('rating', '?')}/5) {text[:500]}")
    return "\n".join(lines) or "(no review text)"
