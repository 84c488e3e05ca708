"""
Book recommender - picks catalogue books for a free-text request.

Candidates come from the business data (keyword match, topped up with
other sellable books) together with their quantity sold over the last
90 days. The model ranks them and writes a short summary and reason per
book. When the model is unavailable, or answers with nothing usable, the
best sellers among the candidates are returned instead.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from . import config
from .business_data import BusinessDataReader
from .gemini_gateway import GeminiGateway
from .response_guard import parse_json_object

logger = logging.getLogger(__name__)

MIN_RESULTS = 3
MAX_RESULTS = 20
CANDIDATE_LIMIT = 120
BACKUP_LIMIT = 150
BEST_SELLER_DAYS = 90

RECOMMEND_SYSTEM_PROMPT = """You are the book advisor of an online bookstore.
Task:
- Read the customer request and the list of candidate books.
- Choose at most `maxResults` books that fit best.
- For each book write a short summary (2-4 sentences) and why it fits the request (1-2 sentences).
- Prefer best sellers (high totalSold90d), books on topic, recent publish years and suitable prices.
- Only recommend ISBNs that appear in `candidates`.

Reply ONLY with valid JSON in this shape:
{
  "recommendations": [
    {"isbn": "...", "aiSummary": "...", "aiReason": "...", "score": 0-100}
  ],
  "overallSummary": "at most 3 sentences"
}"""

AI_UNAVAILABLE_SUMMARY = "The AI service could not be reached; showing recent best sellers instead."
NO_USABLE_ANSWER_SUMMARY = "The AI answer could not be used; showing recent best sellers instead."


def clamp_max_results(value: Optional[int]) -> int:
    if value is None:
        value = config.RECOMMEND_DEFAULT_MAX_RESULTS
    return max(MIN_RESULTS, min(MAX_RESULTS, int(value)))


@dataclass
class RecommendedBook:
    item: Dict[str, Any]
    total_sold: int = 0
    ai_summary: Optional[str] = None
    ai_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isbn": self.item["id"],
            "title": self.item.get("title"),
            "category": self.item.get("category"),
            "publisher": self.item.get("publisher"),
            "authors": list(self.item.get("authors") or []),
            "publishYear": self.item.get("publish_year"),
            "price": self.item.get("price"),
            "stock": self.item.get("stock"),
            "totalSold90d": self.total_sold,
            "aiSummary": self.ai_summary,
            "aiReason": self.ai_reason,
        }


@dataclass
class Recommendation:
    books: List[RecommendedBook] = field(default_factory=list)
    summary: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "books": [b.to_dict() for b in self.books],
            "summary": self.summary,
            "fallback": self.fallback,
        }


class BookRecommender:
    """Recommends books for a free-text request.

    Args:
        gateway: GeminiGateway used for the ranking call.
        reader: BusinessDataReader supplying candidates and sales figures.
        clock: Returns "now" for the best-seller window; naive, like the
            order timestamps it is compared with.
    """

    def __init__(
        self,
        gateway: GeminiGateway,
        reader: BusinessDataReader,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.gateway = gateway
        self.reader = reader
        self.clock = clock

    def _candidates(self, prompt: str, max_results: int) -> List[Dict[str, Any]]:
        candidates = self.reader.search_items(prompt, limit=CANDIDATE_LIMIT)
        if len(candidates) < max_results:
            seen = {c["id"] for c in candidates}
            backups = [
                item for item in self.reader.list_sellable_items(limit=BACKUP_LIMIT + len(seen))
                if item["id"] not in seen
            ]
            candidates = candidates + backups[:BACKUP_LIMIT]
        return candidates

    async def recommend(
        self, prompt: str, max_results: Optional[int] = None, timeout: Optional[float] = None
    ) -> Recommendation:
        """Raises ValueError for an empty prompt."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        prompt = prompt.strip()
        limit = clamp_max_results(max_results)

        candidates = await asyncio.to_thread(self._candidates, prompt, limit)
        since = self.clock() - timedelta(days=BEST_SELLER_DAYS)
        sold = await asyncio.to_thread(self.reader.best_seller_quantities, since)
        logger.info(f"[RECOMMEND] {len(candidates)} candidates for request: {prompt[:80]}")

        if not candidates:
            return Recommendation(summary="No books are currently on sale.", fallback=True)

        payload = json.dumps({
            "type": "book_recommendation",
            "userRequest": prompt,
            "maxResults": limit,
            "candidates": [
                {
                    "isbn": c["id"],
                    "title": c.get("title"),
                    "category": c.get("category"),
                    "publisher": c.get("publisher"),
                    "publishYear": c.get("publish_year"),
                    "averagePrice": c.get("price"),
                    "totalSold90d": sold.get(c["id"], 0),
                    "authors": list(c.get("authors") or []),
                }
                for c in candidates
            ],
        }, ensure_ascii=False, default=str)

        answer = await self.gateway.complete_text(RECOMMEND_SYSTEM_PROMPT, payload, timeout=timeout)
        if answer is None:
            logger.warning("[RECOMMEND] Model unavailable, falling back to best sellers")
            return self._best_sellers(candidates, sold, limit, AI_UNAVAILABLE_SUMMARY)

        parsed = parse_json_object(answer) or {}
        books = self._ranked(parsed.get("recommendations"), candidates, sold, limit)
        summary = parsed.get("overallSummary") if isinstance(parsed.get("overallSummary"), str) else None
        if not books:
            logger.warning(f"[RECOMMEND] No usable recommendations in model answer: {answer[:200]}")
            return self._best_sellers(candidates, sold, limit, summary or NO_USABLE_ANSWER_SUMMARY)
        return Recommendation(books=books, summary=summary)

    @staticmethod
    def _ranked(recommendations: Any, candidates, sold: Dict[str, int], limit: int) -> List[RecommendedBook]:
        if not isinstance(recommendations, list):
            return []
        by_id = {c["id"]: c for c in candidates}
        entries = []
        for rec in recommendations:
            if not isinstance(rec, dict) or not isinstance(rec.get("isbn"), str) or not rec["isbn"].strip():
                continue
            score = rec.get("score")
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                score = 0
            entries.append((float(score), rec))
        entries.sort(key=lambda e: -e[0])

        books = []
        for _, rec in entries[:limit]:
            item = by_id.get(rec["isbn"].strip())
            if item is None:
                logger.debug(f"[RECOMMEND] Ignoring unknown ISBN {rec['isbn']!r}")
                continue
            books.append(RecommendedBook(
                item=item,
                total_sold=sold.get(item["id"], 0),
                ai_summary=rec.get("aiSummary") if isinstance(rec.get("aiSummary"), str) else None,
                ai_reason=rec.get("aiReason") if isinstance(rec.get("aiReason"), str) else None,
            ))
        return books

    @staticmethod
    def _best_sellers(candidates, sold: Dict[str, int], limit: int, summary: str) -> Recommendation:
        ranked = sorted(candidates, key=lambda c: -sold.get(c["id"], 0))
        books = [RecommendedBook(item=c, total_sold=sold.get(c["id"], 0)) for c in ranked[:limit]]
        return Recommendation(books=books, summary=summary, fallback=True)
