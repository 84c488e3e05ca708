#!/usr/bin/env python3
"""
Book recommender tests: candidate selection, model ranking and the
best-seller fallback, over a mocked Gemini endpoint.
"""

import asyncio
import json
from datetime import datetime

import httpx
import pytest

from backoffice_ai import config
from backoffice_ai.recommender import (
    AI_UNAVAILABLE_SUMMARY,
    NO_USABLE_ANSWER_SUMMARY,
    BookRecommender,
    clamp_max_results,
)
from conftest import request_json, text_response

DUNE = "9780000000001"
EMMA = "9780000000002"


class RecordingGemini:
    def __init__(self, response):
        self.response = response
        self.payloads = []

    async def __call__(self, request):
        body = request_json(request)
        self.payloads.append(json.loads(body["contents"][0]["parts"][0]["text"]))
        if isinstance(self.response, httpx.Response):
            return self.response
        return httpx.Response(200, json=text_response(self.response))


def make_recommender(make_gateway, reader, gemini):
    return BookRecommender(make_gateway(gemini), reader, clock=lambda: datetime(2024, 6, 1))


def test_model_ranking_is_applied_and_unknown_isbns_dropped(make_gateway, reader):
    answer = "```json\n" + json.dumps({
        "recommendations": [
            {"isbn": EMMA, "aiSummary": "A comedy of manners.", "aiReason": "Classic romance.", "score": 60},
            {"isbn": "9999999999999", "aiSummary": "Invented", "score": 99},
            {"isbn": DUNE, "aiSummary": "Desert planet epic.", "aiReason": "Matches the request.", "score": 95},
        ],
        "overallSummary": "Two picks for a science fiction fan.",
    }) + "\n```"
    gemini = RecordingGemini(answer)

    result = asyncio.run(make_recommender(make_gateway, reader, gemini).recommend(" dune ", max_results=5))

    assert result.fallback is False
    assert [b.item["id"] for b in result.books] == [DUNE, EMMA]
    assert result.summary == "Two picks for a science fiction fan."
    data = result.to_dict()
    assert data["books"][0]["aiReason"] == "Matches the request."
    assert data["books"][0]["totalSold90d"] == 4


def test_candidates_carry_sales_and_are_topped_up(make_gateway, reader):
    gemini = RecordingGemini(json.dumps({"recommendations": []}))

    asyncio.run(make_recommender(make_gateway, reader, gemini).recommend("dune", max_results=1))

    payload = gemini.payloads[0]
    assert payload["type"] == "book_recommendation"
    assert payload["userRequest"] == "dune"
    assert payload["maxResults"] == 3
    candidates = {c["isbn"]: c for c in payload["candidates"]}
    assert set(candidates) == {DUNE, EMMA}
    assert candidates[DUNE]["totalSold90d"] == 4
    assert candidates[EMMA]["totalSold90d"] == 0
    assert candidates[EMMA]["authors"] == ["Jane Austen"]


def test_model_unavailable_falls_back_to_best_sellers(make_gateway, reader):
    gemini = RecordingGemini(httpx.Response(503, text="unavailable"))

    result = asyncio.run(make_recommender(make_gateway, reader, gemini).recommend("something to read"))

    assert result.fallback is True
    assert result.summary == AI_UNAVAILABLE_SUMMARY
    assert [b.item["id"] for b in result.books] == [DUNE, EMMA]
    assert all(b.ai_summary is None for b in result.books)


def test_unusable_answer_falls_back_with_model_summary(make_gateway, reader):
    gemini = RecordingGemini(json.dumps({
        "recommendations": [{"isbn": "0000000000000", "score": 80}],
        "overallSummary": "Nothing fits exactly.",
    }))

    result = asyncio.run(make_recommender(make_gateway, reader, gemini).recommend("austen"))

    assert result.fallback is True
    assert result.summary == "Nothing fits exactly."
    assert result.books[0].item["id"] == DUNE


def test_non_json_answer_falls_back(make_gateway, reader):
    gemini = RecordingGemini("I recommend Dune.")

    result = asyncio.run(make_recommender(make_gateway, reader, gemini).recommend("austen"))

    assert result.fallback is True
    assert result.summary == NO_USABLE_ANSWER_SUMMARY


def test_author_keyword_selects_candidates(make_gateway, reader):
    gemini = RecordingGemini(json.dumps({"recommendations": []}))

    asyncio.run(make_recommender(make_gateway, reader, gemini).recommend("austen"))

    assert "search_items:austen" in reader.calls
    assert gemini.payloads[0]["candidates"][0]["isbn"] == EMMA


@pytest.mark.parametrize("prompt", ["", "   ", None])
def test_empty_prompt_is_rejected(make_gateway, reader, prompt):
    gemini = RecordingGemini("unused")
    with pytest.raises(ValueError):
        asyncio.run(make_recommender(make_gateway, reader, gemini).recommend(prompt))
    assert gemini.payloads == []


def test_clamp_max_results():
    assert clamp_max_results(None) == config.RECOMMEND_DEFAULT_MAX_RESULTS
    assert clamp_max_results(1) == 3
    assert clamp_max_results(50) == 20
    assert clamp_max_results(7) == 7
