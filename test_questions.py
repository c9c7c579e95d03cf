"""
Tests for pre-sale question answering.

Tests cover:
- Already answered questions are skipped
- FAQ answers never reach the LLM tier
- LLM answers when the FAQ has nothing
- Unanswerable questions go to the operator and stay unanswered
"""

import asyncio

import pytest

from conftest import StubAnswerer
from giftbot.questions import QuestionResponder
from giftbot.schemas import Item, Question


@pytest.fixture
def listing(marketplace):
    marketplace.items["MLA1"] = Item(id="MLA1", title="Gift Card Roblox 400 Robux Digital")
    return marketplace


def ask(marketplace, notifier, activity, text, answerer=None, status="UNANSWERED", limit=2000):
    marketplace.questions["Q1"] = Question(id="Q1", text=text, item_id="MLA1", status=status)
    responder = QuestionResponder(marketplace, notifier, activity, answerer=answerer, answer_char_limit=limit)
    return asyncio.run(responder.on_question("/questions/Q1"))


class TestQuestionResponder:
    def test_delivery_time_answered_by_faq(self, listing, notifier, activity):
        answerer = StubAnswerer("nunca deberia usarse")
        result = ask(listing, notifier, activity, "cuanto tarda en llegar?", answerer=answerer)

        assert result.action == "answered"
        assert result.method == "faq"
        assert answerer.calls == []
        assert listing.answers[0][0] == "Q1"
        assert "instantanea" in listing.answers[0][1]

    def test_already_answered_is_skipped(self, listing, notifier, activity):
        result = ask(listing, notifier, activity, "cuanto tarda?", status="ANSWERED")
        assert result.action == "skipped_answered"
        assert listing.answers == []

    def test_llm_tier(self, listing, notifier, activity):
        answerer = StubAnswerer("Si, sirve para cualquier cuenta de Roblox.")
        result = ask(listing, notifier, activity, "sirve para cuentas nuevas de Xbox?", answerer=answerer)

        assert result.action == "answered"
        assert result.method == "llm"
        assert listing.answers == [("Q1", "Si, sirve para cualquier cuenta de Roblox.")]

    def test_no_answer_notifies_operator(self, listing, notifier, activity):
        result = ask(listing, notifier, activity, "sirve para cuentas nuevas de Xbox?", answerer=StubAnswerer(None))

        assert result.action == "escalated"
        assert listing.answers == []
        assert notifier.categories() == ["question"]

    def test_answer_truncated(self, listing, notifier, activity):
        answerer = StubAnswerer("x" * 50)
        result = ask(listing, notifier, activity, "sirve para cuentas nuevas de Xbox?", answerer=answerer, limit=20)
        assert len(result.answer) == 20
        assert len(listing.answers[0][1]) == 20

    def test_missing_item_still_answers(self, marketplace, notifier, activity):
        result = ask(marketplace, notifier, activity, "aceptan cuotas?")
        assert result.action == "answered"
        assert "cuotas" in marketplace.answers[0][1]
