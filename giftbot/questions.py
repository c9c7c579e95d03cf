"""
Pre-sale listing questions.

Tiers, first answer wins: keyword FAQ, then the LLM, then the operator.
A question nobody can answer confidently stays unanswered on the listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from giftbot.activity import ActivityLog
from giftbot.errors import MarketplaceError
from giftbot.llm import LlmAnswerer
from giftbot.marketplace import MarketplaceClient
from giftbot.metrics import record_question
from giftbot.notifier import TelegramNotifier
from giftbot.products import find_question_response
from giftbot.utils import extract_resource_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuestionResult:
    """action: skipped_answered, answered or escalated; method: faq or llm"""
    action: str
    question_id: str
    method: Optional[str] = None
    answer: Optional[str] = None


class QuestionResponder:
    def __init__(
        self,
        marketplace: MarketplaceClient,
        notifier: TelegramNotifier,
        activity: ActivityLog,
        answerer: Optional[LlmAnswerer] = None,
        answer_char_limit: int = 2000,
    ):
        self._marketplace = marketplace
        self._notifier = notifier
        self._activity = activity
        self._answerer = answerer
        self._answer_char_limit = answer_char_limit

    async def on_question(self, resource_or_id: str) -> QuestionResult:
        question_id = extract_resource_id(resource_or_id, prefix="/questions/")
        question = await self._marketplace.get_question(question_id)

        if question.answered:
            logger.info(f"Question {question_id} already answered")
            return QuestionResult("skipped_answered", question_id)

        item_title = ""
        if question.item_id:
            try:
                item_title = (await self._marketplace.get_item(question.item_id)).title
            except MarketplaceError as e:
                logger.warning(f"Could not load item {question.item_id}: {e}")

        method = "faq"
        answer = find_question_response(question.text, item_title)
        if answer is None and self._answerer is not None:
            description = await self._marketplace.get_item_description(question.item_id) if question.item_id else ""
            answer = await self._answerer.answer_question(question.text, item_title, description)
            method = "llm"

        if not answer:
            logger.info(f"No confident answer for question {question_id}")
            record_question("escalated")
            await self._notifier.notify(
                "question",
                f"Pregunta sin responder en {item_title or question.item_id}: \"{question.text}\"",
            )
            self._activity.record("question", "Pregunta derivada al vendedor", question.text[:200])
            return QuestionResult("escalated", question_id)

        answer = answer[: self._answer_char_limit]
        await self._marketplace.answer_question(question_id, answer)
        record_question(method)
        logger.info(f"Question {question_id} answered via {method}")
        self._activity.record("question", f"Pregunta respondida ({method})", question.text[:200])
        return QuestionResult("answered", question_id, method=method, answer=answer)
