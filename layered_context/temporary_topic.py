"""
Temporary topic tracking.

A session has a main topic and, at times, a temporary side topic. For each
new query a ``TopicScorer`` rates how relevant the query is to either topic,
and ``decide_temporary_topic_transition`` turns those ratings into one of
five decisions: stay on the main topic, enter a temporary topic, stay on
it, replace it with another one, or return to the main topic.

Two LLM-backed scorers are provided. ``LLMTopicScorer`` asks for numeric
relevance; ``LLMTopicClassifier`` asks for the decision label directly and
maps it back onto scores. Both fail open to ``(1.0, 1.0)`` when the model
call fails, which keeps the current topic.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from llm.provider_interface import LLMMessage, LLMProvider, LLMResponse
from .message_utils import message_text
from .text_utils import clamp01, normalize_whitespace

logger = logging.getLogger(__name__)

TOPIC_REFERENCE_MAX_MESSAGES = 8
TOPIC_REFERENCE_MAX_CHARS_PER_MESSAGE = 120
TOPIC_REFERENCE_MAX_TOTAL_CHARS = 600
SCORER_MAX_TOKENS = 2048


class TemporaryTopicMode(Enum):
    MAIN = "MAIN"
    TEMP = "TEMP"


class TemporaryTopicDecision(Enum):
    STAY_MAIN = "stay-main"
    ENTER_TEMP = "enter-temp"
    STAY_TEMP = "stay-temp"
    REPLACE_TEMP = "replace-temp"
    EXIT_TEMP = "exit-temp"


@dataclass(frozen=True)
class TemporaryTopicThresholds:
    enter_threshold: float = 0.55
    exit_threshold: float = 0.55
    temp_stay_threshold: float = 0.8


DEFAULT_TEMPORARY_TOPIC_THRESHOLDS = TemporaryTopicThresholds()


@dataclass(frozen=True)
class TopicRelevanceScores:
    rel_main: float
    rel_temp: float


@dataclass(frozen=True)
class TemporaryTopicTransition:
    decision: TemporaryTopicDecision
    rel_main: float
    rel_temp: float

    def to_dict(self) -> Dict[str, Any]:
        return {"decision": self.decision.value, "rel_main": self.rel_main, "rel_temp": self.rel_temp}


NO_RELEVANCE = TopicRelevanceScores(0.0, 0.0)
# keeps whatever topic is current
FAIL_OPEN_RELEVANCE = TopicRelevanceScores(1.0, 1.0)


class TopicScorer(ABC):
    """Rates a query against the main and temporary topic references."""

    @abstractmethod
    async def score(self, query: str, main_topic_reference: str,
                    temp_topic_reference: str) -> TopicRelevanceScores:
        """
        Returns:
            Relevance in [0, 1] for each topic; an absent topic scores 0
        """


def _topic_lines(query: str, main_topic_reference: str, temp_topic_reference: str) -> List[str]:
    lines = [f"Main topic: {main_topic_reference or '(none)'}"]
    if temp_topic_reference:
        lines.append(f"Temp topic: {temp_topic_reference}")
    lines.append(f"Query: {query}")
    return lines


class _LLMTopicJudge(TopicScorer):
    """Shared plumbing for the LLM-backed scorers."""

    system_prompt = ""

    def __init__(self, llm_provider: LLMProvider, model: Optional[str] = None,
                 max_tokens: int = SCORER_MAX_TOKENS):
        self.llm_provider = llm_provider
        self.model = model
        self.max_tokens = max_tokens

    async def score(self, query: str, main_topic_reference: str,
                    temp_topic_reference: str) -> TopicRelevanceScores:
        if not query or not (main_topic_reference or temp_topic_reference):
            return NO_RELEVANCE

        prompt = self.build_prompt(query, main_topic_reference, temp_topic_reference)
        try:
            response = await self.llm_provider.complete(
                messages=[LLMMessage.system(self.system_prompt), LLMMessage.user(prompt)],
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
        except Exception as e:
            logger.error(f"Topic relevance call failed, keeping the current topic: {e}", exc_info=True)
            return FAIL_OPEN_RELEVANCE

        if response.is_error:
            logger.error(f"Topic relevance call failed, keeping the current topic: {response.content}")
            return FAIL_OPEN_RELEVANCE
        return self.parse(response, bool(temp_topic_reference))

    @abstractmethod
    def build_prompt(self, query: str, main_topic_reference: str, temp_topic_reference: str) -> str:
        ...

    @abstractmethod
    def parse(self, response: LLMResponse, has_temp: bool) -> TopicRelevanceScores:
        ...


_JSON_OBJECT = re.compile(r"\{[^}]*\}")


def parse_relevance_scores(text: str) -> TopicRelevanceScores:
    """Read ``{"relMain": n, "relTemp": n}`` from a reply; anything unusable scores 0."""
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        return NO_RELEVANCE
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return NO_RELEVANCE
    if not isinstance(parsed, dict):
        return NO_RELEVANCE

    def _number(key: str) -> float:
        value = parsed.get(key)
        # bool is an int subclass, and JSON true is not a score
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return clamp01(value)

    return TopicRelevanceScores(_number("relMain"), _number("relTemp"))


class LLMTopicScorer(_LLMTopicJudge):
    """Asks the model for numeric relevance of the query to each topic."""

    system_prompt = (
        "Rate query relevance to each topic (0.0=unrelated, 1.0=same topic). "
        'If a topic is absent, its score is 0. Reply with ONLY: {"relMain":<n>,"relTemp":<n>}'
    )

    def build_prompt(self, query: str, main_topic_reference: str, temp_topic_reference: str) -> str:
        return "\n".join(_topic_lines(query, main_topic_reference, temp_topic_reference))

    def parse(self, response: LLMResponse, has_temp: bool) -> TopicRelevanceScores:
        return parse_relevance_scores(response.text)


_MAIN_MODE_LABELS = "stay-main (query continues main topic) or enter-temp (query departs to a new topic)"
_TEMP_MODE_LABELS = (
    "stay-temp (query continues temp topic), "
    "exit-temp (query returns to main topic), or "
    "replace-temp (query starts yet another unrelated topic)"
)

_DECISION_SCORES = {
    TemporaryTopicDecision.STAY_MAIN: TopicRelevanceScores(1.0, 0.0),
    TemporaryTopicDecision.ENTER_TEMP: TopicRelevanceScores(0.0, 0.0),
    TemporaryTopicDecision.STAY_TEMP: TopicRelevanceScores(0.0, 1.0),
    TemporaryTopicDecision.EXIT_TEMP: TopicRelevanceScores(1.0, 0.0),
    TemporaryTopicDecision.REPLACE_TEMP: TopicRelevanceScores(0.0, 0.0),
}


def parse_classification(text: str, has_temp: bool) -> TopicRelevanceScores:
    """
    Map a decision label found in ``text`` to scores that reproduce it.

    Without a recognizable label the current topic is kept.
    """
    normalized = (text or "").strip().lower()
    for decision in TemporaryTopicDecision:
        if decision.value in normalized:
            return _DECISION_SCORES[decision]
    return TopicRelevanceScores(0.0, 1.0) if has_temp else TopicRelevanceScores(1.0, 0.0)


class LLMTopicClassifier(_LLMTopicJudge):
    """Asks the model for the transition label itself."""

    system_prompt = (
        "Classify the query's relationship to conversation topics. "
        "Reply with ONLY one label, no explanation."
    )

    def build_prompt(self, query: str, main_topic_reference: str, temp_topic_reference: str) -> str:
        lines = _topic_lines(query, main_topic_reference, temp_topic_reference)
        lines.append(f"Label: {_TEMP_MODE_LABELS if temp_topic_reference else _MAIN_MODE_LABELS}")
        return "\n".join(lines)

    def parse(self, response: LLMResponse, has_temp: bool) -> TopicRelevanceScores:
        return parse_classification(response.text, has_temp)


def _clip(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def build_topic_reference(messages: List[Dict[str, Any]],
                          max_messages: int = TOPIC_REFERENCE_MAX_MESSAGES) -> str:
    """
    Short description of what the last ``max_messages`` turns are about.

    Only plain text counts; tool calls and tool results are left out. Each
    turn is clipped, joined with "; ", and the whole is clipped again.
    """
    if not messages or max_messages <= 0:
        return ""

    lines = []
    for message in messages[-max_messages:]:
        text = message_text(message)
        if text:
            lines.append(_clip(text, TOPIC_REFERENCE_MAX_CHARS_PER_MESSAGE))
    return _clip(normalize_whitespace("; ".join(lines)), TOPIC_REFERENCE_MAX_TOTAL_CHARS)


async def decide_temporary_topic_transition(mode: TemporaryTopicMode,
                                            query: str,
                                            main_topic_reference: str,
                                            scorer: TopicScorer,
                                            temp_topic_reference: str = "",
                                            thresholds: Optional[TemporaryTopicThresholds] = None
                                            ) -> TemporaryTopicTransition:
    """
    Decide how the session's topic state changes for ``query``.

    In MAIN mode the query either stays on the main topic or departs into a
    temporary one. In TEMP mode it returns to the main topic only when it is
    clearly about the main topic and no longer about the temporary one; when
    it matches neither, the temporary topic is replaced.
    """
    thresholds = thresholds or DEFAULT_TEMPORARY_TOPIC_THRESHOLDS
    query = normalize_whitespace(query)
    main_topic_reference = normalize_whitespace(main_topic_reference)
    temp_topic_reference = normalize_whitespace(temp_topic_reference or "")

    scores = await scorer.score(query, main_topic_reference, temp_topic_reference)
    rel_main, rel_temp = scores.rel_main, scores.rel_temp

    if mode is TemporaryTopicMode.MAIN:
        if query and main_topic_reference and rel_main < thresholds.enter_threshold:
            decision = TemporaryTopicDecision.ENTER_TEMP
        else:
            decision = TemporaryTopicDecision.STAY_MAIN
        transition = TemporaryTopicTransition(decision, rel_main, 0.0)
    elif not query:
        transition = TemporaryTopicTransition(TemporaryTopicDecision.STAY_TEMP, rel_main, rel_temp)
    elif (main_topic_reference and rel_main > thresholds.exit_threshold
          and rel_temp < thresholds.temp_stay_threshold):
        transition = TemporaryTopicTransition(TemporaryTopicDecision.EXIT_TEMP, rel_main, rel_temp)
    elif rel_main < thresholds.enter_threshold and rel_temp < thresholds.temp_stay_threshold:
        transition = TemporaryTopicTransition(TemporaryTopicDecision.REPLACE_TEMP, rel_main, rel_temp)
    else:
        transition = TemporaryTopicTransition(TemporaryTopicDecision.STAY_TEMP, rel_main, rel_temp)

    logger.debug(f"Topic transition in {mode.value} mode: {transition.decision.value} "
                 f"(rel_main={rel_main:.2f}, rel_temp={rel_temp:.2f})")
    return transition
