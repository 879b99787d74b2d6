"""
Chunk summarizers.

The indexer hands each archivable chunk to a ``Summarizer`` and gets back an
L1 overview, a one- or two-sentence contribution to the session's root
abstract, and keywords. ``LLMSummarizer`` asks a language model;
``ExtractiveSummarizer`` derives everything from the transcript itself.
"""

import asyncio
import json
import logging
import random
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from llm.provider_interface import LLMMessage, LLMProvider, LLMResponse
from .config import LayeredContextConfig
from .errors import SummarizerError
from .message_utils import to_transcript
from .text_utils import extract_top_keywords, merge_keywords, normalize_whitespace, trim_to_token_target
from .types import ChunkSummary

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY_LINES = 18
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_RETRYABLE_MARKERS = ("overloaded", "rate limit", "timeout", "timed out", "503", "502", "504", "429")


def split_sentences(text: str) -> List[str]:
    return [part.strip() for part in _SENTENCE_SPLIT.split(text) if part.strip()]


def leading_sentences(text: str, count: int = 2) -> str:
    normalized = normalize_whitespace(text).replace("\n", " ")
    sentences = split_sentences(normalized)
    return " ".join(sentences[:count]) or normalized


class Summarizer(ABC):
    """Turns a chunk of raw messages into a ``ChunkSummary``."""

    @abstractmethod
    async def summarize(self, messages: List[Dict[str, Any]], config: LayeredContextConfig) -> ChunkSummary:
        """
        Summarize one chunk.

        Args:
            messages: Raw chat messages of the chunk, oldest first
            config: Active configuration; summaries should respect its L0/L1 targets

        Returns:
            Overview, abstract contribution and keywords

        Raises:
            SummarizerError: If no usable summary could be produced
        """
        pass


class ExtractiveSummarizer(Summarizer):
    """
    Deterministic summarizer that needs no model.

    The overview is the first transcript lines as a bullet list, the
    abstract contribution the overview's first two sentences.
    """

    def __init__(self, max_lines: int = FALLBACK_SUMMARY_LINES):
        self.max_lines = max_lines

    async def summarize(self, messages: List[Dict[str, Any]], config: LayeredContextConfig) -> ChunkSummary:
        transcript = to_transcript(messages)
        if not transcript:
            raise SummarizerError("Chunk has no textual content to summarize")

        lines = [line.strip() for line in transcript.split("\n") if line.strip()]
        overview = "\n".join(["Archive summary:"] + [f"- {line}" for line in lines[:self.max_lines]])
        overview = trim_to_token_target(overview, config.l1_target_tokens)

        body = "\n".join(lines[:self.max_lines])
        abstract = trim_to_token_target(leading_sentences(body), config.l0_target_tokens)
        return ChunkSummary(
            overview=overview,
            abstract_delta=abstract,
            keywords=extract_top_keywords(transcript),
        )


SUMMARY_INSTRUCTIONS = """You are archiving part of a long conversation so it can be recalled later.

Read the transcript in the next message and reply with a single JSON object with these keys:
- "overview": a factual summary of the transcript in at most {l1_words} words. Keep names, identifiers, file paths, numbers, decisions and open questions.
- "abstract": one or two sentences (at most {l0_words} words) saying what this part of the conversation was about.
- "keywords": up to 12 short lowercase search keywords.

Reply with the JSON object only."""


class LLMSummarizer(Summarizer):
    """Summarizer backed by an ``LLMProvider`` with retry on transient errors."""

    def __init__(self,
                 llm_provider: LLMProvider,
                 model: Optional[str] = None,
                 max_retry_attempts: int = 3,
                 base_retry_delay: float = 1.0,
                 backoff_multiplier: float = 2.0,
                 max_retry_delay: float = 30.0,
                 jitter_factor: float = 0.1,
                 temperature: float = 0.2):
        self.llm_provider = llm_provider
        self.model = model
        self.temperature = temperature

        self._max_retry_attempts = max(1, max_retry_attempts)
        self._base_retry_delay = base_retry_delay
        self._backoff_multiplier = backoff_multiplier
        self._max_retry_delay = max_retry_delay
        self._jitter_factor = jitter_factor

    async def summarize(self, messages: List[Dict[str, Any]], config: LayeredContextConfig) -> ChunkSummary:
        transcript = to_transcript(messages)
        if not transcript:
            raise SummarizerError("Chunk has no textual content to summarize")

        instructions = SUMMARY_INSTRUCTIONS.format(
            # ~2.5 characters per token, ~6 characters per word
            l1_words=max(40, int(config.l1_target_tokens * 0.4)),
            l0_words=max(15, int(config.l0_target_tokens * 0.4)),
        )
        response = await self._call_llm_with_retry([
            LLMMessage.system(instructions),
            LLMMessage.user(f"<transcript>\n{transcript}\n</transcript>"),
        ])
        return self._parse_summary(response.text, transcript, config)

    async def _call_llm_with_retry(self, messages: List[LLMMessage]) -> LLMResponse:
        """LLM call with exponential backoff and jitter on retryable errors."""
        for attempt in range(self._max_retry_attempts):
            logger.debug(f"Summarization attempt {attempt + 1}/{self._max_retry_attempts}")
            response = await self.llm_provider.complete(
                messages=messages,
                model=self.model,
                temperature=self.temperature,
                json_mode=True,
            )
            if not response.is_error:
                return response

            error_msg = (response.content or "").lower()
            is_retryable = any(marker in error_msg for marker in _RETRYABLE_MARKERS)
            if not is_retryable or attempt == self._max_retry_attempts - 1:
                logger.error(f"Summarization LLM call failed (attempt {attempt + 1}): {response.content}")
                raise SummarizerError(f"LLM summarization failed: {response.content}")

            base_delay = self._base_retry_delay * (self._backoff_multiplier ** attempt)
            max_delay = min(base_delay, self._max_retry_delay)
            delay = max_delay + max_delay * self._jitter_factor * random.random()
            logger.warning(f"Summarization LLM call failed (attempt {attempt + 1}), retrying in {delay:.1f}s: {response.content}")
            await asyncio.sleep(delay)

        raise SummarizerError(f"All {self._max_retry_attempts} summarization attempts failed")

    def _parse_summary(self, raw: str, transcript: str, config: LayeredContextConfig) -> ChunkSummary:
        text = raw.strip()
        if not text:
            raise SummarizerError("LLM returned an empty summary")

        payload = _extract_json_object(text)
        if payload is None:
            # Plain prose: use it as the overview
            overview = trim_to_token_target(text, config.l1_target_tokens)
            abstract = trim_to_token_target(leading_sentences(overview), config.l0_target_tokens)
            keywords = extract_top_keywords(f"{overview}\n{transcript}")
            return ChunkSummary(overview=overview, abstract_delta=abstract, keywords=keywords)

        overview = trim_to_token_target(str(payload.get("overview") or ""), config.l1_target_tokens)
        if not overview:
            raise SummarizerError("LLM summary is missing an overview")
        abstract_source = str(payload.get("abstract") or "") or leading_sentences(overview)
        abstract = trim_to_token_target(abstract_source, config.l0_target_tokens)

        raw_keywords = payload.get("keywords") or []
        if not isinstance(raw_keywords, list):
            raw_keywords = [raw_keywords]
        keywords = merge_keywords(
            [str(keyword) for keyword in raw_keywords],
            extract_top_keywords(f"{abstract}\n{overview}"),
        )
        return ChunkSummary(overview=overview, abstract_delta=abstract, keywords=keywords)


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from a model reply, tolerating code fences and chatter."""
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
