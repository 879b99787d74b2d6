"""
Token estimation for prompt budgeting.

A character-count heuristic rather than a real tokenizer: CJK characters are
counted at ~1.3 tokens each and everything else at one token per 2.5
characters. The estimate errs high so budget checks do not underestimate.
"""

import json
import math
import re
from typing import Any, Dict, Iterable

DEFAULT_IMAGE_TOKENS = 1600
MESSAGE_OVERHEAD_TOKENS = 4

_CJK_PATTERN = re.compile(
    r"[　-〿぀-ゟ゠-ヿ㐀-䶿"
    r"一-鿿가-힯豈-﫿＀-￯]"
)


def estimate_text_tokens(text: str) -> int:
    """
    Estimate the token count of a text string.

    Args:
        text: Text to measure

    Returns:
        Estimated tokens, including a fixed per-message overhead; 0 for empty text
    """
    if not text:
        return 0
    cjk_count = len(_CJK_PATTERN.findall(text))
    non_cjk_count = len(text) - cjk_count
    tokens = math.ceil(cjk_count * 1.3) + math.ceil(non_cjk_count / 2.5)
    return tokens + MESSAGE_OVERHEAD_TOKENS


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def estimate_message_tokens(message: Dict[str, Any]) -> int:
    """Estimate tokens for a chat message with string or block-list content."""
    content = message.get("content")
    if isinstance(content, str):
        return estimate_text_tokens(content)
    if not isinstance(content, list):
        return estimate_text_tokens(_dump(content)) if content is not None else 0

    tokens = 0
    for block in content:
        if not isinstance(block, dict):
            tokens += estimate_text_tokens(str(block))
            continue
        block_type = block.get("type")
        if block_type == "text":
            tokens += estimate_text_tokens(block.get("text", ""))
        elif block_type == "image":
            tokens += DEFAULT_IMAGE_TOKENS
        elif block_type == "tool_use":
            tokens += estimate_text_tokens(_dump(block))
        elif block_type == "tool_result":
            result = block.get("content")
            if isinstance(result, str):
                tokens += estimate_text_tokens(result)
            elif isinstance(result, list):
                for item in result:
                    if isinstance(item, dict) and item.get("type") == "image":
                        tokens += DEFAULT_IMAGE_TOKENS
                    elif isinstance(item, dict) and item.get("type") == "text":
                        tokens += estimate_text_tokens(item.get("text", ""))
            else:
                tokens += estimate_text_tokens(_dump(result))
    return tokens


def estimate_messages_tokens(messages: Iterable[Dict[str, Any]]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
