"""
Helpers for chat messages in ``{"role": ..., "content": ...}`` form.

Content is either a string or a list of blocks (``text``, ``image``,
``tool_use``, ``tool_result``).
"""

import json
from typing import Any, Dict, Iterator, List, Tuple

from .text_utils import normalize_whitespace

Message = Dict[str, Any]


def _stringify(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _flatten_block(block: Any) -> str:
    if not isinstance(block, dict):
        return str(block)
    block_type = block.get("type")
    if block_type == "text":
        return block.get("text", "")
    if block_type == "image":
        return "[Image content]"
    if block_type == "tool_use":
        return f"[Tool use] {block.get('name', '')}: {_stringify(block.get('input'))}"
    if block_type == "tool_result":
        content = block.get("content")
        if isinstance(content, str):
            return f"[Tool result] {content}"
        if isinstance(content, list):
            nested = []
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    nested.append(item.get("text", ""))
                elif isinstance(item, dict) and item.get("type") == "image":
                    nested.append("[Image content]")
                else:
                    nested.append(_stringify(item))
            return "[Tool result]\n" + "\n".join(nested)
        return f"[Tool result] {_stringify(content)}"
    return _stringify(block)


def flatten_message_content(message: Message) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return normalize_whitespace(content)
    if isinstance(content, list):
        return normalize_whitespace("\n".join(_flatten_block(block) for block in content))
    if content is None:
        return ""
    return normalize_whitespace(_stringify(content))


def message_text(message: Message) -> str:
    """Only the plain text of a message; tool, image and other blocks are skipped."""
    content = message.get("content")
    if isinstance(content, str):
        return normalize_whitespace(content)
    if not isinstance(content, list):
        return ""
    texts = [block.get("text", "") for block in content
             if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)]
    return normalize_whitespace("\n".join(texts))


_TRANSCRIPT_ROLES = {"assistant": "ASSISTANT", "system": "SYSTEM"}


def to_transcript(messages: List[Message]) -> str:
    """Render messages as ``USER:``/``ASSISTANT:``/``SYSTEM:`` paragraphs."""
    lines = []
    for message in messages:
        role = _TRANSCRIPT_ROLES.get(message.get("role"), "USER")
        text = flatten_message_content(message)
        if text:
            lines.append(f"{role}: {text}")
    return normalize_whitespace("\n\n".join(lines))


def _has_block(message: Message, block_type: str) -> bool:
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(block, dict) and block.get("type") == block_type for block in content)


def _iter_chunks(messages: List[Message], chunk_size: int) -> Iterator[Tuple[List[Message], bool]]:
    """Yield ``(chunk, closed)``; only the trailing remainder is yielded unclosed."""
    current: List[Message] = []
    for position, message in enumerate(messages):
        current.append(message)
        if len(current) < chunk_size:
            continue
        # tool_use and its tool_result stay in the same chunk
        if _has_block(message, "tool_use"):
            continue
        following = messages[position + 1] if position + 1 < len(messages) else None
        if following is not None and _has_block(following, "tool_result"):
            continue
        yield current, True
        current = []
    if current:
        yield current, False


def split_archive_messages(messages: List[Message], chunk_size: int) -> List[List[Message]]:
    """Split into chunks of at least ``chunk_size``, keeping tool pairs together."""
    return [chunk for chunk, _ in _iter_chunks(messages, chunk_size)]


def split_complete_chunks(messages: List[Message], chunk_size: int) -> Tuple[List[List[Message]], int]:
    """
    Like ``split_archive_messages`` but drop the unfinished trailing chunk.

    Returns:
        The closed chunks and the number of messages they cover
    """
    chunks = [chunk for chunk, closed in _iter_chunks(messages, chunk_size) if closed]
    return chunks, sum(len(chunk) for chunk in chunks)


def get_latest_user_query(messages: List[Message]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        text = flatten_message_content(message)
        if text:
            return text
    return ""
