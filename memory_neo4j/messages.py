"""
Conversation message utilities.

Pull user and assistant text out of host conversation messages and strip
everything that is not the speaker's own words: memory context this plugin
injected, channel envelopes, attachments and tool/thinking wrappers.
"""

import re
from typing import Any, List

MIN_MESSAGE_CHARS = 10

_INJECTED_BLOCKS = re.compile(
    r"<relevant-memories>.*?</relevant-memories>"
    r"|<core-memory-refresh>.*?</core-memory-refresh>"
    r"|<system>.*?</system>"
    r"|<file\b[^>]*>.*?</file>",
    re.DOTALL,
)
_MEDIA_PREAMBLE = re.compile(r"^\[media attached:[^\n]*\]\s*$|^To send an image back[^\n]*$", re.MULTILINE)
_SYSTEM_EXEC_LINE = re.compile(r"^System: \[[^\]]*\][^\n]*$", re.MULTILINE)
_CHANNEL_ENVELOPE = re.compile(
    r"\[(?:Telegram|WhatsApp|Discord|Signal|Slack|iMessage|SMS)\b[^\]]*\]\s*"
)
_MESSAGE_ID = re.compile(r"\[message_id:\s*[^\]]*\]")

_ASSISTANT_WRAPPERS = re.compile(
    r"<(tool_use|tool_result|function_call|thinking|antThinking|code_output)\b[^>]*>.*?</\1>",
    re.DOTALL,
)
_WHITESPACE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def strip_message_wrappers(text: str) -> str:
    """Remove injected context, envelopes and attachments from user text."""
    text = _INJECTED_BLOCKS.sub(" ", text)
    text = _MEDIA_PREAMBLE.sub("", text)
    text = _SYSTEM_EXEC_LINE.sub("", text)
    text = _CHANNEL_ENVELOPE.sub("", text)
    text = _MESSAGE_ID.sub("", text)
    return _collapse(text)


def strip_assistant_wrappers(text: str) -> str:
    """Remove tool-call, tool-result and thinking blocks from assistant text."""
    return _collapse(_ASSISTANT_WRAPPERS.sub(" ", text))


def _text_parts(content: Any) -> List[str]:
    if isinstance(content, str):
        return [content]
    if isinstance(content, list):
        return [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
    return []


def _extract(messages: List[Any], role: str, strip) -> List[str]:
    texts = []
    for message in messages or []:
        if not isinstance(message, dict) or message.get("role") != role:
            continue
        for part in _text_parts(message.get("content")):
            cleaned = strip(part)
            if len(cleaned) >= MIN_MESSAGE_CHARS:
                texts.append(cleaned)
    return texts


def extract_user_messages(messages: List[Any]) -> List[str]:
    """User text blocks, cleaned, in order; blocks under 10 characters are dropped."""
    return _extract(messages, "user", strip_message_wrappers)


def extract_assistant_messages(messages: List[Any]) -> List[str]:
    """Assistant text blocks with tool and thinking wrappers removed."""
    return _extract(messages, "assistant", strip_assistant_wrappers)
