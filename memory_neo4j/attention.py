"""
Attention gates for auto-capture.

Cheap heuristics that decide whether a conversation message is worth
embedding and rating at all. Anything rejected here never reaches the LLM.
"""

import re

MIN_CAPTURE_CHARS = 30
MAX_CAPTURE_CHARS = 2000
MIN_WORD_COUNT = 5

MAX_ASSISTANT_CAPTURE_CHARS = 1000
MIN_ASSISTANT_WORD_COUNT = 10
MAX_CODE_RATIO = 0.5

NOISE_PATTERNS = [
    # acknowledgements and affirmations
    re.compile(
        r"^(ok(ay)?|k|yes|yeah|yep|yup|no|nope|sure|cool|nice|great|perfect|awesome|fine|alright|"
        r"noted|done|thanks?|thank you|ty|thx|got it|sounds good|makes sense|lol|haha)"
        r"([\s,.!?]+(ok(ay)?|yes|sure|great|please|thanks?|thank you|fine|noted|cool|got it|"
        r"sounds good|do it|go ahead|perfect))*[\s.!?]*$",
        re.IGNORECASE,
    ),
    # greetings and sign-offs
    re.compile(
        r"^(hi|hey|hello|yo|good (morning|afternoon|evening|night)|bye|see you|cheers)\b[^.?!]{0,30}[.!?]*$",
        re.IGNORECASE,
    ),
    # deictic follow-ups that only make sense in context
    re.compile(
        r"^(ok(ay)?,?\s+)?(let me|let's|lets|please|can you|could you)?\s*"
        r"(try|test|check|do|use|fix|run|see)\s+(that|this|it|them)(\s+(out|again|now|please))*[\s.!?]*$",
        re.IGNORECASE,
    ),
    # no word characters at all (emoji, punctuation)
    re.compile(r"^[^\w]+$"),
]

_INJECTED_CONTEXT = re.compile(r"<relevant-memories>|<core-memory-refresh>")
_LEADING_MARKUP = re.compile(r"^\s*<[a-zA-Z]")

INFRASTRUCTURE_PATTERNS = [
    re.compile(r"HEARTBEAT"),
    re.compile(r"^Pre-compaction memory flush", re.IGNORECASE),
    re.compile(r"^System:\s*\["),
    re.compile(r"^\[cron:"),
    re.compile(r"^GatewayRestart:"),
    re.compile(r"background task just completed", re.IGNORECASE),
]

_TOOL_TAGS = re.compile(r"<(tool_use|tool_result|function_call)\b")
_CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)

NARRATION_PATTERNS = [
    re.compile(r"^(now\s+)?let me\b", re.IGNORECASE),
    re.compile(r"^I'll\b|^I will\b", re.IGNORECASE),
    re.compile(r"^(Starting|Running|Processing|Checking|Executing)\b"),
    re.compile(r"^(Good|Perfect|Great|Excellent|Done|Alright)!"),
    re.compile(r"Context Reset", re.IGNORECASE),
    re.compile(r"memory was just compacted", re.IGNORECASE),
]


def _is_noise(text: str) -> bool:
    return any(p.search(text) for p in NOISE_PATTERNS)


def passes_attention_gate(text: str) -> bool:
    """True when a user message carries enough substance to remember."""
    trimmed = text.strip()
    if len(trimmed) < MIN_CAPTURE_CHARS or len(trimmed) > MAX_CAPTURE_CHARS:
        return False
    if len(trimmed.split()) < MIN_WORD_COUNT:
        return False
    if _INJECTED_CONTEXT.search(trimmed) or _LEADING_MARKUP.search(trimmed):
        return False
    if any(p.search(trimmed) for p in INFRASTRUCTURE_PATTERNS):
        return False
    return not _is_noise(trimmed)


def passes_assistant_attention_gate(text: str) -> bool:
    """
    Stricter gate for assistant output.

    Assistant turns are mostly narration of work in progress; only
    self-contained conclusions of at least ten words pass.
    """
    trimmed = text.strip()
    if len(trimmed) < MIN_CAPTURE_CHARS or len(trimmed) > MAX_ASSISTANT_CAPTURE_CHARS:
        return False
    if len(trimmed.split()) < MIN_ASSISTANT_WORD_COUNT:
        return False
    code_chars = sum(len(block) for block in _CODE_FENCE.findall(trimmed))
    if code_chars > len(trimmed) * MAX_CODE_RATIO:
        return False
    if _TOOL_TAGS.search(trimmed) or _INJECTED_CONTEXT.search(trimmed):
        return False
    if any(p.search(trimmed) for p in NARRATION_PATTERNS):
        return False
    return not _is_noise(trimmed)
