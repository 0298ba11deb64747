"""Patterns for memories that must never persist: leaked secrets and open proposals."""

import re
from typing import List, Optional, Tuple

CREDENTIAL_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(?:sk|api[_-]?key(?:[_-]\w+)?)[_-][a-z0-9]{16,}", re.IGNORECASE), "API key"),
    (re.compile(r"bearer\s+[a-z0-9_\-.]{20,}", re.IGNORECASE), "Bearer token"),
    # before the generic token pattern
    (re.compile(r"\beyJ[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{20,}", re.IGNORECASE), "JWT"),
    (
        re.compile(r"\b(?:token|secret|key)\s*[:=]\s*[\"']?[a-z0-9+/=_\-]{32,}[\"']?", re.IGNORECASE),
        "Token/secret",
    ),
    (
        re.compile(r"\b(?:password|passwd|pwd)\s*[:=]\s*[\"']?\S{4,}[\"']?", re.IGNORECASE),
        "Password assignment",
    ),
    (re.compile(r"\bcreds?\s+\S+[/\\]\S+", re.IGNORECASE), "Credentials (user/pass)"),
    (re.compile(r"//[^/\s:]+:[^/\s@]+@", re.IGNORECASE), "URL credentials"),
    (re.compile(r"-----BEGIN\s+(?:RSA\s+)?PRIVATE\s+KEY-----", re.IGNORECASE), "Private key"),
    (re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b"), "AWS key"),
    (re.compile(r"\b(?:ghp|gho|ghu|ghs|ghr|glpat)[_-][a-zA-Z0-9]{16,}", re.IGNORECASE), "GitHub/GitLab token"),
]

# Proposals and offers awaiting an answer. Stored, they resurface as
# instructions in later sessions. Cypher (Java) regex syntax.
NOISE_PATTERNS = [
    r"want me to\s.+\?",
    r"should I\s.+\?",
    r"shall I\s.+\?",
    r"would you like me to\s.+\?",
    r"do you want me to\s.+\?",
    r"ready to\s.+\?",
    r"proceed with\s.+\?",
]


def detect_credential(text: str) -> Optional[str]:
    """Label of the first credential pattern found in ``text``, or None."""
    for pattern, label in CREDENTIAL_PATTERNS:
        if pattern.search(text):
            return label
    return None


def noise_match_pattern(pattern: str) -> str:
    """Whole-text, case-insensitive form of a noise pattern for ``=~``."""
    return f"(?i).*{pattern}.*"
