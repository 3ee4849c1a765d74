"""
Moderation gate for the query endpoint.

Two checks, in order, before any cache or retrieval work:

1. adversarial instruction-override patterns -> ``AdversarialContentDetected``
2. no allowed-domain keyword in the query -> ``OutOfDomainIntent``

The vocabulary and patterns are injected as a ``ModerationPolicy``. The
defaults reproduce the legal-domain deployment; an empty vocabulary turns the
domain check off. Rejections never say which rule matched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Pattern, Sequence, Tuple

from loguru import logger

from ragserve import config
from ragserve.errors import AdversarialContentDetected, OutOfDomainIntent
from ragserve.metrics import moderation_blocks

LEGAL_KEYWORDS: Tuple[str, ...] = (
    "contract",
    "agreement",
    "law",
    "statute",
    "compliance",
    "nda",
    "lease",
    "purchase",
    "plaintiff",
    "defendant",
    "litigation",
    "tort",
    "warranty",
    "liability",
    "settlement",
)

JAILBREAK_PATTERNS: Tuple[str, ...] = (
    r"ignore (previous|all) instructions",
    r"disregard (previous|all) instructions",
    r"override (previous|all) instructions",
    r"jailbreak",
    r"break out of",
    r"bypass safety",
    r"do anything now",
)


def compile_patterns(patterns: Sequence[str]) -> List[Pattern[str]]:
    """Compile case-insensitive patterns, skipping invalid ones with a warning."""
    compiled = []
    for raw in patterns:
        try:
            compiled.append(re.compile(raw, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"Skipping invalid moderation pattern {raw!r}: {e}")
    return compiled


@dataclass(frozen=True)
class ModerationPolicy:
    allowed_keywords: Tuple[str, ...] = LEGAL_KEYWORDS
    jailbreak_patterns: Tuple[Pattern[str], ...] = field(
        default_factory=lambda: tuple(compile_patterns(JAILBREAK_PATTERNS))
    )

    @classmethod
    def build(cls, keywords: Sequence[str], patterns: Sequence[str]) -> "ModerationPolicy":
        return cls(
            allowed_keywords=tuple(k.strip().lower() for k in keywords if k.strip()),
            jailbreak_patterns=tuple(compile_patterns(patterns)),
        )

    @property
    def domain_check_enabled(self) -> bool:
        return bool(self.allowed_keywords)


def _read_lines(path: str) -> List[str]:
    lines = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def load_policy(
    keywords: Optional[Sequence[str]] = None,
    keywords_path: Optional[str] = None,
    patterns_path: Optional[str] = None,
) -> ModerationPolicy:
    """
    Build the policy from configuration.

    Keywords: explicit list, else one-per-line file, else the legal defaults.
    Patterns: one-per-line file, else the built-in jailbreak patterns.
    """
    keywords = list(config.MODERATION_ALLOWED_KEYWORDS if keywords is None else keywords)
    keywords_path = config.MODERATION_KEYWORDS_PATH if keywords_path is None else keywords_path
    patterns_path = config.MODERATION_PATTERNS_PATH if patterns_path is None else patterns_path

    if not keywords and keywords_path:
        keywords = _read_lines(keywords_path)
    if not keywords and not keywords_path:
        keywords = list(LEGAL_KEYWORDS)
    patterns = _read_lines(patterns_path) if patterns_path else list(JAILBREAK_PATTERNS)

    policy = ModerationPolicy.build(keywords, patterns)
    logger.info(
        f"Moderation policy: {len(policy.allowed_keywords)} keywords, "
        f"{len(policy.jailbreak_patterns)} patterns, domain_check={policy.domain_check_enabled}"
    )
    return policy


class ModerationGate:
    def __init__(self, policy: Optional[ModerationPolicy] = None, enabled: bool = True):
        self.policy = policy or ModerationPolicy()
        self.enabled = enabled

    def _jailbreak_match(self, query: str) -> Optional[int]:
        for idx, rx in enumerate(self.policy.jailbreak_patterns):
            if rx.search(query):
                return idx
        return None

    def _in_domain(self, query: str) -> bool:
        q = query.lower()
        return any(kw in q for kw in self.policy.allowed_keywords)

    def check(self, query: Any, request_id: Optional[str] = None) -> None:
        """Raise on rejection, return None on pass. Non-string queries pass through."""
        if not self.enabled:
            return
        if not isinstance(query, str) or not query.strip():
            logger.warning(f"[{request_id}] Moderation: missing or invalid query in request")
            return

        matched = self._jailbreak_match(query)
        if matched is not None:
            moderation_blocks.labels(reason="jailbreak").inc()
            logger.warning(
                f"[{request_id}] Moderation: blocked adversarial query (pattern #{matched}): {query[:200]!r}"
            )
            raise AdversarialContentDetected()

        if self.policy.domain_check_enabled and not self._in_domain(query):
            moderation_blocks.labels(reason="out_of_domain").inc()
            logger.info(f"[{request_id}] Moderation: out-of-domain query blocked: {query[:200]!r}")
            raise OutOfDomainIntent()
