#!/usr/bin/env python3
"""RAG prompt templates with indexed passage citations.

Passages are labelled ``[p0]``, ``[p1]``... in the order the retriever
returned them; the model is told to cite with the same markers so
``ragserve.citations`` can map them back to passages.
"""

from typing import List, Sequence, Tuple

from ragserve import config
from ragserve.citations import format_marker
from ragserve.models import RetrievedPassage

NOT_ENOUGH_INFORMATION = "The provided context does not contain enough information to answer this question."


def truncate_text(text: str, max_length: int) -> str:
    """Truncate to ``max_length`` chars, preferring a nearby word boundary.

    Adds ``...`` when truncated. The boundary is only used when it keeps
    more than 80% of the budget; otherwise the text is hard cut.
    """
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    truncated = text[: max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return (len(text) + 3) // 4


class RAGPrompt:
    """Build grounded prompts that demand inline passage citations."""

    SYSTEM_PROMPT = f"""You are a helpful assistant that answers questions based on provided context passages.

INSTRUCTIONS:
1. Answer the user's question using ONLY the information in the provided context passages.
2. Cite passages by index using [p0], [p1], [p2], etc., where the number is the passage index (0-based).
3. Mark every factual claim with the citation of the passage it came from.
4. If the answer is not found in the context, say exactly: "{NOT_ENOUGH_INFORMATION}"
5. If citing multiple passages, use [p0][p1] or cite them separately.
6. Do not make up information that is not present in the context.
"""

    @staticmethod
    def system_prompt() -> str:
        return RAGPrompt.SYSTEM_PROMPT

    @staticmethod
    def build_context_block(
        passages: Sequence[RetrievedPassage],
        passage_char_limit: int = config.PROMPT_PASSAGE_CHAR_LIMIT,
        context_char_limit: int = config.PROMPT_CONTEXT_CHAR_LIMIT,
    ) -> Tuple[str, int]:
        """Format passages as ``[pN]: text`` sections.

        Each passage is truncated to ``passage_char_limit``. Once the block
        would exceed ``context_char_limit`` the remaining passages are
        dropped; indices are never renumbered, so the kept sections are
        always ``p0..p(n-1)``.

        Returns:
            Tuple of (context_string, number_of_passages_included)
        """
        sections: List[str] = []
        total = 0
        for idx, passage in enumerate(passages):
            section = f"{format_marker(idx)}: {truncate_text(passage.text, passage_char_limit)}"
            added = len(section) + (2 if sections else 0)
            if sections and total + added > context_char_limit:
                break
            if not sections and added > context_char_limit:
                section = truncate_text(section, context_char_limit)
                added = len(section)
            sections.append(section)
            total += added
        return "\n\n".join(sections), len(sections)

    @staticmethod
    def user_prompt(query: str, passages: Sequence[RetrievedPassage], **limits) -> Tuple[str, int]:
        """Build the user message. Returns (prompt, number_of_passages_included)."""
        context, included = RAGPrompt.build_context_block(passages, **limits)
        prompt = (
            f"Question: {query}\n\n"
            f"Context passages:\n{context}\n\n"
            f"Please answer the question using the context passages above. "
            f"Cite passages using [p0], [p1], etc."
        )
        return prompt, included
