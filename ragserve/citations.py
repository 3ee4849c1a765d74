"""
Citation extraction for generated answers.

Answers cite passages with inline markers ``[p0]``, ``[p1]``... indexed by
the passage's position in the prompt. Everything that knows the marker
syntax lives here:

- ``format_marker``: render the marker for an index
- ``extract_citations``: validated, deduplicated, ascending indices (pure)
- ``validate_citations``: fuller report for logging model mistakes
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Set

CITATION_PATTERN = re.compile(r"\[p(\d+)\]")


def format_marker(index: int) -> str:
    return f"[p{index}]"


def _raw_indices(text: str) -> List[int]:
    return [int(m) for m in CITATION_PATTERN.findall(text or "")]


def extract_citations(text: str, passage_count: int) -> List[int]:
    """
    Extract the passage indices cited in ``text``.

    Indices outside ``[0, passage_count - 1]`` are discarded (model error,
    not a failure). Duplicates collapse and the result is sorted.

    Examples:
        >>> extract_citations("See [p0][p0][p1].", 3)
        [0, 1]
        >>> extract_citations("Per [p5] and [p2].", 3)
        [2]
        >>> extract_citations("No markers here.", 3)
        []
    """
    if passage_count <= 0:
        return []
    return sorted({i for i in _raw_indices(text) if 0 <= i < passage_count})


@dataclass
class CitationReport:
    """Result of citation validation."""
    cited: List[int]                       # valid indices, ascending
    out_of_range: List[int]                # indices the model invented
    unused: List[int]                      # passages never cited
    total_markers: int                     # marker occurrences, duplicates included
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.out_of_range


def validate_citations(text: str, passage_count: int) -> CitationReport:
    """
    Validate that answer citations match the passages the model was given.

    Examples:
        >>> r = validate_citations("Answer from [p0] and [p7].", 3)
        >>> r.cited, r.out_of_range, r.unused
        ([0], [7], [1, 2])
    """
    raw = _raw_indices(text)
    available: Set[int] = set(range(max(passage_count, 0)))
    seen = set(raw)
    cited = sorted(seen & available)
    out_of_range = sorted(seen - available)
    unused = sorted(available - seen)

    warnings: List[str] = []
    if out_of_range:
        warnings.append(f"Citation index {max(out_of_range)} exceeds available passages ({passage_count})")
    if not raw and passage_count > 0:
        warnings.append("Answer contains no citations despite having passages")

    return CitationReport(
        cited=cited,
        out_of_range=out_of_range,
        unused=unused,
        total_markers=len(raw),
        warnings=warnings,
    )
