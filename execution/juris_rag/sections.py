"""
Section detection strategies.

A detector scans the full document text and returns the section spans it
recognises. The chunker only asks which span contains a chunk's start offset,
so other document families can plug in their own heading vocabulary.
"""

import bisect
from abc import ABC, abstractmethod
from typing import Optional
from dataclasses import dataclass

from .language_patterns import SECTION_HEADINGS, build_heading_pattern


@dataclass(frozen=True)
class SectionSpan:
    """A labelled span [start, end) of the source text."""
    label: str
    start: int
    end: int

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end


class SectionDetector(ABC):
    """Interface for finding labelled sections in a document."""

    @abstractmethod
    def detect(self, text: str) -> list[SectionSpan]:
        """Return non-overlapping spans ordered by start offset."""

    def section_at(self, sections: list[SectionSpan], offset: int) -> Optional[str]:
        """Label of the span containing ``offset``, or None."""
        starts = [s.start for s in sections]
        idx = bisect.bisect_right(starts, offset) - 1
        if idx >= 0 and sections[idx].contains(offset):
            return sections[idx].label
        return None


class HeadingSectionDetector(SectionDetector):
    """
    Detects sections opened by heading tokens at line starts.

    Each heading opens a section that runs until the next heading or the end
    of the text. Text before the first heading belongs to no section.
    """

    def __init__(self, headings: Optional[list[str]] = None, family: str = "judicial"):
        self.headings = headings or SECTION_HEADINGS.get(family, SECTION_HEADINGS["judicial"])
        self._pattern = build_heading_pattern(self.headings)

    def detect(self, text: str) -> list[SectionSpan]:
        matches = list(self._pattern.finditer(text))
        sections = []
        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            sections.append(SectionSpan(
                label=match.group(1).upper(),
                start=match.start(),
                end=end,
            ))
        return sections


class NullSectionDetector(SectionDetector):
    """Leaves every chunk untagged (for documents without a heading vocabulary)."""

    def detect(self, text: str) -> list[SectionSpan]:
        return []


def get_section_detector(family: str = "judicial") -> SectionDetector:
    """Factory keyed by document family."""
    if family in SECTION_HEADINGS:
        return HeadingSectionDetector(family=family)
    return NullSectionDetector()
