"""
Section-Aware Chunker for Brazilian Legal Documents

Splits normalized document text into overlapping retrieval units sized for
embedding. Paragraphs (blank-line separated) are accumulated until the next
one would push the buffer past the target size; the following chunk is then
seeded with the trailing words of the one just closed.

Every chunk is a slice of the original text, so ``start_offset`` and
``end_offset`` map it straight back to its source span. Section labels come
from a pluggable SectionDetector run over the whole document.
"""

import re
import logging
from typing import Optional
from dataclasses import dataclass

from .language_config import LanguageConfig
from .language_patterns import PROCESS_NUMBER_PATTERN
from .sections import SectionDetector, get_section_detector

logger = logging.getLogger(__name__)

_PARAGRAPH_SEPARATOR = re.compile(r"\n\s*\n")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?;])\s+")
_WORD = re.compile(r"\S+")


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (estimated tokens)."""
    target_tokens: int = 512
    overlap_tokens: int = 100
    # Trailing buffers below this are dropped unless they are the only chunk
    min_tokens: int = 100
    # Hard cap on a chunk, overlap included; longer sentences are split on words
    max_tokens: int = 1000


@dataclass
class TextChunk:
    """A retrieval unit cut from the source text."""
    index: int
    content: str
    start_offset: int
    end_offset: int
    section: Optional[str] = None
    token_count: int = 0


def extract_process_number(text: str) -> Optional[str]:
    """Return the first CNJ-format case number found in ``text``."""
    match = PROCESS_NUMBER_PATTERN.search(text or "")
    return match.group(0) if match else None


class LegalChunker:
    """
    Chunks legal text into overlapping, section-tagged units.

    Deterministic and side-effect free: the same text always yields the same
    chunks, so a job can be restarted from scratch safely.
    """

    def __init__(
        self,
        config: Optional[ChunkConfig] = None,
        language_config: Optional[LanguageConfig] = None,
        section_detector: Optional[SectionDetector] = None,
    ):
        self.config = config or ChunkConfig()
        self._language_config = language_config or LanguageConfig.for_language("pt")
        self._cpt = self._language_config.chars_per_token
        self.section_detector = section_detector or get_section_detector(
            self._language_config.document_family
        )

    def chunk(self, text: str) -> list[TextChunk]:
        """
        Split ``text`` into chunks.

        Args:
            text: Normalized document text

        Returns:
            Ordered list of TextChunk objects (empty for blank input)
        """
        if not text or not text.strip():
            return []

        units = []
        for start, end in self._paragraph_spans(text):
            if self._tokens(end - start) > self.config.target_tokens:
                units.extend(self._split_on_sentences(text, start, end))
            else:
                units.append((start, end))

        spans = self._accumulate(text, units)
        sections = self.section_detector.detect(text)

        chunks = []
        for i, (start, end) in enumerate(spans):
            content = text[start:end]
            chunks.append(TextChunk(
                index=i,
                content=content,
                start_offset=start,
                end_offset=end,
                section=self.section_detector.section_at(sections, start),
                token_count=self._estimate_tokens(content),
            ))

        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks")
        return chunks

    def _paragraph_spans(self, text: str) -> list[tuple[int, int]]:
        """Offsets of non-blank paragraphs, trimmed of surrounding whitespace."""
        spans = []
        pos = 0
        boundaries = [(m.start(), m.end()) for m in _PARAGRAPH_SEPARATOR.finditer(text)]
        boundaries.append((len(text), len(text)))

        for sep_start, sep_end in boundaries:
            segment = text[pos:sep_start]
            if segment.strip():
                lead = len(segment) - len(segment.lstrip())
                spans.append((pos + lead, pos + len(segment.rstrip())))
            pos = sep_end

        return spans

    def _split_on_sentences(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        """Break a long paragraph into sentence groups under the target size."""
        pieces = []
        pos = start
        for m in _SENTENCE_BOUNDARY.finditer(text, start, end):
            pieces.extend(self._split_run_on(text, pos, m.start()))
            pos = m.end()
        pieces.extend(self._split_run_on(text, pos, end))
        return self._group(pieces)

    def _split_run_on(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        """A sentence that would not fit next to an overlap falls back to word boundaries."""
        if self._tokens(end - start) <= self.config.max_tokens - self.config.overlap_tokens:
            return [(start, end)]
        return self._group([(m.start(), m.end()) for m in _WORD.finditer(text, start, end)])

    def _group(self, pieces: list[tuple[int, int]]) -> list[tuple[int, int]]:
        groups = []
        group_start, group_end = pieces[0]
        for p_start, p_end in pieces[1:]:
            if self._tokens(p_end - group_start) > self.config.target_tokens:
                groups.append((group_start, group_end))
                group_start = p_start
            group_end = p_end
        groups.append((group_start, group_end))
        return groups

    def _accumulate(self, text: str, units: list[tuple[int, int]]) -> list[tuple[int, int]]:
        spans = []
        buf_start, buf_end = units[0]

        for unit_start, unit_end in units[1:]:
            if self._tokens(unit_end - buf_start) > self.config.target_tokens:
                spans.append((buf_start, buf_end))
                overlap = self._overlap_start(text, buf_start, buf_end)
                buf_start = overlap if overlap < buf_end else unit_start
            buf_end = unit_end

        if not spans or self._tokens(buf_end - buf_start) >= self.config.min_tokens:
            spans.append((buf_start, buf_end))
        else:
            logger.debug(f"Dropped trailing buffer of {buf_end - buf_start} chars")

        return spans

    def _overlap_start(self, text: str, start: int, end: int) -> int:
        """Start offset of the trailing words of [start, end) worth ~overlap_tokens."""
        budget = self.config.overlap_tokens * self._cpt
        word_starts = [m.start() for m in _WORD.finditer(text, start, end)]
        if budget <= 0 or len(word_starts) < 2:
            return end

        # Never reuse the first word, otherwise the next chunk would restart here
        overlap = word_starts[-1]
        for ws in reversed(word_starts[1:-1]):
            if end - ws > budget:
                break
            overlap = ws
        return overlap

    def _tokens(self, length: int) -> float:
        return length / self._cpt

    def _estimate_tokens(self, text: str) -> int:
        """Estimate token count using the language's chars_per_token ratio."""
        return round(len(text) / self._cpt)


# CLI for testing
if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m execution.juris_rag.chunker <text_file>")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)

    with open(sys.argv[1], encoding="utf-8") as f:
        source = f.read()

    chunks = LegalChunker().chunk(source)

    print(f"\nCreated {len(chunks)} chunks:")
    for chunk in chunks[:5]:
        print(f"\n--- Chunk {chunk.index} [{chunk.start_offset}:{chunk.end_offset}] ---")
        print(f"Section: {chunk.section}")
        print(f"Tokens: {chunk.token_count}")
        print(f"Content preview: {chunk.content[:200]}...")
