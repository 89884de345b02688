"""
Streaming Sentence Extractor

Splits a growing answer into speakable sentence units while it is still
being generated, so synthesis can start on the first sentence long before
the last one exists.

Architecture:
    GenerationStream -> SentenceExtractor.consume() -> SynthesisDispatcher

A boundary is a run of terminal punctuation (. ! ?), optionally followed by
closing quotes or brackets, that is not the period of a known abbreviation
and is followed by whitespace and an uppercase letter. A mark sitting at the
very end of the buffer stays undecided until more text arrives.

Concatenating every emitted unit's text in index order reproduces the
streamed text exactly. Whitespace between sentences belongs to the start of
the following unit.

Usage:
    extractor = SentenceExtractor()
    async for unit in extractor.extract(stream):
        await dispatcher.dispatch(unit)
"""

import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

from tutor.config import settings

_TERMINAL = re.compile(r"[.!?…]+[\"'”’)\]]*")
_CLAUSE = re.compile(r"[,;]|\s[-–—]\s|[–—]")
_WHITESPACE = re.compile(r"\s")
_OPENERS = "\"'“‘(["


@dataclass(frozen=True)
class SentenceUnit:
    """
    One contiguous span of the answer, ready for synthesis.

    ``merge_into_previous`` marks a short trailing leftover that should be
    voiced together with the unit before it instead of on its own.
    """
    sequence_index: int
    text: str
    merge_into_previous: bool = False

    @property
    def speakable(self) -> str:
        return self.text.strip()


def split_point(text: str, max_chars: int) -> int:
    """
    Where to cut ``text`` so the first piece fits ``max_chars``.

    Prefers the last clause boundary (comma, semicolon, dash), then
    the last whitespace, then a hard cut at the ceiling.
    """
    window = text[:max_chars]
    cut = 0
    for match in _CLAUSE.finditer(window):
        cut = match.end()
    if 0 < cut:
        return cut

    for match in _WHITESPACE.finditer(window):
        if match.start() > 0:
            cut = match.start()
    return cut if cut > 0 else max_chars


def split_long(text: str, max_chars: int) -> List[str]:
    """Split text into pieces no longer than ``max_chars`` that join back to ``text``."""
    pieces: List[str] = []
    while len(text) > max_chars:
        cut = split_point(text, max_chars)
        pieces.append(text[:cut])
        text = text[cut:]
    if text:
        pieces.append(text)
    return pieces


class SentenceExtractor:
    """
    Stateful extractor for one answer.

    Create a new extractor (or call ``reset``) for every generation attempt;
    sequence indices restart at zero.

    Attributes:
        min_significant_chars: Shortest leftover emitted as its own unit
        max_chars: Longest unit handed to synthesis
    """

    def __init__(
        self,
        abbreviations: Optional[Iterable[str]] = None,
        min_significant_chars: Optional[int] = None,
        max_chars: Optional[int] = None,
    ):
        if abbreviations is None:
            abbreviations = settings.extractor.abbreviations
        self._abbreviations = frozenset(a.lower().rstrip(".") for a in abbreviations)
        self.min_significant_chars = (
            settings.extractor.min_significant_chars
            if min_significant_chars is None else min_significant_chars
        )
        self.max_chars = settings.synthesis.max_chars if max_chars is None else max_chars
        self.reset()

    def reset(self) -> None:
        """Reset state for a new answer."""
        self._buffer = ""
        self._emitted = 0
        self._scan_pos = 0
        self._next_index = 0
        self._flushed = False

    # ========================================================================
    # Boundary detection
    # ========================================================================

    def _is_abbreviation(self, mark_start: int, mark: str) -> bool:
        if mark.rstrip("\"'”’)]") != ".":
            return False
        i = mark_start
        while i > 0 and not self._buffer[i - 1].isspace():
            i -= 1
        token = self._buffer[i:mark_start].lstrip(_OPENERS).lower()
        return token in self._abbreviations

    def _find_boundary(self) -> Optional[int]:
        """Return the end of the next sentence, or None if undecided."""
        buf = self._buffer
        pos = self._scan_pos
        while True:
            match = _TERMINAL.search(buf, pos)
            if match is None:
                self._scan_pos = len(buf)
                return None

            end = match.end()
            j = end
            while j < len(buf) and buf[j].isspace():
                j += 1
            spaced = j > end
            if j < len(buf) and buf[j] in _OPENERS:
                j += 1

            if j >= len(buf):
                self._scan_pos = match.start()
                return None

            if not spaced or not buf[j].isupper() or self._is_abbreviation(match.start(), match.group()):
                pos = end
                continue
            return end

    # ========================================================================
    # Emission
    # ========================================================================

    def _emit(self, end: int, merge: bool = False) -> Iterator[SentenceUnit]:
        span = self._buffer[self._emitted:end]
        self._emitted = end
        self._scan_pos = max(self._scan_pos, end)

        pieces = [span] if merge else split_long(span, self.max_chars)
        for piece in pieces:
            unit = SentenceUnit(self._next_index, piece, merge_into_previous=merge)
            self._next_index += 1
            yield unit

    def consume(self, fragment: str) -> Iterator[SentenceUnit]:
        """
        Consume a fragment and yield every unit it completes.

        Args:
            fragment: Next piece of streamed text
        """
        if self._flushed:
            raise RuntimeError("Extractor already flushed; call reset() first")
        if not fragment:
            return

        self._buffer += fragment
        while True:
            boundary = self._find_boundary()
            if boundary is not None:
                yield from self._emit(boundary)
                continue

            pending = self._buffer[self._emitted:]
            if len(pending) > self.max_chars:
                yield from self._emit(self._emitted + split_point(pending, self.max_chars))
                continue
            break

    def flush(self) -> List[SentenceUnit]:
        """
        Emit whatever is left once the stream has ended.

        A leftover shorter than ``min_significant_chars`` is marked to merge
        into the previous unit when there is one.
        """
        if self._flushed:
            return []
        self._flushed = True

        rest = self._buffer[self._emitted:]
        if not rest:
            return []

        short = len(rest.strip()) < self.min_significant_chars
        merge = short and self._next_index > 0
        return list(self._emit(len(self._buffer), merge=merge))

    async def extract(self, stream: AsyncIterable[str]) -> AsyncIterator[SentenceUnit]:
        """Yield units from a fragment stream, flushing when it ends."""
        async for fragment in stream:
            for unit in self.consume(fragment):
                yield unit
        for unit in self.flush():
            yield unit

    def split_text(self, text: str) -> List[SentenceUnit]:
        """Split a complete text with the same rules, without touching this extractor."""
        extractor = SentenceExtractor(
            self._abbreviations, self.min_significant_chars, self.max_chars
        )
        units = list(extractor.consume(text))
        units.extend(extractor.flush())
        return units

    @property
    def text(self) -> str:
        """All text consumed so far."""
        return self._buffer

    @property
    def emitted_chars(self) -> int:
        """Watermark: characters already handed downstream."""
        return self._emitted

    @property
    def unit_count(self) -> int:
        return self._next_index
