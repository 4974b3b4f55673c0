"""NDJSON stream assembler.

A streaming response arrives as arbitrarily sized text (or byte) chunks. A
JSON record may be split across chunks, and one chunk may carry several
records. ``NdjsonAssembler`` is a line-framing automaton: it holds back at
most one partial line between calls and emits one outcome per completed line,
in the order the newlines arrived.

Malformed lines come back as ``DecodeFailure`` and are logged; they never
stop the stream. Interpreting records (status codes, payloads) is the
consumer's job; ``iter_frames`` adapts the assembler to an async chunk source
and yields validated ``StreamFrame`` objects.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

from pydantic import ValidationError

from promptgen.errors import FrameDecodeError
from promptgen.models import StreamFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodedRecord:
    value: Any
    line: str


@dataclass(frozen=True)
class DecodeFailure:
    line: str
    error: str


ParseOutcome = Union[DecodedRecord, DecodeFailure]


class NdjsonAssembler:
    """Reassembles newline-delimited JSON records across chunk boundaries."""

    def __init__(self) -> None:
        self._partial = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Text held back because its line is not yet terminated."""
        return self._partial

    def feed(self, chunk: Union[str, bytes]) -> list[ParseOutcome]:
        """Consume one chunk and return outcomes for every line it completes."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []

        *lines, self._partial = (self._partial + chunk).split("\n")
        return self._decode_lines(lines)

    def finish(self) -> list[ParseOutcome]:
        """Decode whatever is left as a final, unterminated line."""
        residual = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return self._decode_lines([residual])

    def _decode_lines(self, lines: list[str]) -> list[ParseOutcome]:
        outcomes: list[ParseOutcome] = []
        for line in lines:
            outcome = _decode_line(line)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes


def _decode_line(line: str) -> Optional[ParseOutcome]:
    text = line.strip()
    if not text:
        return None
    try:
        return DecodedRecord(value=json.loads(text), line=text)
    except json.JSONDecodeError as e:
        logger.warning("Skipping malformed NDJSON line: %s", FrameDecodeError(text, str(e)))
        return DecodeFailure(line=text, error=str(e))


def _to_frame(outcome: ParseOutcome) -> Optional[StreamFrame]:
    if isinstance(outcome, DecodeFailure):
        return None
    if not isinstance(outcome.value, dict):
        logger.warning(
            "Skipping non-object NDJSON record: %s",
            FrameDecodeError(outcome.line, "not a JSON object"),
        )
        return None
    try:
        return StreamFrame.model_validate(outcome.value)
    except ValidationError as e:
        logger.warning(
            "Skipping NDJSON record without a valid frame shape: %s",
            FrameDecodeError(outcome.line, f"{e.error_count()} validation error(s)"),
        )
        return None


async def iter_frames(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[StreamFrame]:
    """Yield decoded frames from an async chunk source, in arrival order."""
    assembler = NdjsonAssembler()
    async for chunk in chunks:
        for outcome in assembler.feed(chunk):
            frame = _to_frame(outcome)
            if frame is not None:
                yield frame
    for outcome in assembler.finish():
        frame = _to_frame(outcome)
        if frame is not None:
            yield frame
