"""
Incremental decoder for the ``text/event-stream`` format.

Example::

    parser = StreamParser()
    for chunk in response.iter_bytes():
        for output in parser.feed(chunk):
            if isinstance(output, EventRecord):
                print(output.type, output.data)

The parser accepts chunks split anywhere, including inside a line, between
the CR and LF of a CRLF pair, or inside a multi-byte UTF-8 sequence, and
produces the same outputs however the stream is chunked.
"""

from __future__ import annotations

import codecs
import re
from typing import List, Optional

from .types import EventRecord, ParserOutput, RetryHint


_END_OF_LINE = re.compile(r"\r\n|\r|\n")
_DIGITS = re.compile(r"[0-9]+")
_MAX_RETRY = 0xFFFFFFFF
_BOM = "\ufeff"


class StreamParser:
    """Line-oriented event-stream decoder. One instance per HTTP response."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._bom_checked = False
        self._pending_lf = False
        self._data: List[str] = []
        self._type: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, chunk: bytes) -> List[ParserOutput]:
        """Consume raw bytes and return the records and retry hints they complete."""
        outputs: List[ParserOutput] = []
        text = self._decoder.decode(chunk)
        if not text:
            return outputs

        if not self._bom_checked:
            self._bom_checked = True
            if text[0] == _BOM:
                text = text[1:]

        # A CR ended the previous chunk; an LF opening this one belongs to it.
        if self._pending_lf and text:
            self._pending_lf = False
            if text[0] == "\n":
                text = text[1:]

        pos = 0
        for match in _END_OF_LINE.finditer(text):
            line = self._line_buffer + text[pos:match.start()]
            self._line_buffer = ""
            self._process_line(line, outputs)
            pos = match.end()
        self._line_buffer += text[pos:]
        self._pending_lf = text.endswith("\r")
        return outputs

    def end(self) -> None:
        """Drop any incomplete line and the partially assembled event."""
        self._decoder.decode(b"", final=True)
        self._line_buffer = ""
        self._pending_lf = False
        self._reset_event()

    @property
    def buffered(self) -> str:
        return self._line_buffer

    # --- Internal ---

    def _process_line(self, line: str, outputs: List[ParserOutput]) -> None:
        if not line:
            self._dispatch(outputs)
            return
        if line.startswith(":"):
            return

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._type = value
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if _DIGITS.fullmatch(value):
                ms = int(value)
                if ms <= _MAX_RETRY:
                    outputs.append(RetryHint(ms))

    def _dispatch(self, outputs: List[ParserOutput]) -> None:
        if self._data:
            outputs.append(EventRecord(
                data="\n".join(self._data),
                type=self._type or "message",
                id=self._id,
            ))
        self._reset_event()

    def _reset_event(self) -> None:
        self._data = []
        self._type = None
        self._id = None
