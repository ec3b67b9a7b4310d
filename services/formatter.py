"""Mechanical spacing rules for streamed answer text.

The formatter sees text in arbitrary chunks. It holds back only the start of a
line while that prefix could still turn out to be a bullet or a code fence, plus
any run of newlines whose final length depends on the next line. Everything
else is returned as soon as it arrives, so output does not depend on where the
chunks were split.
"""

import re
from typing import List, Optional

LINE_TEXT = "text"
LINE_BULLET = "bullet"
LINE_FENCE = "fence"
LINE_CODE = "code"

_NEWLINE_SPLIT = re.compile(r"(\n)")
_BULLET_RE = re.compile(r"(?:[-*•]|\d{1,3}[.)])\s")
_AMBIGUOUS_PREFIX_RE = re.compile(r"(?:[-*•]|\d{1,3}[.)]?|`{1,2})")
_GLYPH_BULLET_RE = re.compile(r"^(\s*)[*•](?=\s)")


class ResponseFormatter:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._pending = ""
        self._newlines = 0
        self._line_kind: Optional[str] = None
        self._prev_kind: Optional[str] = None
        self._in_code = False
        self._started = False

    def process_chunk(self, chunk: str) -> str:
        out: List[str] = []
        for piece in _NEWLINE_SPLIT.split(chunk or ""):
            if piece == "\n":
                self._end_line(out)
            elif piece:
                self._write(piece, out)
        return "".join(out)

    def drain(self) -> str:
        """Release held text ahead of a non-text block.

        The block is treated as content on the current line, so a block that
        opens a new line gets the same spacing a text line would.
        """
        out: List[str] = []
        if self._line_kind is None:
            stripped = self._pending.lstrip()
            if stripped:
                kind = self._classify(stripped)
            else:
                kind = LINE_CODE if self._in_code else LINE_TEXT
            self._open_line(kind, out)
        return "".join(out)

    def flush(self) -> str:
        out: List[str] = []
        if self._line_kind is None and self._pending.strip():
            self._open_line(self._classify(self._pending.lstrip()), out)
        if self._newlines and self._started:
            out.append("\n")
        self.reset()
        return "".join(out)

    def _write(self, text: str, out: List[str]) -> None:
        if self._line_kind is not None:
            out.append(text)
            return
        self._pending += text
        stripped = self._pending.lstrip()
        if not stripped or _AMBIGUOUS_PREFIX_RE.fullmatch(stripped):
            return
        self._open_line(self._classify(stripped), out)

    def _end_line(self, out: List[str]) -> None:
        if self._line_kind is None:
            stripped = self._pending.lstrip()
            if stripped:
                self._open_line(self._classify(stripped), out)
            else:
                # whitespace-only lines count as blank
                self._pending = ""
        self._newlines += 1
        self._line_kind = None

    def _classify(self, stripped: str) -> str:
        if stripped.startswith("```"):
            return LINE_FENCE
        if self._in_code:
            return LINE_CODE
        if _BULLET_RE.match(stripped):
            return LINE_BULLET
        return LINE_TEXT

    def _open_line(self, kind: str, out: List[str]) -> None:
        out.append(self._separator(kind))
        text = self._pending
        if kind == LINE_BULLET:
            text = _GLYPH_BULLET_RE.sub(r"\1-", text, count=1)
        out.append(text)
        self._pending = ""
        self._newlines = 0
        self._line_kind = kind
        self._prev_kind = kind
        self._started = True
        if kind == LINE_FENCE:
            self._in_code = not self._in_code

    def _separator(self, kind: str) -> str:
        count = self._newlines
        if not self._started or count == 0:
            return ""
        if self._in_code or kind == LINE_CODE:
            return "\n" * count
        is_bullet = kind == LINE_BULLET
        was_bullet = self._prev_kind == LINE_BULLET
        if is_bullet and was_bullet:
            return "\n"
        if is_bullet != was_bullet:
            return "\n\n"
        return "\n" * min(count, 2)
