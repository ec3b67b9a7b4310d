"""Bracketed card-marker grammar embedded in model output.

Every marker kind is one row of ``MARKER_GRAMMAR``; the rows compile into a
single alternation so the earliest marker in a buffer is found with one scan.
When two kinds could start at the same offset, the row listed first wins.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple


class MarkerKind(Enum):
    CHART = "chart"
    ARTICLE = "article"
    IMAGE = "image"
    EVENT = "event"


_CARD_ID = r"[^\[\]]+"

# (kind, tag, field patterns). Every field pattern must end in "+".
MARKER_GRAMMAR: List[Tuple[MarkerKind, str, Tuple[str, ...]]] = [
    (MarkerKind.CHART, "VIEW_CHART", (r"[A-Z]+", _CARD_ID)),
    (MarkerKind.ARTICLE, "VIEW_ARTICLE", (_CARD_ID,)),
    (MarkerKind.IMAGE, "IMAGE_CARD", (_CARD_ID,)),
    (MarkerKind.EVENT, "EVENT_CARD", (_CARD_ID,)),
]

MARKER_TAGS = {kind: tag for kind, tag, _ in MARKER_GRAMMAR}


def _compile_grammar() -> "re.Pattern[str]":
    branches = []
    for idx, (_kind, tag, fields) in enumerate(MARKER_GRAMMAR):
        parts = [f"(?P<m{idx}>{re.escape(tag)})"]
        for field_idx, pattern in enumerate(fields):
            parts.append(f"(?P<m{idx}_{field_idx}>{pattern})")
        branches.append(":".join(parts))
    return re.compile(r"\[(?:" + "|".join(branches) + r")\]")


def _compile_partials() -> List["re.Pattern[str]"]:
    # Field text that may still grow into a complete marker body.
    partials = []
    for _kind, _tag, fields in MARKER_GRAMMAR:
        options = []
        for cut in range(len(fields)):
            head = list(fields[:cut]) + [fields[cut][:-1] + "*"]
            options.append(":".join(head))
        partials.append(re.compile("|".join(f"(?:{opt})" for opt in options)))
    return partials


MARKER_RE = _compile_grammar()
_PARTIAL_FIELDS = _compile_partials()


@dataclass(frozen=True)
class Marker:
    kind: MarkerKind
    fields: Tuple[str, ...]
    raw: str
    start: int
    end: int
    before: str = ""
    after: str = ""

    @property
    def card_id(self) -> str:
        """Manifest id: the card id, or ``SYMBOL:RANGE`` for charts."""
        return ":".join(self.fields)

    @property
    def key(self) -> Tuple[MarkerKind, str]:
        return (self.kind, self.card_id)

    @property
    def symbol(self) -> Optional[str]:
        return self.fields[0] if self.kind is MarkerKind.CHART else None

    @property
    def time_range(self) -> Optional[str]:
        return self.fields[1] if self.kind is MarkerKind.CHART else None


def _marker_from_match(match: "re.Match[str]", text: str) -> Marker:
    for idx, (kind, _tag, fields) in enumerate(MARKER_GRAMMAR):
        if match.group(f"m{idx}") is None:
            continue
        values = tuple(match.group(f"m{idx}_{field_idx}") for field_idx in range(len(fields)))
        return Marker(
            kind=kind,
            fields=values,
            raw=match.group(0),
            start=match.start(),
            end=match.end(),
            before=text[: match.start()],
            after=text[match.end():],
        )
    raise ValueError(f"Unrecognized marker match: {match.group(0)!r}")


def find_earliest_marker(text: str) -> Optional[Marker]:
    if not text:
        return None
    match = MARKER_RE.search(text)
    if match is None:
        return None
    return _marker_from_match(match, text)


def find_all_markers(text: str) -> Iterator[Marker]:
    for match in MARKER_RE.finditer(text or ""):
        yield _marker_from_match(match, text)


def has_dangling_open_bracket(text: str) -> bool:
    """True when the text ends in an unterminated ``[`` that could still become a marker."""
    idx = (text or "").rfind("[")
    if idx == -1:
        return False
    tail = text[idx + 1:]
    if "]" in tail:
        return False
    for (_kind, tag, _fields), partial in zip(MARKER_GRAMMAR, _PARTIAL_FIELDS):
        head = f"{tag}:"
        if head.startswith(tail):
            return True
        if tail.startswith(head):
            return partial.fullmatch(tail[len(head):]) is not None
    return False


def render_marker(kind: MarkerKind, *fields: str) -> str:
    return f"[{MARKER_TAGS[kind]}:{':'.join(fields)}]"
