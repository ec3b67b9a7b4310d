"""Turns a chunked model text stream into client block events.

Markers embedded in the text are validated against the manifest of cards the
request fetched, emitted as blocks at most once each, and any article the model
never cited is appended under a "Related Coverage" trailer when the stream ends.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from services.blocks import ArticleBlock, SeparatorBlock, TextBlock, block_for_marker
from services.formatter import ResponseFormatter
from services.manifest import INJECTABLE_KINDS, ManifestEntry
from services.markers import (
    Marker,
    MarkerKind,
    find_earliest_marker,
    has_dangling_open_bracket,
    render_marker,
)
from services.sinks import EventSink

DEFAULT_MIN_EMIT_CHARS = 50
DEFAULT_COVERAGE_TITLE = "Related Coverage"
DISCUSSED_THRESHOLD = 0.3
RECENT_TEXT_WINDOW = 512

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _section_heading_re(title: str) -> "re.Pattern[str]":
    return re.compile(
        rf"^[ \t]*(?:#{{1,6}}[ \t]*)?(?:\*\*)?{re.escape(title)}:?(?:\*\*)?:?[ \t]*$",
        re.IGNORECASE | re.MULTILINE,
    )


def discussion_score(title: str, response: str) -> float:
    """Share of significant title words that appear in the response text."""
    words = [w for w in re.sub(r"[^\w\s]", "", (title or "").lower()).split() if len(w) > 3]
    if not words:
        return 0.0
    haystack = (response or "").lower()
    matched = [w for w in words if w in haystack]
    return len(matched) / len(words)


def sort_by_recency(entries: Iterable[ManifestEntry]) -> List[ManifestEntry]:
    """Newest first; undated entries follow in their original order."""
    entries = list(entries)
    dated = [e for e in entries if e.recency_key is not None]
    undated = [e for e in entries if e.recency_key is None]
    dated.sort(key=lambda e: e.recency_key or _EPOCH, reverse=True)
    return dated + undated


class StreamProcessor:
    def __init__(
        self,
        manifest: Iterable[ManifestEntry],
        sink: EventSink,
        formatter: Optional[ResponseFormatter] = None,
        min_emit_chars: int = DEFAULT_MIN_EMIT_CHARS,
        coverage_title: str = DEFAULT_COVERAGE_TITLE,
        inline_article_markers: bool = True,
    ) -> None:
        self.manifest: List[ManifestEntry] = list(manifest)
        self.index: Dict[Tuple[MarkerKind, str], ManifestEntry] = {e.key: e for e in self.manifest}
        self.sink = sink
        self.formatter = formatter or ResponseFormatter()
        self.min_emit_chars = min_emit_chars
        self.coverage_title = coverage_title
        self.inline_article_markers = inline_article_markers

        self.buffer = ""
        self.found: Set[Tuple[MarkerKind, str]] = set()
        self.stacked_section = False
        self._full_response: List[str] = []
        self._recent_text = ""
        self._heading_re = _section_heading_re(coverage_title)

        counts: Dict[str, int] = {}
        for entry in self.manifest:
            counts[entry.kind.value] = counts.get(entry.kind.value, 0) + 1
        logging.debug("StreamProcessor tracking manifest entries: %s", counts or "none")

    @property
    def full_response(self) -> str:
        return "".join(self._full_response)

    def feed(self, delta: str) -> None:
        if not delta:
            return
        self.buffer += delta
        self._full_response.append(delta)
        self._process_buffer(flush=False)

    def finalize(self) -> str:
        self._process_buffer(flush=True)
        remaining = self.formatter.flush()
        if remaining:
            self.sink.emit(TextBlock(remaining))
        self._inject_missing()
        return self.full_response

    # -------------------------------------------------------------
    #  Extraction loop
    # -------------------------------------------------------------
    def _process_buffer(self, flush: bool) -> None:
        while self.buffer:
            marker = find_earliest_marker(self.buffer)
            if marker is not None:
                self._emit_text(marker.before)
                self._handle_marker(marker)
                self.buffer = marker.after
                continue

            if not flush and has_dangling_open_bracket(self.buffer):
                cut = self.buffer.rfind("[")
                if cut > 0:
                    self._emit_text(self.buffer[:cut])
                    self.buffer = self.buffer[cut:]
                break

            if not flush:
                if len(self.buffer) > self.min_emit_chars or "\n" in self.buffer:
                    self._emit_text(self.buffer)
                    self.buffer = ""
                break

            self._emit_text(self.buffer)
            self.buffer = ""

    def _handle_marker(self, marker: Marker) -> None:
        if not self._is_valid(marker):
            logging.warning(
                "Dropping marker %s: no matching %s card in this response's data.",
                marker.raw,
                marker.kind.value,
            )
            return
        if marker.key in self.found:
            logging.debug("Dropping repeated marker %s", marker.raw)
            return

        if not self.stacked_section and self._heading_re.search(self._recent_text):
            logging.debug("Entering stacked %s section", self.coverage_title)
            self.stacked_section = True

        self.found.add(marker.key)
        self._flush_formatter()
        if marker.kind is MarkerKind.ARTICLE:
            self._emit_article(marker.raw, marker.card_id)
            if not self.stacked_section:
                self.sink.emit(SeparatorBlock())
        else:
            self.sink.emit(block_for_marker(marker))
        self._recent_text = ""

    def _is_valid(self, marker: Marker) -> bool:
        if marker.kind is MarkerKind.CHART:
            return True
        return marker.key in self.index

    def _emit_article(self, raw: str, card_id: str) -> None:
        if self.inline_article_markers:
            # Article markers ride the text channel so the client places the
            # card relative to the surrounding prose.
            self.sink.emit(TextBlock(raw))
        else:
            self.sink.emit(ArticleBlock(card_id))

    def _emit_text(self, text: str) -> None:
        if not text:
            return
        self._recent_text = (self._recent_text + text)[-RECENT_TEXT_WINDOW:]
        formatted = self.formatter.process_chunk(text)
        if formatted:
            self.sink.emit(TextBlock(formatted))

    def _flush_formatter(self) -> None:
        held = self.formatter.drain()
        if held:
            self.sink.emit(TextBlock(held))

    # -------------------------------------------------------------
    #  Related coverage injection
    # -------------------------------------------------------------
    def missing_entries(self) -> List[ManifestEntry]:
        return [
            entry
            for entry in self.manifest
            if entry.kind in INJECTABLE_KINDS and entry.key not in self.found
        ]

    def _inject_missing(self) -> None:
        missing = self.missing_entries()
        if not missing:
            return

        logging.info("Injecting %d uncited article card(s) under %s", len(missing), self.coverage_title)
        response = self.full_response
        for entry in missing:
            score = discussion_score(entry.title, response)
            if score > DISCUSSED_THRESHOLD:
                logging.info("  %r appears discussed (%d%% title match)", entry.title[:60], round(score * 100))

        ordered = sort_by_recency(missing)
        self.sink.emit(SeparatorBlock())
        heading = f"\n\n**{self.coverage_title}:**\n\n"
        self._full_response.append(heading)
        self.sink.emit(TextBlock(heading))
        self.stacked_section = True

        for entry in ordered:
            raw = render_marker(entry.kind, entry.id)
            self._full_response.append(raw + "\n")
            self.found.add(entry.key)
            if self.inline_article_markers:
                self.sink.emit(TextBlock(raw + "\n"))
            else:
                self._emit_article(raw, entry.id)
            logging.debug("  injected %s (%s)", raw, entry.recency_key.date() if entry.recency_key else "no date")
