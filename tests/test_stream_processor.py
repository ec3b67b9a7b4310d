from datetime import datetime, timezone

import pytest

from services.manifest import ManifestEntry
from services.markers import MarkerKind
from services.sinks import BufferedSink
from services.stream_processor import StreamProcessor, discussion_score, sort_by_recency


def _article(card_id, title="", day=None):
    recency = datetime(2024, 5, day, tzinfo=timezone.utc) if day else None
    return ManifestEntry(kind=MarkerKind.ARTICLE, id=card_id, title=title, recency_key=recency)


def _run(manifest, chunks, **kwargs):
    sink = BufferedSink()
    processor = StreamProcessor(manifest, sink, **kwargs)
    for chunk in chunks:
        processor.feed(chunk)
    full = processor.finalize()
    return sink.events, full


def _merged(events):
    """Join adjacent content events so comparisons ignore text granularity."""
    merged = []
    for event in events:
        if event["type"] == "content" and merged and merged[-1]["type"] == "content":
            merged[-1] = {"type": "content", "content": merged[-1]["content"] + event["content"]}
        else:
            merged.append(dict(event))
    return merged


def _content(events):
    return "".join(e["content"] for e in events if e["type"] == "content")


HR = {"type": "horizontal_rule"}


def test_inline_article_keeps_text_position():
    manifest = [_article("x1", "Q3 earnings")]
    events, full = _run(manifest, ["Revenue rose. [VIEW_ARTICLE:x1] Costs fell."])
    assert events == [
        {"type": "content", "content": "Revenue rose. "},
        {"type": "content", "content": "[VIEW_ARTICLE:x1]"},
        HR,
        {"type": "content", "content": " Costs fell."},
    ]
    assert full == "Revenue rose. [VIEW_ARTICLE:x1] Costs fell."


def test_uncited_article_is_injected_at_end():
    manifest = [_article("x1", "Q3 earnings")]
    events, full = _run(manifest, ["Revenue rose. Costs fell."])
    assert events == [
        {"type": "content", "content": "Revenue rose. Costs fell."},
        HR,
        {"type": "content", "content": "\n\n**Related Coverage:**\n\n"},
        {"type": "content", "content": "[VIEW_ARTICLE:x1]\n"},
    ]
    assert full == "Revenue rose. Costs fell.\n\n**Related Coverage:**\n\n[VIEW_ARTICLE:x1]\n"


def test_hallucinated_marker_leaves_no_trace():
    events, full = _run([], ["[VIEW_ARTICLE:ghost]"])
    assert events == []
    assert full == "[VIEW_ARTICLE:ghost]"


def test_marker_split_across_chunks():
    manifest = [_article("x1", "Q3 earnings")]
    split_events, _ = _run(manifest, ["text [VIEW_AR", "TICLE:x1] more"])
    whole_events, _ = _run(manifest, ["text [VIEW_ARTICLE:x1] more"])
    assert split_events == whole_events
    assert split_events == [
        {"type": "content", "content": "text "},
        {"type": "content", "content": "[VIEW_ARTICLE:x1]"},
        HR,
        {"type": "content", "content": " more"},
    ]


def test_injection_order_is_newest_first():
    manifest = [_article("a", day=5), _article("b", day=9), _article("c")]
    events, _ = _run(manifest, ["Nothing cited."])
    injected = [e["content"] for e in events if e["type"] == "content" and e["content"].startswith("[VIEW_ARTICLE")]
    assert injected == ["[VIEW_ARTICLE:b]\n", "[VIEW_ARTICLE:a]\n", "[VIEW_ARTICLE:c]\n"]


def test_sort_by_recency_keeps_undated_order():
    entries = [_article("u1"), _article("d1", day=2), _article("u2"), _article("d2", day=3)]
    assert [e.id for e in sort_by_recency(entries)] == ["d2", "d1", "u1", "u2"]


RICH_MANIFEST = [
    _article("a1", "Apple flags supply chain risk", day=3),
    _article("a2", "Apple expands buyback program", day=7),
    ManifestEntry(kind=MarkerKind.IMAGE, id="img-7", title="Segment revenue table"),
    ManifestEntry(kind=MarkerKind.EVENT, id="42", title="Q4 earnings call"),
]

RICH_TEXT = (
    "Apple beat estimates this quarter.\n\n\n"
    "Key drivers:\n"
    "* Services revenue grew 14%\n\n"
    "* iPhone units were flat\n"
    "Shares moved after hours. [VIEW_CHART:AAPL:1D]\n"
    "Management flagged supply risk [VIEW_ARTICLE:a1] and a new buyback.\n"
    "[IMAGE_CARD:img-7]\n"
    "The ghost card [VIEW_ARTICLE:nope] is not real.\n"
    "Earnings date: [EVENT_CARD:42]\n"
    "Repeat [VIEW_ARTICLE:a1] should not duplicate.\n"
    "Trailing bracket [see note"
)


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 16, 64])
def test_block_sequence_independent_of_chunking(chunk_size):
    chunks = [RICH_TEXT[i:i + chunk_size] for i in range(0, len(RICH_TEXT), chunk_size)]
    chunked, chunked_full = _run(RICH_MANIFEST, chunks)
    whole, whole_full = _run(RICH_MANIFEST, [RICH_TEXT])
    assert _merged(chunked) == _merged(whole)
    assert chunked_full == whole_full


def test_every_split_point_matches_single_feed():
    whole, _ = _run(RICH_MANIFEST, [RICH_TEXT])
    for cut in range(1, len(RICH_TEXT)):
        split, _ = _run(RICH_MANIFEST, [RICH_TEXT[:cut], RICH_TEXT[cut:]])
        assert _merged(split) == _merged(whole), cut


def test_rich_stream_properties():
    events, full = _run(RICH_MANIFEST, [RICH_TEXT])
    text = _content(events)

    # at most once, and complete for articles
    assert text.count("[VIEW_ARTICLE:a1]") == 1
    assert text.count("[VIEW_ARTICLE:a2]") == 1
    assert [e for e in events if e["type"] == "image_block"] == [{"type": "image_block", "cardId": "img-7"}]
    assert [e for e in events if e["type"] == "event_block"] == [{"type": "event_block", "cardId": "42"}]
    assert [e for e in events if e["type"] == "chart_block"] == [
        {"type": "chart_block", "symbol": "AAPL", "timeRange": "1D"}
    ]

    # hallucinated marker dropped, surrounding text kept
    assert "nope" not in text
    assert "The ghost card  is not real." in text

    # unterminated bracket survives the final flush
    assert "Trailing bracket [see note\n\n**Related Coverage:**" in text

    # formatter applied to prose
    assert "Key drivers:\n\n- Services revenue grew 14%\n- iPhone units were flat\n\nShares" in text

    assert full.startswith(RICH_TEXT)
    assert full.endswith("[VIEW_ARTICLE:a2]\n")


def test_block_order_follows_stream():
    events, _ = _run(RICH_MANIFEST, [RICH_TEXT])
    kinds = [e["type"] for e in _merged(events) if e["type"] != "content"]
    assert kinds == [
        "chart_block",
        "horizontal_rule",  # after inline a1
        "image_block",
        "event_block",
        "horizontal_rule",  # before injected trailer
    ]


def test_chart_image_event_blocks_and_duplicates():
    manifest = [
        ManifestEntry(kind=MarkerKind.IMAGE, id="img-1"),
        ManifestEntry(kind=MarkerKind.EVENT, id="ev-1"),
    ]
    text = (
        "Look [VIEW_CHART:AAPL:1D] and [IMAGE_CARD:img-1] and [EVENT_CARD:ev-1]. "
        "Again [VIEW_CHART:AAPL:1D] and [IMAGE_CARD:zzz]."
    )
    events, _ = _run(manifest, [text])
    blocks = [e for e in events if e["type"] != "content"]
    assert blocks == [
        {"type": "chart_block", "symbol": "AAPL", "timeRange": "1D"},
        {"type": "image_block", "cardId": "img-1"},
        {"type": "event_block", "cardId": "ev-1"},
    ]
    assert _content(events) == "Look  and  and . Again  and ."


def test_grouped_section_suppresses_separators():
    manifest = [_article("a1"), _article("a2")]
    text = "Summary here.\n\n**Related Coverage:**\n\n[VIEW_ARTICLE:a1]\n[VIEW_ARTICLE:a2]\n"
    events, _ = _run(manifest, [text])
    assert HR not in events
    assert _content(events).count("[VIEW_ARTICLE:") == 2


def test_grouped_section_heading_split_across_chunks():
    manifest = [_article("a1")]
    events, _ = _run(manifest, ["Summary.\n\n**Related Cov", "erage:**\n\n[VIEW_ARTICLE:a1]\n"])
    assert HR not in events


def test_article_blocks_when_not_inlined():
    manifest = [_article("x1"), _article("x2", day=1)]
    events, _ = _run(manifest, ["See [VIEW_ARTICLE:x1] now."], inline_article_markers=False)
    assert events == [
        {"type": "content", "content": "See "},
        {"type": "article_block", "cardId": "x1", "showSourceLabel": True},
        HR,
        {"type": "content", "content": " now."},
        HR,
        {"type": "content", "content": "\n\n**Related Coverage:**\n\n"},
        {"type": "article_block", "cardId": "x2", "showSourceLabel": True},
    ]


def test_finalize_twice_injects_once():
    sink = BufferedSink()
    processor = StreamProcessor([_article("x1")], sink)
    processor.feed("No citations here.")
    first = processor.finalize()
    emitted = len(sink.events)
    second = processor.finalize()
    assert second == first
    assert len(sink.events) == emitted
    assert processor.missing_entries() == []


def test_short_text_waits_for_newline_or_size():
    sink = BufferedSink()
    processor = StreamProcessor([], sink)
    processor.feed("short")
    assert sink.events == []
    processor.feed("\n")
    assert sink.drain() == [{"type": "content", "content": "short"}]
    processor.feed("x" * 60)
    assert sink.drain() == [{"type": "content", "content": "\n" + "x" * 60}]


def test_dangling_marker_prefix_is_held():
    sink = BufferedSink()
    processor = StreamProcessor([], sink)
    processor.feed("Price action [VIEW_CH")
    assert sink.events == [{"type": "content", "content": "Price action "}]
    assert processor.buffer == "[VIEW_CH"


def test_custom_coverage_title():
    events, full = _run([_article("x1")], ["Done."], coverage_title="More Reading")
    assert {"type": "content", "content": "\n\n**More Reading:**\n\n"} in events
    assert "**More Reading:**" in full


def test_discussion_score():
    assert discussion_score("Apple expands buyback program", "the buyback program grew") == pytest.approx(0.5)
    assert discussion_score("Q3", "anything") == 0.0
    assert discussion_score("", "anything") == 0.0
