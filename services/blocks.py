"""Output blocks and their client event encoding."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from services.markers import Marker, MarkerKind


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_event(self) -> Dict[str, Any]:
        return {"type": "content", "content": self.text}


@dataclass(frozen=True)
class ChartBlock:
    symbol: str
    time_range: str

    def to_event(self) -> Dict[str, Any]:
        return {"type": "chart_block", "symbol": self.symbol, "timeRange": self.time_range}


@dataclass(frozen=True)
class ArticleBlock:
    card_id: str

    def to_event(self) -> Dict[str, Any]:
        return {"type": "article_block", "cardId": self.card_id, "showSourceLabel": True}


@dataclass(frozen=True)
class ImageBlock:
    card_id: str

    def to_event(self) -> Dict[str, Any]:
        return {"type": "image_block", "cardId": self.card_id}


@dataclass(frozen=True)
class EventBlock:
    card_id: str

    def to_event(self) -> Dict[str, Any]:
        return {"type": "event_block", "cardId": self.card_id}


@dataclass(frozen=True)
class SeparatorBlock:
    def to_event(self) -> Dict[str, Any]:
        return {"type": "horizontal_rule"}


Block = Union[TextBlock, ChartBlock, ArticleBlock, ImageBlock, EventBlock, SeparatorBlock]


def block_for_marker(marker: Marker) -> Block:
    if marker.kind is MarkerKind.CHART:
        return ChartBlock(symbol=marker.symbol, time_range=marker.time_range)
    if marker.kind is MarkerKind.ARTICLE:
        return ArticleBlock(card_id=marker.card_id)
    if marker.kind is MarkerKind.IMAGE:
        return ImageBlock(card_id=marker.card_id)
    if marker.kind is MarkerKind.EVENT:
        return EventBlock(card_id=marker.card_id)
    raise ValueError(f"No block for marker kind {marker.kind!r}")


def done_event(**extra: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "done"}
    event.update({k: v for k, v in extra.items() if v is not None})
    return event


def error_event(message: str, details: Optional[str] = None) -> Dict[str, Any]:
    event = {"type": "error", "error": message}
    if details:
        event["details"] = details
    return event
