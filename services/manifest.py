"""Builds the list of cards a streamed answer is expected to account for.

Input is the ``dataCards`` payload assembled by the query pipeline:
``{"type": "article" | "image" | "event" | "stock", "data": {...}}``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from services.markers import MarkerKind

# Kinds that get appended to the answer when the model never cites them.
INJECTABLE_KINDS = frozenset({MarkerKind.ARTICLE})


@dataclass(frozen=True)
class ManifestEntry:
    kind: MarkerKind
    id: str
    title: str = ""
    recency_key: Optional[datetime] = None
    ticker: Optional[str] = None

    @property
    def key(self) -> Tuple[MarkerKind, str]:
        return (self.kind, self.id)


def _coerce_time(raw_time: Any) -> Optional[datetime]:
    if raw_time is None or raw_time == "":
        return None
    if isinstance(raw_time, datetime):
        return raw_time if raw_time.tzinfo else raw_time.replace(tzinfo=timezone.utc)
    if isinstance(raw_time, str):
        text = raw_time.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    try:
        ts = float(raw_time)
    except (TypeError, ValueError):
        return None
    if ts > 1_000_000_000_000:  # ms -> seconds
        ts = ts / 1000
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _card_id(data: Dict[str, Any]) -> str:
    raw = data.get("id")
    if raw is None:
        return ""
    return str(raw).strip()


def _entry_from_card(card: Dict[str, Any]) -> Optional[ManifestEntry]:
    card_type = (card.get("type") or "").strip().lower()
    data = card.get("data")
    if not isinstance(data, dict):
        return None

    if card_type == "stock":
        symbol = (data.get("ticker") or "").strip().upper()
        time_range = str(data.get("chartTimeframe") or data.get("timeRange") or "").strip()
        if not symbol or not time_range:
            return None
        return ManifestEntry(
            kind=MarkerKind.CHART,
            id=f"{symbol}:{time_range}",
            title=data.get("company") or symbol,
            ticker=symbol,
        )

    kind = {
        "article": MarkerKind.ARTICLE,
        "image": MarkerKind.IMAGE,
        "event": MarkerKind.EVENT,
    }.get(card_type)
    if kind is None:
        return None
    card_id = _card_id(data)
    if not card_id:
        return None
    recency = None
    if kind is MarkerKind.ARTICLE:
        recency = _coerce_time(data.get("published_at") or data.get("date"))
    return ManifestEntry(
        kind=kind,
        id=card_id,
        title=data.get("title") or "",
        recency_key=recency,
        ticker=data.get("ticker"),
    )


def build_manifest(data_cards: Iterable[Dict[str, Any]]) -> List[ManifestEntry]:
    entries: List[ManifestEntry] = []
    seen: Set[Tuple[MarkerKind, str]] = set()
    for card in data_cards or []:
        if not isinstance(card, dict):
            continue
        entry = _entry_from_card(card)
        if entry is None:
            continue
        if entry.key in seen:
            logging.warning("Duplicate %s card %s ignored in manifest.", entry.kind.value, entry.id)
            continue
        seen.add(entry.key)
        entries.append(entry)

    logging.info(
        "Manifest built: %d articles, %d images, %d events, %d charts",
        sum(1 for e in entries if e.kind is MarkerKind.ARTICLE),
        sum(1 for e in entries if e.kind is MarkerKind.IMAGE),
        sum(1 for e in entries if e.kind is MarkerKind.EVENT),
        sum(1 for e in entries if e.kind is MarkerKind.CHART),
    )
    return entries
