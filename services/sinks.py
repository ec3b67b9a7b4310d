"""One-way event channels the stream processor writes to."""

import json
from typing import Any, Callable, Dict, List

from services.blocks import Block


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


class EventSink:
    """Transport-agnostic event channel."""

    def send(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def emit(self, block: Block) -> None:
        self.send(block.to_event())


class BufferedSink(EventSink):
    """Collects events until a caller drains them, e.g. between generator yields."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def send(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def drain(self) -> List[Dict[str, Any]]:
        events, self.events = self.events, []
        return events


class CallbackSink(EventSink):
    def __init__(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        self.callback = callback

    def send(self, event: Dict[str, Any]) -> None:
        self.callback(event)
