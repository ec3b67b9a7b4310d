"""Centralized prompt definitions for the chat service."""

from typing import Dict, List, Optional

# -------------------------------------------------------------
#  SYSTEM PROMPTS
# -------------------------------------------------------------

CARD_MARKER_RULES = """
CARD MARKERS
Place a marker on its own line right after the sentence it supports. Use only ids that
appear in the DATA CONTEXT; never invent one.
- [VIEW_CHART:<SYMBOL>:<RANGE>]  inline price chart, RANGE is one of 1D, 5D, 1M, 3M, 1Y
- [VIEW_ARTICLE:<id>]            news, press release or filing card
- [IMAGE_CARD:<id>]              filing image card
- [EVENT_CARD:<id>]              earnings / FDA / macro event card
Cite each card at most once. Articles you do not cite are listed automatically at the end.
"""

CHAT_SYSTEM_PROMPT = """
You are a financial markets assistant. Answer using only the DATA CONTEXT supplied with
the question. If the context does not contain the answer, say so plainly.

FORMAT
- Short paragraphs, markdown bullets for lists, no tables.
- Bold section labels only when the answer has more than one section.
""" + CARD_MARKER_RULES


def build_chat_messages(
    message: str,
    history: Optional[List[Dict[str, str]]] = None,
    context: str = "",
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": CHAT_SYSTEM_PROMPT.strip()}]
    for item in history or []:
        role = item.get("role")
        content = item.get("content")
        if role in {"user", "assistant"} and content:
            messages.append({"role": role, "content": content})
    if context:
        user_content = f"DATA CONTEXT:\n{context}\n\nQUESTION:\n{message}"
    else:
        user_content = message
    messages.append({"role": "user", "content": user_content})
    return messages
