import logging
import math
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

import database
from models import Conversation, Message

HISTORY_MESSAGE_LIMIT = 30
TITLE_MAX_CHARS = 50


def estimate_tokens(text: str) -> int:
    # rough approximation: 1 token ~ 4 characters
    return math.ceil(len(text or "") / 4)


def generate_title(first_message: str) -> str:
    message = (first_message or "").strip()
    if len(message) > TITLE_MAX_CHARS:
        return message[:TITLE_MAX_CHARS] + "..."
    return message


def _factory(session_factory):
    return session_factory if session_factory is not None else database.SessionLocal


def start_conversation(first_message: str, conversation_id: Optional[str] = None, session_factory=None) -> Optional[str]:
    """Return an existing conversation id, or create one titled after the first message."""
    factory = _factory(session_factory)
    if factory is None:
        return conversation_id
    try:
        with factory() as session:
            if conversation_id and session.get(Conversation, conversation_id) is not None:
                return conversation_id
            conversation = Conversation(title=generate_title(first_message))
            if conversation_id:
                conversation.id = conversation_id
            session.add(conversation)
            session.commit()
            return conversation.id
    except SQLAlchemyError as exc:
        logging.error("Failed to create conversation: %s", exc)
        return conversation_id


def load_conversation_context(
    conversation_id: Optional[str],
    max_tokens: int = 4000,
    session_factory=None,
) -> List[Dict[str, str]]:
    """Most recent messages of a conversation, oldest first, within a token budget."""
    factory = _factory(session_factory)
    if factory is None or not conversation_id:
        return []
    try:
        with factory() as session:
            rows = (
                session.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.id.desc())
                .limit(HISTORY_MESSAGE_LIMIT)
                .all()
            )
            history = [{"role": row.role, "content": row.content} for row in rows]
    except SQLAlchemyError as exc:
        logging.error("Failed to load conversation %s: %s", conversation_id, exc)
        return []

    # rows are newest first; keep the newest that fit
    pruned: List[Dict[str, str]] = []
    total = 0
    for item in history:
        tokens = estimate_tokens(item["content"])
        if total + tokens > max_tokens:
            break
        pruned.append(item)
        total += tokens
    pruned.reverse()
    return pruned


def archive_exchange(
    conversation_id: Optional[str],
    user_message: str,
    response_text: str,
    data_cards: Optional[List[Dict[str, Any]]] = None,
    model: Optional[str] = None,
    finish_reason: Optional[str] = None,
    session_factory=None,
) -> bool:
    """Persist the user question and the full streamed answer."""
    factory = _factory(session_factory)
    if factory is None or not conversation_id:
        return False
    rows = [
        Message(
            conversation_id=conversation_id,
            role="user",
            content=user_message,
            token_count=estimate_tokens(user_message),
        ),
        Message(
            conversation_id=conversation_id,
            role="assistant",
            content=response_text,
            data_cards=data_cards or None,
            token_count=estimate_tokens(response_text),
            meta={"model": model, "finish_reason": finish_reason},
        ),
    ]
    try:
        with factory() as session:
            session.add_all(rows)
            session.commit()
            return True
    except SQLAlchemyError as exc:
        logging.error("Failed to archive exchange for conversation %s: %s", conversation_id, exc)
        return False
