import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from flask import Flask, Response, jsonify, request, stream_with_context
from flask_httpauth import HTTPBasicAuth
from werkzeug.exceptions import HTTPException, InternalServerError
from werkzeug.security import check_password_hash, generate_password_hash

import models  # noqa: F401  registers tables on Base.metadata
from config import settings
from database import init_db
from prompts import build_chat_messages
from services.blocks import done_event, error_event
from services.conversations import archive_exchange, load_conversation_context, start_conversation
from services.manifest import build_manifest
from services.model_stream import StreamResult, open_model_stream
from services.sinks import BufferedSink, format_sse
from services.stream_processor import StreamProcessor

# -------------------------------------------------------------
#  Setup
# -------------------------------------------------------------
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

app = Flask(__name__)
application = app

# --- AUTHENTICATION ---
auth = HTTPBasicAuth()

USER_DATA = {
    "username": settings.chat_username,
    "password_hash": generate_password_hash(
        settings.chat_password,
        method="pbkdf2:sha256:260000"
    )
}


@auth.verify_password
def verify_password(username, password):
    if username == USER_DATA["username"]:
        if check_password_hash(USER_DATA["password_hash"], password):
            return username
    return None


init_db()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _api_error_response(message: str, status_code: int):
    return jsonify({
        "success": False,
        "error": message or "Unexpected server error."
    }), status_code


def _parse_history(raw: Any) -> List[Dict[str, str]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def chat_event_stream(
    message: str,
    messages: List[Dict[str, str]],
    data_cards: List[Dict[str, Any]],
    conversation_id: Optional[str],
) -> Iterator[str]:
    """SSE frames for one chat answer: metadata, streamed blocks, then done or error."""
    sink = BufferedSink()
    manifest = build_manifest(data_cards)
    processor = StreamProcessor(
        manifest,
        sink,
        min_emit_chars=settings.stream_min_emit_chars,
        coverage_title=settings.related_coverage_title,
        inline_article_markers=settings.inline_article_markers,
    )
    result = StreamResult()

    yield format_sse({
        "type": "metadata",
        "dataCards": data_cards,
        "conversationId": conversation_id,
        "timestamp": _utc_timestamp(),
    })

    try:
        for delta in open_model_stream(messages, result):
            processor.feed(delta)
            for event in sink.drain():
                yield format_sse(event)
        full_response = processor.finalize()
        for event in sink.drain():
            yield format_sse(event)
    except Exception as exc:
        logging.exception("Chat stream failed: %s", exc)
        for event in sink.drain():
            yield format_sse(event)
        yield format_sse(error_event("An error occurred while processing your request", str(exc)))
        return

    yield format_sse(done_event(conversationId=conversation_id))
    logging.info(
        "Chat answer streamed: %d chars, model=%s finish=%s",
        len(full_response),
        result.model,
        result.finish_reason,
    )
    archive_exchange(
        conversation_id,
        message,
        full_response,
        data_cards=data_cards,
        model=result.model,
        finish_reason=result.finish_reason,
    )


# -------------------------------------------------------------
#  ROUTES
# -------------------------------------------------------------
@app.route("/api/health", methods=["GET"])
def api_health():
    return jsonify({
        "success": True,
        "data": {
            "model": settings.chat_model,
            "transport": settings.model_transport,
            "persistence": bool(settings.database_url),
        }
    })


@app.route("/api/chat", methods=["POST"])
@auth.login_required
def chat_api():
    """
    Streaming chat endpoint (text/event-stream):
    - message: user question (required)
    - dataCards: cards gathered for this question; their ids are the only valid markers
    - context: formatted data context for the prompt
    - conversationId / conversationHistory: optional prior turns
    """
    payload = request.get_json(silent=True) or {}
    message = (payload.get("message") or "").strip()
    if not message:
        return _api_error_response("Message is required.", 400)

    data_cards = payload.get("dataCards") or []
    if not isinstance(data_cards, list):
        return _api_error_response("dataCards must be a list.", 400)
    context = payload.get("context") or ""
    if not isinstance(context, str):
        return _api_error_response("context must be a string.", 400)

    conversation_id = payload.get("conversationId")
    history = _parse_history(payload.get("conversationHistory"))
    if not history and conversation_id:
        history = load_conversation_context(conversation_id, max_tokens=settings.history_max_tokens)
    conversation_id = start_conversation(message, conversation_id)

    logging.info(
        "Chat request: %d data cards, %d history messages, conversation=%s",
        len(data_cards),
        len(history),
        conversation_id,
    )
    messages = build_chat_messages(message, history, context)
    return Response(
        stream_with_context(chat_event_stream(message, messages, data_cards, conversation_id)),
        mimetype="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.errorhandler(HTTPException)
def handle_http_error(error):
    if request.path.startswith("/api/"):
        return _api_error_response(error.description or error.name, error.code)
    return error


@app.errorhandler(Exception)
def handle_unexpected_exception(error):
    logging.exception("Unhandled server error: %s", error)
    if request.path.startswith("/api/"):
        return _api_error_response("Chat service failed due to server error.", 500)
    return InternalServerError()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=True)
