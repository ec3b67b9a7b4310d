import codecs
import json
import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from openai import OpenAI

from config import settings


class ModelStreamError(RuntimeError):
    """Raised when the upstream model stream cannot be opened or read."""


@dataclass
class StreamResult:
    finish_reason: Optional[str] = None
    model: Optional[str] = None


def _require_key() -> str:
    if not settings.openai_api_key:
        raise ModelStreamError("OPENAI_API_KEY is missing.")
    return settings.openai_api_key


def _request_body(messages: List[Dict[str, str]], model: Optional[str]) -> Dict[str, Any]:
    return {
        "model": model or settings.chat_model,
        "messages": messages,
        "temperature": settings.chat_temperature,
        "max_tokens": settings.chat_max_tokens,
        "stream": True,
    }


def stream_completion(
    messages: List[Dict[str, str]],
    result: Optional[StreamResult] = None,
    model: Optional[str] = None,
    client: Optional[OpenAI] = None,
) -> Iterator[str]:
    """Yield content deltas from the OpenAI SDK streaming API."""
    result = result if result is not None else StreamResult()
    if client is None:
        client = OpenAI(api_key=_require_key(), base_url=settings.openai_base_url)

    stream = client.chat.completions.create(**_request_body(messages, model))
    for chunk in stream:
        if getattr(chunk, "model", None):
            result.model = chunk.model
        if not chunk.choices:
            continue
        choice = chunk.choices[0]
        if choice.finish_reason:
            result.finish_reason = choice.finish_reason
        content = choice.delta.content if choice.delta else None
        if content:
            yield content


def decode_utf8_chunks(chunks: Iterable[bytes]) -> Iterator[str]:
    """Decode a byte stream whose chunk edges may split multi-byte characters."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    for chunk in chunks:
        if not chunk:
            continue
        text = decoder.decode(chunk)
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


def iter_sse_data(text_chunks: Iterable[str]) -> Iterator[str]:
    """Yield the payload of every ``data:`` line in a server-sent event stream."""
    pending = ""
    for text in text_chunks:
        pending += text
        while "\n" in pending:
            line, pending = pending.split("\n", 1)
            line = line.rstrip("\r")
            if line.startswith("data:"):
                yield line[5:].strip()
    line = pending.rstrip("\r")
    if line.startswith("data:"):
        yield line[5:].strip()


def stream_completion_http(
    messages: List[Dict[str, str]],
    result: Optional[StreamResult] = None,
    model: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Iterator[str]:
    """Yield content deltas from an OpenAI-compatible endpoint over raw HTTP."""
    result = result if result is not None else StreamResult()
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    headers = {"Authorization": f"Bearer {_require_key()}"}
    http = session or requests
    resp = http.post(
        url,
        headers=headers,
        json=_request_body(messages, model),
        stream=True,
        timeout=settings.model_http_timeout,
    )
    try:
        if resp.status_code >= 400:
            raise ModelStreamError(f"Model endpoint returned {resp.status_code}: {resp.text[:300]}")
        for payload in iter_sse_data(decode_utf8_chunks(resp.iter_content(chunk_size=None))):
            if not payload:
                continue
            if payload == "[DONE]":
                break
            try:
                data = json.loads(payload)
            except JSONDecodeError as exc:
                logging.warning("Skipping undecodable stream event: %s; raw: %r", exc, payload[:200])
                continue
            if data.get("model"):
                result.model = data["model"]
            choices = data.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            if choice.get("finish_reason"):
                result.finish_reason = choice["finish_reason"]
            content = (choice.get("delta") or {}).get("content")
            if content:
                yield content
    finally:
        resp.close()


def open_model_stream(messages: List[Dict[str, str]], result: StreamResult) -> Iterator[str]:
    if settings.model_transport == "http":
        return stream_completion_http(messages, result)
    return stream_completion(messages, result)
