import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    database_url: str = os.environ.get("DATABASE_URL") or os.environ.get("POSTGRES_DSN") or os.environ.get("POSTGRES_URL")
    openai_api_key: str = os.environ.get("OPENAI_API_KEY")
    openai_base_url: str = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
    chat_model: str = os.environ.get("CHAT_MODEL", "gpt-4o")
    chat_temperature: float = float(os.environ.get("CHAT_TEMPERATURE", "0.7"))
    chat_max_tokens: int = int(os.environ.get("CHAT_MAX_TOKENS", "16000"))
    model_transport: str = os.environ.get("MODEL_TRANSPORT", "sdk").strip().lower()
    model_http_timeout: float = float(os.environ.get("MODEL_HTTP_TIMEOUT", "120"))
    stream_min_emit_chars: int = int(os.environ.get("STREAM_MIN_EMIT_CHARS", "50"))
    related_coverage_title: str = os.environ.get("RELATED_COVERAGE_TITLE", "Related Coverage")
    inline_article_markers: bool = _env_bool("INLINE_ARTICLE_MARKERS", "true")
    history_max_tokens: int = int(os.environ.get("HISTORY_MAX_TOKENS", "4000"))
    chat_username: str = os.environ.get("CHAT_USERNAME", "admin")
    chat_password: str = os.environ.get("CHAT_PASSWORD", "default_password")
    sql_echo: bool = _env_bool("SQL_ECHO", "false")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()


settings = Settings()
