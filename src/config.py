"""
Конфигурация чат-бэкенда

Все значения читаются из переменных окружения (и файла .env) один раз
и передаются компонентам явно, через Settings.
"""
import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Загружаем переменные окружения
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Настройки хранилища, RAG пайплайна и HTTP сервера"""
    # Горячий уровень (Redis)
    redis_url: str = ""
    session_ttl_seconds: int = 86400
    max_messages_redis: int = 500
    redis_timeout_seconds: float = 5.0

    # Долговременный уровень (SQLite). Пустой путь - уровень недоступен
    database_path: str = ""

    # Сборка промпта и выдача источников
    max_context_chars: int = 5000
    top_k: int = 4
    max_sources: int = 6
    history_turns: int = 8

    # Генерация
    max_output_tokens: int = 1024
    chunk_size: int = 120
    chunk_delay_ms: int = 0
    llm_stub_enabled: bool = False
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"

    # Векторный поиск
    qdrant_url: str = "http://localhost:6333"
    qdrant_collection: str = "articles"
    qdrant_api_key: str = ""

    # HTTP
    frontend_origin: str = "http://localhost:5173"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def durable_configured(self) -> bool:
        return bool(self.database_path)

    @property
    def use_llm_stub(self) -> bool:
        """Заглушка генерации включена явно или нет ключа API"""
        return self.llm_stub_enabled or not self.openai_api_key

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Собирает настройки из переменных окружения

        Returns:
            Экземпляр Settings
        """
        return cls(
            redis_url=os.getenv("REDIS_URL", ""),
            session_ttl_seconds=int(os.getenv("SESSION_TTL_SECONDS", "86400")),
            max_messages_redis=int(os.getenv("MAX_MESSAGES_REDIS", "500")),
            redis_timeout_seconds=float(os.getenv("REDIS_TIMEOUT_SECONDS", "5")),
            database_path=os.getenv("DATABASE_PATH", ""),
            max_context_chars=int(os.getenv("RAG_MAX_CONTEXT_CHARS", "5000")),
            top_k=int(os.getenv("RAG_TOPK", "4")),
            max_sources=int(os.getenv("RAG_MAX_SOURCES", "6")),
            history_turns=int(os.getenv("RAG_HISTORY_TURNS", "8")),
            max_output_tokens=int(os.getenv("RAG_MAX_TOKENS", os.getenv("LLM_MAX_OUTPUT_TOKENS", "1024"))),
            chunk_size=int(os.getenv("LLM_CHUNK_SIZE", "120")),
            chunk_delay_ms=int(os.getenv("LLM_CHUNK_DELAY_MS", "0")),
            llm_stub_enabled=_env_bool("LLM_STUB_ENABLED"),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OpenAI_BASE_URL"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            qdrant_url=os.getenv("QDRANT_URL", "http://localhost:6333"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION", "articles"),
            qdrant_api_key=os.getenv("QDRANT_API_KEY", ""),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:5173"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
