"""
Шлюз векторного поиска фрагментов для ответа
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

import aiohttp
import openai
from utils.logger import app_logger
from src.config import Settings
from .errors import RetrievalError


@dataclass
class Passage:
    """Фрагмент текста с источником"""
    score: float
    text: str
    title: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def source_key(self) -> str:
        """Идентичность источника: URL, иначе заголовок"""
        return (self.source_url or self.title or "").strip()


class RetrievalGateway:
    """
    Контракт поиска: search(query_text, top_k) -> фрагменты по убыванию score

    Может вернуть меньше top_k результатов. Пустой индекс - пустой список.
    """

    async def search(self, query_text: str, top_k: int) -> List[Passage]:
        raise NotImplementedError


class QdrantRetrievalGateway(RetrievalGateway):
    """
    Поиск в коллекции Qdrant по эмбеддингу запроса из OpenAI
    """

    def __init__(self,
                 qdrant_url: str = "http://localhost:6333",
                 collection: str = "articles",
                 qdrant_api_key: str = "",
                 openai_api_key: str = "",
                 openai_base_url: Optional[str] = None,
                 embedding_model: str = "text-embedding-3-small",
                 timeout_seconds: float = 30):
        """
        Инициализация шлюза поиска

        Args:
            qdrant_url: Адрес REST API Qdrant
            collection: Имя коллекции с фрагментами
            qdrant_api_key: Ключ Qdrant (опционально)
            openai_api_key: Ключ OpenAI для эмбеддингов
            openai_base_url: Альтернативный адрес OpenAI API
            embedding_model: Модель эмбеддингов
            timeout_seconds: Таймаут запроса к Qdrant
        """
        self.qdrant_url = qdrant_url.rstrip("/")
        self.collection = collection
        self.qdrant_api_key = qdrant_api_key
        self.embedding_model = embedding_model
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.client = openai.AsyncOpenAI(
            api_key=openai_api_key or "missing",
            base_url=openai_base_url
        )

        app_logger.info(f"QdrantRetrievalGateway инициализирован (коллекция {collection})")

    @classmethod
    def from_settings(cls, settings: Settings) -> "QdrantRetrievalGateway":
        return cls(
            qdrant_url=settings.qdrant_url,
            collection=settings.qdrant_collection,
            qdrant_api_key=settings.qdrant_api_key,
            openai_api_key=settings.openai_api_key,
            openai_base_url=settings.openai_base_url,
            embedding_model=settings.embedding_model,
        )

    async def _embed(self, text: str) -> List[float]:
        try:
            response = await self.client.embeddings.create(
                model=self.embedding_model,
                input=text.replace("\n", " ")
            )
        except Exception as e:
            raise RetrievalError(f"Ошибка получения эмбеддинга: {e}") from e
        return response.data[0].embedding

    async def _post_search(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Выполняет запрос поиска к Qdrant

        Returns:
            Ответ Qdrant или None, если коллекции нет (пустой индекс)
        """
        url = f"{self.qdrant_url}/collections/{self.collection}/points/search"
        headers = {'Content-Type': 'application/json'}
        if self.qdrant_api_key:
            headers['api-key'] = self.qdrant_api_key

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, headers=headers, json=body) as response:
                    if response.status == 404:
                        app_logger.warning(f"Коллекция {self.collection} не найдена, индекс пуст")
                        return None
                    if response.status != 200:
                        error_text = await response.text()
                        raise RetrievalError(f"Ошибка Qdrant API {response.status}: {error_text}")
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RetrievalError(f"Ошибка запроса к Qdrant: {e}") from e

    @staticmethod
    def _parse_hits(data: Optional[Dict[str, Any]]) -> List[Passage]:
        passages = []
        for hit in (data or {}).get("result") or []:
            payload = hit.get("payload") or {}
            passages.append(Passage(
                score=float(hit.get("score") or 0.0),
                text=str(payload.get("text") or ""),
                title=payload.get("title"),
                source_url=payload.get("url"),
            ))
        passages.sort(key=lambda p: p.score, reverse=True)
        return passages

    async def search(self, query_text: str, top_k: int) -> List[Passage]:
        """
        Ищет фрагменты, релевантные запросу

        Args:
            query_text: Текст запроса
            top_k: Максимальное количество фрагментов

        Returns:
            Фрагменты по убыванию релевантности
        """
        if top_k <= 0:
            return []
        vector = await self._embed(query_text)
        data = await self._post_search({"vector": vector, "limit": top_k, "with_payload": True})
        passages = self._parse_hits(data)[:top_k]
        app_logger.info(f"Найдено {len(passages)} фрагментов для запроса: {query_text[:50]}...")
        return passages
