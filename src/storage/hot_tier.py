"""
Горячий уровень хранилища переписок на Redis

Хранит для каждой сессии ограниченный список последних сообщений и hash
с метаданными, а также общий sorted set сессий по времени активности.
Все ключи живут с TTL, который продлевается при каждом чтении и записи.
"""
import json
import time
from typing import Dict, List, Optional, Any

import redis.asyncio as aioredis
from utils.logger import app_logger

SESSIONS_ZSET = "sessions:list"


def messages_key(session_id: str) -> str:
    return f"session:messages:{session_id}"


def meta_key(session_id: str) -> str:
    return f"session:meta:{session_id}"


class HotTier:
    """
    Обертка над Redis клиентом с флагом доступности

    Методы не перехватывают ошибки Redis: решение о деградации принимает
    ConversationStore. Для логирования сбоев используется report_failure,
    который пишет в лог один раз на каждый период недоступности.
    """

    def __init__(self,
                 url: str = "",
                 ttl_seconds: int = 86400,
                 max_messages: int = 500,
                 timeout_seconds: float = 5.0,
                 client: Optional[Any] = None):
        """
        Инициализация горячего уровня

        Args:
            url: Адрес Redis (пустая строка - уровень не настроен)
            ttl_seconds: Скользящее время жизни ключей
            max_messages: Емкость списка сообщений одной сессии
            timeout_seconds: Таймаут подключения и ответа Redis
            client: Готовый асинхронный клиент (используется в тестах)
        """
        self.url = url
        self.ttl = ttl_seconds
        self.max_messages = max_messages
        self.timeout = timeout_seconds
        self._client = client
        self._degraded = False

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.url)

    @property
    def client(self):
        """Клиент создается лениво при первом обращении"""
        if self._client is None:
            # Зависший Redis считается недоступным по истечении таймаута
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.timeout,
                socket_timeout=self.timeout,
            )
            app_logger.info(f"Redis клиент создан для {self.url}")
        return self._client

    def report_failure(self, operation: str, error: Exception):
        if not self._degraded:
            self._degraded = True
            app_logger.warning(f"Горячий уровень недоступен ({operation}): {error}. "
                               f"Работаем без кэша до восстановления")

    def report_success(self):
        if self._degraded:
            self._degraded = False
            app_logger.info("Горячий уровень снова доступен")

    # Сообщения

    async def has_messages(self, session_id: str) -> bool:
        return bool(await self.client.exists(messages_key(session_id)))

    async def get_messages(self, session_id: str) -> List[Dict[str, Any]]:
        items = await self.client.lrange(messages_key(session_id), 0, -1)
        return [json.loads(item) for item in items]

    async def push_message(self, session_id: str, message: Dict[str, Any]):
        """Добавляет сообщение в хвост списка и обрезает список до емкости"""
        key = messages_key(session_id)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.rpush(key, json.dumps(message, ensure_ascii=False))
            pipe.ltrim(key, -self.max_messages, -1)
            pipe.expire(key, self.ttl)
            await pipe.execute()

    async def replace_messages(self, session_id: str, messages: List[Dict[str, Any]]):
        """Заменяет список сообщений сессии (восстановление из долговременного уровня)"""
        key = messages_key(session_id)
        window = messages[-self.max_messages:]
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            if window:
                pipe.rpush(key, *[json.dumps(m, ensure_ascii=False) for m in window])
                pipe.expire(key, self.ttl)
            await pipe.execute()

    # Метаданные

    async def get_meta(self, session_id: str) -> Dict[str, str]:
        return await self.client.hgetall(meta_key(session_id))

    async def set_meta(self, session_id: str, mapping: Dict[str, str]):
        key = meta_key(session_id)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.ttl)
            await pipe.execute()

    async def increment_count(self, session_id: str, updated_at: str):
        """
        Увеличивает счетчик сообщений и обновляет время активности

        Чтение-инкремент-запись не сериализуется между конкурентными
        писателями одной сессии.
        """
        key = meta_key(session_id)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.hincrby(key, "msgCount", 1)
            pipe.hset(key, "updatedAt", updated_at)
            pipe.expire(key, self.ttl)
            await pipe.execute()

    async def touch(self, session_id: str):
        """Продлевает TTL ключей сессии"""
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.expire(messages_key(session_id), self.ttl)
            pipe.expire(meta_key(session_id), self.ttl)
            await pipe.execute()

    # Индекс активности

    async def touch_recency(self, session_id: str, score: Optional[float] = None):
        score = score if score is not None else time.time() * 1000
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zadd(SESSIONS_ZSET, {session_id: score})
            pipe.expire(SESSIONS_ZSET, self.ttl)
            await pipe.execute()

    async def recent_session_ids(self, limit: int) -> List[str]:
        if limit <= 0:
            return []
        return await self.client.zrevrange(SESSIONS_ZSET, 0, limit - 1)

    async def rebuild_recency(self, scores: Dict[str, float]):
        if not scores:
            return
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zadd(SESSIONS_ZSET, scores)
            pipe.expire(SESSIONS_ZSET, self.ttl)
            await pipe.execute()

    async def delete_session(self, session_id: str):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(messages_key(session_id))
            pipe.delete(meta_key(session_id))
            pipe.zrem(SESSIONS_ZSET, session_id)
            await pipe.execute()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
