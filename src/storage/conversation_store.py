"""
Двухуровневое хранилище сессий и сообщений (cache-aside)

Запись идет сначала в долговременный уровень (SQLite), затем в горячий
(Redis). Чтение идет сначала из горячего уровня; промах читается из
долговременного уровня и записывается обратно в кэш. Сбои инфраструктуры
не выходят за пределы хранилища: операции деградируют, но не падают.
"""
import time
import uuid
from typing import Dict, List, Optional, Any

from utils.logger import app_logger
from src.config import Settings
from .models import (
    Message,
    SessionOptions,
    SessionSummary,
    VALID_ROLES,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from .hot_tier import HotTier
from .durable_tier import DurableTier

DEFAULT_MESSAGES_LIMIT = 1000
DEFAULT_SESSIONS_LIMIT = 200


def _recency_score(summary: SessionSummary) -> float:
    moment = summary.updated_at or summary.created_at
    return moment.timestamp() * 1000 if moment else time.time() * 1000


class ConversationStore:
    """
    Хранилище переписок поверх горячего и долговременного уровней

    Оба уровня передаются явно и проверяются флагом available при каждом
    вызове. Конкурентные записи в одну сессию не сериализуются: кэшированный
    счетчик сообщений и время активности могут гоняться между писателями.
    """

    def __init__(self, hot: HotTier, durable: DurableTier):
        """
        Инициализация хранилища

        Args:
            hot: Горячий уровень (Redis)
            durable: Долговременный уровень (SQLite)
        """
        self.hot = hot
        self.durable = durable

        app_logger.info(
            f"ConversationStore инициализирован (redis: {'да' if hot.available else 'нет'}, "
            f"sqlite: {'да' if durable.available else 'нет'})"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConversationStore":
        hot = HotTier(
            url=settings.redis_url,
            ttl_seconds=settings.session_ttl_seconds,
            max_messages=settings.max_messages_redis,
            timeout_seconds=settings.redis_timeout_seconds,
        )
        durable = DurableTier(settings.database_path)
        return cls(hot, durable)

    # Сессии

    async def create_session(self,
                             session_id: Optional[str] = None,
                             options: Optional[SessionOptions] = None) -> str:
        """
        Создает сессию (идемпотентно для переданного ID)

        Args:
            session_id: ID сессии (генерируется если не указан)
            options: Название и время создания

        Returns:
            ID сессии. Без доступных уровней возвращается "летучий" ID
        """
        options = options or SessionOptions()
        sid = session_id or str(uuid.uuid4())
        created_at = parse_timestamp(options.created_at) or utcnow()
        summary = SessionSummary(id=sid, title=options.title, created_at=created_at,
                                 updated_at=created_at, message_count=0)
        persisted = False

        if self.durable.available:
            try:
                created = await self.durable.create_session(sid, options.title, format_timestamp(created_at))
                if not created:
                    summary = await self.durable.fetch_session(sid) or summary
                persisted = True
            except Exception as e:
                app_logger.warning(f"createSession: запись сессии {sid} в SQLite не удалась: {e}")

        cached = False
        if self.hot.available:
            try:
                if not await self.hot.get_meta(sid):
                    await self.hot.set_meta(sid, summary.to_cache_hash())
                    # Существующая сессия не поднимается в списке без новой активности
                    await self.hot.touch_recency(sid, _recency_score(summary))
                else:
                    await self.hot.touch(sid)
                self.hot.report_success()
                cached = True
            except Exception as e:
                self.hot.report_failure("createSession", e)

        if persisted:
            app_logger.info(f"createSession: сессия {sid} сохранена в SQLite")
        elif cached:
            app_logger.info(f"createSession: сессия {sid} создана только в Redis")
        else:
            app_logger.info(f"createSession: летучая сессия {sid} (хранилища недоступны)")
        return sid

    async def get_session_meta(self, session_id: str) -> Optional[SessionSummary]:
        """
        Метаданные сессии: сначала кэш, затем SQLite с записью обратно в кэш

        Returns:
            SessionSummary или None если сессия неизвестна
        """
        if self.hot.available:
            try:
                meta = await self.hot.get_meta(session_id)
                if meta:
                    await self.hot.touch(session_id)
                    self.hot.report_success()
                    return SessionSummary.from_cache_hash(meta, session_id)
            except Exception as e:
                self.hot.report_failure("getSessionMeta", e)

        if not self.durable.available:
            return None

        try:
            summary = await self.durable.fetch_session(session_id)
        except Exception as e:
            app_logger.warning(f"getSessionMeta: чтение {session_id} из SQLite не удалось: {e}")
            return None

        if summary:
            await self._write_back_meta(summary)
        return summary

    async def list_sessions(self, limit: int = DEFAULT_SESSIONS_LIMIT) -> List[SessionSummary]:
        """
        Список сессий, последние активные первыми

        Args:
            limit: Максимальное количество сессий

        Returns:
            Список SessionSummary
        """
        if limit <= 0:
            return []

        ids: List[str] = []
        if self.hot.available:
            try:
                ids = await self.hot.recent_session_ids(limit)
                self.hot.report_success()
            except Exception as e:
                self.hot.report_failure("listSessions", e)
                ids = []

        if ids:
            sessions = []
            for sid in ids:
                # Метаданные с истекшим TTL добираются из SQLite
                summary = await self.get_session_meta(sid)
                if summary:
                    sessions.append(summary)
            app_logger.debug(f"listSessions: Redis индекс активности ({len(sessions)} сессий)")
            return sessions

        if not self.durable.available:
            app_logger.debug("listSessions: нет доступного хранилища, возвращаем пустой список")
            return []

        try:
            sessions = await self.durable.list_sessions(limit)
        except Exception as e:
            app_logger.warning(f"listSessions: чтение из SQLite не удалось: {e}")
            return []

        await self._rebuild_recency(sessions)
        app_logger.info(f"listSessions: получено из SQLite ({len(sessions)} сессий)")
        return sessions

    async def delete_session(self, session_id: str):
        """
        Удаляет сессию со всеми сообщениями из обоих уровней

        Повторное удаление несуществующей сессии не является ошибкой.
        Удаление не атомарно между уровнями.
        """
        if self.durable.available:
            try:
                deleted = await self.durable.delete_session(session_id)
                app_logger.info(f"deleteSession: {session_id} удалена из SQLite ({deleted} сообщений)")
            except Exception as e:
                app_logger.warning(f"deleteSession: удаление {session_id} из SQLite не удалось: {e}")

        if self.hot.available:
            try:
                await self.hot.delete_session(session_id)
                self.hot.report_success()
            except Exception as e:
                self.hot.report_failure("deleteSession", e)

    # Сообщения

    async def append_message(self,
                             session_id: str,
                             role: str,
                             text: str,
                             timestamp: Any = None) -> Message:
        """
        Добавляет сообщение в сессию

        Сначала SQLite, затем Redis. Если SQLite недоступен, сообщение
        остается только в кэше (гарантия сохранности понижается), но
        вызывающий все равно получает сообщение.

        Args:
            session_id: ID сессии (создается неявно если не существует)
            role: 'user', 'assistant' или 'system'
            text: Текст сообщения
            timestamp: Время сообщения (по умолчанию текущее)

        Returns:
            Созданное сообщение
        """
        if role not in VALID_ROLES:
            raise ValueError(f"Недопустимая роль сообщения: {role}")

        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            text=str(text or ""),
            timestamp=parse_timestamp(timestamp) or utcnow(),
        )

        persisted = False
        if self.durable.available:
            try:
                await self.durable.insert_message(message)
                persisted = True
            except Exception as e:
                app_logger.warning(f"appendMessage: запись в SQLite для {session_id} не удалась (продолжаем): {e}")

        if self.hot.available:
            try:
                await self.hot.push_message(session_id, message.to_dict())
                meta = await self.hot.get_meta(session_id)
                if meta:
                    previous = parse_timestamp(meta.get("updatedAt"))
                    updated_at = max(previous, message.timestamp) if previous else message.timestamp
                    await self.hot.increment_count(session_id, format_timestamp(updated_at))
                else:
                    summary = await self._read_durable_summary(session_id) if persisted else None
                    if summary is None:
                        summary = SessionSummary(id=session_id, created_at=message.timestamp,
                                                 updated_at=message.timestamp, message_count=1)
                    await self.hot.set_meta(session_id, summary.to_cache_hash())
                await self.hot.touch_recency(session_id)
                self.hot.report_success()
            except Exception as e:
                self.hot.report_failure("appendMessage", e)

        app_logger.debug(f"appendMessage: {message.role} сообщение {message.id} в сессии {session_id} "
                         f"(sqlite: {'да' if persisted else 'нет'})")
        return message

    async def get_messages(self, session_id: str, limit: int = DEFAULT_MESSAGES_LIMIT) -> List[Message]:
        """
        Сообщения сессии в хронологическом порядке (последние limit штук)

        Горячий уровень хранит только окно последних сообщений. Если окно
        не покрывает запрос, читаем SQLite и перезаписываем окно.

        Args:
            session_id: ID сессии
            limit: Максимальное количество сообщений

        Returns:
            Список сообщений (пустой для сессии без сообщений)
        """
        if limit <= 0:
            return []

        cached: Optional[List[Message]] = None
        if self.hot.available:
            try:
                if await self.hot.has_messages(session_id):
                    items = await self.hot.get_messages(session_id)
                    meta = await self.hot.get_meta(session_id)
                    await self.hot.touch(session_id)
                    self.hot.report_success()
                    cached = [Message.from_dict(item, session_id) for item in items]
                    # Без метаданных полнота окна неизвестна: читаем SQLite
                    covered = bool(meta) and len(cached) >= min(limit, int(meta.get("msgCount") or 0))
                    if covered or not self.durable.available:
                        app_logger.debug(f"getMessages: HIT Redis для {session_id} ({len(cached)})")
                        return cached[-limit:]
            except Exception as e:
                self.hot.report_failure("getMessages", e)

        if not self.durable.available:
            return cached[-limit:] if cached else []

        try:
            rows = await self.durable.fetch_messages(session_id, max(limit, self.hot.max_messages))
        except Exception as e:
            app_logger.warning(f"getMessages: чтение {session_id} из SQLite не удалось: {e}")
            return cached[-limit:] if cached else []

        if rows:
            await self._write_back_messages(session_id, rows)
        app_logger.debug(f"getMessages: получено из SQLite для {session_id} ({len(rows)})")
        return rows[-limit:]

    # Запись обратно в кэш после чтения из SQLite

    async def _read_durable_summary(self, session_id: str) -> Optional[SessionSummary]:
        try:
            return await self.durable.fetch_session(session_id)
        except Exception as e:
            app_logger.warning(f"Чтение метаданных {session_id} из SQLite не удалось: {e}")
            return None

    async def _write_back_messages(self, session_id: str, rows: List[Message]):
        """Заполняет окно сообщений и метаданные в Redis; сбой не влияет на чтение"""
        if not self.hot.available:
            return
        summary = None
        try:
            await self.hot.replace_messages(session_id, [row.to_dict() for row in rows])
            if not await self.hot.get_meta(session_id):
                summary = await self._read_durable_summary(session_id)
            else:
                # TTL метаданных продлевается вместе со списком
                await self.hot.touch(session_id)
            self.hot.report_success()
        except Exception as e:
            self.hot.report_failure("getMessages write-back", e)
            return
        if summary:
            await self._write_back_meta(summary)

    async def _write_back_meta(self, summary: SessionSummary):
        if not self.hot.available:
            return
        try:
            await self.hot.set_meta(summary.id, summary.to_cache_hash())
            await self.hot.touch_recency(summary.id, _recency_score(summary))
            self.hot.report_success()
        except Exception as e:
            self.hot.report_failure("meta write-back", e)

    async def _rebuild_recency(self, sessions: List[SessionSummary]):
        """Восстанавливает индекс активности и метаданные по данным SQLite"""
        if not self.hot.available or not sessions:
            return
        try:
            for summary in sessions:
                if not await self.hot.get_meta(summary.id):
                    await self.hot.set_meta(summary.id, summary.to_cache_hash())
            await self.hot.rebuild_recency({s.id: _recency_score(s) for s in sessions})
            self.hot.report_success()
        except Exception as e:
            self.hot.report_failure("listSessions write-back", e)

    # Состояние

    async def status(self) -> Dict[str, Dict[str, Any]]:
        """
        Доступность уровней хранилища для health check

        Returns:
            {"redis": {...}, "sqlite": {...}}
        """
        report = {
            "redis": {"configured": self.hot.available, "ok": False},
            "sqlite": {"configured": self.durable.available, "ok": False},
        }
        if self.hot.available:
            try:
                report["redis"]["ok"] = await self.hot.ping()
            except Exception as e:
                report["redis"]["error"] = str(e)
        if self.durable.available:
            try:
                report["sqlite"]["ok"] = await self.durable.ping()
            except Exception as e:
                report["sqlite"]["error"] = str(e)
        return report
