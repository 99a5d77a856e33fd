"""
Долговременный уровень хранилища переписок на SQLite
"""
import os
import sqlite3
import asyncio
from functools import partial
from typing import List, Optional

from utils.logger import app_logger
from .models import Message, SessionSummary, parse_timestamp, format_timestamp


class DurableTier:
    """
    Хранилище сессий и сообщений в SQLite

    Пустой путь к базе означает, что уровень не настроен (available=False).
    Схема создается лениво при первом обращении, поэтому недоступная база
    при старте процесса не мешает запуску. Блокирующие вызовы sqlite3
    выполняются в пуле потоков, чтобы не блокировать event loop.
    """

    def __init__(self, db_path: str = ""):
        """
        Args:
            db_path: Путь к базе данных SQLite
        """
        self.db_path = db_path
        self._schema_ready = False

    @property
    def available(self) -> bool:
        return bool(self.db_path)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _connect(self) -> sqlite3.Connection:
        if not self._schema_ready:
            self._init_database()
        return sqlite3.connect(self.db_path, timeout=10)

    def _init_database(self):
        """Инициализирует таблицы в SQLite базе данных"""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with sqlite3.connect(self.db_path, timeout=10) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # seq задает порядок добавления внутри сессии
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL, -- 'user', 'assistant', 'system'
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (session_id, id)
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_sessions_created ON chat_sessions(created_at)")

        self._schema_ready = True
        app_logger.info(f"База данных сессий инициализирована: {self.db_path}")

    # Синхронные операции (выполняются в пуле потоков)

    def _create_session(self, session_id: str, title: Optional[str], created_at: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO chat_sessions (id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (session_id, title, created_at, created_at))
            return cursor.rowcount > 0

    def _insert_message(self, message: Message):
        ts = format_timestamp(message.timestamp)
        with self._connect() as conn:
            # Сессия создается неявно при первом сообщении
            conn.execute("""
                INSERT OR IGNORE INTO chat_sessions (id, title, created_at, updated_at)
                VALUES (?, NULL, ?, ?)
            """, (message.session_id, ts, ts))
            conn.execute("""
                INSERT INTO chat_messages (id, session_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (message.id, message.session_id, message.role, message.text, ts))
            conn.execute("""
                UPDATE chat_sessions SET updated_at = MAX(updated_at, ?) WHERE id = ?
            """, (ts, message.session_id))

    def _fetch_messages(self, session_id: str, limit: int) -> List[Message]:
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT id, session_id, role, content, created_at FROM (
                    SELECT seq, id, session_id, role, content, created_at
                    FROM chat_messages
                    WHERE session_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                ) ORDER BY seq ASC
            """, (session_id, limit))
            return [
                Message(id=row[0], session_id=row[1], role=row[2], text=row[3],
                        timestamp=parse_timestamp(row[4]))
                for row in cursor.fetchall()
            ]

    def _row_to_summary(self, row) -> SessionSummary:
        return SessionSummary(
            id=row[0],
            title=row[1],
            created_at=parse_timestamp(row[2]),
            updated_at=parse_timestamp(row[3]),
            message_count=int(row[4] or 0),
        )

    def _fetch_session(self, session_id: str) -> Optional[SessionSummary]:
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT s.id, s.title, s.created_at, s.updated_at,
                       (SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.id)
                FROM chat_sessions s
                WHERE s.id = ?
            """, (session_id,))
            row = cursor.fetchone()
            return self._row_to_summary(row) if row else None

    def _list_sessions(self, limit: int) -> List[SessionSummary]:
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT s.id, s.title, s.created_at, s.updated_at,
                       (SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.id)
                FROM chat_sessions s
                ORDER BY s.created_at DESC, s.rowid DESC
                LIMIT ?
            """, (limit,))
            return [self._row_to_summary(row) for row in cursor.fetchall()]

    def _delete_session(self, session_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM chat_messages WHERE session_id = ?", (session_id,))
            deleted = cursor.rowcount
            conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
            return deleted

    def _ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    # Асинхронный интерфейс

    async def create_session(self, session_id: str, title: Optional[str], created_at: str) -> bool:
        """
        Создает строку сессии, если ее еще нет

        Returns:
            True если сессия создана, False если уже существовала
        """
        return await self._run(self._create_session, session_id, title, created_at)

    async def insert_message(self, message: Message):
        await self._run(self._insert_message, message)

    async def fetch_messages(self, session_id: str, limit: int) -> List[Message]:
        """Последние limit сообщений сессии в порядке добавления"""
        return await self._run(self._fetch_messages, session_id, limit)

    async def fetch_session(self, session_id: str) -> Optional[SessionSummary]:
        return await self._run(self._fetch_session, session_id)

    async def list_sessions(self, limit: int) -> List[SessionSummary]:
        return await self._run(self._list_sessions, limit)

    async def delete_session(self, session_id: str) -> int:
        return await self._run(self._delete_session, session_id)

    async def ping(self) -> bool:
        return await self._run(self._ping)
