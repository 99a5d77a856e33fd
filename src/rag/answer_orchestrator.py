"""
Оркестратор ответа: поиск фрагментов, сборка промпта и потоковая генерация

Один запрос чата проходит состояния
STARTED -> USER_APPENDED -> RETRIEVED -> PROMPTED -> STREAMING -> DONE | FAILED
и порождает поток событий session, message*, done | error.
"""
import json
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from utils.logger import app_logger, log_conversation
from src.config import Settings
from src.storage import ConversationStore, SessionOptions
from .errors import InvalidQuestionError
from .prompt_builder import DEFAULT_SYSTEM_PREAMBLE, build_prompt
from .retrieval_gateway import Passage, RetrievalGateway
from .generation_gateway import GenerationGateway, GenerationOptions

NEW_SESSION_TITLE = "New chat"


class TurnState(str, Enum):
    STARTED = "started"
    USER_APPENDED = "user_appended"
    RETRIEVED = "retrieved"
    PROMPTED = "prompted"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (TurnState.DONE, TurnState.FAILED)

_TRANSITIONS = {
    TurnState.STARTED: (TurnState.USER_APPENDED, TurnState.FAILED),
    TurnState.USER_APPENDED: (TurnState.RETRIEVED, TurnState.FAILED),
    TurnState.RETRIEVED: (TurnState.PROMPTED, TurnState.FAILED),
    TurnState.PROMPTED: (TurnState.STREAMING, TurnState.FAILED),
    TurnState.STREAMING: (TurnState.DONE, TurnState.FAILED),
}


@dataclass
class StreamEvent:
    """Событие потока ответа (server-sent events)"""
    event: str
    data: Dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


@dataclass
class ChatTurn:
    """Состояние одного запроса чата"""
    question: str
    session_id: Optional[str] = None
    state: TurnState = TurnState.STARTED
    passages: List[Passage] = field(default_factory=list)
    chunks: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def answer(self) -> str:
        return "".join(self.chunks)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: TurnState):
        if state not in _TRANSITIONS.get(self.state, ()):
            raise RuntimeError(f"Недопустимый переход {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, error: Optional[str] = None, cancelled: bool = False):
        if self.finished:
            return
        self.error = error
        self.cancelled = cancelled
        self.advance(TurnState.FAILED)


async def _aclose(iterator: Any):
    """Закрывает асинхронный итератор, если он это поддерживает"""
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


def validate_question(question: Any) -> str:
    """
    Проверяет вопрос до любых побочных эффектов

    Raises:
        InvalidQuestionError: вопрос пустой или не строка
    """
    if not isinstance(question, str) or not question.strip():
        raise InvalidQuestionError("message (string) is required")
    return question


def dedupe_passages(passages: List[Passage]) -> List[Passage]:
    """
    Убирает повторы по источнику (URL, иначе заголовок)

    Порядок первого появления сохраняется, фрагменты без источника
    отбрасываются.
    """
    seen = set()
    unique = []
    for passage in passages:
        key = passage.source_key
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(passage)
    return unique


def format_sources(passages: List[Passage], max_sources: int) -> List[Dict[str, Optional[str]]]:
    return [{"title": p.title or None, "url": p.source_url or None} for p in passages[:max_sources]]


class AnswerOrchestrator:
    """
    Связывает хранилище, поиск, сборку промпта и генерацию в один запрос

    Общего состояния между запросами нет: все состояние запроса живет в ChatTurn.
    """

    def __init__(self,
                 store: ConversationStore,
                 retrieval: RetrievalGateway,
                 generation: GenerationGateway,
                 top_k: int = 4,
                 max_sources: int = 6,
                 history_turns: int = 8,
                 max_context_chars: int = 5000,
                 generation_options: Optional[GenerationOptions] = None,
                 system_preamble: str = DEFAULT_SYSTEM_PREAMBLE):
        """
        Инициализация оркестратора

        Args:
            store: Хранилище переписок
            retrieval: Шлюз поиска фрагментов
            generation: Шлюз генерации
            top_k: Сколько фрагментов запрашивать у поиска
            max_sources: Сколько источников отдавать клиенту
            history_turns: Сколько последних сообщений включать в промпт
            max_context_chars: Лимит длины промпта
            generation_options: Параметры генерации
            system_preamble: Системная инструкция
        """
        self.store = store
        self.retrieval = retrieval
        self.generation = generation
        self.top_k = top_k
        self.max_sources = max_sources
        self.history_turns = history_turns
        self.max_context_chars = max_context_chars
        self.generation_options = generation_options or GenerationOptions()
        self.system_preamble = system_preamble

        app_logger.info("AnswerOrchestrator инициализирован")

    @classmethod
    def from_settings(cls,
                      settings: Settings,
                      store: ConversationStore,
                      retrieval: RetrievalGateway,
                      generation: GenerationGateway) -> "AnswerOrchestrator":
        return cls(
            store=store,
            retrieval=retrieval,
            generation=generation,
            top_k=settings.top_k,
            max_sources=settings.max_sources,
            history_turns=settings.history_turns,
            max_context_chars=settings.max_context_chars,
            generation_options=GenerationOptions(
                max_output_tokens=settings.max_output_tokens,
                chunk_size=settings.chunk_size,
                delay_ms=settings.chunk_delay_ms,
            ),
        )

    def prepare(self, question: Any, session_id: Optional[str] = None) -> ChatTurn:
        """
        Синхронная проверка входа, до каких-либо записей в хранилище

        Raises:
            InvalidQuestionError: вопрос пустой или не строка
        """
        return ChatTurn(question=validate_question(question), session_id=session_id or None)

    async def answer(self, question: Any, session_id: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        """Проверяет вопрос и возвращает поток событий ответа"""
        turn = self.prepare(question, session_id)
        events = self.run(turn)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def run(self, turn: ChatTurn) -> AsyncIterator[StreamEvent]:
        """
        Выполняет запрос и отдает события в порядке их возникновения

        Если потребитель прекращает итерацию (клиент отключился), запрос
        переходит в FAILED без события ошибки, а частичный ответ не
        сохраняется.
        """
        try:
            if not turn.session_id:
                turn.session_id = await self.store.create_session(options=SessionOptions(title=NEW_SESSION_TITLE))
            yield StreamEvent("session", {"sessionId": turn.session_id})

            await self.store.append_message(turn.session_id, "user", turn.question)
            turn.advance(TurnState.USER_APPENDED)
            log_conversation(turn.session_id, "user_message", turn.question)

            try:
                hits = await self.retrieval.search(turn.question, self.top_k)
                turn.passages = dedupe_passages(hits)
                turn.advance(TurnState.RETRIEVED)

                recent = await self.store.get_messages(turn.session_id, self.history_turns)
                prompt = build_prompt(
                    question=turn.question,
                    recent_messages=recent,
                    passages=turn.passages,
                    system_preamble=self.system_preamble,
                    max_chars=self.max_context_chars,
                    history_turns=self.history_turns,
                )
                turn.advance(TurnState.PROMPTED)

                turn.advance(TurnState.STREAMING)
                chunks = self.generation.stream(prompt, self.generation_options)
                try:
                    async for chunk in chunks:
                        if not chunk:
                            continue
                        turn.chunks.append(chunk)
                        yield StreamEvent("message", {"delta": chunk})
                finally:
                    await _aclose(chunks)
            except Exception as e:
                turn.fail(str(e) or e.__class__.__name__)
                app_logger.error(f"Ошибка генерации ответа для сессии {turn.session_id} "
                                 f"(получено фрагментов: {len(turn.chunks)}): {e}")
                log_conversation(turn.session_id, "stream_error", turn.error)
                yield StreamEvent("error", {"error": turn.error})
                return

            await self.store.append_message(turn.session_id, "assistant", turn.answer)
            turn.advance(TurnState.DONE)
            log_conversation(turn.session_id, "assistant_answer", turn.answer)
            yield StreamEvent("done", {
                "sessionId": turn.session_id,
                "answer": turn.answer,
                "sources": format_sources(turn.passages, self.max_sources),
            })
        except (GeneratorExit, asyncio.CancelledError):
            turn.fail(cancelled=True)
            app_logger.info(f"Клиент отключился, генерация для сессии {turn.session_id} остановлена "
                            f"(частичный ответ не сохранен)")
            raise

