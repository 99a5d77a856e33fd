"""
FastAPI приложение: потоковый чат (SSE) и управление сессиями
"""
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict

from utils.logger import app_logger
from src.config import Settings
from src.storage import ConversationStore, SessionOptions
from src.rag import (
    AnswerOrchestrator,
    ChatTurn,
    InvalidQuestionError,
    QdrantRetrievalGateway,
    build_generation_gateway,
)

# Инициализация компонентов
settings = Settings.from_env()
conversation_store = ConversationStore.from_settings(settings)
orchestrator = AnswerOrchestrator.from_settings(
    settings,
    store=conversation_store,
    retrieval=QdrantRetrievalGateway.from_settings(settings),
    generation=build_generation_gateway(settings),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await conversation_store.hot.close()
    app_logger.info("Соединение с Redis закрыто")


# Создание FastAPI приложения
app = FastAPI(
    title="Passage Chat API",
    description="API чата с ответами по найденным фрагментам и историей сессий",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Операции проверки здоровья системы",
        },
        {
            "name": "chat",
            "description": "Потоковые ответы на вопросы",
        },
        {
            "name": "sessions",
            "description": "Управление сессиями и историей сообщений",
        },
    ]
)

# Настройка CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS", "DELETE", "PUT", "PATCH"],
    allow_headers=["Content-Type"],
)


class ChatRequest(BaseModel):
    """Модель запроса чата"""
    # Тип сообщения проверяется оркестратором, чтобы вернуть 400, а не 422
    message: Any = None
    sessionId: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "message": "Where does the sun rise?",
            "sessionId": None
        }
    })


class CreateSessionRequest(BaseModel):
    """Модель запроса на создание сессии"""
    title: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"title": "Astronomy questions"}
    })


def _session_payload(summary) -> dict:
    payload = summary.to_dict()
    if not payload["title"]:
        created = summary.created_at.strftime("%Y-%m-%d %H:%M") if summary.created_at else ""
        payload["title"] = f"Chat {created}".strip()
    return payload


@app.get("/", tags=["health"])
async def root():
    """Корневая страница API"""
    return {
        "message": "Passage Chat API",
        "status": "active",
        "version": "1.0.0",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """
    Проверка здоровья сервиса

    Недоступность хранилищ не делает сервис нерабочим, а переводит его
    в режим деградации.
    """
    storage = await conversation_store.status()
    degraded = any(tier["configured"] and not tier["ok"] for tier in storage.values())
    return {
        "status": "degraded" if degraded else "healthy",
        "storage": storage,
        "generation": "stub" if settings.use_llm_stub else "openai",
    }


async def _event_source(turn: ChatTurn):
    events = orchestrator.run(turn)
    try:
        async for event in events:
            yield event.to_sse()
    finally:
        await events.aclose()


@app.post("/chat", tags=["chat"])
async def chat_endpoint(request: ChatRequest):
    """
    Потоковый ответ на вопрос (server-sent events)

    События: session {sessionId}, затем message {delta} для каждого
    фрагмента, затем done {sessionId, answer, sources} или error {error}.
    """
    try:
        turn = orchestrator.prepare(request.message, request.sessionId)
    except InvalidQuestionError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    app_logger.info(f"API запрос чата (сессия {turn.session_id or 'новая'}): {turn.question[:100]}...")
    return StreamingResponse(
        _event_source(turn),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
        },
    )


@app.get("/sessions", tags=["sessions"])
async def list_sessions():
    """Список сессий, последние активные первыми"""
    try:
        sessions = await conversation_store.list_sessions()
        return {"result": [_session_payload(s) for s in sessions]}
    except Exception as e:
        app_logger.error(f"Ошибка получения списка сессий: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")


@app.post("/sessions", tags=["sessions"], status_code=201)
async def create_session(request: Optional[CreateSessionRequest] = None):
    """Создание новой сессии"""
    try:
        title = request.title if request else None
        session_id = await conversation_store.create_session(options=SessionOptions(title=title))
        return {"id": session_id}
    except Exception as e:
        app_logger.error(f"Ошибка создания сессии: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")


@app.delete("/sessions/{session_id}", tags=["sessions"])
async def delete_session(session_id: str):
    """Удаление сессии (повторное удаление не является ошибкой)"""
    try:
        await conversation_store.delete_session(session_id)
        return {"ok": True}
    except Exception as e:
        app_logger.error(f"Ошибка удаления сессии {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")


@app.get("/sessions/{session_id}/messages", tags=["sessions"])
async def get_session_messages(session_id: str, limit: int = Query(1000, ge=1, le=10000)):
    """Сообщения сессии в хронологическом порядке"""
    try:
        messages = await conversation_store.get_messages(session_id, limit)
        return {"messages": [m.to_dict() for m in messages]}
    except Exception as e:
        app_logger.error(f"Ошибка получения сообщений сессии {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Внутренняя ошибка сервера")
