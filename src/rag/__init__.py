"""
RAG модуль ответов на вопросы - Retrieval-Augmented Generation

Компоненты:
- build_prompt: Сборка промпта с ограничением длины
- RetrievalGateway: Поиск фрагментов (Qdrant + эмбеддинги OpenAI)
- GenerationGateway: Потоковая генерация (OpenAI или заглушка)
- AnswerOrchestrator: Машина состояний одного запроса чата
"""

from .errors import ChatPipelineError, InvalidQuestionError, RetrievalError, GenerationError
from .prompt_builder import build_prompt
from .retrieval_gateway import Passage, RetrievalGateway, QdrantRetrievalGateway
from .generation_gateway import (
    GenerationOptions,
    GenerationGateway,
    OpenAIGenerationGateway,
    StubGenerationGateway,
    build_generation_gateway,
)
from .answer_orchestrator import AnswerOrchestrator, ChatTurn, StreamEvent, TurnState

__all__ = [
    'ChatPipelineError',
    'InvalidQuestionError',
    'RetrievalError',
    'GenerationError',
    'build_prompt',
    'Passage',
    'RetrievalGateway',
    'QdrantRetrievalGateway',
    'GenerationOptions',
    'GenerationGateway',
    'OpenAIGenerationGateway',
    'StubGenerationGateway',
    'build_generation_gateway',
    'AnswerOrchestrator',
    'ChatTurn',
    'StreamEvent',
    'TurnState'
]
