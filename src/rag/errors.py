"""
Ошибки RAG пайплайна, которые доводятся до клиента
"""


class ChatPipelineError(Exception):
    """Базовая ошибка обработки запроса чата"""


class InvalidQuestionError(ChatPipelineError):
    """Пустой или нетекстовый вопрос (ошибка клиента)"""


class RetrievalError(ChatPipelineError):
    """Сбой векторного поиска или сервиса эмбеддингов"""


class GenerationError(ChatPipelineError):
    """Сбой генерации ответа"""
