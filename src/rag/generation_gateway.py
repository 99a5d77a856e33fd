"""
Шлюз генерации ответа: конечная последовательность текстовых фрагментов
"""
import re
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import openai
from utils.logger import app_logger
from src.config import Settings
from .errors import GenerationError


@dataclass
class GenerationOptions:
    """
    Параметры генерации

    chunk_size влияет только на размер фрагментов, но не на итоговый текст.
    """
    max_output_tokens: int = 1024
    chunk_size: int = 120
    temperature: Optional[float] = None
    delay_ms: int = 0


def chunk_string(text: str, size: int) -> List[str]:
    """Режет строку на куски не длиннее size символов"""
    if not text:
        return []
    size = max(1, size)
    return [text[i:i + size] for i in range(0, len(text), size)]


class GenerationGateway:
    """
    Контракт генерации: stream(prompt, options) -> асинхронный итератор фрагментов

    Последовательность конечная, однонаправленная и не перезапускается.
    Прекращение итерации потребителем (aclose) останавливает генерацию.
    """

    def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        raise NotImplementedError


class OpenAIGenerationGateway(GenerationGateway):
    """Потоковая генерация через OpenAI Chat Completions"""

    def __init__(self,
                 api_key: str,
                 base_url: Optional[str] = None,
                 model: str = "gpt-4o-mini"):
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model

        app_logger.info(f"OpenAIGenerationGateway инициализирован (модель {model})")

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        params = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_output_tokens,
            "stream": True,
        }
        if options.temperature is not None:
            params["temperature"] = options.temperature

        try:
            response = await self.client.chat.completions.create(**params)
        except Exception as e:
            raise GenerationError(f"Ошибка OpenAI API: {e}") from e

        try:
            async for event in response:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                for piece in chunk_string(delta or "", options.chunk_size):
                    yield piece
        except openai.OpenAIError as e:
            raise GenerationError(f"Поток OpenAI прерван: {e}") from e
        finally:
            await response.close()


class StubGenerationGateway(GenerationGateway):
    """
    Детерминированная заглушка для локальной разработки

    Возвращает эхо начала промпта, нарезанное на фрагменты.
    """

    @staticmethod
    def stub_response(prompt: str) -> str:
        preview = re.sub(r"\s+", " ", str(prompt)[:300])
        return (f"STUB RESPONSE - echo of prompt (first 300 chars):\n\n{preview}\n\n"
                f"(Set OPENAI_API_KEY to call the real API.)")

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        for piece in chunk_string(self.stub_response(prompt), options.chunk_size):
            if options.delay_ms:
                await asyncio.sleep(options.delay_ms / 1000)
            yield piece


def build_generation_gateway(settings: Settings) -> GenerationGateway:
    """Выбирает реализацию генерации по настройкам"""
    if settings.use_llm_stub:
        app_logger.warning("Генерация работает в режиме заглушки (нет OPENAI_API_KEY или LLM_STUB_ENABLED=true)")
        return StubGenerationGateway()
    return OpenAIGenerationGateway(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_model,
    )
