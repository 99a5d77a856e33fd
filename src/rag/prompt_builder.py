"""
Сборка RAG промпта: инструкция + найденные фрагменты + история + вопрос
"""
import re
from typing import Any, Iterable, List

DEFAULT_SYSTEM_PREAMBLE = """You are a helpful assistant.
Use ONLY the information from the "Retrieved Passages" below to answer the user's question.
- If the requested information is present in the sources, answer concisely from the sources and elaborate it if necessary. Write the source in a new line (For Ex: Source : article link).
- If the information is not present, reply appropriately with appropriate disclaimers ("based on the provided sources", "the sources do not mention", etc.).
- Do not invent facts or rely on prior knowledge outside the sources."""

PASSAGE_EXCERPT_CHARS = 1000
HISTORY_TURNS = 8
HISTORY_LINE_CHARS = 800
TRUNCATION_MARKER = "…"

PASSAGES_HEADER = "--- Retrieved Passages ---"
CONVERSATION_HEADER = "--- Conversation ---"
QUESTION_HEADER = "--- Question ---"


def truncate_text(text: str, max_length: int) -> str:
    """
    Обрезает текст до max_length символов, включая маркер обрезки

    Args:
        text: Исходный текст
        max_length: Максимальная длина результата

    Returns:
        Текст не длиннее max_length
    """
    if not text or len(text) <= max_length:
        return text
    if max_length <= len(TRUNCATION_MARKER):
        return ""
    return text[:max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def format_passages(passages: Iterable[Any]) -> str:
    blocks = []
    for index, passage in enumerate(passages, start=1):
        title = _field(passage, "title") or f"source-{index}"
        excerpt = str(_field(passage, "text") or "")[:PASSAGE_EXCERPT_CHARS]
        url = _field(passage, "source_url") or _field(passage, "url") or ""
        blocks.append(f"### Source: {title}\n{excerpt}\nURL: {url}\n")
    return "\n".join(blocks)


def format_conversation(messages: Iterable[Any], turns: int = HISTORY_TURNS) -> str:
    lines = []
    for message in list(messages)[-turns:] if turns > 0 else []:
        role = str(_field(message, "role") or "user")
        text = re.sub(r"\s+", " ", str(_field(message, "text") or "")).strip()
        lines.append(f"{role.upper()}: {truncate_text(text, HISTORY_LINE_CHARS)}")
    return "\n".join(lines)


def _assemble(preamble: str, passages_block: str, conversation: str, question: str) -> str:
    parts: List[str] = []
    if preamble:
        parts.append(preamble)
    if passages_block:
        parts.append(PASSAGES_HEADER)
        parts.append(passages_block)
    if conversation:
        parts.append(CONVERSATION_HEADER)
        parts.append(conversation)
    parts.append(QUESTION_HEADER)
    parts.append(question)
    return "\n\n".join(parts)


def build_prompt(question: Any,
                 recent_messages: Iterable[Any] = (),
                 passages: Iterable[Any] = (),
                 system_preamble: str = DEFAULT_SYSTEM_PREAMBLE,
                 max_chars: int = 5000,
                 history_turns: int = HISTORY_TURNS) -> str:
    """
    Собирает промпт в фиксированном порядке: инструкция, фрагменты, история, вопрос

    При превышении max_chars сокращается только блок фрагментов, до
    наибольшей длины, которая укладывается в лимит. Если не помещается
    даже пустой блок, секция фрагментов опускается целиком. Функция
    детерминирована и не выбрасывает исключений.

    Args:
        question: Вопрос пользователя
        recent_messages: Последние сообщения сессии (старые первыми)
        passages: Найденные фрагменты (title, text, source_url)
        system_preamble: Системная инструкция
        max_chars: Лимит длины промпта в символах
        history_turns: Сколько последних реплик включать

    Returns:
        Текст промпта
    """
    preamble = str(system_preamble or "")
    question_text = str(question if question is not None else "").strip()
    passages_block = format_passages(passages or ())
    conversation = format_conversation(recent_messages or (), history_turns)

    full = _assemble(preamble, passages_block, conversation, question_text)
    if len(full) <= max_chars or not passages_block:
        return full

    overhead = len(full) - len(passages_block)
    truncated = truncate_text(passages_block, max_chars - overhead)
    return _assemble(preamble, truncated, conversation, question_text)
