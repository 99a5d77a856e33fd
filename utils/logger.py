"""
Модуль настройки логирования для RAG чат-бэкенда
"""
import os
from loguru import logger
from dotenv import load_dotenv

load_dotenv()

def setup_logger():
    """Настройка системы логирования"""

    # Получаем уровень логирования из переменных окружения
    log_level = os.getenv("LOG_LEVEL", "INFO")
    debug = os.getenv("DEBUG", "False").lower() == "true"
    log_dir = os.getenv("LOG_DIR", "logs")

    # Удаляем стандартный обработчик loguru
    logger.remove()

    # Настраиваем вывод в консоль
    if debug:
        logger.add(
            sink=lambda msg: print(msg, end=""),
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            level=log_level,
            colorize=True
        )
    else:
        logger.add(
            sink=lambda msg: print(msg, end=""),
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
            level=log_level,
            colorize=False
        )

    # Настраиваем логирование в файл
    logger.add(
        os.path.join(log_dir, "bot.log"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level=log_level,
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        encoding="utf-8"
    )

    # Отдельный файл для ошибок
    logger.add(
        os.path.join(log_dir, "errors.log"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="ERROR",
        rotation="5 MB",
        retention="60 days",
        compression="zip",
        encoding="utf-8"
    )

    # Отдельный файл для диалогов (вопросы и ответы по сессиям)
    logger.add(
        os.path.join(log_dir, "conversations.log"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {extra[session_id]} | {extra[chat_type]} | {message}",
        filter=lambda record: "conversation" in record["extra"],
        rotation="50 MB",
        retention="1 year",
        compression="zip",
        encoding="utf-8"
    )

    logger.info("Система логирования инициализирована")
    return logger

def log_conversation(session_id: str, chat_type: str, message: str):
    """
    Логирование диалогов по сессиям

    Args:
        session_id: ID сессии
        chat_type: Тип сообщения (user_message, assistant_answer, stream_error)
        message: Текст сообщения
    """
    logger.bind(conversation=True, session_id=session_id, chat_type=chat_type).info(message)

# Создаем экземпляр логгера для использования в других модулях
app_logger = setup_logger()
