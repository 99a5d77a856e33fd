#!/usr/bin/env python3
"""
Главный файл запуска чат-бэкенда
"""
import os
import uvicorn
from dotenv import load_dotenv

from utils.logger import app_logger
from src.config import Settings


def main():
    """Основная функция запуска"""

    # Загрузка переменных окружения
    load_dotenv()
    settings = Settings.from_env()

    app_logger.info(f"🚀 Запуск Passage Chat API на {settings.host}:{settings.port}")
    app_logger.info("📋 Доступные endpoints:")
    app_logger.info("   • GET    /health - Проверка здоровья системы")
    app_logger.info("   • POST   /chat - Потоковый ответ (SSE)")
    app_logger.info("   • GET    /sessions - Список сессий")
    app_logger.info("   • POST   /sessions - Создание сессии")
    app_logger.info("   • DELETE /sessions/{id} - Удаление сессии")
    app_logger.info("   • GET    /sessions/{id}/messages - История сессии")

    if not settings.redis_url:
        app_logger.warning("REDIS_URL не задан: кэш сессий отключен")
    if not settings.durable_configured:
        app_logger.warning("DATABASE_PATH не задан: сессии не сохраняются между перезапусками")

    uvicorn.run(
        "src.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=os.getenv("DEBUG", "False").lower() == "true",
        log_level="info"
    )


if __name__ == "__main__":
    main()
