"""
Хранилище переписок

Компоненты:
- HotTier: Redis кэш с TTL (окно сообщений, метаданные, индекс активности)
- DurableTier: SQLite хранилище сессий и сообщений
- ConversationStore: cache-aside поверх обоих уровней
"""

from .models import Message, SessionSummary, SessionOptions
from .hot_tier import HotTier
from .durable_tier import DurableTier
from .conversation_store import ConversationStore

__all__ = [
    'Message',
    'SessionSummary',
    'SessionOptions',
    'HotTier',
    'DurableTier',
    'ConversationStore'
]
