"""
Структуры данных хранилища переписок
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Any

VALID_ROLES = ("user", "assistant", "system")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Приводит значение к datetime с часовым поясом UTC

    Args:
        value: datetime, ISO строка, unix-время в секундах/миллисекундах или None

    Returns:
        datetime или None, если значение пустое или не распознано
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Значения больше 1e11 считаем миллисекундами
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


@dataclass
class Message:
    """Неизменяемое сообщение в сессии"""
    id: str
    session_id: str
    role: str
    text: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "text": self.text,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], session_id: Optional[str] = None) -> "Message":
        return cls(
            id=data["id"],
            session_id=data.get("sessionId") or session_id or "",
            role=data.get("role") or "user",
            text=str(data.get("text") or ""),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
        )


@dataclass
class SessionSummary:
    """Метаданные сессии, которые отдаются клиенту"""
    id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": format_timestamp(self.created_at) or None,
            "updatedAt": format_timestamp(self.updated_at) or None,
            "msgCount": self.message_count,
        }

    def to_cache_hash(self) -> Dict[str, str]:
        """Представление для Redis hash (только строки)"""
        return {
            "id": self.id,
            "title": self.title or "",
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "msgCount": str(self.message_count),
        }

    @classmethod
    def from_cache_hash(cls, data: Dict[str, str], session_id: str) -> "SessionSummary":
        return cls(
            id=data.get("id") or session_id,
            title=data.get("title") or None,
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            message_count=int(data.get("msgCount") or 0),
        )


@dataclass
class SessionOptions:
    """Необязательные параметры создания сессии"""
    title: Optional[str] = None
    created_at: Optional[datetime] = field(default=None)
