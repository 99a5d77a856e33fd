"""
Тесты для двухуровневого хранилища переписок
"""
import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import fakeredis
import pytest

from utils.logger import app_logger
from src.config import Settings
from src.storage import ConversationStore, DurableTier, HotTier, SessionOptions
from src.storage.hot_tier import SESSIONS_ZSET, messages_key, meta_key


class CountingDurableTier(DurableTier):
    """DurableTier, который считает чтения сообщений"""

    def __init__(self, db_path: str = ""):
        super().__init__(db_path)
        self.message_reads = 0

    async def fetch_messages(self, session_id, limit):
        self.message_reads += 1
        return await super().fetch_messages(session_id, limit)


def make_hot(server=None, max_messages: int = 500) -> HotTier:
    client = fakeredis.FakeAsyncRedis(server=server or fakeredis.FakeServer(), decode_responses=True)
    return HotTier(ttl_seconds=3600, max_messages=max_messages, client=client)


def make_broken_hot() -> HotTier:
    server = fakeredis.FakeServer()
    server.connected = False
    return make_hot(server)


@pytest.fixture
def temp_db():
    """Создает временную базу данных для тестов"""
    with tempfile.NamedTemporaryFile(delete=False, suffix='.db') as tmp_file:
        yield tmp_file.name
    os.unlink(tmp_file.name)


@pytest.fixture
def store(temp_db):
    """Хранилище с обоими уровнями"""
    return ConversationStore(make_hot(), CountingDurableTier(temp_db))


class TestAppendAndRead:
    """Порядок сообщений и чтение из обоих уровней"""

    @pytest.mark.asyncio
    async def test_messages_returned_in_append_order_from_cache(self, store):
        sid = await store.create_session()
        texts = [f"message {i}" for i in range(6)]
        for i, text in enumerate(texts):
            await store.append_message(sid, "user" if i % 2 == 0 else "assistant", text)

        messages = await store.get_messages(sid, 100)

        assert [m.text for m in messages] == texts
        assert store.durable.message_reads == 0

    @pytest.mark.asyncio
    async def test_messages_returned_in_append_order_from_durable_only(self, temp_db):
        store = ConversationStore(HotTier(), DurableTier(temp_db))
        sid = await store.create_session()
        texts = ["first", "second", "third"]
        for text in texts:
            await store.append_message(sid, "user", text)

        messages = await store.get_messages(sid, 100)

        assert [m.text for m in messages] == texts

    @pytest.mark.asyncio
    async def test_append_order_wins_over_supplied_timestamps(self, temp_db):
        store = ConversationStore(HotTier(), DurableTier(temp_db))
        now = datetime.now(timezone.utc)
        await store.append_message("s1", "user", "later stamp", timestamp=now)
        await store.append_message("s1", "assistant", "earlier stamp", timestamp=now - timedelta(minutes=5))

        messages = await store.get_messages("s1")

        assert [m.text for m in messages] == ["later stamp", "earlier stamp"]

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent_messages(self, store):
        sid = await store.create_session()
        for i in range(5):
            await store.append_message(sid, "user", str(i))

        messages = await store.get_messages(sid, 2)

        assert [m.text for m in messages] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_session_without_messages_returns_empty_list(self, store):
        sid = await store.create_session()
        assert await store.get_messages(sid) == []

    @pytest.mark.asyncio
    async def test_append_assigns_id_and_timestamp(self, store):
        message = await store.append_message("implicit", "user", "hello")

        assert message.id
        assert message.session_id == "implicit"
        assert message.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_append_creates_session_implicitly(self, store):
        await store.append_message("implicit", "user", "hello")

        meta = await store.get_session_meta("implicit")
        durable_meta = await store.durable.fetch_session("implicit")

        assert meta.message_count == 1
        assert durable_meta.message_count == 1

    @pytest.mark.asyncio
    async def test_invalid_role_rejected(self, store):
        with pytest.raises(ValueError):
            await store.append_message("s1", "robot", "hello")


class TestCacheAside:
    """Промахи кэша, запись обратно и окно сообщений"""

    @pytest.mark.asyncio
    async def test_cold_cache_served_from_durable_then_warm(self, temp_db):
        writer = ConversationStore(make_hot(), DurableTier(temp_db))
        sid = await writer.create_session(options=SessionOptions(title="Sun"))
        await writer.append_message(sid, "user", "Where does the sun rise?")
        await writer.append_message(sid, "assistant", "In the east.")

        durable = CountingDurableTier(temp_db)
        reader = ConversationStore(make_hot(), durable)
        expected = await durable.fetch_messages(sid, 100)
        durable.message_reads = 0

        first = await reader.get_messages(sid, 50)
        second = await reader.get_messages(sid, 50)

        assert [m.to_dict() for m in first] == [m.to_dict() for m in expected]
        assert [m.to_dict() for m in second] == [m.to_dict() for m in expected]
        assert durable.message_reads == 1

        meta = await reader.get_session_meta(sid)
        assert meta.message_count == 2
        assert meta.title == "Sun"

    @pytest.mark.asyncio
    async def test_window_smaller_than_history_falls_back_to_durable(self, temp_db):
        durable = CountingDurableTier(temp_db)
        store = ConversationStore(make_hot(max_messages=3), durable)
        sid = await store.create_session()
        for i in range(5):
            await store.append_message(sid, "user", str(i))

        recent = await store.get_messages(sid, 2)
        assert [m.text for m in recent] == ["3", "4"]
        assert durable.message_reads == 0

        full = await store.get_messages(sid, 10)
        assert [m.text for m in full] == ["0", "1", "2", "3", "4"]
        assert durable.message_reads == 1

        cached = await store.hot.get_messages(sid)
        assert [m["text"] for m in cached] == ["2", "3", "4"]

    @pytest.mark.asyncio
    async def test_meta_cold_cache_reads_durable(self, temp_db):
        writer = ConversationStore(HotTier(), DurableTier(temp_db))
        sid = await writer.create_session(options=SessionOptions(title="Cold"))
        await writer.append_message(sid, "user", "hi")

        reader = ConversationStore(make_hot(), DurableTier(temp_db))
        meta = await reader.get_session_meta(sid)

        assert meta.title == "Cold"
        assert meta.message_count == 1
        assert await reader.hot.get_meta(sid)

    @pytest.mark.asyncio
    async def test_unknown_session_meta_is_absent(self, store):
        assert await store.get_session_meta("missing") is None

    @pytest.mark.asyncio
    async def test_window_without_meta_reads_durable(self, temp_db):
        store = ConversationStore(make_hot(max_messages=3), CountingDurableTier(temp_db))
        sid = await store.create_session()
        for i in range(5):
            await store.append_message(sid, "user", str(i))
        # Метаданные истекли раньше списка
        await store.hot.client.delete(meta_key(sid))

        messages = await store.get_messages(sid, 10)

        assert [m.text for m in messages] == ["0", "1", "2", "3", "4"]
        assert store.durable.message_reads == 1
        assert (await store.hot.get_meta(sid))["msgCount"] == "5"

    @pytest.mark.asyncio
    async def test_write_back_refreshes_existing_meta_ttl(self, temp_db):
        store = ConversationStore(make_hot(max_messages=3), DurableTier(temp_db))
        sid = await store.create_session()
        for i in range(5):
            await store.append_message(sid, "user", str(i))
        await store.hot.client.expire(meta_key(sid), 5)

        await store.get_messages(sid, 10)

        assert await store.hot.client.ttl(meta_key(sid)) > 5


class TestSessions:
    """Создание, список и удаление сессий"""

    @pytest.mark.asyncio
    async def test_create_session_is_idempotent(self, store):
        sid = await store.create_session("fixed-id", SessionOptions(title="Original"))
        again = await store.create_session("fixed-id", SessionOptions(title="Changed"))

        assert sid == again == "fixed-id"
        durable_meta = await store.durable.fetch_session("fixed-id")
        assert durable_meta.title == "Original"
        cached_meta = await store.get_session_meta("fixed-id")
        assert cached_meta.title == "Original"

    @pytest.mark.asyncio
    async def test_list_sessions_orders_by_last_append(self, store):
        older = await store.create_session(options=SessionOptions(title="older"))
        await asyncio.sleep(0.01)
        newer = await store.create_session(options=SessionOptions(title="newer"))

        sessions = await store.list_sessions()
        assert [s.id for s in sessions] == [newer, older]

        await asyncio.sleep(0.01)
        await store.append_message(older, "user", "bump")

        sessions = await store.list_sessions()
        assert [s.id for s in sessions] == [older, newer]
        assert sessions[0].message_count == 1

    @pytest.mark.asyncio
    async def test_list_sessions_falls_back_to_durable_and_rebuilds_index(self, temp_db):
        writer = ConversationStore(HotTier(), DurableTier(temp_db))
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = await writer.create_session(options=SessionOptions(created_at=base))
        second = await writer.create_session(options=SessionOptions(created_at=base + timedelta(hours=1)))

        hot = make_hot()
        reader = ConversationStore(hot, DurableTier(temp_db))
        sessions = await reader.list_sessions()

        assert [s.id for s in sessions] == [second, first]
        assert set(await hot.client.zrange(SESSIONS_ZSET, 0, -1)) == {first, second}

    @pytest.mark.asyncio
    async def test_recreating_old_session_keeps_its_position(self, temp_db):
        writer = ConversationStore(HotTier(), DurableTier(temp_db))
        old = await writer.create_session(
            options=SessionOptions(created_at=datetime(2020, 1, 1, tzinfo=timezone.utc)))

        reader = ConversationStore(make_hot(), DurableTier(temp_db))
        fresh = await reader.create_session()
        await reader.create_session(old)

        sessions = await reader.list_sessions()

        assert [s.id for s in sessions] == [fresh, old]

    @pytest.mark.asyncio
    async def test_delete_session_clears_both_tiers(self, store):
        sid = await store.create_session()
        await store.append_message(sid, "user", "to be removed")
        await store.get_messages(sid)

        await store.delete_session(sid)

        assert await store.get_messages(sid) == []
        assert await store.get_session_meta(sid) is None
        assert sid not in [s.id for s in await store.list_sessions()]

    @pytest.mark.asyncio
    async def test_delete_unknown_session_is_not_an_error(self, store):
        await store.delete_session("never-existed")
        await store.delete_session("never-existed")


class TestDegradedModes:
    """Поведение при недоступности уровней"""

    @pytest.mark.asyncio
    async def test_broken_hot_tier_uses_durable(self, temp_db):
        hot = make_broken_hot()
        store = ConversationStore(hot, DurableTier(temp_db))

        sid = await store.create_session()
        await store.append_message(sid, "user", "still saved")
        messages = await store.get_messages(sid)
        sessions = await store.list_sessions()

        assert [m.text for m in messages] == ["still saved"]
        assert [s.id for s in sessions] == [sid]
        assert hot._degraded is True

    @pytest.mark.asyncio
    async def test_hot_only_mode_keeps_session_lifetime_data(self):
        store = ConversationStore(make_hot(), DurableTier())

        sid = await store.create_session()
        await store.append_message(sid, "user", "volatile but cached")

        assert [m.text for m in await store.get_messages(sid)] == ["volatile but cached"]
        assert (await store.get_session_meta(sid)).message_count == 1
        assert [s.id for s in await store.list_sessions()] == [sid]

    @pytest.mark.asyncio
    async def test_no_storage_returns_volatile_results(self):
        store = ConversationStore(HotTier(), DurableTier())

        sid = await store.create_session()
        message = await store.append_message(sid, "user", "nowhere to go")

        assert sid
        assert message.text == "nowhere to go"
        assert await store.get_messages(sid) == []
        assert await store.list_sessions() == []
        assert await store.get_session_meta(sid) is None
        await store.delete_session(sid)

    @pytest.mark.asyncio
    async def test_both_tiers_broken_never_raise(self):
        with tempfile.TemporaryDirectory() as directory:
            # Путь указывает на каталог, sqlite не сможет открыть базу
            store = ConversationStore(make_broken_hot(), DurableTier(directory))

            sid = await store.create_session()
            message = await store.append_message(sid, "user", "hello")

            assert message.session_id == sid
            assert await store.get_messages(sid) == []
            assert await store.list_sessions() == []
            assert await store.get_session_meta(sid) is None

    @pytest.mark.asyncio
    async def test_durable_write_failure_still_caches_message(self):
        with tempfile.TemporaryDirectory() as directory:
            store = ConversationStore(make_hot(), DurableTier(directory))

            message = await store.append_message("s1", "user", "cached only")
            messages = await store.get_messages("s1")

            assert [m.id for m in messages] == [message.id]

    @pytest.mark.asyncio
    async def test_status_reports_tiers(self, temp_db):
        store = ConversationStore(make_broken_hot(), DurableTier(temp_db))

        status = await store.status()

        assert status["redis"]["configured"] is True
        assert status["redis"]["ok"] is False
        assert status["sqlite"]["ok"] is True


class TestConcurrentAppend:
    """
    Конкурентные записи в одну сессию не сериализуются

    Проверяется только то, что обе записи видны и счетчик сходится
    после завершения операций; относительный порядок не гарантирован.
    """

    @pytest.mark.asyncio
    async def test_concurrent_appends_both_visible(self, store):
        sid = await store.create_session()

        await asyncio.gather(
            store.append_message(sid, "user", "writer A"),
            store.append_message(sid, "user", "writer B"),
        )

        messages = await store.get_messages(sid)
        meta = await store.get_session_meta(sid)
        durable_meta = await store.durable.fetch_session(sid)
        durable_messages = await store.durable.fetch_messages(sid, 10)

        assert sorted(m.text for m in messages) == ["writer A", "writer B"]
        assert sorted(m.text for m in durable_messages) == ["writer A", "writer B"]
        assert meta.message_count == 2
        assert durable_meta.message_count == 2


class TestSlidingTtl:
    """TTL ключей сессии продлевается при каждом чтении и записи"""

    async def _shorten(self, store, sid):
        await store.hot.client.expire(messages_key(sid), 5)
        await store.hot.client.expire(meta_key(sid), 5)

    async def _assert_refreshed(self, store, sid):
        assert await store.hot.client.ttl(messages_key(sid)) > 5
        assert await store.hot.client.ttl(meta_key(sid)) > 5

    @pytest.mark.asyncio
    async def test_reads_refresh_ttl(self, store):
        sid = await store.create_session()
        await store.append_message(sid, "user", "keep me warm")

        await self._shorten(store, sid)
        await store.get_messages(sid)
        await self._assert_refreshed(store, sid)

        await self._shorten(store, sid)
        await store.get_session_meta(sid)
        await self._assert_refreshed(store, sid)

    @pytest.mark.asyncio
    async def test_append_refreshes_ttl(self, store):
        sid = await store.create_session()
        await store.append_message(sid, "user", "first")

        await self._shorten(store, sid)
        await store.append_message(sid, "assistant", "second")

        await self._assert_refreshed(store, sid)
        assert await store.hot.client.ttl(SESSIONS_ZSET) > 5


class TestFailureLogging:
    """Сбой горячего уровня логируется один раз за период недоступности"""

    @pytest.mark.asyncio
    async def test_outage_logged_once_and_recovery_logged_once(self):
        server = fakeredis.FakeServer()
        server.connected = False
        store = ConversationStore(make_hot(server), DurableTier())

        records = []
        sink_id = app_logger.add(records.append, level="INFO", format="{level}|{message}")
        try:
            sid = await store.create_session()
            for i in range(3):
                await store.append_message(sid, "user", str(i))
            await store.get_messages(sid)
            await store.list_sessions()

            server.connected = True
            await store.list_sessions()
            await store.list_sessions()
        finally:
            app_logger.remove(sink_id)

        warnings = [r for r in records if r.startswith("WARNING|") and "Горячий уровень недоступен" in r]
        recoveries = [r for r in records if r.startswith("INFO|") and "Горячий уровень снова доступен" in r]
        assert len(warnings) == 1
        assert len(recoveries) == 1


class TestHotTierClient:
    def test_client_uses_socket_timeouts(self):
        hot = HotTier(url="redis://localhost:6379/0", timeout_seconds=1.5)

        kwargs = hot.client.connection_pool.connection_kwargs

        assert kwargs["socket_connect_timeout"] == 1.5
        assert kwargs["socket_timeout"] == 1.5

    def test_timeout_read_from_environment(self):
        with patch.dict(os.environ, {"REDIS_URL": "redis://cache:6379/0", "REDIS_TIMEOUT_SECONDS": "2.5"}):
            settings = Settings.from_env()

        store = ConversationStore.from_settings(settings)

        assert store.hot.timeout == 2.5
