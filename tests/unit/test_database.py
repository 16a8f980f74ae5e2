"""
Unit tests for database setup.

Verifies engine construction per database URL, table creation and the
diagnostics used by the monitoring routes.
"""
import pytest
from sqlalchemy import inspect
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from core.database import build_engine, create_db_and_tables, get_database_info, health_check

EXPECTED_TABLES = {
    "users",
    "themes",
    "icons",
    "livestreams",
    "livestream_viewers_history",
    "reactions",
    "livecomments",
    "ng_words",
    "livecomment_reports",
}


@pytest.mark.unit
class TestBuildEngine:
    def test_memory_sqlite_shares_one_connection(self):
        assert isinstance(build_engine("sqlite+aiosqlite://").pool, StaticPool)
        assert isinstance(build_engine("sqlite+aiosqlite:///:memory:").pool, StaticPool)

    def test_file_sqlite_uses_queue_pool(self, tmp_path):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/api.db")
        assert isinstance(engine.pool, AsyncAdaptedQueuePool)


@pytest.mark.unit
class TestCreateTables:
    @pytest.mark.asyncio
    async def test_all_tables_created(self):
        engine = build_engine("sqlite+aiosqlite://")
        await create_db_and_tables(engine)

        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        await engine.dispose()

        assert EXPECTED_TABLES <= tables

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, storage):
        await create_db_and_tables(storage.engine)


@pytest.mark.unit
class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_database_info(self, storage):
        info = await get_database_info(storage.engine)

        assert info["connection_healthy"] is True
        assert info["database_type"] == "sqlite"
        assert info["engine_info"]["pool_class"] == "StaticPool"

    @pytest.mark.asyncio
    async def test_health_check(self, storage):
        result = await health_check(storage.engine)

        assert result["status"] == "healthy"
        assert result["tables_accessible"] is True

    @pytest.mark.asyncio
    async def test_health_check_without_tables(self):
        engine = build_engine("sqlite+aiosqlite://")

        result = await health_check(engine)
        await engine.dispose()

        assert result["status"] == "unhealthy"
        assert "livecomments" in result["error"]
