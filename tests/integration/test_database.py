"""Integration tests for database initialization and the readiness check."""

import pytest
from sqlalchemy import inspect

from discount_engine.storage import db


@pytest.mark.integration
class TestDatabaseLifecycle:

    @pytest.mark.asyncio
    async def test_create_schema_and_check(self, tmp_path):
        await db.close_database()
        db.init_database(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
        try:
            await db.create_schema()

            async with db.engine.connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

            assert {
                "leads",
                "invoices",
                "discount_rules",
                "discount_applications",
                "payment_provider_settings",
                "invoice_analytics",
            } <= set(tables)
            assert await db.check_database() is True
        finally:
            await db.close_database()

        assert db.engine is None
        assert db.SessionLocal is None

    def test_postgres_urls_use_asyncpg(self):
        assert db._normalize_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert db._normalize_url("postgresql+psycopg://u:p@h/db?sslmode=require") == (
            "postgresql+asyncpg://u:p@h/db?ssl=require"
        )
        assert db._normalize_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"
