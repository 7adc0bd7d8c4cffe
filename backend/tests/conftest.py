"""
Shared fixtures for grade sync tests.
"""

import base64
import os

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from gradesync.core.database import Base
from gradesync.core.gradebook_config import GradebookConnectionConfig
import gradesync.models  # noqa: F401


@pytest.fixture
async def db_session():
    """In-memory SQLite session with all grade sync tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def encryption_key():
    """Random base64 AES-256 key."""
    return base64.b64encode(os.urandom(32)).decode("ascii")


@pytest.fixture
def connection_config():
    """Non group-enabled gradebook connection."""
    return GradebookConnectionConfig(
        connection_id="conn-1",
        tenant_id="tenant-1",
        display_name="District Gradebook",
        base_url="https://gradebook.example.com/ims/oneroster/v1p1/",
        token_url="https://gradebook.example.com/oauth/token",
        client_id="gb-client",
        client_secret="gb-secret"
    )
