"""Test fixtures and configuration."""

import logging
import os
import sys

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

# Set ENVIRONMENT for pydantic settings
os.environ["ENVIRONMENT"] = "testing"

from reconciler import database  # noqa: E402
from reconciler.logger import get_logger  # noqa: E402
from reconciler.services.auto_accept import AutoAcceptMap, set_auto_accept_map  # noqa: E402
from reconciler.services.matching_config import load_matching_config  # noqa: E402

logger = get_logger(__name__)


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


# --- Process-wide state isolation ---
@pytest.fixture(autouse=True)
def empty_auto_accept_map():
    """Each test starts with an empty in-memory auto-accept map."""
    previous = set_auto_accept_map(AutoAcceptMap())
    yield
    set_auto_accept_map(previous)


@pytest.fixture(autouse=True)
def reset_matching_config(monkeypatch):
    monkeypatch.delenv("PAIRING_MIN_SCORE", raising=False)
    monkeypatch.delenv("CATEGORIZATION_MIN_CONFIDENCE", raising=False)
    load_matching_config(force_reload=True)
    yield
    load_matching_config(force_reload=True)


# --- Database ---
@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A throwaway SQLite database per test.

    Uses NullPool so every session gets its own connection, like separate
    requests against a server database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}", poolclass=NullPool)
    await database.init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    """Point the process-wide session maker at the test database."""
    maker = database.create_session_maker(db_engine)
    previous = database.set_session_maker(maker)
    yield maker
    database.set_session_maker(previous)


@pytest_asyncio.fixture
async def db(session_maker):
    """A session on the test database. Tests commit when another session must see their data."""
    async with session_maker() as session:
        yield session
