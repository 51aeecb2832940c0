"""Pytest configuration and shared fixtures."""

import os
from urllib.parse import urlparse

import pytest
from dotenv import load_dotenv

from db.client import apply_schema, close_db, init_db

load_dotenv()


# Repo tests write and delete rows; never point them at a shared database.
ALLOWED_DB_HOSTS = {"localhost", "127.0.0.1", "host.docker.internal", "db", "postgres"}


def pytest_configure(config):
    config.addinivalue_line("markers", "no_db: test needs no database connection")
    config.addinivalue_line("markers", "online: test calls live external APIs")

    url = os.getenv("DATABASE_URL")
    db_host = urlparse(url).hostname if url else os.getenv("SCRAPENATION_DB_HOST", "localhost")

    if db_host not in ALLOWED_DB_HOSTS:
        pytest.exit(
            f"\nRefusing to run tests against {db_host}.\n"
            f"Point DATABASE_URL or SCRAPENATION_DB_HOST at one of: {', '.join(sorted(ALLOWED_DB_HOSTS))}\n",
            returncode=1,
        )


def pytest_collection_modifyitems(config, items):
    """Skip live API tests unless RUN_ONLINE_TESTS=1."""
    if os.getenv("RUN_ONLINE_TESTS") == "1":
        return
    skip_online = pytest.mark.skip(reason="set RUN_ONLINE_TESTS=1 to hit live APIs")
    for item in items:
        if "online" in item.keywords:
            item.add_marker(skip_online)


_schema_applied = False


@pytest.fixture(scope="function", autouse=True)
async def setup_db(request):
    """Open the pool around every test not marked no_db (tables created once per run)."""
    global _schema_applied
    if request.node.get_closest_marker("no_db"):
        yield
        return

    await init_db()
    if not _schema_applied:
        await apply_schema()
        _schema_applied = True
    yield
    await close_db()
