"""
Pytest configuration and shared fixtures for the DB utilities server tests

APPROACH: Fake PostgreSQL client tools
- pg_dump and psql are replaced by tiny Python scripts written into tmp_path
- The real subprocess, streaming and cleanup code paths run unchanged
- Behaviour of the fakes is steered through FAKE_* environment variables,
  which the spawned processes inherit
"""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config import UtilityConfig
from tests.fake_tools import FAKE_PG_DUMP, FAKE_PSQL, write_fake_tool


@pytest.fixture
def fake_tools(tmp_path):
    bin_dir = tmp_path / "bin"
    return SimpleNamespace(
        bin_dir=bin_dir,
        pg_dump=write_fake_tool(bin_dir, "pg_dump", FAKE_PG_DUMP),
        psql=write_fake_tool(bin_dir, "psql", FAKE_PSQL),
    )


@pytest.fixture
def utility_config(tmp_path, fake_tools):
    """Configuration pointing at tmp directories and the fake tools"""
    config = UtilityConfig(
        database_url="postgresql://postgres@localhost:5432/warehouse_test",
        backup_dir=tmp_path / "backups",
        upload_dir=tmp_path / "uploads",
        pg_dump_path=fake_tools.pg_dump,
        psql_path=fake_tools.psql,
    )
    config.ensure_directories()
    return config


@pytest.fixture
def make_client():
    """Build a TestClient for a given configuration"""
    from transport.http import create_app

    clients = []

    def _make(config):
        client = TestClient(create_app(config))
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, utility_config):
    return make_client(utility_config)


@pytest.fixture
def psql_marker(tmp_path, monkeypatch):
    """File the fake psql appends its arguments to on every invocation"""
    marker = tmp_path / "psql_calls.log"
    monkeypatch.setenv("FAKE_PSQL_MARKER", str(marker))
    return marker


CONFIG_VARS = [
    "APP_ENV", "DATABASE_URL", "HOST", "PORT", "BACKUP_DIR", "UPLOAD_DIR",
    "DUMP_TIMEOUT", "RESTORE_TIMEOUT", "BACKUP_KEEP", "PG_DUMP_PATH", "PSQL_PATH",
    "STREAM_CHUNK_SIZE", "LOG_LEVEL",
]


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """
    No inherited settings and no stray .env files.

    Each variable is registered with monkeypatch before removal so values
    that load_dotenv writes during the test are rolled back afterwards.
    """
    for name in CONFIG_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
