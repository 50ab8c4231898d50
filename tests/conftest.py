"""Shared test fixtures for pytest.

Provides a throwaway data directory with trimmed-down postgresql.conf and
pg_hba.conf files, and a factory for settings namespaces built from a fake
environment.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pg_entrypoint.settings import parse_settings

SAMPLE_POSTGRESQL_CONF = """\
# -----------------------------
# PostgreSQL configuration file
# -----------------------------

#listen_addresses = 'localhost'\t\t# what IP address(es) to listen on;
max_connections = 100\t\t\t# (change requires restart)
#wal_level = replica\t\t\t# minimal, replica, or logical
#max_wal_senders = 10\t\t# max number of walsender processes
#wal_keep_size = 0\t\t# in megabytes; 0 disables
#hot_standby = on\t\t\t# "off" disallows queries during recovery
#hot_standby_feedback = off\t\t# send info from standby to prevent
#logging_collector = off\t\t# Enable capturing of stderr
#log_directory = 'log'\t\t\t# directory where log files are written
"""

SAMPLE_PG_HBA = """\
# TYPE  DATABASE        USER            ADDRESS                 METHOD
local   all             all                                     trust
host    all             all             127.0.0.1/32            trust
"""


@pytest.fixture
def pgdata(tmp_path: Path) -> Path:
    """A data directory as initdb leaves it, as far as the entrypoint cares."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "postgresql.conf").write_text(SAMPLE_POSTGRESQL_CONF)
    (data_dir / "pg_hba.conf").write_text(SAMPLE_PG_HBA)
    (data_dir / "PG_VERSION").write_text("16\n")
    return data_dir


@pytest.fixture
def make_settings(pgdata: Path):
    """Builds settings from a fake environment on top of the pgdata fixture."""

    def _make(argv=None, **env):
        environ = {"PGDATA": str(pgdata), "REPLICATION_APP_NAME": "node1"}
        environ.update(env)
        return parse_settings(argv or [], environ)

    return _make


@pytest.fixture
def mock_connection() -> MagicMock:
    """Mock psycopg2 connection whose cursor() works as a context manager."""
    conn = MagicMock()
    cursor = MagicMock()
    cursor.fetchone.return_value = None
    conn.cursor.return_value.__enter__.return_value = cursor
    conn.cursor.return_value.__exit__.return_value = False
    return conn
