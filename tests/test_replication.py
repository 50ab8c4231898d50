"""
Tests for hot standby, HBA and recovery configuration of the data directory.
"""

import logging
import stat

from pg_entrypoint.replication import (
    build_primary_conninfo,
    configure_hot_standby,
    configure_primary_hba,
    configure_recovery,
    escape_conninfo_value,
    hba_auth_method,
    hot_standby_params,
    remove_recovery,
)


class TestHotStandbyParams:
    def test_modern_server_uses_replica_and_wal_keep_size(self, make_settings) -> None:
        params = hot_standby_params(make_settings(PG_MAJOR="16"))

        assert params["wal_level"] == "replica"
        assert params["wal_keep_size"] == "512MB"
        assert "wal_keep_segments" not in params
        assert params["max_wal_senders"] == 16
        assert params["hot_standby"] is True
        assert params["listen_addresses"] == "*"

    def test_pre_13_server_keeps_segments(self, make_settings) -> None:
        params = hot_standby_params(make_settings(PG_MAJOR="12"))

        assert params["wal_keep_segments"] == 32
        assert "wal_keep_size" not in params

    def test_pre_96_server_uses_hot_standby_wal_level(self, make_settings) -> None:
        params = hot_standby_params(make_settings(PG_MAJOR="9.5"))

        assert params["wal_level"] == "hot_standby"

    def test_log_directory_follows_settings(self, make_settings, tmp_path) -> None:
        log_dir = str(tmp_path / "logs")
        params = hot_standby_params(make_settings(PG_LOG_DIR=log_dir))

        assert params["logging_collector"] is True
        assert params["log_directory"] == log_dir


def test_configure_hot_standby_patches_conf_and_creates_log_dir(make_settings, pgdata) -> None:
    settings = make_settings()

    assert configure_hot_standby(settings)

    content = (pgdata / "postgresql.conf").read_text()
    assert "listen_addresses = '*'\n" in content
    assert "wal_level = replica\n" in content
    assert "max_wal_senders = 16\n" in content
    assert "wal_keep_size = '512MB'\n" in content
    assert "hot_standby = on\n" in content
    assert "logging_collector = on\n" in content
    assert f"log_directory = '{pgdata / 'pg_log'}'\n" in content
    assert (pgdata / "pg_log").is_dir()


def test_configure_hot_standby_applies_extra_params_from_config_file(make_settings, pgdata, tmp_path) -> None:
    config_file = tmp_path / "entrypoint.ini"
    config_file.write_text("[postgresql]\nmax_connections = 200\nshared_buffers = 256MB\n")
    settings = make_settings(["--config", str(config_file)])

    assert configure_hot_standby(settings)

    content = (pgdata / "postgresql.conf").read_text()
    assert "max_connections = 200\n" in content
    assert "shared_buffers = '256MB'\n" in content


def test_configure_hot_standby_fails_without_postgresql_conf(make_settings, pgdata) -> None:
    (pgdata / "postgresql.conf").unlink()

    assert configure_hot_standby(make_settings()) is False


class TestConfigurePrimaryHba:
    def test_auth_method_by_version(self) -> None:
        assert hba_auth_method((13,)) == "md5"
        assert hba_auth_method((9, 6)) == "md5"
        assert hba_auth_method((14,)) == "scram-sha-256"

    def test_replication_entry_only(self, make_settings, pgdata) -> None:
        assert configure_primary_hba(make_settings(PG_MAJOR="11", REPLICATION_USER="repl"))

        lines = (pgdata / "pg_hba.conf").read_text().splitlines()
        assert lines[-1] == "host replication repl 0.0.0.0/0 md5"
        assert len([line for line in lines if line.startswith("host")]) == 2

    def test_adds_database_entry(self, make_settings, pgdata) -> None:
        settings = make_settings(POSTGRES_DB_NAME="app", POSTGRES_DB_USER="app_user", HBA_ADDRESS="10.0.0.0/8")

        assert configure_primary_hba(settings)

        lines = (pgdata / "pg_hba.conf").read_text().splitlines()
        assert lines[-2:] == [
            "host replication replicator 10.0.0.0/8 scram-sha-256",
            "host app app_user 10.0.0.0/8 scram-sha-256",
        ]

    def test_database_entry_falls_back_to_superuser(self, make_settings, pgdata) -> None:
        configure_primary_hba(make_settings(POSTGRES_DB_NAME="app"))

        assert (pgdata / "pg_hba.conf").read_text().splitlines()[-1] == "host app postgres 0.0.0.0/0 scram-sha-256"


class TestPrimaryConninfo:
    def test_escape_plain_value(self) -> None:
        assert escape_conninfo_value("primary") == "primary"
        assert escape_conninfo_value(5432) == "5432"

    def test_escape_quotes_whitespace_and_special_characters(self) -> None:
        assert escape_conninfo_value("pass word") == "'pass word'"
        assert escape_conninfo_value("it's") == "'it\\'s'"
        assert escape_conninfo_value("") == "''"

    def test_build_conninfo(self, make_settings) -> None:
        settings = make_settings(REPLICATION_MODE="slave", REPLICATION_HOST="primary", REPLICATION_PASS="secret")

        assert build_primary_conninfo(settings) == (
            "host=primary port=5432 user=replicator password=secret application_name=node1"
        )

    def test_build_conninfo_without_password(self, make_settings) -> None:
        settings = make_settings(REPLICATION_MODE="slave", REPLICATION_HOST="primary", REPLICATION_PORT="6432")

        assert build_primary_conninfo(settings) == "host=primary port=6432 user=replicator application_name=node1"


class TestConfigureRecovery:
    def test_legacy_server_writes_recovery_conf(self, make_settings, pgdata) -> None:
        settings = make_settings(PG_MAJOR="11", REPLICATION_MODE="slave", REPLICATION_HOST="primary", REPLICATION_PASS="secret")

        assert configure_recovery(settings)

        recovery_conf = pgdata / "recovery.conf"
        assert recovery_conf.read_text().splitlines() == [
            "standby_mode = on",
            "primary_conninfo = 'host=primary port=5432 user=replicator password=secret application_name=node1'",
            "trigger_file = '/tmp/postgresql.trigger'",
        ]
        assert stat.S_IMODE(recovery_conf.stat().st_mode) == 0o600
        assert not (pgdata / "standby.signal").exists()

    def test_pg13_uses_standby_signal_and_promote_trigger(self, make_settings, pgdata) -> None:
        settings = make_settings(PG_MAJOR="13", REPLICATION_MODE="slave", REPLICATION_HOST="primary")

        assert configure_recovery(settings)

        assert (pgdata / "standby.signal").exists()
        assert not (pgdata / "recovery.conf").exists()
        auto_conf = (pgdata / "postgresql.auto.conf").read_text()
        assert "primary_conninfo = 'host=primary port=5432 user=replicator application_name=node1'\n" in auto_conf
        assert "promote_trigger_file = '/tmp/postgresql.trigger'\n" in auto_conf

    def test_pg16_has_no_promote_trigger(self, make_settings, pgdata) -> None:
        settings = make_settings(REPLICATION_MODE="slave", REPLICATION_HOST="primary")

        assert configure_recovery(settings)

        assert (pgdata / "standby.signal").exists()
        assert "promote_trigger_file" not in (pgdata / "postgresql.auto.conf").read_text()

    def test_replaces_conninfo_written_by_basebackup(self, make_settings, pgdata) -> None:
        (pgdata / "postgresql.auto.conf").write_text("primary_conninfo = 'user=replicator host=old'\n")
        settings = make_settings(REPLICATION_MODE="slave", REPLICATION_HOST="primary")

        configure_recovery(settings)

        auto_conf = (pgdata / "postgresql.auto.conf").read_text()
        assert auto_conf.count("primary_conninfo") == 1
        assert "host=old" not in auto_conf


def test_remove_recovery_detaches_clone(make_settings, pgdata) -> None:
    for name in ("recovery.conf", "standby.signal", "recovery.signal"):
        (pgdata / name).write_text("")
    (pgdata / "postgresql.auto.conf").write_text("primary_conninfo = 'host=primary'\nwork_mem = '8MB'\n")

    assert remove_recovery(make_settings(REPLICATION_MODE="snapshot", REPLICATION_HOST="primary"))

    for name in ("recovery.conf", "standby.signal", "recovery.signal"):
        assert not (pgdata / name).exists()
    assert (pgdata / "postgresql.auto.conf").read_text() == "# primary_conninfo = 'host=primary'\nwork_mem = '8MB'\n"


def test_remove_recovery_on_clean_directory(make_settings) -> None:
    assert remove_recovery(make_settings(REPLICATION_MODE="snapshot", REPLICATION_HOST="primary"))


def test_replication_password_stays_out_of_the_log(make_settings, pgdata, caplog) -> None:
    caplog.set_level(logging.DEBUG)
    (pgdata / "postgresql.auto.conf").write_text(
        "primary_conninfo = 'host=old password=s3cretpw'\nprimary_conninfo = 'host=older password=s3cretpw'\n")
    settings = make_settings(REPLICATION_MODE="slave", REPLICATION_HOST="primary", REPLICATION_PASS="s3cretpw")

    assert configure_recovery(settings)
    assert configure_recovery(settings)
    assert remove_recovery(settings)

    messages = [record.getMessage() for record in caplog.records]
    assert any("primary_conninfo" in message for message in messages)
    assert not any("s3cretpw" in message for message in messages)
