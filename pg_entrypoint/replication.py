"""
Replication-related configuration of the data directory: WAL streaming on the
primary, HBA rules for replicas, and the standby (recovery) settings on replicas.

Functions here take the settings namespace from pg_entrypoint.settings and
return True/False, logging their own failures.
"""
import logging
import os

from pg_entrypoint.conf_files import AUTO_CONF, RECOVERY_CONF, set_hba_param, set_postgresql_param, set_recovery_param, unset_conf_param

STANDBY_SIGNAL = "standby.signal"
RECOVERY_SIGNAL = "recovery.signal"
TRIGGER_FILE = "/tmp/postgresql.trigger"

MAX_WAL_SENDERS = 16
WAL_KEEP_SEGMENTS = 32
WAL_KEEP_SIZE = "512MB"


def escape_conninfo_value(value) -> str:
    """Quotes a libpq conninfo value when it contains whitespace, escaping quotes and backslashes."""
    text = str(value)
    escaped = text.replace("\\", "\\\\").replace("'", "\\'")
    if not text or any(c.isspace() for c in text) or escaped != text:
        return f"'{escaped}'"
    return text


def build_primary_conninfo(settings) -> str:
    """primary_conninfo for a replica of settings.replication_host. The password is left out when unset."""
    parts = [
        ("host", settings.replication_host),
        ("port", settings.replication_port),
        ("user", settings.replication_user),
    ]
    if settings.replication_pass:
        parts.append(("password", settings.replication_pass))
    parts.append(("application_name", settings.application_name))
    return " ".join(f"{key}={escape_conninfo_value(value)}" for key, value in parts)


def hba_auth_method(pg_version: tuple) -> str:
    return "scram-sha-256" if pg_version >= (14,) else "md5"


def hot_standby_params(settings) -> dict:
    """postgresql.conf settings for streaming replication on this server version, in the order they're written."""
    pg_version = settings.pg_version
    params = {
        "listen_addresses": "*",
        "wal_level": "replica" if pg_version >= (9, 6) else "hot_standby",
        "max_wal_senders": MAX_WAL_SENDERS,
    }
    if pg_version >= (13,):
        params["wal_keep_size"] = WAL_KEEP_SIZE
    else:
        params["wal_keep_segments"] = WAL_KEEP_SEGMENTS
    params["hot_standby"] = True
    params["logging_collector"] = True
    params["log_directory"] = settings.log_dir
    params.update(settings.extra_params)
    return params


def configure_hot_standby(settings) -> bool:
    """
    Enables WAL streaming and hot standby in postgresql.conf.

    Applied on primaries and replicas alike: a replica needs hot_standby to serve
    reads, and a promoted replica needs the WAL settings to feed replicas of its own.
    Also creates the server's log directory.
    """
    try:
        os.makedirs(settings.log_dir, exist_ok=True)
    except OSError as e:
        logging.error(f"Could not create log directory '{settings.log_dir}': {e}")
        return False

    for param, value in hot_standby_params(settings).items():
        if not set_postgresql_param(settings.pgdata, param, value):
            logging.error(f"Failed to set '{param}' in postgresql.conf.")
            return False
    return True


def configure_primary_hba(settings) -> bool:
    """Lets the replication role (and the default database's owner) in from settings.hba_address."""
    method = hba_auth_method(settings.pg_version)
    entries = [f"host replication {settings.replication_user} {settings.hba_address} {method}"]
    if settings.db_name:
        db_user = settings.db_user or settings.superuser
        entries.append(f"host {settings.db_name} {db_user} {settings.hba_address} {method}")

    for entry in entries:
        if not set_hba_param(settings.pgdata, entry):
            return False
    return True


def configure_recovery(settings) -> bool:
    """
    Marks the data directory as a standby streaming from settings.replication_host.

    Before PostgreSQL 12 this is recovery.conf with standby_mode. From 12 on it's
    standby.signal plus the same settings in postgresql.auto.conf. The promote
    trigger file is set up to 15, it was removed in 16.
    """
    pgdata, pg_version = settings.pgdata, settings.pg_version
    conninfo = build_primary_conninfo(settings)

    recovery_params = []
    if pg_version < (12,):
        recovery_params.append(("standby_mode", True))
        recovery_params.append(("primary_conninfo", conninfo))
        recovery_params.append(("trigger_file", TRIGGER_FILE))
    else:
        recovery_params.append(("primary_conninfo", conninfo))
        if pg_version < (16,):
            recovery_params.append(("promote_trigger_file", TRIGGER_FILE))

    for param, value in recovery_params:
        if not set_recovery_param(pgdata, param, value, pg_version):
            logging.error(f"Failed to set recovery setting '{param}'.")
            return False

    if pg_version >= (12,):
        signal_path = os.path.join(pgdata, STANDBY_SIGNAL)
        try:
            with open(signal_path, "a"):
                pass
            os.chmod(signal_path, 0o600)
        except OSError as e:
            logging.error(f"Could not create {signal_path}: {e}")
            return False

    logging.info(f"Configured '{pgdata}' as a standby of {settings.replication_host}:{settings.replication_port}.")
    return True


def remove_recovery(settings) -> bool:
    """Undoes configure_recovery() (or pg_basebackup -R) so the data directory starts as a standalone server."""
    pgdata = settings.pgdata
    for name in (RECOVERY_CONF, STANDBY_SIGNAL, RECOVERY_SIGNAL):
        path = os.path.join(pgdata, name)
        try:
            os.remove(path)
            logging.info(f"Removed {path}.")
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.error(f"Could not remove {path}: {e}")
            return False
    return unset_conf_param(os.path.join(pgdata, AUTO_CONF), "primary_conninfo")
