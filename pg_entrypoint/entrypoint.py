"""
PostgreSQL Container Entrypoint

Configures the local PostgreSQL data directory at container start, before the
server process proper is launched. REPLICATION_MODE selects what this node is:

- primary (default, or "master"): enables WAL streaming and hot standby, lets the
  replication role in through pg_hba.conf, then creates the replication role,
  the default database/role and the requested extensions.
- slave: waits for REPLICATION_HOST, clones it with pg_basebackup and configures
  the copy as a streaming standby.
- snapshot: like slave, but the clone is detached from the upstream and comes up
  as a standalone, writable server.
- backup: waits for REPLICATION_HOST and streams a compressed tar base backup
  into BACKUP_DIR. The local data directory is not touched.

Any failing step aborts the run with exit status 1.

Usage:
    pg-entrypoint [options]          # or: python -m pg_entrypoint
"""
import logging
import os
import sys
from datetime import datetime, timezone

from pg_entrypoint import server
from pg_entrypoint.database import create_database, create_replication_user, load_extensions
from pg_entrypoint.replication import configure_hot_standby, configure_primary_hba, configure_recovery, remove_recovery
from pg_entrypoint.settings import (MODE_BACKUP, MODE_PRIMARY, MODE_SLAVE, MODE_SNAPSHOT, describe_settings, parse_settings,
                                    refresh_pg_version)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(funcName)s - L%(lineno)d - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = "INFO", log_file: str | None = None):
    """Logs to stderr, and to log_file as well when one is given."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT,
                        datefmt=LOG_DATE_FORMAT,
                        handlers=handlers,
                        force=True)


def local_conn_params(settings, db_name: str | None = None) -> dict:
    """Connection parameters for the local server, as the bootstrap superuser."""
    return {
        "db_name": db_name or settings.db_name or "postgres",
        "user": settings.superuser,
        "host": settings.socket_host,
        "port": settings.local_port,
    }


def run_steps(steps) -> bool:
    """Runs (description, callable) pairs in order and stops at the first one returning False."""
    for number, (description, step) in enumerate(steps, start=1):
        logging.info(f"Step {number}: {description}...")
        if not step():
            logging.critical(f"CRITICAL: Step {number} ({description}) failed. Aborting.")
            return False
    return True


def initialize_primary(settings) -> bool:
    """Configures this node as the primary and runs the bootstrap SQL against a temporary local-only server."""
    bindir = settings.bindir
    started_here = False

    def start_temporary_server():
        nonlocal started_here
        if server.server_is_running(settings.pgdata, bindir):
            logging.info("PostgreSQL is already running, using it for bootstrap SQL.")
            return True
        started_here = server.start_server(settings.pgdata, bindir, local_only=True)
        return started_here

    steps = [
        ("Configuring postgresql.conf for streaming replication", lambda: configure_hot_standby(settings)),
        ("Configuring pg_hba.conf for replication", lambda: configure_primary_hba(settings)),
        ("Starting temporary server", start_temporary_server),
        ("Creating/Verifying replication user", lambda: create_replication_user(
            local_conn_params(settings, "postgres"), settings.replication_user, settings.replication_pass)),
        ("Creating default database", lambda: create_database(
            local_conn_params(settings, "postgres"), settings.db_name, settings.db_user, settings.db_password)),
        ("Loading extensions", lambda: load_extensions(local_conn_params(settings), settings.extensions)),
    ]
    ok = run_steps(steps)
    if started_here:
        logging.info("Stopping temporary server...")
        ok = server.stop_server(settings.pgdata, bindir) and ok
    return ok


def initialize_replica(settings) -> bool:
    """
    Clones the upstream into PGDATA.

    In slave mode the clone is configured as a streaming standby; in snapshot
    mode its recovery settings are removed so it starts as an independent server.
    A server that was running before is started again at the end.
    """
    bindir = settings.bindir
    was_running = False

    def stop_local_server():
        nonlocal was_running
        was_running = server.server_is_running(settings.pgdata, bindir)
        if not was_running:
            return True
        return server.stop_server(settings.pgdata, bindir)

    steps = [
        (f"Waiting for {settings.replication_host}:{settings.replication_port}", lambda: server.wait_for_host(
            settings.replication_host, settings.replication_port, settings.replication_user,
            timeout=settings.replication_timeout, bindir=bindir)),
        ("Stopping local server", stop_local_server),
        ("Clearing data directory", lambda: server.clear_data_directory(settings.pgdata)),
        ("Performing pg_basebackup", lambda: server.perform_pg_basebackup(
            settings.replication_host, settings.replication_port, settings.replication_user,
            settings.replication_pass, settings.pgdata, bindir=bindir)),
        ("Reading cloned server version", lambda: refresh_pg_version(settings)),
    ]
    if settings.replication_mode == MODE_SLAVE:
        steps.append(("Configuring postgresql.conf for hot standby", lambda: configure_hot_standby(settings)))
        steps.append(("Configuring recovery", lambda: configure_recovery(settings)))
    else:
        steps.append(("Removing recovery configuration", lambda: remove_recovery(settings)))
        steps.append(("Configuring postgresql.conf", lambda: configure_hot_standby(settings)))

    if not run_steps(steps):
        return False
    if was_running:
        logging.info("Restarting local server...")
        return server.start_server(settings.pgdata, bindir)
    return True


def initialize_backup(settings) -> bool:
    """Streams a compressed tar base backup of the upstream into BACKUP_DIR/<UTC timestamp>."""
    target_dir = os.path.join(settings.backup_dir, datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ"))
    steps = [
        (f"Waiting for {settings.replication_host}:{settings.replication_port}", lambda: server.wait_for_host(
            settings.replication_host, settings.replication_port, settings.replication_user,
            timeout=settings.replication_timeout, bindir=settings.bindir)),
        (f"Pulling base backup into {target_dir}", lambda: server.perform_pg_basebackup(
            settings.replication_host, settings.replication_port, settings.replication_user,
            settings.replication_pass, target_dir, tar_format=True, bindir=settings.bindir,
            backup_label=f"pg_entrypoint_backup_{os.path.basename(target_dir)}")),
    ]
    return run_steps(steps)


MODE_HANDLERS = {
    MODE_PRIMARY: initialize_primary,
    MODE_SLAVE: initialize_replica,
    MODE_SNAPSHOT: initialize_replica,
    MODE_BACKUP: initialize_backup,
}


def initialize_database(settings) -> bool:
    """Runs the fixed sequence of steps for settings.replication_mode."""
    logging.info(f"--- Configuring PostgreSQL {settings.pg_major} in {settings.replication_mode.upper()} mode ---")
    ok = MODE_HANDLERS[settings.replication_mode](settings)
    if ok:
        logging.info(f"--- {settings.replication_mode.capitalize()} setup complete ---")
    return ok


def main(argv=None) -> int:
    """
    Parses settings, configures logging and runs the setup for the selected mode.

    Returns:
        int: Process exit status, 0 on success and 1 on any failure.
    """
    try:
        settings = parse_settings(argv)
    except ValueError as e:
        setup_logging()
        logging.critical(f"CRITICAL: Invalid configuration: {e}")
        return 1

    setup_logging(settings.log_level, settings.log_file)
    logging.info("--- Effective Entrypoint Configuration (Passwords Masked) ---")
    for key, value in describe_settings(settings).items():
        logging.info(f"{key}: {value}")
    logging.info("--- End of Effective Entrypoint Configuration ---")

    if not initialize_database(settings):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
