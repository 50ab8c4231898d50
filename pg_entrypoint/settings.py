"""
Settings for the PostgreSQL entrypoint.

Every option can be given on the command line, through an environment variable
or through an optional INI file. Precedence, highest first:

    command line > environment > [entrypoint] section of the INI file > default

The INI file may also carry a [postgresql] section whose keys are applied to
postgresql.conf verbatim, e.g.:

    [entrypoint]
    replication_user = replicator
    pg_log_dir = /var/log/postgresql

    [postgresql]
    max_connections = 200
    shared_buffers = 256MB
"""
import argparse
import configparser
import logging
import os
import re
import socket

MODE_PRIMARY = "primary"
MODE_SLAVE = "slave"
MODE_SNAPSHOT = "snapshot"
MODE_BACKUP = "backup"

REPLICATION_MODES = (MODE_PRIMARY, MODE_SLAVE, MODE_SNAPSHOT, MODE_BACKUP)
PRIMARY_ALIASES = ("", "primary", "master")

DEFAULT_PGDATA = "/var/lib/postgresql/data"
DEFAULT_BACKUP_DIR = "/var/lib/postgresql/backup"
DEFAULT_REPLICATION_PORT = "5432"
DEFAULT_REPLICATION_USER = "replicator"
DEFAULT_REPLICATION_TIMEOUT = "60"
DEFAULT_HBA_ADDRESS = "0.0.0.0/0"
DEFAULT_SUPERUSER = "postgres"

CONFIG_ENV_VAR = "PG_ENTRYPOINT_CONFIG"
ENTRYPOINT_SECTION = "entrypoint"
POSTGRESQL_SECTION = "postgresql"

PASSWORD_FIELDS = ("replication_pass", "db_password")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def parse_int_setting(name: str, raw) -> int:
    """Converts a numeric setting; a value that is not an integer raises ValueError naming the setting."""
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'.") from None


def normalize_mode(raw_mode: str | None) -> str:
    """Maps REPLICATION_MODE to one of REPLICATION_MODES; unknown modes raise ValueError."""
    mode = (raw_mode or "").strip().lower()
    if mode in PRIMARY_ALIASES:
        return MODE_PRIMARY
    if mode not in REPLICATION_MODES:
        raise ValueError(
            f"Unknown REPLICATION_MODE '{raw_mode}'. Expected one of: master, primary, slave, snapshot, backup.")
    return mode


def parse_pg_major(pg_major: str) -> tuple:
    """
    Parses a PostgreSQL major version string into a comparable tuple.

    '9.6' -> (9, 6), '16' -> (16,). Anything after the major part (e.g. '16.2',
    '17beta1') is ignored for 10+ releases, which only have one major component.
    """
    match = re.match(r"^\s*(\d+)(?:\.(\d+))?", str(pg_major))
    if not match:
        raise ValueError(f"Invalid PostgreSQL major version '{pg_major}'.")
    major = int(match.group(1))
    if major < 10 and match.group(2) is not None:
        return (major, int(match.group(2)))
    return (major,)


def read_pg_major(pgdata: str) -> str | None:
    """Reads the major version from PGDATA/PG_VERSION, or returns None if it's not there yet."""
    version_file = os.path.join(pgdata, "PG_VERSION")
    try:
        with open(version_file, "r") as f:
            return f.read().strip() or None
    except FileNotFoundError:
        return None


def parse_extension_list(raw: str | None) -> list:
    """Splits POSTGRES_DB_EXTENSION on commas and whitespace, dropping duplicates but keeping order."""
    extensions = []
    for name in re.split(r"[\s,]+", raw or ""):
        if name and name not in extensions:
            extensions.append(name)
    return extensions


def load_config_file(config_path: str) -> configparser.ConfigParser:
    """Loads the optional INI file. A path that was given but doesn't exist is an error."""
    if not os.path.exists(config_path):
        raise ValueError(f"Configuration file '{config_path}' not found.")
    # Keys in [postgresql] are GUC names, keep their case as written
    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str
    try:
        config.read(config_path)
    except configparser.Error as e:
        raise ValueError(f"Error parsing configuration file '{config_path}': {e}") from e
    return config


def build_arg_parser(environ=None, file_defaults: dict | None = None) -> argparse.ArgumentParser:
    """Builds the argument parser. Defaults come from `environ`, then `file_defaults`."""
    environ = os.environ if environ is None else environ
    file_defaults = {k.lower(): v for k, v in (file_defaults or {}).items()}

    def default(env_var, fallback=None):
        # Empty variables count as unset, docker-compose tends to pass them through as ""
        return environ.get(env_var) or file_defaults.get(env_var.lower()) or fallback

    parser = argparse.ArgumentParser(
        prog="pg-entrypoint",
        description="Configure a PostgreSQL data directory as a primary, streaming replica, snapshot or backup puller.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-c', '--config', default=environ.get(CONFIG_ENV_VAR), help=f"Optional INI configuration file. ENV: {CONFIG_ENV_VAR}")
    parser.add_argument('-v', '--verbose', action='store_true', help="Shortcut for --log-level DEBUG.")
    parser.add_argument('--log-level', default=default("LOG_LEVEL", "INFO"), help="Logging level: DEBUG, INFO, WARNING or ERROR. ENV: LOG_LEVEL")
    parser.add_argument('--log-file', default=default("PG_ENTRYPOINT_LOG_FILE"), help="Also write log records to this file. ENV: PG_ENTRYPOINT_LOG_FILE")

    local_group = parser.add_argument_group('Local PostgreSQL Settings')
    local_group.add_argument('--pgdata', default=default("PGDATA", DEFAULT_PGDATA), help="Data directory. ENV: PGDATA")
    local_group.add_argument('--pg-major', default=default("PG_MAJOR"), help="PostgreSQL major version. Read from PGDATA/PG_VERSION when unset. ENV: PG_MAJOR")
    local_group.add_argument('--log-dir', default=default("PG_LOG_DIR"), help="Server log_directory. Defaults to PGDATA/pg_log. ENV: PG_LOG_DIR")
    local_group.add_argument('--bindir', default=default("PG_BINDIR"), help="Directory holding pg_ctl, pg_basebackup and pg_isready. Uses PATH when unset. ENV: PG_BINDIR")
    local_group.add_argument('--socket-host', default=default("PGHOST"), help="Socket directory or host of the local server. ENV: PGHOST")
    local_group.add_argument('--local-port', default=default("PGPORT"), help="Port of the local server. ENV: PGPORT")
    local_group.add_argument('--superuser', default=default("POSTGRES_USER", DEFAULT_SUPERUSER), help="Superuser used for bootstrap SQL. ENV: POSTGRES_USER")

    replication_group = parser.add_argument_group('Replication Settings')
    replication_group.add_argument('--replication-mode', default=default("REPLICATION_MODE", MODE_PRIMARY), help="primary (or master), slave, snapshot or backup. ENV: REPLICATION_MODE")
    replication_group.add_argument('--replication-host', default=default("REPLICATION_HOST"), help="Upstream host. ENV: REPLICATION_HOST")
    replication_group.add_argument('--replication-port', default=default("REPLICATION_PORT", DEFAULT_REPLICATION_PORT), help="Upstream port. ENV: REPLICATION_PORT")
    replication_group.add_argument('--replication-user', default=default("REPLICATION_USER", DEFAULT_REPLICATION_USER), help="Replication role. ENV: REPLICATION_USER")
    replication_group.add_argument('--replication-pass', default=default("REPLICATION_PASS"), help="Replication role password. ENV: REPLICATION_PASS")
    replication_group.add_argument('--replication-timeout', default=default("REPLICATION_TIMEOUT", DEFAULT_REPLICATION_TIMEOUT), help="Seconds to wait for the upstream to accept connections. ENV: REPLICATION_TIMEOUT")
    replication_group.add_argument('--application-name', default=default("REPLICATION_APP_NAME"), help="application_name in primary_conninfo. Defaults to the hostname. ENV: REPLICATION_APP_NAME")
    replication_group.add_argument('--hba-address', default=default("HBA_ADDRESS", DEFAULT_HBA_ADDRESS), help="Address range allowed in pg_hba.conf on the primary. ENV: HBA_ADDRESS")
    replication_group.add_argument('--backup-dir', default=default("BACKUP_DIR", DEFAULT_BACKUP_DIR), help="Where backup mode stores base backups. ENV: BACKUP_DIR")

    database_group = parser.add_argument_group('Default Database Settings')
    database_group.add_argument('--db-name', default=default("POSTGRES_DB_NAME"), help="Database to create on the primary. ENV: POSTGRES_DB_NAME")
    database_group.add_argument('--db-user', default=default("POSTGRES_DB_USER"), help="Owner role of the database. ENV: POSTGRES_DB_USER")
    database_group.add_argument('--db-password', default=default("POSTGRES_DB_PASSWORD"), help="Password of the owner role. ENV: POSTGRES_DB_PASSWORD")
    database_group.add_argument('--extensions', default=default("POSTGRES_DB_EXTENSION"), help="Comma or space separated extensions to create. ENV: POSTGRES_DB_EXTENSION")
    return parser


def parse_settings(argv=None, environ=None) -> argparse.Namespace:
    """
    Parses and validates the entrypoint settings.

    Args:
        argv (list, optional): Command-line arguments. Defaults to sys.argv[1:].
        environ (Mapping, optional): Environment to read. Defaults to os.environ.

    Returns:
        argparse.Namespace: The settings, with derived fields filled in
                            (pg_version tuple, extension list, extra_params).

    Raises:
        ValueError: On an unknown mode, a missing upstream host, a non-numeric
                    port or timeout, an unknown log level, an unreadable
                    config file or an undeterminable PostgreSQL version.
    """
    environ = os.environ if environ is None else environ

    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument('-c', '--config', default=environ.get(CONFIG_ENV_VAR))
    pre_args, _ = pre_parser.parse_known_args(argv)

    file_defaults, extra_params = {}, {}
    if pre_args.config:
        config = load_config_file(pre_args.config)
        if config.has_section(ENTRYPOINT_SECTION):
            file_defaults = dict(config.items(ENTRYPOINT_SECTION))
        if config.has_section(POSTGRESQL_SECTION):
            extra_params = dict(config.items(POSTGRESQL_SECTION))

    args = build_arg_parser(environ, file_defaults).parse_args(argv)

    args.replication_mode = normalize_mode(args.replication_mode)
    if args.replication_mode != MODE_PRIMARY and not args.replication_host:
        raise ValueError(f"REPLICATION_HOST is required in '{args.replication_mode}' mode.")
    args.replication_port = parse_int_setting("REPLICATION_PORT", args.replication_port)
    args.replication_timeout = parse_int_setting("REPLICATION_TIMEOUT", args.replication_timeout)
    if args.replication_timeout < 1:
        raise ValueError("REPLICATION_TIMEOUT must be at least 1 second.")

    args.pg_major_explicit = bool(args.pg_major)
    pg_major = args.pg_major or read_pg_major(args.pgdata)
    if not pg_major:
        raise ValueError(f"PG_MAJOR is not set and {os.path.join(args.pgdata, 'PG_VERSION')} is not readable.")
    args.pg_major = str(pg_major)
    args.pg_version = parse_pg_major(pg_major)

    args.log_level = "DEBUG" if args.verbose else str(args.log_level).strip().upper()
    if args.log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got '{args.log_level}'.")
    args.log_dir = args.log_dir or os.path.join(args.pgdata, "pg_log")
    args.application_name = args.application_name or socket.gethostname()
    args.extensions = parse_extension_list(args.extensions)
    args.extra_params = extra_params
    return args


def refresh_pg_version(settings: argparse.Namespace) -> bool:
    """
    Re-reads PGDATA/PG_VERSION after the data directory was replaced by a clone.

    A version given through PG_MAJOR is left alone. When PG_VERSION is missing the
    previous version is kept; a file that cannot be parsed fails the step.
    """
    if settings.pg_major_explicit:
        return True
    pg_major = read_pg_major(settings.pgdata)
    if not pg_major:
        logging.warning(f"{os.path.join(settings.pgdata, 'PG_VERSION')} not found after clone, keeping version {settings.pg_major}.")
        return True
    try:
        pg_version = parse_pg_major(pg_major)
    except ValueError as e:
        logging.error(f"Cannot read the cloned server version: {e}")
        return False
    if pg_version != settings.pg_version:
        logging.info(f"Cloned data directory is PostgreSQL {pg_major} (was {settings.pg_major}).")
    settings.pg_major = pg_major
    settings.pg_version = pg_version
    return True


def describe_settings(settings: argparse.Namespace) -> dict:
    """Returns the effective settings for logging, with passwords masked."""
    described = {}
    for key, value in sorted(vars(settings).items()):
        if key in PASSWORD_FIELDS and value:
            value = "********"
        described[key] = value
    return described
