"""
Line-oriented patching of postgresql.conf, pg_hba.conf and the recovery settings file.

These helpers only do what the server's own parser needs: find a `key = value`
line (possibly commented out), rewrite it, or append it. They are not a general
config parser.
"""
import logging
import os
import re

POSTGRESQL_CONF = "postgresql.conf"
PG_HBA_CONF = "pg_hba.conf"
RECOVERY_CONF = "recovery.conf"
AUTO_CONF = "postgresql.auto.conf"

# Values written without quotes. Anything else is single-quoted.
KEYWORD_VALUES = ['on', 'off', 'true', 'false', 'yes', 'no', 'replica', 'logical', 'minimal', 'hot_standby',
                  'archive', 'local', 'remote_write', 'remote_apply']

# Settings whose values carry credentials and never go to the log
SENSITIVE_PARAMS = ["primary_conninfo", "restore_command", "archive_command"]


def _is_escaped(inner: str) -> bool:
    """True if a quoted value's body has only doubled quotes and no backslash escapes."""
    return "\\" not in inner and "'" not in inner.replace("''", "")


def format_conf_value(value) -> str:
    """
    Renders a value in postgresql.conf syntax.

    Booleans become on/off, integers and known keywords are written bare,
    already-quoted strings are kept when their inner quotes are
    doubled, everything else is single-quoted with
    backslashes escaped and embedded quotes doubled.
    """
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if text.isdigit() or text.lower() in KEYWORD_VALUES:
        return text
    if len(text) >= 2 and text.startswith("'") and text.endswith("'") and _is_escaped(text[1:-1]):
        return text
    return "'" + text.replace("\\", "\\\\").replace("'", "''") + "'"


def _loggable(param: str, line: str) -> str:
    """The line as it may appear in the log: sensitive settings show their name only."""
    if param.lower() in SENSITIVE_PARAMS:
        return f"{param} = ********"
    return line.strip()


def _param_pattern(param: str) -> re.Pattern:
    # GUC names are case-insensitive
    return re.compile(r"^\s*(#\s*)?(" + re.escape(param) + r")\s*=\s*(.*)$", re.IGNORECASE)


def _read_lines(config_path: str) -> list | None:
    try:
        with open(config_path, 'r') as f:
            return f.readlines()
    except IOError as e:
        logging.error(f"Error reading file {config_path}: {e}")
        return None


def _write_lines(config_path: str, lines: list) -> bool:
    try:
        with open(config_path, 'w') as f:
            f.writelines(lines)
        return True
    except IOError as e:
        logging.error(f"Error writing file {config_path}: {e}")
        return False


def set_conf_param(config_path: str, param: str, value, create: bool = False) -> bool:
    """
    Sets `param = value` in a postgresql.conf-style file.

    The first active `param = ...` line is rewritten and any later active
    duplicates are commented out. With no active line, the first commented-out
    one is rewritten in place so the setting stays next to its documentation.
    With neither, the setting is appended.

    Args:
        config_path (str): Path of the file to patch.
        param (str): Setting name.
        value: Setting value, rendered with format_conf_value().
        create (bool, optional): Create the file (mode 0600) when it's missing.
                                 Defaults to False.

    Returns:
        bool: True if the file holds the setting afterwards, False on I/O errors
              or a missing file.
    """
    if not os.path.exists(config_path):
        if not create:
            logging.error(f"Configuration file {config_path} not found.")
            return False
        try:
            fd = os.open(config_path, os.O_WRONLY | os.O_CREAT, 0o600)
            os.close(fd)
            logging.info(f"Created {config_path}.")
        except OSError as e:
            logging.error(f"Error creating file {config_path}: {e}")
            return False

    lines = _read_lines(config_path)
    if lines is None:
        return False

    pattern = _param_pattern(param)
    new_line = f"{param} = {format_conf_value(value)}\n"
    matches = [(i, pattern.match(line.strip())) for i, line in enumerate(lines)]
    matches = [(i, m) for i, m in matches if m]
    active = [i for i, m in matches if not m.group(1)]
    commented = [i for i, m in matches if m.group(1)]

    final_lines = list(lines)
    if active:
        final_lines[active[0]] = new_line
        for i in active[1:]:
            final_lines[i] = f"# {lines[i].strip()}\n"
            logging.info(f"Commented out duplicate setting in {config_path}: {_loggable(param, lines[i])}")
    elif commented:
        final_lines[commented[0]] = new_line
    else:
        if final_lines and not final_lines[-1].endswith('\n'):
            final_lines[-1] += '\n'
        final_lines.append(new_line)

    if final_lines == lines:
        logging.debug(f"{config_path} already has {_loggable(param, new_line)}")
        return True
    if not _write_lines(config_path, final_lines):
        return False
    logging.info(f"Set setting in {config_path}: {_loggable(param, new_line)}")
    return True


def unset_conf_param(config_path: str, param: str) -> bool:
    """Comments out every active `param = ...` line. A missing file counts as unset."""
    if not os.path.exists(config_path):
        return True
    lines = _read_lines(config_path)
    if lines is None:
        return False

    pattern = _param_pattern(param)
    final_lines = []
    for line in lines:
        match = pattern.match(line.strip())
        if match and not match.group(1):
            final_lines.append(f"# {line.strip()}\n")
            logging.info(f"Commented out setting in {config_path}: {_loggable(param, line)}")
        else:
            final_lines.append(line)

    if final_lines == lines:
        return True
    return _write_lines(config_path, final_lines)


def set_postgresql_param(pgdata: str, param: str, value) -> bool:
    """Sets one setting in PGDATA/postgresql.conf, which must already exist."""
    return set_conf_param(os.path.join(pgdata, POSTGRESQL_CONF), param, value)


def recovery_conf_path(pgdata: str, pg_version: tuple) -> str:
    """recovery.conf before PostgreSQL 12, postgresql.auto.conf from 12 on."""
    if pg_version < (12,):
        return os.path.join(pgdata, RECOVERY_CONF)
    return os.path.join(pgdata, AUTO_CONF)


def set_recovery_param(pgdata: str, param: str, value, pg_version: tuple) -> bool:
    """Sets one standby setting in the file the given server version reads it from."""
    return set_conf_param(recovery_conf_path(pgdata, pg_version), param, value, create=True)


def set_hba_param(pgdata: str, entry: str) -> bool:
    """
    Appends a rule to PGDATA/pg_hba.conf unless an identical rule is already active.

    Rules are compared token by token so that column alignment doesn't matter.

    Args:
        pgdata (str): Data directory.
        entry (str): The rule, e.g. "host replication replicator 0.0.0.0/0 md5".

    Returns:
        bool: True if the rule is present afterwards, False on errors.
    """
    pg_hba_path = os.path.join(pgdata, PG_HBA_CONF)
    if not os.path.exists(pg_hba_path):
        logging.error(f"Configuration file {pg_hba_path} not found.")
        return False

    lines = _read_lines(pg_hba_path)
    if lines is None:
        return False

    wanted = entry.split()
    for line in lines:
        stripped_line = line.strip()
        if not stripped_line or stripped_line.startswith("#"):
            continue
        if stripped_line.split() == wanted:
            logging.info(f"No changes required in {pg_hba_path}, entry already exists: {' '.join(wanted)}")
            return True

    if lines and not lines[-1].endswith('\n'):
        lines.append('\n')
    lines.append(' '.join(wanted) + '\n')
    if not _write_lines(pg_hba_path, lines):
        return False
    logging.info(f"Added HBA entry to {pg_hba_path}: {' '.join(wanted)}")
    return True
