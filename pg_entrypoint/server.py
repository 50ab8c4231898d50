"""
Wrappers around the PostgreSQL binaries the entrypoint drives: pg_ctl,
pg_isready and pg_basebackup, plus the data directory housekeeping around them.
"""
import logging
import os
import shutil
import subprocess
import time


def pg_binary(name: str, bindir: str | None = None) -> str:
    """Returns the path of a PostgreSQL binary, or the bare name to resolve through PATH."""
    return os.path.join(bindir, name) if bindir else name


def execute_shell_command(command: list, env: dict | None = None) -> tuple[str | None, str | None, int]:
    """
    Executes an external command and returns its standard output, standard error, and return code.

    Args:
        command (list): The command and its arguments. Never run through a shell.
        env (dict, optional): Extra environment variables, layered over os.environ.

    Returns:
        tuple[str | None, str | None, int]: (stdout, stderr, returncode). If the command
                                            could not be started at all, (None, error message, -1).
    """
    cmd_str_for_print = ' '.join(command)

    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    try:
        logging.info(f"Executing command: {cmd_str_for_print}")
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=full_env,
            text=True
        )
        stdout, stderr = process.communicate()

        if process.returncode == 0:
            if stdout and stdout.strip():
                logging.debug(f"Stdout from '{cmd_str_for_print}':\n{stdout.strip()}")
        else:
            logging.error(f"Command '{cmd_str_for_print}' failed with code {process.returncode}. Error:\n{(stderr or '').strip()}")
        return stdout, stderr, process.returncode
    except OSError as e:
        # Missing binary or permission problem
        logging.error(f"OS error while executing command '{cmd_str_for_print}': {e}")
        return None, str(e), -1
    except subprocess.SubprocessError as e:
        logging.error(f"Subprocess error while executing command '{cmd_str_for_print}': {e}")
        return None, str(e), -1


# --- Local server control ---
def server_is_running(pgdata: str, bindir: str | None = None) -> bool:
    """pg_ctl status exits 0 when a server is running on this data directory, 3 when not."""
    command = [pg_binary("pg_ctl", bindir), "-D", pgdata, "status"]
    try:
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        logging.error(f"Could not run pg_ctl status for '{pgdata}': {e}")
        return False
    return result.returncode == 0


def start_server(pgdata: str, bindir: str | None = None, local_only: bool = False) -> bool:
    """
    Starts the server and waits until it accepts connections.

    With local_only the server listens on its Unix socket only, which is what a
    bootstrap step wants while roles and passwords are still being created.
    """
    command = [pg_binary("pg_ctl", bindir), "-D", pgdata, "-w"]
    if local_only:
        command += ["-o", "-c listen_addresses=''"]
    command.append("start")
    _stdout, _stderr, returncode = execute_shell_command(command)
    if returncode != 0:
        logging.error(f"Failed to start PostgreSQL on '{pgdata}'.")
        return False
    logging.info(f"PostgreSQL started on '{pgdata}'.")
    return True


def stop_server(pgdata: str, bindir: str | None = None) -> bool:
    command = [pg_binary("pg_ctl", bindir), "-D", pgdata, "-m", "fast", "-w", "stop"]
    _stdout, _stderr, returncode = execute_shell_command(command)
    if returncode != 0:
        logging.error(f"Failed to stop PostgreSQL on '{pgdata}'.")
        return False
    logging.info(f"PostgreSQL stopped on '{pgdata}'.")
    return True


# --- Upstream ---
def host_is_ready(host: str, port: int, user: str | None = None, bindir: str | None = None) -> bool:
    command = [pg_binary("pg_isready", bindir), "-h", host, "-p", str(port), "-t", "1"]
    if user:
        command += ["-U", user]
    try:
        result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        logging.error(f"Could not run pg_isready against {host}:{port}: {e}")
        return False
    return result.returncode == 0


def wait_for_host(host: str, port: int, user: str | None = None, timeout: int = 60, interval: float = 1,
                  bindir: str | None = None, sleep=time.sleep) -> bool:
    """
    Polls pg_isready until the upstream accepts connections.

    Makes at most `timeout` attempts, sleeping `interval` seconds between them.

    Args:
        host (str): Upstream host.
        port (int): Upstream port.
        user (str, optional): Role passed to pg_isready, only used for the server log.
        timeout (int, optional): Number of attempts. Defaults to 60.
        interval (float, optional): Seconds between attempts. Defaults to 1.
        bindir (str, optional): Directory holding pg_isready.
        sleep (callable, optional): Sleep function. Defaults to time.sleep.

    Returns:
        bool: True once the host is ready, False if it never became ready.
    """
    logging.info(f"Waiting up to {timeout}s for {host}:{port} to accept connections...")
    for attempt in range(1, timeout + 1):
        if host_is_ready(host, port, user, bindir):
            logging.info(f"{host}:{port} is accepting connections (attempt {attempt}).")
            return True
        logging.debug(f"{host}:{port} not ready yet (attempt {attempt}/{timeout}).")
        if attempt < timeout:
            sleep(interval)
    logging.error(f"Timed out after {timeout}s waiting for {host}:{port} to accept connections.")
    return False


def perform_pg_basebackup(host: str, port: int, user: str, password: str | None, target_dir: str,
                          tar_format: bool = False, bindir: str | None = None,
                          backup_label: str = "pg_entrypoint") -> bool:
    """
    Clones the upstream's data directory with pg_basebackup.

    WAL is streamed alongside the copy so the result is self-consistent. The
    password travels in PGPASSWORD and never appears on the command line.

    Args:
        host (str): Upstream host.
        port (int): Upstream port.
        user (str): Role with the REPLICATION attribute.
        password (str | None): Its password.
        target_dir (str): Destination directory. Must be empty or absent.
        tar_format (bool, optional): Write gzip'd tar files instead of a plain data
                                     directory. Defaults to False.
        bindir (str, optional): Directory holding pg_basebackup.
        backup_label (str, optional): Label recorded in the backup.

    Returns:
        bool: True if pg_basebackup completed successfully, False otherwise.
    """
    try:
        if os.path.exists(target_dir):
            if not os.path.isdir(target_dir):
                logging.error(f"Path '{target_dir}' exists but is not a directory. Aborting.")
                return False
            if os.listdir(target_dir):
                logging.error(f"Directory '{target_dir}' exists and is not empty. Aborting pg_basebackup to prevent data loss.")
                return False
        else:
            os.makedirs(target_dir, exist_ok=True)
            logging.info(f"Created directory '{target_dir}'.")
        os.chmod(target_dir, 0o700)
    except OSError as e:
        logging.error(f"OS error while preparing '{target_dir}' for pg_basebackup: {e}")
        return False

    command = [
        pg_binary("pg_basebackup", bindir), "-h", host, "-p", str(port), "-U", user,
        "-D", target_dir, "-X", "stream", "-w", "-l", backup_label
    ]
    command += ["-F", "t", "-z"] if tar_format else ["-F", "p"]
    env = {"PGPASSWORD": password} if password else None

    logging.info(f"Cloning {host}:{port} as '{user}' into '{target_dir}'...")
    _stdout, _stderr, returncode = execute_shell_command(command, env=env)
    if returncode != 0:
        logging.error(f"pg_basebackup from {host}:{port} into '{target_dir}' failed.")
        return False
    logging.info(f"pg_basebackup completed successfully to '{target_dir}'.")
    return True


def clear_data_directory(pgdata: str) -> bool:
    """Removes everything inside PGDATA but keeps the directory itself (it's often a volume mount)."""
    try:
        os.makedirs(pgdata, exist_ok=True)
        for entry in os.listdir(pgdata):
            path = os.path.join(pgdata, entry)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        os.chmod(pgdata, 0o700)
    except OSError as e:
        logging.error(f"Error clearing data directory '{pgdata}': {e}")
        return False
    logging.info(f"Cleared data directory '{pgdata}'.")
    return True
