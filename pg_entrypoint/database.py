"""
Bootstrap SQL run against the local server: the replication role, the default
database and its owner, and the requested extensions.
"""
import logging

import psycopg2
from psycopg2 import sql


def connect_to_postgresql(db_name: str, user: str, password: str | None = None, host: str | None = None, port: str | None = None) -> psycopg2.extensions.connection | None:
    """
    Connects to a PostgreSQL database using the provided parameters.

    Args:
        db_name (str): The name of the database to connect to.
        user (str): The username for the connection.
        password (str | None, optional): The password for the user. Not needed over the
                                         local socket with peer or trust auth.
        host (str | None, optional): Host or socket directory. libpq's default when None.
        port (str | None, optional): Port. libpq's default when None.

    Returns:
        psycopg2.extensions.connection | None: A connection object if successful, None otherwise.
    """
    params = {"dbname": db_name, "user": user}
    for key, value in (("password", password), ("host", host), ("port", port)):
        if value:
            params[key] = value
    try:
        conn = psycopg2.connect(**params)
        logging.info(f"Successfully connected to PostgreSQL database: {db_name} as {user}")
        return conn
    except psycopg2.OperationalError as e:
        logging.error(f"Error connecting to PostgreSQL database {db_name} as {user}: {e}")
        return None
    except psycopg2.Error as e:
        logging.error(f"A psycopg2 error occurred while connecting to {db_name} as {user}: {e}")
        return None


def _role_exists(cur, role_name: str) -> bool:
    cur.execute(sql.SQL("SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s"), [role_name])
    return cur.fetchone() is not None


def _database_exists(cur, db_name: str) -> bool:
    cur.execute(sql.SQL("SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s"), [db_name])
    return cur.fetchone() is not None


def create_replication_user(conn_params: dict, replication_user: str, replication_password: str | None) -> bool:
    """
    Creates the replication role, or brings an existing one back in line.

    An existing role gets REPLICATION LOGIN and the configured password again, so
    a container restarted with a new REPLICATION_PASS keeps working.

    Args:
        conn_params (dict): Keyword arguments for connect_to_postgresql(). The user must be
                            allowed to create roles.
        replication_user (str): Role name.
        replication_password (str | None): Role password. Without one the step is skipped,
                                           since replicas could not authenticate anyway.

    Returns:
        bool: True if the role is in place (or the step was skipped), False on error.
    """
    if not replication_password:
        logging.warning(f"REPLICATION_PASS is not set; not creating replication user '{replication_user}'. Replicas will need another auth method.")
        return True

    conn = None
    try:
        conn = connect_to_postgresql(**conn_params)
        if not conn:
            return False

        conn.autocommit = True
        with conn.cursor() as cur:
            if _role_exists(cur, replication_user):
                logging.info(f"Replication user '{replication_user}' already exists, updating its attributes and password.")
                query = sql.SQL("ALTER ROLE {} WITH REPLICATION LOGIN PASSWORD %s").format(sql.Identifier(replication_user))
            else:
                logging.info(f"Creating replication user '{replication_user}'...")
                query = sql.SQL("CREATE ROLE {} WITH REPLICATION LOGIN PASSWORD %s").format(sql.Identifier(replication_user))
            cur.execute(query, [replication_password])
        logging.info(f"Replication user '{replication_user}' is ready.")
        return True
    except psycopg2.Error as e:
        logging.error(f"Database error concerning replication user '{replication_user}': {e}")
        return False
    finally:
        if conn:
            conn.close()


def create_database(conn_params: dict, db_name: str | None, db_user: str | None = None, db_password: str | None = None) -> bool:
    """
    Creates the default database and, if given, its owner role.

    Args:
        conn_params (dict): Keyword arguments for connect_to_postgresql() as a superuser.
        db_name (str | None): Database to create. Nothing happens when it's empty.
        db_user (str | None, optional): Owner role, created with LOGIN if missing. The
                                        connecting superuser owns the database when None.
        db_password (str | None, optional): Password for the owner role.

    Returns:
        bool: True on success or when there's nothing to do, False on error.
    """
    if not db_name:
        logging.info("POSTGRES_DB_NAME is not set; no default database to create.")
        return True

    owner = db_user or conn_params.get("user")
    conn = None
    try:
        conn = connect_to_postgresql(**conn_params)
        if not conn:
            return False

        # CREATE DATABASE cannot run inside a transaction block
        conn.autocommit = True
        with conn.cursor() as cur:
            if db_user:
                if _role_exists(cur, db_user):
                    logging.info(f"Role '{db_user}' already exists.")
                    if db_password:
                        cur.execute(sql.SQL("ALTER ROLE {} WITH LOGIN PASSWORD %s").format(sql.Identifier(db_user)), [db_password])
                elif db_password:
                    logging.info(f"Creating role '{db_user}'...")
                    cur.execute(sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD %s").format(sql.Identifier(db_user)), [db_password])
                else:
                    logging.warning(f"Creating role '{db_user}' without a password. Ensure alternative auth is configured.")
                    cur.execute(sql.SQL("CREATE ROLE {} WITH LOGIN").format(sql.Identifier(db_user)))

            if _database_exists(cur, db_name):
                logging.info(f"Database '{db_name}' already exists.")
            else:
                logging.info(f"Creating database '{db_name}' owned by '{owner}'...")
                cur.execute(sql.SQL("CREATE DATABASE {} OWNER {}").format(sql.Identifier(db_name), sql.Identifier(owner)))

            cur.execute(sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(sql.Identifier(db_name), sql.Identifier(owner)))
        logging.info(f"Database '{db_name}' is ready.")
        return True
    except psycopg2.Error as e:
        logging.error(f"Database error while creating database '{db_name}': {e}")
        return False
    finally:
        if conn:
            conn.close()


def load_extensions(conn_params: dict, extensions: list) -> bool:
    """Runs CREATE EXTENSION IF NOT EXISTS for each name, in the database named by conn_params."""
    if not extensions:
        return True

    db_name = conn_params.get("db_name")
    conn = None
    try:
        conn = connect_to_postgresql(**conn_params)
        if not conn:
            return False

        conn.autocommit = True
        with conn.cursor() as cur:
            for extension in extensions:
                logging.info(f"Creating extension '{extension}' in database '{db_name}'...")
                cur.execute(sql.SQL("CREATE EXTENSION IF NOT EXISTS {}").format(sql.Identifier(extension)))
        logging.info(f"Extensions loaded into '{db_name}': {', '.join(extensions)}")
        return True
    except psycopg2.Error as e:
        logging.error(f"Database error while loading extensions into '{db_name}': {e}")
        return False
    finally:
        if conn:
            conn.close()
