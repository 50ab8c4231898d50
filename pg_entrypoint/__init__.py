"""
PostgreSQL container entrypoint hook.

Configures a PostgreSQL data directory at container start as a primary, a
streaming replica ("slave"), a one-shot snapshot or a backup puller, driven by
environment variables.
"""

__version__ = "0.1.0"
