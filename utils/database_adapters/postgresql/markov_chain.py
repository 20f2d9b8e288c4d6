#!/usr/bin/env python3
"""
MarkovChainPostgreSqlAdapter - PostgreSQL Database Adapter for Markov Chain Models

This module provides a dedicated PostgreSQL adapter for Markov Chain models,
abstracting database operations away from the core model logic. It handles:
- Database configuration loading (dict, DATABASE_URL or YAML files)
- Thread-safe connection pooling
- One table ("collection") per trained chain, unique on the prefix key
- Listing, counting, iterating and upserting chain nodes

A node is a persisted chain entry: {"key": <prefix string>, "choices": [<suffix>, ...]}.
Upserting an existing key appends the new choices to the stored ones, so the
observation frequency of every suffix accumulates across sessions.
"""

import os
import yaml
import psycopg2
from psycopg2 import pool, sql

from data_preprocessing.text_preprocessor import sanitize


class MarkovChainPostgreSqlAdapter:
    """
    PostgreSQL adapter for Markov Chain models.

    This adapter encapsulates all database operations needed by the Markov Chain model,
    providing a clean interface for database interactions.
    """

    def __init__(self, environment="development", logger=None, db_config=None,
                 min_connections=1, max_connections=10):
        """
        Initialize the PostgreSQL adapter.

        Args:
            environment (str): Environment setting ('development', 'test', ...)
            logger: Logger instance for logging database operations
            db_config (dict, optional): PostgreSQL configuration dictionary
            min_connections (int): Connections opened up front
            max_connections (int): Upper bound of pooled connections
        """
        self.environment = environment
        self.logger = logger
        self.conn_pool = None
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.table_prefix = f"markov_{sanitize(environment, strict=True)}"

        self.is_available = False

        self.db_config = db_config or self.load_db_config()

        if self.db_config:
            self.is_available = self._initialize_connection_pool()
        else:
            if self.logger:
                self.logger.warning("No database configuration available, adapter will not be usable", extra={
                    "metrics": {"environment": self.environment}
                })

    def load_db_config(self):
        """
        Load database configuration.

        The DATABASE_URL environment variable wins, then configs/database_<environment>.yaml,
        then configs/database.yaml.

        Returns:
            dict: Database configuration or None if not found
        """
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            if self.logger:
                self.logger.info("Database config loaded from DATABASE_URL", extra={
                    "metrics": {"environment": self.environment}
                })
            return {"dsn": database_url}

        # Go up directory levels until we find the configs directory or reach root
        current_dir = os.path.dirname(os.path.abspath(__file__))
        project_root = current_dir
        while project_root != os.path.dirname(project_root):
            if os.path.exists(os.path.join(project_root, "configs")):
                break
            project_root = os.path.dirname(project_root)

        config_dir = os.path.join(project_root, "configs")
        config_paths = [
            os.path.join(config_dir, f"database_{self.environment}.yaml"),
            os.path.join(config_dir, "database.yaml"),
        ]

        for config_path in config_paths:
            if not os.path.exists(config_path):
                continue
            try:
                with open(config_path, "r") as f:
                    config = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                if self.logger:
                    self.logger.warning(
                        f"Error loading database config from {config_path}: {e}"
                    )
                continue

            if self.logger:
                self.logger.info("Database config loaded", extra={
                    "metrics": {
                        "config_path": config_path,
                        "environment": self.environment,
                    }
                })
            return config

        if self.logger:
            self.logger.warning("No database configuration found", extra={
                "metrics": {"environment": self.environment}
            })
        return None

    def _initialize_connection_pool(self):
        """
        Initialize the database connection pool based on configuration.

        Returns:
            bool: True if connection pool was successfully initialized, False otherwise
        """
        try:
            if "dsn" in self.db_config:
                connect_kwargs = {"dsn": self.db_config["dsn"]}
            else:
                for param in ("host", "dbname", "user"):
                    if param not in self.db_config:
                        if self.logger:
                            self.logger.warning(f"Missing required database parameter: {param}")
                        return False

                connect_kwargs = {
                    "host": self.db_config.get("host", "localhost"),
                    "port": self.db_config.get("port", 5432),
                    "dbname": self.db_config.get("dbname", "markovianomatic"),
                    "user": self.db_config.get("user", "postgres"),
                    "password": self.db_config.get("password", ""),
                }

            # Threaded: save workers borrow connections concurrently
            self.conn_pool = pool.ThreadedConnectionPool(
                self.min_connections,
                self.max_connections,
                **connect_kwargs
            )

            if self.logger:
                self.logger.info("Database connection established", extra={
                    "metrics": {
                        "host": self.db_config.get("host", "dsn"),
                        "dbname": self.db_config.get("dbname", "dsn"),
                        "environment": self.environment,
                    }
                })
            return True

        except psycopg2.Error as e:
            if self.logger:
                self.logger.warning("Database connection failed", extra={
                    "metrics": {
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "fallback": "in-memory chain"
                    }
                })
            return False

    def get_connection(self):
        """
        Get a connection from the pool.

        Returns:
            connection: Database connection or None if pool not available
        """
        if self.conn_pool:
            try:
                return self.conn_pool.getconn()
            except psycopg2.Error as e:
                if self.logger:
                    self.logger.error(f"Error getting connection from pool: {e}")
                return None
        return None

    def return_connection(self, conn):
        """
        Return a connection to the pool.

        Args:
            conn: The connection to return to the pool
        """
        if self.conn_pool and conn:
            try:
                self.conn_pool.putconn(conn)
            except psycopg2.Error as e:
                if self.logger:
                    self.logger.error(f"Error returning connection to pool: {e}")

    def is_usable(self):
        """
        Check if this adapter is usable (properly configured and connected).

        Returns:
            bool: True if the adapter can be used, False otherwise
        """
        return self.is_available and self.conn_pool is not None

    def table_name(self, collection):
        """Table holding the nodes of a collection."""
        return f"{self.table_prefix}_{sanitize(collection, strict=True)}"

    def list_collections(self):
        """
        Enumerate the collections (trained chains) available for this environment.

        Returns:
            list: Sorted collection names, empty on failure
        """
        conn = self.get_connection()
        if not conn:
            return []

        prefix = f"{self.table_prefix}_"
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT table_name FROM information_schema.tables
                    WHERE table_schema = current_schema()
                      AND LEFT(table_name, %s) = %s
                    ORDER BY table_name
                """,
                    (len(prefix), prefix),
                )
                names = [row[0][len(prefix):] for row in cur.fetchall()]
            conn.commit()
            return names

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error listing collections: {e}")
            return []

        finally:
            self.return_connection(conn)

    def connect(self, collection):
        """
        Open (creating it if needed) the table of a collection, unique on key.

        Args:
            collection (str): Collection name

        Returns:
            str: Table handle to pass to the other node operations, or None on failure
        """
        conn = self.get_connection()
        if not conn:
            return None

        table = self.table_name(collection)
        try:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("""
                    CREATE TABLE IF NOT EXISTS {} (
                        id SERIAL PRIMARY KEY,
                        key TEXT NOT NULL,
                        choices TEXT[] NOT NULL DEFAULT '{{}}'
                    )
                """).format(sql.Identifier(table))
                )
                cur.execute(
                    sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} (key)").format(
                        sql.Identifier(f"idx_{table}_key"), sql.Identifier(table))
                )

            conn.commit()
            if self.logger:
                self.logger.info(f"Collection {collection} ready", extra={
                    "metrics": {"table": table, "environment": self.environment},
                    "collection": collection
                })
            return table

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error setting up collection {collection}: {e}", extra={
                    "collection": collection
                })
            return None

        finally:
            self.return_connection(conn)

    def count_entries(self, handle):
        """
        Count the nodes stored in a collection.

        Args:
            handle (str): Table handle returned by connect()

        Returns:
            int: Number of nodes, 0 on failure
        """
        conn = self.get_connection()
        if not conn:
            return 0

        try:
            with conn.cursor() as cur:
                cur.execute(sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(handle)))
                result = cur.fetchone()
            conn.commit()
            return result[0] if result else 0

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error counting entries: {e}")
            return 0

        finally:
            self.return_connection(conn)

    def iterate_all(self, handle, batch_size=2000):
        """
        Lazily iterate every node of a collection with a server-side cursor.

        Args:
            handle (str): Table handle returned by connect()
            batch_size (int): Rows fetched per round trip

        Yields:
            dict: {"key": str, "choices": list}
        """
        conn = self.get_connection()
        if not conn:
            return

        try:
            with conn.cursor(name=f"iterate_{handle}") as cur:
                cur.itersize = batch_size
                cur.execute(sql.SQL("SELECT key, choices FROM {} ORDER BY id").format(
                    sql.Identifier(handle)))
                for key, choices in cur:
                    yield {"key": key, "choices": list(choices or [])}
            conn.commit()

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error iterating collection: {e}", extra={
                    "metrics": {"table": handle}
                })

        finally:
            self.return_connection(conn)

    def upsert_entry(self, handle, key, choices):
        """
        Persist a node. If the key exists the choices are appended to the stored
        list, keeping the statistical weight (no dedup, no sort).

        Args:
            handle (str): Table handle returned by connect()
            key (str): Prefix key
            choices (list): Suffixes observed after the key

        Returns:
            bool: True if successful, False otherwise
        """
        conn = self.get_connection()
        if not conn:
            if self.logger:
                self.logger.warning("Failed to get connection for node upsert")
            return False

        try:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL("""
                    INSERT INTO {table} (key, choices)
                    VALUES (%s, %s::text[])
                    ON CONFLICT (key)
                    DO UPDATE SET choices = {table}.choices || EXCLUDED.choices
                """).format(table=sql.Identifier(handle)),
                    (key, list(choices)),
                )

            conn.commit()
            return True

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error upserting node entry: {e}", extra={
                    "metrics": {"table": handle, "key": key}
                })
            return False

        finally:
            self.return_connection(conn)

    def drop_collection(self, handle):
        """
        Remove a collection and all of its nodes.

        Args:
            handle (str): Table handle returned by connect()

        Returns:
            bool: True if successful, False otherwise
        """
        conn = self.get_connection()
        if not conn:
            return False

        try:
            with conn.cursor() as cur:
                cur.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(handle)))
            conn.commit()

            if self.logger:
                self.logger.info(f"Dropped collection table {handle}", extra={
                    "metrics": {"environment": self.environment}
                })
            return True

        except psycopg2.Error as e:
            conn.rollback()
            if self.logger:
                self.logger.error(f"Error dropping collection: {e}")
            return False

        finally:
            self.return_connection(conn)

    def close_connections(self):
        """Close all connections in the pool."""
        if self.conn_pool:
            try:
                self.conn_pool.closeall()
                if self.logger:
                    self.logger.info("Database connections closed")
            except psycopg2.Error as e:
                if self.logger:
                    self.logger.error(f"Error closing database connections: {e}")
