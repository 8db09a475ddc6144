"""
Database connection for the SQL-backed element mapper.

Each tree keeps its element records in its own table, inside a namespace
derived from the SHA1 of the tree's storage path, so several trees can share
one database without colliding:

    schema "index<sha1(storage_path)>", table "tree_elements"

PostgreSQL gets a real schema. Dialects without schema support (SQLite)
get the namespace as a table-name prefix instead.
"""
import hashlib
import os
from typing import Optional, Tuple

from dotenv import load_dotenv
from sqlalchemy import Column, Double, Integer, MetaData, Table, Text, create_engine
from sqlalchemy.engine import Engine, URL

# Load environment variables from .env file
load_dotenv()

# Full URL wins; otherwise assemble one from the individual keys
DATABASE_URL = os.getenv("INDEX_DATABASE_URL")
DB_USER = os.getenv("INDEX_DB_USER")
DB_PASSWORD = os.getenv("INDEX_DB_PASSWORD")
DB_HOST = os.getenv("INDEX_DB_HOST")
DB_PORT = int(os.getenv("INDEX_DB_PORT", "5432"))
DB_NAME = os.getenv("INDEX_DB_NAME")

ELEMENT_TABLE_NAME = "tree_elements"

_engine: Optional[Engine] = None


def get_database_url() -> Optional[str]:
    """Configured database URL, or None when the SQL backend is not configured."""
    if DATABASE_URL:
        return DATABASE_URL
    if DB_HOST and DB_NAME:
        url = URL.create(
            "postgresql+psycopg2",
            username=DB_USER,
            password=DB_PASSWORD,
            host=DB_HOST,
            port=DB_PORT,
            database=DB_NAME,
        )
        return url.render_as_string(hide_password=False)
    return None


def is_database_configured() -> bool:
    """Check if database connection is configured."""
    return get_database_url() is not None


def get_engine() -> Optional[Engine]:
    """
    Shared engine (connection pool) for the configured database.

    Returns None if database is not configured (useful for tests).
    """
    global _engine
    if _engine is None:
        url = get_database_url()
        if url is None:
            return None
        _engine = create_engine(url, pool_pre_ping=True)
    return _engine


def namespace_for(storage_path: str) -> str:
    """Deterministic namespace for a tree: "index" + SHA1 hex of its storage path."""
    digest = hashlib.sha1(str(storage_path).encode("utf-8")).hexdigest()
    return f"index{digest}"


def supports_schemas(engine: Engine) -> bool:
    return engine.dialect.name not in ("sqlite",)


def element_table(engine: Engine, storage_path: str) -> Tuple[Table, Optional[str]]:
    """
    Table definition holding one tree's element records.

    Returns:
        Tuple of (table, schema name or None when the namespace is a prefix)
    """
    namespace = namespace_for(storage_path)
    metadata = MetaData()
    if supports_schemas(engine):
        schema, name = namespace, ELEMENT_TABLE_NAME
    else:
        schema, name = None, f"{namespace}_{ELEMENT_TABLE_NAME}"

    table = Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("identifier", Text, nullable=False, index=True),
        Column("nbenv", Integer, nullable=False),
        Column("minx", Double, nullable=False),
        Column("maxx", Double, nullable=False),
        Column("miny", Double, nullable=False),
        Column("maxy", Double, nullable=False),
        schema=schema,
    )
    return table, schema
