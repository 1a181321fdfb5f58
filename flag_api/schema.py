"""
Table definitions for flags, flaggings, counts and permissions.

Run once against a fresh database:
    py -m flag_api.schema
"""
import logging

from .database import get_db

log = logging.getLogger("flag_api.schema")

TABLES = {
    "flag": """
        CREATE TABLE IF NOT EXISTS flag (
            fid SERIAL PRIMARY KEY,
            entity_type VARCHAR(128) NOT NULL DEFAULT '',
            name VARCHAR(32) UNIQUE NOT NULL,
            title VARCHAR(255) NOT NULL DEFAULT '',
            "global" SMALLINT NOT NULL DEFAULT 0,
            options TEXT
        )
    """,
    "flag_types": """
        CREATE TABLE IF NOT EXISTS flag_types (
            fid INTEGER NOT NULL REFERENCES flag (fid) ON DELETE CASCADE,
            type VARCHAR(128) NOT NULL DEFAULT ''
        )
    """,
    "flagging": """
        CREATE TABLE IF NOT EXISTS flagging (
            flagging_id SERIAL PRIMARY KEY,
            fid INTEGER NOT NULL,
            entity_type VARCHAR(128) NOT NULL DEFAULT '',
            entity_id BIGINT NOT NULL DEFAULT 0,
            uid INTEGER NOT NULL DEFAULT 0,
            sid VARCHAR(64) NOT NULL DEFAULT '',
            "timestamp" BIGINT NOT NULL DEFAULT 0,
            UNIQUE (fid, entity_id, uid, sid)
        )
    """,
    "flag_counts": """
        CREATE TABLE IF NOT EXISTS flag_counts (
            fid INTEGER NOT NULL,
            entity_type VARCHAR(128) NOT NULL DEFAULT '',
            entity_id BIGINT NOT NULL DEFAULT 0,
            count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
            last_updated BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (fid, entity_id)
        )
    """,
    "role_permissions": """
        CREATE TABLE IF NOT EXISTS role_permissions (
            role VARCHAR(64) NOT NULL,
            permission VARCHAR(128) NOT NULL,
            PRIMARY KEY (role, permission)
        )
    """,
    "flag_variables": """
        CREATE TABLE IF NOT EXISTS flag_variables (
            name VARCHAR(128) PRIMARY KEY,
            value TEXT
        )
    """,
    "content_entities": """
        CREATE TABLE IF NOT EXISTS content_entities (
            entity_type VARCHAR(128) NOT NULL,
            entity_id BIGINT NOT NULL,
            bundle VARCHAR(128) NOT NULL DEFAULT '',
            label VARCHAR(255) NOT NULL DEFAULT '',
            url VARCHAR(512),
            uid INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (entity_type, entity_id)
        )
    """,
    "platform_users": """
        CREATE TABLE IF NOT EXISTS platform_users (
            id SERIAL PRIMARY KEY,
            username VARCHAR(100) UNIQUE NOT NULL,
            password_hash VARCHAR(256) NOT NULL,
            role VARCHAR(20) NOT NULL DEFAULT 'read',
            created_at TIMESTAMP DEFAULT NOW()
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS flagging_entity_idx ON flagging (entity_type, entity_id, uid, sid)",
    "CREATE INDEX IF NOT EXISTS flagging_user_idx ON flagging (fid, uid, sid)",
    "CREATE INDEX IF NOT EXISTS flag_counts_entity_idx ON flag_counts (entity_type, entity_id)",
]


def ensure_schema():
    """Create every table and index that does not exist yet."""
    with get_db() as conn:
        with conn.cursor() as cur:
            for name, ddl in TABLES.items():
                cur.execute(ddl)
                log.debug("Ensured table %s", name)
            for ddl in INDEXES:
                cur.execute(ddl)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    ensure_schema()
    log.info("Schema ready (%d tables)", len(TABLES))
