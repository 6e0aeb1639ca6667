"""Database connection helper and schema."""

from __future__ import annotations

import psycopg
from psycopg.rows import dict_row

from receipt_reconciler.config import get_database_url

SCHEMA = """\
CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    merchant_name TEXT,
    transaction_date DATE,
    transaction_type TEXT NOT NULL DEFAULT 'purchase',
    total NUMERIC CHECK (total >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    items JSONB NOT NULL DEFAULT '[]'::jsonb,
    time TEXT,
    store_location TEXT,
    image_url TEXT,
    raw_text TEXT,
    source TEXT NOT NULL DEFAULT 'manual',
    canonical_key TEXT,
    status TEXT NOT NULL DEFAULT 'settled',
    original_receipt_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ,
    discarded_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS receipts_owner_status_key_idx
    ON receipts (owner_id, status, canonical_key);

CREATE TABLE IF NOT EXISTS usage_counters (
    user_id TEXT PRIMARY KEY,
    plan TEXT NOT NULL DEFAULT 'free',
    daily_count INTEGER NOT NULL DEFAULT 0,
    monthly_count INTEGER NOT NULL DEFAULT 0,
    daily_window_start TIMESTAMPTZ,
    monthly_window_start TIMESTAMPTZ,
    updated_at TIMESTAMPTZ
);
"""


def get_connection() -> psycopg.Connection[dict[str, object]]:
    """Create and return a new autocommit database connection.

    Atomic units of work are wrapped in ``conn.transaction()`` blocks.
    """
    return psycopg.connect(get_database_url(), row_factory=dict_row, autocommit=True)


def ensure_schema(conn: psycopg.Connection[dict[str, object]]) -> None:
    """Create the receipts and usage tables if they do not exist."""
    with conn.transaction():
        conn.execute(SCHEMA)
