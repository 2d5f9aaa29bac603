"""
Database Migration: Create Reconciliation Session Tables

Creates tables for persisted reconciliation sessions and their
movement snapshots (bankMovements / internalMovements collections).
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import get_engine


SQL_STATEMENTS = [
    # Session documents
    """
    CREATE TABLE IF NOT EXISTS public.reconciliation_sessions (
        id VARCHAR(64) PRIMARY KEY,
        client_id VARCHAR(64) NOT NULL,
        condominium_id VARCHAR(64) NOT NULL,
        movement_type VARCHAR(10) NOT NULL,
        name VARCHAR(255) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'draft',
        version INTEGER NOT NULL DEFAULT 1,

        -- Period the reconciliation covers
        date_from DATE,
        date_to DATE,

        -- Derived data
        summary JSONB NOT NULL DEFAULT '{}'::jsonb,
        traceability JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_by JSONB NOT NULL DEFAULT '{}'::jsonb,
        csv_source JSONB,

        -- Legacy sessions stored their snapshot inline
        inline_bank_movements JSONB,
        inline_internal_movements JSONB,

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT reconciliation_sessions_type_check
            CHECK (movement_type IN ('income', 'expense')),
        CONSTRAINT reconciliation_sessions_status_check
            CHECK (status IN ('draft', 'completed'))
    )
    """,

    # Movement snapshots, one row per movement
    """
    CREATE TABLE IF NOT EXISTS public.reconciliation_movements (
        id BIGSERIAL PRIMARY KEY,
        session_id VARCHAR(64) NOT NULL
            REFERENCES public.reconciliation_sessions(id) ON DELETE CASCADE,
        collection VARCHAR(40) NOT NULL,
        position INTEGER NOT NULL,
        payload JSONB NOT NULL,

        CONSTRAINT reconciliation_movements_collection_check
            CHECK (collection IN ('bankMovements', 'internalMovements'))
    )
    """,

    "CREATE INDEX IF NOT EXISTS idx_recon_sessions_tenant ON public.reconciliation_sessions(client_id, condominium_id, movement_type)",
    "CREATE INDEX IF NOT EXISTS idx_recon_sessions_status_updated ON public.reconciliation_sessions(status, updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_recon_movements_session ON public.reconciliation_movements(session_id, collection, position)",
]


async def create_tables():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    async with get_engine().begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            try:
                await conn.execute(text(sql))
                print(f"  Statement {i+1}/{len(SQL_STATEMENTS)} executed")
            except Exception as e:
                if "already exists" in str(e).lower():
                    print(f"  Statement {i+1}/{len(SQL_STATEMENTS)} (already exists)")
                else:
                    print(f"  Statement {i+1}/{len(SQL_STATEMENTS)} failed: {e}")
                    raise

        print("\nReconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
