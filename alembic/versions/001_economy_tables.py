"""Economy tables.

Creates users, wallets, ledger_entries, power_up_definitions,
power_up_instances, quiz_attempts and topic_completions.

Revision ID: 001_economy_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_economy_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            external_id VARCHAR(128) UNIQUE NOT NULL,
            display_name VARCHAR(64),
            email VARCHAR(320),
            selected_title VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Wallets (cached totals of the ledger) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS wallets (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            points BIGINT NOT NULL DEFAULT 0,
            tokens BIGINT NOT NULL DEFAULT 0 CHECK (tokens >= 0),
            updated_at TIMESTAMPTZ
        )
    """)

    # --- Ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS ledger_entries (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            currency VARCHAR(16) NOT NULL,
            delta BIGINT NOT NULL,
            reason VARCHAR(64) NOT NULL,
            reference_id VARCHAR(128),
            balance_after BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_ledger_user_currency
        ON ledger_entries(user_id, currency)
    """)

    # --- Power-up catalog ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS power_up_definitions (
            id VARCHAR(16) PRIMARY KEY,
            slug VARCHAR(32) UNIQUE NOT NULL,
            kind VARCHAR(16) NOT NULL,
            name VARCHAR(64) NOT NULL,
            category VARCHAR(16) NOT NULL,
            description TEXT NOT NULL,
            price INTEGER NOT NULL,
            cadence_days INTEGER,
            max_uses INTEGER NOT NULL DEFAULT 1,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)

    # --- Purchased power-ups ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS power_up_instances (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            definition_id VARCHAR(16) NOT NULL REFERENCES power_up_definitions(id),
            kind VARCHAR(16) NOT NULL,
            purchased_at TIMESTAMPTZ NOT NULL,
            uses INTEGER NOT NULL DEFAULT 0,
            max_uses INTEGER NOT NULL DEFAULT 1,
            consumed BOOLEAN NOT NULL DEFAULT false,
            consumed_at TIMESTAMPTZ,
            target_user_id BIGINT REFERENCES users(id) ON DELETE SET NULL,
            targeted_at TIMESTAMPTZ,
            resolution VARCHAR(16),
            resolved_at TIMESTAMPTZ,
            resolved_by_attempt_id VARCHAR(128)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_power_up_owner_active
        ON power_up_instances(user_id, consumed)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_power_up_target
        ON power_up_instances(target_user_id, resolution)
    """)

    # --- Quiz attempts ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quiz_attempts (
            id BIGSERIAL PRIMARY KEY,
            attempt_id VARCHAR(128) UNIQUE NOT NULL,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            topic_id VARCHAR(64) NOT NULL,
            raw_score INTEGER NOT NULL,
            is_first_attempt BOOLEAN NOT NULL,
            final_score INTEGER NOT NULL DEFAULT 0,
            token_delta INTEGER NOT NULL DEFAULT 0,
            state VARCHAR(16) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user_topic
        ON quiz_attempts(user_id, topic_id)
    """)

    # --- Topic completions (first-attempt rule) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS topic_completions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            topic_id VARCHAR(64) NOT NULL,
            attempt_id VARCHAR(128) NOT NULL,
            completed_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_topic_completion_user_topic UNIQUE (user_id, topic_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS topic_completions CASCADE")
    op.execute("DROP TABLE IF EXISTS quiz_attempts CASCADE")
    op.execute("DROP TABLE IF EXISTS power_up_instances CASCADE")
    op.execute("DROP TABLE IF EXISTS power_up_definitions CASCADE")
    op.execute("DROP TABLE IF EXISTS ledger_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS wallets CASCADE")
    op.execute("DROP TABLE IF EXISTS users CASCADE")
