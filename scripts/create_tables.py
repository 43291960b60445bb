#!/usr/bin/env python3
"""Create the Instagram webhook ingestion tables, data-deletion requests and counter functions."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. users (owners of connected accounts)
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

-- 2. client_accounts (connected provider accounts)
CREATE TABLE IF NOT EXISTS client_accounts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    platform VARCHAR(30) NOT NULL DEFAULT 'instagram',
    platform_account_id VARCHAR(100) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_client_accounts_platform_account
    ON client_accounts(platform, platform_account_id);
CREATE INDEX IF NOT EXISTS idx_client_accounts_user_id ON client_accounts(user_id);

-- 3. instagram_webhook_events
CREATE TABLE IF NOT EXISTS instagram_webhook_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_type VARCHAR(40) NOT NULL,
    event_id VARCHAR(500) NOT NULL UNIQUE,
    instagram_account_id UUID REFERENCES client_accounts(id) ON DELETE SET NULL,
    object_type VARCHAR(40),
    object_id VARCHAR(255),
    sender_ig_id VARCHAR(255),
    sender_username VARCHAR(255),
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at TIMESTAMPTZ,
    processing_attempts INTEGER NOT NULL DEFAULT 0 CHECK (processing_attempts >= 0),
    last_processing_error TEXT,
    is_duplicate BOOLEAN NOT NULL DEFAULT FALSE,
    duplicate_of UUID REFERENCES instagram_webhook_events(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (NOT is_duplicate OR (duplicate_of IS NOT NULL AND processed = FALSE))
);
CREATE INDEX IF NOT EXISTS idx_ig_webhook_events_account_created
    ON instagram_webhook_events(instagram_account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ig_webhook_events_retry
    ON instagram_webhook_events(instagram_account_id, processed, is_duplicate, processing_attempts);

-- 4. instagram_webhook_subscriptions
CREATE TABLE IF NOT EXISTS instagram_webhook_subscriptions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    instagram_account_id UUID NOT NULL UNIQUE REFERENCES client_accounts(id) ON DELETE CASCADE,
    subscription_fields JSONB NOT NULL DEFAULT '[]'::jsonb,
    callback_url TEXT NOT NULL,
    verify_token VARCHAR(256) NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_verified_at TIMESTAMPTZ,
    last_event_received_at TIMESTAMPTZ,
    events_received_count BIGINT NOT NULL DEFAULT 0,
    subscription_errors BIGINT NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_ig_webhook_subscriptions_token
    ON instagram_webhook_subscriptions(verify_token);

-- 5. instagram_webhook_logs (append-only audit trail)
CREATE TABLE IF NOT EXISTS instagram_webhook_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_id UUID REFERENCES instagram_webhook_events(id) ON DELETE SET NULL,
    log_level VARCHAR(10) NOT NULL CHECK (log_level IN ('debug', 'info', 'warning', 'error')),
    message TEXT NOT NULL,
    context JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_ig_webhook_logs_event_id ON instagram_webhook_logs(event_id);

-- 6. webhook_metric_snapshots
CREATE TABLE IF NOT EXISTS webhook_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(100),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. data_deletion_requests (provider data-deletion callbacks)
CREATE TABLE IF NOT EXISTS data_deletion_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    provider_user_id VARCHAR(100),
    confirmation_code VARCHAR(64) UNIQUE NOT NULL,
    source VARCHAR(30) NOT NULL DEFAULT 'meta_callback'
        CHECK (source IN ('user_app', 'meta_callback', 'email')),
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'completed', 'failed')),
    requested_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_data_deletion_requests_provider_user ON data_deletion_requests(provider_user_id);
"""

FUNCTIONS = """
CREATE OR REPLACE FUNCTION increment_webhook_subscription_counters(p_account_id UUID)
RETURNS VOID LANGUAGE SQL AS $$
    UPDATE instagram_webhook_subscriptions
    SET events_received_count = events_received_count + 1,
        last_event_received_at = NOW(),
        updated_at = NOW()
    WHERE instagram_account_id = p_account_id;
$$;

CREATE OR REPLACE FUNCTION record_webhook_subscription_error(p_account_id UUID, p_error TEXT)
RETURNS VOID LANGUAGE SQL AS $$
    UPDATE instagram_webhook_subscriptions
    SET subscription_errors = subscription_errors + 1,
        last_error = p_error,
        updated_at = NOW()
    WHERE instagram_account_id = p_account_id;
$$;

CREATE OR REPLACE FUNCTION mark_webhook_event_failed(p_event_id UUID, p_error TEXT)
RETURNS VOID LANGUAGE SQL AS $$
    UPDATE instagram_webhook_events
    SET processing_attempts = processing_attempts + 1,
        last_processing_error = p_error,
        updated_at = NOW()
    WHERE id = p_event_id AND is_duplicate = FALSE;
$$;
"""

def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Creating counter functions...")
    cur.execute(FUNCTIONS)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute(
        "SELECT routine_name FROM information_schema.routines "
        "WHERE routine_schema = 'public' AND routine_name LIKE '%webhook%' ORDER BY routine_name;"
    )
    routines = cur.fetchall()
    print(f"Functions: {[r[0] for r in routines]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
