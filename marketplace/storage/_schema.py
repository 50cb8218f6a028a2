SCHEMA_VERSION = 2

# Monetary columns hold canonical decimal text (8 fractional digits); see
# storage._util.to_money.
SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Agents: requesters, providers, or both
CREATE TABLE IF NOT EXISTS agents (
    id                 TEXT PRIMARY KEY,
    name               TEXT NOT NULL,
    type               TEXT NOT NULL CHECK (type IN ('requester', 'provider', 'both')),
    wallet_address     TEXT,
    reputation_score   REAL NOT NULL DEFAULT 5.0,
    total_transactions INTEGER NOT NULL DEFAULT 0,
    total_earnings     TEXT NOT NULL DEFAULT '0.00000000',
    total_spent        TEXT NOT NULL DEFAULT '0.00000000',
    uptime_percentage  REAL NOT NULL DEFAULT 100.0,
    api_key            TEXT UNIQUE,
    created_at         REAL NOT NULL,
    updated_at         REAL NOT NULL
);

-- Provider capabilities: advertised compute offerings
CREATE TABLE IF NOT EXISTS provider_capabilities (
    id                  TEXT PRIMARY KEY,
    provider_id         TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    gpu_count           INTEGER NOT NULL,
    gpu_type            TEXT NOT NULL,
    cpu_cores           INTEGER NOT NULL,
    memory_gb           INTEGER NOT NULL,
    price_per_hour      TEXT NOT NULL,
    available_hours     INTEGER NOT NULL DEFAULT 0,
    region              TEXT NOT NULL DEFAULT 'us-east-1',
    availability_status TEXT NOT NULL DEFAULT 'available'
                        CHECK (availability_status IN ('available', 'busy', 'offline')),
    created_at          REAL NOT NULL,
    updated_at          REAL NOT NULL
);

-- Compute requests: requester demand
CREATE TABLE IF NOT EXISTS compute_requests (
    id                 TEXT PRIMARY KEY,
    requester_id       TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    gpu_count          INTEGER NOT NULL,
    gpu_type           TEXT NOT NULL,
    cpu_cores          INTEGER,
    memory_gb          INTEGER,
    duration_hours     INTEGER NOT NULL,
    max_price_per_hour TEXT NOT NULL,
    status             TEXT NOT NULL DEFAULT 'pending'
                       CHECK (status IN ('pending', 'matched', 'in_progress', 'completed', 'failed', 'cancelled')),
    description        TEXT,
    created_at         REAL NOT NULL,
    updated_at         REAL NOT NULL
);

-- Matches: request -> provider capability
CREATE TABLE IF NOT EXISTS matches (
    id                    TEXT PRIMARY KEY,
    request_id            TEXT NOT NULL REFERENCES compute_requests(id) ON DELETE CASCADE,
    provider_id           TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    capability_id         TEXT REFERENCES provider_capabilities(id) ON DELETE SET NULL,
    agreed_price_per_hour TEXT NOT NULL,
    status                TEXT NOT NULL DEFAULT 'proposed'
                          CHECK (status IN ('proposed', 'accepted', 'in_progress', 'completed', 'failed', 'cancelled')),
    start_time            REAL,
    end_time              REAL,
    created_at            REAL NOT NULL,
    updated_at            REAL NOT NULL
);

-- Transactions: escrow payments bound to a match
CREATE TABLE IF NOT EXISTS transactions (
    id                TEXT PRIMARY KEY,
    match_id          TEXT NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
    requester_id      TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    provider_id       TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    amount            TEXT NOT NULL,
    currency          TEXT NOT NULL DEFAULT 'USD',
    status            TEXT NOT NULL DEFAULT 'pending'
                      CHECK (status IN ('pending', 'escrowed', 'verified', 'settled', 'failed', 'refunded')),
    payment_method    TEXT,
    payment_intent_id TEXT,
    transaction_hash  TEXT,
    created_at        REAL NOT NULL,
    updated_at        REAL NOT NULL
);

-- Verifications: proofs of completion and disputes
CREATE TABLE IF NOT EXISTS verifications (
    id             TEXT PRIMARY KEY,
    transaction_id TEXT NOT NULL REFERENCES transactions(id) ON DELETE CASCADE,
    verifier_id    TEXT REFERENCES agents(id) ON DELETE SET NULL,
    kind           TEXT NOT NULL DEFAULT 'proof' CHECK (kind IN ('proof', 'dispute')),
    proof_hash     TEXT,
    proof_data     TEXT,
    verified       INTEGER NOT NULL DEFAULT 0,
    decided        INTEGER NOT NULL DEFAULT 0,
    notes          TEXT,
    resolved_by    TEXT REFERENCES agents(id) ON DELETE SET NULL,
    created_at     REAL NOT NULL,
    updated_at     REAL NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_agents_type ON agents(type);
CREATE INDEX IF NOT EXISTS idx_agents_api_key ON agents(api_key);
CREATE INDEX IF NOT EXISTS idx_capabilities_provider ON provider_capabilities(provider_id);
CREATE INDEX IF NOT EXISTS idx_capabilities_search ON provider_capabilities(gpu_type, availability_status);
CREATE INDEX IF NOT EXISTS idx_requests_requester ON compute_requests(requester_id);
CREATE INDEX IF NOT EXISTS idx_requests_status ON compute_requests(status);
CREATE INDEX IF NOT EXISTS idx_matches_request ON matches(request_id);
CREATE INDEX IF NOT EXISTS idx_matches_provider ON matches(provider_id);
CREATE INDEX IF NOT EXISTS idx_matches_status ON matches(status);
CREATE INDEX IF NOT EXISTS idx_transactions_match ON transactions(match_id);
CREATE INDEX IF NOT EXISTS idx_transactions_requester ON transactions(requester_id);
CREATE INDEX IF NOT EXISTS idx_transactions_provider ON transactions(provider_id);
CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status);
CREATE INDEX IF NOT EXISTS idx_transactions_intent ON transactions(payment_intent_id);
CREATE INDEX IF NOT EXISTS idx_verifications_transaction ON verifications(transaction_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_matches_request_accepted
    ON matches(request_id) WHERE status IN ('accepted', 'in_progress', 'completed');
"""
