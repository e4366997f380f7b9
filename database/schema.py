SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    email TEXT UNIQUE NOT NULL,
    name TEXT,
    stripe_customer_id TEXT UNIQUE,
    beta_access_code TEXT,
    beta_expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL REFERENCES users(id),
    external_subscription_id TEXT UNIQUE NOT NULL,
    plan_type TEXT NOT NULL CHECK (plan_type IN ('monthly', 'annual')),
    status TEXT NOT NULL CHECK (
        status IN ('active', 'past_due', 'canceled', 'incomplete', 'unpaid', 'trialing')
    ),
    current_period_start TIMESTAMPTZ NOT NULL,
    current_period_end TIMESTAMPTZ NOT NULL,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    canceled_at TIMESTAMPTZ,
    cancel_reason TEXT,
    price_id TEXT NOT NULL,
    payment_method JSONB,
    version INTEGER NOT NULL DEFAULT 1,
    last_event_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now(),
    CHECK (current_period_end > current_period_start)
);

-- At most one live subscription per user
CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_one_live_per_user
    ON subscriptions(user_id)
    WHERE status IN ('active', 'past_due', 'trialing');
CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status ON subscriptions(user_id, status);
CREATE INDEX IF NOT EXISTS idx_subscriptions_period_end ON subscriptions(current_period_end, status);

CREATE TABLE IF NOT EXISTS subscription_invoices (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    subscription_id UUID NOT NULL REFERENCES subscriptions(id),
    invoice_id TEXT NOT NULL,
    amount INTEGER NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'usd',
    status TEXT NOT NULL CHECK (status IN ('draft', 'open', 'paid', 'void', 'uncollectible')),
    date TIMESTAMPTZ NOT NULL,
    paid_at TIMESTAMPTZ,
    url TEXT,
    created_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (subscription_id, invoice_id)
);

CREATE INDEX IF NOT EXISTS idx_invoices_subscription ON subscription_invoices(subscription_id, date);

CREATE TABLE IF NOT EXISTS billing_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    effective_at TIMESTAMPTZ NOT NULL,
    state TEXT NOT NULL DEFAULT 'processing' CHECK (state IN ('processing', 'applied')),
    claimed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    applied_at TIMESTAMPTZ,
    received_at TIMESTAMPTZ DEFAULT now()
);
"""
